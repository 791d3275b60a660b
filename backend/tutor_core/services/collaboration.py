"""Parallel multi-agent collaboration.

A send that carries collaboration settings fans the message out to several
agents at once. Every call runs to completion; a failing agent is reported
but never aborts the others, and the request only fails when no agent
answered.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ..core.errors import ProviderError, ValidationError
from ..db.models import Agent
from ..providers.adapters import ProviderReply, ProviderRequest
from ..providers.config import ProviderSelection
from ..providers.gateway import ProviderGateway

logger = logging.getLogger(__name__)

COLLABORATION_STYLES = ("parallel",)
RESPONSE_SEPARATOR = "\n\n---\n\n"


@dataclass
class CollaborationSettings:
    style: str
    max_agents: int
    agent_ids: Optional[List[int]] = None

    @classmethod
    def build(
        cls,
        style: Optional[str],
        max_agents: Optional[int],
        agent_ids: Optional[Sequence[int]],
        default_agents: int,
        agent_cap: int,
    ) -> "CollaborationSettings":
        """Validate raw request values; ``max_agents`` is clamped to ``agent_cap``."""
        style = (style or "parallel").strip().lower()
        if style not in COLLABORATION_STYLES:
            raise ValidationError(f"Unsupported collaboration style: {style}")

        if max_agents is None:
            max_agents = default_agents
        if isinstance(max_agents, bool) or not isinstance(max_agents, int) or max_agents < 1:
            raise ValidationError("maxAgents must be a positive integer")

        distinct_ids = None
        if agent_ids:
            distinct_ids = list(dict.fromkeys(agent_ids))

        return cls(style=style, max_agents=min(max_agents, agent_cap), agent_ids=distinct_ids)


@dataclass
class AgentOutcome:
    """Result of one agent's dispatch."""

    agent: Agent
    result: Optional[ProviderReply] = None
    error: Optional[ProviderError] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


@dataclass
class ComposedResponse:
    primary: AgentOutcome
    combined_reply: str


class ResponseComposer(Protocol):
    def compose(self, outcomes: Sequence[AgentOutcome], designated_primary_id: Optional[int]) -> ComposedResponse:
        ...


class AttributedResponseComposer:
    """
    Keep every successful reply, attributed to its agent.

    The primary reply is the designated primary agent's when it succeeded,
    otherwise the first success in selection order.
    """

    def compose(self, outcomes: Sequence[AgentOutcome], designated_primary_id: Optional[int]) -> ComposedResponse:
        successes = [outcome for outcome in outcomes if outcome.succeeded]
        if not successes:
            raise ValueError("Cannot compose a response without a successful agent")

        primary = next(
            (outcome for outcome in successes if outcome.agent.id == designated_primary_id),
            successes[0],
        )
        combined = RESPONSE_SEPARATOR.join(
            f"**{outcome.agent.display_name}**:\n{outcome.result.reply}" for outcome in successes
        )
        return ComposedResponse(primary=primary, combined_reply=combined)


@dataclass
class CollaborationResult:
    settings: CollaborationSettings
    outcomes: List[AgentOutcome]
    composed: ComposedResponse

    @property
    def successes(self) -> List[AgentOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failures(self) -> List[AgentOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    def contributions(self) -> List[Dict[str, Any]]:
        """Per-agent summary, in selection order."""
        summary = []
        for outcome in self.outcomes:
            entry: Dict[str, Any] = {
                "agentId": outcome.agent.id,
                "agentName": outcome.agent.name,
                "displayName": outcome.agent.display_name,
                "status": "succeeded" if outcome.succeeded else "failed",
            }
            if outcome.succeeded:
                entry["model"] = outcome.result.model_used
                entry["responseTimeMs"] = outcome.result.response_time_ms
            else:
                entry["error"] = outcome.error.message
            summary.append(entry)
        return summary

    def info(self) -> Dict[str, Any]:
        return {
            "style": self.settings.style,
            "maxAgents": self.settings.max_agents,
            "primaryAgentId": self.composed.primary.agent.id,
            "participants": self.contributions(),
            "succeeded": [outcome.agent.id for outcome in self.successes],
            "failed": [outcome.agent.id for outcome in self.failures],
            "combinedReply": self.composed.combined_reply,
        }


class MultiAgentCollaborationEngine:
    """Selects participants, dispatches concurrently and composes the outcome."""

    def __init__(self, gateway: ProviderGateway, composer: Optional[ResponseComposer] = None):
        self._gateway = gateway
        self._composer = composer or AttributedResponseComposer()

    @staticmethod
    def select_participants(
        primary: Agent,
        available: Sequence[Agent],
        settings: CollaborationSettings,
        requested: Sequence[Agent] = (),
    ) -> List[Agent]:
        """
        Pick at most ``settings.max_agents`` distinct agents.

        Explicitly requested agents are used as given; otherwise the primary
        agent leads, followed by the other available agents.
        """
        candidates = list(requested) if requested else [primary, *available]

        participants: List[Agent] = []
        seen = set()
        for agent in candidates:
            if agent.id in seen:
                continue
            seen.add(agent.id)
            participants.append(agent)
            if len(participants) == settings.max_agents:
                break
        return participants

    @staticmethod
    def collaboration_note(agent: Agent, participants: Sequence[Agent]) -> str:
        others = [other.display_name for other in participants if other.id != agent.id]
        note = f"Provide a brief, focused response from your perspective as {agent.display_name}."
        if others:
            note = f"You are collaborating with {', '.join(others)} on this question. {note}"
        return note

    async def run(
        self,
        selection: ProviderSelection,
        requests: Sequence[Tuple[Agent, ProviderRequest]],
        settings: CollaborationSettings,
        designated_primary_id: Optional[int] = None,
    ) -> CollaborationResult:
        """Dispatch every request concurrently and wait for all of them."""
        replies = await asyncio.gather(
            *(self._gateway.send(request, selection) for _, request in requests),
            return_exceptions=True,
        )

        outcomes: List[AgentOutcome] = []
        for (agent, _), reply in zip(requests, replies):
            if isinstance(reply, ProviderError):
                logger.warning(f"Collaborating agent {agent.name} failed: {reply.message}")
                outcomes.append(AgentOutcome(agent=agent, error=reply))
            elif isinstance(reply, BaseException):
                raise reply
            else:
                outcomes.append(AgentOutcome(agent=agent, result=reply))

        if not any(outcome.succeeded for outcome in outcomes):
            first_error = outcomes[0].error if outcomes else None
            details = "; ".join(f"{outcome.agent.name}: {outcome.error.message}" for outcome in outcomes)
            raise ProviderError(
                f"All collaborating agents failed ({details})",
                provider=first_error.provider if first_error else None,
                reason=first_error.reason if first_error else "upstream",
            )

        composed = self._composer.compose(outcomes, designated_primary_id)
        logger.info(
            f"Collaboration finished: {sum(o.succeeded for o in outcomes)}/{len(outcomes)} agents answered"
        )
        return CollaborationResult(settings=settings, outcomes=outcomes, composed=composed)
