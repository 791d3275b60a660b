"""Agent selection for router mode.

Selectors pick which tutor answers an unaddressed message. The keyword
selector is the default; the LLM selector asks the configured provider and
falls back to keywords whenever it cannot produce a usable decision.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Set

from ..core.errors import ConfigurationError, NotFoundError, ProviderError
from ..db.models import Agent
from ..providers.adapters import ProviderRequest
from ..providers.gateway import ProviderGateway

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"[a-z0-9]+")
_JSON_PATTERN = re.compile(r"\{[\s\S]*\}")

_STOPWORDS = frozenset(
    "the and for are but not you your with this that what how can about from have has had was "
    "were will would should could into just like some them then than there they their its "
    "tutor agent help please".split()
)

ROUTER_SYSTEM_PROMPT = "You are a routing assistant. Always respond with valid JSON only, no markdown formatting."


@dataclass
class RoutingDecision:
    agent: Agent
    reason: str
    confidence: float
    strategy: str
    alternatives: List[Dict[str, object]] = field(default_factory=list)


class AgentSelector(Protocol):
    async def select(self, message: str, agents: Sequence[Agent]) -> RoutingDecision:
        ...


def _words(text: Optional[str]) -> Set[str]:
    if not text:
        return set()
    return {word for word in _WORD_PATTERN.findall(text.lower()) if len(word) > 2 and word not in _STOPWORDS}


def agent_keywords(agent: Agent) -> Set[str]:
    """Keywords describing an agent, drawn from its name and persona fields."""
    keywords: Set[str] = set()
    for text in (
        (agent.name or "").replace("-", " ").replace("_", " "),
        agent.display_name,
        agent.description,
        agent.personality,
        agent.response_style,
    ):
        keywords |= _words(text)
    return keywords


class KeywordAgentSelector:
    """Score agents by word overlap between the message and each agent's keywords."""

    strategy = "keyword"

    async def select(self, message: str, agents: Sequence[Agent]) -> RoutingDecision:
        if not agents:
            raise NotFoundError("No active tutor agents available")

        message_words = _words(message)
        scores = [(agent, len(message_words & agent_keywords(agent))) for agent in agents]

        best_agent, best_score = agents[0], 0
        for agent, score in scores:
            if score > best_score:
                best_agent, best_score = agent, score

        alternatives = [
            {"agentId": agent.id, "agentName": agent.name, "score": score}
            for agent, score in sorted(scores, key=lambda item: item[1], reverse=True)
            if agent.id != best_agent.id
        ]

        if best_score == 0:
            return RoutingDecision(
                agent=best_agent,
                reason=f"No keyword match; defaulted to {best_agent.display_name}",
                confidence=0.5,
                strategy=self.strategy,
                alternatives=alternatives,
            )

        confidence = round(min(1.0, 0.5 + best_score / max(len(message_words), 1) / 2), 2)
        return RoutingDecision(
            agent=best_agent,
            reason=f"Matched {best_score} keyword(s) for {best_agent.display_name}",
            confidence=confidence,
            strategy=self.strategy,
            alternatives=alternatives,
        )


class LLMAgentSelector:
    """Ask the configured provider to pick an agent; fall back to another selector on any failure."""

    strategy = "llm"

    def __init__(self, gateway: ProviderGateway, fallback: Optional[AgentSelector] = None):
        self._gateway = gateway
        self._fallback = fallback or KeywordAgentSelector()

    @staticmethod
    def build_prompt(message: str, agents: Sequence[Agent]) -> str:
        agent_lines = "\n".join(
            f"- {agent.name} ({agent.display_name}): {agent.description or ''}" for agent in agents
        )
        return (
            "Analyze the student's message and determine which tutor agent would be best suited to help them.\n\n"
            f"Available agents:\n{agent_lines}\n\n"
            f'Student\'s message: "{message}"\n\n'
            "Respond in this exact JSON format:\n"
            '{"selectedAgent": "agent-name", "reason": "why this agent is best", '
            '"confidence": 0.85, "scores": {"agent-name": 0.85}}\n\n'
            "Consider the emotional tone, the type of help needed and the complexity of the question."
        )

    @staticmethod
    def parse_decision(reply: str) -> dict:
        match = _JSON_PATTERN.search(reply or "")
        if not match:
            raise ValueError("No JSON object in routing reply")
        decision = json.loads(match.group(0))
        if not isinstance(decision, dict):
            raise ValueError("Routing reply is not a JSON object")
        return decision

    async def select(self, message: str, agents: Sequence[Agent]) -> RoutingDecision:
        if not agents:
            raise NotFoundError("No active tutor agents available")

        try:
            result = await self._gateway.send(
                ProviderRequest(
                    message=self.build_prompt(message, agents),
                    system_prompt=ROUTER_SYSTEM_PROMPT,
                    temperature=0.3,
                    tags=["router"],
                )
            )
            decision = self.parse_decision(result.reply)
        except (ProviderError, ConfigurationError, ValueError) as e:
            logger.warning(f"LLM routing failed, falling back to keyword routing: {e}")
            return await self._fallback.select(message, agents)

        selected = next((agent for agent in agents if agent.name == decision.get("selectedAgent")), None)
        if selected is None:
            logger.warning(f"LLM routing selected unknown agent: {decision.get('selectedAgent')}")
            return await self._fallback.select(message, agents)

        scores = decision.get("scores") if isinstance(decision.get("scores"), dict) else {}
        alternatives = sorted(
            (
                {"agentId": agent.id, "agentName": agent.name, "score": scores.get(agent.name, 0.5)}
                for agent in agents
                if agent.id != selected.id
            ),
            key=lambda item: item["score"],
            reverse=True,
        )

        try:
            confidence = float(decision.get("confidence", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8

        return RoutingDecision(
            agent=selected,
            reason=decision.get("reason") or "AI-based routing",
            confidence=confidence,
            strategy=self.strategy,
            alternatives=alternatives,
        )


def build_agent_selector(strategy: str, gateway: ProviderGateway) -> AgentSelector:
    """Selector for a ``ROUTER_STRATEGY`` value."""
    if strategy == "llm":
        return LLMAgentSelector(gateway)
    if strategy != "keyword":
        logger.warning(f"Unknown router strategy '{strategy}', using keyword routing")
    return KeywordAgentSelector()
