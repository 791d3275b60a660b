"""Send-path orchestration for the tutoring core.

A send is validated, the provider is resolved, the answering agent(s) are
chosen, the provider is called outside of any database transaction, and the
whole turn (messages plus audit rows) is then written in one transaction.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.errors import NotFoundError, ProviderError, ValidationError
from ..db.models import Agent, TutorConversation, TutorMessage, TutorSession
from ..providers.adapters import ProviderReply, ProviderRequest
from ..providers.config import ProviderConfigResolver, ProviderSelection
from ..providers.gateway import ProviderGateway
from .audit import EVENT_CONVERSATION_CLEAR, EVENT_ERROR, InteractionAuditLogger, TurnExchange
from .collaboration import CollaborationResult, CollaborationSettings, MultiAgentCollaborationEngine
from .conversations import ConversationPreview, ConversationStore
from .device import ClientContext
from .routing import AgentSelector, RoutingDecision, build_agent_selector
from .sessions import TutorSessionManager

logger = logging.getLogger(__name__)


def _rules(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return [value]
    if isinstance(value, (list, tuple)):
        return [str(rule) for rule in value if str(rule).strip()]
    return []


def build_system_prompt(agent: Agent) -> str:
    """Agent system prompt plus the identity reminder and its DO / DON'T rules."""
    prompt = (agent.system_prompt or "").strip()
    prompt += (
        f"\n\nIMPORTANT: You are {agent.display_name}. Stay in character throughout the conversation. "
        "Remember what the user has told you and refer back to previous messages when relevant."
    )

    dos = _rules(agent.dos_rules)
    if dos:
        prompt += "\n\nDO:\n" + "\n".join(f"- {rule}" for rule in dos)

    donts = _rules(agent.donts_rules)
    if donts:
        prompt += "\n\nDON'T:\n" + "\n".join(f"- {rule}" for rule in donts)

    return prompt.strip()


@dataclass
class AgentReply:
    """Stored messages for one answering agent."""

    agent: Agent
    conversation_id: int
    user_message: TutorMessage
    assistant_message: TutorMessage


@dataclass
class SendResult:
    agent: Agent
    user_message: TutorMessage
    assistant_message: TutorMessage
    model: str
    response_time_ms: int
    turn: Optional[int] = None
    routing: Optional[RoutingDecision] = None
    collaboration: Optional[CollaborationResult] = None
    replies: List[AgentReply] = field(default_factory=list)


@dataclass
class SessionOverview:
    session: TutorSession
    conversations: List[ConversationPreview]
    agents: List[Agent]


class TutorService:
    """Facade used by the HTTP layer."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        gateway: ProviderGateway,
        selector: Optional[AgentSelector] = None,
        collaboration: Optional[MultiAgentCollaborationEngine] = None,
        store: Optional[ConversationStore] = None,
        audit: Optional[InteractionAuditLogger] = None,
        sessions: Optional[TutorSessionManager] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self.gateway = gateway
        self.selector = selector or build_agent_selector(settings.ROUTER_STRATEGY, gateway)
        self.collaboration = collaboration or MultiAgentCollaborationEngine(gateway)
        self.store = store or ConversationStore()
        self.audit = audit or InteractionAuditLogger(session_factory)
        self.sessions = sessions or TutorSessionManager(session_factory, self.audit)

    # ------------------------------------------------------------------
    # Session and conversations
    # ------------------------------------------------------------------

    async def get_session_overview(self, user_id: int, client: Optional[ClientContext] = None) -> SessionOverview:
        tutor_session = await self.sessions.get_or_create_session(user_id, client)
        conversations = await self.list_conversations(user_id)
        agents = await self.sessions.list_agents()
        return SessionOverview(session=tutor_session, conversations=conversations, agents=agents)

    async def list_conversations(self, user_id: int) -> List[ConversationPreview]:
        async with self._session_factory() as db:
            return await self.store.list_for_user(db, user_id)

    async def get_conversation(self, user_id: int, agent_id: int) -> Tuple[Agent, TutorConversation, List[TutorMessage]]:
        """Get or create the conversation with an agent, with its full history."""
        agent = await self._require_agent(agent_id)
        async with self._session_factory() as db:
            async with db.begin():
                conversation = await self.store.get_or_create(db, user_id, agent.id)
                messages = await self.store.messages(db, conversation.id)
        return agent, conversation, messages

    async def clear_conversation(self, user_id: int, agent_id: int, client: Optional[ClientContext] = None) -> int:
        async with self._session_factory() as db:
            async with db.begin():
                conversation = await self.store.get(db, user_id, agent_id)
                if conversation is None:
                    raise NotFoundError("Conversation not found")
                deleted = await self.store.clear(db, conversation.id)

        tutor_session = await self.sessions.get_or_create_session(user_id, client)
        await self.audit.log(
            EVENT_CONVERSATION_CLEAR,
            user_id,
            session_id=tutor_session.id,
            conversation_id=conversation.id,
            agent_id=agent_id,
            mode=tutor_session.mode,
            client=client,
        )
        return deleted

    async def _require_agent(self, agent_id: int) -> Agent:
        agent = await self.sessions.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent not found or inactive")
        return agent

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        user_id: int,
        message: Optional[str],
        agent_id: Optional[int] = None,
        collaboration: Optional[CollaborationSettings] = None,
        client: Optional[ClientContext] = None,
    ) -> SendResult:
        """
        Send a learner message and persist the resulting turn.

        ``agent_id`` addresses an agent directly. Without it the session
        decides: the active agent in manual mode, the selector in router mode.
        Passing ``collaboration`` fans the message out to several agents.
        """
        content = (message or "").strip()
        if not content:
            raise ValidationError("Message is required")

        received_at = datetime.utcnow()
        selection = await self.gateway.resolve()
        tutor_session = await self.sessions.get_or_create_session(user_id, client)

        routing = None
        if agent_id is not None:
            agent = await self._require_agent(agent_id)
        elif tutor_session.mode == "router":
            routing = await self.selector.select(content, await self.sessions.list_agents())
            agent = routing.agent
            logger.info(f"Routed message from user {user_id} to {agent.name}: {routing.reason}")
        else:
            if tutor_session.active_agent_id is None:
                raise ValidationError("No active agent selected")
            agent = await self._require_agent(tutor_session.active_agent_id)

        if collaboration is not None:
            return await self._send_collaborative(
                tutor_session, agent, content, received_at, selection, collaboration, routing, client
            )
        return await self._send_single(tutor_session, agent, content, received_at, selection, routing, client)

    def _build_request(
        self,
        tutor_session: TutorSession,
        agent: Agent,
        content: str,
        history: Sequence[TutorMessage],
        context_note: Optional[str] = None,
    ) -> ProviderRequest:
        return ProviderRequest(
            message=content,
            system_prompt=build_system_prompt(agent),
            context_note=context_note,
            history=list(history),
            model_override=agent.model_preference,
            temperature=agent.temperature,
            trace_id=f"tutor-{tutor_session.user_id}-{agent.id}",
            tags=[f"agent:{agent.name}", f"mode:{tutor_session.mode}"],
            metadata={"user_id": tutor_session.user_id, "session_id": tutor_session.id, "agent": agent.name},
        )

    async def _history(self, db: AsyncSession, user_id: int, agent_id: int) -> List[TutorMessage]:
        conversation = await self.store.get(db, user_id, agent_id)
        if conversation is None:
            return []
        return await self.store.recent_history(db, conversation.id, self._settings.CONTEXT_WINDOW_SIZE)

    async def _log_failure(
        self,
        tutor_session: TutorSession,
        agent: Agent,
        error: ProviderError,
        client: Optional[ClientContext],
        content: str,
    ) -> None:
        await self.audit.log(
            EVENT_ERROR,
            tutor_session.user_id,
            session_id=tutor_session.id,
            agent=agent,
            mode=tutor_session.mode,
            user_message=content,
            message_char_count=len(content),
            ai_provider=error.provider,
            error_message=error.message,
            error_code=error.code,
            client=client,
        )

    async def _persist_exchange(
        self,
        db: AsyncSession,
        tutor_session: TutorSession,
        agent: Agent,
        content: str,
        received_at: datetime,
        reply: ProviderReply,
        routing: Optional[RoutingDecision] = None,
    ) -> AgentReply:
        conversation = await self.store.get_or_create(db, tutor_session.user_id, agent.id)
        routing_fields = {}
        if routing is not None:
            routing_fields = {"routing_reason": routing.reason, "routing_confidence": routing.confidence}

        user_message = await self.store.append_message(
            db, conversation.id, "user", content, created_at=received_at, **routing_fields
        )
        assistant_message = await self.store.append_message(
            db,
            conversation.id,
            "assistant",
            reply.reply,
            model=reply.model_used,
            ai_provider=reply.provider,
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            total_tokens=reply.total_tokens,
            response_time_ms=reply.response_time_ms,
            temperature=agent.temperature,
            **routing_fields,
        )
        return AgentReply(
            agent=agent,
            conversation_id=conversation.id,
            user_message=user_message,
            assistant_message=assistant_message,
        )

    @staticmethod
    def _exchange(
        agent_reply: AgentReply,
        reply: ProviderReply,
        routing: Optional[RoutingDecision] = None,
        contributions: Optional[List[dict]] = None,
    ) -> TurnExchange:
        return TurnExchange(
            agent=agent_reply.agent,
            conversation_id=agent_reply.conversation_id,
            user_message=agent_reply.user_message,
            assistant_message=agent_reply.assistant_message,
            provider=reply.provider,
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            total_tokens=reply.total_tokens,
            routing_reason=routing.reason if routing else None,
            routing_confidence=routing.confidence if routing else None,
            contributions=contributions,
        )

    async def _send_single(
        self,
        tutor_session: TutorSession,
        agent: Agent,
        content: str,
        received_at: datetime,
        selection: ProviderSelection,
        routing: Optional[RoutingDecision],
        client: Optional[ClientContext],
    ) -> SendResult:
        async with self._session_factory() as db:
            history = await self._history(db, tutor_session.user_id, agent.id)

        request = self._build_request(tutor_session, agent, content, history)
        try:
            reply = await self.gateway.send(request, selection)
        except ProviderError as e:
            logger.error(f"Tutor {agent.name} failed for user {tutor_session.user_id}: {e.message}")
            await self._log_failure(tutor_session, agent, e, client, content)
            raise

        async with self._session_factory() as db:
            async with db.begin():
                await self.sessions.lock_for_turn(db, tutor_session.id)
                agent_reply = await self._persist_exchange(
                    db, tutor_session, agent, content, received_at, reply, routing
                )
                turn = await self.audit.log_turn(
                    db,
                    tutor_session.user_id,
                    tutor_session.id,
                    tutor_session.mode,
                    [self._exchange(agent_reply, reply, routing)],
                    client,
                )

        return SendResult(
            agent=agent,
            user_message=agent_reply.user_message,
            assistant_message=agent_reply.assistant_message,
            model=reply.model_used,
            response_time_ms=reply.response_time_ms,
            turn=turn,
            routing=routing,
            replies=[agent_reply],
        )

    async def _send_collaborative(
        self,
        tutor_session: TutorSession,
        primary: Agent,
        content: str,
        received_at: datetime,
        selection: ProviderSelection,
        settings: CollaborationSettings,
        routing: Optional[RoutingDecision],
        client: Optional[ClientContext],
    ) -> SendResult:
        requested: List[Agent] = []
        if settings.agent_ids:
            requested = await self.sessions.get_agents(settings.agent_ids)
            if len(requested) != len(settings.agent_ids):
                raise NotFoundError("Agent not found or inactive")

        available = await self.sessions.list_agents()
        participants = self.collaboration.select_participants(primary, available, settings, requested)
        designated = primary if any(agent.id == primary.id for agent in participants) else participants[0]

        requests = []
        async with self._session_factory() as db:
            for agent in participants:
                history = await self._history(db, tutor_session.user_id, agent.id)
                note = self.collaboration.collaboration_note(agent, participants)
                requests.append((agent, self._build_request(tutor_session, agent, content, history, note)))

        try:
            result = await self.collaboration.run(selection, requests, settings, designated.id)
        except ProviderError as e:
            logger.error(f"All collaborating agents failed for user {tutor_session.user_id}: {e.message}")
            await self._log_failure(tutor_session, designated, e, client, content)
            raise

        contributions = result.contributions()
        replies: List[AgentReply] = []
        exchanges: List[TurnExchange] = []
        async with self._session_factory() as db:
            async with db.begin():
                await self.sessions.lock_for_turn(db, tutor_session.id)
                for outcome in result.successes:
                    agent_reply = await self._persist_exchange(
                        db, tutor_session, outcome.agent, content, received_at, outcome.result, routing
                    )
                    replies.append(agent_reply)
                    exchanges.append(self._exchange(agent_reply, outcome.result, routing, contributions))
                turn = await self.audit.log_turn(
                    db, tutor_session.user_id, tutor_session.id, tutor_session.mode, exchanges, client
                )

        for outcome in result.failures:
            await self._log_failure(tutor_session, outcome.agent, outcome.error, client, content)

        primary_outcome = result.composed.primary
        primary_reply = next(reply for reply in replies if reply.agent.id == primary_outcome.agent.id)
        return SendResult(
            agent=primary_outcome.agent,
            user_message=primary_reply.user_message,
            assistant_message=primary_reply.assistant_message,
            model=primary_outcome.result.model_used,
            response_time_ms=primary_outcome.result.response_time_ms,
            turn=turn,
            routing=routing,
            collaboration=result,
            replies=replies,
        )


def build_tutor_service(session_factory: async_sessionmaker[AsyncSession], settings: Settings) -> TutorService:
    """Wire the default provider stack and components."""
    resolver = ProviderConfigResolver(session_factory, settings)
    gateway = ProviderGateway(resolver, settings)
    return TutorService(session_factory, settings, gateway)
