"""Per-user tutoring session: mode and active-agent pointer."""

import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import NotFoundError, ValidationError
from ..db.models import SESSION_MODES, Agent, TutorSession
from .audit import (
    EVENT_AGENT_SWITCH,
    EVENT_MODE_CHANGE,
    EVENT_SESSION_START,
    InteractionAuditLogger,
)
from .device import ClientContext

logger = logging.getLogger(__name__)

TUTOR_CATEGORY = "tutor"


class TutorSessionManager:
    """
    Owns the session state machine.

    Sessions are created lazily in ``manual`` mode with no active agent and
    are never deleted. Mode and agent changes are recorded as audit events.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: InteractionAuditLogger,
    ):
        self._session_factory = session_factory
        self._audit = audit

    @staticmethod
    async def _find(db: AsyncSession, user_id: int) -> Optional[TutorSession]:
        result = await db.execute(select(TutorSession).where(TutorSession.user_id == user_id))
        return result.scalar_one_or_none()

    async def _load_or_create(self, db: AsyncSession, user_id: int) -> Tuple[TutorSession, bool]:
        tutor_session = await self._find(db, user_id)
        if tutor_session is not None:
            return tutor_session, False

        try:
            async with db.begin_nested():
                tutor_session = TutorSession(user_id=user_id, mode="manual", active_agent=None)
                db.add(tutor_session)
        except IntegrityError:
            tutor_session = await self._find(db, user_id)
            if tutor_session is None:
                raise
            return tutor_session, False

        return tutor_session, True

    async def get_or_create_session(
        self,
        user_id: int,
        client: Optional[ClientContext] = None,
    ) -> TutorSession:
        """Return the user's session, creating it on first access."""
        async with self._session_factory() as db:
            async with db.begin():
                tutor_session, created = await self._load_or_create(db, user_id)

        if created:
            logger.info(f"Created tutor session {tutor_session.id} for user {user_id}")
            await self._audit.log(
                EVENT_SESSION_START,
                user_id,
                session_id=tutor_session.id,
                mode=tutor_session.mode,
                client=client,
            )
        return tutor_session

    async def update_mode(
        self,
        user_id: int,
        mode: str,
        client: Optional[ClientContext] = None,
    ) -> TutorSession:
        if mode not in SESSION_MODES:
            raise ValidationError("Invalid mode")

        await self.get_or_create_session(user_id, client)
        async with self._session_factory() as db:
            async with db.begin():
                tutor_session, _ = await self._load_or_create(db, user_id)
                previous = tutor_session.mode
                tutor_session.mode = mode

        logger.info(f"User {user_id} switched tutor mode {previous} -> {mode}")
        await self._audit.log(
            EVENT_MODE_CHANGE,
            user_id,
            session_id=tutor_session.id,
            mode=mode,
            agent=tutor_session.active_agent,
            client=client,
        )
        return tutor_session

    async def set_active_agent(
        self,
        user_id: int,
        agent_id: int,
        client: Optional[ClientContext] = None,
    ) -> TutorSession:
        await self.get_or_create_session(user_id, client)
        async with self._session_factory() as db:
            async with db.begin():
                agent = await self._active_agent(db, agent_id)
                if agent is None:
                    raise NotFoundError("Agent not found")

                tutor_session, _ = await self._load_or_create(db, user_id)
                tutor_session.active_agent = agent

        await self._audit.log(
            EVENT_AGENT_SWITCH,
            user_id,
            session_id=tutor_session.id,
            mode=tutor_session.mode,
            agent=agent,
            client=client,
        )
        return tutor_session

    @staticmethod
    def turn_lock_query(session_id: int):
        return select(TutorSession.id).where(TutorSession.id == session_id).with_for_update()

    async def lock_for_turn(self, db: AsyncSession, session_id: int) -> None:
        """Hold the session row until the caller's transaction ends, so turn numbers are taken one at a time."""
        await db.execute(self.turn_lock_query(session_id))

    @staticmethod
    async def _active_agent(db: AsyncSession, agent_id: int) -> Optional[Agent]:
        result = await db.execute(select(Agent).where(Agent.id == agent_id, Agent.is_active.is_(True)))
        return result.scalar_one_or_none()

    async def get_agent(self, agent_id: int) -> Optional[Agent]:
        """Active agent by id, or None."""
        async with self._session_factory() as db:
            return await self._active_agent(db, agent_id)

    async def get_agents(self, agent_ids: Sequence[int]) -> List[Agent]:
        """Active agents for the given ids, in the order requested."""
        if not agent_ids:
            return []
        async with self._session_factory() as db:
            result = await db.execute(
                select(Agent).where(Agent.id.in_(list(agent_ids)), Agent.is_active.is_(True))
            )
            by_id = {agent.id: agent for agent in result.scalars().all()}
        return [by_id[agent_id] for agent_id in agent_ids if agent_id in by_id]

    async def list_agents(self) -> List[Agent]:
        """Active tutor agents, ordered by name."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Agent)
                .where(Agent.is_active.is_(True), Agent.category == TUTOR_CATEGORY)
                .order_by(Agent.name)
            )
            return list(result.scalars().all())
