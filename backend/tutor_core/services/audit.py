"""Interaction audit trail.

Two write paths:
- ``log`` records a standalone event (session start, mode change, errors...)
  in its own transaction and never raises.
- ``log_turn`` records the rows of a message exchange inside the caller's
  turn transaction, under a savepoint, so a failed audit insert is rolled back
  on its own and the turn still commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import Agent, TutorInteractionLog, TutorMessage
from .device import ClientContext

logger = logging.getLogger(__name__)

EVENT_SESSION_START = "session_start"
EVENT_MODE_CHANGE = "mode_change"
EVENT_AGENT_SWITCH = "agent_switch"
EVENT_MESSAGE_SENT = "message_sent"
EVENT_MESSAGE_RECEIVED = "message_received"
EVENT_CONVERSATION_CLEAR = "conversation_clear"
EVENT_ERROR = "error"

EVENT_TYPES = (
    EVENT_SESSION_START,
    EVENT_MODE_CHANGE,
    EVENT_AGENT_SWITCH,
    EVENT_MESSAGE_SENT,
    EVENT_MESSAGE_RECEIVED,
    EVENT_CONVERSATION_CLEAR,
    EVENT_ERROR,
)
MESSAGE_EVENTS = (EVENT_MESSAGE_SENT, EVENT_MESSAGE_RECEIVED)

DEFAULT_QUERY_LIMIT = 100


@dataclass
class TurnExchange:
    """One agent's share of a turn: the stored user/assistant pair and its metadata."""

    agent: Agent
    conversation_id: int
    user_message: TutorMessage
    assistant_message: TutorMessage
    provider: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    routing_reason: Optional[str] = None
    routing_confidence: Optional[float] = None
    contributions: Optional[List[Dict[str, Any]]] = field(default=None)


def _client_fields(client: Optional[ClientContext]) -> Dict[str, Any]:
    if client is None:
        return {}
    return {
        "ip_address": client.ip_address,
        "user_agent": client.user_agent,
        "device_type": client.device_type,
        "browser_name": client.browser_name,
    }


def _agent_fields(agent: Optional[Agent]) -> Dict[str, Any]:
    if agent is None:
        return {}
    return {
        "agent_id": agent.id,
        "agent_name": agent.name,
        "agent_display_name": agent.display_name,
    }


class InteractionAuditLogger:
    """Append-only writer and admin read surface over ``tutor_interaction_logs``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def log(
        self,
        event_type: str,
        user_id: int,
        session_id: Optional[int] = None,
        agent: Optional[Agent] = None,
        client: Optional[ClientContext] = None,
        **fields,
    ) -> Optional[TutorInteractionLog]:
        """Record a standalone event. Failures are logged and swallowed."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = TutorInteractionLog(
                        user_id=user_id,
                        session_id=session_id,
                        event_type=event_type,
                        timestamp=datetime.utcnow(),
                        **_agent_fields(agent),
                        **_client_fields(client),
                        **fields,
                    )
                    session.add(row)
            return row
        except SQLAlchemyError as e:
            logger.error(f"Failed to write {event_type} audit event for user {user_id}: {e}")
            return None

    async def next_turn(self, session: AsyncSession, session_id: int) -> int:
        """
        Next turn number for a session: highest recorded turn plus one.

        Callers take ``TutorSessionManager.lock_for_turn`` earlier in the same
        transaction so concurrent sends of one session never share a number.
        """
        result = await session.execute(
            select(func.max(TutorInteractionLog.turn)).where(TutorInteractionLog.session_id == session_id)
        )
        return (result.scalar() or 0) + 1

    async def log_turn(
        self,
        session: AsyncSession,
        user_id: int,
        session_id: int,
        mode: str,
        exchanges: Sequence[TurnExchange],
        client: Optional[ClientContext] = None,
    ) -> Optional[int]:
        """
        Write a sent/received row pair per exchange, all under one turn number.

        Runs inside the caller's transaction. Returns the turn number, or None
        when the audit write failed and was rolled back.
        """
        try:
            async with session.begin_nested():
                turn = await self.next_turn(session, session_id)
                for exchange in exchanges:
                    session.add_all(self._exchange_rows(user_id, session_id, turn, mode, exchange, client))
            return turn
        except SQLAlchemyError as e:
            logger.error(f"Failed to write turn audit rows for session {session_id}: {e}")
            return None

    @staticmethod
    def _exchange_rows(
        user_id: int,
        session_id: int,
        turn: int,
        mode: str,
        exchange: TurnExchange,
        client: Optional[ClientContext],
    ) -> List[TutorInteractionLog]:
        user_message = exchange.user_message
        assistant_message = exchange.assistant_message
        common = {
            "user_id": user_id,
            "session_id": session_id,
            "turn": turn,
            "conversation_id": exchange.conversation_id,
            "mode": mode,
            "user_message": user_message.content,
            "message_char_count": len(user_message.content),
            "routing_reason": exchange.routing_reason,
            "routing_confidence": exchange.routing_confidence,
            "agent_contributions": exchange.contributions,
            **_agent_fields(exchange.agent),
            **_client_fields(client),
        }

        sent = TutorInteractionLog(
            event_type=EVENT_MESSAGE_SENT,
            message_id=user_message.id,
            timestamp=user_message.created_at,
            **common,
        )
        received = TutorInteractionLog(
            event_type=EVENT_MESSAGE_RECEIVED,
            message_id=assistant_message.id,
            assistant_message=assistant_message.content,
            response_char_count=len(assistant_message.content),
            ai_model=assistant_message.ai_model,
            ai_provider=exchange.provider,
            prompt_tokens=exchange.prompt_tokens,
            completion_tokens=exchange.completion_tokens,
            total_tokens=exchange.total_tokens,
            response_time_ms=assistant_message.response_time_ms,
            timestamp=assistant_message.created_at,
            **common,
        )
        return [sent, received]

    @staticmethod
    def _date_window(stmt, start_date: Optional[datetime], end_date: Optional[datetime]):
        if start_date is not None:
            stmt = stmt.where(TutorInteractionLog.timestamp >= start_date)
        if end_date is not None:
            stmt = stmt.where(TutorInteractionLog.timestamp <= end_date)
        return stmt

    async def query(
        self,
        user_id: Optional[int] = None,
        session_id: Optional[int] = None,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[TutorInteractionLog]:
        """Filtered log rows, newest first; every supplied filter must match."""
        stmt = select(TutorInteractionLog)
        if user_id is not None:
            stmt = stmt.where(TutorInteractionLog.user_id == user_id)
        if session_id is not None:
            stmt = stmt.where(TutorInteractionLog.session_id == session_id)
        if event_type:
            stmt = stmt.where(TutorInteractionLog.event_type == event_type)
        stmt = self._date_window(stmt, start_date, end_date)
        stmt = stmt.order_by(TutorInteractionLog.timestamp.desc(), TutorInteractionLog.id.desc())
        stmt = stmt.limit(limit or DEFAULT_QUERY_LIMIT)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Aggregate usage figures over an optional date window."""
        log = TutorInteractionLog
        is_message = log.event_type.in_(MESSAGE_EVENTS)

        async with self._session_factory() as session:
            totals = await session.execute(
                self._date_window(
                    select(
                        func.count(distinct(log.session_id)),
                        func.count(distinct(log.user_id)),
                    ),
                    start_date,
                    end_date,
                )
            )
            total_sessions, active_users = totals.one()

            total_messages = await session.scalar(
                self._date_window(select(func.count(log.id)).where(is_message), start_date, end_date)
            )

            average = await session.scalar(
                self._date_window(
                    select(func.avg(log.response_time_ms)).where(
                        log.event_type == EVENT_MESSAGE_RECEIVED,
                        log.response_time_ms.is_not(None),
                    ),
                    start_date,
                    end_date,
                )
            )

            by_mode = await session.execute(
                self._date_window(
                    select(log.mode, func.count(log.id)).where(is_message, log.mode.is_not(None)),
                    start_date,
                    end_date,
                ).group_by(log.mode)
            )
            by_agent = await session.execute(
                self._date_window(
                    select(log.agent_name, func.count(log.id)).where(is_message, log.agent_name.is_not(None)),
                    start_date,
                    end_date,
                ).group_by(log.agent_name)
            )

            return {
                "totalSessions": total_sessions or 0,
                "totalMessages": total_messages or 0,
                "averageResponseTime": int(round(float(average))) if average is not None else 0,
                "activeUsers": active_users or 0,
                "messagesByMode": {mode: count for mode, count in by_mode.all()},
                "messagesByAgent": {name: count for name, count in by_agent.all()},
            }
