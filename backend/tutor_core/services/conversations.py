"""Per (user, agent) conversation storage.

All methods work inside the caller's session so that a whole turn can be
written in one transaction; nothing here commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFoundError, ValidationError
from ..db.models import MESSAGE_ROLES, TutorConversation, TutorMessage

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 20


@dataclass
class ConversationPreview:
    conversation: TutorConversation
    last_message: Optional[TutorMessage]


class ConversationStore:
    """CRUD and bounded-window reads over tutor conversations."""

    async def get(self, session: AsyncSession, user_id: int, agent_id: int) -> Optional[TutorConversation]:
        result = await session.execute(
            select(TutorConversation).where(
                TutorConversation.user_id == user_id,
                TutorConversation.agent_id == agent_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, session: AsyncSession, user_id: int, agent_id: int) -> TutorConversation:
        """Return the conversation for the pair, creating an empty one on first access."""
        conversation = await self.get(session, user_id, agent_id)
        if conversation is not None:
            return conversation

        try:
            async with session.begin_nested():
                conversation = TutorConversation(user_id=user_id, agent_id=agent_id, message_count=0)
                session.add(conversation)
        except IntegrityError:
            # Created concurrently by another request for the same pair.
            conversation = await self.get(session, user_id, agent_id)
            if conversation is None:
                raise
            return conversation

        logger.info(f"Created conversation {conversation.id} for user {user_id} / agent {agent_id}")
        return conversation

    async def append_message(
        self,
        session: AsyncSession,
        conversation_id: int,
        role: str,
        content: str,
        model: Optional[str] = None,
        created_at: Optional[datetime] = None,
        **metadata,
    ) -> TutorMessage:
        """Append a message at the end of the conversation."""
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"Invalid message role: {role}")

        conversation = await session.get(TutorConversation, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        now = datetime.utcnow()
        message = TutorMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            ai_model=model,
            created_at=created_at or now,
            **metadata,
        )
        session.add(message)

        conversation.message_count = (conversation.message_count or 0) + 1
        conversation.last_message_at = now
        await session.flush()
        return message

    async def recent_history(
        self,
        session: AsyncSession,
        conversation_id: int,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> List[TutorMessage]:
        """
        Return at most ``window_size`` of the most recent messages, oldest first.

        The window only bounds what is sent to a provider; stored history is
        never trimmed.
        """
        if window_size <= 0:
            return []

        result = await session.execute(
            select(TutorMessage)
            .where(TutorMessage.conversation_id == conversation_id)
            .order_by(TutorMessage.created_at.desc(), TutorMessage.id.desc())
            .limit(window_size)
        )
        return list(reversed(result.scalars().all()))

    async def messages(self, session: AsyncSession, conversation_id: int) -> List[TutorMessage]:
        result = await session.execute(
            select(TutorMessage)
            .where(TutorMessage.conversation_id == conversation_id)
            .order_by(TutorMessage.created_at.asc(), TutorMessage.id.asc())
        )
        return list(result.scalars().all())

    async def clear(self, session: AsyncSession, conversation_id: int) -> int:
        """Delete every message of the conversation; the conversation row stays."""
        conversation = await session.get(TutorConversation, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        result = await session.execute(
            delete(TutorMessage).where(TutorMessage.conversation_id == conversation_id)
        )
        conversation.message_count = 0
        conversation.last_message_at = None
        await session.flush()
        deleted = result.rowcount or 0
        logger.info(f"Cleared {deleted} messages from conversation {conversation_id}")
        return deleted

    async def list_for_user(self, session: AsyncSession, user_id: int) -> List[ConversationPreview]:
        """All conversations of a user, most recently active first, with a last-message preview."""
        result = await session.execute(
            select(TutorConversation)
            .where(TutorConversation.user_id == user_id)
            .order_by(TutorConversation.last_message_at.desc(), TutorConversation.id.desc())
        )
        conversations = result.scalars().unique().all()

        previews = []
        for conversation in conversations:
            last_result = await session.execute(
                select(TutorMessage)
                .where(TutorMessage.conversation_id == conversation.id)
                .order_by(TutorMessage.created_at.desc(), TutorMessage.id.desc())
                .limit(1)
            )
            previews.append(ConversationPreview(conversation, last_result.scalar_one_or_none()))
        return previews
