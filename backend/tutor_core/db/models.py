"""Database models for the tutoring core.

This module defines SQLAlchemy ORM models for:
- Tutor agents (read-only here, authored by the admin tooling)
- Tutor sessions (one per user)
- Tutor conversations (one per user/agent pair) and their messages
- Provider API configurations
- Tutor interaction logs (append-only audit trail)
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base


SESSION_MODES = ("manual", "router")
MESSAGE_ROLES = ("user", "assistant")


class Agent(Base):
    """Tutor agent (chatbot) configuration."""
    __tablename__ = "tutor_agents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    avatar_url = Column(String(500), nullable=True)
    system_prompt = Column(Text, nullable=False, default="")
    welcome_message = Column(Text, nullable=True)
    personality = Column(String(255), nullable=True)
    response_style = Column(String(100), nullable=True)
    dos_rules = Column(JSON, nullable=True)  # List of strings
    donts_rules = Column(JSON, nullable=True)  # List of strings
    temperature = Column(Float, nullable=True)
    model_preference = Column(String(100), nullable=True)
    category = Column(String(50), nullable=False, default="tutor", index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class TutorSession(Base):
    """Per-user tutoring session holding the mode and active agent."""
    __tablename__ = "tutor_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)  # External identity
    mode = Column(String(20), nullable=False, default="manual")
    active_agent_id = Column(Integer, ForeignKey("tutor_agents.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    active_agent = relationship("Agent", lazy="joined")


class TutorConversation(Base):
    """Conversation between one user and one agent."""
    __tablename__ = "tutor_conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    agent_id = Column(Integer, ForeignKey("tutor_agents.id", ondelete="CASCADE"), nullable=False, index=True)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    agent = relationship("Agent", lazy="joined")
    messages = relationship(
        "TutorMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="TutorMessage.id",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "agent_id", name="unique_user_agent_conversation"),
    )


class TutorMessage(Base):
    """A single immutable message within a conversation."""
    __tablename__ = "tutor_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("tutor_conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = Column(String(20), nullable=False)  # user | assistant
    content = Column(Text, nullable=False)
    ai_model = Column(String(100), nullable=True)
    ai_provider = Column(String(50), nullable=True)
    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    temperature = Column(Float, nullable=True)
    routing_reason = Column(Text, nullable=True)
    routing_confidence = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    conversation = relationship("TutorConversation", back_populates="messages")

    __table_args__ = (
        Index("idx_conversation_order", "conversation_id", "created_at", "id"),
    )


class ApiConfiguration(Base):
    """Persisted LLM provider credentials."""
    __tablename__ = "api_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_name = Column(String(50), nullable=False, index=True)  # openai | gemini
    api_key = Column(String(500), nullable=True)
    default_model = Column(String(100), nullable=True)
    base_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TutorInteractionLog(Base):
    """Append-only audit row for every tutoring event."""
    __tablename__ = "tutor_interaction_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    session_id = Column(Integer, nullable=True, index=True)
    turn = Column(Integer, nullable=True)
    conversation_id = Column(Integer, nullable=True)
    message_id = Column(Integer, nullable=True)
    agent_id = Column(Integer, nullable=True)
    agent_name = Column(String(100), nullable=True)
    agent_display_name = Column(String(255), nullable=True)
    event_type = Column(String(50), nullable=False, index=True)
    mode = Column(String(20), nullable=True)
    user_message = Column(Text, nullable=True)
    assistant_message = Column(Text, nullable=True)
    message_char_count = Column(Integer, nullable=True)
    response_char_count = Column(Integer, nullable=True)
    ai_model = Column(String(100), nullable=True)
    ai_provider = Column(String(50), nullable=True)
    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    routing_reason = Column(Text, nullable=True)
    routing_confidence = Column(Float, nullable=True)
    agent_contributions = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    device_type = Column(String(20), nullable=True)
    browser_name = Column(String(50), nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_session_turn", "session_id", "turn"),
    )
