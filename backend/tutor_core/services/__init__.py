"""Tutoring services: sessions, conversations, routing, collaboration and audit."""

from .audit import EVENT_TYPES, InteractionAuditLogger, TurnExchange
from .collaboration import (
    AttributedResponseComposer,
    CollaborationSettings,
    MultiAgentCollaborationEngine,
    ResponseComposer,
)
from .conversations import ConversationPreview, ConversationStore
from .device import ClientContext, DeviceContextResolver, classify_device, detect_browser
from .routing import AgentSelector, KeywordAgentSelector, LLMAgentSelector, RoutingDecision
from .sessions import TutorSessionManager
from .tutor import SendResult, TutorService, build_system_prompt, build_tutor_service

__all__ = [
    "EVENT_TYPES",
    "AgentSelector",
    "AttributedResponseComposer",
    "ClientContext",
    "CollaborationSettings",
    "ConversationPreview",
    "ConversationStore",
    "DeviceContextResolver",
    "InteractionAuditLogger",
    "KeywordAgentSelector",
    "LLMAgentSelector",
    "MultiAgentCollaborationEngine",
    "ResponseComposer",
    "RoutingDecision",
    "SendResult",
    "TurnExchange",
    "TutorService",
    "TutorSessionManager",
    "build_system_prompt",
    "build_tutor_service",
    "classify_device",
    "detect_browser",
]
