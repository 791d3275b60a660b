"""Tutor API endpoints: sessions, conversations, messaging and admin logs."""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from ..core.config import get_settings
from ..core.errors import ValidationError
from ..db.base import get_session_maker
from ..db.models import Agent, TutorConversation, TutorInteractionLog, TutorMessage, TutorSession
from ..services.collaboration import CollaborationSettings
from ..services.conversations import ConversationPreview
from ..services.device import ClientContext, DeviceContextResolver
from ..services.routing import RoutingDecision
from ..services.tutor import SendResult, TutorService, build_tutor_service
from .auth import CurrentUser, get_current_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tutors", tags=["Tutors"])

_device_resolver = DeviceContextResolver()


# ==============================================================================
# Dependencies
# ==============================================================================

@lru_cache
def get_tutor_service() -> TutorService:
    """Process-wide tutor service bound to the configured database."""
    return build_tutor_service(get_session_maker(), get_settings())


def get_client_context(
    request: Request,
    user_agent: Optional[str] = Header(None),
    x_device_type: Optional[str] = Header(None),
    x_forwarded_for: Optional[str] = Header(None),
) -> ClientContext:
    """Device, browser and address of the caller."""
    ip_address = None
    if x_forwarded_for:
        ip_address = x_forwarded_for.split(",")[0].strip()
    elif request.client:
        ip_address = request.client.host
    return _device_resolver.resolve(user_agent, device_hint=x_device_type, ip_address=ip_address)


def parse_agent_id(raw: Any) -> int:
    """Parse an agent identifier from a path or body value."""
    if isinstance(raw, bool):
        raise ValidationError("Invalid agent identifier")
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        raise ValidationError("Invalid agent identifier") from None


# ==============================================================================
# Pydantic Models
# ==============================================================================

class ModeUpdate(BaseModel):
    """Session mode change."""
    mode: Optional[str] = None


class ActiveAgentUpdate(BaseModel):
    """Active agent change."""
    agentId: Any = None


class CollaborativeSettingsBody(BaseModel):
    """Per-request collaboration settings."""
    style: Optional[str] = "parallel"
    maxAgents: Optional[int] = None
    agentIds: Optional[List[int]] = None


class SendMessageRequest(BaseModel):
    """Learner message."""
    message: Optional[str] = None
    collaborativeSettings: Optional[CollaborativeSettingsBody] = None


# ==============================================================================
# Serializers
# ==============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_agent(agent: Optional[Agent]) -> Optional[dict]:
    if agent is None:
        return None
    return {
        "id": agent.id,
        "name": agent.name,
        "displayName": agent.display_name,
        "description": agent.description,
        "avatarUrl": agent.avatar_url,
        "welcomeMessage": agent.welcome_message,
        "personality": agent.personality,
        "responseStyle": agent.response_style,
        "category": agent.category,
    }


def serialize_session(tutor_session: TutorSession) -> dict:
    return {
        "id": tutor_session.id,
        "userId": tutor_session.user_id,
        "mode": tutor_session.mode,
        "activeAgentId": tutor_session.active_agent_id,
        "activeAgent": serialize_agent(tutor_session.active_agent),
        "createdAt": _iso(tutor_session.created_at),
        "updatedAt": _iso(tutor_session.updated_at),
    }


def serialize_message(message: TutorMessage) -> dict:
    data = {
        "id": message.id,
        "conversationId": message.conversation_id,
        "role": message.role,
        "content": message.content,
        "createdAt": _iso(message.created_at),
    }
    if message.role == "assistant":
        data.update(
            aiModel=message.ai_model,
            aiProvider=message.ai_provider,
            responseTimeMs=message.response_time_ms,
            temperature=message.temperature,
        )
    if message.routing_reason:
        data.update(routingReason=message.routing_reason, routingConfidence=message.routing_confidence)
    return data


def serialize_conversation(
    conversation: TutorConversation,
    agent: Optional[Agent] = None,
    last_message: Optional[TutorMessage] = None,
) -> dict:
    data = {
        "id": conversation.id,
        "userId": conversation.user_id,
        "agentId": conversation.agent_id,
        "agent": serialize_agent(agent),
        "messageCount": conversation.message_count,
        "lastMessageAt": _iso(conversation.last_message_at),
        "createdAt": _iso(conversation.created_at),
    }
    if last_message is not None:
        data["lastMessage"] = {
            "role": last_message.role,
            "content": last_message.content[:200],
            "createdAt": _iso(last_message.created_at),
        }
    return data


def serialize_preview(preview: ConversationPreview) -> dict:
    return serialize_conversation(preview.conversation, preview.conversation.agent, preview.last_message)


def serialize_routing(decision: RoutingDecision) -> dict:
    return {
        "selectedAgent": {
            "id": decision.agent.id,
            "name": decision.agent.name,
            "displayName": decision.agent.display_name,
        },
        "reason": decision.reason,
        "confidence": decision.confidence,
        "strategy": decision.strategy,
        "alternatives": decision.alternatives,
    }


def serialize_send_result(result: SendResult) -> dict:
    data = {
        "userMessage": serialize_message(result.user_message),
        "assistantMessage": serialize_message(result.assistant_message),
        "model": result.model,
        "responseTimeMs": result.response_time_ms,
        "agent": serialize_agent(result.agent),
        "turn": result.turn,
    }
    if result.routing is not None:
        data["routingInfo"] = serialize_routing(result.routing)
    if result.collaboration is not None:
        data["collaborativeInfo"] = result.collaboration.info()
        data["assistantMessages"] = [
            {
                "agentId": reply.agent.id,
                "agentName": reply.agent.name,
                "displayName": reply.agent.display_name,
                "message": serialize_message(reply.assistant_message),
            }
            for reply in result.replies
        ]
    return data


def serialize_log(row: TutorInteractionLog) -> dict:
    return {
        "id": row.id,
        "userId": row.user_id,
        "sessionId": row.session_id,
        "turn": row.turn,
        "conversationId": row.conversation_id,
        "messageId": row.message_id,
        "agentId": row.agent_id,
        "agentName": row.agent_name,
        "agentDisplayName": row.agent_display_name,
        "eventType": row.event_type,
        "mode": row.mode,
        "userMessage": row.user_message,
        "assistantMessage": row.assistant_message,
        "messageCharCount": row.message_char_count,
        "responseCharCount": row.response_char_count,
        "aiModel": row.ai_model,
        "aiProvider": row.ai_provider,
        "promptTokens": row.prompt_tokens,
        "completionTokens": row.completion_tokens,
        "totalTokens": row.total_tokens,
        "responseTimeMs": row.response_time_ms,
        "routingReason": row.routing_reason,
        "routingConfidence": row.routing_confidence,
        "agentContributions": row.agent_contributions,
        "errorMessage": row.error_message,
        "errorCode": row.error_code,
        "ipAddress": row.ip_address,
        "userAgent": row.user_agent,
        "deviceType": row.device_type,
        "browserName": row.browser_name,
        "timestamp": _iso(row.timestamp),
    }


def _ok(data: Any) -> dict:
    return {"success": True, "data": data}


def _collaboration_settings(body: Optional[CollaborativeSettingsBody]) -> Optional[CollaborationSettings]:
    if body is None:
        return None
    settings = get_settings()
    return CollaborationSettings.build(
        style=body.style,
        max_agents=body.maxAgents,
        agent_ids=body.agentIds,
        default_agents=settings.COLLABORATION_DEFAULT_AGENTS,
        agent_cap=settings.COLLABORATION_MAX_AGENTS,
    )


# ==============================================================================
# Session
# ==============================================================================

@router.get("/session")
async def get_session(
    current_user: CurrentUser = Depends(get_current_user),
    client: ClientContext = Depends(get_client_context),
    service: TutorService = Depends(get_tutor_service),
):
    """Get or create the caller's session with conversations and available agents."""
    overview = await service.get_session_overview(current_user.id, client)
    return _ok({
        "session": serialize_session(overview.session),
        "conversations": [serialize_preview(preview) for preview in overview.conversations],
        "agents": [serialize_agent(agent) for agent in overview.agents],
    })


@router.put("/session/mode")
async def update_session_mode(
    body: ModeUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    client: ClientContext = Depends(get_client_context),
    service: TutorService = Depends(get_tutor_service),
):
    tutor_session = await service.sessions.update_mode(current_user.id, body.mode, client)
    return _ok(serialize_session(tutor_session))


@router.put("/session/active-agent")
async def set_active_agent(
    body: ActiveAgentUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    client: ClientContext = Depends(get_client_context),
    service: TutorService = Depends(get_tutor_service),
):
    if body.agentId is None or body.agentId == "":
        raise ValidationError("agentId is required")
    agent_id = parse_agent_id(body.agentId)

    tutor_session = await service.sessions.set_active_agent(current_user.id, agent_id, client)
    return _ok(serialize_session(tutor_session))


# ==============================================================================
# Conversations
# ==============================================================================

@router.get("/conversations")
async def list_conversations(
    current_user: CurrentUser = Depends(get_current_user),
    service: TutorService = Depends(get_tutor_service),
):
    previews = await service.list_conversations(current_user.id)
    return _ok([serialize_preview(preview) for preview in previews])


@router.get("/conversations/{agent_id}")
async def get_conversation(
    agent_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: TutorService = Depends(get_tutor_service),
):
    """Get or create the conversation with an agent, including its messages."""
    parsed_id = parse_agent_id(agent_id)
    agent, conversation, messages = await service.get_conversation(current_user.id, parsed_id)
    data = serialize_conversation(conversation, agent)
    data["messages"] = [serialize_message(message) for message in messages]
    return _ok(data)


@router.delete("/conversations/{agent_id}")
async def clear_conversation(
    agent_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    client: ClientContext = Depends(get_client_context),
    service: TutorService = Depends(get_tutor_service),
):
    parsed_id = parse_agent_id(agent_id)
    deleted = await service.clear_conversation(current_user.id, parsed_id, client)
    return _ok({"agentId": parsed_id, "deletedCount": deleted})


# ==============================================================================
# Messaging
# ==============================================================================

@router.post("/conversations/{agent_id}/message")
async def send_message_to_agent(
    agent_id: str,
    body: SendMessageRequest,
    current_user: CurrentUser = Depends(get_current_user),
    client: ClientContext = Depends(get_client_context),
    service: TutorService = Depends(get_tutor_service),
):
    """Send a message to a specific agent, optionally fanning out to collaborators."""
    parsed_id = parse_agent_id(agent_id)
    if not (body.message or "").strip():
        raise ValidationError("Message is required")
    collaboration = _collaboration_settings(body.collaborativeSettings)

    result = await service.send_message(
        current_user.id,
        body.message,
        agent_id=parsed_id,
        collaboration=collaboration,
        client=client,
    )
    return _ok(serialize_send_result(result))


@router.post("/messages")
async def send_message(
    body: SendMessageRequest,
    current_user: CurrentUser = Depends(get_current_user),
    client: ClientContext = Depends(get_client_context),
    service: TutorService = Depends(get_tutor_service),
):
    """Send an unaddressed message; the session mode decides which agent answers."""
    if not (body.message or "").strip():
        raise ValidationError("Message is required")
    collaboration = _collaboration_settings(body.collaborativeSettings)

    result = await service.send_message(
        current_user.id,
        body.message,
        collaboration=collaboration,
        client=client,
    )
    return _ok(serialize_send_result(result))


# ==============================================================================
# Agents
# ==============================================================================

@router.get("/agents")
async def list_agents(
    current_user: CurrentUser = Depends(get_current_user),
    service: TutorService = Depends(get_tutor_service),
):
    agents = await service.sessions.list_agents()
    return _ok([serialize_agent(agent) for agent in agents])


# ==============================================================================
# Admin
# ==============================================================================

@router.get("/logs")
async def list_interaction_logs(
    admin: CurrentUser = Depends(require_admin),
    service: TutorService = Depends(get_tutor_service),
    user_id: Optional[int] = Query(None, alias="userId"),
    session_id: Optional[int] = Query(None, alias="sessionId"),
    event_type: Optional[str] = Query(None, alias="eventType"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(100, ge=1, le=1000),
):
    """Filtered interaction logs, newest first."""
    rows = await service.audit.query(
        user_id=user_id,
        session_id=session_id,
        event_type=event_type,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )
    return _ok([serialize_log(row) for row in rows])


@router.get("/logs/stats")
async def get_interaction_stats(
    admin: CurrentUser = Depends(require_admin),
    service: TutorService = Depends(get_tutor_service),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
):
    stats = await service.audit.stats(start_date=start_date, end_date=end_date)
    return _ok(stats)
