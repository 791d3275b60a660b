"""
Test the tutor API end to end: sessions, messaging, collaboration and admin logs.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from conftest import OTHER_STUDENT_ID, STUDENT_ID, auth_headers, build_service, make_settings
from tutor_core.api.tutor import get_tutor_service
from tutor_core.db.models import TutorConversation, TutorInteractionLog, TutorSession
from tutor_core.main import app


API = "/api/v1/tutors"


async def choose_agent(client: AsyncClient, headers: dict, agent_id=7):
    response = await client.put(f"{API}/session/active-agent", json={"agentId": agent_id}, headers=headers)
    assert response.status_code == 200
    return response


async def send(client: AsyncClient, headers: dict, message: str, **body):
    return await client.post(f"{API}/messages", json={"message": message, **body}, headers=headers)


async def conversation_messages(client: AsyncClient, headers: dict, agent_id: int) -> list:
    response = await client.get(f"{API}/conversations/{agent_id}", headers=headers)
    assert response.status_code == 200
    return response.json()["data"]["messages"]


@pytest.mark.asyncio
class TestSession:

    async def test_requires_token(self, async_client: AsyncClient):
        response = await async_client.get(f"{API}/session")

        assert response.status_code == 401
        assert response.json()["success"] is False

    async def test_session_overview(self, async_client: AsyncClient, student_headers):
        response = await async_client.get(f"{API}/session", headers=student_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["session"]["userId"] == STUDENT_ID
        assert data["session"]["mode"] == "manual"
        assert data["session"]["activeAgent"] is None
        assert data["conversations"] == []
        assert [agent["name"] for agent in data["agents"]] == ["beatrice-peer", "helper-tutor", "socratic-tutor"]

    async def test_invalid_mode(self, async_client: AsyncClient, student_headers):
        response = await async_client.put(f"{API}/session/mode", json={"mode": "auto"}, headers=student_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_switch_to_router(self, async_client: AsyncClient, student_headers):
        response = await async_client.put(f"{API}/session/mode", json={"mode": "router"}, headers=student_headers)

        assert response.status_code == 200
        assert response.json()["data"]["mode"] == "router"

    async def test_set_active_agent(self, async_client: AsyncClient, student_headers):
        response = await choose_agent(async_client, student_headers, "8")

        session = response.json()["data"]
        assert session["activeAgentId"] == 8
        assert session["activeAgent"]["displayName"] == "Helpful Guide"

    @pytest.mark.parametrize(
        "body, status_code",
        [
            ({}, 400),
            ({"agentId": "seven"}, 400),
            ({"agentId": 999}, 404),
            ({"agentId": 10}, 404),
        ],
    )
    async def test_rejected_active_agent(self, async_client: AsyncClient, student_headers, body, status_code):
        response = await async_client.put(f"{API}/session/active-agent", json=body, headers=student_headers)

        assert response.status_code == status_code
        assert response.json()["success"] is False


@pytest.mark.asyncio
class TestManualMessaging:

    async def test_manual_turn_is_persisted_and_audited(
        self, async_client: AsyncClient, student_headers, tutor_service, fake_adapter
    ):
        await choose_agent(async_client, student_headers, 7)

        response = await send(async_client, student_headers, "Explain recursion")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["userMessage"]["content"] == "Explain recursion"
        assert data["assistantMessage"]["content"] == "Reply from socratic-tutor: Explain recursion"
        assert data["model"] == "gpt-4o-mini"
        assert isinstance(data["responseTimeMs"], int)
        assert data["agent"]["id"] == 7
        assert data["turn"] == 1
        assert "routingInfo" not in data

        messages = await conversation_messages(async_client, student_headers, 7)
        assert [message["role"] for message in messages] == ["user", "assistant"]

        rows = [
            row for row in await tutor_service.audit.query(user_id=STUDENT_ID)
            if row.event_type in ("message_sent", "message_received")
        ]
        assert len(rows) == 2
        assert {row.turn for row in rows} == {1}
        assert {row.agent_id for row in rows} == {7}

        second = await send(async_client, student_headers, "And tail recursion?")
        assert second.json()["data"]["turn"] == 2
        assert len(fake_adapter.calls[1]["prompt"]) > len(fake_adapter.calls[0]["prompt"])

    async def test_addressed_message_uses_agent_model(
        self, async_client: AsyncClient, student_headers, fake_adapter
    ):
        response = await async_client.post(
            f"{API}/conversations/9/message",
            json={"message": "I'm stuck on my homework"},
            headers=student_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["model"] == "o3-mini"
        assert fake_adapter.calls[0]["model"] == "o3-mini"

    async def test_no_active_agent(self, async_client: AsyncClient, student_headers, fake_adapter):
        response = await send(async_client, student_headers, "Hello?")

        assert response.status_code == 400
        assert response.json()["error"] == "No active agent selected"
        assert fake_adapter.calls == []

    @pytest.mark.parametrize("body", [{"message": "   "}, {"message": ""}, {}])
    async def test_empty_message_has_no_side_effects(
        self, async_client: AsyncClient, student_headers, tutor_service, fake_adapter, body
    ):
        response = await async_client.post(f"{API}/messages", json=body, headers=student_headers)

        assert response.status_code == 400
        assert fake_adapter.calls == []
        assert await tutor_service.audit.query(user_id=STUDENT_ID) == []

    @pytest.mark.parametrize(
        "method, path",
        [
            ("GET", "/conversations/abc"),
            ("DELETE", "/conversations/abc"),
            ("POST", "/conversations/abc/message"),
        ],
    )
    async def test_non_numeric_agent_id(
        self, async_client: AsyncClient, student_headers, tutor_service, fake_adapter, session_factory, method, path
    ):
        response = await async_client.request(
            method, f"{API}{path}", json={"message": "hi"} if method == "POST" else None, headers=student_headers
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid agent identifier"
        assert fake_adapter.calls == []
        assert await tutor_service.audit.query(user_id=STUDENT_ID) == []
        async with session_factory() as session:
            assert await session.scalar(select(func.count(TutorConversation.id))) == 0
            assert await session.scalar(select(func.count(TutorSession.id))) == 0

    async def test_inactive_agent_cannot_be_addressed(self, async_client: AsyncClient, student_headers):
        response = await async_client.post(
            f"{API}/conversations/10/message", json={"message": "hello"}, headers=student_headers
        )

        assert response.status_code == 404

    async def test_provider_failure(self, async_client: AsyncClient, student_headers, tutor_service, fake_adapter):
        fake_adapter.failing_agents = {"socratic-tutor"}
        await choose_agent(async_client, student_headers, 7)

        response = await send(async_client, student_headers, "Explain recursion")

        assert response.status_code == 502
        assert response.json()["code"] == "AI_ERROR"
        assert await conversation_messages(async_client, student_headers, 7) == []
        errors = await tutor_service.audit.query(user_id=STUDENT_ID, event_type="error")
        assert len(errors) == 1
        assert errors[0].agent_id == 7

    async def test_no_provider_configured(
        self, async_client: AsyncClient, student_headers, session_factory, tmp_path, fake_adapter
    ):
        unconfigured = build_service(
            session_factory, make_settings(tmp_path, OPENAI_API_KEY="", GEMINI_API_KEY=""), fake_adapter
        )
        app.dependency_overrides[get_tutor_service] = lambda: unconfigured

        response = await async_client.post(
            f"{API}/conversations/7/message", json={"message": "Explain recursion"}, headers=student_headers
        )

        assert response.status_code == 500
        assert response.json()["code"] == "CONFIGURATION_ERROR"
        assert fake_adapter.calls == []
        listing = await async_client.get(f"{API}/conversations", headers=student_headers)
        assert listing.json()["data"] == []


@pytest.mark.asyncio
class TestRouterMessaging:

    async def test_router_picks_agent(self, async_client: AsyncClient, student_headers):
        await async_client.put(f"{API}/session/mode", json={"mode": "router"}, headers=student_headers)

        response = await send(async_client, student_headers, "Could you show worked examples for sorting?")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["agent"]["name"] == "helper-tutor"
        assert data["routingInfo"]["selectedAgent"]["id"] == 8
        assert data["routingInfo"]["strategy"] == "keyword"
        assert data["userMessage"]["routingReason"]
        assert len(await conversation_messages(async_client, student_headers, 8)) == 2


@pytest.mark.asyncio
class TestCollaborativeMessaging:

    async def test_partial_failure(self, async_client: AsyncClient, student_headers, tutor_service, fake_adapter):
        fake_adapter.failing_agents = {"helper-tutor"}

        response = await async_client.post(
            f"{API}/conversations/7/message",
            json={
                "message": "Explain recursion",
                "collaborativeSettings": {"style": "parallel", "maxAgents": 2, "agentIds": [7, 8]},
            },
            headers=student_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        info = data["collaborativeInfo"]
        assert info["succeeded"] == [7]
        assert info["failed"] == [8]
        assert info["primaryAgentId"] == 7
        assert [reply["agentId"] for reply in data["assistantMessages"]] == [7]
        assert data["assistantMessage"]["content"] == "Reply from socratic-tutor: Explain recursion"

        assert len(await conversation_messages(async_client, student_headers, 7)) == 2
        assert await conversation_messages(async_client, student_headers, 8) == []

        errors = await tutor_service.audit.query(user_id=STUDENT_ID, event_type="error")
        assert [row.agent_id for row in errors] == [8]
        received = await tutor_service.audit.query(user_id=STUDENT_ID, event_type="message_received")
        assert len(received) == 1
        assert received[0].agent_contributions[1]["status"] == "failed"

    async def test_every_agent_answers(self, async_client: AsyncClient, student_headers, tutor_service):
        response = await async_client.post(
            f"{API}/conversations/7/message",
            json={"message": "Explain recursion", "collaborativeSettings": {"agentIds": [7, 8]}},
            headers=student_headers,
        )

        data = response.json()["data"]
        assert data["collaborativeInfo"]["succeeded"] == [7, 8]
        assert "**Helpful Guide**" in data["collaborativeInfo"]["combinedReply"]

        rows = await tutor_service.audit.query(user_id=STUDENT_ID, event_type="message_sent")
        assert len(rows) == 2
        assert {row.turn for row in rows} == {1}

    async def test_all_agents_fail(self, async_client: AsyncClient, student_headers, fake_adapter):
        fake_adapter.failing_agents = {"socratic-tutor", "helper-tutor"}

        response = await async_client.post(
            f"{API}/conversations/7/message",
            json={"message": "Explain recursion", "collaborativeSettings": {"agentIds": [7, 8]}},
            headers=student_headers,
        )

        assert response.status_code == 502
        assert await conversation_messages(async_client, student_headers, 7) == []

    @pytest.mark.parametrize(
        "settings",
        [{"style": "sequential"}, {"maxAgents": 0}, {"maxAgents": "many"}],
    )
    async def test_invalid_settings(self, async_client: AsyncClient, student_headers, fake_adapter, settings):
        response = await async_client.post(
            f"{API}/conversations/7/message",
            json={"message": "Explain recursion", "collaborativeSettings": settings},
            headers=student_headers,
        )

        assert response.status_code == 400
        assert fake_adapter.calls == []

    async def test_unknown_collaborator(self, async_client: AsyncClient, student_headers, fake_adapter):
        response = await async_client.post(
            f"{API}/conversations/7/message",
            json={"message": "Explain recursion", "collaborativeSettings": {"agentIds": [7, 999]}},
            headers=student_headers,
        )

        assert response.status_code == 404
        assert fake_adapter.calls == []


@pytest.mark.asyncio
class TestConversations:

    async def test_clear_conversation(self, async_client: AsyncClient, student_headers, tutor_service):
        await async_client.post(
            f"{API}/conversations/7/message", json={"message": "Explain recursion"}, headers=student_headers
        )

        response = await async_client.delete(f"{API}/conversations/7", headers=student_headers)

        assert response.status_code == 200
        assert response.json()["data"] == {"agentId": 7, "deletedCount": 2}
        conversation = (await async_client.get(f"{API}/conversations/7", headers=student_headers)).json()["data"]
        assert conversation["messages"] == []
        assert conversation["messageCount"] == 0
        clears = await tutor_service.audit.query(user_id=STUDENT_ID, event_type="conversation_clear")
        assert len(clears) == 1

    async def test_clear_missing_conversation(self, async_client: AsyncClient, student_headers):
        response = await async_client.delete(f"{API}/conversations/8", headers=student_headers)

        assert response.status_code == 404

    async def test_conversations_are_private(self, async_client: AsyncClient, student_headers):
        await async_client.post(
            f"{API}/conversations/7/message", json={"message": "Explain recursion"}, headers=student_headers
        )

        mine = await async_client.get(f"{API}/conversations", headers=student_headers)
        theirs = await async_client.get(f"{API}/conversations", headers=auth_headers(OTHER_STUDENT_ID))

        assert [item["agentId"] for item in mine.json()["data"]] == [7]
        assert mine.json()["data"][0]["lastMessage"]["role"] == "assistant"
        assert theirs.json()["data"] == []


@pytest.mark.asyncio
class TestAdminLogs:

    async def test_students_are_forbidden(self, async_client: AsyncClient, student_headers):
        logs = await async_client.get(f"{API}/logs", headers=student_headers)
        stats = await async_client.get(f"{API}/logs/stats", headers=student_headers)

        assert logs.status_code == 403
        assert stats.status_code == 403

    async def test_default_limit_and_filters(self, async_client: AsyncClient, admin_headers, session_factory):
        start = datetime(2024, 1, 1)
        async with session_factory() as session:
            async with session.begin():
                session.add_all(
                    TutorInteractionLog(
                        user_id=STUDENT_ID,
                        session_id=1,
                        event_type="message_sent" if i % 2 else "message_received",
                        timestamp=start + timedelta(minutes=i),
                    )
                    for i in range(120)
                )

        everything = await async_client.get(f"{API}/logs", headers=admin_headers)
        sent = await async_client.get(
            f"{API}/logs", params={"eventType": "message_sent", "limit": 500}, headers=admin_headers
        )
        bad_limit = await async_client.get(f"{API}/logs", params={"limit": 0}, headers=admin_headers)

        assert everything.status_code == 200
        rows = everything.json()["data"]
        assert len(rows) == 100
        assert rows[0]["timestamp"] == (start + timedelta(minutes=119)).isoformat()
        assert len(sent.json()["data"]) == 60
        assert bad_limit.status_code == 400

    async def test_stats(self, async_client: AsyncClient, student_headers, admin_headers):
        await choose_agent(async_client, student_headers, 7)
        await send(async_client, student_headers, "Explain recursion")

        response = await async_client.get(f"{API}/logs/stats", headers=admin_headers)

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["totalSessions"] == 1
        assert stats["totalMessages"] == 2
        assert stats["activeUsers"] == 1
        assert stats["messagesByAgent"] == {"socratic-tutor": 2}
        assert isinstance(stats["averageResponseTime"], int)


@pytest.mark.asyncio
class TestConcurrentSends:

    async def test_different_users_send_at_once(self, tutor_service, fake_adapter):
        results = await asyncio.gather(
            *(tutor_service.send_message(user_id, "hello", agent_id=7) for user_id in (101, 102, 103))
        )

        assert [result.turn for result in results] == [1, 1, 1]
        assert len(fake_adapter.calls) == 3
        for user_id in (101, 102, 103):
            rows = await tutor_service.audit.query(user_id=user_id, event_type="message_received")
            assert len(rows) == 1

    async def test_one_session_gets_consecutive_turns(self, tutor_service):
        await tutor_service.sessions.get_or_create_session(STUDENT_ID)

        results = await asyncio.gather(
            *(tutor_service.send_message(STUDENT_ID, f"question {index}", agent_id=7) for index in range(3))
        )

        assert sorted(result.turn for result in results) == [1, 2, 3]
        rows = await tutor_service.audit.query(user_id=STUDENT_ID, event_type="message_received")
        assert sorted(row.turn for row in rows) == [1, 2, 3]
        _, conversation, messages = await tutor_service.get_conversation(STUDENT_ID, 7)
        assert conversation.message_count == 6
        assert len(messages) == 6
