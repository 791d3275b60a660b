"""
Test the interaction audit logger.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tutor_core.db.base import build_engine
from tutor_core.db.models import TutorInteractionLog
from tutor_core.services.audit import InteractionAuditLogger, TurnExchange
from tutor_core.services.conversations import ConversationStore
from tutor_core.services.device import ClientContext


async def add_logs(session_factory, rows):
    async with session_factory() as session:
        async with session.begin():
            session.add_all(rows)


async def record_turn(session_factory, audit, agent, session_id=1):
    store = ConversationStore()
    async with session_factory() as session:
        async with session.begin():
            conversation = await store.get_or_create(session, 42, agent.id)
            user_message = await store.append_message(session, conversation.id, "user", "Explain recursion")
            assistant_message = await store.append_message(
                session,
                conversation.id,
                "assistant",
                "A function that calls itself.",
                model="gpt-4o-mini",
                response_time_ms=250,
            )
            return await audit.log_turn(
                session,
                42,
                session_id,
                "manual",
                [TurnExchange(agent, conversation.id, user_message, assistant_message, provider="openai")],
                ClientContext(device_type="mobile", browser_name="Safari"),
            )


@pytest.mark.asyncio
class TestTurnLogging:

    async def test_first_turn_is_one(self, session_factory, seeded_agents):
        audit = InteractionAuditLogger(session_factory)

        turn = await record_turn(session_factory, audit, seeded_agents[7])

        rows = await audit.query(session_id=1)
        assert turn == 1
        assert sorted(row.event_type for row in rows) == ["message_received", "message_sent"]
        assert {row.turn for row in rows} == {1}
        assert {row.device_type for row in rows} == {"mobile"}

    async def test_turn_follows_the_highest_recorded_turn(self, session_factory, seeded_agents):
        await add_logs(
            session_factory,
            [
                TutorInteractionLog(user_id=42, session_id=1, turn=4, event_type="message_sent"),
                TutorInteractionLog(user_id=42, session_id=2, turn=9, event_type="message_sent"),
            ],
        )
        audit = InteractionAuditLogger(session_factory)

        turn = await record_turn(session_factory, audit, seeded_agents[7])

        assert turn == 5
        async with session_factory() as session:
            result = await session.execute(
                select(TutorInteractionLog.turn).where(TutorInteractionLog.event_type == "message_received")
            )
            assert result.scalars().all() == [5]

    async def test_received_row_carries_response_metadata(self, session_factory, seeded_agents):
        audit = InteractionAuditLogger(session_factory)
        await record_turn(session_factory, audit, seeded_agents[7])

        received = (await audit.query(event_type="message_received"))[0]

        assert received.agent_name == "socratic-tutor"
        assert received.ai_model == "gpt-4o-mini"
        assert received.ai_provider == "openai"
        assert received.response_time_ms == 250
        assert received.response_char_count == len("A function that calls itself.")


@pytest.mark.asyncio
class TestStandaloneEvents:

    async def test_log_writes_a_row(self, session_factory, seeded_agents):
        audit = InteractionAuditLogger(session_factory)

        row = await audit.log("mode_change", 42, session_id=3, mode="router", agent=seeded_agents[8])

        assert row is not None
        rows = await audit.query(user_id=42)
        assert len(rows) == 1
        assert rows[0].agent_display_name == "Helpful Guide"
        assert rows[0].turn is None

    async def test_log_failure_is_swallowed(self, tmp_path):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
        audit = InteractionAuditLogger(async_sessionmaker(bind=engine, class_=AsyncSession))

        assert await audit.log("error", 42, error_message="boom") is None
        await engine.dispose()


@pytest.mark.asyncio
class TestQueries:

    async def test_filters_are_combined(self, session_factory):
        now = datetime(2024, 5, 1, 12, 0, 0)
        await add_logs(
            session_factory,
            [
                TutorInteractionLog(user_id=42, session_id=1, event_type="message_sent", timestamp=now),
                TutorInteractionLog(user_id=42, session_id=1, event_type="error", timestamp=now),
                TutorInteractionLog(user_id=43, session_id=2, event_type="message_sent", timestamp=now),
                TutorInteractionLog(
                    user_id=42, session_id=1, event_type="message_sent", timestamp=now - timedelta(days=10)
                ),
            ],
        )
        audit = InteractionAuditLogger(session_factory)

        rows = await audit.query(
            user_id=42,
            event_type="message_sent",
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=1),
        )

        assert len(rows) == 1
        assert rows[0].user_id == 42
        assert rows[0].timestamp == now

    async def test_newest_first_and_default_limit(self, session_factory):
        start = datetime(2024, 1, 1)
        await add_logs(
            session_factory,
            [
                TutorInteractionLog(
                    user_id=42, session_id=1, event_type="message_sent", timestamp=start + timedelta(minutes=i)
                )
                for i in range(120)
            ],
        )
        audit = InteractionAuditLogger(session_factory)

        rows = await audit.query()

        assert len(rows) == 100
        assert rows[0].timestamp == start + timedelta(minutes=119)
        assert rows[0].timestamp > rows[-1].timestamp

        assert len(await audit.query(limit=5)) == 5


@pytest.mark.asyncio
class TestStats:

    async def test_aggregates(self, session_factory):
        day = datetime(2024, 3, 1, 9, 0, 0)
        await add_logs(
            session_factory,
            [
                TutorInteractionLog(user_id=1, session_id=10, event_type="session_start", timestamp=day),
                TutorInteractionLog(
                    user_id=1, session_id=10, event_type="message_sent", mode="manual",
                    agent_name="socratic-tutor", timestamp=day,
                ),
                TutorInteractionLog(
                    user_id=1, session_id=10, event_type="message_received", mode="manual",
                    agent_name="socratic-tutor", response_time_ms=200, timestamp=day,
                ),
                TutorInteractionLog(
                    user_id=2, session_id=11, event_type="message_sent", mode="router",
                    agent_name="helper-tutor", timestamp=day,
                ),
                TutorInteractionLog(
                    user_id=2, session_id=11, event_type="message_received", mode="router",
                    agent_name="helper-tutor", response_time_ms=400, timestamp=day,
                ),
                TutorInteractionLog(
                    user_id=3, session_id=12, event_type="message_received", mode="manual",
                    agent_name="helper-tutor", response_time_ms=999, timestamp=day - timedelta(days=30),
                ),
            ],
        )
        audit = InteractionAuditLogger(session_factory)

        stats = await audit.stats(start_date=day - timedelta(days=1), end_date=day + timedelta(days=1))

        assert stats["totalSessions"] == 2
        assert stats["totalMessages"] == 4
        assert stats["averageResponseTime"] == 300
        assert stats["activeUsers"] == 2
        assert stats["messagesByMode"] == {"manual": 2, "router": 2}
        assert stats["messagesByAgent"] == {"socratic-tutor": 2, "helper-tutor": 2}

        everything = await audit.stats()
        assert everything["totalSessions"] == 3
        assert everything["activeUsers"] == 3
        assert everything["totalMessages"] == 5

    async def test_empty_history(self, session_factory):
        stats = await InteractionAuditLogger(session_factory).stats()

        assert stats == {
            "totalSessions": 0,
            "totalMessages": 0,
            "averageResponseTime": 0,
            "activeUsers": 0,
            "messagesByMode": {},
            "messagesByAgent": {},
        }
