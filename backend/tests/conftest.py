"""
Pytest configuration and fixtures for the tutor core tests.
"""

import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tutor_core.api.tutor import get_tutor_service
from tutor_core.core.config import Settings
from tutor_core.core.security import create_access_token
from tutor_core.db.base import build_engine, init_database
from tutor_core.db.models import Agent
from tutor_core.main import app
from tutor_core.providers import ProviderAdapter, ProviderConfigResolver, ProviderGateway
from tutor_core.services.tutor import TutorService


STUDENT_ID = 42
OTHER_STUDENT_ID = 43
ADMIN_ID = 1


class FakeAdapter(ProviderAdapter):
    """Adapter that answers locally and records every call."""

    name = "openai"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.calls = []
        self.failing_agents = set()

    async def _invoke(self, selection, model, prompt, params, request):
        agent = request.metadata.get("agent")
        self.calls.append({"agent": agent, "model": model, "prompt": prompt, "params": params})
        if agent in self.failing_agents:
            raise RuntimeError(f"upstream exploded for {agent}")
        return f"Reply from {agent}: {request.message}", {
            "prompt_tokens": 12,
            "completion_tokens": 8,
            "total_tokens": 20,
        }


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'tutor_test.db'}",
        "OPENAI_API_KEY": "test-openai-key",
        "GEMINI_API_KEY": "",
        "ROUTER_STRATEGY": "keyword",
        "LLM_REQUEST_TIMEOUT": 5.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def test_engine(test_settings: Settings):
    """File-backed SQLite database with all tables created."""
    engine = build_engine(test_settings.DATABASE_URL)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def seeded_agents(session_factory) -> dict:
    """Three active tutor agents plus one retired agent."""
    agents = [
        Agent(
            id=7,
            name="socratic-tutor",
            display_name="Socratic Tutor",
            description="Guides conceptual understanding through questions",
            system_prompt="You are a Socratic tutor.",
            personality="curious patient",
            response_style="questioning",
            dos_rules=["Ask guiding questions"],
            donts_rules=["Give away full solutions"],
            temperature=0.4,
        ),
        Agent(
            id=8,
            name="helper-tutor",
            display_name="Helpful Guide",
            description="Step-by-step guidance, tutorials and worked examples",
            system_prompt="You are a direct, helpful guide.",
            personality="practical",
            response_style="structured",
        ),
        Agent(
            id=9,
            name="beatrice-peer",
            display_name="Beatrice",
            description="Peer who offers encouragement when you feel stressed or frustrated",
            system_prompt="You are Beatrice, a supportive classmate.",
            personality="warm encouraging",
            response_style="casual",
            model_preference="o3-mini",
        ),
        Agent(
            id=10,
            name="retired-tutor",
            display_name="Retired Tutor",
            description="No longer available",
            system_prompt="Retired.",
            is_active=False,
        ),
    ]
    async with session_factory() as session:
        async with session.begin():
            session.add_all(agents)
    return {agent.id: agent for agent in agents}


@pytest.fixture
def fake_adapter(test_settings: Settings) -> FakeAdapter:
    return FakeAdapter(test_settings)


def build_service(session_factory, settings: Settings, adapter: ProviderAdapter) -> TutorService:
    resolver = ProviderConfigResolver(session_factory, settings)
    gateway = ProviderGateway(resolver, settings, adapters={"openai": adapter, "gemini": adapter})
    return TutorService(session_factory, settings, gateway)


@pytest.fixture
def tutor_service(session_factory, test_settings, fake_adapter, seeded_agents) -> TutorService:
    return build_service(session_factory, test_settings, fake_adapter)


@pytest.fixture
async def async_client(tutor_service: TutorService) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client bound to the test service."""
    app.dependency_overrides[get_tutor_service] = lambda: tutor_service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user_id: int, is_admin: bool = False) -> dict:
    token = create_access_token({"user_id": user_id, "is_admin": is_admin})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def student_headers() -> dict:
    """Return headers with a student auth token."""
    return auth_headers(STUDENT_ID)


@pytest.fixture
def admin_headers() -> dict:
    """Return headers with an admin auth token."""
    return auth_headers(ADMIN_ID, is_admin=True)
