"""Resolution of which LLM backend, model and credential to use."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..db.models import ApiConfiguration

logger = logging.getLogger(__name__)


# Checked in order; first match wins within each credential source.
PROVIDER_PRIORITY = ("openai", "gemini")

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "gemini": "gemini-pro",
}


@dataclass(frozen=True)
class ProviderSelection:
    """The backend chosen for a call."""

    provider: str
    api_key: str
    model: str
    base_url: Optional[str] = None
    source: str = "database"


class ProviderConfigResolver:
    """
    Pick a provider from persisted configuration, then from the environment.

    Priority: active ``openai`` row, active ``gemini`` row, ``OPENAI_API_KEY``,
    ``GEMINI_API_KEY``. Returns None when nothing yields a credential.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self._session_factory = session_factory
        self._settings = settings

    async def resolve(self) -> Optional[ProviderSelection]:
        selection = await self._from_database()
        if selection is None:
            selection = self._from_environment()

        if selection is None:
            logger.warning("No LLM provider configured in database or environment")
        else:
            logger.debug(
                f"Resolved LLM provider {selection.provider} "
                f"(model={selection.model}, source={selection.source})"
            )
        return selection

    async def _from_database(self) -> Optional[ProviderSelection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApiConfiguration)
                .where(ApiConfiguration.is_active == True)  # noqa: E712
                .order_by(ApiConfiguration.updated_at.desc(), ApiConfiguration.id.desc())
            )
            configs = result.scalars().all()

        for provider in PROVIDER_PRIORITY:
            for config in configs:
                if config.service_name == provider and config.api_key:
                    return ProviderSelection(
                        provider=provider,
                        api_key=config.api_key,
                        model=config.default_model or DEFAULT_MODELS[provider],
                        base_url=config.base_url or None,
                        source="database",
                    )
        return None

    def _from_environment(self) -> Optional[ProviderSelection]:
        env_sources = {
            "openai": (
                self._settings.OPENAI_API_KEY,
                self._settings.OPENAI_MODEL,
                self._settings.OPENAI_BASE_URL,
            ),
            "gemini": (
                self._settings.GEMINI_API_KEY,
                self._settings.GEMINI_MODEL,
                "",
            ),
        }

        for provider in PROVIDER_PRIORITY:
            api_key, model, base_url = env_sources[provider]
            if api_key:
                return ProviderSelection(
                    provider=provider,
                    api_key=api_key,
                    model=model or DEFAULT_MODELS[provider],
                    base_url=base_url or None,
                    source="environment",
                )
        return None
