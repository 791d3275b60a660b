"""Entry point for provider calls: resolve a backend, then dispatch to its adapter."""

import logging
from typing import Mapping, Optional

from ..core.config import Settings
from ..core.errors import ConfigurationError
from .adapters import ADAPTERS, ProviderAdapter, ProviderReply, ProviderRequest
from .config import ProviderConfigResolver, ProviderSelection

logger = logging.getLogger(__name__)


class ProviderGateway:
    """Resolves the active provider and routes requests through the dispatch table."""

    def __init__(
        self,
        resolver: ProviderConfigResolver,
        settings: Settings,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
    ):
        self._resolver = resolver
        if adapters is None:
            adapters = {name: adapter_cls(settings) for name, adapter_cls in ADAPTERS.items()}
        self._adapters = dict(adapters)

    async def resolve(self) -> ProviderSelection:
        """Resolve a provider or fail with ConfigurationError."""
        selection = await self._resolver.resolve()
        if selection is None:
            raise ConfigurationError("No AI provider configured")
        return selection

    def adapter_for(self, provider: str) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise ConfigurationError(f"Unsupported AI provider: {provider}") from None

    async def send(
        self,
        request: ProviderRequest,
        selection: Optional[ProviderSelection] = None,
    ) -> ProviderReply:
        selection = selection or await self.resolve()
        return await self.adapter_for(selection.provider).send(selection, request)
