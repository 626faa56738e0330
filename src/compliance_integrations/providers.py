"""
Provider sync capabilities and their registry.

Each provider type maps to one SyncCapability. The sync engine looks the
capability up by the integration's provider and calls execute_sync() with
the decrypted configuration; provider-specific logic stays out of the
pipeline.

    registry = ProviderRegistry()
    registry.register(ProviderType.GITHUB, GitHubSync())
"""

import logging
from typing import Dict, Iterable, Protocol, Union, runtime_checkable

from .exceptions import ProviderNotRegistered
from .models import ProviderSyncResult, ProviderType, SyncType
from .secure_credentials import SecureCredentials

logger = logging.getLogger(__name__)


@runtime_checkable
class SyncCapability(Protocol):
    """
    Provider-specific sync behaviour.

    execute_sync() either returns a ProviderSyncResult or raises. A result
    whose `error` is set is treated as a failed attempt and classified from
    its `code` and `message`.
    """

    async def execute_sync(
        self,
        config: SecureCredentials,
        sync_type: SyncType
    ) -> ProviderSyncResult:
        ...


class ProviderRegistry:
    """Lookup table of sync capabilities keyed by provider type."""

    def __init__(self):
        self._capabilities: Dict[ProviderType, SyncCapability] = {}

    def register(self, provider: Union[ProviderType, str], capability: SyncCapability) -> None:
        provider = ProviderType(provider)
        if not isinstance(capability, SyncCapability):
            raise TypeError(f"{type(capability).__name__} does not implement execute_sync()")
        if provider in self._capabilities:
            logger.info(f"Replacing sync capability: provider={provider.value}")
        self._capabilities[provider] = capability

    def get(self, provider: Union[ProviderType, str]) -> SyncCapability:
        """
        Raises:
            ProviderNotRegistered: No capability for this provider
        """
        provider = ProviderType(provider)
        try:
            return self._capabilities[provider]
        except KeyError:
            raise ProviderNotRegistered(provider.value)

    def __contains__(self, provider) -> bool:
        return ProviderType(provider) in self._capabilities

    @property
    def providers(self) -> Iterable[ProviderType]:
        return tuple(self._capabilities)
