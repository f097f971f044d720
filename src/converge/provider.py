"""Provider capability surface.

Concrete adapters (object storage, DNS, certificate authority, CDN) live
outside the engine. Each implements Provider for one resource type; the
planner and executor never special-case a type beyond what a provider
declares here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from importlib.metadata import entry_points
from typing import Any

from .models import WaitCondition

logger = logging.getLogger(__name__)

# Entry point group that installed provider packages register under
PROVIDER_ENTRY_POINT_GROUP = "converge.providers"


class ProviderError(Exception):
    """Raised by a provider when an operation does not succeed.

    Any ProviderError is permanent for the node unless ``retryable`` is set,
    in which case the executor retries with bounded backoff.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class MissingProviderError(Exception):
    """Raised when no provider is registered for a resource type."""

    pass


class Provider(ABC):
    """Create/read/update/delete/wait operations for one resource type.

    ``create`` and ``update`` return the observed attribute set, which must
    carry the provider-assigned identifier under ``"id"``.
    """

    resource_type: str = ""

    # Attributes that cannot change in place; a diff on any forces replacement
    immutable_attributes: frozenset[str] = frozenset()

    @abstractmethod
    async def create(self, desired: dict[str, Any]) -> dict[str, Any]:
        """Create the resource and return its observed attributes."""

    @abstractmethod
    async def read(self, resource_id: str) -> dict[str, Any] | None:
        """Return observed attributes, or None if the resource is gone."""

    @abstractmethod
    async def update(self, resource_id: str, desired: dict[str, Any]) -> dict[str, Any]:
        """Update the resource in place and return its observed attributes."""

    @abstractmethod
    async def delete(self, resource_id: str) -> None:
        """Delete the resource. Deleting an absent resource must succeed."""

    async def wait(self, resource_id: str, condition: WaitCondition) -> bool:
        """Check a wait condition once; the executor owns polling and timeouts."""
        observed = await self.read(resource_id)
        return condition.is_satisfied_by(observed)


class ProviderRegistry:
    """Maps resource types to provider instances."""

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider, resource_type: str | None = None) -> None:
        """Register a provider, by default under its own ``resource_type``."""
        key = resource_type or provider.resource_type
        if not key:
            raise ValueError(f"Provider {type(provider).__name__} declares no resource_type")
        if key in self._providers:
            logger.warning(
                "Replacing registered provider",
                extra={"resource_type": key, "provider": type(provider).__name__},
            )
        self._providers[key] = provider

    def get(self, resource_type: str) -> Provider:
        """Get the provider for a type.

        Raises:
            MissingProviderError: If nothing is registered for the type.
        """
        provider = self._providers.get(resource_type)
        if provider is None:
            raise MissingProviderError(
                f"No provider registered for resource type '{resource_type}'. "
                f"Registered: {sorted(self._providers)}"
            )
        return provider

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._providers

    def immutable_attributes(self, resource_type: str) -> frozenset[str]:
        """Immutable attributes of a type; empty when the type is unknown."""
        provider = self._providers.get(resource_type)
        if provider is None:
            return frozenset()
        return frozenset(provider.immutable_attributes)

    @property
    def resource_types(self) -> list[str]:
        return sorted(self._providers)


def load_entry_point_providers(group: str = PROVIDER_ENTRY_POINT_GROUP) -> ProviderRegistry:
    """Discover providers that installed packages register as entry points.

    Each entry point must resolve to a Provider subclass constructible
    without arguments; its name is the resource type it serves.
    """
    registry = ProviderRegistry()
    for entry_point in entry_points(group=group):
        provider_cls = entry_point.load()
        provider = provider_cls()
        if not isinstance(provider, Provider):
            raise TypeError(
                f"Entry point '{entry_point.name}' does not provide a Provider: {provider_cls!r}"
            )
        registry.register(provider, resource_type=entry_point.name)
        logger.info(
            "Loaded provider",
            extra={"resource_type": entry_point.name, "provider": entry_point.value},
        )
    return registry
