"""Capability-indexed provider registry.

A registry is built once and never mutated afterwards. Reconfiguring means
building a new snapshot and swapping it into a :class:`RegistryHolder`.
"""

from __future__ import annotations

import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import NoProviderConfigured, ProviderNotFound

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    SEARCH = "search"
    LLM = "llm"
    EMBEDDING = "embedding"


class ProviderRegistry:
    """Immutable snapshot of the configured providers."""

    def __init__(
        self,
        providers: Mapping[str, Any],
        capabilities: Mapping[str, Capability],
        chains: Mapping[Capability, Tuple[str, ...]],
    ):
        self._providers = MappingProxyType(dict(providers))
        self._capabilities = MappingProxyType(dict(capabilities))
        self._chains = MappingProxyType({cap: tuple(ids) for cap, ids in chains.items()})

    @classmethod
    def builder(cls) -> "RegistryBuilder":
        return RegistryBuilder()

    def resolve(self, provider_id: str) -> Any:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFound(provider_id) from None

    def fallback_chain(self, capability: Capability) -> Tuple[str, ...]:
        chain = self._chains.get(Capability(capability), ())
        if not chain:
            raise NoProviderConfigured(Capability(capability).value)
        return chain

    def primary(self, capability: Capability) -> Any:
        return self.resolve(self.fallback_chain(capability)[0])

    def providers(self, capability: Capability) -> List[Tuple[str, Any]]:
        return [(pid, self._providers[pid]) for pid in self._chains.get(Capability(capability), ())]

    def has(self, capability: Capability) -> bool:
        return bool(self._chains.get(Capability(capability)))

    def capability_of(self, provider_id: str) -> Capability:
        try:
            return self._capabilities[provider_id]
        except KeyError:
            raise ProviderNotFound(provider_id) from None

    def ids(self) -> List[str]:
        return list(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __repr__(self) -> str:
        chains = {cap.value: list(ids) for cap, ids in self._chains.items()}
        return f"ProviderRegistry(chains={chains})"


class RegistryBuilder:
    """Collects registrations and produces a :class:`ProviderRegistry`."""

    def __init__(self) -> None:
        self._providers: Dict[str, Any] = {}
        self._capabilities: Dict[str, Capability] = {}
        self._order: Dict[Capability, List[str]] = {}
        self._explicit: Dict[Capability, List[str]] = {}

    def register(self, provider_id: str, capability: Capability, provider: Any) -> "RegistryBuilder":
        if provider_id in self._providers:
            raise ValueError(f"Provider id already registered: {provider_id}")
        capability = Capability(capability)
        self._providers[provider_id] = provider
        self._capabilities[provider_id] = capability
        self._order.setdefault(capability, []).append(provider_id)
        logger.info("Registered %s provider %s", capability.value, provider_id)
        return self

    def fallback_order(self, capability: Capability, provider_ids: Iterable[str]) -> "RegistryBuilder":
        self._explicit[Capability(capability)] = list(provider_ids)
        return self

    def build(self) -> ProviderRegistry:
        chains: Dict[Capability, Tuple[str, ...]] = {}
        for capability, registered in self._order.items():
            explicit = self._explicit.get(capability, [])
            for provider_id in explicit:
                if self._capabilities.get(provider_id) != capability:
                    raise ValueError(
                        f"Fallback order for {capability.value} names unknown provider {provider_id}"
                    )
            # Explicitly ordered ids first, then the rest in registration order.
            ordered = list(dict.fromkeys(explicit + registered))
            chains[capability] = tuple(ordered)
        for capability, explicit in self._explicit.items():
            if capability not in self._order and explicit:
                raise ValueError(f"Fallback order for {capability.value} but no providers registered")
        return ProviderRegistry(self._providers, self._capabilities, chains)


class RegistryHolder:
    """Holds the active registry snapshot; ``swap`` replaces it atomically."""

    def __init__(self, registry: ProviderRegistry):
        self._registry = registry

    @property
    def current(self) -> ProviderRegistry:
        return self._registry

    def swap(self, registry: ProviderRegistry) -> ProviderRegistry:
        previous, self._registry = self._registry, registry
        logger.info("Provider registry swapped: %r", registry)
        return previous


def build_registry(config: Dict[str, Any], http_timeout: Optional[float] = None) -> ProviderRegistry:
    """Build the registry from the ``providers`` section of the app config."""

    from .embed import SentenceTransformerEmbedder
    from .llm import LLMClientFactory
    from .search import build_search_provider
    from .synth import SynthesisProvider

    providers_cfg = config.get("providers", {}) or {}
    builder = RegistryBuilder()

    for provider_id, entry in (providers_cfg.get("search") or {}).items():
        provider = build_search_provider(provider_id, entry or {}, timeout=http_timeout)
        if provider is None:
            logger.info("Search provider %s not configured; skipping.", provider_id)
            continue
        builder.register(provider_id, Capability.SEARCH, provider)

    llm_cfg = providers_cfg.get("llm") or {}
    factory = LLMClientFactory(llm_cfg.get("models") or {})
    for model_id in factory.configured():
        client = factory.build(model_id)
        builder.register(model_id, Capability.LLM, SynthesisProvider(client, model_id=model_id))
    fallback = [model_id for model_id in llm_cfg.get("fallback_order") or [] if model_id in factory.configured()]
    if fallback:
        builder.fallback_order(Capability.LLM, fallback)

    embedding_cfg = providers_cfg.get("embedding") or {}
    if embedding_cfg.get("model"):
        builder.register(
            embedding_cfg.get("id", "sentence-transformers"),
            Capability.EMBEDDING,
            SentenceTransformerEmbedder(embedding_cfg["model"]),
        )

    return builder.build()
