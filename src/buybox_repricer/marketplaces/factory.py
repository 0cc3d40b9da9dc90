"""
Factory for creating and caching authenticated marketplace adapters.

One factory instance owns the adapter registry, the per-tenant adapter cache
and the shared HTTP client. It is constructed explicitly and injected into
the monitor factory and the scheduler.

Cache entries are keyed by marketplace id, a CRC32 fingerprint of the
credential payload and the credential version. The fingerprint is only a
fast in-process lookup key, never a security identifier.
"""

import asyncio
import json
import zlib
from typing import Dict, Any, List, Optional, Tuple, Type

import httpx

from buybox_repricer.marketplaces.base import MarketplaceAdapter
from buybox_repricer.marketplaces.takealot_adapter import TakealotAdapter
from buybox_repricer.marketplaces.amazon_adapter import AmazonAdapter
from buybox_repricer.utils.exceptions import UnsupportedMarketplace
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)

CacheKey = Tuple[str, str, int]


def credentials_fingerprint(credentials: Dict[str, Any]) -> str:
    """CRC32 over the canonical JSON form of a credential payload."""
    canonical = json.dumps(credentials or {}, sort_keys=True, separators=(",", ":"), default=str)
    return f"{zlib.crc32(canonical.encode('utf-8')):08x}"


class MarketplaceAdapterFactory:
    """
    Registry plus insert-if-absent cache of initialized adapters.

    Concurrent ``get_adapter`` calls for one key share a single in-flight
    initialization, so ``initialize`` runs at most once per key. Nothing is
    cached unless ``initialize`` succeeded.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 15.0):
        """
        Initialize factory.

        Args:
            http_client: Shared client; created (and later closed) here if None
            timeout: Default HTTP timeout for a created client
        """
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

        self._exact: Dict[str, Type[MarketplaceAdapter]] = {}
        self._prefixes: Dict[str, Type[MarketplaceAdapter]] = {}

        self._instances: Dict[CacheKey, MarketplaceAdapter] = {}
        self._pending: Dict[CacheKey, asyncio.Future] = {}

        # Bumped by clear_adapter_instances so in-flight inits do not re-populate
        self._global_generation = 0
        self._generations: Dict[str, int] = {}

    def register(self, marketplace_id: str, adapter_cls: Type[MarketplaceAdapter],
                 prefix: bool = False) -> None:
        """
        Register an adapter implementation.

        Args:
            marketplace_id: Exact id (``takealot``) or family prefix (``amazon``)
            adapter_cls: MarketplaceAdapter subclass
            prefix: Resolve ``<marketplace_id>_<region>`` identifiers too
        """
        marketplace_id = marketplace_id.lower()
        if prefix:
            self._prefixes[marketplace_id] = adapter_cls
        else:
            self._exact[marketplace_id] = adapter_cls
        logger.debug(f"Registered {adapter_cls.__name__} for {marketplace_id}{'_*' if prefix else ''}")

    def resolve(self, marketplace_id: str) -> Tuple[Type[MarketplaceAdapter], Optional[str]]:
        """
        Find the adapter class and regional suffix for an identifier.

        Exact registrations win; among prefixes the longest match wins.

        Raises:
            UnsupportedMarketplace: If nothing matches
        """
        key = (marketplace_id or "").lower()

        if key in self._exact:
            return self._exact[key], None

        for prefix in sorted(self._prefixes, key=len, reverse=True):
            if key == prefix:
                return self._prefixes[prefix], None
            if key.startswith(prefix + "_"):
                return self._prefixes[prefix], key[len(prefix) + 1:]

        raise UnsupportedMarketplace(marketplace_id)

    def is_supported(self, marketplace_id: str) -> bool:
        try:
            self.resolve(marketplace_id)
        except UnsupportedMarketplace:
            return False
        return True

    def list_supported(self) -> List[str]:
        """Exact ids plus ``<prefix>_*`` patterns."""
        return sorted(list(self._exact) + [f"{prefix}_*" for prefix in self._prefixes])

    @staticmethod
    def cache_key(marketplace_id: str, credentials: Dict[str, Any],
                  credential_version: Optional[int] = None) -> CacheKey:
        return (marketplace_id.lower(), credentials_fingerprint(credentials), credential_version or 1)

    @property
    def cache_size(self) -> int:
        return len(self._instances)

    def _generation(self, marketplace_id: str) -> Tuple[int, int]:
        return self._global_generation, self._generations.get(marketplace_id, 0)

    async def get_adapter(self, marketplace_id: str, credentials: Dict[str, Any],
                          credential_version: Optional[int] = None) -> MarketplaceAdapter:
        """
        Return a ready adapter for the marketplace and credentials.

        Raises:
            UnsupportedMarketplace: If no implementation is registered
            AuthenticationError: If the marketplace rejects the credentials
        """
        adapter_cls, region = self.resolve(marketplace_id)
        key = self.cache_key(marketplace_id, credentials, credential_version)

        cached = self._instances.get(key)
        if cached is not None:
            return cached

        future = self._pending.get(key)
        if future is None:
            future = asyncio.ensure_future(
                self._create(adapter_cls, key, region, credentials, self._generation(key[0]))
            )
            self._pending[key] = future
            future.add_done_callback(lambda f, key=key: self._finish_pending(key, f))

        # One caller being cancelled must not cancel the shared initialization
        return await asyncio.shield(future)

    def _finish_pending(self, key: CacheKey, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]
        if not future.cancelled():
            # Mark retrieved; every awaiter already received it
            future.exception()

    async def _create(self, adapter_cls: Type[MarketplaceAdapter], key: CacheKey,
                      region: Optional[str], credentials: Dict[str, Any],
                      generation: Tuple[int, int]) -> MarketplaceAdapter:
        marketplace_id = key[0]
        adapter = adapter_cls(self.http_client, marketplace_id, region)

        try:
            await adapter.initialize(credentials)
        except Exception as e:
            logger.warning(f"Adapter initialization failed for {marketplace_id}: {e}")
            raise

        if generation == self._generation(marketplace_id):
            self._instances[key] = adapter
            logger.info(f"Cached {adapter_cls.__name__} for {marketplace_id} (v{key[2]})")
        else:
            logger.info(f"Adapter cache cleared during initialization of {marketplace_id}; not caching")

        return adapter

    def evict_adapter(self, marketplace_id: str, credentials: Dict[str, Any],
                      credential_version: Optional[int] = None) -> bool:
        """Drop the cached adapter for one set of credentials, if any."""
        key = self.cache_key(marketplace_id, credentials, credential_version)
        evicted = self._instances.pop(key, None) is not None
        if evicted:
            logger.info(f"Evicted {marketplace_id} adapter (v{key[2]}) from cache")
        return evicted

    def clear_adapter_instances(self, marketplace_id: Optional[str] = None) -> int:
        """
        Evict cached adapters for one marketplace, or all of them.

        Returns:
            Number of evicted entries
        """
        if marketplace_id is None:
            evicted = len(self._instances)
            self._instances.clear()
            self._pending.clear()
            self._global_generation += 1
        else:
            target = marketplace_id.lower()
            keys = [key for key in self._instances if key[0] == target]
            for key in keys:
                del self._instances[key]
            for key in [key for key in self._pending if key[0] == target]:
                del self._pending[key]
            self._generations[target] = self._generations.get(target, 0) + 1
            evicted = len(keys)

        logger.info(f"Cleared {evicted} adapter instance(s){' for ' + marketplace_id if marketplace_id else ''}")
        return evicted

    async def aclose(self) -> None:
        """Close cached adapters and the HTTP client if this factory created it."""
        for adapter in list(self._instances.values()):
            await adapter.aclose()
        self._instances.clear()
        if self._owns_client:
            await self.http_client.aclose()


def create_default_factory(http_client: Optional[httpx.AsyncClient] = None,
                           timeout: float = 15.0) -> MarketplaceAdapterFactory:
    """Factory with the shipped adapters registered."""
    factory = MarketplaceAdapterFactory(http_client=http_client, timeout=timeout)
    factory.register("takealot", TakealotAdapter)
    factory.register("amazon", AmazonAdapter, prefix=True)
    return factory
