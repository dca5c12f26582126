"""
Balance Cache - read-through cache in front of the network provider.

Snapshots are served from memory while younger than the TTL. Concurrent
requests for the same (address, network) share a single in-flight fetch;
a caller that stops waiting does not cancel it. Clearing an address bumps
its generation, so a fetch that started before the clear never writes its
result back.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from ..models.balance import BalanceSnapshot, BalanceUpdate, TokenAmount
from ..networks import NETWORKS, from_base_units, get_network, get_tokens_for_network, get_usd_price
from ..utils import format_address
from .provider import NetworkProvider

logger = logging.getLogger(__name__)

# Seconds a snapshot stays fresh
DEFAULT_TTL = 30.0

CacheKey = tuple[str, int]
Listener = Callable[[BalanceUpdate], None]


class BalanceCache:
    """Deduplicating, TTL-bound balance reads."""

    def __init__(self, provider: NetworkProvider, ttl: float = DEFAULT_TTL,
                 clock: Callable[[], float] = time.time):
        self.provider = provider
        self.ttl = ttl
        self._clock = clock
        self._cache: dict[CacheKey, BalanceSnapshot] = {}
        self._in_flight: dict[CacheKey, asyncio.Task] = {}
        self._generations: dict[CacheKey, int] = {}
        self._listeners: list[Listener] = []

    @staticmethod
    def _key(address: str, network_id: int) -> CacheKey:
        return address.lower(), network_id

    # ============================================
    # Reads
    # ============================================

    async def get(self, address: str, network_id: int,
                  force_refresh: bool = False) -> Optional[BalanceSnapshot]:
        """
        Snapshot for (address, network_id), or None if the fetch failed.

        A fresh cached snapshot is returned without touching the network
        unless force_refresh is set.
        """
        if not address or not network_id:
            return None

        key = self._key(address, network_id)
        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None and cached.age(self._clock()) < self.ttl:
                return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_and_store(key, self._generations.get(key, 0)))
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._release(key, t))
        return await asyncio.shield(task)

    def _release(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def refresh(self, address: str, network_id: int) -> Optional[BalanceSnapshot]:
        return await self.get(address, network_id, force_refresh=True)

    async def refresh_all(self, address: str) -> list[BalanceSnapshot]:
        """Refresh every configured network in turn. Failed networks are skipped."""
        results = []
        for network_id in NETWORKS:
            snapshot = await self.refresh(address, network_id)
            if snapshot is not None:
                results.append(snapshot)
        return results

    def get_cached_balances(self, address: str) -> list[BalanceSnapshot]:
        """Cached snapshots for an address, fresh or not."""
        lower = address.lower()
        return [s for (addr, _), s in self._cache.items() if addr == lower]

    # ============================================
    # Invalidation
    # ============================================

    def _invalidate(self, keys: list[CacheKey]) -> None:
        for key in keys:
            self._generations[key] = self._generations.get(key, 0) + 1
            self._cache.pop(key, None)
            self._in_flight.pop(key, None)

    def clear_wallet_cache(self, address: str) -> None:
        lower = address.lower()
        self._invalidate([k for k in {*self._cache, *self._in_flight} if k[0] == lower])

    def clear_all_cache(self) -> None:
        self._invalidate(list({*self._cache, *self._in_flight}))

    # ============================================
    # Subscriptions
    # ============================================

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Register a listener for fresh snapshots. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, update: BalanceUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"Balance update listener failed: {e}")

    # ============================================
    # Fetching
    # ============================================

    async def _fetch_and_store(self, key: CacheKey, generation: int) -> Optional[BalanceSnapshot]:
        address, network_id = key
        try:
            snapshot = await self._fetch(address, network_id)
        except Exception as e:
            logger.error(f"Failed to fetch balance for {format_address(address)} on network {network_id}: {e}")
            return None

        if self._generations.get(key, 0) != generation:
            logger.debug(f"Discarding balance for {format_address(address)} fetched before invalidation")
            return snapshot

        self._cache[key] = snapshot
        self._notify(BalanceUpdate(address=address, network_id=network_id, snapshot=snapshot))
        return snapshot

    async def _fetch(self, address: str, network_id: int) -> BalanceSnapshot:
        network = get_network(network_id)
        if network is None:
            raise ValueError(f"Network {network_id} not found")

        logger.debug(f"Fetching live balance for {format_address(address)} on {network.display_name}")
        connection = await self.provider.get_connection(network.chain_id)
        try:
            native_raw = await connection.get_balance(address)
        except Exception:
            self.provider.invalidate(network.chain_id)
            raise

        tokens = []
        for token in get_tokens_for_network(network_id):
            token_address = token.addresses[network_id]
            try:
                raw = await connection.get_token_balance(token_address, address)
            except Exception as e:
                logger.warning(f"{token.symbol} balance unavailable for {format_address(address)}: {e}")
                continue
            amount = from_base_units(raw, token.decimals)
            tokens.append(TokenAmount(
                symbol=token.symbol,
                name=token.name,
                address=token_address,
                decimals=token.decimals,
                raw=raw,
                amount=amount,
                usd_value=Decimal(amount) * get_usd_price(token.symbol),
            ))

        return BalanceSnapshot(
            subject_address=address,
            network_id=network_id,
            native_symbol=network.native_symbol,
            native_raw=native_raw,
            native_amount=from_base_units(native_raw, network.native_decimals),
            token_amounts=tuple(tokens),
            fetched_at=self._clock(),
        )
