from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Optional, Set
import logging

from .core import ZERO, Pool, PoolRegistry, PriceStatus

logger = logging.getLogger(__name__)


@dataclass
class PriceLink:
    token_id: int
    name: str
    pair_kind: str
    paired_token_id: Optional[int]
    price_in_pair: Decimal
    price_usd: Decimal


class PriceResolver:
    """
    USD valuation over the pairing graph.

    Each pool memoises its price against the registry version; any reserve
    mutation or secondary-price change bumps the version and every memo goes
    stale at once. The TTL is measured on the simulated clock.
    """
    def __init__(
        self,
        registry: PoolRegistry,
        *,
        cache_ttl: float = 1.0,
        max_iterations: int = 10,
        threshold: Decimal = Decimal("0.0001"),
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.registry = registry
        self.cache_ttl = float(cache_ttl)
        self.max_iterations = int(max_iterations)
        self.threshold = threshold
        self._clock = clock or (lambda: 0.0)
        self.degenerate: Set[int] = set()
        self.last_iterations: int = 0
        self.last_converged: bool = True

    def _store(self, pool: Pool, value: Decimal, status: PriceStatus) -> Decimal:
        pool.cache.store(value, status, self.registry.version, self._clock())
        if status == "circular":
            self.degenerate.add(pool.token_id)
        elif status == "ok":
            self.degenerate.discard(pool.token_id)
        return value

    def resolve_price_usd(self, token_id: int, visiting: FrozenSet[int] = frozenset(),
                          *, use_cache: bool = True) -> Decimal:
        pool = self.registry.get(token_id)

        if token_id in visiting:
            logger.warning("Circular price dependency detected for token %s", token_id)
            # nothing is cached here: the outer frame for this token stores the real result
            self.degenerate.add(token_id)
            return ZERO

        if use_cache and pool.cache.fresh(self.registry.version, self._clock(), self.cache_ttl):
            return pool.cache.value

        if pool.is_empty:
            return self._store(pool, ZERO, "empty")

        price_in_pair = pool.pair_reserve / pool.token_reserve
        if pool.pair_kind == "anchor":
            return self._store(pool, price_in_pair, "ok")
        if pool.pair_kind == "secondary":
            return self._store(pool, price_in_pair * self.registry.secondary_price_usd, "ok")

        paired = self.registry.find(pool.paired_token_id)
        if paired is None:
            return self._store(pool, ZERO, "unpaired")
        inner = visiting | {token_id}
        if paired.token_id in inner:
            logger.warning("Circular price dependency detected for token %s via %s", token_id, paired.token_id)
            return self._store(pool, ZERO, "circular")
        paired_usd = self.resolve_price_usd(paired.token_id, inner, use_cache=use_cache)
        if paired_usd.is_zero() and paired.cache.status == "circular":
            return self._store(pool, ZERO, "circular")
        return self._store(pool, price_in_pair * paired_usd, "ok")

    def price_status(self, token_id: int) -> PriceStatus:
        pool = self.registry.get(token_id)
        if pool.cache.version != self.registry.version:
            self.resolve_price_usd(token_id)
        return pool.cache.status

    def is_defined(self, token_id: int) -> bool:
        return self.price_status(token_id) == "ok"

    def resolve_all_prices(self) -> int:
        """Converge every token's price. Returns the number of token-pair passes run."""
        self.degenerate.clear()
        for pool in self.registry:
            if pool.pair_kind != "token":
                self.resolve_price_usd(pool.token_id, use_cache=False)

        token_paired = [p for p in self.registry if p.pair_kind == "token"]
        updated = bool(token_paired)
        iteration = 0
        while updated and iteration < self.max_iterations:
            updated = False
            iteration += 1
            for pool in token_paired:
                old = pool.cache.value if pool.cache.version == self.registry.version else ZERO
                self.resolve_price_usd(pool.token_id, use_cache=False)
                new = pool.cache.value
                if not old.is_zero():
                    if abs(new - old) / old > self.threshold:
                        updated = True
                elif not new.is_zero():
                    updated = True

        self.last_iterations = iteration
        self.last_converged = not updated
        if updated:
            logger.warning(
                "Price update loop reached max iterations (%s) - possible circular dependency",
                self.max_iterations,
            )
        if self.degenerate:
            logger.debug("Degenerate (circular) prices for tokens %s", sorted(self.degenerate))
        return iteration

    def prices(self) -> Dict[int, Decimal]:
        return {pid: self.resolve_price_usd(pid) for pid in self.registry.ids()}

    def price_chain(self, token_id: int) -> List[PriceLink]:
        chain: List[PriceLink] = []
        visited: Set[int] = set()
        current = self.registry.find(token_id)
        while current is not None and current.token_id not in visited:
            visited.add(current.token_id)
            chain.append(PriceLink(
                token_id=current.token_id,
                name=current.name,
                pair_kind=current.pair_kind,
                paired_token_id=current.paired_token_id,
                price_in_pair=current.spot_price(),
                price_usd=self.resolve_price_usd(current.token_id),
            ))
            if current.pair_kind != "token":
                break
            current = self.registry.find(current.paired_token_id)
        return chain
