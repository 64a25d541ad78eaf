from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional
from collections import deque
import logging

from .core import ANCHOR_KINDS, ZERO, PoolRegistry, swap_output, HUNDRED
from .errors import AmmError, RouteError

logger = logging.getLogger(__name__)


@dataclass
class Hop:
    pool_id: int
    amount_in: Decimal       # in the pool's pair asset
    amount_out: Decimal      # tokens of pool_id
    price_impact_pct: Decimal
    pair_kind: str


@dataclass
class Route:
    path: List[int]
    hops: List[Hop]
    amount_in: Decimal       # anchor terms
    total_amount_out: Decimal
    total_price_impact: Decimal
    path_description: str
    planned_version: int = -1

    @property
    def target_id(self) -> int:
        return self.path[-1]


@dataclass
class RouteResult:
    final_amount: Decimal
    hops: List[dict] = field(default_factory=list)
    total_price_impact: Decimal = ZERO
    path_description: str = ""


class Router:
    """
    Backward BFS over the pairing graph. Every token has exactly one pair edge,
    so a path is the chain from an anchor-paired token up to the target.
    """
    def __init__(self, registry: PoolRegistry, max_hops: int = 3,
                 anchor_symbol: str = "USD", secondary_symbol: str = "WPLS") -> None:
        self.registry = registry
        self.max_hops = max_hops
        self.anchor_symbol = anchor_symbol
        self.secondary_symbol = secondary_symbol

    def find_all_paths(self, target_id: int, max_hops: Optional[int] = None) -> List[List[int]]:
        if max_hops is None:
            max_hops = self.max_hops
        target = self.registry.get(target_id)

        paths: List[List[int]] = []
        q = deque()
        q.append([target.token_id])  # reversed: target first
        while q:
            current_path = q.popleft()
            current = self.registry.get(current_path[-1])

            if current.pair_kind in ANCHOR_KINDS:
                paths.append(list(reversed(current_path)))
                continue
            if len(current_path) >= max_hops:
                continue
            if current.pair_kind == "token" and current.paired_token_id is not None:
                paired = self.registry.find(current.paired_token_id)
                if paired is not None and paired.token_id not in current_path:
                    q.append(current_path + [paired.token_id])
        return paths

    def describe(self, path: List[int]) -> str:
        if not path:
            return "No path"
        parts = [self.anchor_symbol]
        first = self.registry.get(path[0])
        if first.pair_kind == "secondary":
            parts.append(self.secondary_symbol)
        parts.extend(self.registry.get(pid).name for pid in path)
        return " → ".join(parts)

    def simulate_path(self, path: List[int], amount_in: Decimal) -> Optional[Route]:
        if not path or amount_in <= 0:
            return None
        hops: List[Hop] = []
        current_amount = amount_in
        total_impact = ZERO
        for i, pid in enumerate(path):
            pool = self.registry.get(pid)
            if i == 0 and pool.pair_kind == "secondary":
                current_amount = current_amount / self.registry.secondary_price_usd
            if pool.is_empty:
                return None
            out, _ = swap_output(current_amount, pool.pair_reserve, pool.token_reserve, pool.fee_rate)
            if out <= 0 or out >= pool.token_reserve:
                return None
            price_before = pool.spot_price()
            price_after = (pool.pair_reserve + current_amount) / (pool.token_reserve - out)
            impact = (price_after - price_before) / price_before * HUNDRED
            hops.append(Hop(pool_id=pid, amount_in=current_amount, amount_out=out,
                            price_impact_pct=impact, pair_kind=pool.pair_kind))
            total_impact += abs(impact)
            current_amount = out
        return Route(
            path=list(path),
            hops=hops,
            amount_in=amount_in,
            total_amount_out=current_amount,
            total_price_impact=total_impact,
            path_description=self.describe(path),
            planned_version=self.registry.version,
        )

    def find_best_path(self, target_id: int, amount_in: Decimal,
                       max_hops: Optional[int] = None) -> Optional[Route]:
        paths = self.find_all_paths(target_id, max_hops)
        best: Optional[Route] = None
        for path in paths:
            route = self.simulate_path(path, amount_in)
            if route is None:
                continue
            if best is None or route.total_amount_out > best.total_amount_out:
                best = route
            elif route.total_amount_out == best.total_amount_out and len(route.hops) < len(best.hops):
                best = route
        if best is None:
            logger.debug("no route to token %s for %s (%s candidate paths)", target_id, amount_in, len(paths))
        return best

    def route_preview(self, target_id: int, amount_in: Decimal) -> str:
        route = self.find_best_path(target_id, amount_in)
        if route is None:
            return "No liquidity path available"
        if len(route.hops) == 1:
            return "Direct swap"
        return f"Route: {route.path_description} ({len(route.hops)} hops)"

    def validate_route(self, route: Route) -> None:
        if route is None or not route.hops:
            raise RouteError("Invalid route")
        if route.path != [h.pool_id for h in route.hops]:
            raise RouteError("route path does not match its hops")
        seen = set()
        for i, hop in enumerate(route.hops):
            if hop.pool_id in seen:
                raise RouteError(f"route visits token {hop.pool_id} twice", hop_index=i)
            seen.add(hop.pool_id)
            if i > 0 and hop.amount_in != route.hops[i - 1].amount_out:
                raise RouteError("hop input does not match previous hop output", hop_index=i)
            pool = self.registry.find(hop.pool_id)
            if pool is None:
                raise RouteError(f"token {hop.pool_id} no longer exists", hop_index=i)
            # first hop spends USD or WPLS; each later hop spends the previous hop's token
            if i == 0 and pool.pair_kind not in ANCHOR_KINDS:
                raise RouteError(f"{pool.name} is not paired with USD or WPLS", hop_index=i)
            if i > 0 and (pool.pair_kind != "token" or pool.paired_token_id != route.hops[i - 1].pool_id):
                raise RouteError(f"{pool.name} is not paired with token {route.hops[i - 1].pool_id}",
                                 hop_index=i)
            try:
                pool.check_fill(hop.amount_in, hop.amount_out)
            except AmmError as exc:
                raise RouteError(str(exc), hop_index=i) from exc

    def execute_route(self, route: Route, clock: float = 0.0) -> RouteResult:
        """Commit every hop of a planned route, or none of them."""
        if route is not None and route.planned_version != self.registry.version:
            logger.debug("reserves moved since route was planned (v%s -> v%s); revalidating",
                         route.planned_version, self.registry.version)
        self.validate_route(route)

        executed: List[dict] = []
        for hop in route.hops:
            pool = self.registry.get(hop.pool_id)
            receipt = pool.apply_fill(hop.amount_in, hop.amount_out, clock=clock)
            executed.append({
                "token_id": pool.token_id,
                "token_name": pool.name,
                "amount_in": hop.amount_in,
                "amount_out": hop.amount_out,
                "price_impact": hop.price_impact_pct,
                "k_after": receipt.k_after,
            })
        return RouteResult(
            final_amount=route.total_amount_out,
            hops=executed,
            total_price_impact=route.total_price_impact,
            path_description=route.path_description,
        )
