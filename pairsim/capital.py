from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Literal, Optional, Set
import logging
import math

import pandas as pd

from .core import ZERO, ONE, HUNDRED, PoolRegistry, Pool, to_decimal
from .errors import ValidationError
from .prices import PriceResolver

logger = logging.getLogger(__name__)

CapitalMode = Literal["market", "backing"]
CAPITAL_MODES = ("market", "backing")


@dataclass
class CapitalBreakdown:
    real_capital: Decimal
    derived_capital: Decimal
    total_displayed_value: Decimal
    leverage_ratio: Decimal
    average_depth: float
    mode: str = "market"


@dataclass
class TokenImpact:
    token_id: int
    depth: float
    original_value: Decimal
    new_value: Decimal
    change_pct: Decimal


@dataclass
class CascadeReport:
    anchor_change_pct: Decimal
    new_secondary_price: Decimal
    real_capital_change: Decimal
    impacts: List[TokenImpact] = field(default_factory=list)

    @property
    def most_vulnerable(self) -> Optional[TokenImpact]:
        return self.impacts[0] if self.impacts else None

    @property
    def average_impact(self) -> Decimal:
        if not self.impacts:
            return ZERO
        return sum((abs(i.change_pct) for i in self.impacts), ZERO) / len(self.impacts)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([
            {
                "token_id": i.token_id,
                "depth": i.depth,
                "original_value": float(i.original_value),
                "new_value": float(i.new_value),
                "change_pct": float(i.change_pct),
            }
            for i in self.impacts
        ])


def depth_label(depth: float) -> str:
    if depth == 0:
        return "REAL (USD/WPLS)"
    if math.isinf(depth):
        return "ISOLATED"
    if depth == 1:
        return "DERIVED (1 hop)"
    return f"DERIVED ({int(depth)} hops)"


class CapitalAnalyzer:
    """
    Splits displayed liquidity into real capital (anchor-side deposits) and
    derived capital (value that only exists because a token is paired with
    another token).

    In "market" mode derived value is the pair reserve at the paired token's
    market price, which is what a DEX would report as TVL. In "backing" mode
    it is the share of real capital actually standing behind the paired
    tokens, traced recursively.
    """
    def __init__(self, registry: PoolRegistry, resolver: PriceResolver, mode: str = "market") -> None:
        self.registry = registry
        self.resolver = resolver
        self.mode: str = "market"
        self.set_mode(mode)

    def set_mode(self, mode: str) -> None:
        if mode not in CAPITAL_MODES:
            raise ValidationError(f'Invalid mode {mode!r}. Use "market" or "backing"')
        self.mode = mode

    def liquidity_depth(self, token_id: int, visiting: Optional[Set[int]] = None) -> float:
        if visiting is None:
            visiting = set()
        if token_id in visiting:
            return math.inf
        pool = self.registry.find(token_id)
        if pool is None:
            return math.inf
        if pool.pair_kind in ("anchor", "secondary"):
            return 0
        visiting.add(token_id)
        if pool.paired_token_id is None or pool.paired_token_id not in self.registry:
            return math.inf
        return 1 + self.liquidity_depth(pool.paired_token_id, visiting)

    def real_capital(self, token_id: int) -> Decimal:
        pool = self.registry.get(token_id)
        if pool.pair_reserve.is_zero():
            return ZERO
        if pool.pair_kind == "anchor":
            return pool.pair_reserve
        if pool.pair_kind == "secondary":
            return pool.pair_reserve * self.registry.secondary_price_usd
        return ZERO

    def derived_capital(self, token_id: int, mode: Optional[str] = None) -> Decimal:
        mode = mode or self.mode
        if mode not in CAPITAL_MODES:
            raise ValidationError(f"Invalid mode {mode!r}")
        pool = self.registry.get(token_id)
        if pool.pair_kind != "token" or pool.pair_reserve.is_zero():
            return ZERO
        paired = self.registry.find(pool.paired_token_id)
        if paired is None:
            return ZERO
        if mode == "market":
            return pool.pair_reserve * self.resolver.resolve_price_usd(paired.token_id)
        return self._backing(pool, paired, set())

    def _backing(self, pool: Pool, paired: Pool, visited: Set[int]) -> Decimal:
        if paired.token_id in visited:
            return ZERO
        visited.add(paired.token_id)
        if paired.total_supply.is_zero():
            return ZERO
        share = pool.pair_reserve / paired.total_supply

        behind = ZERO
        if paired.pair_kind == "anchor":
            behind = paired.pair_reserve
        elif paired.pair_kind == "secondary":
            behind = paired.pair_reserve * self.registry.secondary_price_usd
        else:
            grandparent = self.registry.find(paired.paired_token_id)
            if grandparent is not None:
                behind = self._backing(paired, grandparent, visited)
        return behind * share

    def capital_breakdown(self, mode: Optional[str] = None) -> CapitalBreakdown:
        mode = mode or self.mode
        real = ZERO
        derived = ZERO
        depth_total = 0.0
        depth_count = 0
        for token_id in self.registry.ids():
            real += self.real_capital(token_id)
            derived += self.derived_capital(token_id, mode)
            depth = self.liquidity_depth(token_id)
            if not math.isinf(depth):
                depth_total += depth
                depth_count += 1

        leverage = ZERO if real.is_zero() else derived / real
        return CapitalBreakdown(
            real_capital=real,
            derived_capital=derived,
            total_displayed_value=real + derived,
            leverage_ratio=leverage,
            average_depth=depth_total / depth_count if depth_count else 0.0,
            mode=mode,
        )

    def cascade_impact(self, pct_change) -> CascadeReport:
        """Project a percentage move of the anchor-side price through the pairing graph.

        Each pool's displayed value scales by (1 + pct/100) ** (depth + 1), so
        deeper pools amplify the shock. Isolated pools keep their value.
        """
        pct = to_decimal(pct_change)
        multiplier = ONE + pct / HUNDRED
        if multiplier < 0:
            raise ValidationError(f"price change {pct}% would make the anchor price negative")

        breakdown = self.capital_breakdown()
        impacts: List[TokenImpact] = []
        for token_id in self.registry.ids():
            depth = self.liquidity_depth(token_id)
            original = self.real_capital(token_id) + self.derived_capital(token_id)
            if math.isinf(depth):
                new_value = original
            else:
                new_value = original * multiplier ** (int(depth) + 1)
            change = ZERO if original.is_zero() else (new_value - original) / original * HUNDRED
            impacts.append(TokenImpact(
                token_id=token_id,
                depth=depth,
                original_value=original,
                new_value=new_value,
                change_pct=change,
            ))
        impacts.sort(key=lambda i: abs(i.change_pct), reverse=True)

        report = CascadeReport(
            anchor_change_pct=pct,
            new_secondary_price=self.registry.secondary_price_usd * multiplier,
            real_capital_change=breakdown.real_capital * multiplier - breakdown.real_capital,
            impacts=impacts,
        )
        if report.most_vulnerable is not None:
            logger.debug(
                "cascade %s%%: most vulnerable token %s (%s%%)",
                pct, report.most_vulnerable.token_id, report.most_vulnerable.change_pct,
            )
        return report
