from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, getcontext, localcontext, ROUND_DOWN, ROUND_HALF_EVEN
from typing import Callable, Dict, Iterator, List, Literal, Optional, Tuple
from collections import deque
import logging

from .errors import (
    InsufficientLiquidityError,
    RatioMismatchError,
    SupplyExceededError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_DECIMAL_PRECISION = 50
getcontext().prec = DEFAULT_DECIMAL_PRECISION
getcontext().rounding = ROUND_HALF_EVEN

ZERO = Decimal(0)
ONE = Decimal(1)
HUNDRED = Decimal(100)

PairKind = Literal["anchor", "secondary", "token"]
SwapDirection = Literal["buy", "sell"]  # buy: pair asset in, token out
PriceStatus = Literal["unset", "ok", "empty", "circular", "unpaired"]

ANCHOR_KINDS: Tuple[str, ...] = ("anchor", "secondary")
PAIR_KINDS: Tuple[str, ...] = ("anchor", "secondary", "token")

DecimalLike = Decimal | int | float | str


def to_decimal(x: DecimalLike) -> Decimal:
    """Normalise numeric-like input to Decimal (floats go through str, never binary)."""
    if isinstance(x, Decimal):
        return x
    if isinstance(x, bool):
        raise ValidationError(f"not a number: {x!r}")
    try:
        return Decimal(str(x))
    except ArithmeticError as exc:
        raise ValidationError(f"not a number: {x!r}") from exc


def set_precision(prec: int) -> None:
    getcontext().prec = int(prec)


def positive(x: DecimalLike, what: str = "amount") -> Decimal:
    value = to_decimal(x)
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"{what} must be greater than 0, got {x}")
    return value


def format_reserves(pool: "Pool") -> str:
    if pool.is_empty:
        return "(empty)"
    return f"token:{pool.token_reserve:.6f}, pair:{pool.pair_reserve:.6f}"


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    clock: float
    event_type: str
    wallet_id: Optional[int] = None
    token_id: Optional[int] = None
    amount: Optional[Decimal] = None
    meta: dict = field(default_factory=dict)


class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Price memo
# -----------------------------
@dataclass
class PriceCache:
    """Memoised USD price of one pool, valid for one registry version."""
    value: Decimal = ZERO
    status: PriceStatus = "unset"
    version: int = -1
    stamp: float = float("-inf")

    def fresh(self, version: int, now: float, ttl: float) -> bool:
        return self.version == version and (now - self.stamp) < ttl and not self.value.is_zero()

    def store(self, value: Decimal, status: PriceStatus, version: int, now: float) -> None:
        self.value = value
        self.status = status
        self.version = version
        self.stamp = now

    def invalidate(self) -> None:
        self.version = -1


# -----------------------------
# Swap quotes / receipts
# -----------------------------
@dataclass
class SwapQuote:
    direction: SwapDirection
    amount_in: Decimal
    amount_in_with_fee: Decimal
    amount_out: Decimal
    price_before: Decimal
    price_after: Decimal
    price_impact_pct: Decimal

    @property
    def fee_paid(self) -> Decimal:
        return self.amount_in - self.amount_in_with_fee


@dataclass
class SwapReceipt:
    clock: float
    pool_id: int
    direction: SwapDirection
    amount_in: Decimal
    amount_out: Decimal
    price_impact_pct: Decimal
    k_before: Decimal
    k_after: Decimal


class ReceiptStore:
    def __init__(self) -> None:
        self.receipts: List[SwapReceipt] = []

    def add(self, r: SwapReceipt) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> List[SwapReceipt]:
        return self.receipts[-n:]


def swap_output(amount_in: Decimal, input_reserve: Decimal, output_reserve: Decimal, fee_rate: Decimal) -> Tuple[Decimal, Decimal]:
    """Constant-product output for a fee-on-input swap. Returns (amount_out, amount_in_with_fee).

    The division rounds toward zero so a fill can never overpay the trader
    and k cannot shrink through rounding.
    """
    with localcontext() as ctx:
        ctx.rounding = ROUND_DOWN
        in_with_fee = amount_in * (ONE - fee_rate)
        amount_out = output_reserve * in_with_fee / (input_reserve + in_with_fee)
    return amount_out, in_with_fee


# -----------------------------
# Pool
# -----------------------------
class Pool:
    def __init__(
        self,
        token_id: int,
        name: str,
        total_supply: Decimal,
        fee_rate: Decimal,
        secondary_balance: Decimal = ZERO,
        pair_kind: PairKind = "anchor",
        paired_token_id: Optional[int] = None,
    ) -> None:
        self.token_id = token_id
        self.name = name
        self.total_supply = to_decimal(total_supply)
        self.fee_rate = to_decimal(fee_rate)
        self.secondary_balance = to_decimal(secondary_balance)
        self.pair_kind: PairKind = pair_kind
        self.paired_token_id = paired_token_id

        self.token_reserve: Decimal = ZERO
        self.pair_reserve: Decimal = ZERO
        self.lp_supply: Decimal = ZERO

        self.generation: int = 0
        self.cache = PriceCache()
        self.receipts = ReceiptStore()
        self.on_mutate: Optional[Callable[["Pool"], None]] = None

        # tokenomics applied by the transaction layer
        self.reflection_pct: Decimal = ZERO
        self.burn_pct: Decimal = ZERO
        self.lp_fee_pct: Decimal = ZERO
        self.total_burned: Decimal = ZERO
        self.total_reflected: Decimal = ZERO
        self.lp_fees_collected: Decimal = ZERO

        # chained follow-up buy
        self.follow_up_token_id: Optional[int] = None
        self.follow_up_pct: Decimal = ZERO
        self.secondary_rebate_pct: Decimal = ZERO

        self.amount_processed: Decimal = ZERO

    def __repr__(self) -> str:
        return f"Pool(token_id={self.token_id}, kind={self.pair_kind}, {format_reserves(self)})"

    @property
    def k(self) -> Decimal:
        return self.token_reserve * self.pair_reserve

    @property
    def is_empty(self) -> bool:
        return self.token_reserve.is_zero() or self.pair_reserve.is_zero()

    def spot_price(self) -> Decimal:
        if self.is_empty:
            return ZERO
        return self.pair_reserve / self.token_reserve

    def _touch(self) -> None:
        self.generation += 1
        self.cache.invalidate()
        if self.on_mutate is not None:
            self.on_mutate(self)

    def set_pairing(self, pair_kind: PairKind, paired_token_id: Optional[int] = None) -> None:
        if pair_kind not in PAIR_KINDS:
            raise ValidationError(f"unknown pair kind {pair_kind!r}")
        if pair_kind == "token" and paired_token_id is None:
            raise ValidationError("token pairs need a paired token id")
        if not self.is_empty and (pair_kind != self.pair_kind or paired_token_id != self.paired_token_id):
            raise ValidationError(f"token {self.token_id} already has liquidity; pairing is fixed")
        self.pair_kind = pair_kind
        self.paired_token_id = paired_token_id if pair_kind == "token" else None
        self._touch()

    # -- swaps --
    def quote(self, amount_in: DecimalLike, direction: SwapDirection) -> SwapQuote:
        amt = positive(amount_in)
        if direction not in ("buy", "sell"):
            raise ValidationError(f"unknown swap direction {direction!r}")
        if self.is_empty:
            raise InsufficientLiquidityError(f"No liquidity in pool for token {self.token_id}")

        if direction == "buy":
            input_reserve, output_reserve = self.pair_reserve, self.token_reserve
        else:
            input_reserve, output_reserve = self.token_reserve, self.pair_reserve
        amount_out, in_with_fee = swap_output(amt, input_reserve, output_reserve, self.fee_rate)
        if amount_out >= output_reserve:
            raise InsufficientLiquidityError(
                f"Insufficient liquidity for this trade on token {self.token_id}"
            )

        price_before = self.spot_price()
        if direction == "buy":
            price_after = (self.pair_reserve + amt) / (self.token_reserve - amount_out)
        else:
            price_after = (self.pair_reserve - amount_out) / (self.token_reserve + amt)
        impact = (price_after - price_before) / price_before * HUNDRED
        return SwapQuote(
            direction=direction,
            amount_in=amt,
            amount_in_with_fee=in_with_fee,
            amount_out=amount_out,
            price_before=price_before,
            price_after=price_after,
            price_impact_pct=impact,
        )

    def swap(self, amount_in: DecimalLike, direction: SwapDirection, clock: float = 0.0) -> Tuple[SwapQuote, SwapReceipt]:
        q = self.quote(amount_in, direction)
        k_before = self.k
        if direction == "buy":
            self.pair_reserve += q.amount_in
            self.token_reserve -= q.amount_out
        else:
            self.token_reserve += q.amount_in
            self.pair_reserve -= q.amount_out
        self._touch()
        r = SwapReceipt(
            clock=clock, pool_id=self.token_id, direction=direction,
            amount_in=q.amount_in, amount_out=q.amount_out,
            price_impact_pct=q.price_impact_pct, k_before=k_before, k_after=self.k,
        )
        self.receipts.add(r)
        return q, r

    def check_fill(self, amount_in: Decimal, amount_out: Decimal) -> None:
        """Validate a precomputed buy fill (pair in, token out) against current reserves."""
        if amount_in <= 0 or amount_out <= 0:
            raise ValidationError(f"fill amounts must be positive on token {self.token_id}")
        if self.is_empty:
            raise InsufficientLiquidityError(f"No liquidity in pool for token {self.token_id}")
        if amount_out >= self.token_reserve:
            raise InsufficientLiquidityError(
                f"fill of {amount_out} would drain token {self.token_id} reserve {self.token_reserve}"
            )
        k_after = (self.pair_reserve + amount_in) * (self.token_reserve - amount_out)
        if k_after < self.k:
            raise InsufficientLiquidityError(
                f"fill on token {self.token_id} would shrink k ({self.k} -> {k_after})"
            )

    def apply_fill(self, amount_in: Decimal, amount_out: Decimal, clock: float = 0.0) -> SwapReceipt:
        self.check_fill(amount_in, amount_out)
        price_before = self.spot_price()
        k_before = self.k
        self.pair_reserve += amount_in
        self.token_reserve -= amount_out
        self._touch()
        impact = (self.spot_price() - price_before) / price_before * HUNDRED
        r = SwapReceipt(
            clock=clock, pool_id=self.token_id, direction="buy",
            amount_in=amount_in, amount_out=amount_out,
            price_impact_pct=impact, k_before=k_before, k_after=self.k,
        )
        self.receipts.add(r)
        return r

    # -- liquidity --
    def add_liquidity(
        self,
        token_amount: DecimalLike,
        pair_amount: DecimalLike,
        available_supply: Decimal,
        ratio_tolerance: Decimal,
        paired_available: Optional[Decimal] = None,
    ) -> Decimal:
        token_to_add = positive(token_amount, "token amount")
        pair_to_add = positive(pair_amount, "pair amount")

        if token_to_add > available_supply:
            raise SupplyExceededError(self.token_id, available_supply, token_to_add)

        initial = self.token_reserve.is_zero() and self.pair_reserve.is_zero()
        if not initial:
            current_ratio = self.pair_reserve / self.token_reserve
            provided_ratio = pair_to_add / token_to_add
            if abs(current_ratio - provided_ratio) / current_ratio > ratio_tolerance:
                raise RatioMismatchError(current_ratio, provided_ratio)

        if self.pair_kind == "secondary" and pair_to_add > self.secondary_balance:
            raise SupplyExceededError(self.token_id, self.secondary_balance, pair_to_add)
        if self.pair_kind == "token":
            if paired_available is None:
                raise ValidationError(f"paired token {self.paired_token_id} not found")
            if pair_to_add > paired_available:
                raise SupplyExceededError(self.paired_token_id, paired_available, pair_to_add)

        if initial:
            lp_minted = (token_to_add * pair_to_add).sqrt()
        else:
            lp_minted = self.lp_supply * token_to_add / self.token_reserve

        if self.pair_kind == "secondary":
            self.secondary_balance -= pair_to_add
        self.token_reserve += token_to_add
        self.pair_reserve += pair_to_add
        self.lp_supply += lp_minted
        self._touch()
        return lp_minted

    def remove_liquidity(self, lp_amount: DecimalLike) -> Tuple[Decimal, Decimal]:
        lp = positive(lp_amount, "LP amount")
        if lp > self.lp_supply:
            raise InsufficientLiquidityError(
                f"cannot burn {lp} LP on token {self.token_id}, supply is {self.lp_supply}"
            )
        if lp == self.lp_supply:
            token_out, pair_out = self.token_reserve, self.pair_reserve
        else:
            share = lp / self.lp_supply
            token_out = self.token_reserve * share
            pair_out = self.pair_reserve * share
        self.token_reserve -= token_out
        self.pair_reserve -= pair_out
        self.lp_supply -= lp
        if self.pair_kind == "secondary":
            self.secondary_balance += pair_out
        self._touch()
        return token_out, pair_out

    def deposit_at_spot(self, token_amount: Decimal) -> Decimal:
        """Add token_amount plus the matching pair amount at spot; no LP is minted."""
        if self.is_empty or token_amount <= 0:
            return ZERO
        pair_amount = token_amount * self.spot_price()
        self.token_reserve += token_amount
        self.pair_reserve += pair_amount
        self._touch()
        return pair_amount


# -----------------------------
# Registry (arena of pools by id)
# -----------------------------
class PoolRegistry:
    def __init__(self, secondary_price_usd: Decimal = ONE) -> None:
        self.pools: Dict[int, Pool] = {}
        self.version: int = 0
        self.secondary_price_usd: Decimal = to_decimal(secondary_price_usd)

    def __contains__(self, token_id: object) -> bool:
        return token_id in self.pools

    def __iter__(self) -> Iterator[Pool]:
        return iter(self.pools.values())

    def __len__(self) -> int:
        return len(self.pools)

    def ids(self) -> List[int]:
        return list(self.pools.keys())

    def bump(self) -> None:
        self.version += 1

    def _on_pool_mutated(self, pool: Pool) -> None:
        self.bump()

    def add(self, pool: Pool) -> Pool:
        if pool.token_id in self.pools:
            raise ValidationError(f"token id {pool.token_id} already registered")
        pool.on_mutate = self._on_pool_mutated
        self.pools[pool.token_id] = pool
        self.bump()
        return pool

    def get(self, token_id: int) -> Pool:
        pool = self.pools.get(token_id)
        if pool is None:
            raise ValidationError(f"Invalid token id {token_id}")
        return pool

    def find(self, token_id: Optional[int]) -> Optional[Pool]:
        if token_id is None:
            return None
        return self.pools.get(token_id)

    def set_secondary_price(self, price: DecimalLike) -> None:
        self.secondary_price_usd = positive(price, "secondary price")
        self.bump()

    def dependents(self, token_id: int) -> List[Pool]:
        return [
            p for p in self.pools.values()
            if p.token_id != token_id and p.pair_kind == "token" and p.paired_token_id == token_id
        ]

    def locked_in_other_pools(self, token_id: int) -> Decimal:
        return sum((p.pair_reserve for p in self.dependents(token_id)), ZERO)

    def available_supply(self, token_id: int) -> Decimal:
        pool = self.get(token_id)
        return pool.total_supply - pool.token_reserve - self.locked_in_other_pools(token_id)

    def set_pairing(self, token_id: int, pair_kind: PairKind, paired_token_id: Optional[int] = None) -> None:
        pool = self.get(token_id)
        if pair_kind == "token":
            if paired_token_id == token_id:
                raise ValidationError(f"token {token_id} cannot pair with itself")
            self.get(paired_token_id)
        pool.set_pairing(pair_kind, paired_token_id)

    def add_liquidity(self, token_id: int, token_amount: DecimalLike, pair_amount: DecimalLike,
                      ratio_tolerance: Decimal) -> Decimal:
        pool = self.get(token_id)
        paired_available = None
        if pool.pair_kind == "token":
            paired = self.find(pool.paired_token_id)
            if paired is not None:
                paired_available = self.available_supply(paired.token_id)
        lp = pool.add_liquidity(
            token_amount,
            pair_amount,
            available_supply=self.available_supply(token_id),
            ratio_tolerance=ratio_tolerance,
            paired_available=paired_available,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[LIQ] token=%s kind=%s lp_minted=%s reserves={ %s } k=%s",
                token_id, pool.pair_kind, lp, format_reserves(pool), pool.k,
            )
        return lp

    def update_total_supply(self, token_id: int, new_supply: DecimalLike) -> None:
        pool = self.get(token_id)
        supply = positive(new_supply, "total supply")
        allocated = pool.token_reserve + self.locked_in_other_pools(token_id)
        if supply < allocated:
            raise SupplyExceededError(token_id, supply, allocated)
        pool.total_supply = supply
        pool._touch()
