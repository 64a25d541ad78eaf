"""
Reflection / burn / LP-fee tokenomics applied to the tokens of a trade.

Percentages are whole percents (5 means 5%). Burned tokens leave the total
supply, reflected tokens are shared among holders in proportion to their
balances, and half of the LP fee is deposited into the pool at spot price.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable
import logging

from .core import ZERO, HUNDRED, Pool, PoolRegistry, to_decimal
from .errors import ValidationError
from .wallet import Wallet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MechanicsPreset:
    name: str
    reflection: Decimal
    burn: Decimal
    lp_fee: Decimal
    description: str


PRESETS: Dict[str, MechanicsPreset] = {
    "safemoon": MechanicsPreset("SafeMoon Style", Decimal(5), ZERO, Decimal(5),
                                "5% reflection to holders, 5% to liquidity pool"),
    "rfi": MechanicsPreset("RFI (Reflect Finance)", Decimal(2), ZERO, ZERO,
                           "2% reflection to all holders"),
    "deflationary": MechanicsPreset("Deflationary", Decimal(2), Decimal(3), ZERO,
                                    "3% burn, 2% reflection"),
    "aggressive-burn": MechanicsPreset("Aggressive Burn", ZERO, Decimal(5), ZERO,
                                       "5% burn per transaction"),
    "custom": MechanicsPreset("Custom", ZERO, ZERO, ZERO, "Set your own percentages"),
    "none": MechanicsPreset("None", ZERO, ZERO, ZERO, "Disable all mechanics"),
}


@dataclass
class MechanicsResult:
    reflection: Decimal = ZERO
    burn: Decimal = ZERO
    lp_fee: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.reflection + self.burn + self.lp_fee


def apply_preset(pool: Pool, preset_name: str) -> MechanicsPreset:
    preset = PRESETS.get(preset_name)
    if preset is None:
        raise ValidationError(f"Unknown preset: {preset_name}")
    pool.reflection_pct = preset.reflection
    pool.burn_pct = preset.burn
    pool.lp_fee_pct = preset.lp_fee
    return preset


def set_mechanics(pool: Pool, reflection, burn, lp_fee) -> None:
    r, b, f = to_decimal(reflection), to_decimal(burn), to_decimal(lp_fee)
    if r < 0 or b < 0 or f < 0:
        raise ValidationError("mechanics percentages cannot be negative")
    if r + b + f > HUNDRED:
        raise ValidationError("Total percentages cannot exceed 100%")
    pool.reflection_pct = r
    pool.burn_pct = b
    pool.lp_fee_pct = f


def distribute_reflection(token_id: int, amount: Decimal, wallets: Iterable[Wallet]) -> Decimal:
    holders = [(w, w.token_balance(token_id)) for w in wallets]
    holders = [(w, h) for w, h in holders if h > 0]
    total_held = sum((h for _, h in holders), ZERO)
    if total_held.is_zero():
        return ZERO
    for w, holding in holders:
        w.token_balances[token_id] = holding + amount * holding / total_held
    return amount


def _deposit_lp_fee(registry: PoolRegistry, pool: Pool, token_amount: Decimal) -> bool:
    if pool.is_empty:
        return False
    pair_amount = token_amount * pool.spot_price()
    # the pair side has to come from somewhere real
    if pool.pair_kind == "secondary":
        if pair_amount > pool.secondary_balance:
            return False
        pool.secondary_balance -= pair_amount
    elif pool.pair_kind == "token":
        paired = registry.find(pool.paired_token_id)
        if paired is None or pair_amount > registry.available_supply(paired.token_id):
            return False
    pool.deposit_at_spot(token_amount)
    return True


def apply_transaction_mechanics(registry: PoolRegistry, pool: Pool, token_amount: Decimal,
                                wallets: Iterable[Wallet]) -> MechanicsResult:
    result = MechanicsResult(
        reflection=token_amount * pool.reflection_pct / HUNDRED,
        burn=token_amount * pool.burn_pct / HUNDRED,
        lp_fee=token_amount * pool.lp_fee_pct / HUNDRED,
    )

    if result.burn > 0:
        # supply locked in reserves cannot be burned
        result.burn = min(result.burn, max(registry.available_supply(pool.token_id), ZERO))
        pool.total_supply -= result.burn
        pool.total_burned += result.burn

    if result.reflection > 0:
        distribute_reflection(pool.token_id, result.reflection, wallets)
        pool.total_reflected += result.reflection

    if result.lp_fee > 0:
        if not _deposit_lp_fee(registry, pool, result.lp_fee / 2):
            logger.debug("LP fee on token %s collected without a reserve deposit", pool.token_id)
        pool.lp_fees_collected += result.lp_fee

    if result.total > 0:
        logger.debug(
            "mechanics token=%s reflection=%s burn=%s lp_fee=%s",
            pool.token_id, result.reflection, result.burn, result.lp_fee,
        )
    return result
