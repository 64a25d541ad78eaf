from __future__ import annotations
from decimal import Decimal
from typing import List, Optional
import logging

from .config import ScenarioConfig
from .core import Pool, PoolRegistry, PairKind, positive, to_decimal
from .errors import ValidationError

logger = logging.getLogger(__name__)


class TokenFactory:
    def __init__(self, cfg: ScenarioConfig, registry: PoolRegistry) -> None:
        self.cfg = cfg
        self.registry = registry
        self.token_counter = 0

    def _new_token_id(self) -> int:
        self.token_counter += 1
        return self.token_counter

    def create_pool(
        self,
        total_supply: Optional[Decimal] = None,
        *,
        pair_kind: PairKind = "anchor",
        paired_token_id: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Pool:
        cfg = self.cfg
        if len(self.registry) >= cfg.max_tokens:
            raise ValidationError(f"Maximum number of tokens ({cfg.max_tokens}) reached")
        supply = cfg.initial_supply if total_supply is None else positive(total_supply, "total supply")
        if pair_kind == "token":
            if paired_token_id is None:
                raise ValidationError("token pairs need a paired token id")
            self.registry.get(paired_token_id)

        token_id = self._new_token_id()
        pool = Pool(
            token_id=token_id,
            name=name or f"Token {token_id}",
            total_supply=supply,
            fee_rate=cfg.fee_rate,
            secondary_balance=cfg.initial_secondary_balance,
        )
        pool.set_pairing(pair_kind, paired_token_id)
        self.registry.add(pool)
        return pool

    def setup_cascade(self, usd_amount, pools: Optional[List[Pool]] = None) -> List[Pool]:
        """Chain every token's liquidity onto the previous token.

        The first token pairs half its supply with usd_amount USD; each next
        token pairs half its supply with all of the previous token's
        available supply. Tokens that already hold liquidity are skipped.
        """
        amount = positive(to_decimal(usd_amount), "USD amount")
        pools = list(self.registry) if pools is None else pools
        if len(pools) < 2:
            raise ValidationError("Need at least 2 tokens to create a cascade")

        first = pools[0]
        if not first.is_empty:
            raise ValidationError(f"{first.name} already has liquidity")
        self.registry.set_pairing(first.token_id, "anchor")
        self.registry.add_liquidity(first.token_id, first.total_supply / 2, amount, self.cfg.ratio_tolerance)
        configured = [first]

        for previous, current in zip(pools, pools[1:]):
            if not current.is_empty:
                logger.warning("cascade: %s already has liquidity, skipped", current.name)
                continue
            previous_available = self.registry.available_supply(previous.token_id)
            if previous_available <= 0:
                logger.warning("cascade: %s has no available supply for %s", previous.name, current.name)
                continue
            self.registry.set_pairing(current.token_id, "token", previous.token_id)
            self.registry.add_liquidity(
                current.token_id, current.total_supply / 2, previous_available, self.cfg.ratio_tolerance,
            )
            configured.append(current)
            logger.debug("cascade: %s paired with %s %s", current.name, previous_available, previous.name)
        return configured
