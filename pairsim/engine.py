from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
import logging
import math

import numpy as np

from .capital import CapitalAnalyzer, CapitalBreakdown, CascadeReport, TokenImpact
from .chain import ChainScheduler, ChainTask
from .config import ScenarioConfig
from .core import (
    ZERO, HUNDRED, Event, EventLog, PairKind, Pool, PoolRegistry, PriceStatus,
    SwapDirection, SwapQuote, SwapReceipt, positive, set_precision, to_decimal,
)
from .errors import (
    AmmError, ChainConflictError, InsufficientBalanceError, InsufficientLiquidityError,
    RouteError, TradingPausedError, ValidationError,
)
from .factory import TokenFactory
from .mechanics import MechanicsResult, apply_preset, apply_transaction_mechanics, set_mechanics
from .metrics import MetricsStore
from .prices import PriceLink, PriceResolver
from .router import Route, RouteResult, Router
from .wallet import Wallet, WalletBook

logger = logging.getLogger(__name__)


@dataclass
class SwapResult:
    pool_id: int
    direction: SwapDirection
    amount_in: Decimal
    amount_out: Decimal
    price_impact_pct: Decimal
    receipt: SwapReceipt


@dataclass
class TradeResult:
    side: str
    wallet_id: int
    token_id: int
    amount_usd: Decimal
    tokens: Decimal
    gas_used: Decimal
    price_impact_pct: Decimal
    pair_received: Decimal = ZERO
    route_description: Optional[str] = None
    hops: List[dict] = field(default_factory=list)
    mechanics: Optional[MechanicsResult] = None
    follow_up: Optional[ChainTask] = None


class SimulationEngine:
    def __init__(self, cfg: Optional[ScenarioConfig] = None, seed: int = 1) -> None:
        self.cfg = cfg or ScenarioConfig()
        self.seed = seed
        set_precision(self.cfg.decimal_precision)
        self._build()

    def _build(self) -> None:
        cfg = self.cfg
        np.random.seed(self.seed)

        self.paused: bool = False
        self.log = EventLog(maxlen=cfg.event_log_maxlen)
        self.metrics = MetricsStore()
        self.registry = PoolRegistry(cfg.secondary_price_usd)
        self.chain = ChainScheduler(
            min_interval=cfg.chain_min_interval,
            max_interval=cfg.chain_max_interval,
            conflict_policy=cfg.chain_conflict_policy,
        )
        self.resolver = PriceResolver(
            self.registry,
            cache_ttl=cfg.price_cache_ttl,
            max_iterations=cfg.convergence_max_iterations,
            threshold=cfg.convergence_threshold,
            clock=lambda: self.chain.clock,
        )
        self.router = Router(
            self.registry,
            max_hops=cfg.max_hops,
            anchor_symbol=cfg.anchor_symbol,
            secondary_symbol=cfg.secondary_symbol,
        )
        self.capital = CapitalAnalyzer(self.registry, self.resolver, mode=cfg.capital_mode)
        self.wallets = WalletBook(cfg.wallet_initial_anchor, cfg.wallet_initial_secondary)
        self.factory = TokenFactory(cfg, self.registry)

        self.last_price_iterations: int = 0
        self._snapshot_count: int = 0

    @property
    def clock(self) -> float:
        return self.chain.clock

    def _event(self, event_type: str, **kw) -> None:
        self.log.add(Event(self.clock, event_type, **kw))

    def _check_trading(self) -> None:
        if self.paused:
            raise TradingPausedError("Trading is paused")

    # -----------------------------
    # Pools
    # -----------------------------
    def create_pool(
        self,
        total_supply: Optional[Decimal] = None,
        *,
        pair_kind: PairKind = "anchor",
        paired_token_id: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Pool:
        pool = self.factory.create_pool(
            total_supply, pair_kind=pair_kind, paired_token_id=paired_token_id, name=name,
        )
        self._event("POOL_CREATED", token_id=pool.token_id, amount=pool.total_supply,
                    meta={"pair_kind": pool.pair_kind, "paired_token_id": pool.paired_token_id})
        return pool

    def pool(self, token_id: int) -> Pool:
        return self.registry.get(token_id)

    def set_pairing(self, token_id: int, pair_kind: PairKind, paired_token_id: Optional[int] = None) -> None:
        self.registry.set_pairing(token_id, pair_kind, paired_token_id)
        self._event("PAIRING_SET", token_id=token_id,
                    meta={"pair_kind": pair_kind, "paired_token_id": paired_token_id})

    def add_liquidity(self, pool_id: int, token_amount, pair_amount) -> Decimal:
        try:
            lp = self.registry.add_liquidity(pool_id, token_amount, pair_amount, self.cfg.ratio_tolerance)
        except AmmError as exc:
            self._event("LIQUIDITY_FAILED", token_id=pool_id, meta={"reason": str(exc)})
            raise
        self._event("LIQUIDITY_ADDED", token_id=pool_id, amount=lp,
                    meta={"token_amount": str(token_amount), "pair_amount": str(pair_amount)})
        self.resolve_all_prices()
        return lp

    def remove_liquidity(self, pool_id: int, lp_amount):
        token_out, pair_out = self.registry.get(pool_id).remove_liquidity(lp_amount)
        self._event("LIQUIDITY_REMOVED", token_id=pool_id, amount=to_decimal(lp_amount),
                    meta={"token_out": str(token_out), "pair_out": str(pair_out)})
        self.resolve_all_prices()
        return token_out, pair_out

    def update_total_supply(self, token_id: int, new_supply) -> None:
        self.registry.update_total_supply(token_id, new_supply)

    def available_supply(self, token_id: int) -> Decimal:
        return self.registry.available_supply(token_id)

    def setup_cascade(self, usd_amount) -> List[Pool]:
        pools = self.factory.setup_cascade(usd_amount)
        self._event("CASCADE_CONFIGURED", amount=to_decimal(usd_amount), meta={"tokens": [p.token_id for p in pools]})
        self.resolve_all_prices()
        return pools

    # -----------------------------
    # Swaps and routes
    # -----------------------------
    def quote_swap(self, pool_id: int, amount_in, direction: SwapDirection) -> SwapQuote:
        return self.registry.get(pool_id).quote(amount_in, direction)

    def execute_swap(self, pool_id: int, amount_in, direction: SwapDirection) -> SwapResult:
        self._check_trading()
        pool = self.registry.get(pool_id)
        q, r = pool.swap(amount_in, direction, clock=self.clock)
        self._event("SWAP", token_id=pool_id, amount=q.amount_in,
                    meta={"direction": direction, "amount_out": str(q.amount_out)})
        self.resolve_all_prices()
        return SwapResult(
            pool_id=pool_id, direction=direction, amount_in=q.amount_in,
            amount_out=q.amount_out, price_impact_pct=q.price_impact_pct, receipt=r,
        )

    def find_best_route(self, target_id: int, amount_in) -> Optional[Route]:
        return self.router.find_best_path(target_id, positive(amount_in))

    def route_preview(self, target_id: int, amount_in) -> str:
        return self.router.route_preview(target_id, positive(amount_in))

    def execute_route(self, route: Route) -> RouteResult:
        self._check_trading()
        try:
            result = self.router.execute_route(route, clock=self.clock)
        except RouteError as exc:
            self._event("ROUTE_FAILED", token_id=route.target_id if route and route.path else None,
                        meta={"reason": str(exc), "hop_index": exc.hop_index})
            raise
        self._event("ROUTE_EXECUTED", token_id=route.target_id, amount=route.amount_in,
                    meta={"path": result.path_description, "amount_out": str(result.final_amount)})
        self.resolve_all_prices()
        return result

    # -----------------------------
    # Prices
    # -----------------------------
    def resolve_all_prices(self) -> None:
        self.last_price_iterations = self.resolver.resolve_all_prices()

    def price_of(self, token_id: int) -> Decimal:
        return self.resolver.resolve_price_usd(token_id)

    def price_status(self, token_id: int) -> PriceStatus:
        return self.resolver.price_status(token_id)

    def price_chain(self, token_id: int) -> List[PriceLink]:
        return self.resolver.price_chain(token_id)

    def set_secondary_price(self, price) -> None:
        self.registry.set_secondary_price(price)
        self._event("SECONDARY_PRICE_SET", amount=self.registry.secondary_price_usd)
        self.resolve_all_prices()

    # -----------------------------
    # Capital
    # -----------------------------
    def capital_breakdown(self, mode: Optional[str] = None) -> CapitalBreakdown:
        return self.capital.capital_breakdown(mode)

    def set_capital_mode(self, mode: str) -> None:
        self.capital.set_mode(mode)

    def cascade_report(self, pct_change) -> CascadeReport:
        return self.capital.cascade_impact(pct_change)

    def cascade_impact(self, pct_change) -> List[TokenImpact]:
        return self.cascade_report(pct_change).impacts

    # -----------------------------
    # Tokenomics / follow-ups
    # -----------------------------
    def apply_preset(self, preset_name: str, token_id: Optional[int] = None) -> None:
        pools = list(self.registry) if token_id is None else [self.registry.get(token_id)]
        for p in pools:
            apply_preset(p, preset_name)

    def set_mechanics(self, token_id: int, reflection, burn, lp_fee) -> None:
        set_mechanics(self.registry.get(token_id), reflection, burn, lp_fee)

    def set_follow_up(self, token_id: int, follow_up_token_id: Optional[int],
                      follow_up_pct=0, secondary_rebate_pct=0) -> None:
        pool = self.registry.get(token_id)
        pct, rebate = to_decimal(follow_up_pct), to_decimal(secondary_rebate_pct)
        if pct < 0 or rebate < 0:
            raise ValidationError("follow-up percentages cannot be negative")
        if follow_up_token_id is not None:
            self.registry.get(follow_up_token_id)
        pool.follow_up_token_id = follow_up_token_id
        pool.follow_up_pct = pct
        pool.secondary_rebate_pct = rebate

    # -----------------------------
    # Wallets
    # -----------------------------
    def create_wallet(self, name: Optional[str] = None) -> Wallet:
        w = self.wallets.create(name)
        self._event("WALLET_CREATED", wallet_id=w.wallet_id)
        return w

    def add_secondary(self, wallet_id: int, amount) -> None:
        self.wallets.get(wallet_id).credit_secondary(amount)

    def add_secondary_to_all(self, total) -> Decimal:
        return self.wallets.credit_secondary_all(total)

    def _draw_gas(self) -> Decimal:
        cfg = self.cfg
        if not cfg.require_gas:
            return ZERO
        u = Decimal(str(float(np.random.uniform(0.0, 1.0))))
        return cfg.min_gas + (cfg.max_gas - cfg.min_gas) * u

    def _check_gas(self, wallet: Wallet, gas: Decimal) -> None:
        if gas > 0 and wallet.secondary_balance < gas:
            raise InsufficientBalanceError(f"{self.cfg.secondary_symbol} for gas", wallet.secondary_balance, gas)

    # -----------------------------
    # Trades
    # -----------------------------
    def process_buy(self, wallet_id: int, token_id: int, amount) -> TradeResult:
        """Spend `amount` USD of the wallet on token_id, routing through token pairs when needed."""
        try:
            return self._process_buy(wallet_id, token_id, amount)
        except AmmError as exc:
            self.metrics.record_failure()
            self._event("BUY_FAILED", wallet_id=wallet_id, token_id=token_id, meta={"reason": str(exc)})
            raise

    def _process_buy(self, wallet_id: int, token_id: int, amount) -> TradeResult:
        amt = positive(amount)
        wallet = self.wallets.get(wallet_id)
        pool = self.registry.get(token_id)
        self._check_trading()

        if wallet.anchor_balance < amt:
            raise InsufficientBalanceError(self.cfg.anchor_symbol, wallet.anchor_balance, amt)
        gas = self._draw_gas()
        self._check_gas(wallet, gas)
        if pool.is_empty:
            raise InsufficientLiquidityError(f"No liquidity in pool for token {token_id}")

        route_description = None
        hops: List[dict] = []
        if pool.pair_kind == "token":
            route = self.router.find_best_path(token_id, amt)
            if route is None:
                raise RouteError("No liquidity path available to this token")
            result = self.router.execute_route(route, clock=self.clock)
            tokens, impact = result.final_amount, result.total_price_impact
            route_description, hops = result.path_description, result.hops
        else:
            pair_amount = amt if pool.pair_kind == "anchor" else amt / self.registry.secondary_price_usd
            q = pool.quote(pair_amount, "buy")
            if q.amount_out <= 0:
                raise ValidationError(f"buy of {amt} is too small to receive any token {token_id}")
            q, _ = pool.swap(pair_amount, "buy", clock=self.clock)
            tokens, impact = q.amount_out, q.price_impact_pct

        wallet.debit_anchor(amt, self.cfg.anchor_symbol)
        if gas > 0:
            wallet.debit_secondary(gas)
        wallet.credit_token(token_id, tokens)

        mech = apply_transaction_mechanics(self.registry, pool, tokens, self.wallets)
        if mech.total > 0:
            balance = wallet.token_balance(token_id) - mech.total
            wallet.set_token_balance(token_id, max(balance, ZERO))
            tokens = tokens - mech.total

        pool.amount_processed += amt
        self.metrics.record_transaction("buy", amt, gas)
        self._event("BUY", wallet_id=wallet_id, token_id=token_id, amount=amt,
                    meta={"tokens": str(tokens), "gas": str(gas), "route": route_description})
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[BUY] wallet=%s token=%s usd=%s tokens=%s impact=%s%% route=%s",
                         wallet_id, token_id, amt, tokens, impact, route_description or "direct")
        self.resolve_all_prices()

        follow_up = self._schedule_follow_up(wallet, pool, amt)
        return TradeResult(
            side="buy", wallet_id=wallet_id, token_id=token_id, amount_usd=amt, tokens=tokens,
            gas_used=gas, price_impact_pct=impact, route_description=route_description,
            hops=hops, mechanics=mech, follow_up=follow_up,
        )

    def process_sell(self, wallet_id: int, token_id: int, token_amount) -> TradeResult:
        """Sell tokens back into the token's own pool; proceeds arrive in its pair asset."""
        try:
            return self._process_sell(wallet_id, token_id, token_amount)
        except AmmError as exc:
            self.metrics.record_failure()
            self._event("SELL_FAILED", wallet_id=wallet_id, token_id=token_id, meta={"reason": str(exc)})
            raise

    def _process_sell(self, wallet_id: int, token_id: int, token_amount) -> TradeResult:
        amt = positive(token_amount)
        wallet = self.wallets.get(wallet_id)
        pool = self.registry.get(token_id)
        self._check_trading()

        have = wallet.token_balance(token_id)
        if have < amt:
            raise InsufficientBalanceError(pool.name, have, amt)
        if pool.is_empty:
            raise InsufficientLiquidityError("No liquidity in pool to sell to")

        # mechanics are taken out of the sold tokens before they reach the pool
        cut = amt * (pool.reflection_pct + pool.burn_pct + pool.lp_fee_pct) / HUNDRED
        net = amt - cut
        if net <= 0:
            raise ValidationError(f"mechanics on token {token_id} leave nothing to sell")
        q = pool.quote(net, "sell")
        if q.amount_out <= 0:
            raise ValidationError(f"sell of {amt} is too small to receive anything")

        if pool.pair_kind == "anchor":
            usd_value = q.amount_out
        elif pool.pair_kind == "secondary":
            usd_value = q.amount_out * self.registry.secondary_price_usd
        else:
            usd_value = q.amount_out * self.resolver.resolve_price_usd(pool.paired_token_id)

        gas = self._draw_gas()
        self._check_gas(wallet, gas)

        wallet.debit_token(token_id, amt)
        q, _ = pool.swap(net, "sell", clock=self.clock)
        if gas > 0:
            wallet.debit_secondary(gas)
        if pool.pair_kind == "anchor":
            wallet.credit_anchor(q.amount_out)
        elif pool.pair_kind == "secondary":
            wallet.credit_secondary(q.amount_out)
        else:
            wallet.credit_token(pool.paired_token_id, q.amount_out)

        mech = apply_transaction_mechanics(self.registry, pool, amt, self.wallets)

        pool.amount_processed += usd_value
        self.metrics.record_transaction("sell", usd_value, gas)
        self._event("SELL", wallet_id=wallet_id, token_id=token_id, amount=-usd_value,
                    meta={"tokens": str(-amt), "pair_received": str(q.amount_out), "gas": str(gas)})
        self.resolve_all_prices()
        return TradeResult(
            side="sell", wallet_id=wallet_id, token_id=token_id, amount_usd=usd_value, tokens=amt,
            gas_used=gas, price_impact_pct=q.price_impact_pct, pair_received=q.amount_out, mechanics=mech,
        )

    def _schedule_follow_up(self, wallet: Wallet, pool: Pool, amount: Decimal) -> Optional[ChainTask]:
        if pool.follow_up_token_id is None or pool.follow_up_pct <= 0 or self.paused:
            return None
        target = self.registry.find(pool.follow_up_token_id)
        if target is None:
            logger.info("follow-up token %s of %s no longer exists", pool.follow_up_token_id, pool.name)
            return None

        rebate = amount * pool.secondary_rebate_pct / HUNDRED
        if rebate > 0:
            wallet.credit_secondary(rebate)
        next_amount = amount * pool.follow_up_pct / HUNDRED
        if next_amount < self.cfg.chain_min_amount:
            logger.debug("chain for wallet %s stops: next amount %s below minimum", wallet.wallet_id, next_amount)
            return None

        wallet_id, target_id = wallet.wallet_id, target.token_id

        def step() -> None:
            self.process_buy(wallet_id, target_id, next_amount)

        try:
            task = self.chain.submit(wallet_id, None, step)
        except ChainConflictError as exc:
            self._event("CHAIN_REJECTED", wallet_id=wallet_id, token_id=target_id, amount=next_amount,
                        meta={"reason": str(exc)})
            return None
        self._event("CHAIN_SCHEDULED", wallet_id=wallet_id, token_id=target_id, amount=next_amount,
                    meta={"delay": task.delay})
        return task

    # -----------------------------
    # Clock and control
    # -----------------------------
    def advance(self, seconds: float) -> List[ChainTask]:
        return self.chain.advance(seconds, max_steps=self.cfg.chain_max_steps)

    def run_chains(self) -> List[ChainTask]:
        return self.chain.run_pending(max_steps=self.cfg.chain_max_steps)

    def cancel_chain(self, wallet_id: int) -> int:
        return self.chain.cancel(wallet_id)

    def pause(self) -> None:
        self.paused = True
        self.chain.pause()
        self._event("PAUSED")

    def resume(self) -> None:
        self.paused = False
        self.chain.resume()
        self._event("RESUMED")

    def toggle_pause(self) -> bool:
        if self.paused:
            self.resume()
        else:
            self.pause()
        return self.paused

    def reset(self) -> None:
        """Drop every token, wallet, pending chain and counter."""
        self.chain.reset()
        self._build()

    # -----------------------------
    # Metrics
    # -----------------------------
    def transactions_per_minute(self) -> float:
        return self.metrics.transactions_per_minute(self.clock)

    def snapshot_metrics(self) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        self._snapshot_count += 1
        if stride <= 0 or (self._snapshot_count - 1) % stride != 0:
            return

        breakdown = self.capital.capital_breakdown()
        pool_rows: List[Dict] = []
        for p in self.registry:
            depth = self.capital.liquidity_depth(p.token_id)
            pool_rows.append({
                "clock": self.clock,
                "token_id": p.token_id,
                "name": p.name,
                "pair_kind": p.pair_kind,
                "paired_token_id": p.paired_token_id,
                "token_reserve": float(p.token_reserve),
                "pair_reserve": float(p.pair_reserve),
                "k": float(p.k),
                "price_usd": float(self.resolver.resolve_price_usd(p.token_id)),
                "price_status": self.resolver.price_status(p.token_id),
                "depth": depth,
                "real_capital": float(self.capital.real_capital(p.token_id)),
                "derived_capital": float(self.capital.derived_capital(p.token_id)),
                "available_supply": float(self.registry.available_supply(p.token_id)),
                "total_burned": float(p.total_burned),
                "amount_processed": float(p.amount_processed),
            })
        self.metrics.add_pool_rows(pool_rows)

        m = self.metrics
        self.metrics.add_network({
            "clock": self.clock,
            "tokens": len(self.registry),
            "wallets": len(self.wallets),
            "transactions": m.transaction_count,
            "failed_transactions": m.failed_count,
            "total_processed_usd": float(m.total_processed),
            "total_gas_used": float(m.total_gas_used),
            "average_gas": float(m.average_gas()),
            "average_transaction_size": float(m.average_transaction_size()),
            "transactions_per_minute": self.transactions_per_minute(),
            "secondary_price_usd": float(self.registry.secondary_price_usd),
            "real_capital": float(breakdown.real_capital),
            "derived_capital": float(breakdown.derived_capital),
            "leverage_ratio": float(breakdown.leverage_ratio),
            "average_depth": breakdown.average_depth,
            "isolated_tokens": sum(1 for r in pool_rows if math.isinf(r["depth"])),
            "degenerate_prices": len(self.resolver.degenerate),
            "price_iterations": self.last_price_iterations,
            "pending_chain_steps": self.chain.pending_count(),
        })
