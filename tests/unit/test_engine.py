import pytest
from decimal import Decimal

from pairsim.config import ScenarioConfig
from pairsim.engine import SimulationEngine
from pairsim.errors import (
    InsufficientBalanceError,
    InsufficientLiquidityError,
    RouteError,
    TradingPausedError,
    ValidationError,
)


def _reserves(*pools):
    return [(p.token_reserve, p.pair_reserve) for p in pools]


def _two_anchor_pools(engine):
    p = engine.create_pool(name="P")
    q = engine.create_pool(name="Q")
    engine.add_liquidity(p.token_id, Decimal("1000"), Decimal("1000"))
    engine.add_liquidity(q.token_id, Decimal("1000"), Decimal("1000"))
    return p, q


# -----------------------------
# Routing end to end
# -----------------------------

def test_routed_trade_updates_both_pools_and_prices(ab):
    engine, a, b = ab
    route = engine.find_best_route(b.token_id, Decimal("10"))
    assert route is not None
    assert route.path == [a.token_id, b.token_id]

    k_before = b.k
    b_tokens_before = b.token_reserve
    engine.execute_route(route)

    assert a.pair_reserve == Decimal("510")
    assert b.token_reserve < b_tokens_before
    assert b.k == b.token_reserve * b.pair_reserve
    assert b.k >= k_before
    assert engine.price_of(b.token_id) == b.spot_price() * engine.price_of(a.token_id)
    assert engine.price_status(b.token_id) == "ok"


def test_quote_and_execute_swap(xy):
    engine, x, _ = xy
    q = engine.quote_swap(x.token_id, Decimal("10"), "buy")
    assert x.pair_reserve == Decimal("1000")
    res = engine.execute_swap(x.token_id, Decimal("10"), "buy")
    assert res.amount_out == q.amount_out
    assert res.receipt.k_after >= res.receipt.k_before
    assert x.pair_reserve == Decimal("1010")


def test_liquidity_round_trip_through_engine(engine):
    p = engine.create_pool()
    lp = engine.add_liquidity(p.token_id, Decimal("400"), Decimal("100"))
    token_out, pair_out = engine.remove_liquidity(p.token_id, lp)
    assert (token_out, pair_out) == (Decimal("400"), Decimal("100"))
    assert p.is_empty
    assert engine.available_supply(p.token_id) == p.total_supply
    assert engine.log.of_type("LIQUIDITY_REMOVED")


def test_failed_liquidity_add_is_logged(engine):
    p = engine.create_pool(Decimal("100"))
    with pytest.raises(ValidationError):
        engine.add_liquidity(p.token_id, Decimal("0"), Decimal("1"))
    assert engine.log.of_type("LIQUIDITY_FAILED")


def test_token_cap(cfg):
    engine = SimulationEngine(ScenarioConfig(max_tokens=2))
    engine.create_pool()
    engine.create_pool()
    with pytest.raises(ValidationError):
        engine.create_pool()


# -----------------------------
# Buys and sells
# -----------------------------

def test_direct_buy_moves_balances(engine):
    p, _ = _two_anchor_pools(engine)
    w = engine.create_wallet()
    res = engine.process_buy(w.wallet_id, p.token_id, Decimal("100"))

    assert w.anchor_balance == Decimal("999900")
    assert w.token_balance(p.token_id) == res.tokens
    assert p.pair_reserve == Decimal("1100")
    assert Decimal("0.000001") <= res.gas_used <= Decimal("0.000005")
    assert w.secondary_balance == Decimal("1000000") - res.gas_used
    assert p.amount_processed == Decimal("100")
    assert engine.metrics.transaction_count == 1
    assert engine.log.of_type("BUY")


def test_buy_of_token_pair_is_routed(xy):
    engine, x, y = xy
    w = engine.create_wallet()
    res = engine.process_buy(w.wallet_id, y.token_id, Decimal("100"))
    assert res.route_description == "USD → X → Y"
    assert len(res.hops) == 2
    assert 0 < res.tokens < Decimal("50")
    assert w.token_balance(y.token_id) == res.tokens
    assert w.token_balance(x.token_id) == 0


def test_buy_on_secondary_pool_converts_usd(engine):
    s = engine.create_pool(pair_kind="secondary", name="S")
    engine.add_liquidity(s.token_id, Decimal("1000"), Decimal("500"))
    assert engine.price_of(s.token_id) == Decimal("0.5")
    engine.set_secondary_price(Decimal("2"))
    assert engine.price_of(s.token_id) == Decimal("1")

    w = engine.create_wallet()
    engine.process_buy(w.wallet_id, s.token_id, Decimal("100"))
    assert s.pair_reserve == Decimal("550")


def test_buy_without_enough_usd_changes_nothing(xy):
    engine, x, y = xy
    w = engine.create_wallet()
    before = _reserves(x, y)
    with pytest.raises(InsufficientBalanceError):
        engine.process_buy(w.wallet_id, y.token_id, Decimal("2000000"))
    assert _reserves(x, y) == before
    assert w.anchor_balance == Decimal("1000000")
    assert engine.metrics.failed_count == 1
    assert engine.log.of_type("BUY_FAILED")


def test_buy_without_gas_changes_nothing(xy):
    engine, x, _ = xy
    w = engine.create_wallet()
    w.secondary_balance = Decimal("0")
    with pytest.raises(InsufficientBalanceError) as ei:
        engine.process_buy(w.wallet_id, x.token_id, Decimal("10"))
    assert "WPLS" in ei.value.asset
    assert x.pair_reserve == Decimal("1000")


def test_gas_can_be_disabled():
    engine = SimulationEngine(ScenarioConfig(require_gas=False))
    p, _ = _two_anchor_pools(engine)
    w = engine.create_wallet()
    w.secondary_balance = Decimal("0")
    res = engine.process_buy(w.wallet_id, p.token_id, Decimal("10"))
    assert res.gas_used == 0


def test_buy_on_empty_or_unreachable_pool(engine):
    x = engine.create_pool()
    y = engine.create_pool(pair_kind="token", paired_token_id=x.token_id)
    w = engine.create_wallet()
    with pytest.raises(InsufficientLiquidityError):
        engine.process_buy(w.wallet_id, x.token_id, Decimal("10"))

    engine.add_liquidity(x.token_id, Decimal("100"), Decimal("100"))
    engine.add_liquidity(y.token_id, Decimal("100"), Decimal("100"))
    x.remove_liquidity(x.lp_supply)
    with pytest.raises(RouteError):
        engine.process_buy(w.wallet_id, y.token_id, Decimal("10"))
    assert w.anchor_balance == Decimal("1000000")


def test_paused_engine_rejects_trades(xy):
    engine, x, _ = xy
    w = engine.create_wallet()
    assert engine.toggle_pause() is True
    with pytest.raises(TradingPausedError):
        engine.process_buy(w.wallet_id, x.token_id, Decimal("10"))
    with pytest.raises(TradingPausedError):
        engine.execute_swap(x.token_id, Decimal("10"), "buy")
    engine.resume()
    engine.process_buy(w.wallet_id, x.token_id, Decimal("10"))


def test_sell_on_anchor_pool_pays_usd(engine):
    p, _ = _two_anchor_pools(engine)
    w = engine.create_wallet()
    bought = engine.process_buy(w.wallet_id, p.token_id, Decimal("100")).tokens
    sold = engine.process_sell(w.wallet_id, p.token_id, bought)

    assert w.token_balance(p.token_id) == 0
    assert sold.pair_received == sold.amount_usd
    assert 0 < sold.amount_usd < Decimal("100")
    assert w.anchor_balance == Decimal("999900") + sold.amount_usd
    assert engine.metrics.sell_count == 1


def test_sell_on_token_pair_pays_in_paired_token(xy):
    engine, x, y = xy
    w = engine.create_wallet()
    bought = engine.process_buy(w.wallet_id, y.token_id, Decimal("100")).tokens
    sold = engine.process_sell(w.wallet_id, y.token_id, bought / 2)

    assert w.token_balance(x.token_id) == sold.pair_received
    assert w.token_balance(y.token_id) == bought - bought / 2
    assert sold.amount_usd > 0


def test_sell_more_than_held_is_rejected(xy):
    engine, x, _ = xy
    w = engine.create_wallet()
    with pytest.raises(InsufficientBalanceError):
        engine.process_sell(w.wallet_id, x.token_id, Decimal("1"))
    assert engine.log.of_type("SELL_FAILED")


def test_unknown_wallet_is_rejected(xy):
    engine, x, _ = xy
    with pytest.raises(ValidationError):
        engine.process_buy(42, x.token_id, Decimal("1"))


# -----------------------------
# Mechanics
# -----------------------------

def test_burn_preset_shrinks_supply(engine):
    p, _ = _two_anchor_pools(engine)
    engine.apply_preset("aggressive-burn", p.token_id)
    w = engine.create_wallet()
    res = engine.process_buy(w.wallet_id, p.token_id, Decimal("100"))

    gross = res.tokens + res.mechanics.total
    assert abs(res.mechanics.burn - gross * Decimal("0.05")) < Decimal("1e-40")
    assert p.total_burned == res.mechanics.burn
    assert p.total_supply == Decimal("1000000") - p.total_burned
    assert w.token_balance(p.token_id) == res.tokens


def test_reflection_reaches_earlier_holders(engine):
    p, _ = _two_anchor_pools(engine)
    early = engine.create_wallet()
    engine.process_buy(early.wallet_id, p.token_id, Decimal("100"))
    held = early.token_balance(p.token_id)

    engine.apply_preset("safemoon")
    late = engine.create_wallet()
    res = engine.process_buy(late.wallet_id, p.token_id, Decimal("100"))
    assert early.token_balance(p.token_id) > held
    assert p.total_reflected == res.mechanics.reflection
    assert p.lp_fees_collected == res.mechanics.lp_fee


# -----------------------------
# Chained follow-up trades
# -----------------------------

def test_follow_up_buy_runs_after_delay(engine):
    p, q = _two_anchor_pools(engine)
    engine.set_follow_up(p.token_id, q.token_id, Decimal("50"), Decimal("10"))
    w = engine.create_wallet()
    res = engine.process_buy(w.wallet_id, p.token_id, Decimal("100"))

    assert res.follow_up is not None
    assert w.secondary_balance == Decimal("1000010") - res.gas_used
    assert w.token_balance(q.token_id) == 0

    ran = engine.advance(1.0)
    assert [t.status for t in ran] == ["done"]
    assert w.token_balance(q.token_id) > 0
    assert w.anchor_balance == Decimal("999850")
    assert engine.metrics.transaction_count == 2


def test_pause_stops_pending_follow_up(engine):
    p, q = _two_anchor_pools(engine)
    engine.set_follow_up(p.token_id, q.token_id, Decimal("50"))
    w = engine.create_wallet()
    task = engine.process_buy(w.wallet_id, p.token_id, Decimal("100")).follow_up
    engine.pause()
    engine.advance(1.0)
    assert task.status == "skipped"
    assert w.token_balance(q.token_id) == 0


def test_cancelled_follow_up_never_runs(engine):
    p, q = _two_anchor_pools(engine)
    engine.set_follow_up(p.token_id, q.token_id, Decimal("50"))
    w = engine.create_wallet()
    engine.process_buy(w.wallet_id, p.token_id, Decimal("100"))
    assert engine.cancel_chain(w.wallet_id) == 1
    engine.run_chains()
    assert w.token_balance(q.token_id) == 0


def test_chain_stops_below_minimum_amount(engine):
    p, q = _two_anchor_pools(engine)
    engine.set_follow_up(p.token_id, q.token_id, Decimal("0.001"))
    w = engine.create_wallet()
    res = engine.process_buy(w.wallet_id, p.token_id, Decimal("100"))
    assert res.follow_up is None


def test_self_loop_chain_is_bounded(engine):
    p, _ = _two_anchor_pools(engine)
    engine.set_follow_up(p.token_id, p.token_id, Decimal("50"))
    w = engine.create_wallet()
    engine.process_buy(w.wallet_id, p.token_id, Decimal("100"))
    engine.run_chains()
    # 100, 50, 25, ... stops once the next amount drops under 0.01
    assert engine.metrics.buy_count == 14
    assert engine.chain.pending_count() == 0


# -----------------------------
# Presets, metrics, reset
# -----------------------------

def test_cascade_preset_links_tokens(cascade):
    engine, t1, t2, t3 = cascade
    assert t1.pair_kind == "anchor"
    assert t2.paired_token_id == t1.token_id
    assert t3.paired_token_id == t2.token_id
    assert engine.available_supply(t1.token_id) == 0
    assert engine.available_supply(t2.token_id) == 0
    assert engine.available_supply(t3.token_id) == Decimal("500000")
    assert engine.price_of(t3.token_id) == Decimal("0.002")


def test_cascade_needs_two_tokens(engine):
    engine.create_pool()
    with pytest.raises(ValidationError):
        engine.setup_cascade(Decimal("100"))


def test_snapshot_metrics_frames(xy):
    engine, x, y = xy
    w = engine.create_wallet()
    engine.process_buy(w.wallet_id, y.token_id, Decimal("100"))
    engine.snapshot_metrics()

    net = engine.metrics.network_df()
    pools = engine.metrics.pool_df()
    assert len(net) == 1
    assert net["transactions"].iloc[0] == 1
    assert net["average_transaction_size"].iloc[0] == net["total_processed_usd"].iloc[0] > 0
    assert len(pools) == 2
    assert set(pools["token_id"]) == {x.token_id, y.token_id}
    assert list(pools.loc[pools["token_id"] == y.token_id, "depth"]) == [1]


def test_metrics_stride():
    engine = SimulationEngine(ScenarioConfig(metrics_stride=2))
    engine.create_pool()
    for _ in range(3):
        engine.snapshot_metrics()
    assert len(engine.metrics.network_df()) == 2


def test_price_chain_and_status(xy):
    engine, x, y = xy
    chain = engine.price_chain(y.token_id)
    assert [link.token_id for link in chain] == [y.token_id, x.token_id]
    assert chain[0].price_usd == Decimal("2")


def test_reset_drops_everything(xy):
    engine, _, _ = xy
    engine.create_wallet()
    engine.pause()
    engine.reset()
    assert len(engine.registry) == 0
    assert len(engine.wallets) == 0
    assert not engine.paused
    assert engine.clock == 0.0
    assert engine.create_pool().token_id == 1
