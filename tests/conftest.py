from __future__ import annotations
from decimal import Decimal
from typing import Tuple

import pytest

from pairsim.config import ScenarioConfig
from pairsim.core import Pool, PoolRegistry
from pairsim.engine import SimulationEngine
from pairsim.prices import PriceResolver


# -----------------------------
# Test helpers (pure functions)
# -----------------------------

def funded_pool(token_reserve: str, pair_reserve: str, *, token_id: int = 1,
                fee: str = "0.003", supply: str = "1000000") -> Pool:
    """Stand-alone anchor pool seeded through add_liquidity."""
    pool = Pool(token_id=token_id, name=f"Token {token_id}", total_supply=Decimal(supply), fee_rate=Decimal(fee))
    pool.add_liquidity(
        Decimal(token_reserve), Decimal(pair_reserve),
        available_supply=pool.total_supply, ratio_tolerance=Decimal("0.001"),
    )
    return pool


def circular_registry() -> Tuple[PoolRegistry, Pool, Pool]:
    """Two funded tokens each priced in the other."""
    reg = PoolRegistry()
    a = reg.add(Pool(1, "A", Decimal("1000000"), Decimal("0.003")))
    b = reg.add(Pool(2, "B", Decimal("1000000"), Decimal("0.003")))
    reg.set_pairing(b.token_id, "token", a.token_id)
    reg.set_pairing(a.token_id, "token", b.token_id)
    reg.add_liquidity(a.token_id, Decimal("100"), Decimal("100"), Decimal("0.001"))
    reg.add_liquidity(b.token_id, Decimal("100"), Decimal("100"), Decimal("0.001"))
    return reg, a, b


# -----------------------------
# Pytest fixtures
# -----------------------------

@pytest.fixture()
def cfg() -> ScenarioConfig:
    return ScenarioConfig()


@pytest.fixture()
def engine(cfg: ScenarioConfig) -> SimulationEngine:
    return SimulationEngine(cfg, seed=7)


@pytest.fixture()
def registry() -> PoolRegistry:
    return PoolRegistry()


@pytest.fixture()
def resolver(registry: PoolRegistry) -> PriceResolver:
    return PriceResolver(registry)


@pytest.fixture()
def xy(engine: SimulationEngine):
    """X: anchor 1000/1000. Y: paired with X, 500 Y against 1000 X (Y spots at 2 X)."""
    x = engine.create_pool(name="X")
    engine.add_liquidity(x.token_id, Decimal("1000"), Decimal("1000"))
    y = engine.create_pool(pair_kind="token", paired_token_id=x.token_id, name="Y")
    engine.add_liquidity(y.token_id, Decimal("500"), Decimal("1000"))
    return engine, x, y


@pytest.fixture()
def ab(engine: SimulationEngine):
    """A: anchor 500/500. B: paired with A, 500 B against 250 A."""
    a = engine.create_pool(name="A")
    engine.add_liquidity(a.token_id, Decimal("500"), Decimal("500"))
    b = engine.create_pool(pair_kind="token", paired_token_id=a.token_id, name="B")
    engine.add_liquidity(b.token_id, Decimal("500"), Decimal("250"))
    return engine, a, b


@pytest.fixture()
def cascade(engine: SimulationEngine):
    """Three-token cascade seeded with 1000 USD: T1/USD, T2/T1, T3/T2."""
    pools = [engine.create_pool() for _ in range(3)]
    engine.setup_cascade(Decimal("1000"))
    return (engine, *pools)


@pytest.fixture()
def make_pool():
    return funded_pool


@pytest.fixture()
def circular():
    return circular_registry()
