from dataclasses import dataclass
from decimal import Decimal


@dataclass
class ScenarioConfig:
    # Assets
    anchor_symbol: str = "USD"
    secondary_symbol: str = "WPLS"
    secondary_price_usd: Decimal = Decimal("1")

    # Tokens / pools
    max_tokens: int = 20
    initial_supply: Decimal = Decimal("1000000")
    initial_secondary_balance: Decimal = Decimal("1000000")  # WPLS held by each token contract
    fee_rate: Decimal = Decimal("0.003")          # 0.3% on input
    ratio_tolerance: Decimal = Decimal("0.001")   # 0.1% for follow-up liquidity adds

    # Pricing
    price_cache_ttl: float = 1.0                  # simulated seconds
    convergence_max_iterations: int = 10
    convergence_threshold: Decimal = Decimal("0.0001")  # 0.01% relative

    # Routing
    max_hops: int = 3

    # Capital analysis
    capital_mode: str = "market"  # "market" or "backing"

    # Wallets
    wallet_initial_anchor: Decimal = Decimal("1000000")
    wallet_initial_secondary: Decimal = Decimal("1000000")

    # Gas (paid in secondary asset)
    require_gas: bool = True
    min_gas: Decimal = Decimal("0.000001")
    max_gas: Decimal = Decimal("0.000005")

    # Chained trades
    chain_min_interval: float = 0.1   # seconds
    chain_max_interval: float = 1.0
    chain_conflict_policy: str = "queue"  # "queue" or "reject"
    chain_min_amount: Decimal = Decimal("0.01")
    chain_max_steps: int = 1000

    # Bookkeeping
    decimal_precision: int = 50
    event_log_maxlen: int | None = None
    metrics_stride: int = 1

    def __post_init__(self) -> None:
        for name in (
            "secondary_price_usd", "initial_supply", "initial_secondary_balance", "fee_rate",
            "ratio_tolerance", "convergence_threshold", "wallet_initial_anchor",
            "wallet_initial_secondary", "min_gas", "max_gas", "chain_min_amount",
        ):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                setattr(self, name, Decimal(str(value)))
        if not (Decimal(0) <= self.fee_rate < Decimal(1)):
            raise ValueError(f"fee_rate must be in [0, 1), got {self.fee_rate}")
        if self.max_hops < 1:
            raise ValueError("max_hops must be >= 1")
        if self.capital_mode not in ("market", "backing"):
            raise ValueError(f"unknown capital_mode {self.capital_mode!r}")
        if self.chain_conflict_policy not in ("queue", "reject"):
            raise ValueError(f"unknown chain_conflict_policy {self.chain_conflict_policy!r}")
        if self.max_gas < self.min_gas:
            self.min_gas, self.max_gas = self.max_gas, self.min_gas
        if self.chain_max_interval < self.chain_min_interval:
            self.chain_min_interval, self.chain_max_interval = self.chain_max_interval, self.chain_min_interval
