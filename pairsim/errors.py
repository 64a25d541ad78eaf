"""
Exception types for the pair-graph AMM simulator.

Every mutating operation validates before it touches a reserve or a balance,
so catching any of these guarantees the state is exactly as it was.
"""

__all__ = [
    "AmmError",
    "PoolError",
    "ValidationError",
    "InsufficientBalanceError",
    "InsufficientLiquidityError",
    "RatioMismatchError",
    "SupplyExceededError",
    "RouteError",
    "TradingPausedError",
    "ChainConflictError",
]


class AmmError(Exception):
    """Base class for all simulator errors."""
    pass


class PoolError(AmmError):
    """Raised by pool operations (liquidity changes, swaps)."""
    pass


class ValidationError(PoolError):
    """Raised for non-positive amounts, unknown ids or bad settings."""
    pass


class InsufficientBalanceError(ValidationError):
    """Raised when a wallet debit exceeds the balance held."""

    def __init__(self, asset: str, have, need) -> None:
        super().__init__(f"Insufficient {asset} balance. Have: {have}, Need: {need}")
        self.asset = asset
        self.have = have
        self.need = need


class InsufficientLiquidityError(PoolError):
    """Raised when a pool is empty or a trade would exhaust a reserve."""
    pass


class RatioMismatchError(PoolError):
    """Raised when a liquidity add does not match the pool's current ratio.

    Attributes
    ----------
    current_ratio : Decimal
        pair_reserve / token_reserve before the add.
    provided_ratio : Decimal
        pair_amount / token_amount of the rejected add.
    """

    def __init__(self, current_ratio, provided_ratio) -> None:
        super().__init__(
            f"Amounts must maintain current pool ratio {current_ratio}, got {provided_ratio}"
        )
        self.current_ratio = current_ratio
        self.provided_ratio = provided_ratio


class SupplyExceededError(PoolError):
    """Raised when a deposit needs more tokens than are unallocated."""

    def __init__(self, token_id: int, available, requested) -> None:
        super().__init__(
            f"Insufficient supply for token {token_id}: available={available}, requested={requested}"
        )
        self.token_id = token_id
        self.available = available
        self.requested = requested


class RouteError(AmmError):
    """Raised when a planned route can no longer be committed. No hop is applied."""

    def __init__(self, message: str, *, hop_index: int | None = None) -> None:
        super().__init__(message)
        self.hop_index = hop_index


class TradingPausedError(AmmError):
    pass


class ChainConflictError(AmmError):
    """Raised when an actor already has a chained step pending and the policy is 'reject'."""
    pass
