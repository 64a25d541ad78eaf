from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Any, List
import pandas as pd

from .core import ZERO


@dataclass
class MetricsStore:
    network_rows: List[Dict[str, Any]] = field(default_factory=list)
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)

    transaction_count: int = 0
    buy_count: int = 0
    sell_count: int = 0
    failed_count: int = 0
    total_processed: Decimal = ZERO
    total_gas_used: Decimal = ZERO

    def record_transaction(self, side: str, amount: Decimal, gas: Decimal) -> None:
        self.transaction_count += 1
        if side == "buy":
            self.buy_count += 1
        else:
            self.sell_count += 1
        self.total_processed += amount
        self.total_gas_used += gas

    def record_failure(self) -> None:
        self.failed_count += 1

    def transactions_per_minute(self, elapsed_seconds: float) -> float:
        minutes = elapsed_seconds / 60.0
        return self.transaction_count / minutes if minutes > 0 else 0.0

    def average_gas(self) -> Decimal:
        if self.transaction_count == 0:
            return ZERO
        return self.total_gas_used / self.transaction_count

    def average_transaction_size(self) -> Decimal:
        if self.transaction_count == 0:
            return ZERO
        return self.total_processed / self.transaction_count

    def add_network(self, row: Dict[str, Any]) -> None:
        self.network_rows.append(row)

    def add_pool_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.pool_rows.extend(rows)

    def network_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.network_rows)

    def pool_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.pool_rows)

    def reset(self) -> None:
        self.network_rows.clear()
        self.pool_rows.clear()
        self.transaction_count = 0
        self.buy_count = 0
        self.sell_count = 0
        self.failed_count = 0
        self.total_processed = ZERO
        self.total_gas_used = ZERO
