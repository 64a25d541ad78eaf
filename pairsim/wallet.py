from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterator, Optional

from .core import ZERO, DecimalLike, positive, to_decimal
from .errors import InsufficientBalanceError, ValidationError


@dataclass
class Wallet:
    wallet_id: int
    name: str
    anchor_balance: Decimal = Decimal("1000000")
    secondary_balance: Decimal = Decimal("1000000")
    token_balances: Dict[int, Decimal] = field(default_factory=dict)

    # anchor (USD)
    def credit_anchor(self, amount: DecimalLike) -> None:
        self.anchor_balance += positive(amount)

    def debit_anchor(self, amount: DecimalLike, asset: str = "USD") -> None:
        amt = positive(amount)
        if self.anchor_balance < amt:
            raise InsufficientBalanceError(asset, self.anchor_balance, amt)
        self.anchor_balance -= amt

    # secondary (WPLS), also pays gas
    def credit_secondary(self, amount: DecimalLike) -> None:
        self.secondary_balance += positive(amount)

    def debit_secondary(self, amount: DecimalLike, asset: str = "WPLS") -> None:
        amt = positive(amount)
        if self.secondary_balance < amt:
            raise InsufficientBalanceError(asset, self.secondary_balance, amt)
        self.secondary_balance -= amt

    # tokens
    def token_balance(self, token_id: int) -> Decimal:
        return self.token_balances.get(token_id, ZERO)

    def credit_token(self, token_id: int, amount: DecimalLike) -> None:
        self.token_balances[token_id] = self.token_balance(token_id) + positive(amount)

    def debit_token(self, token_id: int, amount: DecimalLike) -> None:
        amt = positive(amount)
        have = self.token_balance(token_id)
        if have < amt:
            raise InsufficientBalanceError(f"token {token_id}", have, amt)
        self.token_balances[token_id] = have - amt

    def set_token_balance(self, token_id: int, balance: DecimalLike) -> None:
        value = to_decimal(balance)
        if value < 0:
            raise ValidationError(f"balance cannot be negative, got {value}")
        self.token_balances[token_id] = value

    def balance_summary(self, token_names: Optional[Dict[int, str]] = None) -> dict:
        names = token_names or {}
        return {
            "name": self.name,
            "usd": self.anchor_balance,
            "wpls": self.secondary_balance,
            "tokens": {
                tid: {"balance": bal, "name": names.get(tid, f"Token {tid}")}
                for tid, bal in self.token_balances.items()
                if bal > 0
            },
        }


class WalletBook:
    def __init__(self, initial_anchor: Decimal = Decimal("1000000"),
                 initial_secondary: Decimal = Decimal("1000000")) -> None:
        self.initial_anchor = to_decimal(initial_anchor)
        self.initial_secondary = to_decimal(initial_secondary)
        self.wallets: Dict[int, Wallet] = {}
        self.wallet_counter = 0

    def __iter__(self) -> Iterator[Wallet]:
        return iter(self.wallets.values())

    def __len__(self) -> int:
        return len(self.wallets)

    def _new_wallet_id(self) -> int:
        self.wallet_counter += 1
        return self.wallet_counter

    def create(self, name: Optional[str] = None) -> Wallet:
        wallet_id = self._new_wallet_id()
        w = Wallet(
            wallet_id=wallet_id,
            name=name or f"Wallet {wallet_id}",
            anchor_balance=self.initial_anchor,
            secondary_balance=self.initial_secondary,
        )
        self.wallets[wallet_id] = w
        return w

    def get(self, wallet_id: int) -> Wallet:
        w = self.wallets.get(wallet_id)
        if w is None:
            raise ValidationError(f"Wallet not found: {wallet_id}")
        return w

    def by_name(self, name: str) -> Optional[Wallet]:
        for w in self.wallets.values():
            if w.name == name:
                return w
        return None

    def credit_secondary_all(self, total: DecimalLike) -> Decimal:
        """Split total WPLS evenly over every wallet. Returns the per-wallet amount."""
        amt = positive(total)
        if not self.wallets:
            raise ValidationError("No wallets available")
        each = amt / len(self.wallets)
        for w in self.wallets.values():
            w.credit_secondary(each)
        return each
