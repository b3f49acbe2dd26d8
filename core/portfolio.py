"""
Deterministic portfolio math

Concentration and swap sizing are pure arithmetic on integer balances.
USD prices are best-effort: when any balance lacks a USD value the whole
portfolio is priced with fixed estimates (ETH-like $3000, stables $1).
"""

from dataclasses import dataclass, field
from typing import Optional

from core.constitution import STABLE_SYMBOLS

ETH_PRICE_ESTIMATE_USD = 3000.0
STABLE_PRICE_USD = 1.0


@dataclass
class TokenBalance:
    token: str
    symbol: str
    balance_wei: int
    decimals: int = 18
    usd_value: Optional[float] = None


@dataclass
class WalletPortfolio:
    wallet: str
    chain_id: int
    balances: list[TokenBalance] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "WalletPortfolio":
        balances = [
            TokenBalance(
                token=b["token"],
                symbol=b["symbol"],
                balance_wei=int(b.get("balance_wei", b.get("balanceWei", 0))),
                decimals=int(b.get("decimals", 18)),
                usd_value=b.get("usd_value", b.get("usdValue")),
            )
            for b in data.get("balances", [])
        ]
        return cls(
            wallet=data.get("wallet", ""),
            chain_id=int(data.get("chain_id", data.get("chainId", 0))),
            balances=balances,
        )

    @property
    def concentrations(self) -> dict[str, float]:
        return compute_concentrations(self.balances)

    def balance_of(self, symbol: str) -> Optional[TokenBalance]:
        for b in self.balances:
            if b.symbol.upper() == symbol.upper():
                return b
        return None


def compute_concentrations(balances: list[TokenBalance]) -> dict[str, float]:
    """symbol → percentage of portfolio (0-100). Empty or zero-value → {}."""
    if not balances:
        return {}

    if all(b.usd_value is not None and b.usd_value > 0 for b in balances):
        values = [(b.symbol, float(b.usd_value)) for b in balances]
    else:
        values = []
        for b in balances:
            units = b.balance_wei / (10 ** b.decimals)
            price = STABLE_PRICE_USD if b.symbol.upper() in STABLE_SYMBOLS else ETH_PRICE_ESTIMATE_USD
            values.append((b.symbol, units * price))

    total = sum(v for _, v in values)
    if total <= 0:
        return {}
    return {symbol: value / total * 100 for symbol, value in values}


def calculate_swap_amount(balance_wei: int, percent_bps: int) -> int:
    """percent_bps of balance, bps clamped to 0..10000, rounded down."""
    bps = max(0, min(10_000, int(percent_bps)))
    return int(balance_wei) * bps // 10_000
