"""
Quote Service interface - swap pricing and unsigned router payloads

The concrete HTTP client for the swap aggregator lives outside this core.
Anything implementing QuoteService can be plugged into the rebalance
capability and the execution service.

Design:
- QuoteService (ABC): get_swap_quote / get_swap_tx, both async
- Amounts are integers in token base units, never floats
- Implementations raise QuoteServiceError; retryable mirrors HTTP semantics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Optional

from core.errors import UpstreamError


class QuoteServiceError(UpstreamError):
    pass


@dataclass
class SwapQuote:
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    price_impact_bps: Optional[int] = None
    expires_at: Optional[float] = None        # unix seconds; None = no staleness info
    route: list = field(default_factory=list)
    realized_yield_wei: Optional[int] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount_in"] = str(self.amount_in)
        d["amount_out"] = str(self.amount_out)
        if self.realized_yield_wei is not None:
            d["realized_yield_wei"] = str(self.realized_yield_wei)
        return d


@dataclass
class SwapTx:
    """Unsigned router call to be wrapped by the session account."""
    to: str
    data: str
    value: int = 0
    chain_id: int = 0
    deadline: Optional[int] = None            # unix seconds, if the router call carries one

    def to_dict(self) -> dict:
        return {
            "to": self.to,
            "data": self.data,
            "value": str(self.value),
            "chain_id": self.chain_id,
            "deadline": self.deadline,
        }


class QuoteService(ABC):

    @abstractmethod
    async def get_swap_quote(
        self, token_in: str, token_out: str, amount_in: int, slippage_bps: int, swapper: str,
    ) -> SwapQuote:
        ...

    @abstractmethod
    async def get_swap_tx(
        self, token_in: str, token_out: str, amount_in: int, slippage_bps: int, swapper: str,
    ) -> SwapTx:
        ...


class UnconfiguredQuoteService(QuoteService):
    """Placeholder until a real aggregator client is plugged in. Every call fails, not retryable."""

    async def get_swap_quote(self, token_in, token_out, amount_in, slippage_bps, swapper) -> SwapQuote:
        raise QuoteServiceError("QUOTE_SERVICE_NOT_CONFIGURED", "no quote service configured")

    async def get_swap_tx(self, token_in, token_out, amount_in, slippage_bps, swapper) -> SwapTx:
        raise QuoteServiceError("QUOTE_SERVICE_NOT_CONFIGURED", "no quote service configured")
