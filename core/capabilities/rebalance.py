"""
Rebalance Capability - ETH concentration → swap proposal

When ETH is more than 60% of the portfolio, proposes swapping 10% of the
ETH balance into USDC at 0.5% slippage. Proposals expire after 5 minutes.
The quote is informational here; the execution path fetches its own.
"""

import logging
import time
from typing import Callable, Optional

from core.constitution import resolve_token
from core.events import StreamEvent
from core.portfolio import WalletPortfolio, calculate_swap_amount
from core.quotes import QuoteService
from core.swarm import Capability, ProposedAction

logger = logging.getLogger("agentsafe.capability.rebalance")

ETH_CONCENTRATION_THRESHOLD = 60.0
SWAP_PERCENT_BPS = 1000
DEFAULT_SLIPPAGE_BPS = 50
PROPOSAL_TTL_SECONDS = 5 * 60


class RebalanceCapability(Capability):
    capability_id = "uniswap"
    required_context = ("portfolio",)

    def __init__(self, quotes: QuoteService, clock: Callable[[], float] = time.time):
        self.quotes = quotes
        self._clock = clock

    async def handle_event(
        self, event: StreamEvent, principal: str, portfolio: Optional[WalletPortfolio] = None,
    ) -> Optional[ProposedAction]:
        if portfolio is None:
            logger.warning(f"Rebalance: no portfolio provided for event {event.id}")
            return None
        return await self.evaluate(portfolio)

    async def handle_on_demand(self, principal: str, context: dict) -> Optional[ProposedAction]:
        raw = context["portfolio"]
        portfolio = raw if isinstance(raw, WalletPortfolio) else WalletPortfolio.from_dict(raw)
        return await self.evaluate(
            portfolio,
            swap_percent_bps=context.get("swap_percent_bps", SWAP_PERCENT_BPS),
            slippage_bps=context.get("slippage_bps", DEFAULT_SLIPPAGE_BPS),
        )

    async def evaluate(
        self,
        portfolio: WalletPortfolio,
        swap_percent_bps: int = SWAP_PERCENT_BPS,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
    ) -> Optional[ProposedAction]:
        eth_pct = portfolio.concentrations.get("ETH", 0.0)
        if eth_pct <= ETH_CONCENTRATION_THRESHOLD:
            return None

        eth = portfolio.balance_of("ETH")
        if eth is None or eth.balance_wei <= 0:
            return None
        amount_in = calculate_swap_amount(eth.balance_wei, swap_percent_bps)
        if amount_in <= 0:
            return None

        weth = resolve_token("WETH")
        usdc = resolve_token("USDC")
        quote = await self.quotes.get_swap_quote(
            weth.address, usdc.address, amount_in, slippage_bps, portfolio.wallet,
        )

        now = self._clock()
        eth_amount = amount_in / 1e18
        logger.info(f"Rebalance: ETH at {eth_pct:.1f}%, proposing {eth_amount:.4f} ETH → USDC")
        return ProposedAction(
            capability=self.capability_id,
            title="Rebalance: Swap ETH → USDC",
            summary=(
                f"ETH concentration is {eth_pct:.1f}% (threshold: {ETH_CONCENTRATION_THRESHOLD:.0f}%). "
                f"Proposing swap of {eth_amount:.4f} ETH to USDC."
            ),
            action_type="SWAP",
            risk="high" if eth_pct > 80 else "medium",
            reasoning=[
                f"Portfolio is {eth_pct:.1f}% ETH, above the {ETH_CONCENTRATION_THRESHOLD:.0f}% target ceiling.",
                f"Swapping {swap_percent_bps / 100:.0f}% of the ETH balance reduces single-asset exposure.",
                f"Execution may differ from the quote by up to {slippage_bps / 100:.2f}%.",
            ],
            payload={
                "token_in": weth.address,
                "token_out": usdc.address,
                "amount_in": str(amount_in),
                "amount_out": str(quote.amount_out),
                "slippage_bps": slippage_bps,
                "eth_concentration_pct": eth_pct,
                "quote_expires_at": quote.expires_at,
                "route": quote.route,
            },
            created_at=now,
            expires_at=now + PROPOSAL_TTL_SECONDS,
        )
