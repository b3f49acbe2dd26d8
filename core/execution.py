"""
Execution Service - lookups → guardrails → submitter

One call = at most one submitted operation. Every negative outcome comes
back as an ExecutionOutcome with executed=False and a reason; only
unexpected faults raise.

Flow (rebalance):
1. validate request (pydantic) and feature flag
2. load active session, check account binding, resolve tokens
3. read input-token balance, cap the quote amount by session max + balance
4. fetch quote, then the unsigned router tx (failures leave them None;
   the guardrail chain rejects on the missing piece)
5. evaluate the nine-stage guardrail chain
6. no relay configured or demo mode → return the approved intent unsigned
7. submit through OperationSubmitter
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, Field

from core.chain import AccountReader
from core.config import Settings
from core.constitution import HARD_LIMITS, resolve_token
from core.errors import UpstreamError, ValidationError
from core.guardrails import GuardrailChain, GuardrailInput, GuardrailResult
from core.quotes import QuoteService, SwapQuote, SwapTx
from core.session import ADDRESS_PATTERN, SessionManager, parse_request
from core.submitter import OperationSubmitter

logger = logging.getLogger("agentsafe.execution")


class ExecuteRequest(BaseModel):
    swapper: str = Field(..., pattern=ADDRESS_PATTERN)
    smart_account: str = Field(..., pattern=ADDRESS_PATTERN)
    mode: Literal["rebalance", "demo"] = "rebalance"
    token_in: str = "USDC"
    token_out: str = "WETH"
    amount_in: Optional[str] = Field(None, pattern=r"^\d+$")   # None = session max
    slippage_bps: Optional[int] = Field(None, ge=0)            # None = session max
    run_id: Optional[str] = None


class RevokeRequest(BaseModel):
    swapper: str = Field(..., pattern=ADDRESS_PATTERN)
    smart_account: str = Field(..., pattern=ADDRESS_PATTERN)
    token: str = Field(..., pattern=ADDRESS_PATTERN)
    spender: str = Field(..., pattern=ADDRESS_PATTERN)
    run_id: Optional[str] = None


@dataclass
class ExecutionOutcome:
    executed: bool
    reason: Optional[str] = None
    stage: Optional[int] = None
    user_op_hash: Optional[str] = None
    intent: Optional[dict] = None
    quote: Optional[dict] = None
    session: Optional[dict] = None
    error: Optional[dict] = None
    demo_mode: bool = False
    amount_in: str = "0"
    realized_yield_wei: str = "0"
    ok: bool = True

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "executed": self.executed,
            "reason": self.reason,
            "stage": self.stage,
            "userOpHash": self.user_op_hash,
            "intent": self.intent,
            "quote": self.quote,
            "session": self.session,
            "error": self.error,
            "demoMode": self.demo_mode,
            "amountIn": self.amount_in,
            "realizedYieldWei": self.realized_yield_wei,
        }


class ExecutionService:

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        guardrails: GuardrailChain,
        reader: AccountReader,
        quotes: QuoteService,
        submitter: OperationSubmitter,
        quote_timeout: float = HARD_LIMITS.RPC_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self.sessions = sessions
        self.guardrails = guardrails
        self.reader = reader
        self.quotes = quotes
        self.submitter = submitter
        self.quote_timeout = quote_timeout

    async def execute_rebalance(self, request) -> ExecutionOutcome:
        try:
            req = parse_request(ExecuteRequest, request)
        except ValidationError as e:
            return ExecutionOutcome(executed=False, ok=False, reason=e.code, error=e.to_dict())

        if not self.settings.session_keys_enabled:
            return ExecutionOutcome(executed=False, ok=False, reason="SESSION_KEYS_DISABLED")

        session = self.sessions.get_active(req.swapper)
        if session is None:
            return ExecutionOutcome(executed=False, reason="NO_ACTIVE_SESSION")
        if session.smart_account.lower() != req.smart_account.lower():
            return ExecutionOutcome(executed=False, reason="ACCOUNT_MISMATCH")
        now = self.sessions.now()
        summary = session.summary(now)

        token_in = resolve_token(req.token_in)
        token_out = resolve_token(req.token_out)
        if token_in is None or token_out is None:
            return ExecutionOutcome(executed=False, ok=False, reason="TOKEN_NOT_ALLOWED", session=summary)

        try:
            balance = await self.reader.get_token_balance(token_in.address, req.smart_account)
        except UpstreamError as e:
            logger.warning(f"Balance read failed for {req.smart_account[:10]}...: {e.code}")
            return ExecutionOutcome(executed=False, reason=e.code, error=e.to_dict(), session=summary)

        requested = int(req.amount_in) if req.amount_in is not None else session.limits.max_amount_in
        slippage = req.slippage_bps if req.slippage_bps is not None else session.limits.max_slippage_bps
        quote_amount = min(requested, session.limits.max_amount_in, balance)

        quote: Optional[SwapQuote] = None
        swap_tx: Optional[SwapTx] = None
        upstream_error: Optional[dict] = None
        if quote_amount > 0:
            try:
                quote = await asyncio.wait_for(
                    self.quotes.get_swap_quote(
                        token_in.address, token_out.address, quote_amount, slippage, req.smart_account,
                    ),
                    timeout=self.quote_timeout,
                )
                swap_tx = await asyncio.wait_for(
                    self.quotes.get_swap_tx(
                        token_in.address, token_out.address, quote_amount, slippage, req.smart_account,
                    ),
                    timeout=self.quote_timeout,
                )
            except asyncio.TimeoutError:
                upstream_error = {"code": "QUOTE_TIMEOUT", "message": "quote service timed out", "retryable": True}
            except UpstreamError as e:
                upstream_error = e.to_dict()
            if upstream_error:
                logger.warning(f"Quote lookup failed: {upstream_error['code']} {upstream_error['message']}")

        verdict: GuardrailResult = self.guardrails.evaluate(GuardrailInput(
            principal=req.swapper,
            account=req.smart_account,
            token_in=token_in.address,
            token_out=token_out.address,
            requested_amount=requested,
            balance=balance,
            slippage_bps=slippage,
            quote=quote,
            swap_tx=swap_tx,
            run_id=req.run_id,
        ))
        quote_view = quote.to_dict() if quote else None
        if not verdict.ok:
            return ExecutionOutcome(
                executed=False,
                reason=verdict.reason,
                stage=verdict.stage,
                quote=quote_view,
                session=summary,
                error=upstream_error,
            )

        intent = verdict.intent
        if req.mode == "demo" or self.submitter.relay is None:
            reason = "DEMO_MODE" if req.mode == "demo" else "BUNDLER_NOT_CONFIGURED"
            logger.info(f"Intent {intent.intent_id} approved but not submitted ({reason})")
            return ExecutionOutcome(
                executed=False,
                reason=reason,
                demo_mode=True,
                intent=intent.to_dict(),
                quote=quote_view,
                session=summary,
                amount_in=str(verdict.amount_in),
            )

        submission = await self.submitter.submit(intent, session)
        realized = "0"
        if submission.ok and quote is not None and quote.realized_yield_wei is not None:
            realized = str(quote.realized_yield_wei)
        return ExecutionOutcome(
            executed=submission.ok,
            reason=None if submission.ok else (submission.error or {}).get("code"),
            user_op_hash=submission.user_op_hash,
            intent=intent.to_dict(),
            quote=quote_view,
            session=summary,
            error=submission.error,
            amount_in=str(verdict.amount_in),
            realized_yield_wei=realized,
        )

    async def execute_revoke(self, request) -> ExecutionOutcome:
        try:
            req = parse_request(RevokeRequest, request)
        except ValidationError as e:
            return ExecutionOutcome(executed=False, ok=False, reason=e.code, error=e.to_dict())

        verdict = self.guardrails.build_revoke_intent(
            req.swapper, req.smart_account, req.token, req.spender, run_id=req.run_id,
        )
        if not verdict.ok:
            return ExecutionOutcome(executed=False, reason=verdict.reason, stage=verdict.stage)

        session = self.sessions.get_active(req.swapper)
        intent = verdict.intent
        if self.submitter.relay is None:
            return ExecutionOutcome(
                executed=False, reason="BUNDLER_NOT_CONFIGURED", demo_mode=True, intent=intent.to_dict(),
            )
        submission = await self.submitter.submit(intent, session)
        return ExecutionOutcome(
            executed=submission.ok,
            reason=None if submission.ok else (submission.error or {}).get("code"),
            user_op_hash=submission.user_op_hash,
            intent=intent.to_dict(),
            error=submission.error,
        )
