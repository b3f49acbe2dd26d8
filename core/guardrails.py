"""
Guardrail Chain - the single choke point for value-moving payloads

Nothing reaches the signer unless it is an ActionIntent produced here.
Stages run in a fixed order; the first failure ends evaluation with that
stage's reason and nothing is built.

    1. feature      execution + swap-rebalance flags both on
    2. session      active session for principal, bound to this account
    3. tokens       token in/out resolve against the hardcoded allowlist
    4. amount       emitted = min(requested, session max, balance); must be > 0
    5. slippage     slippage_bps <= session max (equality passes)
    6. quote        quote present, price impact known and <= session max
    7. router       target allowlisted, calldata well-formed, selector known,
                    forwarded value <= session max
    8. freshness    quote not stale, payload deadline within [now, now + 30min]
    9. chain        session chain == configured chain == payload chain

Design:
- Pure and synchronous: balance/quote/swap-tx lookups happen before evaluate()
- Rejections are values (GuardrailResult), never exceptions
- Builder-code suffix appended exactly once; append_builder_code is idempotent
- ActionIntent.meta is a tagged variant per action; `extra` is log-only

Designed for: delegated rebalance execution
"""

import logging
import random
import re
import string
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Optional, Union

from core.chain import encode_execute
from core.config import Settings
from core.constitution import (
    HARD_LIMITS,
    KNOWN_ROUTER_SELECTORS,
    is_address,
    resolve_token,
)
from core.capabilities.security_hygiene import build_revoke_calldata
from core.quotes import SwapQuote, SwapTx
from core.session import DelegatedSession, SessionManager

logger = logging.getLogger("agentsafe.guardrails")

_HEX_RE = re.compile(r"[0-9a-fA-F]+")


# ============================================================
# INTENT
# ============================================================

class IntentAction(Enum):
    SWAP_REBALANCE = "SWAP_REBALANCE"
    REVOKE_APPROVAL = "REVOKE_APPROVAL"


@dataclass(frozen=True)
class SwapRebalanceMeta:
    router_target: str
    router_calldata: str
    selector: str
    token_in: str
    token_out: str
    swap_amount_in: int
    max_per_cycle: int
    slippage_bps: int
    price_impact_bps: int
    deadline: Optional[int] = None
    kind: str = "SWAP_REBALANCE"


@dataclass(frozen=True)
class RevokeApprovalMeta:
    token: str
    spender: str
    kind: str = "REVOKE_APPROVAL"


@dataclass
class ActionIntent:
    intent_id: str
    run_id: str
    action: IntentAction
    chain_id: int
    to: str                     # the smart account (UserOp sender)
    value: int                  # wei forwarded by execute()
    data: str                   # AgentSafeAccount.execute(...) + builder code
    meta: Union[SwapRebalanceMeta, RevokeApprovalMeta]
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        meta = asdict(self.meta)
        for k in ("swap_amount_in", "max_per_cycle"):
            if k in meta:
                meta[k] = str(meta[k])
        return {
            "intentId": self.intent_id,
            "runId": self.run_id,
            "action": self.action.value,
            "chainId": self.chain_id,
            "to": self.to,
            "value": str(self.value),
            "data": self.data,
            "meta": meta,
            "extra": dict(self.extra),
        }


# ============================================================
# INPUT / RESULT
# ============================================================

@dataclass
class GuardrailInput:
    principal: str
    account: str
    token_in: str
    token_out: str
    requested_amount: Union[int, str]
    balance: int
    slippage_bps: int
    quote: Optional[SwapQuote] = None
    swap_tx: Optional[SwapTx] = None
    run_id: Optional[str] = None


@dataclass
class GuardrailResult:
    ok: bool
    stage: int = 0
    stage_name: str = ""
    reason: str = ""
    detail: str = ""
    amount_in: int = 0
    intent: Optional[ActionIntent] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "stage": self.stage,
            "stageName": self.stage_name,
            "reason": self.reason,
            "detail": self.detail,
            "amountIn": str(self.amount_in),
            "intent": self.intent.to_dict() if self.intent else None,
        }


class _Reject(Exception):
    def __init__(self, stage: int, name: str, reason: str, detail: str = ""):
        super().__init__(reason)
        self.stage = stage
        self.name = name
        self.reason = reason
        self.detail = detail


# ============================================================
# HELPERS
# ============================================================

def validate_deadline(deadline: int, now: Optional[float] = None) -> bool:
    """Deadline (unix seconds) must be >= now and <= now + 30 min."""
    now_s = int(time.time() if now is None else now)
    if deadline < now_s:
        return False
    return deadline <= now_s + HARD_LIMITS.MAX_DEADLINE_OFFSET_SECONDS


def is_valid_hex_calldata(data) -> bool:
    """0x-prefixed, byte-aligned hex with at least a 4-byte selector."""
    if not isinstance(data, str) or not data.startswith("0x"):
        return False
    body = data[2:]
    if len(body) < 8 or len(body) % 2 != 0:
        return False
    return bool(_HEX_RE.fullmatch(body))


def builder_code_suffix(code: str) -> str:
    return code.encode("utf-8").hex()


def append_builder_code(calldata: str, code: str) -> str:
    """Append the attribution suffix unless it is already there."""
    suffix = builder_code_suffix(code)
    if not suffix or calldata.lower().endswith(suffix.lower()):
        return calldata
    return calldata + suffix


def _parse_amount(raw) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            return int(raw.strip(), 0) if raw.strip().startswith("0x") else int(raw.strip())
        except ValueError:
            return None
    return None


def _new_id(prefix: str, now: float) -> str:
    tail = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}-{int(now * 1000)}-{tail}"


# ============================================================
# CHAIN
# ============================================================

class GuardrailChain:

    def __init__(self, settings: Settings, sessions: SessionManager, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.sessions = sessions
        self._clock = clock

    def evaluate(self, inp: GuardrailInput) -> GuardrailResult:
        """Run all nine stages. ok=True carries the built ActionIntent."""
        try:
            result = self._evaluate(inp)
        except _Reject as r:
            logger.warning(f"Guardrail stage {r.stage} ({r.name}) rejected: {r.reason} {r.detail}".rstrip())
            return GuardrailResult(ok=False, stage=r.stage, stage_name=r.name, reason=r.reason, detail=r.detail)
        logger.info(
            f"Guardrails passed: intent={result.intent.intent_id} amount={result.amount_in} "
            f"account={inp.account[:10]}..."
        )
        return result

    def _evaluate(self, inp: GuardrailInput) -> GuardrailResult:
        now = self._clock()

        # 1. feature
        if not self.settings.execution_enabled:
            raise _Reject(1, "feature", "EXECUTION_DISABLED")
        if not self.settings.swap_rebalance_enabled:
            raise _Reject(1, "feature", "SWAP_REBALANCE_DISABLED")

        # 2. session
        session = self._session_stage(inp.principal, inp.account)

        # 3. tokens
        token_in = resolve_token(inp.token_in)
        token_out = resolve_token(inp.token_out)
        if token_in is None or token_out is None:
            raise _Reject(3, "tokens", "TOKEN_NOT_ALLOWED", f"{inp.token_in} → {inp.token_out}")
        if token_in.address.lower() == token_out.address.lower():
            raise _Reject(3, "tokens", "SAME_TOKEN", token_in.symbol)

        # 4. amount
        amount = self._amount_stage(inp, session)

        # 5. slippage
        max_slippage = session.limits.max_slippage_bps
        if not isinstance(inp.slippage_bps, int) or inp.slippage_bps < 0:
            raise _Reject(5, "slippage", "INVALID_SLIPPAGE", str(inp.slippage_bps))
        if inp.slippage_bps > max_slippage:
            raise _Reject(5, "slippage", "SLIPPAGE_EXCEEDS_CAP", f"{inp.slippage_bps} > {max_slippage}")

        # 6. quote
        quote = inp.quote
        if quote is None:
            raise _Reject(6, "quote", "NO_QUOTE")
        if quote.price_impact_bps is None:
            raise _Reject(6, "quote", "PRICE_IMPACT_UNKNOWN")
        max_impact = session.limits.max_price_impact_bps
        if quote.price_impact_bps > max_impact:
            raise _Reject(6, "quote", "PRICE_IMPACT_EXCEEDS_CAP", f"{quote.price_impact_bps} > {max_impact}")
        if quote.amount_in > amount:
            raise _Reject(6, "quote", "QUOTE_AMOUNT_EXCEEDS_CAP", f"{quote.amount_in} > {amount}")

        # 7. router
        tx = inp.swap_tx
        selector = self._router_stage(tx, session.limits.max_amount_in)

        # 8. freshness
        if quote.expires_at is not None and now > quote.expires_at:
            raise _Reject(8, "freshness", "QUOTE_EXPIRED", f"expired at {quote.expires_at:.0f}")
        if tx.deadline is not None and not validate_deadline(tx.deadline, now):
            raise _Reject(8, "freshness", "INVALID_DEADLINE", str(tx.deadline))

        # 9. chain
        self._chain_stage(session, tx.chain_id)

        intent = ActionIntent(
            intent_id=_new_id("swap", now),
            run_id=inp.run_id or _new_id("run", now),
            action=IntentAction.SWAP_REBALANCE,
            chain_id=self.settings.chain_id,
            to=session.smart_account,
            value=tx.value,
            data=append_builder_code(encode_execute(tx.to, tx.value, tx.data), self.settings.builder_code),
            meta=SwapRebalanceMeta(
                router_target=tx.to,
                router_calldata=tx.data,
                selector=selector,
                token_in=token_in.address,
                token_out=token_out.address,
                swap_amount_in=amount,
                max_per_cycle=session.limits.max_amount_in,
                slippage_bps=inp.slippage_bps,
                price_impact_bps=quote.price_impact_bps,
                deadline=tx.deadline,
            ),
            extra={"token_in_symbol": token_in.symbol, "token_out_symbol": token_out.symbol},
        )
        return GuardrailResult(ok=True, stage=9, stage_name="chain", amount_in=amount, intent=intent)

    def build_revoke_intent(self, principal: str, account: str, token: str, spender: str,
                            run_id: Optional[str] = None) -> GuardrailResult:
        """REVOKE_APPROVAL path: ERC20.approve(spender, 0) on an allowlisted token."""
        now = self._clock()
        try:
            if not self.settings.execution_enabled:
                raise _Reject(1, "feature", "EXECUTION_DISABLED")
            session = self._session_stage(principal, account)
            if not self.settings.is_token_allowed(token):
                raise _Reject(3, "tokens", "TOKEN_NOT_ALLOWED", token)
            if not is_address(spender):
                raise _Reject(3, "tokens", "INVALID_SPENDER", str(spender))
            self._chain_stage(session, self.settings.chain_id)
        except _Reject as r:
            logger.warning(f"Revoke guardrail stage {r.stage} ({r.name}) rejected: {r.reason}")
            return GuardrailResult(ok=False, stage=r.stage, stage_name=r.name, reason=r.reason, detail=r.detail)

        inner = build_revoke_calldata(spender)
        intent = ActionIntent(
            intent_id=_new_id("revoke", now),
            run_id=run_id or _new_id("run", now),
            action=IntentAction.REVOKE_APPROVAL,
            chain_id=self.settings.chain_id,
            to=session.smart_account,
            value=0,
            data=append_builder_code(encode_execute(token, 0, inner), self.settings.builder_code),
            meta=RevokeApprovalMeta(token=token, spender=spender),
        )
        logger.info(f"Revoke intent built: {intent.intent_id} token={token[:10]}... spender={spender[:10]}...")
        return GuardrailResult(ok=True, stage=9, stage_name="chain", intent=intent)

    # ------------------------------------------------------------

    def _session_stage(self, principal: str, account: str) -> DelegatedSession:
        if not is_address(principal) or not is_address(account):
            raise _Reject(2, "session", "INVALID_PRINCIPAL_OR_ACCOUNT")
        session = self.sessions.get_active(principal)
        if session is None:
            raise _Reject(2, "session", "NO_ACTIVE_SESSION")
        if session.smart_account.lower() != account.lower():
            raise _Reject(2, "session", "ACCOUNT_MISMATCH")
        return session

    def _amount_stage(self, inp: GuardrailInput, session: DelegatedSession) -> int:
        requested = _parse_amount(inp.requested_amount)
        if requested is None:
            raise _Reject(4, "amount", "INVALID_AMOUNT", str(inp.requested_amount))
        amount = min(requested, session.limits.max_amount_in, int(inp.balance))
        if amount <= 0:
            raise _Reject(4, "amount", "ZERO_AMOUNT", f"requested={requested} balance={inp.balance}")
        if amount < requested:
            logger.info(f"Amount capped: requested={requested} → {amount}")
        return amount

    def _router_stage(self, tx: Optional[SwapTx], max_value: int) -> str:
        if tx is None or not is_address(tx.to):
            raise _Reject(7, "router", "INVALID_ROUTER_TARGET")
        if not self.settings.is_target_allowed(tx.to):
            raise _Reject(7, "router", "ROUTER_TARGET_NOT_ALLOWED", tx.to)
        if not is_valid_hex_calldata(tx.data):
            raise _Reject(7, "router", "INVALID_ROUTER_CALLDATA")
        selector = tx.data[2:10].lower()
        if selector not in KNOWN_ROUTER_SELECTORS:
            raise _Reject(7, "router", "UNKNOWN_ROUTER_SELECTOR", f"0x{selector}")
        if not isinstance(tx.value, int) or tx.value < 0:
            raise _Reject(7, "router", "INVALID_VALUE", str(tx.value))
        if tx.value > max_value:
            raise _Reject(7, "router", "VALUE_EXCEEDS_CAP", f"{tx.value} > {max_value}")
        return selector

    def _chain_stage(self, session: DelegatedSession, payload_chain_id: int) -> None:
        configured = self.settings.chain_id
        if session.chain_id != configured or payload_chain_id != configured:
            raise _Reject(
                9, "chain", "CHAIN_ID_MISMATCH",
                f"session={session.chain_id} configured={configured} payload={payload_chain_id}",
            )
