"""
Delegated Session - short-lived session key with spend limits

The principal (swapper) delegates a narrow signing capability to this
process: a fresh keypair, bounded by amount/slippage/impact limits and a
time window. The principal's own key is never seen here.

Lifecycle: NONE → ACTIVE → (EXPIRED | STOPPED)
- start: read current account signer (best-effort), mint a key, store the
  session, return the unsigned setSwarmSigner(sessionKey) payload
- stop: recover previous signer (even from an expired record), always delete,
  return the unsigned payload restoring it (or the zero address)
- status: active flag + redacted summary, never key material

Design:
- One session per swapper, keyed case-insensitively
- Expiry evaluated lazily at lookup, no background sweep
- The in-memory record exists before the principal mines the activation tx;
  downstream code must tolerate on-chain state lagging behind it
- Private key lives only on the session object (repr=False) and is never
  serialized by summary()

Designed for: delegated rebalance execution
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from eth_account import Account
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from core.chain import encode_set_swarm_signer
from core.config import Settings
from core.constitution import HARD_LIMITS, ZERO_ADDRESS, is_address
from core.errors import ConfigurationError, ValidationError

logger = logging.getLogger("agentsafe.session")

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"


# ============================================================
# REQUESTS
# ============================================================

class SessionStartRequest(BaseModel):
    swapper: str = Field(..., pattern=ADDRESS_PATTERN)
    smart_account: str = Field(..., pattern=ADDRESS_PATTERN)
    valid_for_seconds: int = Field(
        HARD_LIMITS.SESSION_DEFAULT_SECONDS,
        ge=HARD_LIMITS.SESSION_MIN_SECONDS,
        le=HARD_LIMITS.SESSION_MAX_SECONDS,
    )
    # USDC base units (6 decimals)
    max_amount_in: str = Field(str(HARD_LIMITS.SESSION_DEFAULT_MAX_AMOUNT_IN), pattern=r"^\d+$")
    max_slippage_bps: int = Field(
        HARD_LIMITS.SESSION_DEFAULT_SLIPPAGE_BPS, ge=1, le=HARD_LIMITS.SESSION_MAX_SLIPPAGE_BPS,
    )
    max_price_impact_bps: int = Field(
        HARD_LIMITS.SESSION_DEFAULT_PRICE_IMPACT_BPS, ge=1, le=HARD_LIMITS.SESSION_MAX_PRICE_IMPACT_BPS,
    )


class SessionStopRequest(BaseModel):
    swapper: str = Field(..., pattern=ADDRESS_PATTERN)
    smart_account: str = Field(..., pattern=ADDRESS_PATTERN)


def parse_request(model: type, data) -> BaseModel:
    """Validate a dict (or pass through an instance). Failures → ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model(**(data or {}))
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError("INVALID_REQUEST", f"Invalid {model.__name__}: {fields}")


# ============================================================
# SESSION
# ============================================================

@dataclass(frozen=True)
class SessionLimits:
    max_amount_in: int
    max_slippage_bps: int
    max_price_impact_bps: int

    def to_dict(self) -> dict:
        return {
            "maxAmountIn": str(self.max_amount_in),
            "maxSlippageBps": self.max_slippage_bps,
            "maxPriceImpactBps": self.max_price_impact_bps,
        }


@dataclass
class DelegatedSession:
    swapper: str
    smart_account: str
    session_key: str
    limits: SessionLimits
    expires_at: float
    chain_id: int
    created_at: float = field(default_factory=time.time)
    previous_signer: Optional[str] = None
    private_key: str = field(default="", repr=False)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def summary(self, now: float) -> dict:
        """Redacted view: safe to log and return to callers."""
        return {
            "swapper": self.swapper,
            "smartAccount": self.smart_account,
            "sessionKey": self.session_key,
            "validUntil": int(self.expires_at),
            "expiresIn": max(0, int(self.expires_at - now)),
            "active": not self.is_expired(now),
            "limits": self.limits.to_dict(),
            "createdAt": self.created_at,
            "chainId": self.chain_id,
        }


@dataclass
class UnsignedTx:
    to: str
    data: str
    chain_id: int
    value: str = "0x0"

    def to_dict(self) -> dict:
        return {"to": self.to, "data": self.data, "value": self.value, "chainId": self.chain_id}


@dataclass
class SessionStartResult:
    session: Optional[dict] = None
    tx_to_sign: Optional[UnsignedTx] = None
    ok: bool = True
    reason: Optional[str] = None
    error: Optional[dict] = None
    instructions: str = (
        "Sign and submit tx_to_sign from the swapper wallet. Once mined, the session key "
        "is the account's authorized signer."
    )

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "session": self.session,
            "txToSign": self.tx_to_sign.to_dict() if self.tx_to_sign else None,
            "instructions": self.instructions if self.ok else None,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class SessionStopResult:
    tx_to_sign: Optional[UnsignedTx] = None
    restored_signer: Optional[str] = None
    ok: bool = True
    revoked: bool = True
    reason: Optional[str] = None
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "revoked": self.revoked,
            "restoredSigner": self.restored_signer,
            "txToSign": self.tx_to_sign.to_dict() if self.tx_to_sign else None,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class SessionStatus:
    active: bool
    session: Optional[dict] = None
    reason: Optional[str] = None
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        return {"active": self.active, "session": self.session, "reason": self.reason, "error": self.error}


# ============================================================
# MANAGER
# ============================================================

class SessionManager:

    def __init__(
        self,
        settings: Settings,
        signer_reader: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._read_signer = signer_reader
        self._clock = clock
        self._sessions: dict[str, DelegatedSession] = {}

    @staticmethod
    def _key(swapper: str) -> str:
        return swapper.lower()

    def _require_enabled(self) -> None:
        if not self.settings.session_keys_enabled:
            raise ConfigurationError("SESSION_KEYS_DISABLED", "Set SESSION_KEYS_ENABLED=true to enable sessions")

    async def start(self, request) -> SessionStartResult:
        self._require_enabled()
        req = parse_request(SessionStartRequest, request)

        current_signer = None
        if self._read_signer is not None:
            try:
                current_signer = await self._read_signer(req.smart_account)
            except Exception as e:
                logger.info(f"Could not read current signer for {req.smart_account[:10]}...: {e}")

        # Re-starting over a live session: the chain still points at our old key,
        # so keep restoring to whatever was there before it.
        existing = self._sessions.get(self._key(req.swapper))
        previous = current_signer
        if existing is not None and existing.previous_signer and (
            current_signer is None or current_signer.lower() == existing.session_key.lower()
        ):
            previous = existing.previous_signer

        acct = Account.create()
        now = self._clock()
        session = DelegatedSession(
            swapper=req.swapper.lower(),
            smart_account=req.smart_account,
            session_key=acct.address,
            private_key=acct.key.hex(),
            limits=SessionLimits(
                max_amount_in=int(req.max_amount_in),
                max_slippage_bps=req.max_slippage_bps,
                max_price_impact_bps=req.max_price_impact_bps,
            ),
            expires_at=now + req.valid_for_seconds,
            chain_id=self.settings.chain_id,
            created_at=now,
            previous_signer=previous,
        )
        self._sessions[self._key(req.swapper)] = session

        logger.info(
            f"Session started: swapper={req.swapper[:10]}... account={req.smart_account[:10]}... "
            f"key={session.session_key[:10]}... ttl={req.valid_for_seconds}s"
        )
        return SessionStartResult(
            session=session.summary(now),
            tx_to_sign=UnsignedTx(
                to=req.smart_account,
                data=encode_set_swarm_signer(session.session_key),
                chain_id=self.settings.chain_id,
            ),
        )

    def stop(self, request) -> SessionStopResult:
        self._require_enabled()
        req = parse_request(SessionStopRequest, request)

        session = self.get_any(req.swapper)
        restore_to = (session.previous_signer if session else None) or ZERO_ADDRESS
        self._sessions.pop(self._key(req.swapper), None)

        logger.info(f"Session stopped: swapper={req.swapper[:10]}... restore signer → {restore_to[:10]}...")
        return SessionStopResult(
            tx_to_sign=UnsignedTx(
                to=req.smart_account,
                data=encode_set_swarm_signer(restore_to),
                chain_id=self.settings.chain_id,
            ),
            restored_signer=restore_to,
        )

    def status(self, swapper: str) -> SessionStatus:
        self._require_enabled()
        if not is_address(swapper):
            raise ValidationError("INVALID_REQUEST", "swapper must be a valid 0x address")
        session = self.get_active(swapper)
        if session is None:
            return SessionStatus(active=False, reason="No active session for this address (absent or expired)")
        return SessionStatus(active=True, session=session.summary(self._clock()))

    def now(self) -> float:
        return self._clock()

    def get_active(self, swapper: str) -> Optional[DelegatedSession]:
        """Non-expired session or None. An expired record is dropped here."""
        key = self._key(swapper)
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            del self._sessions[key]
            logger.info(f"Session expired: swapper={swapper[:10]}...")
            return None
        return session

    def get_any(self, swapper: str) -> Optional[DelegatedSession]:
        """Session regardless of expiry; stop uses it to recover the previous signer."""
        return self._sessions.get(self._key(swapper))

    def __len__(self) -> int:
        return len(self._sessions)
