"""
Security Hygiene Capability - risky ERC-20 approvals → revoke proposals

Watches Approval events and proposes `approve(spender, 0)` when an
allowance is unlimited or large.

Risk is pure arithmetic:
- max-uint or above 1e21 base units → high
- any other non-zero value → medium
- zero → low (nothing proposed)
- unparseable → high

Cooldown: the same token+spender pair is not proposed again for 24h
unless the allowance value changes.

Designed for: delegated rebalance execution
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from eth_abi import encode as abi_encode

from core.constitution import ERC20_APPROVE_SELECTOR, is_address
from core.errors import ValidationError
from core.events import StreamEvent
from core.portfolio import WalletPortfolio
from core.swarm import Capability, ProposedAction

logger = logging.getLogger("agentsafe.capability.security")

MAX_UINT256 = 2 ** 256 - 1
HIGH_ALLOWANCE_THRESHOLD = 10 ** 21
COOLDOWN_SECONDS = 24 * 60 * 60


@dataclass
class SecurityInput:
    token: str
    spender: str
    owner: str
    allowance: str
    token_symbol: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SecurityInput":
        try:
            return cls(
                token=data["token"],
                spender=data["spender"],
                owner=data["owner"],
                allowance=str(data["allowance"]),
                token_symbol=data.get("token_symbol") or data.get("tokenSymbol"),
            )
        except KeyError as e:
            raise ValidationError("MISSING_CONTEXT", f"security_input missing field {e}")


def classify_allowance_risk(allowance: str) -> str:
    if allowance == "0":
        return "low"
    try:
        value = int(allowance)
    except (TypeError, ValueError):
        return "high"
    if value == 0:
        return "low"
    if value == MAX_UINT256 or value > HIGH_ALLOWANCE_THRESHOLD:
        return "high"
    return "medium"


def build_revoke_calldata(spender: str) -> str:
    """ERC20.approve(spender, 0)."""
    if not is_address(spender):
        raise ValidationError("INVALID_SPENDER", f"Not an address: {spender}")
    args = abi_encode(["address", "uint256"], [spender.lower(), 0])
    return "0x" + ERC20_APPROVE_SELECTOR + args.hex()


def _stub_reasoning(allowance: str, risk: str) -> list[str]:
    try:
        unlimited = int(allowance) == MAX_UINT256
    except (TypeError, ValueError):
        unlimited = False
    bullets = []
    if unlimited:
        bullets.append("Unlimited approval lets the spender move the entire token balance at any time.")
    elif risk == "high":
        bullets.append("Allowance is far above typical single-trade needs.")
    else:
        bullets.append("A standing allowance remains after the interaction that needed it.")
    bullets.append("Revoking sets the allowance to zero; re-approve only when needed.")
    bullets.append("A compromised or malicious spender contract can drain approved funds.")
    return bullets


class SecurityHygieneCapability(Capability):
    capability_id = "security"
    required_context = ("security_input",)

    def __init__(self, clock: Callable[[], float] = time.time, cooldown_seconds: float = COOLDOWN_SECONDS):
        self._clock = clock
        self._cooldown_seconds = cooldown_seconds
        self._cooldowns: dict[str, tuple[str, float]] = {}   # token:spender → (value, ts)

    async def handle_event(
        self, event: StreamEvent, principal: str, portfolio: Optional[WalletPortfolio] = None,
    ) -> Optional[ProposedAction]:
        data = event.data
        if not data.get("owner") or not data.get("spender") or data.get("value") is None:
            logger.warning(f"Security: missing Approval data in event {event.id}")
            return None
        return self.review(SecurityInput(
            token=data.get("address") or "0x0",
            spender=data["spender"],
            owner=data.get("owner") or principal,
            allowance=str(data["value"]),
            token_symbol=data.get("tokenSymbol"),
        ))

    async def handle_on_demand(self, principal: str, context: dict) -> Optional[ProposedAction]:
        raw = context["security_input"]
        inp = raw if isinstance(raw, SecurityInput) else SecurityInput.from_dict(raw)
        return self.review(inp)

    def review(self, inp: SecurityInput) -> Optional[ProposedAction]:
        if self._on_cooldown(inp.token, inp.spender, inp.allowance):
            logger.debug(f"Security: {inp.token[:10]}/{inp.spender[:10]} on cooldown")
            return None

        risk = classify_allowance_risk(inp.allowance)
        if risk == "low":
            return None

        revoke_calldata = build_revoke_calldata(inp.spender)
        self._cooldowns[self._key(inp.token, inp.spender)] = (inp.allowance, self._clock())

        symbol = inp.token_symbol or inp.token[:10]
        logger.info(f"Security: {risk} risk approval on {symbol} for spender {inp.spender[:10]}...")
        return ProposedAction(
            capability=self.capability_id,
            title=f"Revoke {symbol} approval",
            summary=(
                f"{risk.capitalize()}-risk approval detected for spender {inp.spender[:10]}… "
                f"on token {symbol}. Recommend revoking."
            ),
            action_type="REVOKE",
            risk=risk,
            reasoning=_stub_reasoning(inp.allowance, risk),
            payload={
                "token": inp.token,
                "spender": inp.spender,
                "owner": inp.owner,
                "current_allowance": inp.allowance,
                "revoke_calldata": revoke_calldata,
            },
            created_at=self._clock(),
        )

    @staticmethod
    def _key(token: str, spender: str) -> str:
        return f"{token.lower()}:{spender.lower()}"

    def _on_cooldown(self, token: str, spender: str, value: str) -> bool:
        key = self._key(token, spender)
        entry = self._cooldowns.get(key)
        if entry is None:
            return False
        last_value, ts = entry
        if self._clock() - ts > self._cooldown_seconds:
            del self._cooldowns[key]
            return False
        return last_value == value
