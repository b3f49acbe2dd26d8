"""
AgentSafe Constitution - Layer 0 (Immutable)

Hardcoded limits for the delegated execution pipeline. Nothing loaded from
the environment or received from a request can widen these values; config
may only choose inside the ranges defined here.

Design:
- Frozen dataclasses = truly immutable at runtime
- Token and selector allowlists are compile-time tables, never extended by requests
- Chain constants mirror the Base deployments the session account targets

Designed for: delegated rebalance execution
"""

import re
from dataclasses import dataclass
from typing import Final, Optional


class ConstitutionViolation(Exception):
    """Raised when a hard limit would be exceeded. Never caught by the pipeline."""
    pass


# ============================================================
# HARD LIMITS
# ============================================================

@dataclass(frozen=True)
class HardLimits:
    """Frozen dataclass = truly immutable at runtime."""

    # --- DEDUPLICATION ---
    DEDUPE_DEFAULT_TTL_SECONDS: Final[float] = 5 * 60
    DEDUPE_MAX_ENTRIES: Final[int] = 10_000

    # --- DELEGATED SESSION ---
    SESSION_MIN_SECONDS: Final[int] = 60
    SESSION_MAX_SECONDS: Final[int] = 86_400           # 24h
    SESSION_DEFAULT_SECONDS: Final[int] = 3_600
    SESSION_DEFAULT_MAX_AMOUNT_IN: Final[int] = 2_000_000   # 2 USDC (6 decimals)
    SESSION_MAX_SLIPPAGE_BPS: Final[int] = 1_000       # 10%
    SESSION_DEFAULT_SLIPPAGE_BPS: Final[int] = 50
    SESSION_MAX_PRICE_IMPACT_BPS: Final[int] = 10_000
    SESSION_DEFAULT_PRICE_IMPACT_BPS: Final[int] = 500

    # --- GUARDRAILS ---
    MAX_DEADLINE_OFFSET_SECONDS: Final[int] = 30 * 60

    # --- USER OPERATION (ERC-4337 v0.6) ---
    CALL_GAS_LIMIT: Final[int] = 350_000
    VERIFICATION_GAS_LIMIT: Final[int] = 200_000
    PRE_VERIFICATION_GAS: Final[int] = 100_000
    FALLBACK_GAS_PRICE_WEI: Final[int] = 2_000_000_000          # 2 gwei
    MAX_PRIORITY_FEE_WEI: Final[int] = 100_000_000              # 0.1 gwei
    FEE_BUFFER_PERCENT: Final[int] = 120                        # gas price +20%
    RELAY_TIMEOUT_SECONDS: Final[float] = 30.0
    RPC_TIMEOUT_SECONDS: Final[float] = 15.0

    # --- AUTONOMY ---
    AUTONOMY_DEFAULT_INTERVAL_SECONDS: Final[float] = 15 * 60
    AUTONOMY_MIN_INTERVAL_SECONDS: Final[float] = 1.0
    AUTONOMY_CYCLE_TIMEOUT_SECONDS: Final[float] = 90.0

    # --- PERFORMANCE FEE ---
    FEE_DEFAULT_BPS: Final[int] = 500                  # 5%
    FEE_MIN_BPS: Final[int] = 500
    FEE_MAX_BPS: Final[int] = 1_000                    # 10%
    BPS_DENOMINATOR: Final[int] = 10_000


HARD_LIMITS = HardLimits()


# ============================================================
# CHAINS
# ============================================================

BASE_MAINNET_CHAIN_ID: Final[int] = 8453
BASE_SEPOLIA_CHAIN_ID: Final[int] = 84532

DEFAULT_RPC_URLS = {
    BASE_MAINNET_CHAIN_ID: "https://mainnet.base.org",
    BASE_SEPOLIA_CHAIN_ID: "https://sepolia.base.org",
}

DEFAULT_ENTRY_POINT: Final[str] = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
ZERO_ADDRESS: Final[str] = "0x0000000000000000000000000000000000000000"
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
DEFAULT_BUILDER_CODE: Final[str] = "agentsafe42"


# ============================================================
# TOKEN ALLOWLIST: symbol → address, lookups are case-insensitive
# ============================================================

@dataclass(frozen=True)
class KnownToken:
    symbol: str
    address: str
    decimals: int
    native: bool = False


KNOWN_TOKENS: tuple[KnownToken, ...] = (
    KnownToken("ETH", ZERO_ADDRESS, 18, native=True),
    KnownToken("WETH", "0x4200000000000000000000000000000000000006", 18),
    KnownToken("USDC", "0x036CbD53842c5426634e7929541eC2318f3dCF7e", 6),
)

STABLE_SYMBOLS: Final[frozenset] = frozenset({"USDC", "USDT", "DAI"})


def resolve_token(symbol_or_address: str) -> Optional[KnownToken]:
    """Resolve a symbol or address against KNOWN_TOKENS. Unknown input → None."""
    if not isinstance(symbol_or_address, str) or not symbol_or_address.strip():
        return None
    needle = symbol_or_address.strip()
    for token in KNOWN_TOKENS:
        if token.symbol == needle.upper() or token.address.lower() == needle.lower():
            return token
    return None


# ============================================================
# ROUTER SELECTORS: Universal Router entry points
# ============================================================

KNOWN_ROUTER_SELECTORS: Final[frozenset] = frozenset({
    "3593564c",  # execute(bytes,bytes[],uint256)
    "24856bc3",  # execute(bytes,bytes[])
})

ERC20_APPROVE_SELECTOR: Final[str] = "095ea7b3"


def is_address(value) -> bool:
    """0x-prefixed, 40 hex chars. No checksum validation."""
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def enforce(condition: bool, message: str) -> None:
    """Raise ConstitutionViolation if condition is False."""
    if not condition:
        raise ConstitutionViolation(message)
