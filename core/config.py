"""
Runtime Configuration - resolved once at process start

Every component receives a Settings instance explicitly. Nothing below
reads os.environ after load_settings() returns.

Design:
- Frozen dataclasses: config cannot drift while the scheduler runs
- Feature flags default to the safe side (swap rebalance off, fee dry-run on)
- Allowlist addresses are validated eagerly; a malformed entry is always fatal
- MAINNET_STRICT=true additionally rejects zero addresses, empty allowlists
  and missing RPC/bundler URLs, reporting every violation at once

Designed for: delegated rebalance execution
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from core.constitution import (
    HARD_LIMITS,
    BASE_MAINNET_CHAIN_ID,
    BASE_SEPOLIA_CHAIN_ID,
    DEFAULT_RPC_URLS,
    DEFAULT_ENTRY_POINT,
    DEFAULT_BUILDER_CODE,
    ZERO_ADDRESS,
    is_address,
    resolve_token,
)
from core.errors import ConfigurationError

logger = logging.getLogger("agentsafe.config")


# ============================================================
# SETTINGS
# ============================================================

@dataclass(frozen=True)
class AutonomySettings:
    enabled: bool = False
    interval_seconds: float = HARD_LIMITS.AUTONOMY_DEFAULT_INTERVAL_SECONDS
    swapper: str = ""
    smart_account: str = ""
    token_in: str = "USDC"
    token_out: str = "WETH"
    mode: str = "rebalance"
    console_logs: bool = True


@dataclass(frozen=True)
class FeeSettings:
    # Raw value; the accountant clamps it (out-of-range falls back to default)
    fee_bps_raw: Optional[str] = None
    recipient: str = ""
    token_address: str = ""
    chain_id: int = BASE_MAINNET_CHAIN_ID
    dry_run: bool = True
    sweep_approved: bool = False


@dataclass(frozen=True)
class Settings:
    execution_enabled: bool = True
    swap_rebalance_enabled: bool = False
    session_keys_enabled: bool = False
    testnet: bool = False
    mainnet_strict: bool = False

    chain_id: int = BASE_MAINNET_CHAIN_ID
    rpc_url: str = DEFAULT_RPC_URLS[BASE_MAINNET_CHAIN_ID]
    bundler_url: str = ""
    entry_point: str = DEFAULT_ENTRY_POINT
    allowed_targets: tuple = ()
    allowed_tokens: tuple = ()
    builder_code: str = DEFAULT_BUILDER_CODE

    log_store_path: str = "data/logs.jsonl"

    autonomy: AutonomySettings = field(default_factory=AutonomySettings)
    fee: FeeSettings = field(default_factory=FeeSettings)

    def is_target_allowed(self, address: str) -> bool:
        return is_address(address) and address.lower() in {t.lower() for t in self.allowed_targets}

    def is_token_allowed(self, address: str) -> bool:
        return is_address(address) and address.lower() in {t.lower() for t in self.allowed_tokens}

    def strict_violations(self) -> list[str]:
        """Every reason this config is not production-safe. Empty list = OK."""
        violations = []
        if self.entry_point.lower() == ZERO_ADDRESS:
            violations.append("entry point is the zero address (ENTRY_POINT_ADDRESS)")
        if not self.allowed_tokens:
            violations.append("allowed tokens is empty (ALLOWED_TOKENS); revoke path rejects everything")
        if not self.allowed_targets:
            violations.append("allowed targets is empty (ALLOWED_TARGETS); swap path rejects every router")
        zero_tokens = [t for t in self.allowed_tokens if t.lower() == ZERO_ADDRESS]
        if zero_tokens:
            violations.append(f"allowed tokens contains {len(zero_tokens)} zero address(es)")
        zero_targets = [t for t in self.allowed_targets if t.lower() == ZERO_ADDRESS]
        if zero_targets:
            violations.append(f"allowed targets contains {len(zero_targets)} zero address(es)")
        if not self.rpc_url.strip():
            violations.append("rpc url is empty (BASE_RPC_URL)")
        if not self.bundler_url.strip():
            violations.append("bundler url is empty (BUNDLER_RPC_URL)")
        return violations

    def validate_strict(self) -> None:
        violations = self.strict_violations()
        if violations:
            body = "; ".join(f"{i}. {v}" for i, v in enumerate(violations, 1))
            raise ConfigurationError(
                "DEPLOYMENT_NOT_PRODUCTION_SAFE",
                f"{len(violations)} violation(s): {body}",
            )

    def summary(self) -> dict:
        """Loggable view. Never includes key material (there is none in config)."""
        return {
            "chain_id": self.chain_id,
            "testnet": self.testnet,
            "execution_enabled": self.execution_enabled,
            "swap_rebalance_enabled": self.swap_rebalance_enabled,
            "session_keys_enabled": self.session_keys_enabled,
            "bundler_configured": bool(self.bundler_url),
            "allowed_targets": len(self.allowed_targets),
            "allowed_tokens": len(self.allowed_tokens),
            "autonomy_enabled": self.autonomy.enabled,
            "autonomy_interval_s": self.autonomy.interval_seconds,
            "fee_dry_run": self.fee.dry_run,
        }


# ============================================================
# ENV PARSING
# ============================================================

def _env_str(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() == "true"


def parse_address_list(raw: str, name: str) -> tuple:
    """Comma-separated or JSON array. Any malformed address raises ConfigurationError."""
    raw = raw.strip()
    if not raw:
        return ()
    items: list = []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError("MALFORMED_ALLOWLIST", f"{name}: invalid JSON ({e})")
        if not isinstance(parsed, list):
            raise ConfigurationError("MALFORMED_ALLOWLIST", f"{name}: expected a JSON array")
        items = [str(v).strip() for v in parsed]
    else:
        items = [v.strip() for v in raw.split(",")]
    items = [v for v in items if v]
    bad = [v for v in items if not is_address(v)]
    if bad:
        raise ConfigurationError(
            "MALFORMED_ALLOWLIST_ADDRESS",
            f"{name} has {len(bad)} malformed address(es): {', '.join(bad[:3])}",
        )
    return tuple(items)


def parse_interval_ms(raw: Optional[str]) -> float:
    """AUTONOMY_INTERVAL_MS → seconds. Unparseable or below the floor → default."""
    if not raw:
        return HARD_LIMITS.AUTONOMY_DEFAULT_INTERVAL_SECONDS
    try:
        ms = float(raw)
    except ValueError:
        return HARD_LIMITS.AUTONOMY_DEFAULT_INTERVAL_SECONDS
    if ms != ms or ms < HARD_LIMITS.AUTONOMY_MIN_INTERVAL_SECONDS * 1000:
        return HARD_LIMITS.AUTONOMY_DEFAULT_INTERVAL_SECONDS
    return int(ms) / 1000.0


def load_settings(dotenv: bool = True) -> Settings:
    """Build Settings from the environment. Call once at startup."""
    if dotenv:
        load_dotenv()

    testnet = _env_flag("AGENT_TESTNET_MODE")
    chain_id = BASE_SEPOLIA_CHAIN_ID if testnet else BASE_MAINNET_CHAIN_ID
    rpc_url = _env_str("BASE_SEPOLIA_RPC_URL") if testnet else ""
    rpc_url = rpc_url or _env_str("BASE_RPC_URL", DEFAULT_RPC_URLS[chain_id])

    entry_point = _env_str("ENTRY_POINT_ADDRESS", DEFAULT_ENTRY_POINT)
    if not is_address(entry_point):
        raise ConfigurationError("MALFORMED_ENTRY_POINT", f"ENTRY_POINT_ADDRESS is not an address: {entry_point}")

    mode = _env_str("AUTONOMY_MODE", "rebalance").lower()
    autonomy = AutonomySettings(
        enabled=_env_flag("AUTONOMY_ENABLED"),
        interval_seconds=parse_interval_ms(os.getenv("AUTONOMY_INTERVAL_MS")),
        swapper=_env_str("AUTONOMY_SWAPPER"),
        smart_account=_env_str("AUTONOMY_SMART_ACCOUNT"),
        token_in=_env_str("AUTONOMY_TOKEN_IN", "USDC").upper(),
        token_out=_env_str("AUTONOMY_TOKEN_OUT", "WETH").upper(),
        mode=mode,
        console_logs=_env_flag("AUTONOMY_CONSOLE_LOGS", default=True),
    )

    fee_chain_raw = _env_str("AUTONOMY_CHAIN_ID", str(chain_id))
    try:
        fee_chain_id = int(fee_chain_raw)
    except ValueError:
        fee_chain_id = chain_id
    usdc = resolve_token("USDC")
    fee = FeeSettings(
        fee_bps_raw=os.getenv("AUTONOMY_PERFORMANCE_FEE_BPS"),
        recipient=_env_str("AUTONOMY_PERFORMANCE_FEE_RECIPIENT", _env_str("OPERATOR_WALLET")),
        token_address=_env_str("AUTONOMY_PERFORMANCE_FEE_TOKEN", usdc.address if usdc else ""),
        chain_id=fee_chain_id,
        dry_run=_env_flag("AUTONOMY_PERFORMANCE_FEE_DRY_RUN", default=True),
        sweep_approved=_env_flag("AUTONOMY_PERFORMANCE_FEE_SWEEP_APPROVED"),
    )

    settings = Settings(
        execution_enabled=_env_flag("EXECUTION_ENABLED", default=True),
        swap_rebalance_enabled=_env_flag("ENABLE_SWAP_REBALANCE"),
        session_keys_enabled=_env_flag("SESSION_KEYS_ENABLED"),
        testnet=testnet,
        mainnet_strict=_env_flag("MAINNET_STRICT"),
        chain_id=chain_id,
        rpc_url=rpc_url,
        bundler_url=_env_str("BUNDLER_RPC_URL"),
        entry_point=entry_point,
        allowed_targets=parse_address_list(_env_str("ALLOWED_TARGETS"), "ALLOWED_TARGETS"),
        allowed_tokens=parse_address_list(_env_str("ALLOWED_TOKENS"), "ALLOWED_TOKENS"),
        builder_code=_env_str("BASE_BUILDER_CODE", DEFAULT_BUILDER_CODE),
        log_store_path=_env_str("LOG_STORE_PATH", "data/logs.jsonl"),
        autonomy=autonomy,
        fee=fee,
    )

    if settings.mainnet_strict:
        settings.validate_strict()

    logger.info(f"Settings loaded: {settings.summary()}")
    return settings
