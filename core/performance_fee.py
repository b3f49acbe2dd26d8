"""
Performance Fee Accountant - fee on realized yield, per autonomy cycle

After each cycle the scheduler hands over the realized yield (base units,
decimal string). The accountant computes the operator's cut, records a
REVENUE entry once per cycle, and produces a sweep instruction. Nothing
here moves funds: the instruction only says whether a sweep *may* run.

Design:
- Fee rate clamped to [5%, 10%]; anything else (or unparseable) → 5%
- Integer math only: fee = yield * bps // 10_000 (floor)
- Zero / negative / invalid yield and fees that floor to zero short-circuit
  without touching the log store
- REVENUE logged at most once per cycle id (seen-set owned by the instance)
- Sweep executable only when dry-run is off, sweep is explicitly approved,
  and both recipient and token are well-formed addresses
- deterministic_key lets a downstream sweeper de-duplicate on its side

Designed for: delegated rebalance execution
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from core.config import FeeSettings
from core.constitution import HARD_LIMITS, enforce, is_address
from core.log_store import LogStore, create_log_event

logger = logging.getLogger("agentsafe.performance_fee")


def normalize_fee_bps(raw: Optional[str]) -> int:
    """Configured fee rate → bps inside the hard range, default otherwise."""
    if raw is None or not str(raw).strip():
        return HARD_LIMITS.FEE_DEFAULT_BPS
    try:
        parsed = float(str(raw).strip())
    except ValueError:
        return HARD_LIMITS.FEE_DEFAULT_BPS
    if not math.isfinite(parsed):
        return HARD_LIMITS.FEE_DEFAULT_BPS
    floored = math.floor(parsed)
    if floored < HARD_LIMITS.FEE_MIN_BPS or floored > HARD_LIMITS.FEE_MAX_BPS:
        return HARD_LIMITS.FEE_DEFAULT_BPS
    return floored


def parse_wei(value) -> Optional[int]:
    """Decimal (or 0x-hex) integer string → int. Anything else → None."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text, 10)
    except ValueError:
        return None


@dataclass(frozen=True)
class PerformanceFeeSweepInstruction:
    chain_id: int
    token_address: str
    recipient: str
    amount_wei: str
    cycle_id: str
    dry_run: bool
    execute_sweep: bool
    deterministic_key: str
    kind: str = "PERFORMANCE_FEE_SWEEP"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "chainId": self.chain_id,
            "tokenAddress": self.token_address,
            "recipient": self.recipient,
            "amountWei": self.amount_wei,
            "cycleId": self.cycle_id,
            "dryRun": self.dry_run,
            "executeSweep": self.execute_sweep,
            "deterministicKey": self.deterministic_key,
        }


@dataclass(frozen=True)
class PerformanceFeeAccountingResult:
    cycle_id: str
    realized_yield_wei: str
    fee_bps: int
    amount_wei: str
    applies: bool
    reason: str       # INVALID_REALIZED_YIELD | NO_POSITIVE_YIELD | FEE_ROUNDED_TO_ZERO
                      # | FEE_READY_FOR_SWEEP | FEE_ACCOUNTED_DRY_RUN
    revenue_logged: bool = False
    sweep_instruction: Optional[PerformanceFeeSweepInstruction] = None

    def to_dict(self) -> dict:
        return {
            "cycleId": self.cycle_id,
            "realizedYieldWei": self.realized_yield_wei,
            "feeBps": self.fee_bps,
            "amountWei": self.amount_wei,
            "applies": self.applies,
            "reason": self.reason,
            "revenueLogged": self.revenue_logged,
            "sweepInstruction": self.sweep_instruction.to_dict() if self.sweep_instruction else None,
        }


class PerformanceFeeAccountant:

    def __init__(self, fee_settings: FeeSettings, log_store: LogStore):
        self.settings = fee_settings
        self.log_store = log_store
        self.fee_bps = normalize_fee_bps(fee_settings.fee_bps_raw)
        self._logged_cycles: set[str] = set()
        self._total_fee_wei = 0

    def _not_applicable(self, cycle_id: str, realized: str, reason: str) -> PerformanceFeeAccountingResult:
        return PerformanceFeeAccountingResult(
            cycle_id=cycle_id,
            realized_yield_wei=realized,
            fee_bps=self.fee_bps,
            amount_wei="0",
            applies=False,
            reason=reason,
        )

    def build_performance_fee_accounting(
        self, cycle_id: str, realized_yield_wei: str,
    ) -> PerformanceFeeAccountingResult:
        realized = parse_wei(realized_yield_wei)
        if realized is None:
            return self._not_applicable(cycle_id, str(realized_yield_wei), "INVALID_REALIZED_YIELD")
        if realized <= 0:
            return self._not_applicable(cycle_id, str(realized), "NO_POSITIVE_YIELD")

        fee_amount = realized * self.fee_bps // HARD_LIMITS.BPS_DENOMINATOR
        if fee_amount <= 0:
            return self._not_applicable(cycle_id, str(realized), "FEE_ROUNDED_TO_ZERO")
        enforce(fee_amount < realized, f"performance fee {fee_amount} would consume the whole yield {realized}")

        s = self.settings
        execute_sweep = (
            not s.dry_run
            and s.sweep_approved
            and is_address(s.recipient)
            and is_address(s.token_address)
        )
        instruction = PerformanceFeeSweepInstruction(
            chain_id=s.chain_id,
            token_address=s.token_address,
            recipient=s.recipient,
            amount_wei=str(fee_amount),
            cycle_id=cycle_id,
            dry_run=s.dry_run,
            execute_sweep=execute_sweep,
            deterministic_key=(
                f"{cycle_id}:{s.chain_id}:{s.token_address.lower()}:{s.recipient.lower()}:{fee_amount}"
            ),
        )

        revenue_logged = False
        if cycle_id not in self._logged_cycles:
            self.log_store.append(create_log_event(
                "REVENUE",
                {
                    "source": "performance_fee",
                    "amountWei": str(fee_amount),
                    "cycleId": cycle_id,
                    "feeBps": self.fee_bps,
                    "dryRun": s.dry_run,
                },
                "INFO",
                cycle_id,
            ))
            # marked only once the record is written
            self._logged_cycles.add(cycle_id)
            revenue_logged = True
            self._total_fee_wei += fee_amount
            logger.info(
                f"Performance fee accounted: cycle={cycle_id} fee={fee_amount} "
                f"({self.fee_bps} bps of {realized}) sweep={'ready' if execute_sweep else 'dry-run'}"
            )

        return PerformanceFeeAccountingResult(
            cycle_id=cycle_id,
            realized_yield_wei=str(realized),
            fee_bps=self.fee_bps,
            amount_wei=str(fee_amount),
            applies=True,
            reason="FEE_READY_FOR_SWEEP" if execute_sweep else "FEE_ACCOUNTED_DRY_RUN",
            revenue_logged=revenue_logged,
            sweep_instruction=instruction,
        )

    def get_status(self) -> dict:
        return {
            "fee_bps": self.fee_bps,
            "dry_run": self.settings.dry_run,
            "sweep_approved": self.settings.sweep_approved,
            "cycles_logged": len(self._logged_cycles),
            "total_fee_wei": str(self._total_fee_wei),
        }
