"""
Autonomy Scheduler - periodic rebalance cycles under a delegated session

Runs one cycle at startup, then one per interval. A cycle loads the
configured principal/account, checks that a session is active, executes a
rebalance with a hard timeout, and runs performance-fee accounting on the
result. Every step is recorded as a lifecycle event in the LogStore.

Design:
- Single-flight: a tick that lands while a cycle is running is skipped
  (AUTONOMY_CYCLE_SKIPPED / CYCLE_ALREADY_RUNNING), never queued
- Ticks spawn cycles as tasks; the ticker itself never blocks on a cycle
- Interval floored at 1s; execution bounded at 90s per cycle
- Any exception inside a cycle becomes a RESULT event with
  reason "LOOP_ERROR: ..." at ERROR level; the loop keeps going
- END is always emitted (finally) with the cycle's duration
- stop() cancels the ticker only; a cycle already in flight finishes

Events: AUTONOMY_ENABLED, AUTONOMY_DISABLED, AUTONOMY_CYCLE_START,
AUTONOMY_CYCLE_SKIPPED, AUTONOMY_CYCLE_RESULT, AUTONOMY_CYCLE_END,
AUTONOMY_STOPPED

Designed for: delegated rebalance execution
"""

import asyncio
import json
import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from core.config import Settings
from core.constitution import HARD_LIMITS, is_address
from core.execution import ExecutionService
from core.log_store import LogStore, create_log_event
from core.performance_fee import PerformanceFeeAccountant
from core.session import SessionManager

logger = logging.getLogger("agentsafe.autonomy")

AUTONOMY_MODES = ("rebalance", "demo")

_CYCLE_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_cycle_id(now: float) -> str:
    suffix = "".join(random.choices(_CYCLE_ID_ALPHABET, k=6))
    return f"{int(now * 1000)}-{suffix}"


@dataclass(frozen=True)
class AutonomyContext:
    swapper: str
    smart_account: str
    token_in: str
    token_out: str
    mode: str

    def to_dict(self) -> dict:
        return {
            "swapper": self.swapper,
            "smartAccount": self.smart_account,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "mode": self.mode,
        }


class AutonomyScheduler:

    def __init__(
        self,
        settings: Settings,
        sessions: SessionManager,
        executor: ExecutionService,
        fee_accountant: PerformanceFeeAccountant,
        log_store: LogStore,
        clock: Callable[[], float] = time.time,
        cycle_timeout: float = HARD_LIMITS.AUTONOMY_CYCLE_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self.sessions = sessions
        self.executor = executor
        self.fee_accountant = fee_accountant
        self.log_store = log_store
        self._clock = clock
        self.cycle_timeout = cycle_timeout

        self._in_flight = False
        self._ticker: Optional[asyncio.Task] = None
        self._cycle_tasks: set[asyncio.Task] = set()
        self._cycles_started = 0
        self._cycles_skipped = 0
        self._cycles_failed = 0

    @property
    def interval_seconds(self) -> float:
        return max(self.settings.autonomy.interval_seconds, HARD_LIMITS.AUTONOMY_MIN_INTERVAL_SECONDS)

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # ============================================================
    # EVENTS
    # ============================================================

    def _ts(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def _emit(self, event_type: str, level: str = "INFO", **fields) -> dict:
        event = {"ts": self._ts(), "type": event_type, **fields}
        if self.settings.autonomy.console_logs:
            logger.info(json.dumps(event, default=str))
        self.log_store.append(create_log_event(event_type, event, level, fields.get("cycleId")))
        return event

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start(self) -> bool:
        """Start the loop on the running event loop. False when autonomy is disabled."""
        if not self.settings.autonomy.enabled:
            self._emit(
                "AUTONOMY_DISABLED",
                enabled=False,
                reason="Set AUTONOMY_ENABLED=true to enable loop",
            )
            return False
        if self.running:
            return True

        self._spawn("startup")
        self._ticker = asyncio.create_task(self._tick_loop())
        self._emit("AUTONOMY_ENABLED", enabled=True, intervalMs=int(self.interval_seconds * 1000))
        return True

    async def stop(self, wait: bool = False) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        self._emit("AUTONOMY_STOPPED")
        if wait and self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)

    def _spawn(self, trigger: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_cycle(trigger))
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)
        return task

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self._spawn("interval")

    # ============================================================
    # CYCLE
    # ============================================================

    def load_context(self) -> tuple[Optional[AutonomyContext], Optional[str]]:
        cfg = self.settings.autonomy
        if not is_address(cfg.swapper):
            return None, "AUTONOMY_SWAPPER is missing or invalid 0x address."
        if not is_address(cfg.smart_account):
            return None, "AUTONOMY_SMART_ACCOUNT is missing or invalid 0x address."
        mode = cfg.mode.lower()
        if mode not in AUTONOMY_MODES:
            return None, "AUTONOMY_MODE must be either rebalance or demo."
        return AutonomyContext(
            swapper=cfg.swapper,
            smart_account=cfg.smart_account,
            token_in=cfg.token_in.upper(),
            token_out=cfg.token_out.upper(),
            mode=mode,
        ), None

    async def run_cycle(self, trigger: str) -> dict:
        """One cycle. Returns the RESULT (or SKIPPED) event that was recorded."""
        started = self._clock()
        cycle_id = new_cycle_id(started)

        if self._in_flight:
            self._cycles_skipped += 1
            return self._emit(
                "AUTONOMY_CYCLE_SKIPPED", cycleId=cycle_id, trigger=trigger, reason="CYCLE_ALREADY_RUNNING",
            )

        self._in_flight = True
        self._cycles_started += 1
        self._emit(
            "AUTONOMY_CYCLE_START", cycleId=cycle_id, trigger=trigger,
            intervalMs=int(self.interval_seconds * 1000),
        )
        try:
            return await self._cycle_body(cycle_id, trigger)
        except asyncio.TimeoutError:
            self._cycles_failed += 1
            return self._emit(
                "AUTONOMY_CYCLE_RESULT", level="ERROR", cycleId=cycle_id, trigger=trigger,
                executed=False, reason=f"LOOP_ERROR: execution timed out after {self.cycle_timeout}s",
                userOpHash=None,
            )
        except Exception as e:
            self._cycles_failed += 1
            logger.error(f"Autonomy cycle {cycle_id} failed: {e}", exc_info=True)
            return self._emit(
                "AUTONOMY_CYCLE_RESULT", level="ERROR", cycleId=cycle_id, trigger=trigger,
                executed=False, reason=f"LOOP_ERROR: {e}", userOpHash=None,
            )
        finally:
            self._in_flight = False
            self._emit(
                "AUTONOMY_CYCLE_END", cycleId=cycle_id,
                durationMs=int((self._clock() - started) * 1000),
            )

    async def _cycle_body(self, cycle_id: str, trigger: str) -> dict:
        context, reason = self.load_context()
        if context is None:
            return self._emit(
                "AUTONOMY_CYCLE_RESULT", cycleId=cycle_id, trigger=trigger,
                executed=False, reason=reason, userOpHash=None,
            )

        session = self.sessions.get_active(context.swapper)
        if session is None:
            return self._emit(
                "AUTONOMY_CYCLE_RESULT", cycleId=cycle_id, trigger=trigger,
                executed=False, reason="NO_ACTIVE_SESSION", userOpHash=None,
                context=context.to_dict(),
            )

        outcome = await asyncio.wait_for(
            self.executor.execute_rebalance({
                "swapper": context.swapper,
                "smart_account": context.smart_account,
                "token_in": context.token_in,
                "token_out": context.token_out,
                "mode": context.mode,
                "run_id": cycle_id,
            }),
            timeout=self.cycle_timeout,
        )

        fee = self.fee_accountant.build_performance_fee_accounting(
            cycle_id, outcome.realized_yield_wei or "0",
        )
        return self._emit(
            "AUTONOMY_CYCLE_RESULT", cycleId=cycle_id, trigger=trigger,
            executed=outcome.executed,
            reason=outcome.reason,
            stage=outcome.stage,
            demoMode=outcome.demo_mode,
            userOpHash=outcome.user_op_hash,
            performanceFee=fee.to_dict(),
            session=session.summary(self.sessions.now()),
        )

    def get_status(self) -> dict:
        return {
            "enabled": self.settings.autonomy.enabled,
            "running": self.running,
            "in_flight": self._in_flight,
            "interval_seconds": self.interval_seconds,
            "cycles_started": self._cycles_started,
            "cycles_skipped": self._cycles_skipped,
            "cycles_failed": self._cycles_failed,
        }
