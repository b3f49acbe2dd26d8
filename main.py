"""
agentsafe - main entry point

Builds every component from Settings, exposes the public surface, and runs
the autonomy loop until interrupted.
One file to understand how everything connects.

Usage:
    python main.py              # Start the autonomy loop (AUTONOMY_ENABLED=true)
"""

import os
import re
import time
import asyncio
import logging
from typing import Any, Optional

from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (session private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                # Unformattable record: logging reports it itself when emitting
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("agentsafe.main")

# ============================================================
# MODULE IMPORTS
# ============================================================

from core.autonomy import AutonomyScheduler
from core.capabilities.rebalance import RebalanceCapability
from core.capabilities.security_hygiene import SecurityHygieneCapability
from core.chain import AccountReader
from core.config import Settings, load_settings
from core.dedupe import DedupeStore
from core.errors import AgentSafeError
from core.events import StreamEvent, ingest_raw_log
from core.execution import ExecutionOutcome, ExecutionService
from core.guardrails import GuardrailChain
from core.log_store import JsonlLogStore, LogStore, create_log_event
from core.performance_fee import PerformanceFeeAccountant, PerformanceFeeAccountingResult
from core.portfolio import WalletPortfolio
from core.quotes import QuoteService, UnconfiguredQuoteService
from core.session import SessionManager, SessionStartResult, SessionStatus, SessionStopResult
from core.submitter import OperationSubmitter, RelayClient
from core.swarm import SwarmRunResult, SwarmRunner


# ============================================================
# RUNTIME
# ============================================================

class AgentSafeRuntime:
    """Every component, wired once. The public surface is the methods below."""

    def __init__(
        self,
        settings: Settings,
        quotes: Optional[QuoteService] = None,
        log_store: Optional[LogStore] = None,
        reader: Optional[AccountReader] = None,
        relay: Optional[RelayClient] = None,
        clock=time.time,
    ):
        self.settings = settings
        self.log_store = log_store or JsonlLogStore(settings.log_store_path)
        self.reader = reader or AccountReader(settings.rpc_url)
        self.quotes = quotes or UnconfiguredQuoteService()

        self.sessions = SessionManager(settings, signer_reader=self.reader.get_swarm_signer, clock=clock)
        self.dedupe = DedupeStore(clock=clock)
        self.swarm = SwarmRunner(
            [SecurityHygieneCapability(clock=clock), RebalanceCapability(self.quotes, clock=clock)],
            self.dedupe,
        )
        self.guardrails = GuardrailChain(settings, self.sessions, clock=clock)
        self.submitter = OperationSubmitter(settings, self.reader, relay)
        self.executor = ExecutionService(
            settings, self.sessions, self.guardrails, self.reader, self.quotes, self.submitter,
        )
        self.fee_accountant = PerformanceFeeAccountant(settings.fee, self.log_store)
        self.autonomy = AutonomyScheduler(
            settings, self.sessions, self.executor, self.fee_accountant, self.log_store, clock=clock,
        )

    # ---- sessions ----
    # Configuration and validation errors come back as ok=False results with a reason code.

    async def start_session(self, request) -> SessionStartResult:
        try:
            return await self.sessions.start(request)
        except AgentSafeError as e:
            logger.info(f"Session start rejected: {e.code} {e.message}")
            return SessionStartResult(ok=False, reason=e.code, error=e.to_dict())

    def stop_session(self, request) -> SessionStopResult:
        try:
            return self.sessions.stop(request)
        except AgentSafeError as e:
            logger.info(f"Session stop rejected: {e.code} {e.message}")
            return SessionStopResult(ok=False, revoked=False, reason=e.code, error=e.to_dict())

    def session_status(self, swapper: str) -> SessionStatus:
        try:
            return self.sessions.status(swapper)
        except AgentSafeError as e:
            return SessionStatus(active=False, reason=e.code, error=e.to_dict())

    # ---- capabilities ----

    async def run_on_event(
        self, event, principal: str, portfolio: Optional[WalletPortfolio] = None,
    ) -> SwarmRunResult:
        """Accepts a StreamEvent or a raw log dict (classified on the way in)."""
        if not isinstance(event, StreamEvent):
            event = ingest_raw_log(event)
        result = await self.swarm.run_on_event(event, principal, portfolio)
        if result.agents_invoked or result.skipped_dedupe:
            self.log_store.append(create_log_event(
                "SWARM_RUN",
                {"eventId": event.id, "eventType": event.event_type.value, **result.to_dict()},
                "WARN" if result.errors else "INFO",
                event.id,
            ))
        return result

    async def run_on_demand(self, capability_id: str, principal: str, context: dict[str, Any]) -> SwarmRunResult:
        return await self.swarm.run_on_demand(capability_id, principal, context)

    # ---- execution ----

    async def execute_rebalance(self, request) -> ExecutionOutcome:
        return await self.executor.execute_rebalance(request)

    async def execute_revoke(self, request) -> ExecutionOutcome:
        return await self.executor.execute_revoke(request)

    def build_performance_fee_accounting(self, cycle_id: str, realized_yield_wei: str) -> PerformanceFeeAccountingResult:
        return self.fee_accountant.build_performance_fee_accounting(cycle_id, realized_yield_wei)

    # ---- autonomy ----

    def start_autonomy_loop(self) -> bool:
        return self.autonomy.start()

    async def stop_autonomy_loop(self, wait: bool = False) -> None:
        await self.autonomy.stop(wait=wait)

    def get_status(self) -> dict:
        return {
            "settings": self.settings.summary(),
            "sessions": len(self.sessions),
            "dedupe": self.dedupe.stats(),
            "capabilities": self.swarm.capability_ids,
            "submitter": self.submitter.get_status(),
            "autonomy": self.autonomy.get_status(),
            "performance_fee": self.fee_accountant.get_status(),
        }


# ============================================================
# MAIN
# ============================================================

async def _run(runtime: AgentSafeRuntime) -> None:
    if not runtime.start_autonomy_loop():
        logger.info("Autonomy disabled; nothing to run. Set AUTONOMY_ENABLED=true.")
        return
    logger.info(f"agentsafe running: {runtime.get_status()}")
    try:
        while runtime.autonomy.running:
            await asyncio.sleep(1)
    finally:
        await runtime.stop_autonomy_loop(wait=True)


def main() -> None:
    settings = load_settings(dotenv=False)
    runtime = AgentSafeRuntime(settings)
    try:
        asyncio.run(_run(runtime))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
