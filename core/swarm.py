"""
Swarm Runner - capability dispatcher

Turns a classified on-chain event (or an explicit on-demand request) into
zero or more ProposedActions. Proposals are untrusted output: nothing here
signs, builds calldata, or submits.

Design:
- Capability (ABC): pluggable handler, one per capability id
- Event path: Trigger Map → dedupe claim per (event, capability) → handler
- On-demand path: one named capability, no trigger lookup, no dedupe;
  unknown id or missing context is a ValidationError (caller is trusted)
- Fault isolation: a handler exception lands in `errors`, siblings still run
- Handlers run sequentially; the claim for each is taken before its await
"""

import hashlib
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

from core.dedupe import DedupeStore, dedupe_key
from core.errors import ValidationError
from core.events import StreamEvent
from core.portfolio import WalletPortfolio
from core.triggers import get_triggered_agents

logger = logging.getLogger("agentsafe.swarm")


# ============================================================
# DATA TYPES
# ============================================================

@dataclass
class ProposedAction:
    """Capability output. Must pass the guardrail chain before anything is built from it."""
    capability: str
    title: str
    summary: str
    action_type: str                  # "REVOKE" | "SWAP"
    risk: str = "medium"              # "low" | "medium" | "high"
    reasoning: list = field(default_factory=list)
    payload: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SwarmRunResult:
    agents_invoked: list = field(default_factory=list)
    proposals: list = field(default_factory=list)
    skipped_dedupe: list = field(default_factory=list)
    errors: list = field(default_factory=list)         # [{"agent": id, "error": msg}]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "agentsInvoked": list(self.agents_invoked),
            "proposals": [p.to_dict() for p in self.proposals],
            "skippedDedupe": list(self.skipped_dedupe),
            "errors": list(self.errors),
            "timestamp": self.timestamp,
        }


class Capability(ABC):
    """One capability handler. Returning None means "nothing to propose"."""

    capability_id: str = ""
    required_context: tuple = ()

    @abstractmethod
    async def handle_event(
        self, event: StreamEvent, principal: str, portfolio: Optional[WalletPortfolio] = None,
    ) -> Optional[ProposedAction]:
        ...

    @abstractmethod
    async def handle_on_demand(self, principal: str, context: dict) -> Optional[ProposedAction]:
        ...


def event_digest(event: StreamEvent) -> str:
    """Short content hash so two different events sharing an id do not collide."""
    canonical = json.dumps(
        {"type": event.event_type.value, "block": event.block_number, "data": dict(event.data)},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


# ============================================================
# RUNNER
# ============================================================

class SwarmRunner:

    def __init__(self, capabilities: list[Capability], dedupe: DedupeStore):
        self._capabilities: dict[str, Capability] = {}
        for cap in capabilities:
            if not cap.capability_id:
                raise ValueError(f"{type(cap).__name__} has no capability_id")
            self._capabilities[cap.capability_id] = cap
        self.dedupe = dedupe

    @property
    def capability_ids(self) -> list[str]:
        return list(self._capabilities)

    async def run_on_event(
        self, event: StreamEvent, principal: str, portfolio: Optional[WalletPortfolio] = None,
    ) -> SwarmRunResult:
        result = SwarmRunResult()
        triggered = get_triggered_agents(event.event_type)
        if not triggered:
            logger.debug(f"No trigger for {event.event_type.value} event {event.id}")
            return result

        digest = event_digest(event)
        for cap_id in triggered:
            key = dedupe_key(event.id, cap_id, digest)
            if not self.dedupe.acquire_once(key):
                result.skipped_dedupe.append(cap_id)
                logger.info(f"Dedupe skip: {cap_id} for event {event.id}")
                continue

            result.agents_invoked.append(cap_id)
            cap = self._capabilities.get(cap_id)
            if cap is None:
                result.errors.append({"agent": cap_id, "error": "capability not registered"})
                logger.error(f"Triggered capability '{cap_id}' is not registered")
                continue

            try:
                proposal = await cap.handle_event(event, principal, portfolio)
            except Exception as e:
                result.errors.append({"agent": cap_id, "error": str(e) or type(e).__name__})
                logger.error(f"Capability {cap_id} failed on event {event.id}: {e}")
                continue
            if proposal is not None:
                result.proposals.append(proposal)

        logger.info(
            f"Event {event.id} ({event.event_type.value}): invoked={result.agents_invoked} "
            f"proposals={len(result.proposals)} skipped={result.skipped_dedupe} errors={len(result.errors)}"
        )
        return result

    async def run_on_demand(self, capability_id: str, principal: str, context: dict[str, Any]) -> SwarmRunResult:
        cap = self._capabilities.get(capability_id)
        if cap is None:
            raise ValidationError("UNKNOWN_CAPABILITY", f"Unknown capability: {capability_id}")
        context = context or {}
        missing = [k for k in cap.required_context if context.get(k) is None]
        if missing:
            raise ValidationError(
                "MISSING_CONTEXT",
                f"Capability {capability_id} requires context: {', '.join(missing)}",
            )

        result = SwarmRunResult(agents_invoked=[capability_id])
        try:
            proposal = await cap.handle_on_demand(principal, context)
        except ValidationError:
            raise
        except Exception as e:
            result.errors.append({"agent": capability_id, "error": str(e) or type(e).__name__})
            logger.error(f"On-demand capability {capability_id} failed: {e}")
            return result
        if proposal is not None:
            result.proposals.append(proposal)
        return result
