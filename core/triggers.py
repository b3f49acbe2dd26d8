"""
Trigger Map - which capabilities run for which event type

Static on purpose: wiring a capability to a new trigger is a code change,
never a request. There is no registration API.
"""

from dataclasses import dataclass
from typing import Optional

from core.events import EventType


@dataclass(frozen=True)
class TriggerConfig:
    event_type: EventType
    capabilities: tuple
    description: str = ""


TRIGGER_MAP: tuple[TriggerConfig, ...] = (
    TriggerConfig(
        event_type=EventType.APPROVAL,
        capabilities=("security",),
        description="ERC-20 approval → security hygiene review",
    ),
    TriggerConfig(
        event_type=EventType.TRANSFER,
        capabilities=("uniswap",),
        description="ERC-20 transfer → portfolio rebalance check",
    ),
)


def _coerce(event_type) -> Optional[EventType]:
    if isinstance(event_type, EventType):
        return event_type
    try:
        return EventType(event_type)
    except ValueError:
        return None


def get_triggered_agents(event_type) -> list[str]:
    """Ordered capability ids for event_type. Unmapped → []. Returns a fresh list."""
    et = _coerce(event_type)
    for trigger in TRIGGER_MAP:
        if trigger.event_type is et:
            return list(trigger.capabilities)
    return []


def has_trigger(event_type) -> bool:
    return bool(get_triggered_agents(event_type))
