"""
Stream events - classification of raw ERC-20 logs

Raw logs arrive from an external webhook/stream (not part of this core).
They are classified by topic hash into an immutable StreamEvent before
anything is dispatched.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

logger = logging.getLogger("agentsafe.events")


class EventType(Enum):
    APPROVAL = "Approval"
    TRANSFER = "Transfer"
    UNKNOWN = "Unknown"


# keccak256("Approval(address,address,uint256)")
APPROVAL_TOPIC = "0x8c5be1e5ebec7d5bd14f714caad1a6f943b910f35b01a187e7862a3b8cd2a57c"
# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass(frozen=True)
class StreamEvent:
    event_type: EventType
    data: Mapping[str, Any] = field(default_factory=dict)
    block_number: int = 0
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        # Read-only view so handlers cannot mutate a shared event
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))


def identify_event_type(topics: list) -> EventType:
    if not topics:
        return EventType.UNKNOWN
    topic0 = str(topics[0]).lower()
    if topic0 == APPROVAL_TOPIC:
        return EventType.APPROVAL
    if topic0 == TRANSFER_TOPIC:
        return EventType.TRANSFER
    return EventType.UNKNOWN


def _topic_address(topic: str) -> str:
    return "0x" + str(topic)[-40:].lower()


def _hex_to_decimal(data: Optional[str]) -> str:
    if not data or data == "0x":
        return "0"
    try:
        return str(int(data, 16))
    except ValueError:
        return "0"


def decode_approval(topics: list, data: str) -> dict:
    """Approval(owner indexed, spender indexed, value)."""
    return {
        "owner": _topic_address(topics[1]) if len(topics) > 1 else "",
        "spender": _topic_address(topics[2]) if len(topics) > 2 else "",
        "value": _hex_to_decimal(data),
    }


def decode_transfer(topics: list, data: str) -> dict:
    """Transfer(from indexed, to indexed, value)."""
    return {
        "from": _topic_address(topics[1]) if len(topics) > 1 else "",
        "to": _topic_address(topics[2]) if len(topics) > 2 else "",
        "value": _hex_to_decimal(data),
    }


def _parse_block(raw: Any) -> int:
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw:
        try:
            return int(raw, 16) if raw.startswith("0x") else int(raw)
        except ValueError:
            return 0
    return 0


def ingest_raw_log(raw: dict) -> StreamEvent:
    """Turn a raw log ({address, topics, data, blockNumber, ...}) into a StreamEvent."""
    topics = list(raw.get("topics") or [])
    data = raw.get("data") or "0x"
    event_type = identify_event_type(topics)

    decoded: dict = {
        "address": str(raw.get("address", "")).lower(),
        "transactionHash": raw.get("transactionHash", ""),
    }
    if event_type is EventType.APPROVAL:
        decoded.update(decode_approval(topics, data))
    elif event_type is EventType.TRANSFER:
        decoded.update(decode_transfer(topics, data))
    else:
        decoded["topics"] = topics
        decoded["data"] = data

    event = StreamEvent(
        event_type=event_type,
        data=decoded,
        block_number=_parse_block(raw.get("blockNumber")),
    )
    logger.debug(f"Ingested {event_type.value} event {event.id} at block {event.block_number}")
    return event
