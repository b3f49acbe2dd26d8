import pytest

from core.events import (
    APPROVAL_TOPIC,
    TRANSFER_TOPIC,
    EventType,
    StreamEvent,
    identify_event_type,
    ingest_raw_log,
)
from core.triggers import get_triggered_agents, has_trigger

OWNER_TOPIC = "0x" + "0" * 24 + "1111111111111111111111111111111111111111"
SPENDER_TOPIC = "0x" + "0" * 24 + "4444444444444444444444444444444444444444"


class TestTriggerMap:
    def test_approval_routes_to_security(self):
        assert get_triggered_agents(EventType.APPROVAL) == ["security"]

    def test_transfer_routes_to_rebalance(self):
        assert get_triggered_agents(EventType.TRANSFER) == ["uniswap"]

    def test_unknown_has_no_trigger(self):
        assert get_triggered_agents(EventType.UNKNOWN) == []
        assert has_trigger(EventType.UNKNOWN) is False

    def test_accepts_raw_string_type(self):
        assert get_triggered_agents("Approval") == ["security"]
        assert get_triggered_agents("Swap") == []

    def test_returns_fresh_list(self):
        first = get_triggered_agents(EventType.APPROVAL)
        first.append("mutated")
        assert get_triggered_agents(EventType.APPROVAL) == ["security"]


class TestEventClassification:
    def test_identify_by_topic0(self):
        assert identify_event_type([APPROVAL_TOPIC]) is EventType.APPROVAL
        assert identify_event_type([TRANSFER_TOPIC.upper().replace("0X", "0x")]) is EventType.TRANSFER
        assert identify_event_type([]) is EventType.UNKNOWN
        assert identify_event_type(["0xdeadbeef"]) is EventType.UNKNOWN

    def test_ingest_approval(self):
        event = ingest_raw_log({
            "address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
            "topics": [APPROVAL_TOPIC, OWNER_TOPIC, SPENDER_TOPIC],
            "data": hex(10 ** 21),
            "blockNumber": "0x10",
        })
        assert event.event_type is EventType.APPROVAL
        assert event.block_number == 16
        assert event.data["owner"] == "0x1111111111111111111111111111111111111111"
        assert event.data["spender"] == "0x4444444444444444444444444444444444444444"
        assert event.data["value"] == str(10 ** 21)
        assert event.data["address"] == "0x036cbd53842c5426634e7929541ec2318f3dcf7e"

    def test_ingest_unknown_keeps_raw_fields(self):
        event = ingest_raw_log({"topics": ["0xabc"], "data": "0x01", "blockNumber": 5})
        assert event.event_type is EventType.UNKNOWN
        assert event.data["topics"] == ["0xabc"]
        assert event.block_number == 5

    def test_event_data_is_read_only(self):
        event = StreamEvent(event_type=EventType.TRANSFER, data={"value": "1"})
        with pytest.raises(TypeError):
            event.data["value"] = "2"

    def test_event_is_frozen(self):
        event = StreamEvent(event_type=EventType.TRANSFER)
        with pytest.raises(AttributeError):
            event.block_number = 9
