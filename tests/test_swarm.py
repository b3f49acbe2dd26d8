import pytest

from conftest import SPENDER, SWAPPER, USDC
from core.capabilities.rebalance import RebalanceCapability
from core.capabilities.security_hygiene import (
    MAX_UINT256,
    SecurityHygieneCapability,
    SecurityInput,
    build_revoke_calldata,
    classify_allowance_risk,
)
from core.dedupe import DedupeStore
from core.errors import ValidationError
from core.events import EventType, StreamEvent
from core.portfolio import TokenBalance, WalletPortfolio, calculate_swap_amount, compute_concentrations
from core.swarm import Capability, SwarmRunner, event_digest


def _approval(event_id="evt-1", value=str(MAX_UINT256), **data) -> StreamEvent:
    payload = {"address": USDC, "owner": SWAPPER, "spender": SPENDER, "value": value, **data}
    return StreamEvent(event_type=EventType.APPROVAL, data=payload, block_number=10, id=event_id)


def _eth_heavy_portfolio(eth_wei=10 ** 18, usdc=500_000_000) -> WalletPortfolio:
    return WalletPortfolio(
        wallet=SWAPPER,
        chain_id=8453,
        balances=[
            TokenBalance(token="0x0000000000000000000000000000000000000000", symbol="ETH", balance_wei=eth_wei),
            TokenBalance(token=USDC, symbol="USDC", balance_wei=usdc, decimals=6),
        ],
    )


class _Exploding(Capability):
    capability_id = "security"

    async def handle_event(self, event, principal, portfolio=None):
        raise RuntimeError("boom")

    async def handle_on_demand(self, principal, context):
        raise RuntimeError("boom")


class _Strict(Capability):
    capability_id = "security"
    required_context = ("security_input",)

    async def handle_event(self, event, principal, portfolio=None):
        return None

    async def handle_on_demand(self, principal, context):
        raise ValidationError("INVALID_INPUT", "bad input")


@pytest.fixture
def runner(clock, quotes):
    return SwarmRunner(
        [SecurityHygieneCapability(clock=clock), RebalanceCapability(quotes, clock=clock)],
        DedupeStore(clock=clock),
    )


class TestRunOnEvent:
    @pytest.mark.asyncio
    async def test_untriggered_event_invokes_nothing(self, runner):
        event = StreamEvent(event_type=EventType.UNKNOWN, id="evt-x")
        result = await runner.run_on_event(event, SWAPPER)
        assert result.agents_invoked == []
        assert result.proposals == []
        assert result.to_dict()["agentsInvoked"] == []

    @pytest.mark.asyncio
    async def test_approval_produces_revoke_proposal(self, runner):
        result = await runner.run_on_event(_approval(), SWAPPER)
        assert result.agents_invoked == ["security"]
        assert len(result.proposals) == 1
        proposal = result.proposals[0]
        assert proposal.action_type == "REVOKE"
        assert proposal.risk == "high"
        assert proposal.payload["revoke_calldata"].startswith("0x095ea7b3")

    @pytest.mark.asyncio
    async def test_same_event_is_deduplicated(self, runner):
        event = _approval()
        await runner.run_on_event(event, SWAPPER)
        second = await runner.run_on_event(event, SWAPPER)
        assert second.agents_invoked == []
        assert second.skipped_dedupe == ["security"]

    @pytest.mark.asyncio
    async def test_same_id_different_content_is_not_deduplicated(self, runner):
        await runner.run_on_event(_approval(value="1000"), SWAPPER)
        second = await runner.run_on_event(_approval(value="2000"), SWAPPER)
        assert second.agents_invoked == ["security"]

    @pytest.mark.asyncio
    async def test_handler_failure_is_isolated(self, clock):
        runner = SwarmRunner([_Exploding()], DedupeStore(clock=clock))
        result = await runner.run_on_event(_approval(), SWAPPER)
        assert result.agents_invoked == ["security"]
        assert result.errors == [{"agent": "security", "error": "boom"}]

    @pytest.mark.asyncio
    async def test_unregistered_capability_reports_error(self, clock):
        runner = SwarmRunner([], DedupeStore(clock=clock))
        result = await runner.run_on_event(_approval(), SWAPPER)
        assert result.errors[0]["agent"] == "security"

    @pytest.mark.asyncio
    async def test_transfer_without_portfolio_proposes_nothing(self, runner):
        event = StreamEvent(event_type=EventType.TRANSFER, data={"value": "1"}, id="evt-t")
        result = await runner.run_on_event(event, SWAPPER)
        assert result.agents_invoked == ["uniswap"]
        assert result.proposals == []

    @pytest.mark.asyncio
    async def test_transfer_with_heavy_eth_portfolio_proposes_swap(self, runner):
        event = StreamEvent(event_type=EventType.TRANSFER, data={"value": "1"}, id="evt-t")
        result = await runner.run_on_event(event, SWAPPER, _eth_heavy_portfolio())
        assert result.proposals[0].action_type == "SWAP"
        assert result.proposals[0].payload["amount_in"] == str(10 ** 17)


class TestRunOnDemand:
    @pytest.mark.asyncio
    async def test_unknown_capability(self, runner):
        with pytest.raises(ValidationError) as exc:
            await runner.run_on_demand("oracle", SWAPPER, {})
        assert exc.value.code == "UNKNOWN_CAPABILITY"

    @pytest.mark.asyncio
    async def test_missing_context(self, runner):
        with pytest.raises(ValidationError) as exc:
            await runner.run_on_demand("uniswap", SWAPPER, {})
        assert exc.value.code == "MISSING_CONTEXT"

    @pytest.mark.asyncio
    async def test_security_on_demand(self, runner):
        context = {"security_input": {
            "token": USDC, "spender": SPENDER, "owner": SWAPPER, "allowance": "5000",
        }}
        result = await runner.run_on_demand("security", SWAPPER, context)
        assert result.agents_invoked == ["security"]
        assert result.proposals[0].risk == "medium"

    @pytest.mark.asyncio
    async def test_handler_validation_error_propagates(self, clock):
        runner = SwarmRunner([_Strict()], DedupeStore(clock=clock))
        with pytest.raises(ValidationError):
            await runner.run_on_demand("security", SWAPPER, {"security_input": {}})

    @pytest.mark.asyncio
    async def test_other_handler_errors_are_captured(self, clock):
        runner = SwarmRunner([_Exploding()], DedupeStore(clock=clock))
        result = await runner.run_on_demand("security", SWAPPER, {})
        assert result.errors == [{"agent": "security", "error": "boom"}]

    @pytest.mark.asyncio
    async def test_on_demand_skips_dedupe(self, runner):
        context = {"portfolio": {
            "wallet": SWAPPER,
            "chain_id": 8453,
            "balances": [{"token": "0x0", "symbol": "ETH", "balance_wei": str(10 ** 18)}],
        }}
        first = await runner.run_on_demand("uniswap", SWAPPER, context)
        second = await runner.run_on_demand("uniswap", SWAPPER, context)
        assert len(first.proposals) == len(second.proposals) == 1


class TestSecurityHygiene:
    def test_risk_classification(self):
        assert classify_allowance_risk("0") == "low"
        assert classify_allowance_risk("100") == "medium"
        assert classify_allowance_risk(str(10 ** 21)) == "medium"
        assert classify_allowance_risk(str(10 ** 21 + 1)) == "high"
        assert classify_allowance_risk(str(MAX_UINT256)) == "high"
        assert classify_allowance_risk("lots") == "high"

    def test_revoke_calldata_layout(self):
        data = build_revoke_calldata(SPENDER)
        assert data[:10] == "0x095ea7b3"
        assert len(data) == 2 + 8 + 128
        assert data.endswith("0" * 64)
        assert SPENDER[2:].lower() in data

    def test_revoke_calldata_rejects_bad_spender(self):
        with pytest.raises(ValidationError):
            build_revoke_calldata("0x1234")

    def test_cooldown_suppresses_repeat(self, clock):
        cap = SecurityHygieneCapability(clock=clock)
        inp = SecurityInput(token=USDC, spender=SPENDER, owner=SWAPPER, allowance="5000")
        assert cap.review(inp) is not None
        assert cap.review(inp) is None
        clock.advance(24 * 60 * 60 + 1)
        assert cap.review(inp) is not None

    def test_changed_value_bypasses_cooldown(self, clock):
        cap = SecurityHygieneCapability(clock=clock)
        cap.review(SecurityInput(token=USDC, spender=SPENDER, owner=SWAPPER, allowance="5000"))
        again = cap.review(SecurityInput(token=USDC, spender=SPENDER, owner=SWAPPER, allowance="6000"))
        assert again is not None

    def test_zero_allowance_proposes_nothing(self, clock):
        cap = SecurityHygieneCapability(clock=clock)
        assert cap.review(SecurityInput(token=USDC, spender=SPENDER, owner=SWAPPER, allowance="0")) is None

    def test_missing_fields(self):
        with pytest.raises(ValidationError):
            SecurityInput.from_dict({"token": USDC})


class TestPortfolioMath:
    def test_concentrations_with_estimates(self):
        pct = compute_concentrations(_eth_heavy_portfolio().balances)
        assert pct["ETH"] == pytest.approx(3000 / 3500 * 100)

    def test_concentrations_prefer_usd_values(self):
        balances = [
            TokenBalance(token="a", symbol="ETH", balance_wei=1, usd_value=25.0),
            TokenBalance(token="b", symbol="USDC", balance_wei=1, usd_value=75.0),
        ]
        assert compute_concentrations(balances) == {"ETH": 25.0, "USDC": 75.0}

    def test_empty_portfolio(self):
        assert compute_concentrations([]) == {}

    def test_swap_amount_floors_and_clamps(self):
        assert calculate_swap_amount(999, 1000) == 99
        assert calculate_swap_amount(100, 20_000) == 100
        assert calculate_swap_amount(100, -5) == 0

    @pytest.mark.asyncio
    async def test_balanced_portfolio_proposes_nothing(self, quotes, clock):
        cap = RebalanceCapability(quotes, clock=clock)
        balanced = _eth_heavy_portfolio(eth_wei=10 ** 17, usdc=3_000_000_000)
        assert await cap.evaluate(balanced) is None
        assert quotes.quote_calls == []


class TestEventDigest:
    def test_digest_is_content_sensitive(self):
        assert event_digest(_approval(value="1")) != event_digest(_approval(value="2"))

    def test_digest_ignores_event_id(self):
        assert event_digest(_approval(event_id="a")) == event_digest(_approval(event_id="b"))
