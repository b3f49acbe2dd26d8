"""
Shared fixtures: fixed clock, settings factory, in-process fakes for the
chain reader, quote service and relay.
"""

import dataclasses
from typing import Optional

import pytest

from core.config import Settings
from core.constitution import BASE_MAINNET_CHAIN_ID, resolve_token
from core.errors import UpstreamError
from core.log_store import MemoryLogStore
from core.quotes import QuoteService, SwapQuote, SwapTx
from core.session import SessionManager

SWAPPER = "0x1111111111111111111111111111111111111111"
ACCOUNT = "0x2222222222222222222222222222222222222222"
ROUTER = "0x3333333333333333333333333333333333333333"
SPENDER = "0x4444444444444444444444444444444444444444"
USDC = resolve_token("USDC").address
WETH = resolve_token("WETH").address

T0 = 1_700_000_000.0

# Universal Router execute(bytes,bytes[],uint256) with a dummy body
ROUTER_CALLDATA = "0x3593564c" + "00" * 64


class FixedClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeReader:
    """Stands in for AccountReader. Set `fail_*` to an UpstreamError to make a read fail."""

    def __init__(self):
        self.balances: dict[str, int] = {USDC.lower(): 5_000_000}
        self.nonce = 7
        self.gas_price = 1_000_000_000
        self.signer: Optional[str] = None
        self.fail_balance: Optional[UpstreamError] = None
        self.fail_nonce: Optional[UpstreamError] = None
        self.fail_gas: Optional[UpstreamError] = None
        self.nonce_calls: list[tuple[str, str]] = []

    async def get_token_balance(self, token: str, holder: str) -> int:
        if self.fail_balance:
            raise self.fail_balance
        return self.balances.get(token.lower(), 0)

    async def get_nonce(self, entry_point: str, account: str) -> int:
        self.nonce_calls.append((entry_point, account))
        if self.fail_nonce:
            raise self.fail_nonce
        return self.nonce

    async def get_gas_price(self) -> int:
        if self.fail_gas:
            raise self.fail_gas
        return self.gas_price

    async def get_swarm_signer(self, account: str) -> Optional[str]:
        return self.signer


class StubQuoteService(QuoteService):
    def __init__(self, clock: FixedClock):
        self.clock = clock
        self.price_impact_bps: Optional[int] = 30
        self.realized_yield_wei: Optional[int] = None
        self.router = ROUTER
        self.calldata = ROUTER_CALLDATA
        self.value = 0
        self.chain_id = BASE_MAINNET_CHAIN_ID
        self.error: Optional[Exception] = None
        self.quote_calls: list[int] = []

    async def get_swap_quote(self, token_in, token_out, amount_in, slippage_bps, swapper) -> SwapQuote:
        self.quote_calls.append(amount_in)
        if self.error:
            raise self.error
        return SwapQuote(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_in * 3,
            price_impact_bps=self.price_impact_bps,
            expires_at=self.clock() + 60,
            realized_yield_wei=self.realized_yield_wei,
        )

    async def get_swap_tx(self, token_in, token_out, amount_in, slippage_bps, swapper) -> SwapTx:
        if self.error:
            raise self.error
        return SwapTx(
            to=self.router,
            data=self.calldata,
            value=self.value,
            chain_id=self.chain_id,
            deadline=int(self.clock()) + 600,
        )


class RecordingRelay:
    def __init__(self, result: str = "0x" + "ab" * 32, error: Optional[UpstreamError] = None):
        self.result = result
        self.error = error
        self.calls: list[tuple[dict, str]] = []

    async def send_user_operation(self, op: dict, entry_point: str) -> str:
        self.calls.append((op, entry_point))
        if self.error:
            raise self.error
        return self.result


def build_settings(**overrides) -> Settings:
    base = Settings(
        execution_enabled=True,
        swap_rebalance_enabled=True,
        session_keys_enabled=True,
        chain_id=BASE_MAINNET_CHAIN_ID,
        allowed_targets=(ROUTER,),
        allowed_tokens=(USDC,),
    )
    return dataclasses.replace(base, **overrides)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def make_settings():
    return build_settings


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def quotes(clock):
    return StubQuoteService(clock)


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def log_store():
    return MemoryLogStore()


@pytest.fixture
def sessions(settings, reader, clock):
    return SessionManager(settings, signer_reader=reader.get_swarm_signer, clock=clock)


@pytest.fixture
def start_session(sessions):
    """Factory: start a session for SWAPPER/ACCOUNT with optional limit overrides."""
    async def _start(**overrides):
        request = {"swapper": SWAPPER, "smart_account": ACCOUNT, **overrides}
        return await sessions.start(request)
    return _start
