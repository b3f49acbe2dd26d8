import asyncio
import json

import aiohttp
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from conftest import ACCOUNT, SWAPPER, RecordingRelay
from core.errors import UpstreamError
from core.guardrails import ActionIntent, IntentAction, RevokeApprovalMeta
from core.submitter import OperationSubmitter, RelayClient, UserOperation, sign_user_op_hash

ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"


def _intent(to=ACCOUNT, chain_id=8453) -> ActionIntent:
    return ActionIntent(
        intent_id="revoke-1",
        run_id="run-1",
        action=IntentAction.REVOKE_APPROVAL,
        chain_id=chain_id,
        to=to,
        value=0,
        data="0xb61d27f6" + "00" * 96,
        meta=RevokeApprovalMeta(token="0x" + "1" * 40, spender="0x" + "2" * 40),
    )


class _FakeResponse:
    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body


class _FakeRequest:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    async def __aenter__(self):
        if self.error:
            raise self.error
        return self.response

    async def __aexit__(self, *exc):
        return False


class _FakeClientSession:
    def __init__(self, request: _FakeRequest, sent: list):
        self._request = request
        self._sent = sent

    def post(self, url, json=None, timeout=None):
        self._sent.append(json)
        return self._request

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def fake_http(monkeypatch):
    """Install a canned aiohttp response. Returns the list of sent JSON bodies."""
    sent: list = []

    def _install(status=200, body=None, error=None):
        text = body if isinstance(body, str) else json.dumps(body or {})
        request = _FakeRequest(_FakeResponse(status, text), error)
        monkeypatch.setattr(aiohttp, "ClientSession", lambda: _FakeClientSession(request, sent))
        return sent
    return _install


class TestUserOperation:
    def test_rpc_numbers_are_hex(self):
        op = UserOperation(sender=ACCOUNT, nonce=7, call_data="0x1234", max_fee_per_gas=1_200_000_000)
        wire = op.to_rpc()
        assert wire["nonce"] == "0x7"
        assert wire["callGasLimit"] == hex(350_000)
        assert wire["verificationGasLimit"] == hex(200_000)
        assert wire["preVerificationGas"] == hex(100_000)
        assert wire["maxFeePerGas"] == hex(1_200_000_000)
        assert wire["maxPriorityFeePerGas"] == hex(100_000_000)
        assert wire["initCode"] == "0x"
        assert wire["paymasterAndData"] == "0x"

    def test_hash_depends_on_chain_and_entry_point(self):
        op = UserOperation(sender=ACCOUNT, nonce=1, call_data="0x1234")
        base = op.hash(ENTRY_POINT, 8453)
        assert len(base) == 32
        assert base != op.hash(ENTRY_POINT, 84532)
        assert base != op.hash("0x" + "9" * 40, 8453)

    def test_signature_excluded_from_hash(self):
        op = UserOperation(sender=ACCOUNT, nonce=1, call_data="0x1234")
        before = op.hash(ENTRY_POINT, 8453)
        op.signature = "0x" + "ff" * 65
        assert op.hash(ENTRY_POINT, 8453) == before

    def test_pack_hashes_dynamic_fields(self):
        op = UserOperation(sender=ACCOUNT, nonce=1, call_data="0x1234")
        packed = op.pack()
        assert len(packed) == 10 * 32
        assert keccak(bytes.fromhex("1234")) in packed

    def test_signature_recovers_session_key(self):
        acct = Account.create()
        op_hash = UserOperation(sender=ACCOUNT, nonce=3, call_data="0xabcd").hash(ENTRY_POINT, 8453)
        signature = sign_user_op_hash(op_hash, acct.key.hex())
        recovered = Account.recover_message(encode_defunct(primitive=op_hash), signature=signature)
        assert recovered == acct.address


class TestRelayClient:
    @pytest.mark.asyncio
    async def test_success_returns_hash(self, fake_http):
        sent = fake_http(body={"jsonrpc": "2.0", "id": 1, "result": "0x" + "cd" * 32})
        result = await RelayClient("http://bundler").send_user_operation({"sender": ACCOUNT}, ENTRY_POINT)
        assert result == "0x" + "cd" * 32
        assert sent[0]["method"] == "eth_sendUserOperation"
        assert sent[0]["params"] == [{"sender": ACCOUNT}, ENTRY_POINT]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code,retryable", [
        (429, "RELAY_RATE_LIMITED", False),
        (404, "RELAY_NOT_FOUND", False),
        (400, "RELAY_HTTP_400", False),
        (502, "RELAY_HTTP_502", True),
        (503, "RELAY_HTTP_503", True),
    ])
    async def test_http_status_classification(self, fake_http, status, code, retryable):
        fake_http(status=status, body="nope")
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert exc.value.code == code
        assert exc.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, fake_http):
        fake_http(error=asyncio.TimeoutError())
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert (exc.value.code, exc.value.retryable) == ("RELAY_TIMEOUT", True)

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, fake_http):
        fake_http(error=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert (exc.value.code, exc.value.retryable) == ("RELAY_UNAVAILABLE", True)

    @pytest.mark.asyncio
    async def test_jsonrpc_rejection(self, fake_http):
        fake_http(body={"error": {"code": -32602, "message": "AA23 reverted"}})
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert (exc.value.code, exc.value.retryable) == ("RELAY_REJECTED", False)

    @pytest.mark.asyncio
    async def test_quota_message(self, fake_http):
        fake_http(body={"error": {"message": "Monthly quota exceeded"}})
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert exc.value.code == "RELAY_QUOTA_EXCEEDED"

    @pytest.mark.asyncio
    async def test_non_json_body(self, fake_http):
        fake_http(body="<html>")
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert exc.value.code == "RELAY_BAD_RESPONSE"

    @pytest.mark.asyncio
    async def test_missing_result(self, fake_http):
        fake_http(body={"jsonrpc": "2.0", "id": 1})
        with pytest.raises(UpstreamError) as exc:
            await RelayClient("http://bundler").send_user_operation({}, ENTRY_POINT)
        assert exc.value.code == "RELAY_BAD_RESPONSE"


class TestOperationSubmitter:
    @pytest.mark.asyncio
    async def test_submits_exactly_once(self, settings, reader, relay, start_session, sessions):
        await start_session()
        session = sessions.get_active(SWAPPER)
        submitter = OperationSubmitter(settings, reader, relay)

        result = await submitter.submit(_intent(), session)

        assert result.ok is True
        assert result.user_op_hash == relay.result
        assert len(relay.calls) == 1
        wire, entry_point = relay.calls[0]
        assert entry_point == settings.entry_point
        assert wire["sender"] == ACCOUNT
        assert wire["nonce"] == hex(reader.nonce)
        assert wire["maxFeePerGas"] == hex(reader.gas_price * 120 // 100)
        assert reader.nonce_calls == [(settings.entry_point, ACCOUNT)]

    @pytest.mark.asyncio
    async def test_signed_by_session_key(self, settings, reader, relay, start_session, sessions):
        await start_session()
        session = sessions.get_active(SWAPPER)
        result = await OperationSubmitter(settings, reader, relay).submit(_intent(), session)
        op_hash = bytes.fromhex(result.local_hash[2:])
        signer = Account.recover_message(encode_defunct(primitive=op_hash), signature=result.user_op["signature"])
        assert signer == session.session_key

    @pytest.mark.asyncio
    async def test_gas_price_fallback(self, settings, reader, relay, start_session, sessions):
        await start_session()
        reader.fail_gas = UpstreamError("RPC_TIMEOUT", "slow", retryable=True)
        result = await OperationSubmitter(settings, reader, relay).submit(_intent(), sessions.get_active(SWAPPER))
        assert result.user_op["maxFeePerGas"] == hex(2_000_000_000 * 120 // 100)

    @pytest.mark.asyncio
    async def test_nonce_failure_is_not_submitted(self, settings, reader, relay, start_session, sessions):
        await start_session()
        reader.fail_nonce = UpstreamError("RPC_TIMEOUT", "slow", retryable=True)
        result = await OperationSubmitter(settings, reader, relay).submit(_intent(), sessions.get_active(SWAPPER))
        assert result.ok is False
        assert result.error["code"] == "RPC_TIMEOUT"
        assert relay.calls == []

    @pytest.mark.asyncio
    async def test_relay_error_is_structured(self, settings, reader, start_session, sessions):
        await start_session()
        relay = RecordingRelay(error=UpstreamError("RELAY_HTTP_503", "down", retryable=True))
        submitter = OperationSubmitter(settings, reader, relay)
        result = await submitter.submit(_intent(), sessions.get_active(SWAPPER))
        assert result.ok is False
        assert result.error == {"code": "RELAY_HTTP_503", "message": "down", "retryable": True}
        assert result.local_hash is not None
        assert submitter.get_status()["failed"] == 1

    @pytest.mark.asyncio
    async def test_sender_mismatch(self, settings, reader, relay, start_session, sessions):
        await start_session()
        other = "0x9999999999999999999999999999999999999999"
        result = await OperationSubmitter(settings, reader, relay).submit(_intent(to=other), sessions.get_active(SWAPPER))
        assert result.error["code"] == "SENDER_MISMATCH"
        assert relay.calls == []

    @pytest.mark.asyncio
    async def test_no_bundler(self, settings, reader, start_session, sessions):
        await start_session()
        submitter = OperationSubmitter(settings, reader)
        assert submitter.relay is None
        result = await submitter.submit(_intent(), sessions.get_active(SWAPPER))
        assert result.error["code"] == "BUNDLER_NOT_CONFIGURED"

    def test_relay_built_from_bundler_url(self, make_settings, reader):
        submitter = OperationSubmitter(make_settings(bundler_url="http://bundler"), reader)
        assert isinstance(submitter.relay, RelayClient)
        assert submitter.relay.url == "http://bundler"
