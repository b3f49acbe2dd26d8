"""
Operation Submitter - ERC-4337 v0.6 user operation build, sign, submit

Input is a guardrail-approved ActionIntent plus the session that owns the
signing key. Output is either the relay's operation hash or a structured
error. Exactly one relay call per intent; retries belong to the caller.

Design:
- Replay counter from EntryPoint.getNonce(account, 0)
- Fixed conservative gas limits (the relay simulates anyway)
- maxFeePerGas = gas price +20% (2 gwei if the read fails), priority 0.1 gwei
- Operation hash computed locally: keccak(abi.encode(keccak(pack(op)), entryPoint, chainId))
- Signed with the session key only (EIP-191 over the raw 32-byte hash)
- Numeric fields serialized as 0x-hex for eth_sendUserOperation
- Relay failures classified: timeout / connection / 5xx → retryable;
  429 / 404 / other 4xx / JSON-RPC rejection → not retryable

Designed for: delegated rebalance execution
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from core.chain import AccountReader
from core.config import Settings
from core.constitution import HARD_LIMITS
from core.errors import UpstreamError
from core.guardrails import ActionIntent
from core.session import DelegatedSession

logger = logging.getLogger("agentsafe.submitter")


# ============================================================
# USER OPERATION
# ============================================================

def _to_bytes(hex_str: str) -> bytes:
    body = hex_str[2:] if hex_str.startswith("0x") else hex_str
    return bytes.fromhex(body)


@dataclass
class UserOperation:
    sender: str
    nonce: int
    call_data: str
    call_gas_limit: int = HARD_LIMITS.CALL_GAS_LIMIT
    verification_gas_limit: int = HARD_LIMITS.VERIFICATION_GAS_LIMIT
    pre_verification_gas: int = HARD_LIMITS.PRE_VERIFICATION_GAS
    max_fee_per_gas: int = HARD_LIMITS.FALLBACK_GAS_PRICE_WEI
    max_priority_fee_per_gas: int = HARD_LIMITS.MAX_PRIORITY_FEE_WEI
    init_code: str = "0x"
    paymaster_and_data: str = "0x"
    signature: str = "0x"

    def pack(self) -> bytes:
        """v0.6 pack(): dynamic fields replaced by their keccak, signature excluded."""
        return abi_encode(
            ["address", "uint256", "bytes32", "bytes32", "uint256", "uint256",
             "uint256", "uint256", "uint256", "bytes32"],
            [
                self.sender.lower(),
                self.nonce,
                keccak(_to_bytes(self.init_code)),
                keccak(_to_bytes(self.call_data)),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                keccak(_to_bytes(self.paymaster_and_data)),
            ],
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        inner = keccak(self.pack())
        return keccak(abi_encode(["bytes32", "address", "uint256"], [inner, entry_point.lower(), chain_id]))

    def to_rpc(self) -> dict:
        return {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "initCode": self.init_code,
            "callData": self.call_data,
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "paymasterAndData": self.paymaster_and_data,
            "signature": self.signature,
        }


def sign_user_op_hash(op_hash: bytes, private_key: str) -> str:
    signed = Account.sign_message(encode_defunct(primitive=op_hash), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


# ============================================================
# RELAY
# ============================================================

class RelayClient:
    """JSON-RPC client for the bundler. One POST per call, explicit timeout."""

    def __init__(self, url: str, timeout: float = HARD_LIMITS.RELAY_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    async def send_user_operation(self, op: dict, entry_point: str) -> str:
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_sendUserOperation",
            "params": [op, entry_point],
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    status = resp.status
                    text = await resp.text()
        except asyncio.TimeoutError:
            raise UpstreamError("RELAY_TIMEOUT", f"relay did not answer within {self.timeout}s", retryable=True)
        except aiohttp.ClientError as e:
            raise UpstreamError("RELAY_UNAVAILABLE", f"relay connection failed: {e}", retryable=True)

        if status == 429:
            raise UpstreamError("RELAY_RATE_LIMITED", text[:200], retryable=False)
        if status == 404:
            raise UpstreamError("RELAY_NOT_FOUND", text[:200], retryable=False)
        if status >= 500:
            raise UpstreamError(f"RELAY_HTTP_{status}", text[:200], retryable=True)
        if status >= 400:
            raise UpstreamError(f"RELAY_HTTP_{status}", text[:200], retryable=False)

        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            raise UpstreamError("RELAY_BAD_RESPONSE", f"non-JSON body: {text[:120]}", retryable=False)

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
            code = "RELAY_QUOTA_EXCEEDED" if "quota" in message.lower() else "RELAY_REJECTED"
            raise UpstreamError(code, message[:200], retryable=False)

        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, str) or not result.startswith("0x"):
            raise UpstreamError("RELAY_BAD_RESPONSE", "missing operation hash in result", retryable=False)
        return result


# ============================================================
# SUBMITTER
# ============================================================

@dataclass
class SubmissionResult:
    ok: bool
    user_op_hash: Optional[str] = None
    local_hash: Optional[str] = None
    error: Optional[dict] = None                # {code, message, retryable}
    user_op: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "userOpHash": self.user_op_hash,
            "localHash": self.local_hash,
            "error": self.error,
        }


class OperationSubmitter:

    def __init__(self, settings: Settings, reader: AccountReader, relay: Optional[RelayClient] = None):
        self.settings = settings
        self.reader = reader
        self.relay = relay or (RelayClient(settings.bundler_url) if settings.bundler_url else None)
        self._submitted = 0
        self._failed = 0

    async def build(self, intent: ActionIntent) -> UserOperation:
        nonce = await self.reader.get_nonce(self.settings.entry_point, intent.to)
        try:
            gas_price = await self.reader.get_gas_price()
        except UpstreamError as e:
            logger.warning(f"Gas price read failed, using fallback: {e.message}")
            gas_price = HARD_LIMITS.FALLBACK_GAS_PRICE_WEI
        return UserOperation(
            sender=intent.to,
            nonce=nonce,
            call_data=intent.data,
            max_fee_per_gas=gas_price * HARD_LIMITS.FEE_BUFFER_PERCENT // 100,
        )

    async def submit(self, intent: ActionIntent, session: DelegatedSession) -> SubmissionResult:
        if self.relay is None:
            return SubmissionResult(ok=False, error={
                "code": "BUNDLER_NOT_CONFIGURED",
                "message": "Set BUNDLER_RPC_URL to submit operations",
                "retryable": False,
            })
        if intent.to.lower() != session.smart_account.lower():
            return SubmissionResult(ok=False, error={
                "code": "SENDER_MISMATCH",
                "message": "intent sender is not the session's account",
                "retryable": False,
            })

        try:
            op = await self.build(intent)
        except UpstreamError as e:
            self._failed += 1
            logger.warning(f"UserOp build failed for {intent.intent_id}: {e.code} {e.message}")
            return SubmissionResult(ok=False, error=e.to_dict())

        op_hash = op.hash(self.settings.entry_point, intent.chain_id)
        op.signature = sign_user_op_hash(op_hash, session.private_key)
        wire = op.to_rpc()
        local_hash = "0x" + op_hash.hex()

        try:
            submitted = await self.relay.send_user_operation(wire, self.settings.entry_point)
        except UpstreamError as e:
            self._failed += 1
            logger.warning(
                f"Relay rejected {intent.intent_id}: {e.code} {e.message} (retryable={e.retryable})"
            )
            return SubmissionResult(ok=False, local_hash=local_hash, error=e.to_dict(), user_op=wire)

        self._submitted += 1
        logger.info(f"UserOp submitted: {submitted} intent={intent.intent_id} sender={intent.to[:10]}...")
        return SubmissionResult(ok=True, user_op_hash=submitted, local_hash=local_hash, user_op=wire)

    def get_status(self) -> dict:
        return {
            "relay_configured": self.relay is not None,
            "entry_point": self.settings.entry_point,
            "submitted": self._submitted,
            "failed": self._failed,
        }
