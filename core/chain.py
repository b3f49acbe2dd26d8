"""
Chain Reader - account RPC reads + account-call encoding

Everything the pipeline needs to know from chain before a guardrail runs:
token balances, the EntryPoint replay counter, the account's current
session signer, and gas price. Also the two AgentSafeAccount calls this
process ever encodes.

Design:
- Sync Web3 calls wrapped in run_in_executor (web3.py async is fragile)
- Every read carries an explicit asyncio timeout; timeout = UpstreamError(retryable)
- Embedded minimal ABI, only the functions we call
- Calldata encoded locally with eth_abi (no contract object needed)

Designed for: delegated rebalance execution
"""

import asyncio
import logging
from typing import Callable, Optional

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector
from web3 import Web3

from core.constitution import HARD_LIMITS, ZERO_ADDRESS, is_address
from core.errors import UpstreamError, ValidationError

logger = logging.getLogger("agentsafe.chain")


# ============================================================
# MINIMAL ABI: only functions we call at runtime
# ============================================================

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]

# EntryPoint v0.6: getNonce(address sender, uint192 key)
ENTRY_POINT_ABI = [
    {
        "inputs": [
            {"name": "sender", "type": "address"},
            {"name": "key", "type": "uint192"},
        ],
        "name": "getNonce",
        "outputs": [{"name": "nonce", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

AGENT_SAFE_ACCOUNT_ABI = [
    {
        "inputs": [],
        "name": "swarmSigner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# execute(address target, uint256 value, bytes data) and the owner-only
# setSwarmSigner(address signer) are encoded by hand below
EXECUTE_SELECTOR = function_signature_to_4byte_selector("execute(address,uint256,bytes)")
SET_SWARM_SIGNER_SELECTOR = function_signature_to_4byte_selector("setSwarmSigner(address)")


# ============================================================
# ENCODING
# ============================================================

def _hex_to_bytes(data: str) -> bytes:
    body = data[2:] if data.startswith("0x") else data
    return bytes.fromhex(body)


def encode_execute(target: str, value: int, data: str) -> str:
    """AgentSafeAccount.execute(target, value, data) → 0x calldata."""
    if not is_address(target):
        raise ValidationError("INVALID_TARGET", f"Not an address: {target}")
    args = abi_encode(["address", "uint256", "bytes"], [target.lower(), int(value), _hex_to_bytes(data)])
    return "0x" + (EXECUTE_SELECTOR + args).hex()


def encode_set_swarm_signer(signer: str) -> str:
    """AgentSafeAccount.setSwarmSigner(signer) → 0x calldata."""
    if not is_address(signer):
        raise ValidationError("INVALID_SIGNER", f"Not an address: {signer}")
    args = abi_encode(["address"], [signer.lower()])
    return "0x" + (SET_SWARM_SIGNER_SELECTOR + args).hex()


# ============================================================
# READER
# ============================================================

class AccountReader:
    """Read-only view of the smart account and its tokens."""

    def __init__(self, rpc_url: str, timeout: float = HARD_LIMITS.RPC_TIMEOUT_SECONDS,
                 w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._w3 = w3

    @property
    def w3(self) -> Web3:
        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
        return self._w3

    async def _call(self, label: str, fn: Callable):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, fn), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"RPC {label} timed out after {self.timeout}s")
            raise UpstreamError("RPC_TIMEOUT", f"{label} timed out after {self.timeout}s", retryable=True)
        except (ConnectionError, OSError) as e:
            logger.warning(f"RPC {label} connection failed: {e}")
            raise UpstreamError("RPC_UNAVAILABLE", f"{label}: {e}", retryable=True)
        except UpstreamError:
            raise
        except Exception as e:
            logger.warning(f"RPC {label} failed: {e}")
            raise UpstreamError("RPC_ERROR", f"{label}: {e}", retryable=False)

    async def get_token_balance(self, token: str, holder: str) -> int:
        """Native balance for the zero address, ERC-20 balanceOf otherwise."""
        holder_cs = Web3.to_checksum_address(holder)
        if token.lower() == ZERO_ADDRESS:
            return int(await self._call("eth_getBalance", lambda: self.w3.eth.get_balance(holder_cs)))
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        return int(await self._call("balanceOf", contract.functions.balanceOf(holder_cs).call))

    async def get_nonce(self, entry_point: str, account: str) -> int:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(entry_point), abi=ENTRY_POINT_ABI)
        fn = contract.functions.getNonce(Web3.to_checksum_address(account), 0).call
        return int(await self._call("getNonce", fn))

    async def get_swarm_signer(self, account: str) -> Optional[str]:
        """Currently authorized session signer, or None when unset/unreadable."""
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(account), abi=AGENT_SAFE_ACCOUNT_ABI,
        )
        try:
            signer = await self._call("swarmSigner", contract.functions.swarmSigner().call)
        except UpstreamError as e:
            logger.info(f"swarmSigner read failed for {account[:10]}...: {e.message}")
            return None
        if not signer or str(signer).lower() == ZERO_ADDRESS:
            return None
        return str(signer)

    async def get_gas_price(self) -> int:
        return int(await self._call("eth_gasPrice", lambda: self.w3.eth.gas_price))
