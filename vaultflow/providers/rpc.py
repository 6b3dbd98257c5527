"""
JSON-RPC chain reader.

All reads the vault pipeline performs against the node: ERC-20 and ERC-4626
views, native balances, gas estimation and receipt polling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from eth_utils import to_checksum_address

from .base import Provider
from ..config import settings
from ..core.constants import (
    ERC20_ALLOWANCE,
    ERC20_BALANCE_OF,
    ERC20_DECIMALS,
    ERC20_NAME,
    ERC20_PERMIT_NONCES,
    ERC20_SYMBOL,
    ERC4626_ASSET,
    ERC4626_TOTAL_ASSETS,
    ERC4626_TOTAL_SUPPLY,
)
from ..core.execution.abi import (
    decode_address,
    decode_string,
    decode_uint,
    encode_address,
    encode_call,
)
from ..core.execution.errors import GasEstimationError, RpcError
from ..core.execution.models import VaultRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    success: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @classmethod
    def from_rpc(cls, tx_hash: str, payload: Dict[str, Any]) -> "TransactionReceipt":
        return cls(
            tx_hash=tx_hash,
            success=payload.get("status") == "0x1",
            block_number=int(payload["blockNumber"], 16) if payload.get("blockNumber") else None,
            gas_used=int(payload["gasUsed"], 16) if payload.get("gasUsed") else None,
        )


class ChainReader(Provider):
    name = "chain_reader"

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.rpc_url = rpc_url or settings.rpc_url
        self.timeout_s = timeout_s if timeout_s is not None else settings.rpc_timeout_seconds
        self.poll_interval_s = (
            poll_interval_s if poll_interval_s is not None else settings.receipt_poll_interval_seconds
        )
        self._client = client
        self._sleep = sleep
        self._request_id = 0

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "RPC URL not configured"}

        try:
            chain_id = await self.get_chain_id()
            return {"status": "healthy", "chainId": chain_id}
        except RpcError as exc:
            return {"status": "error", "reason": str(exc)}

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)

        self._request_id += 1
        try:
            response = await self._client.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise RpcError(f"RPC request failed ({method}): {exc}") from exc

        if "error" in payload:
            error = payload["error"] or {}
            if isinstance(error, dict):
                raise RpcError(
                    f"RPC error: {error.get('message', 'unknown error')}",
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise RpcError(f"RPC error: {error}")
        return payload.get("result")

    # ------------------------------------------------------------------
    # Node state
    # ------------------------------------------------------------------

    async def get_chain_id(self) -> int:
        return int(await self._rpc_call("eth_chainId", []), 16)

    async def get_block_number(self) -> int:
        return int(await self._rpc_call("eth_blockNumber", []), 16)

    async def get_block(self, tag: str = "latest") -> Dict[str, Any]:
        block = await self._rpc_call("eth_getBlockByNumber", [tag, False])
        if not block:
            raise RpcError(f"RPC error: block {tag} not found")
        return block

    async def get_native_balance(self, address: str, block: str = "latest") -> int:
        return int(await self._rpc_call("eth_getBalance", [address, block]), 16)

    async def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        result = await self._rpc_call("eth_call", [{"to": to, "data": data}, block])
        return result or "0x"

    # ------------------------------------------------------------------
    # ERC-20 / ERC-4626 views
    # ------------------------------------------------------------------

    async def get_erc20_balance(self, token: str, owner: str, block: str = "latest") -> int:
        result = await self.eth_call(token, encode_call(ERC20_BALANCE_OF, encode_address(owner)), block)
        return decode_uint(result)

    async def get_allowance(self, token: str, owner: str, spender: str, block: str = "latest") -> int:
        data = encode_call(ERC20_ALLOWANCE, encode_address(owner), encode_address(spender))
        return decode_uint(await self.eth_call(token, data, block))

    async def get_decimals(self, token: str) -> int:
        return decode_uint(await self.eth_call(token, encode_call(ERC20_DECIMALS)))

    async def get_symbol(self, token: str) -> str:
        return decode_string(await self.eth_call(token, encode_call(ERC20_SYMBOL)))

    async def get_name(self, token: str) -> str:
        return decode_string(await self.eth_call(token, encode_call(ERC20_NAME)))

    async def get_permit_nonce(self, token: str, owner: str, block: str = "latest") -> int:
        data = encode_call(ERC20_PERMIT_NONCES, encode_address(owner))
        return decode_uint(await self.eth_call(token, data, block))

    async def get_vault_asset(self, vault: str) -> str:
        return to_checksum_address(decode_address(await self.eth_call(vault, encode_call(ERC4626_ASSET))))

    async def get_total_assets(self, vault: str, block: str = "latest") -> int:
        return decode_uint(await self.eth_call(vault, encode_call(ERC4626_TOTAL_ASSETS), block))

    async def get_total_supply(self, vault: str, block: str = "latest") -> int:
        return decode_uint(await self.eth_call(vault, encode_call(ERC4626_TOTAL_SUPPLY), block))

    async def fetch_vault_ref(self, vault_address: str) -> VaultRef:
        """Introspect a vault's underlying asset directly from the chain."""
        asset = await self.get_vault_asset(vault_address)
        decimals, symbol, chain_id = await asyncio.gather(
            self.get_decimals(asset),
            self.get_symbol(asset),
            self.get_chain_id(),
        )
        return VaultRef(
            address=to_checksum_address(vault_address),
            chain_id=chain_id,
            asset_address=asset,
            asset_decimals=decimals,
            asset_symbol=symbol,
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def estimate_gas(self, tx: Dict[str, Any], sender: str) -> int:
        call_obj: Dict[str, Any] = {"from": sender, "to": tx["to"], "data": tx["data"]}
        value = tx.get("value") or 0
        if isinstance(value, str):
            value = int(value, 16)
        if value > 0:
            call_obj["value"] = hex(value)
        try:
            return int(await self._rpc_call("eth_estimateGas", [call_obj]), 16)
        except RpcError as exc:
            logger.warning(f"Gas estimation failed: {exc}")
            raise GasEstimationError(f"Gas estimation failed: {exc.message}") from exc

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        result = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        return TransactionReceipt.from_rpc(tx_hash, result)

    async def wait_for_transaction_receipt(self, tx_hash: str) -> TransactionReceipt:
        """Poll until the transaction is mined. No timeout beyond the client's."""
        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                logger.debug(f"Receipt for {tx_hash}: success={receipt.success} block={receipt.block_number}")
                return receipt
            await self._sleep(self.poll_interval_s)


_chain_reader: Optional[ChainReader] = None


def get_chain_reader() -> ChainReader:
    global _chain_reader
    if _chain_reader is None:
        _chain_reader = ChainReader()
    return _chain_reader
