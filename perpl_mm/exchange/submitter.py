"""
Transaction Submitter: signs order batches and sends them to the exchange contract.

Architecture:
    JsonRpcClient          thin httpx JSON-RPC 2.0 client for the node
    RpcTransactionSubmitter
        - encodes execOpsAndOrders(ops, orders, revertOnFailure) with eth_abi
        - fills nonce / gas / gasPrice from the node
        - signs locally with an eth_account LocalAccount
        - eth_sendRawTransaction -> RpcPendingTx
    RpcPendingTx           polls eth_getTransactionReceipt until mined

Nonces are tracked locally after the first fetch so two batches sent before
the first one is mined never reuse a nonce. A send failure resets the local
nonce so the next batch re-syncs with the node.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from logging import DEBUG
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from eth_abi import encode
from eth_account.signers.local import LocalAccount
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from perpl_mm.errors import RpcError, SubmissionError
from perpl_mm.exchange.protocols import Receipt
from perpl_mm.exchange.requests import OrderDesc
from perpl_mm.infra.logging_cfg import log_event

log = logging.getLogger("perpl_mm")

OP_ABI = "(uint8,uint256,uint256)"
ORDER_DESC_ABI = (
    "(uint256,uint256,uint8,uint256,uint256,uint256,uint256,bool,bool,bool,uint256,uint256,uint256,uint256)"
)
EXEC_OPS_AND_ORDERS_SIG = f"execOpsAndOrders({OP_ABI}[],{ORDER_DESC_ABI}[],bool)"
EXEC_OPS_AND_ORDERS_SELECTOR = function_signature_to_4byte_selector(EXEC_OPS_AND_ORDERS_SIG)


def encode_exec_ops_and_orders(
    ops: Sequence[Tuple[int, ...]],
    order_descs: Sequence[OrderDesc],
    revert_on_failure: bool,
) -> bytes:
    """Calldata for one batched exchange call."""
    args = encode(
        [f"{OP_ABI}[]", f"{ORDER_DESC_ABI}[]", "bool"],
        [list(ops), [d.as_abi_tuple() for d in order_descs], revert_on_failure],
    )
    return EXEC_OPS_AND_ORDERS_SELECTOR + args


class JsonRpcClient:
    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = await self.client.post(self.url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise SubmissionError(f"{method} transport failure: {exc}") from exc
        err = data.get("error")
        if err:
            raise RpcError(int(err.get("code", -1)), str(err.get("message", "")), err.get("data"))
        return data.get("result")


class RpcPendingTx:
    """Handle on a sent transaction; ``get_receipt`` waits until it is mined."""

    def __init__(self, rpc: JsonRpcClient, tx_hash: str, poll_interval: float = 0.5) -> None:
        self.rpc = rpc
        self.tx_hash = tx_hash
        self.poll_interval = poll_interval

    def __repr__(self) -> str:
        return f"RpcPendingTx({self.tx_hash})"

    async def get_receipt(self) -> Receipt:
        while True:
            receipt = await self.rpc.call("eth_getTransactionReceipt", [self.tx_hash])
            if receipt is not None:
                break
            await asyncio.sleep(self.poll_interval)
        status = receipt.get("status")
        if status is not None and int(status, 16) == 0:
            raise SubmissionError(f"transaction reverted in block {receipt.get('blockNumber')}", self.tx_hash)
        return receipt


class RpcTransactionSubmitter:
    def __init__(
        self,
        rpc: JsonRpcClient,
        signer: LocalAccount,
        exchange_address: str,
        chain_id: int,
        gas_multiplier: float = 1.2,
        receipt_poll_interval: float = 0.5,
    ) -> None:
        self.rpc = rpc
        self.signer = signer
        self.exchange_address = to_checksum_address(exchange_address)
        self.chain_id = chain_id
        self.gas_multiplier = gas_multiplier
        self.receipt_poll_interval = receipt_poll_interval
        self._nonce: Optional[int] = None
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        await self.rpc.close()

    async def submit_order_batch(
        self,
        ops: Sequence[Tuple[int, ...]],
        order_descs: Sequence[OrderDesc],
        atomic: bool,
    ) -> RpcPendingTx:
        data = "0x" + encode_exec_ops_and_orders(ops, order_descs, atomic).hex()
        # serialize nonce assignment and send
        async with self._lock:
            try:
                nonce = await self._next_nonce()
                tx = await self._build_tx(data, nonce)
                signed = self.signer.sign_transaction(tx)
                tx_hash = await self.rpc.call("eth_sendRawTransaction", ["0x" + bytes(signed.raw_transaction).hex()])
            except SubmissionError:
                self._nonce = None
                raise
            self._nonce = nonce + 1
        log_event(log, "tx_sent", DEBUG, tx=tx_hash, nonce=nonce, orders=len(order_descs), atomic=atomic)
        return RpcPendingTx(self.rpc, tx_hash, self.receipt_poll_interval)

    async def _next_nonce(self) -> int:
        if self._nonce is None:
            raw = await self.rpc.call("eth_getTransactionCount", [self.signer.address, "pending"])
            self._nonce = int(raw, 16)
        return self._nonce

    async def _build_tx(self, data: str, nonce: int) -> Dict[str, Any]:
        call = {"from": self.signer.address, "to": self.exchange_address, "data": data}
        gas_raw = await self.rpc.call("eth_estimateGas", [call])
        gas_price_raw = await self.rpc.call("eth_gasPrice", [])
        return {
            "to": self.exchange_address,
            "data": data,
            "value": 0,
            "nonce": nonce,
            "gas": int(int(gas_raw, 16) * self.gas_multiplier),
            "gasPrice": int(gas_price_raw, 16),
            "chainId": self.chain_id,
        }
