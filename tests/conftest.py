"""
Pytest configuration and shared fakes.

- make_exchange(): in-memory snapshot built through Exchange.from_dict
- StaticSnapshotBuilder: SnapshotBuilder returning fresh snapshots
- ScriptedStream: EventStreamFactory replaying one script per generation
- RecordingSubmitter: TransactionSubmitter recording batches and asserting
  that no two batches are ever in flight together
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from perpl_mm.errors import SubmissionError
from perpl_mm.exchange.requests import OrderDesc
from perpl_mm.exchange.state import Exchange, RawBlockEvents
from perpl_mm.exchange.types import StateInstant
from perpl_mm.execution.execution_gateway import ExecutionGateway

ACCOUNT_ID = 7
WALLET = "0x00000000000000000000000000000000000000a1"
PERP_ID = 1


def make_exchange(
    mark: str = "100",
    orders: Sequence[Dict[str, Any]] = (),
    positions: Sequence[Dict[str, Any]] = (),
    accounts: Optional[List[Dict[str, Any]]] = None,
    perpetual_id: int = PERP_ID,
    price_decimals: int = 2,
    size_decimals: int = 4,
    block: int = 100,
    include_perpetual: bool = True,
) -> Exchange:
    if accounts is None:
        accounts = [
            {"accountId": ACCOUNT_ID, "address": WALLET, "balance": "1000", "positions": list(positions)}
        ]
    perpetuals = []
    if include_perpetual:
        perpetuals.append({
            "perpetualId": perpetual_id,
            "name": "BTC-PERP",
            "markPrice": mark,
            "priceDecimals": price_decimals,
            "sizeDecimals": size_decimals,
            "orders": list(orders),
        })
    return Exchange.from_dict({
        "instant": {"block": block, "index": 0},
        "accounts": accounts,
        "perpetuals": perpetuals,
    })


def book_order(order_id: int, order_type: str, price: str, size: str, account_id: int = ACCOUNT_ID) -> Dict[str, Any]:
    return {"orderId": order_id, "accountId": account_id, "orderType": order_type, "price": price, "size": size}


def raw_block(block: int, *events: Dict[str, Any]) -> RawBlockEvents:
    return RawBlockEvents(instant=StateInstant(block), events=list(events))


def fill_event(order_id: int, price: str = "99", size: str = "1", perpetual_id: int = PERP_ID) -> Dict[str, Any]:
    return {"type": "OrderFilled", "perpetualId": perpetual_id, "orderId": order_id, "price": price, "size": size}


def mark_event(mark: str, perpetual_id: int = PERP_ID) -> Dict[str, Any]:
    return {"type": "MarkPriceUpdated", "perpetualId": perpetual_id, "markPrice": mark}


class StaticSnapshotBuilder:
    """Builds a fresh snapshot per call; items in ``failures`` are raised first."""

    def __init__(self, factory: Callable[[], Exchange], failures: Sequence[BaseException] = ()) -> None:
        self.factory = factory
        self.failures = list(failures)
        self.calls: List[Dict[str, Any]] = []

    async def build(self, accounts, perpetuals) -> Exchange:
        self.calls.append({"accounts": list(accounts), "perpetuals": list(perpetuals)})
        if self.failures:
            raise self.failures.pop(0)
        return self.factory()


CLOSE = object()


class ScriptedStream:
    """
    One script per stream() call. A script item is a RawBlockEvents to yield,
    an exception to raise, or CLOSE to end the stream. A script that runs out
    hangs until cancelled.
    """

    def __init__(self, *scripts: Sequence[Any]) -> None:
        self.scripts = [list(s) for s in scripts]
        self.starts: List[StateInstant] = []

    async def _gen(self, script):
        for item in script:
            await asyncio.sleep(0)
            if item is CLOSE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item
        await asyncio.Event().wait()

    def stream(self, start: StateInstant):
        self.starts.append(start)
        script = self.scripts.pop(0) if self.scripts else []
        return self._gen(script)


class FakePendingTx:
    def __init__(self, owner: "RecordingSubmitter", tx_hash: str, fail: Optional[BaseException]) -> None:
        self.owner = owner
        self.tx_hash = tx_hash
        self.fail = fail
        self.release = asyncio.Event()
        if owner.auto_confirm:
            self.release.set()

    async def get_receipt(self):
        try:
            await self.release.wait()
            await asyncio.sleep(self.owner.confirm_delay)
            if self.fail is not None:
                raise self.fail
            return {"status": "0x1", "blockNumber": "0x10", "transactionHash": self.tx_hash}
        finally:
            self.owner.in_flight -= 1


@dataclass
class Batch:
    ops: List[Any]
    descs: List[OrderDesc]
    atomic: bool


@dataclass
class RecordingSubmitter:
    auto_confirm: bool = True
    confirm_delay: float = 0.0
    send_failures: List[BaseException] = field(default_factory=list)
    confirm_failures: List[Optional[BaseException]] = field(default_factory=list)
    batches: List[Batch] = field(default_factory=list)
    pending: List[FakePendingTx] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0
    closed: bool = False

    async def submit_order_batch(self, ops, order_descs, atomic) -> FakePendingTx:
        if self.send_failures:
            raise self.send_failures.pop(0)
        self.batches.append(Batch(list(ops), list(order_descs), atomic))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        fail = self.confirm_failures.pop(0) if self.confirm_failures else None
        tx = FakePendingTx(self, f"0x{len(self.batches):064x}", fail)
        self.pending.append(tx)
        return tx

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def submitter() -> RecordingSubmitter:
    return RecordingSubmitter()


@pytest.fixture
def error_queue() -> asyncio.Queue:
    return asyncio.Queue(maxsize=10)


@pytest.fixture
def gateway(submitter, error_queue) -> ExecutionGateway:
    return ExecutionGateway(submitter, error_queue, strategy_name="test")


def dec(value: str) -> Decimal:
    return Decimal(value)


@pytest.fixture
def send_failure() -> SubmissionError:
    return SubmissionError("nonce too low")
