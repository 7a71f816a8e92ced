"""
Narrow interfaces to the collaborators the bot does not implement itself.

- SnapshotBuilder: reconstructs exchange state for a set of accounts/perpetuals
- EventStreamFactory: restartable stream of raw per-block event batches
- TransactionSubmitter: signs and sends order batches to the exchange contract
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Optional, Protocol, Sequence, Tuple

from perpl_mm.exchange.requests import OrderDesc
from perpl_mm.exchange.state import Exchange, RawBlockEvents
from perpl_mm.exchange.types import PerpetualId, StateInstant

Receipt = Mapping[str, Any]


class SnapshotBuilder(Protocol):
    async def build(self, accounts: Sequence[str], perpetuals: Sequence[PerpetualId]) -> Exchange:
        ...


class EventStreamFactory(Protocol):
    def stream(self, start: StateInstant) -> AsyncIterator[RawBlockEvents]:
        """Raw blocks strictly after ``start``; raises StreamError on failure."""
        ...


class PendingTx(Protocol):
    tx_hash: str

    async def get_receipt(self) -> Receipt:
        ...


class TransactionSubmitter(Protocol):
    async def submit_order_batch(
        self,
        ops: Sequence[Tuple[int, ...]],
        order_descs: Sequence[OrderDesc],
        atomic: bool,
    ) -> PendingTx:
        ...

    async def close(self) -> None:
        ...


def receipt_block(receipt: Receipt) -> Optional[int]:
    raw = receipt.get("blockNumber")
    if raw is None:
        return None
    return int(raw, 16) if isinstance(raw, str) else int(raw)
