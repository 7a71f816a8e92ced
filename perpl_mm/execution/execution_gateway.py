"""
ExecutionGateway: the strategies' handle for sending order batches.

Architecture:
    One gateway exists per pipeline generation. It wraps the
    TransactionSubmitter and owns the background tasks that wait for
    receipts:

        strategy.execute -> gateway.submit(descs, atomic, permit)
                                 |  send (awaited, fast)
                                 v
                         confirmation task (background)
                                 |  get_receipt
                                 v
                 success: log | failure: log + error queue
                         finally: permit.release()

    Failures are pushed to the orchestrator's error queue as
    ``SubmissionFailure`` records; the orchestrator answers them by
    re-running the strategy when the permit is free. The permit is always
    released in ``finally`` so a cancelled or crashing confirmation task
    cannot wedge the slot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from logging import DEBUG, ERROR, INFO, WARNING
from typing import Optional, Sequence, Set, Tuple, TYPE_CHECKING

from perpl_mm.errors import BotError, SubmissionError
from perpl_mm.exchange.protocols import PendingTx, Receipt, TransactionSubmitter, receipt_block
from perpl_mm.exchange.requests import OrderDesc
from perpl_mm.execution.permit import Permit
from perpl_mm.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from perpl_mm.monitoring.metrics_rich import BotMetrics

log = logging.getLogger("perpl_mm")

# confirmation tasks of abandoned generations, held until done
_orphaned: Set[asyncio.Task] = set()


def orphaned_confirmations() -> Set[asyncio.Task]:
    return set(_orphaned)


@dataclass
class SubmissionFailure:
    """A batch that failed to send ("send") or to confirm ("confirm")."""

    strategy: str
    label: str
    stage: str
    error: BaseException
    tx_hash: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.strategy}/{self.label} {self.stage} failed: {self.error}"


class ExecutionGateway:
    def __init__(
        self,
        submitter: TransactionSubmitter,
        error_queue: "asyncio.Queue[SubmissionFailure]",
        metrics: Optional["BotMetrics"] = None,
        strategy_name: str = "",
    ) -> None:
        self.submitter = submitter
        self.error_queue = error_queue
        self.metrics = metrics
        self.strategy_name = strategy_name
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    # ========== Submission ==========

    async def submit(
        self,
        order_descs: Sequence[OrderDesc],
        atomic: bool,
        permit: Permit,
        label: str = "orders",
        ops: Sequence[Tuple[int, ...]] = (),
    ) -> Optional[PendingTx]:
        """
        Send one batch and hand ``permit`` to its confirmation task.

        An empty batch releases the permit at once and sends nothing.
        A send failure is reported and releases the permit.
        """
        if not order_descs and not ops:
            permit.release()
            return None

        try:
            pending = await self.submitter.submit_order_batch(list(ops), list(order_descs), atomic)
        except SubmissionError as exc:
            self._fail("send", label, exc, exc.tx_hash)
            permit.release()
            return None
        except BaseException:
            permit.release()
            raise

        if self.metrics:
            self.metrics.order_batches_submitted.labels(strategy=self.strategy_name).inc()
            self.metrics.orders_submitted.labels(strategy=self.strategy_name).inc(len(order_descs))
        log_event(
            log, "batch_sent", INFO,
            strategy=self.strategy_name, label=label, orders=len(order_descs), atomic=atomic, tx=pending.tx_hash,
        )

        task = asyncio.create_task(self._confirm(pending, permit, label, time.monotonic()))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return pending

    async def submit_and_wait(
        self,
        order_descs: Sequence[OrderDesc],
        atomic: bool,
        label: str = "orders",
    ) -> Optional[Receipt]:
        """Send one batch and wait for its receipt; failures raise SubmissionError."""
        if not order_descs:
            return None
        pending = await self.submitter.submit_order_batch([], list(order_descs), atomic)
        receipt = await pending.get_receipt()
        log_event(
            log, "batch_confirmed", INFO,
            strategy=self.strategy_name, label=label, tx=pending.tx_hash, block=receipt_block(receipt),
        )
        return receipt

    # ========== Confirmation tasks ==========

    async def _confirm(self, pending: PendingTx, permit: Permit, label: str, started: float) -> None:
        try:
            receipt = await pending.get_receipt()
            if self.metrics:
                self.metrics.batch_confirm_seconds.labels(strategy=self.strategy_name).observe(
                    time.monotonic() - started
                )
            log_event(
                log, "batch_confirmed", DEBUG,
                strategy=self.strategy_name, label=label, tx=pending.tx_hash, block=receipt_block(receipt),
            )
        except BotError as exc:
            self._fail("confirm", label, exc, pending.tx_hash)
        finally:
            permit.release()

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        _orphaned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(
                log, "confirm_task_crashed", ERROR,
                strategy=self.strategy_name, err=repr(exc),
            )

    async def wait_idle(self) -> None:
        """Wait for every in-flight confirmation task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def abandon(self) -> int:
        """
        Detach in-flight confirmation tasks on pipeline restart.

        The tasks keep running until their receipts arrive and still release
        their permits, but their failures go to an error queue nobody reads.
        They are parked in a module-level set until done.
        """
        count = len(self._tasks)
        if count:
            log_event(log, "confirmations_abandoned", WARNING, strategy=self.strategy_name, count=count)
        _orphaned.update(self._tasks)
        self._tasks.clear()
        return count

    # ========== Internals ==========

    def _fail(self, stage: str, label: str, error: BaseException, tx_hash: Optional[str]) -> None:
        if self.metrics:
            self.metrics.submission_failures.labels(strategy=self.strategy_name, stage=stage).inc()
        log_event(
            log, "batch_failed", ERROR,
            strategy=self.strategy_name, label=label, stage=stage, tx=tx_hash, err=str(error),
        )
        failure = SubmissionFailure(self.strategy_name, label, stage, error, tx_hash)
        try:
            self.error_queue.put_nowait(failure)
        except asyncio.QueueFull:
            log_event(log, "error_report_dropped", WARNING, strategy=self.strategy_name, label=label)
