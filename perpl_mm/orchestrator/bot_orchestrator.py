"""
BotOrchestrator: the run loop driving one strategy against the exchange.

Architecture:
    outer loop (one iteration = one pipeline generation)
        1. build a snapshot filtered to the bot account and the perpetual
        2. strategy.initialize (setup errors are fatal and propagate)
        3. inner loop over three wake sources, whichever completes first:
             - next raw block from the event stream
             - next failure report on the error queue
             - timer tick (first tick immediately, then every timeout_sec)
        4. stream closed / stream error -> abandon the generation, back off,
           go to 1

    Every wake tries to check out the single execution permit. A busy
    permit drops the wake (timer and error wakes are lost, stream blocks
    stay buffered). With the permit in hand, buffered blocks are applied to
    the snapshot and the strategy runs once over the merged events; the
    strategy hands the permit to the gateway, which frees it when the
    submitted batch confirms or fails.

    The snapshot, stream, error queue, permit slot and gateway all belong to
    one generation and are discarded together on restart. The strategy and
    its account binding survive restarts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from logging import ERROR, INFO, WARNING
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, TYPE_CHECKING

from perpl_mm.errors import EventDecodeError, StreamError, SubmissionError
from perpl_mm.exchange.protocols import EventStreamFactory, SnapshotBuilder, TransactionSubmitter
from perpl_mm.exchange.state import Exchange, RawBlockEvents, StateEvent
from perpl_mm.execution.execution_gateway import ExecutionGateway, SubmissionFailure
from perpl_mm.execution.permit import Permit, PermitSlot
from perpl_mm.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from perpl_mm.monitoring.health import HealthChecker
    from perpl_mm.monitoring.metrics_rich import BotMetrics
    from perpl_mm.strategy.base import Strategy

log = logging.getLogger("perpl_mm")


class RestartReason(str, Enum):
    """Why a pipeline generation ended."""
    STREAM_CLOSED = "stream_closed"
    STREAM_ERROR = "stream_error"
    SNAPSHOT_FAILED = "snapshot_failed"
    INIT_FAILED = "init_failed"
    STOPPED = "stopped"


class Wake(str, Enum):
    EVENT = "event"
    ERROR = "error"
    TIMER = "timer"


@dataclass
class OrchestratorConfig:
    """Configuration for BotOrchestrator."""
    # Safety-net execution period; the first tick fires immediately
    timeout_sec: float = 30.0

    # Capacity of the submission failure channel
    error_queue_size: int = 100

    # Pause before rebuilding snapshot and stream
    restart_backoff_sec: float = 1.0

    # None = rebuild forever
    max_pipeline_restarts: Optional[int] = None


class BotOrchestrator:
    def __init__(
        self,
        snapshot_builder: SnapshotBuilder,
        stream_factory: EventStreamFactory,
        submitter: TransactionSubmitter,
        strategy: "Strategy",
        accounts: Sequence[str],
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional["BotMetrics"] = None,
        health: Optional["HealthChecker"] = None,
    ) -> None:
        self.snapshot_builder = snapshot_builder
        self.stream_factory = stream_factory
        self.submitter = submitter
        self.strategy = strategy
        self.accounts = list(accounts)
        self.config = config or OrchestratorConfig()
        self.metrics = metrics
        self.health = health

        self._running = True
        self._stop_event = asyncio.Event()
        self._generation = 0
        self._restarts = 0
        self._executions = 0
        self._skipped = 0
        self._pending_events = 0
        self._last_reason: Optional[RestartReason] = None

    def _log_event(self, event: str, level: int = INFO, **kwargs: Any) -> None:
        log_event(log, event, level, strategy=self.strategy.name, **kwargs)

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask run() to return at the next wake."""
        self._running = False
        self._stop_event.set()
        self._log_event("orchestrator_stop")

    # ========== Outer loop ==========

    async def run(self) -> RestartReason:
        """
        Run pipeline generations until stopped or out of restarts.

        Returns the reason the last generation ended. StrategySetupError
        from initialize propagates to the caller.
        """
        while True:
            reason = await self.run_pipeline_once()
            self._last_reason = reason
            if reason is RestartReason.STOPPED or not self._running:
                return RestartReason.STOPPED

            limit = self.config.max_pipeline_restarts
            if limit is not None and self._restarts >= limit:
                self._log_event("restart_limit_reached", ERROR, restarts=self._restarts, reason=reason.value)
                return reason

            self._restarts += 1
            if self.metrics:
                self.metrics.pipeline_restarts.labels(reason=reason.value).inc()
            self._log_event("pipeline_restart", WARNING, reason=reason.value, restarts=self._restarts)
            if self.config.restart_backoff_sec > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.restart_backoff_sec)
                except asyncio.TimeoutError:
                    pass
            if not self._running:
                return RestartReason.STOPPED

    async def run_pipeline_once(self) -> RestartReason:
        """Run one snapshot/stream generation and return why it ended."""
        self._generation += 1
        self._set_health(False, "building snapshot")
        self._log_event("pipeline_start", generation=self._generation)

        try:
            exchange = await self.snapshot_builder.build(self.accounts, [self.strategy.perpetual_id])
        except StreamError as exc:
            self._log_event("snapshot_failed", ERROR, err=str(exc))
            return RestartReason.SNAPSHOT_FAILED
        self._log_event("snapshot_built", instant=str(exchange.instant()))

        error_queue: "asyncio.Queue[SubmissionFailure]" = asyncio.Queue(maxsize=self.config.error_queue_size)
        gateway = ExecutionGateway(self.submitter, error_queue, self.metrics, self.strategy.name)
        slot = PermitSlot(1)

        try:
            await self.strategy.initialize(gateway, exchange)
        except SubmissionError as exc:
            self._log_event("strategy_init_failed", ERROR, err=str(exc))
            return RestartReason.INIT_FAILED

        self._set_health(True)
        self._log_event("event_loop_start", generation=self._generation)
        stream = self.stream_factory.stream(exchange.instant())
        try:
            return await self._inner_loop(exchange, stream, error_queue, gateway, slot)
        finally:
            gateway.abandon()
            self._set_health(False, "restarting")

    # ========== Inner loop ==========

    async def _inner_loop(
        self,
        exchange: Exchange,
        stream: AsyncIterator[RawBlockEvents],
        error_queue: "asyncio.Queue[SubmissionFailure]",
        gateway: ExecutionGateway,
        slot: PermitSlot,
    ) -> RestartReason:
        pending: List[RawBlockEvents] = []
        next_event = asyncio.ensure_future(stream.__anext__())
        next_error = asyncio.ensure_future(error_queue.get())
        next_tick = asyncio.ensure_future(asyncio.sleep(0))
        stop_wait = asyncio.ensure_future(self._stop_event.wait())

        try:
            while self._running:
                done, _ = await asyncio.wait(
                    {next_event, next_error, next_tick, stop_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if stop_wait in done:
                    return RestartReason.STOPPED

                if next_event in done:
                    try:
                        raw = next_event.result()
                    except StopAsyncIteration:
                        self._log_event("stream_closed", ERROR)
                        return RestartReason.STREAM_CLOSED
                    except StreamError as exc:
                        self._log_event("stream_failed", ERROR, err=str(exc))
                        return RestartReason.STREAM_ERROR
                    next_event = asyncio.ensure_future(stream.__anext__())
                    pending.append(raw)
                    if self.metrics:
                        self.metrics.stream_events.inc()
                    reason = await self._on_wake(Wake.EVENT, exchange, pending, gateway, slot)
                    if reason is not None:
                        return reason

                if next_error in done:
                    failure = next_error.result()
                    next_error = asyncio.ensure_future(error_queue.get())
                    self._log_event("submission_failure_received", WARNING, failure=str(failure))
                    reason = await self._on_wake(Wake.ERROR, exchange, pending, gateway, slot)
                    if reason is not None:
                        return reason

                if next_tick in done:
                    next_tick = asyncio.ensure_future(asyncio.sleep(self.config.timeout_sec))
                    reason = await self._on_wake(Wake.TIMER, exchange, pending, gateway, slot)
                    if reason is not None:
                        return reason

                self._update_gauges(exchange, slot, pending)
            return RestartReason.STOPPED
        finally:
            waiters = [next_event, next_error, next_tick, stop_wait]
            for task in waiters:
                task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _on_wake(
        self,
        wake: Wake,
        exchange: Exchange,
        pending: List[RawBlockEvents],
        gateway: ExecutionGateway,
        slot: PermitSlot,
    ) -> Optional[RestartReason]:
        permit = slot.try_acquire()
        if permit is None:
            self._skipped += 1
            if self.metrics:
                self.metrics.executions_skipped.labels(strategy=self.strategy.name, wake=wake.value).inc()
            self._log_event("execution_skipped", WARNING, wake=wake.value, pending=len(pending))
            return None

        try:
            events = self._drain(exchange, pending)
        except EventDecodeError as exc:
            permit.release()
            self._log_event("event_decode_failed", ERROR, err=str(exc))
            return RestartReason.STREAM_ERROR

        # a stream wake with nothing relevant has nothing to react to
        if wake is Wake.EVENT and not events:
            permit.release()
            return None

        await self._execute(wake, gateway, exchange, events, permit)
        return None

    def _drain(self, exchange: Exchange, pending: List[RawBlockEvents]) -> List[StateEvent]:
        events: List[StateEvent] = []
        try:
            for raw in pending:
                applied = exchange.apply_events(raw)
                if applied is not None:
                    events.extend(applied.events)
        finally:
            pending.clear()
        return events

    async def _execute(
        self,
        wake: Wake,
        gateway: ExecutionGateway,
        exchange: Exchange,
        events: List[StateEvent],
        permit: Permit,
    ) -> None:
        self._executions += 1
        if self.metrics:
            self.metrics.executions.labels(strategy=self.strategy.name, wake=wake.value).inc()
        if self.health:
            self.health.heartbeat()
        await self.strategy.execute(gateway, exchange, events, permit)

    # ========== Observability ==========

    def _set_health(self, ready: bool, detail: Optional[str] = None) -> None:
        if self.health is None:
            return
        self.health.set_component_health("pipeline", ready, detail)
        self.health.set_ready(ready)

    def _update_gauges(self, exchange: Exchange, slot: PermitSlot, pending: List[RawBlockEvents]) -> None:
        self._pending_events = len(pending)
        if self.metrics is None:
            return
        self.metrics.pending_event_batches.labels(strategy=self.strategy.name).set(len(pending))
        self.metrics.permit_in_flight.labels(strategy=self.strategy.name).set(slot.in_flight)
        perpetual = exchange.perpetuals().get(self.strategy.perpetual_id)
        if perpetual is not None:
            self.metrics.mark_price.labels(perpetual=str(perpetual.perpetual_id)).set(float(perpetual.mark_price))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.name,
            "running": self._running,
            "generation": self._generation,
            "restarts": self._restarts,
            "executions": self._executions,
            "skipped": self._skipped,
            "pending_events": self._pending_events,
            "last_restart_reason": self._last_reason.value if self._last_reason else None,
        }

    def __repr__(self) -> str:
        return f"BotOrchestrator({json.dumps(self.get_stats())})"
