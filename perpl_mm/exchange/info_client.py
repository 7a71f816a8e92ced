"""
Async HTTP client for the Perpl state gateway.

The gateway reconstructs exchange state from chain events and serves it on a
single ``/info`` endpoint keyed by request ``type``:
    {"type": "snapshot", "accounts": [...], "perpetuals": [...]}
    {"type": "blockEvents", "fromBlock": N, "limit": M}

``GatewayEventStream`` turns the block-events endpoint into the restartable
async stream the orchestrator consumes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from decimal import InvalidOperation
from logging import WARNING
from typing import Any, AsyncIterator, List, Optional, Sequence

import httpx

from perpl_mm.errors import EventDecodeError, StreamError
from perpl_mm.exchange.state import Exchange, RawBlockEvents
from perpl_mm.exchange.types import PerpetualId, StateInstant
from perpl_mm.infra.logging_cfg import log_event

log = logging.getLogger("perpl_mm")


class AsyncInfo:
    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def snapshot(self, accounts: Sequence[str], perpetuals: Sequence[PerpetualId]) -> Any:
        payload: dict[str, Any] = {
            "type": "snapshot",
            "accounts": list(accounts),
            "perpetuals": list(perpetuals),
        }
        return await self._post_info(payload)

    async def block_events(self, from_block: int, limit: int = 100) -> Any:
        payload: dict[str, Any] = {"type": "blockEvents", "fromBlock": from_block, "limit": limit}
        return await self._post_info(payload)

    async def _post_info(self, payload: dict[str, Any]) -> Any:
        resp = await self.client.post("/info", json=payload)
        resp.raise_for_status()
        data = resp.json()
        # unwrap {status:'ok', response:{data:...}} envelopes
        if isinstance(data, dict):
            if "response" in data and isinstance(data["response"], dict):
                data = data["response"]
            if "data" in data:
                data = data["data"]
        return data


class GatewaySnapshotBuilder:
    """SnapshotBuilder backed by the gateway ``snapshot`` request."""

    def __init__(self, info: AsyncInfo) -> None:
        self.info = info

    async def build(self, accounts: Sequence[str], perpetuals: Sequence[PerpetualId]) -> Exchange:
        """
        Raises:
            StreamError: the gateway is unreachable.
            EventDecodeError: the snapshot payload is malformed.
        """
        try:
            data = await self.info.snapshot(accounts, perpetuals)
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise StreamError(f"snapshot unavailable: {exc}") from exc
        if not isinstance(data, dict):
            raise EventDecodeError(f"unexpected snapshot payload: {type(data).__name__}")
        try:
            return Exchange.from_dict(data)
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise EventDecodeError(f"malformed snapshot: {exc}") from exc


class GatewayEventStream:
    """
    EventStreamFactory polling the gateway for new blocks.

    Each call to ``stream`` starts an independent generator; the orchestrator
    discards it on failure and asks for a fresh one after rebuilding.
    """

    def __init__(
        self,
        info: AsyncInfo,
        poll_interval: float = 0.5,
        batch_limit: int = 100,
        max_retries: int = 5,
        base_backoff: float = 0.2,
        min_block: int = 0,
        sleep=asyncio.sleep,
    ) -> None:
        self.info = info
        # exchange deployment block; nothing earlier is ever relevant
        self.min_block = min_block
        self.poll_interval = poll_interval
        self.batch_limit = batch_limit
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self._sleep = sleep

    async def stream(self, start: StateInstant) -> AsyncIterator[RawBlockEvents]:
        next_block = max(start.block_number + 1, self.min_block)
        while True:
            blocks = await self._fetch(next_block)
            for block in blocks:
                if block.instant.block_number < next_block:
                    continue
                next_block = block.instant.block_number + 1
                yield block
            if len(blocks) < self.batch_limit:
                await self._sleep(self.poll_interval)

    async def _fetch(self, from_block: int) -> List[RawBlockEvents]:
        attempt = 0
        while True:
            attempt += 1
            try:
                data = await self.info.block_events(from_block, self.batch_limit)
                break
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                if attempt > self.max_retries:
                    raise StreamError(f"block events unavailable after {attempt} attempts: {exc}") from exc
                delay = self.base_backoff * (2 ** (attempt - 1))
                delay *= 0.8 + 0.4 * random.random()
                log_event(log, "stream_retry", WARNING, attempt=attempt, from_block=from_block, err=str(exc))
                await self._sleep(min(delay, 5.0))

        if isinstance(data, dict):
            data = data.get("blocks")
        if not isinstance(data, list):
            raise EventDecodeError(f"unexpected blockEvents payload: {type(data).__name__}")
        return [RawBlockEvents.from_dict(raw) for raw in data]
