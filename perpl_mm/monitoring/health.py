"""
Liveness/readiness state and a tiny HTTP server exposing it next to the
Prometheus registry.

    GET /metrics   text exposition of BotMetrics
    GET /health    200 while every component is up, else 503
    GET /ready     200 once the pipeline has an initialized strategy, else 503
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from logging import INFO
from typing import Any, Callable, Dict, Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from perpl_mm.infra.logging_cfg import log_event
from perpl_mm.monitoring.metrics_rich import BotMetrics

log = logging.getLogger("perpl_mm")

JSON = "application/json"


@dataclass
class Component:
    up: bool
    detail: Optional[str] = None


class HealthChecker:
    """
    Tracks named components ("config", "pipeline") and a readiness flag.

    The orchestrator reports the pipeline down while rebuilding and heartbeats
    on every strategy execution, so ``last_heartbeat_ms`` shows a stuck loop.
    """

    def __init__(self) -> None:
        self.components: Dict[str, Component] = {}
        self.ready = False
        self.last_heartbeat_ms = 0
        self.heartbeat()

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self.components[name] = Component(healthy, detail or None)
        self.heartbeat()

    def set_ready(self, ready: bool) -> None:
        self.ready = ready
        self.heartbeat()

    def heartbeat(self) -> None:
        self.last_heartbeat_ms = int(time.time() * 1000)

    def is_healthy(self) -> bool:
        return all(c.up for c in self.components.values())

    def is_ready(self) -> bool:
        return self.ready and self.is_healthy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy(),
            "ready": self.is_ready(),
            "last_heartbeat_ms": self.last_heartbeat_ms,
            "components": {name: c.up for name, c in self.components.items()},
            "details": {name: c.detail for name, c in self.components.items() if c.detail},
        }


Reply = Tuple[int, str, bytes]

REASONS = {200: "OK", 404: "Not Found", 503: "Service Unavailable"}


def _encode(code: int, content_type: str, body: bytes) -> bytes:
    head = (
        f"HTTP/1.1 {code} {REASONS[code]}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode() + body


def _request_path(raw: bytes) -> str:
    request_line = raw.split(b"\r\n", 1)[0].decode("latin-1")
    try:
        target = request_line.split(" ")[1]
    except IndexError:
        return "/"
    return target.partition("?")[0]


def _json_reply(ok: bool, payload: Dict[str, Any]) -> Reply:
    return (200 if ok else 503), JSON, json.dumps(payload).encode()


async def start_metrics_server(
    metrics: BotMetrics,
    port: int,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """Serve /metrics, /health and /ready on ``host:port`` (port 0 picks one)."""
    health = health_checker or HealthChecker()

    def metrics_page() -> Reply:
        return 200, CONTENT_TYPE_LATEST, generate_latest(metrics.get_registry())

    routes: Dict[str, Callable[[], Reply]] = {
        "/metrics": metrics_page,
        "/health": lambda: _json_reply(health.is_healthy(), health.to_dict()),
        "/ready": lambda: _json_reply(health.is_ready(), {"ready": health.is_ready()}),
    }

    async def serve(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        route = routes.get(_request_path(await reader.read(2048)))
        code, content_type, body = route() if route else (404, "text/plain", b"not found\n")
        writer.write(_encode(code, content_type, body))
        try:
            await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(serve, host, port)
    log_event(log, "metrics_server_started", INFO, host=host, port=port)
    return server
