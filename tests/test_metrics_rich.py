"""Unit tests for metrics, health endpoints and structured logging."""

import asyncio
import json
import logging
from decimal import Decimal

import pytest

from perpl_mm.infra.logging_cfg import (
    BackgroundFileHandler,
    JsonFormatter,
    ThrottledFilter,
    build_logger,
    log_event,
)
from perpl_mm.monitoring.health import HealthChecker, start_metrics_server
from perpl_mm.monitoring.metrics_rich import BotMetrics


def test_bot_metrics_use_private_registries():
    first, second = BotMetrics(), BotMetrics()
    first.executions.labels(strategy="bbo", wake="timer").inc()

    assert first.get_registry().get_sample_value(
        "executions_total", {"strategy": "bbo", "wake": "timer"}
    ) == 1
    assert second.get_registry().get_sample_value(
        "executions_total", {"strategy": "bbo", "wake": "timer"}
    ) is None


def test_health_checker_readiness():
    health = HealthChecker()
    assert health.is_healthy()
    assert not health.is_ready()

    health.set_component_health("pipeline", True)
    health.set_ready(True)
    assert health.is_ready()

    health.set_component_health("pipeline", False, "restarting")
    status = health.to_dict()
    assert status["healthy"] is False
    assert status["ready"] is False
    assert status["details"] == {"pipeline": "restarting"}


async def _get(port: int, path: str):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    raw = await reader.read()
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    return head.split(b"\r\n")[0].decode(), body


@pytest.mark.asyncio
async def test_metrics_server_endpoints():
    metrics = BotMetrics()
    metrics.orders_submitted.labels(strategy="spread").inc(3)
    health = HealthChecker()
    health.set_component_health("pipeline", True)
    server = await start_metrics_server(metrics, 0, health, host="127.0.0.1")
    port = server.sockets[0].getsockname()[1]
    try:
        status, body = await _get(port, "/metrics")
        assert status.endswith("200 OK")
        assert b'orders_submitted_total{strategy="spread"} 3.0' in body

        status, body = await _get(port, "/health")
        assert status.endswith("200 OK")
        assert json.loads(body)["components"] == {"pipeline": True}

        status, _ = await _get(port, "/ready")
        assert "503" in status

        health.set_ready(True)
        status, body = await _get(port, "/ready?verbose=1")
        assert status.endswith("200 OK")
        assert json.loads(body) == {"ready": True}

        status, _ = await _get(port, "/nope")
        assert "404" in status
    finally:
        server.close()
        await server.wait_closed()


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("perpl_mm", logging.WARNING, __file__, 1, message, None, None)


def test_throttled_filter_suppresses_repeats_per_key():
    throttle = ThrottledFilter(cooldown_sec=60)
    skipped_timer = json.dumps({"event": "execution_skipped", "strategy": "bbo", "wake": "timer"})
    skipped_event = json.dumps({"event": "execution_skipped", "strategy": "bbo", "wake": "event"})
    other = json.dumps({"event": "batch_failed", "strategy": "bbo"})

    assert throttle.filter(_record(skipped_timer))
    assert not throttle.filter(_record(skipped_timer))
    assert throttle.filter(_record(skipped_event))
    assert throttle.filter(_record(other))
    assert throttle.filter(_record(other))
    assert throttle.filter(_record("plain text"))


def test_json_formatter_flattens_events():
    captured = []

    class Capture(logging.Handler):
        def emit(self, record):
            captured.append(JsonFormatter().format(record))

    logger = logging.getLogger("perpl_mm.test_json")
    logger.propagate = False
    logger.setLevel(logging.DEBUG)
    handler = Capture()
    logger.addHandler(handler)
    try:
        log_event(logger, "mark_price", logging.INFO, strategy="spread", mark_price=Decimal("100.5"))
        logger.warning("plain %s", "text")
    finally:
        logger.removeHandler(handler)

    event, plain = (json.loads(line) for line in captured)
    assert event["level"] == "INFO"
    assert event["logger"] == "perpl_mm.test_json"
    assert (event["event"], event["strategy"], event["mark_price"]) == ("mark_price", "spread", "100.5")
    assert "msg" not in event
    assert plain["msg"] == "plain text"


def test_build_logger_writes_json_file(tmp_path):
    path = tmp_path / "bot.log"
    logger = build_logger("perpl_mm.test_file", file_path=str(path), console="json", async_file=False)
    log_event(logger, "startup", strategy="bbo")
    for h in logger.handlers:
        h.flush()

    assert logger.propagate is False
    assert build_logger("perpl_mm.test_file") is logger
    entry = json.loads(path.read_text().strip().splitlines()[-1])
    assert entry["event"] == "startup"


def test_background_file_handler_flushes_on_close(tmp_path):
    path = tmp_path / "async.log"
    target = logging.FileHandler(path, encoding="utf-8")
    target.setFormatter(JsonFormatter())
    handler = BackgroundFileHandler(target)
    logger = logging.getLogger("perpl_mm.test_async")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    try:
        for n in range(5):
            log_event(logger, "block", number=n)
    finally:
        logger.removeHandler(handler)
        handler.close()

    numbers = [json.loads(line)["number"] for line in path.read_text().splitlines()]
    assert numbers == [0, 1, 2, 3, 4]
    assert handler.dropped == 0
