"""
Tests for the state gateway client, snapshot builder and polling event stream.
"""

import json

import httpx
import pytest

from conftest import PERP_ID, WALLET, mark_event
from perpl_mm.errors import EventDecodeError, StreamError
from perpl_mm.exchange.info_client import AsyncInfo, GatewayEventStream, GatewaySnapshotBuilder
from perpl_mm.exchange.types import StateInstant

SNAPSHOT = {
    "instant": {"block": 500, "index": 0},
    "accounts": [{"accountId": 7, "address": WALLET, "positions": []}],
    "perpetuals": [{"perpetualId": PERP_ID, "markPrice": "100", "priceDecimals": 2, "sizeDecimals": 4, "orders": []}],
}


def _info(handler) -> AsyncInfo:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway")
    return AsyncInfo("http://gateway", client=client)


class Recorder:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)


async def _no_sleep(_):
    return None


# ========== Snapshot ==========

@pytest.mark.asyncio
async def test_snapshot_request_and_envelope_unwrap():
    recorder = Recorder({"status": "ok", "response": {"data": SNAPSHOT}})
    exchange = await GatewaySnapshotBuilder(_info(recorder)).build([WALLET], [PERP_ID])

    assert recorder.requests == [{"type": "snapshot", "accounts": [WALLET], "perpetuals": [PERP_ID]}]
    assert exchange.instant() == StateInstant(500)
    assert 7 in exchange.accounts()


@pytest.mark.asyncio
async def test_snapshot_transport_failure_is_stream_error():
    recorder = Recorder(httpx.Response(502, text="bad gateway"))
    with pytest.raises(StreamError):
        await GatewaySnapshotBuilder(_info(recorder)).build([WALLET], [PERP_ID])


@pytest.mark.asyncio
async def test_malformed_snapshot_is_decode_error():
    recorder = Recorder({"accounts": [{"address": WALLET}]})
    with pytest.raises(EventDecodeError):
        await GatewaySnapshotBuilder(_info(recorder)).build([WALLET], [PERP_ID])

    with pytest.raises(EventDecodeError):
        await GatewaySnapshotBuilder(_info(Recorder([1, 2]))).build([WALLET], [PERP_ID])


# ========== Event stream ==========

@pytest.mark.asyncio
async def test_stream_resumes_after_start_and_skips_stale_blocks():
    recorder = Recorder(
        {"blocks": [
            {"block": 500, "events": [mark_event("1")]},
            {"block": 501, "events": [mark_event("2")]},
            {"block": 503, "events": []},
        ]},
        [{"block": 504, "events": []}],
    )
    stream = GatewayEventStream(_info(recorder), batch_limit=3, sleep=_no_sleep)
    gen = stream.stream(StateInstant(500))

    blocks = [await gen.__anext__() for _ in range(3)]
    await gen.aclose()

    assert [b.instant.block_number for b in blocks] == [501, 503, 504]
    assert recorder.requests[0] == {"type": "blockEvents", "fromBlock": 501, "limit": 3}
    assert recorder.requests[1]["fromBlock"] == 504


@pytest.mark.asyncio
async def test_stream_starts_no_earlier_than_deployment_block():
    recorder = Recorder({"blocks": [{"block": 900, "events": []}]})
    stream = GatewayEventStream(_info(recorder), min_block=900, sleep=_no_sleep)
    gen = stream.stream(StateInstant(10))

    block = await gen.__anext__()
    await gen.aclose()

    assert recorder.requests[0]["fromBlock"] == 900
    assert block.instant == StateInstant(900)


@pytest.mark.asyncio
async def test_stream_retries_transient_failures():
    recorder = Recorder(
        httpx.ConnectError("refused"),
        httpx.Response(503),
        [{"block": 11, "events": []}],
    )
    delays = []

    async def sleep(delay):
        delays.append(delay)

    stream = GatewayEventStream(_info(recorder), max_retries=3, base_backoff=0.1, sleep=sleep)
    gen = stream.stream(StateInstant(10))
    block = await gen.__anext__()
    await gen.aclose()

    assert block.instant.block_number == 11
    assert len(delays) == 2
    assert 0.08 <= delays[0] <= 0.12
    assert 0.16 <= delays[1] <= 0.24


@pytest.mark.asyncio
async def test_stream_fails_after_max_retries():
    recorder = Recorder(*[httpx.ConnectError("refused")] * 3)
    stream = GatewayEventStream(_info(recorder), max_retries=2, sleep=_no_sleep)

    with pytest.raises(StreamError):
        await stream.stream(StateInstant(10)).__anext__()
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_stream_rejects_unexpected_payload():
    stream = GatewayEventStream(_info(Recorder({"blocks": "nope"})), sleep=_no_sleep)
    with pytest.raises(EventDecodeError):
        await stream.stream(StateInstant(10)).__anext__()
