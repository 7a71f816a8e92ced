"""
Tests for TakerStrategy direction/size draws and position flipping.
"""

import random
from decimal import Decimal

import pytest

from conftest import PERP_ID, make_exchange
from perpl_mm.exchange.requests import MAX_ONCHAIN_UINT
from perpl_mm.exchange.types import MAX_PRICE, ZERO, RequestType
from perpl_mm.execution.permit import PermitSlot
from perpl_mm.strategy.taker import TakerConfig, TakerStrategy


class StubRng:
    """Returns the queued values from random() in order."""

    def __init__(self, *values: float) -> None:
        self.values = list(values)

    def random(self) -> float:
        return self.values.pop(0)


# multiplier = 1 - first draw, long when second draw < 0.5
LONG_HALF = (0.5, 0.1)
SHORT_QUARTER = (0.75, 0.9)


def _strategy(*draws: float, max_size: str = "2") -> TakerStrategy:
    return TakerStrategy(TakerConfig(perpetual_id=PERP_ID, max_order_size=Decimal(max_size)), rng=StubRng(*draws))


def _short(size: str):
    return [{"perpetualId": PERP_ID, "positionType": "short", "size": size}]


def _long(size: str):
    return [{"perpetualId": PERP_ID, "positionType": "long", "size": size}]


def _plan(strategy, exchange):
    return strategy.plan_orders(strategy.bind_account(exchange), exchange, [])


def test_flat_account_opens_long_at_max_price():
    requests = _plan(_strategy(*LONG_HALF), make_exchange())

    assert len(requests) == 1
    request = requests[0]
    assert request.request_type is RequestType.OPEN_LONG
    assert request.price == MAX_PRICE
    assert request.size == Decimal("1.0")
    assert request.immediate_or_cancel is True
    assert request.post_only is False


def test_short_position_is_closed_before_going_long():
    requests = _plan(_strategy(*LONG_HALF), make_exchange(positions=_short("3")))

    assert [(r.request_type, r.price, r.size) for r in requests] == [
        (RequestType.CLOSE_LONG, MAX_PRICE, Decimal("3")),
        (RequestType.OPEN_LONG, MAX_PRICE, Decimal("1.0")),
    ]


def test_long_position_is_closed_before_going_short():
    requests = _plan(_strategy(*SHORT_QUARTER), make_exchange(positions=_long("2")))

    assert [(r.request_type, r.price, r.size) for r in requests] == [
        (RequestType.CLOSE_SHORT, ZERO, Decimal("2")),
        (RequestType.OPEN_SHORT, ZERO, Decimal("0.50")),
    ]


def test_same_direction_position_is_kept():
    requests = _plan(_strategy(*LONG_HALF), make_exchange(positions=_long("2")))
    assert [r.request_type for r in requests] == [RequestType.OPEN_LONG]


def test_sub_lot_draw_trades_one_lot():
    requests = _plan(_strategy(0.99999999, 0.1, max_size="1"), make_exchange(size_decimals=4))
    assert requests[0].size == Decimal("0.0001")


def test_draw_multiplier_is_in_unit_interval():
    strategy = TakerStrategy(TakerConfig(perpetual_id=PERP_ID, max_order_size=Decimal("1")), rng=random.Random(7))
    for _ in range(200):
        _, multiplier = strategy.draw()
        assert Decimal(0) < multiplier <= Decimal(1)


@pytest.mark.asyncio
async def test_execute_prepares_crossing_prices(gateway, submitter):
    strategy = _strategy(*LONG_HALF)
    exchange = make_exchange(positions=_short("3"))
    await strategy.initialize(gateway, exchange)
    slot = PermitSlot()

    await strategy.execute(gateway, exchange, [], slot.try_acquire())
    await gateway.wait_idle()

    assert slot.available
    descs = submitter.batches[0].descs
    assert [(d.order_type, d.price_ons, d.size_lns) for d in descs] == [
        (RequestType.CLOSE_LONG.value, MAX_ONCHAIN_UINT, 30000),
        (RequestType.OPEN_LONG.value, MAX_ONCHAIN_UINT, 10000),
    ]
    assert all(d.immediate_or_cancel for d in descs)
