"""
Tests for BboStrategy and the shared strategy binding lifecycle.
"""

from decimal import Decimal

import pytest

from conftest import ACCOUNT_ID, PERP_ID, WALLET, book_order, make_exchange
from perpl_mm.errors import (
    AccountAlreadyBoundError,
    ConfigError,
    NoAccountFoundError,
    PerpetualNotFoundError,
    StrategyNotInitialized,
    SubmissionError,
    TooManyAccountsError,
)
from perpl_mm.exchange.state import OrderEvent, OrderEventType
from perpl_mm.exchange.types import RequestType
from perpl_mm.execution.permit import PermitSlot
from perpl_mm.strategy.bbo import BboConfig, BboStrategy

OTHER = 9


def _fill(order_id: int = 900) -> OrderEvent:
    return OrderEvent(OrderEventType.FILLED, PERP_ID, order_id, OTHER, Decimal("99.5"), Decimal("1"))


def _market(*own_orders):
    return make_exchange(orders=[
        book_order(900, "open_long", "99.5", "1", account_id=OTHER),
        book_order(901, "open_short", "100.5", "1", account_id=OTHER),
        *own_orders,
    ])


@pytest.fixture
def strategy() -> BboStrategy:
    return BboStrategy(BboConfig(perpetual_id=PERP_ID, order_size=Decimal("0.5")))


# ========== Binding ==========

@pytest.mark.asyncio
async def test_initialize_binds_single_account(strategy, gateway, submitter):
    binding = await strategy.initialize(gateway, make_exchange())

    assert binding.account_id == ACCOUNT_ID
    assert binding.perpetual_id == PERP_ID
    assert strategy.is_bound
    assert submitter.batches == []


@pytest.mark.asyncio
async def test_first_initialize_cancels_resting_orders_atomically(strategy, gateway, submitter):
    exchange = make_exchange(orders=[
        book_order(3, "open_long", "99", "1"),
        book_order(4, "open_short", "101", "1"),
        book_order(5, "open_short", "101", "1", account_id=OTHER),
    ])

    await strategy.initialize(gateway, exchange)

    assert len(submitter.batches) == 1
    batch = submitter.batches[0]
    assert batch.atomic is True
    assert [(d.order_type, d.order_id) for d in batch.descs] == [
        (RequestType.CANCEL.value, 3),
        (RequestType.CANCEL.value, 4),
    ]


@pytest.mark.asyncio
async def test_restart_does_not_cancel_again(strategy, gateway, submitter):
    exchange = make_exchange(orders=[book_order(3, "open_long", "99", "1")])
    await strategy.initialize(gateway, exchange)
    await strategy.initialize(gateway, exchange)

    assert len(submitter.batches) == 1


@pytest.mark.asyncio
async def test_failed_cancel_all_leaves_strategy_unbound(strategy, gateway, submitter):
    submitter.confirm_failures.append(SubmissionError("reverted"))
    exchange = make_exchange(orders=[book_order(3, "open_long", "99", "1")])

    with pytest.raises(SubmissionError):
        await strategy.initialize(gateway, exchange)
    assert not strategy.is_bound


@pytest.mark.asyncio
async def test_no_account_is_fatal(strategy, gateway):
    with pytest.raises(NoAccountFoundError):
        await strategy.initialize(gateway, make_exchange(accounts=[]))


@pytest.mark.asyncio
async def test_too_many_accounts_is_fatal(strategy, gateway):
    accounts = [
        {"accountId": 1, "address": WALLET, "positions": []},
        {"accountId": 2, "address": "0x00000000000000000000000000000000000000b2", "positions": []},
    ]
    with pytest.raises(TooManyAccountsError) as info:
        await strategy.initialize(gateway, make_exchange(accounts=accounts))
    assert info.value.count == 2


@pytest.mark.asyncio
async def test_missing_perpetual_is_fatal(strategy, gateway):
    with pytest.raises(PerpetualNotFoundError):
        await strategy.initialize(gateway, make_exchange(include_perpetual=False))


@pytest.mark.asyncio
async def test_restart_with_different_account_is_fatal(strategy, gateway):
    await strategy.initialize(gateway, make_exchange())
    other = make_exchange(accounts=[{"accountId": 8, "address": WALLET, "positions": []}])

    with pytest.raises(AccountAlreadyBoundError) as info:
        await strategy.initialize(gateway, other)
    assert (info.value.bound, info.value.requested) == (ACCOUNT_ID, 8)


def test_bind_account_twice_is_rejected(strategy):
    exchange = make_exchange()
    strategy.bind_account(exchange)
    with pytest.raises(AccountAlreadyBoundError):
        strategy.bind_account(exchange)


@pytest.mark.asyncio
async def test_execute_before_initialize_raises_and_releases(strategy, gateway):
    slot = PermitSlot()
    with pytest.raises(StrategyNotInitialized):
        await strategy.execute(gateway, _market(), [_fill()], slot.try_acquire())
    assert slot.available


# ========== Quoting ==========

@pytest.mark.asyncio
async def test_no_fill_means_no_action(strategy, gateway, submitter):
    exchange = _market()
    await strategy.initialize(gateway, exchange)
    slot = PermitSlot()

    await strategy.execute(gateway, exchange, [], slot.try_acquire())

    assert slot.available
    assert submitter.batches == []


def test_one_side_empty_means_no_action(strategy):
    exchange = make_exchange(orders=[book_order(900, "open_long", "99.5", "1", account_id=OTHER)])
    binding = strategy.bind_account(exchange)
    assert strategy.plan_orders(binding, exchange, [_fill()]) == []


@pytest.mark.asyncio
async def test_places_both_sides_at_bbo(strategy, gateway, submitter):
    exchange = _market()
    await strategy.initialize(gateway, exchange)
    slot = PermitSlot()

    await strategy.execute(gateway, exchange, [_fill()], slot.try_acquire())
    await gateway.wait_idle()

    assert slot.available
    batch = submitter.batches[0]
    assert batch.atomic is True
    assert [(d.order_type, d.price_ons, d.size_lns, d.post_only) for d in batch.descs] == [
        (RequestType.OPEN_LONG.value, 9950, 5000, True),
        (RequestType.OPEN_SHORT.value, 10050, 5000, True),
    ]
    assert all(d.leverage_hdths == 100 for d in batch.descs)


def test_moves_orders_behind_the_bbo(strategy):
    exchange = _market(
        book_order(10, "open_long", "99", "0.5"),
        book_order(11, "open_short", "101", "0.5"),
    )
    binding = strategy.bind_account(exchange)
    requests = strategy.plan_orders(binding, exchange, [_fill()])

    assert [(r.request_type, r.order_id, r.price) for r in requests] == [
        (RequestType.CHANGE, 10, Decimal("99.5")),
        (RequestType.CHANGE, 11, Decimal("100.5")),
    ]


def test_orders_at_bbo_are_left_alone(strategy):
    exchange = _market(
        book_order(10, "open_long", "99.5", "0.5"),
        book_order(11, "open_short", "100.5", "0.5"),
    )
    binding = strategy.bind_account(exchange)
    assert strategy.plan_orders(binding, exchange, [_fill()]) == []


def test_only_first_order_per_side_is_managed(strategy):
    exchange = _market(
        book_order(10, "open_long", "99.5", "0.5"),
        book_order(12, "open_long", "98", "0.5"),
    )
    binding = strategy.bind_account(exchange)
    requests = strategy.plan_orders(binding, exchange, [_fill()])

    assert [(r.request_type, r.price) for r in requests] == [(RequestType.OPEN_SHORT, Decimal("100.5"))]


def test_invalid_order_size():
    with pytest.raises(ConfigError):
        BboConfig(perpetual_id=PERP_ID, order_size=Decimal("0"))
