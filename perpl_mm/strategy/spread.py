"""
Spread strategy: a ladder of post-only orders on both sides of the mark price.

Targets for rung i (1..orders_per_side) sit i * 0.2% away from the mark:
    bid_i = mark * (1 - i/500)    ask_i = mark * (1 + i/500)
snapped to the price tick (bids down, asks up) and deduplicated.

Each side is reconciled against the account's resting open orders:
    1. a target with a resting order at exactly that price keeps it,
       resizing it when the size differs
    2. remaining targets reuse leftover resting orders (price and size change)
    3. targets still uncovered get new orders

When the mark price did not rise since the previous run the bid side is
submitted first, otherwise the ask side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from logging import DEBUG, INFO
from typing import Dict, List, Optional, Sequence, Tuple

from perpl_mm.errors import ConfigError
from perpl_mm.exchange.requests import OrderRequest
from perpl_mm.exchange.state import Exchange, StateEvent
from perpl_mm.exchange.types import ONE, ZERO, Order, OrderType, PerpetualId, RequestType
from perpl_mm.infra.logging_cfg import log_event
from perpl_mm.strategy.base import AccountBinding, BaseStrategy

log = logging.getLogger("perpl_mm")

RUNG_DIVISOR = Decimal(500)


@dataclass(frozen=True)
class SpreadConfig:
    perpetual_id: PerpetualId
    orders_per_side: int
    order_size: Decimal
    max_matches: Optional[int] = None
    leverage: Decimal = ONE

    def __post_init__(self) -> None:
        if self.orders_per_side < 1:
            raise ConfigError(f"orders_per_side must be >= 1, got {self.orders_per_side}")
        if self.order_size <= 0:
            raise ConfigError(f"order_size must be > 0, got {self.order_size}")
        if self.leverage <= 0:
            raise ConfigError(f"leverage must be > 0, got {self.leverage}")
        if self.max_matches is not None and self.max_matches < 1:
            raise ConfigError(f"max_matches must be >= 1, got {self.max_matches}")


def ladder_prices(mark: Decimal, orders_per_side: int, tick: Decimal) -> Tuple[List[Decimal], List[Decimal]]:
    """Tick-aligned, deduplicated bid and ask targets, nearest rung first."""
    bids: List[Decimal] = []
    asks: List[Decimal] = []
    for i in range(1, orders_per_side + 1):
        offset = Decimal(i) / RUNG_DIVISOR
        bid = (mark * (ONE - offset)).quantize(tick, rounding=ROUND_FLOOR)
        ask = (mark * (ONE + offset)).quantize(tick, rounding=ROUND_CEILING)
        if bid > 0:
            bids.append(bid)
        asks.append(ask)
    return list(dict.fromkeys(bids)), list(dict.fromkeys(asks))


class SpreadStrategy(BaseStrategy):
    name = "spread"

    def __init__(self, config: SpreadConfig) -> None:
        super().__init__(config)
        self.last_mark_price = ZERO

    def plan_orders(
        self,
        binding: AccountBinding,
        exchange: Exchange,
        events: Sequence[StateEvent],
    ) -> List[OrderRequest]:
        perpetual = self.perpetual(exchange)
        mark = perpetual.mark_price
        if mark <= 0:
            self.warn("mark_price_unavailable", mark_price=mark)
            return []

        bids_first = mark <= self.last_mark_price
        self.last_mark_price = mark
        log_event(log, "mark_price", INFO, strategy=self.name, mark_price=mark)

        bid_targets, ask_targets = ladder_prices(mark, self.config.orders_per_side, perpetual.tick_size)

        resting = self.open_orders(exchange, binding)
        bids = [o for o in resting if o.order_type is OrderType.OPEN_LONG]
        asks = [o for o in resting if o.order_type is OrderType.OPEN_SHORT]

        bid_requests = self._reconcile(bids, bid_targets, RequestType.OPEN_LONG)
        ask_requests = self._reconcile(asks, ask_targets, RequestType.OPEN_SHORT)

        log_event(
            log, "spread_plan", DEBUG,
            strategy=self.name, bids=bid_targets, asks=ask_targets,
            bid_requests=len(bid_requests), ask_requests=len(ask_requests), bids_first=bids_first,
        )
        if bids_first:
            return bid_requests + ask_requests
        return ask_requests + bid_requests

    def _reconcile(
        self,
        resting: Sequence[Order],
        targets: Sequence[Decimal],
        request_type: RequestType,
    ) -> List[OrderRequest]:
        size = self.config.order_size
        by_price: Dict[Decimal, Order] = {}
        duplicates: List[Order] = []
        for order in resting:
            if order.price in by_price:
                duplicates.append(order)
            else:
                by_price[order.price] = order

        requests: List[OrderRequest] = []
        uncovered: List[Decimal] = []
        for price in targets:
            order = by_price.pop(price, None)
            if order is None:
                uncovered.append(price)
            elif order.size != size:
                requests.append(self._change(order, price))

        leftovers = sorted(list(by_price.values()) + duplicates, key=lambda o: o.order_id)
        reused = min(len(leftovers), len(uncovered))
        for order, price in zip(leftovers, uncovered):
            requests.append(self._change(order, price))

        for price in uncovered[reused:]:
            requests.append(self._place(request_type, price))
        return requests

    def _place(self, request_type: RequestType, price: Decimal) -> OrderRequest:
        return OrderRequest(
            perpetual_id=self.perpetual_id,
            request_type=request_type,
            price=price,
            size=self.config.order_size,
            post_only=True,
            max_matches=self.config.max_matches,
            leverage=self.config.leverage,
        )

    def _change(self, order: Order, price: Decimal) -> OrderRequest:
        return OrderRequest(
            perpetual_id=self.perpetual_id,
            request_type=RequestType.CHANGE,
            order_id=order.order_id,
            price=price,
            size=self.config.order_size,
            post_only=True,
            max_matches=self.config.max_matches,
            leverage=self.config.leverage,
        )
