"""
BBO strategy: keep one post-only bid at the best bid and one ask at the best ask.

The strategy only reacts to batches containing a fill. On such a batch it
reads the best bid and best ask; with either side empty there is no reference
price and nothing is done. Otherwise an existing bid priced below the best
bid is moved up to it (an ask above the best ask is moved down), and a
missing side is placed. Orders use unit leverage.

On first binding every resting order of the account is cancelled in one
atomic batch and the receipt is awaited before trading starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from logging import DEBUG, INFO
from typing import List, Optional, Sequence

from perpl_mm.errors import ConfigError
from perpl_mm.exchange.requests import OrderRequest
from perpl_mm.exchange.state import Exchange, StateEvent, filled_events
from perpl_mm.exchange.types import ONE, Order, OrderSide, PerpetualId, RequestType
from perpl_mm.execution.execution_gateway import ExecutionGateway
from perpl_mm.infra.logging_cfg import log_event
from perpl_mm.strategy.base import AccountBinding, BaseStrategy

log = logging.getLogger("perpl_mm")


@dataclass(frozen=True)
class BboConfig:
    perpetual_id: PerpetualId
    order_size: Decimal

    def __post_init__(self) -> None:
        if self.order_size <= 0:
            raise ConfigError(f"order_size must be > 0, got {self.order_size}")


class BboStrategy(BaseStrategy):
    name = "bbo"
    atomic = True

    def __init__(self, config: BboConfig) -> None:
        super().__init__(config)

    async def on_first_bind(self, gateway: ExecutionGateway, exchange: Exchange, binding: AccountBinding) -> None:
        orders = self.open_orders(exchange, binding)
        if not orders:
            return
        for order in orders:
            log_event(log, "cancel_order", INFO, strategy=self.name, order_id=order.order_id)
        requests = [
            OrderRequest(perpetual_id=self.perpetual_id, request_type=RequestType.CANCEL, order_id=order.order_id)
            for order in orders
        ]
        await gateway.submit_and_wait(self.prepare_all(exchange, requests), atomic=True, label="cancel_all")

    def plan_orders(
        self,
        binding: AccountBinding,
        exchange: Exchange,
        events: Sequence[StateEvent],
    ) -> List[OrderRequest]:
        if not filled_events(events):
            return []

        book = self.perpetual(exchange).book
        best_bid = book.best_bid()
        best_ask = book.best_ask()
        if best_bid is None or best_ask is None:
            log_event(
                log, "bbo_side_empty", INFO,
                strategy=self.name, has_bid=best_bid is not None, has_ask=best_ask is not None,
            )
            return []
        bid_px, ask_px = best_bid[0], best_ask[0]

        orders = self.open_orders(exchange, binding)
        bid = _first_on_side(orders, OrderSide.BID)
        ask = _first_on_side(orders, OrderSide.ASK)

        requests: List[OrderRequest] = []
        if bid is None:
            requests.append(self._place(RequestType.OPEN_LONG, bid_px))
        elif bid.price < bid_px:
            requests.append(self._move(bid, bid_px))

        if ask is None:
            requests.append(self._place(RequestType.OPEN_SHORT, ask_px))
        elif ask.price > ask_px:
            requests.append(self._move(ask, ask_px))

        log_event(log, "bbo_plan", DEBUG, strategy=self.name, bid=bid_px, ask=ask_px, requests=len(requests))
        return requests

    def _place(self, request_type: RequestType, price: Decimal) -> OrderRequest:
        return OrderRequest(
            perpetual_id=self.perpetual_id,
            request_type=request_type,
            price=price,
            size=self.config.order_size,
            post_only=True,
            leverage=ONE,
        )

    def _move(self, order: Order, price: Decimal) -> OrderRequest:
        return OrderRequest(
            perpetual_id=self.perpetual_id,
            request_type=RequestType.CHANGE,
            order_id=order.order_id,
            price=price,
            size=self.config.order_size,
            post_only=True,
            leverage=ONE,
        )


def _first_on_side(orders: Sequence[Order], side: OrderSide) -> Optional[Order]:
    for order in orders:
        if order.side is side:
            return order
    return None
