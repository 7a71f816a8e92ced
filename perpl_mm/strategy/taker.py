"""
Taker strategy: random immediate-or-cancel flow against the book.

Every run flips a fair coin for the direction and draws a size multiplier
from (0, 1]. A position opposite to the chosen direction is closed in full
first, then an order of ``multiplier * max_order_size`` is opened. Buys are
priced at MAX_PRICE and sells at zero so they always cross.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from logging import INFO
from typing import List, Optional, Sequence, Tuple

from perpl_mm.errors import ConfigError
from perpl_mm.exchange.requests import OrderRequest
from perpl_mm.exchange.state import Exchange, StateEvent
from perpl_mm.exchange.types import MAX_PRICE, ONE, ZERO, OrderSide, PerpetualId, PositionType, RequestType
from perpl_mm.infra.logging_cfg import log_event
from perpl_mm.strategy.base import AccountBinding, BaseStrategy

log = logging.getLogger("perpl_mm")

LONG_PROBABILITY = 0.5


@dataclass(frozen=True)
class TakerConfig:
    perpetual_id: PerpetualId
    max_order_size: Decimal
    leverage: Decimal = ONE

    def __post_init__(self) -> None:
        if self.max_order_size <= 0:
            raise ConfigError(f"max_order_size must be > 0, got {self.max_order_size}")
        if self.leverage <= 0:
            raise ConfigError(f"leverage must be > 0, got {self.leverage}")


class TakerStrategy(BaseStrategy):
    name = "taker"

    def __init__(self, config: TakerConfig, rng: Optional[random.Random] = None) -> None:
        super().__init__(config)
        self.rng = rng or random.Random()

    def draw(self) -> Tuple[bool, Decimal]:
        """Direction (True = long) and size multiplier in (0, 1]."""
        multiplier = Decimal(repr(1.0 - self.rng.random()))
        go_long = self.rng.random() < LONG_PROBABILITY
        return go_long, multiplier

    def plan_orders(
        self,
        binding: AccountBinding,
        exchange: Exchange,
        events: Sequence[StateEvent],
    ) -> List[OrderRequest]:
        perpetual = self.perpetual(exchange)
        go_long, multiplier = self.draw()
        size = multiplier * self.config.max_order_size
        if size.quantize(perpetual.lot_size, rounding=ROUND_FLOOR) <= 0:
            # sub-lot draws trade one lot
            size = perpetual.lot_size

        account = exchange.accounts().get(binding.account_id)
        position = account.positions.get(self.perpetual_id) if account else None

        requests: List[OrderRequest] = []
        if go_long:
            if position is not None and position.position_type is PositionType.SHORT and not position.is_flat:
                requests.append(self._take(RequestType.CLOSE_LONG, position.size))
            requests.append(self._take(RequestType.OPEN_LONG, size))
        else:
            if position is not None and position.position_type is PositionType.LONG and not position.is_flat:
                requests.append(self._take(RequestType.CLOSE_SHORT, position.size))
            requests.append(self._take(RequestType.OPEN_SHORT, size))

        log_event(
            log, "taker_plan", INFO,
            strategy=self.name, direction="long" if go_long else "short", size=size,
            closing=position.size if len(requests) > 1 else None,
        )
        return requests

    def _take(self, request_type: RequestType, size: Decimal) -> OrderRequest:
        price = MAX_PRICE if request_type.side is OrderSide.BID else ZERO
        return OrderRequest(
            perpetual_id=self.perpetual_id,
            request_type=request_type,
            price=price,
            size=size,
            immediate_or_cancel=True,
            leverage=self.config.leverage,
        )
