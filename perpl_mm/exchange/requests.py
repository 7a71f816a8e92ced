"""
Order intents and their submission-ready descriptions.

A strategy builds an ``OrderRequest`` (what it wants) and prepares it against
the current snapshot into an ``OrderDesc`` (what the exchange contract
receives): prices and sizes snapped to the perpetual's precision and scaled
to on-chain integers, target order ids checked against the live book.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Optional, Tuple

from perpl_mm.errors import OrderPrepareError
from perpl_mm.exchange.state import Exchange
from perpl_mm.exchange.types import ONE, ZERO, OrderId, OrderSide, PerpetualId, RequestType

# Price and size fields are unsigned 64-bit on chain.
MAX_ONCHAIN_UINT = 2**64 - 1
LEVERAGE_SCALE = 100
COLLATERAL_DECIMALS = 6


@dataclass(frozen=True)
class OrderDesc:
    """Validated order ready to be encoded into an exchange transaction."""

    request_id: int
    perpetual_id: int
    order_type: int
    order_id: int
    price_ons: int
    size_lns: int
    expiry_block: int
    post_only: bool
    reduce_only: bool
    immediate_or_cancel: bool
    max_matches: int
    leverage_hdths: int
    last_execution_block: int
    amount_cns: int

    def as_abi_tuple(self) -> Tuple:
        return (
            self.request_id,
            self.perpetual_id,
            self.order_type,
            self.order_id,
            self.price_ons,
            self.size_lns,
            self.expiry_block,
            self.post_only,
            self.reduce_only,
            self.immediate_or_cancel,
            self.max_matches,
            self.leverage_hdths,
            self.last_execution_block,
            self.amount_cns,
        )


@dataclass(frozen=True)
class OrderRequest:
    perpetual_id: PerpetualId
    request_type: RequestType
    price: Decimal = ZERO
    size: Decimal = ZERO
    order_id: Optional[OrderId] = None
    post_only: bool = False
    reduce_only: bool = False
    immediate_or_cancel: bool = False
    max_matches: Optional[int] = None
    leverage: Decimal = ONE
    request_id: int = 0
    expiry_block: Optional[int] = None
    last_execution_block: Optional[int] = None
    amount: Optional[Decimal] = None

    def prepare(self, exchange: Exchange) -> OrderDesc:
        """
        Validate against ``exchange`` and normalize into an ``OrderDesc``.

        Raises:
            OrderPrepareError: unknown perpetual, missing or dead target order,
                non-positive size or leverage, negative price.
        """
        perpetual = exchange.perpetuals().get(self.perpetual_id)
        if perpetual is None:
            raise OrderPrepareError(f"perpetual {self.perpetual_id} not in snapshot")

        side = self.request_type.side
        if self.request_type.targets_order:
            if self.order_id is None:
                raise OrderPrepareError(f"{self.request_type.name} requires a target order id")
            target = perpetual.book.get(self.order_id)
            if target is None:
                raise OrderPrepareError(f"order {self.order_id} is not live on perpetual {self.perpetual_id}")
            side = target.side

        if self.request_type is RequestType.CANCEL:
            price_ons = 0
            size_lns = 0
        else:
            if self.price < 0:
                raise OrderPrepareError(f"negative price {self.price}")
            price_rounding = ROUND_FLOOR if side is OrderSide.BID else ROUND_CEILING
            price_ons = _scale(self.price, perpetual.price_decimals, price_rounding)
            size_lns = _scale(self.size, perpetual.size_decimals, ROUND_FLOOR)
            if size_lns <= 0:
                raise OrderPrepareError(f"size {self.size} rounds to zero lots")
            if self.leverage <= 0:
                raise OrderPrepareError(f"leverage must be > 0, got {self.leverage}")

        return OrderDesc(
            request_id=self.request_id,
            perpetual_id=self.perpetual_id,
            order_type=self.request_type.value,
            order_id=self.order_id or 0,
            price_ons=price_ons,
            size_lns=size_lns,
            expiry_block=self.expiry_block or 0,
            post_only=self.post_only,
            reduce_only=self.reduce_only,
            immediate_or_cancel=self.immediate_or_cancel,
            max_matches=self.max_matches or 0,
            leverage_hdths=int((self.leverage * LEVERAGE_SCALE).to_integral_value(rounding=ROUND_FLOOR)),
            last_execution_block=self.last_execution_block or 0,
            amount_cns=_scale(self.amount, COLLATERAL_DECIMALS, ROUND_FLOOR) if self.amount else 0,
        )


def _scale(value: Decimal, decimals: int, rounding: str) -> int:
    scaled = int(value.scaleb(decimals).to_integral_value(rounding=rounding))
    return min(scaled, MAX_ONCHAIN_UINT)
