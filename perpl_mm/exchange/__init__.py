"""
Exchange domain: snapshot, order requests and the collaborator adapters.
"""

from perpl_mm.exchange.requests import OrderDesc, OrderRequest
from perpl_mm.exchange.state import (
    BlockEvents,
    Exchange,
    L3Book,
    OrderEvent,
    OrderEventType,
    Perpetual,
    RawBlockEvents,
)
from perpl_mm.exchange.types import (
    MAX_PRICE,
    ZERO,
    Account,
    Order,
    OrderSide,
    OrderType,
    Position,
    PositionType,
    RequestType,
    StateInstant,
)

__all__ = [
    "MAX_PRICE",
    "ZERO",
    "Account",
    "BlockEvents",
    "Exchange",
    "L3Book",
    "Order",
    "OrderDesc",
    "OrderEvent",
    "OrderEventType",
    "OrderRequest",
    "OrderSide",
    "OrderType",
    "Perpetual",
    "Position",
    "PositionType",
    "RawBlockEvents",
    "RequestType",
    "StateInstant",
]
