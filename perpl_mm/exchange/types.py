"""
Domain value types shared by the exchange snapshot, order requests and strategies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

ZERO = Decimal(0)
ONE = Decimal(1)
# Largest representable price; aggressive buys use it to always cross the book.
MAX_PRICE = Decimal(2**64 - 1)

AccountId = int
PerpetualId = int
OrderId = int


class OrderSide(str, Enum):
    BID = "bid"
    ASK = "ask"


class PositionType(str, Enum):
    LONG = "long"
    SHORT = "short"


class OrderType(str, Enum):
    """Kind of a resting order in the book."""

    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    # Buy-side close: reduces a short position.
    CLOSE_LONG = "close_long"
    # Sell-side close: reduces a long position.
    CLOSE_SHORT = "close_short"

    @property
    def side(self) -> OrderSide:
        if self in (OrderType.OPEN_LONG, OrderType.CLOSE_LONG):
            return OrderSide.BID
        return OrderSide.ASK


class RequestType(Enum):
    """Order request kinds with their on-chain codes."""

    OPEN_LONG = 0
    OPEN_SHORT = 1
    CLOSE_LONG = 2
    CLOSE_SHORT = 3
    CANCEL = 4
    CHANGE = 5

    @property
    def side(self) -> Optional[OrderSide]:
        if self in (RequestType.OPEN_LONG, RequestType.CLOSE_LONG):
            return OrderSide.BID
        if self in (RequestType.OPEN_SHORT, RequestType.CLOSE_SHORT):
            return OrderSide.ASK
        return None

    @property
    def targets_order(self) -> bool:
        return self in (RequestType.CANCEL, RequestType.CHANGE)


@dataclass(frozen=True, order=True)
class StateInstant:
    """Position in the chain: a block number and an event index inside it."""

    block_number: int
    index: int = 0


@dataclass
class Order:
    order_id: OrderId
    account_id: AccountId
    perpetual_id: PerpetualId
    order_type: OrderType
    price: Decimal
    size: Decimal

    @property
    def side(self) -> OrderSide:
        return self.order_type.side


@dataclass
class Position:
    perpetual_id: PerpetualId
    position_type: PositionType
    size: Decimal
    entry_price: Decimal = ZERO

    @property
    def is_flat(self) -> bool:
        return self.size == 0


@dataclass
class Account:
    account_id: AccountId
    address: str
    balance: Decimal = ZERO
    positions: Dict[PerpetualId, Position] = field(default_factory=dict)
