"""
Exchange snapshot: a point-in-time view of accounts, perpetuals, books and positions.

The snapshot is built once per pipeline generation from the state gateway and
then kept current by applying raw per-block event batches from the event
stream. Only the accounts and perpetuals the snapshot was filtered to are
tracked; everything else in a raw batch is ignored.

Raw event format (one JSON object per event, ``type`` selects the decoder):
    OrderPlaced      perpetualId accountId orderId orderType price size
    OrderChanged     perpetualId orderId price size
    OrderCancelled   perpetualId orderId
    OrderFilled      perpetualId orderId price size      (size = filled amount)
    PositionUpdated  perpetualId accountId positionType size entryPrice
    MarkPriceUpdated perpetualId markPrice
    BalanceUpdated   accountId balance
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum, auto
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from perpl_mm.errors import EventDecodeError
from perpl_mm.exchange.types import (
    ZERO,
    Account,
    AccountId,
    Order,
    OrderId,
    OrderSide,
    OrderType,
    PerpetualId,
    Position,
    PositionType,
    StateInstant,
)

log = logging.getLogger("perpl_mm")


class OrderEventType(Enum):
    PLACED = auto()
    CHANGED = auto()
    CANCELLED = auto()
    FILLED = auto()


@dataclass(frozen=True)
class OrderEvent:
    event_type: OrderEventType
    perpetual_id: PerpetualId
    order_id: OrderId
    account_id: AccountId
    price: Decimal = ZERO
    size: Decimal = ZERO


@dataclass(frozen=True)
class PositionEvent:
    perpetual_id: PerpetualId
    account_id: AccountId
    position_type: PositionType
    size: Decimal


@dataclass(frozen=True)
class MarkPriceEvent:
    perpetual_id: PerpetualId
    mark_price: Decimal


@dataclass(frozen=True)
class BalanceEvent:
    account_id: AccountId
    balance: Decimal


StateEvent = Union[OrderEvent, PositionEvent, MarkPriceEvent, BalanceEvent]


@dataclass
class RawBlockEvents:
    """One block worth of undecoded exchange events as delivered by the stream."""

    instant: StateInstant
    events: List[Mapping[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawBlockEvents":
        try:
            instant = StateInstant(int(data["block"]), int(data.get("index", 0)))
            events = list(data.get("events") or [])
        except (KeyError, TypeError, ValueError) as exc:
            raise EventDecodeError(f"malformed block payload: {exc}") from exc
        return cls(instant=instant, events=events)


@dataclass
class BlockEvents:
    """State events that one raw block produced against the snapshot."""

    instant: StateInstant
    events: List[StateEvent]


class L3Book:
    """Order-by-order book of one perpetual."""

    def __init__(self, orders: Iterable[Order] = ()) -> None:
        self._orders: Dict[OrderId, Order] = {}
        for order in orders:
            self._orders[order.order_id] = order

    def __len__(self) -> int:
        return len(self._orders)

    def __repr__(self) -> str:
        return f"L3Book(orders={len(self._orders)}, best_bid={self.best_bid()}, best_ask={self.best_ask()})"

    def get(self, order_id: OrderId) -> Optional[Order]:
        return self._orders.get(order_id)

    def all_orders(self) -> Dict[OrderId, Order]:
        return self._orders

    def orders_for(self, account_id: AccountId) -> List[Order]:
        return [self._orders[oid] for oid in sorted(self._orders) if self._orders[oid].account_id == account_id]

    def add(self, order: Order) -> None:
        self._orders[order.order_id] = order

    def remove(self, order_id: OrderId) -> Optional[Order]:
        return self._orders.pop(order_id, None)

    def _best(self, side: OrderSide) -> Optional[Tuple[Decimal, Decimal]]:
        levels: Dict[Decimal, Decimal] = {}
        for order in self._orders.values():
            if order.side is side:
                levels[order.price] = levels.get(order.price, ZERO) + order.size
        if not levels:
            return None
        price = max(levels) if side is OrderSide.BID else min(levels)
        return price, levels[price]

    def best_bid(self) -> Optional[Tuple[Decimal, Decimal]]:
        """Highest resting bid as ``(price, total size at price)``."""
        return self._best(OrderSide.BID)

    def best_ask(self) -> Optional[Tuple[Decimal, Decimal]]:
        """Lowest resting ask as ``(price, total size at price)``."""
        return self._best(OrderSide.ASK)


@dataclass
class Perpetual:
    perpetual_id: PerpetualId
    name: str
    mark_price: Decimal
    price_decimals: int
    size_decimals: int
    max_leverage: Decimal = Decimal(100)
    book: L3Book = field(default_factory=L3Book)

    @property
    def tick_size(self) -> Decimal:
        return Decimal(1).scaleb(-self.price_decimals)

    @property
    def lot_size(self) -> Decimal:
        return Decimal(1).scaleb(-self.size_decimals)


def _dec(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps float inputs from leaking binary noise into prices
    return Decimal(str(value))


class Exchange:
    """
    Mutable exchange snapshot owned by the orchestrator for one pipeline run.

    Strategies only read from it. ``apply_events`` is the only mutator.
    """

    def __init__(
        self,
        accounts: Dict[AccountId, Account],
        perpetuals: Dict[PerpetualId, Perpetual],
        instant: StateInstant,
    ) -> None:
        self._accounts = accounts
        self._perpetuals = perpetuals
        self._instant = instant

    def __repr__(self) -> str:
        return (
            f"Exchange(instant={self._instant}, accounts={sorted(self._accounts)}, "
            f"perpetuals={sorted(self._perpetuals)})"
        )

    # === Read API ===

    def accounts(self) -> Dict[AccountId, Account]:
        return self._accounts

    def perpetuals(self) -> Dict[PerpetualId, Perpetual]:
        return self._perpetuals

    def instant(self) -> StateInstant:
        return self._instant

    def account_by_address(self, address: str) -> Optional[Account]:
        address = address.lower()
        for account in self._accounts.values():
            if account.address.lower() == address:
                return account
        return None

    # === Construction ===

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Exchange":
        """Build a snapshot from the state gateway ``snapshot`` payload."""
        instant_raw = data.get("instant") or {}
        instant = StateInstant(int(instant_raw.get("block", 0)), int(instant_raw.get("index", 0)))

        accounts: Dict[AccountId, Account] = {}
        for raw in data.get("accounts") or []:
            account_id = int(raw["accountId"])
            positions: Dict[PerpetualId, Position] = {}
            for pos in raw.get("positions") or []:
                position = Position(
                    perpetual_id=int(pos["perpetualId"]),
                    position_type=PositionType(pos["positionType"]),
                    size=_dec(pos["size"]),
                    entry_price=_dec(pos.get("entryPrice", 0)),
                )
                positions[position.perpetual_id] = position
            accounts[account_id] = Account(
                account_id=account_id,
                address=str(raw.get("address", "")),
                balance=_dec(raw.get("balance", 0)),
                positions=positions,
            )

        perpetuals: Dict[PerpetualId, Perpetual] = {}
        for raw in data.get("perpetuals") or []:
            perpetual_id = int(raw["perpetualId"])
            orders = [
                Order(
                    order_id=int(o["orderId"]),
                    account_id=int(o["accountId"]),
                    perpetual_id=perpetual_id,
                    order_type=OrderType(o["orderType"]),
                    price=_dec(o["price"]),
                    size=_dec(o["size"]),
                )
                for o in raw.get("orders") or []
            ]
            perpetuals[perpetual_id] = Perpetual(
                perpetual_id=perpetual_id,
                name=str(raw.get("name", perpetual_id)),
                mark_price=_dec(raw.get("markPrice", 0)),
                price_decimals=int(raw.get("priceDecimals", 2)),
                size_decimals=int(raw.get("sizeDecimals", 4)),
                max_leverage=_dec(raw.get("maxLeverage", 100)),
                book=L3Book(orders),
            )

        return cls(accounts=accounts, perpetuals=perpetuals, instant=instant)

    # === Event application ===

    def apply_events(self, raw: RawBlockEvents) -> Optional[BlockEvents]:
        """
        Apply one raw block to the snapshot.

        Returns the state events the block produced, or None when the block
        is already part of the snapshot or touches nothing tracked.

        Raises:
            EventDecodeError: a raw event is malformed.
        """
        if raw.instant <= self._instant:
            return None

        applied: List[StateEvent] = []
        for raw_event in raw.events:
            try:
                event = self._apply_one(raw_event)
            except EventDecodeError:
                raise
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                raise EventDecodeError(f"malformed event {raw_event!r}: {exc}") from exc
            if event is not None:
                applied.append(event)

        self._instant = raw.instant
        if not applied:
            return None
        return BlockEvents(instant=raw.instant, events=applied)

    def _apply_one(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        kind = raw["type"]
        handler = self._handlers().get(kind)
        if handler is None:
            # Unknown event kinds are not relevant to the tracked state.
            return None
        return handler(self, raw)

    @staticmethod
    def _handlers():
        return {
            "OrderPlaced": Exchange._on_order_placed,
            "OrderChanged": Exchange._on_order_changed,
            "OrderCancelled": Exchange._on_order_cancelled,
            "OrderFilled": Exchange._on_order_filled,
            "PositionUpdated": Exchange._on_position_updated,
            "MarkPriceUpdated": Exchange._on_mark_price,
            "BalanceUpdated": Exchange._on_balance,
        }

    def _on_order_placed(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        perpetual = self._perpetuals.get(int(raw["perpetualId"]))
        if perpetual is None:
            return None
        order = Order(
            order_id=int(raw["orderId"]),
            account_id=int(raw["accountId"]),
            perpetual_id=perpetual.perpetual_id,
            order_type=OrderType(raw["orderType"]),
            price=_dec(raw["price"]),
            size=_dec(raw["size"]),
        )
        perpetual.book.add(order)
        return OrderEvent(
            OrderEventType.PLACED, order.perpetual_id, order.order_id, order.account_id, order.price, order.size
        )

    def _on_order_changed(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        perpetual = self._perpetuals.get(int(raw["perpetualId"]))
        if perpetual is None:
            return None
        order = perpetual.book.get(int(raw["orderId"]))
        if order is None:
            log.debug("order_changed_unknown perp=%s oid=%s", raw["perpetualId"], raw["orderId"])
            return None
        order.price = _dec(raw["price"])
        order.size = _dec(raw["size"])
        return OrderEvent(
            OrderEventType.CHANGED, order.perpetual_id, order.order_id, order.account_id, order.price, order.size
        )

    def _on_order_cancelled(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        perpetual = self._perpetuals.get(int(raw["perpetualId"]))
        if perpetual is None:
            return None
        order = perpetual.book.remove(int(raw["orderId"]))
        if order is None:
            return None
        return OrderEvent(
            OrderEventType.CANCELLED, order.perpetual_id, order.order_id, order.account_id, order.price, order.size
        )

    def _on_order_filled(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        perpetual = self._perpetuals.get(int(raw["perpetualId"]))
        if perpetual is None:
            return None
        order_id = int(raw["orderId"])
        filled = _dec(raw["size"])
        price = _dec(raw["price"])
        order = perpetual.book.get(order_id)
        if order is None:
            return OrderEvent(
                OrderEventType.FILLED, perpetual.perpetual_id, order_id, int(raw.get("accountId", -1)), price, filled
            )
        order.size -= filled
        if order.size <= 0:
            perpetual.book.remove(order_id)
        return OrderEvent(OrderEventType.FILLED, perpetual.perpetual_id, order_id, order.account_id, price, filled)

    def _on_position_updated(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        account = self._accounts.get(int(raw["accountId"]))
        perpetual_id = int(raw["perpetualId"])
        if account is None or perpetual_id not in self._perpetuals:
            return None
        size = _dec(raw["size"])
        position_type = PositionType(raw["positionType"])
        if size == 0:
            account.positions.pop(perpetual_id, None)
        else:
            account.positions[perpetual_id] = Position(
                perpetual_id=perpetual_id,
                position_type=position_type,
                size=size,
                entry_price=_dec(raw.get("entryPrice", 0)),
            )
        return PositionEvent(perpetual_id, account.account_id, position_type, size)

    def _on_mark_price(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        perpetual = self._perpetuals.get(int(raw["perpetualId"]))
        if perpetual is None:
            return None
        perpetual.mark_price = _dec(raw["markPrice"])
        return MarkPriceEvent(perpetual.perpetual_id, perpetual.mark_price)

    def _on_balance(self, raw: Mapping[str, Any]) -> Optional[StateEvent]:
        account = self._accounts.get(int(raw["accountId"]))
        if account is None:
            return None
        account.balance = _dec(raw["balance"])
        return BalanceEvent(account.account_id, account.balance)


def filled_events(events: Iterable[StateEvent]) -> List[OrderEvent]:
    """Order fill events contained in ``events``."""
    return [e for e in events if isinstance(e, OrderEvent) and e.event_type is OrderEventType.FILLED]

