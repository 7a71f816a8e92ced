"""StrategyFactory: builds one of the three strategies from CLI parameters."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from perpl_mm.exchange.types import ONE, PerpetualId
from perpl_mm.strategy.base import BaseStrategy
from perpl_mm.strategy.bbo import BboConfig, BboStrategy
from perpl_mm.strategy.spread import SpreadConfig, SpreadStrategy
from perpl_mm.strategy.taker import TakerConfig, TakerStrategy


def _bbo(perpetual_id: PerpetualId, order_size: Decimal, **_: Any) -> BboStrategy:
    return BboStrategy(BboConfig(perpetual_id=perpetual_id, order_size=order_size))


def _spread(
    perpetual_id: PerpetualId,
    order_size: Decimal,
    orders_per_side: int,
    max_matches: Optional[int] = None,
    leverage: Optional[Decimal] = None,
    **_: Any,
) -> SpreadStrategy:
    return SpreadStrategy(
        SpreadConfig(
            perpetual_id=perpetual_id,
            orders_per_side=orders_per_side,
            order_size=order_size,
            max_matches=max_matches,
            leverage=leverage or ONE,
        )
    )


def _taker(
    perpetual_id: PerpetualId,
    order_size: Decimal,
    leverage: Optional[Decimal] = None,
    rng=None,
    **_: Any,
) -> TakerStrategy:
    return TakerStrategy(
        TakerConfig(perpetual_id=perpetual_id, max_order_size=order_size, leverage=leverage or ONE),
        rng=rng,
    )


class StrategyFactory:
    _registry: dict[str, Any] = {
        "bbo": _bbo,
        "spread": _spread,
        "taker": _taker,
    }

    @classmethod
    def names(cls) -> list[str]:
        return list(cls._registry)

    @classmethod
    def create(cls, name: str, perpetual_id: PerpetualId, **params: Any) -> BaseStrategy:
        ctor = cls._registry.get(name)
        if ctor is None:
            raise ValueError(f"unknown strategy: {name}")
        return ctor(perpetual_id=perpetual_id, **params)
