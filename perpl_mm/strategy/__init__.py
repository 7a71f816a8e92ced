"""
Strategy package - the strategy contract and its three variants.
"""

from perpl_mm.strategy.base import AccountBinding, BaseStrategy, Strategy
from perpl_mm.strategy.bbo import BboConfig, BboStrategy
from perpl_mm.strategy.spread import SpreadConfig, SpreadStrategy, ladder_prices
from perpl_mm.strategy.strategy_factory import StrategyFactory
from perpl_mm.strategy.taker import TakerConfig, TakerStrategy

__all__ = [
    "AccountBinding",
    "BaseStrategy",
    "BboConfig",
    "BboStrategy",
    "SpreadConfig",
    "SpreadStrategy",
    "Strategy",
    "StrategyFactory",
    "TakerConfig",
    "TakerStrategy",
    "ladder_prices",
]
