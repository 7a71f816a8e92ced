"""
Error taxonomy for the market making bot.

Setup errors are fatal and end the process. Submission and stream errors are
transient: the orchestrator retries by re-evaluating the strategy or by
rebuilding the whole snapshot/stream pipeline.
"""

from __future__ import annotations

from typing import Any, Optional


class BotError(Exception):
    """Root of all bot errors."""


class ConfigError(BotError):
    """Invalid or missing process configuration."""


# === Fatal setup errors (raised from Strategy.initialize) ===

class StrategySetupError(BotError):
    """Misconfigured deployment detected while initializing a strategy."""


class NoAccountFoundError(StrategySetupError):
    def __init__(self) -> None:
        super().__init__("No account found for strategy")


class TooManyAccountsError(StrategySetupError):
    def __init__(self, count: int) -> None:
        super().__init__(f"Too many accounts found for strategy ({count})")
        self.count = count


class AccountAlreadyBoundError(StrategySetupError):
    def __init__(self, bound: int, requested: int) -> None:
        super().__init__(f"Account ID already set (bound={bound}, requested={requested})")
        self.bound = bound
        self.requested = requested


class PerpetualNotFoundError(StrategySetupError):
    def __init__(self, perpetual_id: int) -> None:
        super().__init__(f"Perpetual ID {perpetual_id} not found in exchange state")
        self.perpetual_id = perpetual_id


class OrderSizeBelowLotError(StrategySetupError):
    def __init__(self, order_size: Any, lot_size: Any) -> None:
        super().__init__(f"Order size {order_size} is below the perpetual lot size {lot_size}")
        self.order_size = order_size
        self.lot_size = lot_size


class StrategyNotInitialized(RuntimeError):
    """A strategy operation ran before initialize() bound an account.

    This can only happen on a mis-sequenced call path, so it derives from
    RuntimeError and is never handled by the run loop.
    """

    def __init__(self, name: str) -> None:
        super().__init__(f"Strategy {name} not initialized")


# === Transient errors ===

class SubmissionError(BotError):
    """An order batch was rejected or its transaction failed."""

    def __init__(self, message: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class RpcError(SubmissionError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.data = data


class OrderPrepareError(BotError):
    """An order request does not validate against the current snapshot."""


class StreamError(BotError):
    """The event stream closed or failed; the pipeline must be rebuilt."""


class EventDecodeError(StreamError):
    """A raw event could not be decoded into a state event."""
