"""
Strategy contract shared by the BBO, Spread and Taker strategies.

Lifecycle:
    unbound config  --initialize(first snapshot)-->  AccountBinding
    AccountBinding  --initialize(later snapshots)--> same binding, re-validated

``initialize`` is the only transition from unbound to bound. Every other
operation reads the binding and raises ``StrategyNotInitialized`` when it is
missing, which only a mis-sequenced caller can trigger.

``execute`` receives the execution permit by ownership transfer. It always
ends with the permit either released or handed to the gateway, which
releases it when the batch outcome is known.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from logging import ERROR, INFO, WARNING
from typing import Any, List, Optional, Protocol, Sequence

from perpl_mm.errors import (
    AccountAlreadyBoundError,
    NoAccountFoundError,
    OrderPrepareError,
    OrderSizeBelowLotError,
    PerpetualNotFoundError,
    StrategyNotInitialized,
    TooManyAccountsError,
)
from perpl_mm.exchange.requests import OrderDesc, OrderRequest
from perpl_mm.exchange.state import Exchange, Perpetual, StateEvent
from perpl_mm.exchange.types import AccountId, Order, PerpetualId
from perpl_mm.execution.execution_gateway import ExecutionGateway
from perpl_mm.execution.permit import Permit
from perpl_mm.infra.logging_cfg import log_event

log = logging.getLogger("perpl_mm")


@dataclass(frozen=True)
class AccountBinding:
    """The account a strategy trades for, fixed by the first initialize."""

    account_id: AccountId
    perpetual_id: PerpetualId


class Strategy(Protocol):
    name: str

    @property
    def perpetual_id(self) -> PerpetualId:
        ...

    async def initialize(self, gateway: ExecutionGateway, exchange: Exchange) -> AccountBinding:
        ...

    async def execute(
        self,
        gateway: ExecutionGateway,
        exchange: Exchange,
        events: Sequence[StateEvent],
        permit: Permit,
    ) -> None:
        ...


class BaseStrategy:
    name: str = "base"
    # all-or-nothing execution of each submitted batch
    atomic: bool = False

    def __init__(self, config: Any) -> None:
        self.config = config
        self._binding: Optional[AccountBinding] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(config={self.config!r}, binding={self._binding!r})"

    # ========== Binding ==========

    @property
    def perpetual_id(self) -> PerpetualId:
        return self.config.perpetual_id

    @property
    def is_bound(self) -> bool:
        return self._binding is not None

    @property
    def binding(self) -> AccountBinding:
        if self._binding is None:
            raise StrategyNotInitialized(self.name)
        return self._binding

    @property
    def account_id(self) -> AccountId:
        return self.binding.account_id

    def resolve_account(self, exchange: Exchange) -> AccountId:
        """The single account the snapshot was filtered to."""
        accounts = exchange.accounts()
        if not accounts:
            raise NoAccountFoundError()
        if len(accounts) > 1:
            raise TooManyAccountsError(len(accounts))
        return next(iter(accounts))

    def perpetual(self, exchange: Exchange) -> Perpetual:
        perpetual = exchange.perpetuals().get(self.perpetual_id)
        if perpetual is None:
            raise PerpetualNotFoundError(self.perpetual_id)
        return perpetual

    @property
    def fixed_order_size(self) -> Optional[Decimal]:
        """Size every order is placed at, if the strategy uses one."""
        return getattr(self.config, "order_size", None)

    def check_order_size(self, perpetual: Perpetual) -> None:
        size = self.fixed_order_size
        if size is not None and size < perpetual.lot_size:
            raise OrderSizeBelowLotError(size, perpetual.lot_size)

    def bind_account(self, exchange: Exchange) -> AccountBinding:
        """
        Bind to the snapshot's only account.

        Raises:
            NoAccountFoundError / TooManyAccountsError: the snapshot does not
                hold exactly one account.
            AccountAlreadyBoundError: the strategy is already bound.
            PerpetualNotFoundError: the traded perpetual is not in the snapshot.
            OrderSizeBelowLotError: the configured order size is under one lot.
        """
        binding = self._candidate_binding(exchange)
        self._binding = binding
        return binding

    def _candidate_binding(self, exchange: Exchange) -> AccountBinding:
        account_id = self.resolve_account(exchange)
        if self._binding is not None:
            raise AccountAlreadyBoundError(self._binding.account_id, account_id)
        self.check_order_size(self.perpetual(exchange))
        return AccountBinding(account_id, self.perpetual_id)

    async def initialize(self, gateway: ExecutionGateway, exchange: Exchange) -> AccountBinding:
        if self._binding is not None:
            # restart: same account and perpetual must still be there
            account_id = self.resolve_account(exchange)
            if account_id != self._binding.account_id:
                raise AccountAlreadyBoundError(self._binding.account_id, account_id)
            self.check_order_size(self.perpetual(exchange))
            log_event(log, "strategy_revalidated", INFO, strategy=self.name, account_id=account_id)
            return self._binding

        binding = self._candidate_binding(exchange)
        await self.on_first_bind(gateway, exchange, binding)
        self._binding = binding
        log_event(
            log, "strategy_initialized", INFO,
            strategy=self.name, account_id=binding.account_id, perpetual_id=binding.perpetual_id,
        )
        return binding

    async def on_first_bind(self, gateway: ExecutionGateway, exchange: Exchange, binding: AccountBinding) -> None:
        """One-time setup run before the binding is committed."""

    # ========== Execution ==========

    def open_orders(self, exchange: Exchange, binding: Optional[AccountBinding] = None) -> List[Order]:
        binding = binding or self.binding
        return self.perpetual(exchange).book.orders_for(binding.account_id)

    def plan_orders(
        self,
        binding: AccountBinding,
        exchange: Exchange,
        events: Sequence[StateEvent],
    ) -> List[OrderRequest]:
        raise NotImplementedError

    async def execute(
        self,
        gateway: ExecutionGateway,
        exchange: Exchange,
        events: Sequence[StateEvent],
        permit: Permit,
    ) -> None:
        try:
            binding = self.binding
            requests = self.plan_orders(binding, exchange, events)
            descs = self.prepare_all(exchange, requests)
        except OrderPrepareError as exc:
            # not retried through the error channel; the next wake re-plans
            permit.release()
            log_event(log, "order_prepare_failed", ERROR, strategy=self.name, err=str(exc))
            return
        except BaseException:
            permit.release()
            raise

        if not descs:
            permit.release()
            return
        await gateway.submit(descs, self.atomic, permit, label=self.name)

    def prepare_all(self, exchange: Exchange, requests: Sequence[OrderRequest]) -> List[OrderDesc]:
        return [request.prepare(exchange) for request in requests]

    def warn(self, event: str, **data) -> None:
        log_event(log, event, WARNING, strategy=self.name, **data)
