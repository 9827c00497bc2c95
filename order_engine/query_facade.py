"""Read-only projections over the ledger for the presentation layer."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Optional
import uuid

from backend.db.enums import OrderStatus
from order_engine.errors import OrderNotFound
from order_engine.ledger_store import (
    BalanceRecord,
    LedgerStore,
    OrderEventRecord,
    OrderRecord,
    PositionRecord,
    TransferRecord,
)
from order_engine.state_machine import ACTIVE_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortfolioSnapshot:
    user_id: uuid.UUID
    balances: tuple[BalanceRecord, ...]
    open_positions: tuple[PositionRecord, ...]
    active_orders: tuple[OrderRecord, ...]


class QueryFacade:
    """Pure reads; never writes."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def open_positions(self, user_id: uuid.UUID) -> tuple[PositionRecord, ...]:
        return self._store.list_positions(user_id, open_only=True)

    def positions(self, user_id: uuid.UUID) -> tuple[PositionRecord, ...]:
        return self._store.list_positions(user_id)

    def order_history(
        self,
        user_id: uuid.UUID,
        *,
        limit: int = 50,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> tuple[OrderRecord, ...]:
        return self._store.list_orders(user_id, limit=limit, statuses=statuses)

    def get_order(self, user_id: uuid.UUID, order_id: uuid.UUID) -> OrderRecord:
        order = self._store.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFound(f"Order {order_id} does not exist for user {user_id}.")
        return order

    def order_events(self, order_id: uuid.UUID) -> tuple[OrderEventRecord, ...]:
        return self._store.order_events(order_id)

    def balance_snapshot(self, user_id: uuid.UUID) -> tuple[BalanceRecord, ...]:
        return self._store.list_balances(user_id)

    def transfer_history(self, user_id: uuid.UUID, *, limit: int = 50) -> tuple[TransferRecord, ...]:
        return self._store.list_transfers(user_id, limit=limit)

    def portfolio(self, user_id: uuid.UUID) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            user_id=user_id,
            balances=self.balance_snapshot(user_id),
            open_positions=self.open_positions(user_id),
            active_orders=self._store.list_orders(user_id, limit=500, statuses=ACTIVE_STATUSES),
        )

    def stats(self) -> dict[str, int]:
        return self._store.counts()
