"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.balance import Balance
from backend.db.models.market import Market
from backend.db.models.order import ACTIVE_STATUS_PREDICATE, Order, OrderEvent
from backend.db.models.position import Position
from backend.db.models.transfer import Transfer
from backend.db.models.user import User
from backend.db.models.wallet import Wallet

logger = logging.getLogger(__name__)

__all__ = [
    "ACTIVE_STATUS_PREDICATE",
    "Balance",
    "Market",
    "Order",
    "OrderEvent",
    "Position",
    "Transfer",
    "User",
    "Wallet",
]
