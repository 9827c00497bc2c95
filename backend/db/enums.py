"""Closed enum contracts for the ledger database schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy import Enum as SAEnum

logger = logging.getLogger(__name__)


class OrderSide(str, enum.Enum):
    """Order side."""

    BUY = "buy"
    SELL = "sell"


class TokenSide(str, enum.Enum):
    """Outcome token of a binary market."""

    YES = "yes"
    NO = "no"


class OrderType(str, enum.Enum):
    """Order type."""

    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(str, enum.Enum):
    """Order lifecycle status."""

    PENDING = "pending"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FILLED = "filled"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


order_side_enum = SAEnum(OrderSide, name="order_side_enum", values_callable=_values)
token_side_enum = SAEnum(TokenSide, name="token_side_enum", values_callable=_values)
order_type_enum = SAEnum(OrderType, name="order_type_enum", values_callable=_values)
order_status_enum = SAEnum(OrderStatus, name="order_status_enum", values_callable=_values)
