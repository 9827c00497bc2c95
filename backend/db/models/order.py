"""Order lifecycle and order audit-event model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CHAR,
    CheckConstraint,
    ForeignKeyConstraint,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import TRADE_NUMERIC, Base, UtcDateTime
from backend.db.enums import (
    OrderSide,
    OrderStatus,
    OrderType,
    TokenSide,
    order_side_enum,
    order_status_enum,
    order_type_enum,
    token_side_enum,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUS_PREDICATE = "status IN ('pending', 'signed', 'submitted', 'confirmed')"


class Order(Base):
    """Local trade intent and its exchange-facing lifecycle."""

    __tablename__ = "trade_order"
    __table_args__ = (
        PrimaryKeyConstraint("order_id", name="pk_trade_order"),
        UniqueConstraint("order_hash", name="uq_trade_order_order_hash"),
        UniqueConstraint("transaction_hash", name="uq_trade_order_transaction_hash"),
        ForeignKeyConstraint(
            ["user_id"],
            ["app_user.user_id"],
            name="fk_trade_order_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        ForeignKeyConstraint(
            ["market_id"],
            ["market.market_id"],
            name="fk_trade_order_market",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("amount > 0", name="ck_trade_order_amount_pos"),
        CheckConstraint("price > 0 AND price < 1", name="ck_trade_order_price_range"),
        CheckConstraint("total_cost >= 0", name="ck_trade_order_total_cost_nonneg"),
        CheckConstraint(
            "filled_amount IS NULL OR status = 'filled'",
            name="ck_trade_order_fill_only_when_filled",
        ),
        CheckConstraint(
            "status NOT IN ('failed', 'cancelled') OR status_reason IS NOT NULL",
            name="ck_trade_order_terminal_reason",
        ),
        Index(
            "uq_trade_order_active_intent",
            "user_id",
            "market_id",
            "token_id",
            "side",
            "intent_hash",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_PREDICATE),
            sqlite_where=text(ACTIVE_STATUS_PREDICATE),
        ),
        Index("idx_trade_order_status_updated", "status", "updated_at"),
        Index("idx_trade_order_user_created", "user_id", "created_at"),
        Index("idx_trade_order_intent_hash", "intent_hash"),
    )

    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    market_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    token_side: Mapped[TokenSide] = mapped_column(token_side_enum, nullable=False)
    token_id: Mapped[str] = mapped_column(Text, nullable=False)
    side: Mapped[OrderSide] = mapped_column(order_side_enum, nullable=False)
    order_type: Mapped[OrderType] = mapped_column(order_type_enum, nullable=False)
    amount: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    price: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    intent_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(order_status_enum, nullable=False)
    status_reason: Mapped[Optional[str]] = mapped_column(Text)
    order_hash: Mapped[Optional[str]] = mapped_column(Text)
    transaction_hash: Mapped[Optional[str]] = mapped_column(Text)
    filled_amount: Mapped[Optional[Decimal]] = mapped_column(TRADE_NUMERIC)
    fill_price: Mapped[Optional[Decimal]] = mapped_column(TRADE_NUMERIC)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class OrderEvent(Base):
    """Append-only audit row written with every order status transition."""

    __tablename__ = "order_event"
    __table_args__ = (
        PrimaryKeyConstraint("event_id", name="pk_order_event"),
        ForeignKeyConstraint(
            ["order_id"],
            ["trade_order.order_id"],
            name="fk_order_event_order",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint(
            "from_status IS NULL OR from_status <> to_status",
            name="ck_order_event_status_changes",
        ),
        Index("idx_order_event_order_ts", "order_id", "event_at"),
    )

    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(order_status_enum)
    to_status: Mapped[OrderStatus] = mapped_column(order_status_enum, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    event_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
