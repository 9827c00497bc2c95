"""Aggregated outcome-token position model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    ForeignKeyConstraint,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import TRADE_NUMERIC, Base, UtcDateTime
from backend.db.enums import OrderSide, order_side_enum

logger = logging.getLogger(__name__)


class Position(Base):
    """Net holding of one outcome token; accumulated from fills, never deleted."""

    __tablename__ = "position"
    __table_args__ = (
        PrimaryKeyConstraint("position_id", name="pk_position"),
        UniqueConstraint("user_id", "market_id", "token_id", name="uq_position_user_market_token"),
        ForeignKeyConstraint(
            ["user_id"],
            ["app_user.user_id"],
            name="fk_position_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        ForeignKeyConstraint(
            ["market_id"],
            ["market.market_id"],
            name="fk_position_market",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("average_price >= 0 AND average_price <= 1", name="ck_position_average_price_range"),
        Index("idx_position_user_updated", "user_id", "updated_at"),
    )

    position_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    market_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    token_id: Mapped[str] = mapped_column(Text, nullable=False)
    side: Mapped[OrderSide] = mapped_column(order_side_enum, nullable=False)
    amount: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    average_price: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
