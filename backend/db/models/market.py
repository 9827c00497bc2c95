"""Exchange market reference model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import CHAIN_NUMERIC, TRADE_NUMERIC, Base, UtcDateTime

logger = logging.getLogger(__name__)


class Market(Base):
    """Binary-outcome question mirrored from the exchange."""

    __tablename__ = "market"
    __table_args__ = (
        PrimaryKeyConstraint("market_id", name="pk_market"),
        UniqueConstraint("external_market_id", name="uq_market_external_market_id"),
        CheckConstraint("yes_price >= 0 AND yes_price <= 1", name="ck_market_yes_price_range"),
        CheckConstraint("no_price >= 0 AND no_price <= 1", name="ck_market_no_price_range"),
        CheckConstraint("liquidity >= 0", name="ck_market_liquidity_nonneg"),
        CheckConstraint("volume_24h >= 0", name="ck_market_volume_nonneg"),
    )

    market_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    external_market_id: Mapped[str] = mapped_column(Text, nullable=False)
    condition_id: Mapped[Optional[str]] = mapped_column(Text)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    yes_token_id: Mapped[Optional[str]] = mapped_column(Text)
    no_token_id: Mapped[Optional[str]] = mapped_column(Text)
    yes_price: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    no_price: Mapped[Decimal] = mapped_column(TRADE_NUMERIC, nullable=False)
    liquidity: Mapped[Decimal] = mapped_column(CHAIN_NUMERIC, nullable=False)
    volume_24h: Mapped[Decimal] = mapped_column(CHAIN_NUMERIC, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(UtcDateTime)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
