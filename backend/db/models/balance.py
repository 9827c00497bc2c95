"""Latest observed chain balance model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    ForeignKeyConstraint,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import CHAIN_NUMERIC, Base, UtcDateTime

logger = logging.getLogger(__name__)


class Balance(Base):
    """Snapshot of native and stable-asset holdings per (user, chain)."""

    __tablename__ = "balance"
    __table_args__ = (
        PrimaryKeyConstraint("balance_id", name="pk_balance"),
        UniqueConstraint("user_id", "chain", name="uq_balance_user_chain"),
        ForeignKeyConstraint(
            ["user_id"],
            ["app_user.user_id"],
            name="fk_balance_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("native_balance >= 0", name="ck_balance_native_nonneg"),
        CheckConstraint("stable_balance >= 0", name="ck_balance_stable_nonneg"),
    )

    balance_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chain: Mapped[str] = mapped_column(Text, nullable=False)
    native_balance: Mapped[Decimal] = mapped_column(CHAIN_NUMERIC, nullable=False)
    stable_balance: Mapped[Decimal] = mapped_column(CHAIN_NUMERIC, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
