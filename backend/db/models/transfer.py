"""Observed on-chain transfer model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKeyConstraint,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import CHAIN_NUMERIC, Base, UtcDateTime

logger = logging.getLogger(__name__)


class Transfer(Base):
    """Append-only log of value movements observed on chain."""

    __tablename__ = "transfer"
    __table_args__ = (
        PrimaryKeyConstraint("transfer_id", name="pk_transfer"),
        UniqueConstraint("user_id", "transaction_hash", name="uq_transfer_user_transaction_hash"),
        ForeignKeyConstraint(
            ["user_id"],
            ["app_user.user_id"],
            name="fk_transfer_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("value >= 0", name="ck_transfer_value_nonneg"),
        CheckConstraint("block_number >= 0", name="ck_transfer_block_nonneg"),
        Index("idx_transfer_user_chain_block", "user_id", "chain", "block_number"),
    )

    transfer_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(Text, nullable=False)
    from_address: Mapped[str] = mapped_column(Text, nullable=False)
    to_address: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[Decimal] = mapped_column(CHAIN_NUMERIC, nullable=False)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    chain: Mapped[str] = mapped_column(Text, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chain_timestamp: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
