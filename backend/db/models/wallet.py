"""Custodial wallet model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    ForeignKeyConstraint,
    LargeBinary,
    PrimaryKeyConstraint,
    SmallInteger,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base, UtcDateTime

logger = logging.getLogger(__name__)


class Wallet(Base):
    """One custodial blockchain address per user with its encrypted key."""

    __tablename__ = "wallet"
    __table_args__ = (
        PrimaryKeyConstraint("wallet_id", name="pk_wallet"),
        UniqueConstraint("user_id", name="uq_wallet_user_id"),
        UniqueConstraint("wallet_address", name="uq_wallet_address"),
        ForeignKeyConstraint(
            ["user_id"],
            ["app_user.user_id"],
            name="fk_wallet_user",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("length(wallet_address) = 42", name="ck_wallet_address_length"),
        CheckConstraint("key_version > 0", name="ck_wallet_key_version_pos"),
    )

    wallet_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    wallet_address: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_private_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    key_iv: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    key_version: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
