"""User identity model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, PrimaryKeyConstraint, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base, UtcDateTime

logger = logging.getLogger(__name__)


class User(Base):
    """Aggregation root for every user-owned ledger row."""

    __tablename__ = "app_user"
    __table_args__ = (
        PrimaryKeyConstraint("user_id", name="pk_app_user"),
        UniqueConstraint("external_auth_id", name="uq_app_user_external_auth_id"),
        CheckConstraint(
            "length(trim(external_auth_id)) > 0",
            name="ck_app_user_external_auth_id_not_blank",
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    external_auth_id: Mapped[str] = mapped_column(Text, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(Text)
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    last_name: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    last_active_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
