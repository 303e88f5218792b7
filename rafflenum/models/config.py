from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from ..db.utils import utcnow
from .base import Base
from .column_types import UTCDateTime


class AppConfig(Base):
    """Operator-editable key/value settings (e.g. ``ticket_price_cents``)."""

    __tablename__ = "app_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    @classmethod
    def get_value(cls, session: Session, key: str) -> Optional[str]:
        return session.scalar(select(cls.value).where(cls.key == key))

    @classmethod
    def set_value(cls, session: Session, key: str, value: object) -> "AppConfig":
        """Insert or update ``key``."""

        row = session.get(cls, key)
        if row is None:
            row = cls(key=key, value=str(value))
            session.add(row)
        else:
            row.value = str(value)
        session.flush()
        return row
