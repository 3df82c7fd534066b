from datetime import datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from src.platform.database.db_setting import Base, UtcDateTime


class LedgerStatus(StrEnum):
    IN_PROGRESS = 'IN_PROGRESS'  # reserved by a worker, lease bounded
    APPLIED = 'APPLIED'


class IdempotencyRecordModel(Base):
    __tablename__ = 'idempotency_record'

    consumer: Mapped[str] = mapped_column(String(64), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    result: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
