from datetime import datetime
from enum import StrEnum
from typing import Optional
from uuid import UUID

from sqlalchemy import BigInteger, Integer, LargeBinary, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.platform.database.db_setting import Base, UtcDateTime


class OutboxStatus(StrEnum):
    STAGED = 'STAGED'  # written, not yet releasable (outcome of the step still unknown)
    READY = 'READY'
    PUBLISHED = 'PUBLISHED'


class OutboxRecordModel(Base):
    __tablename__ = 'outbox_record'

    # Monotonic sequence; the relay publishes in this order
    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True
    )
    event_id: Mapped[UUID] = mapped_column(Uuid, unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    partition_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    body: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
