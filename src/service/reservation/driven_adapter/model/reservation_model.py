from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.platform.database.db_setting import Base, UtcDateTime


class ReservationModel(Base):
    __tablename__ = 'reservation'

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    passenger_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    flight_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    seat_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    reason_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payment_deadline_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
