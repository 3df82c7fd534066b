from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReservationCreateRequest(_CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            'example': {'passengerRef': 'P-1001', 'flightRef': 'F123', 'seatRef': '12A'}
        },
    )

    passenger_ref: str = Field(min_length=1, max_length=64)
    flight_ref: str = Field(min_length=1, max_length=64)
    seat_ref: str = Field(min_length=1, max_length=64)


class ReservationStatusResponse(_CamelModel):
    reservation_id: UUID
    status: str
    reason_code: Optional[str] = None
