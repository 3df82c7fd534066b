"""
Envelope Codec - EventEnvelope <-> JSON bytes (orjson)

Wire format is camelCase. Payload fields carry the idempotency key as well so a
consumer that only sees the payload can still deduplicate.

    {
      "eventId": "...", "eventType": "payment.succeeded",
      "partitionKey": "<reservationId>", "idempotencyKey": "...",
      "causationId": "...", "correlationId": "...", "occurredAt": "...",
      "payload": {"reservationId": "...", "paymentId": "...", "amount": 15000,
                  "idempotencyKey": "..."}
    }
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import attrs
import orjson

from src.platform.exception.exceptions import ValidationError
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import (
    PAYLOAD_TYPES,
    EventEnvelope,
    EventPayload,
)


def _camel(name: str) -> str:
    head, *tail = name.split('_')
    return head + ''.join(part.title() for part in tail)


def _wire_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


def payload_to_dict(payload: EventPayload, *, idempotency_key: str) -> dict[str, Any]:
    data = {
        _camel(field.name): _wire_value(getattr(payload, field.name))
        for field in attrs.fields(type(payload))
    }
    data['idempotencyKey'] = idempotency_key
    return data


def payload_from_dict(event_type: EventType, data: dict[str, Any]) -> EventPayload:
    payload_type = PAYLOAD_TYPES[event_type]
    kwargs = {}
    for field in attrs.fields(payload_type):
        key = _camel(field.name)
        if key not in data:
            raise ValidationError(f'{event_type} payload missing field {key!r}')
        kwargs[field.name] = data[key]
    try:
        return payload_type(**kwargs)
    except (TypeError, ValueError) as e:
        raise ValidationError(f'{event_type} payload is malformed: {e}') from e


def envelope_to_dict(envelope: EventEnvelope) -> dict[str, Any]:
    return {
        'eventId': str(envelope.event_id),
        'eventType': envelope.event_type.value,
        'partitionKey': envelope.partition_key,
        'idempotencyKey': envelope.idempotency_key,
        'causationId': envelope.causation_id,
        'correlationId': envelope.correlation_id,
        'occurredAt': envelope.occurred_at.isoformat(),
        'payload': payload_to_dict(envelope.payload, idempotency_key=envelope.idempotency_key),
    }


def envelope_from_dict(data: dict[str, Any]) -> EventEnvelope:
    raw_type = data.get('eventType')
    try:
        event_type = EventType(raw_type)
    except ValueError as e:
        raise ValidationError(f'Unknown event type: {raw_type!r}') from e

    payload = data.get('payload')
    if not isinstance(payload, dict):
        raise ValidationError(f'{event_type} envelope has no payload object')

    for key in ('eventId', 'partitionKey', 'idempotencyKey', 'occurredAt'):
        if not data.get(key):
            raise ValidationError(f'{event_type} envelope missing {key!r}')

    try:
        return EventEnvelope(
            event_type=event_type,
            partition_key=str(data['partitionKey']),
            idempotency_key=str(data['idempotencyKey']),
            payload=payload_from_dict(event_type, payload),
            event_id=UUID(str(data['eventId'])),
            causation_id=data.get('causationId'),
            correlation_id=data.get('correlationId'),
            occurred_at=datetime.fromisoformat(str(data['occurredAt'])),
        )
    except ValueError as e:
        raise ValidationError(f'{event_type} envelope is malformed: {e}') from e


def encode_envelope(envelope: EventEnvelope) -> bytes:
    return orjson.dumps(envelope_to_dict(envelope))


def decode_envelope(raw: bytes | str) -> EventEnvelope:
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ValidationError(f'Envelope is not valid JSON: {e}') from e
    if not isinstance(data, dict):
        raise ValidationError('Envelope must be a JSON object')
    return envelope_from_dict(data)
