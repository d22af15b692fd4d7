# conveyor/core/codec/serde.py
"""
JSON codec for queue envelopes and status events.

Wire format of a queue entry body (one JSON document):

    {"id": "<task id>", "data": {"type": "<task type>", "payload": {...}}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from conveyor.core.models.tasks import StatusEvent, TaskEnvelope
from conveyor.core.types.result import Err, Ok, Result


@dataclass(slots=True, frozen=True)
class EnvelopeParseError:
    """Why a queue entry body could not be decoded."""

    reason: str
    raw: str


class SerializationError(Exception):
    """Raised when a value cannot be serialized to JSON."""

    pass


def dumps_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, separators=(',', ':'), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(str(exc)) from exc


def encode_envelope(envelope: TaskEnvelope) -> str:
    return dumps_json({'id': envelope.task_id, 'data': envelope.data()})


def decode_envelope(raw: str | bytes | None) -> Result[TaskEnvelope, EnvelopeParseError]:
    """Decode a queue entry body. Never raises for malformed input."""
    if raw is None:
        return Err(EnvelopeParseError('empty body', ''))
    text = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else raw
    try:
        doc = json.loads(text)
    except ValueError as exc:
        return Err(EnvelopeParseError(f'invalid JSON: {exc}', text))

    if not isinstance(doc, dict):
        return Err(EnvelopeParseError('envelope is not an object', text))
    task_id = doc.get('id')
    if not isinstance(task_id, str) or not task_id:
        return Err(EnvelopeParseError('missing task id', text))
    data = doc.get('data')
    if not isinstance(data, dict):
        return Err(EnvelopeParseError('missing data object', text))
    task_type = data.get('type')
    if not isinstance(task_type, str) or not task_type:
        return Err(EnvelopeParseError('missing task type', text))
    payload = data.get('payload', {})
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return Err(EnvelopeParseError('payload is not an object', text))

    return Ok(TaskEnvelope(task_id=task_id, task_type=task_type, payload=payload))


def encode_event(event: StatusEvent) -> str:
    return dumps_json(event.to_dict())
