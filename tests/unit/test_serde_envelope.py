"""Tests for the queue envelope and status event codec."""

from __future__ import annotations

import json

import pytest

from conveyor.core.codec.serde import (
    SerializationError,
    decode_envelope,
    dumps_json,
    encode_envelope,
    encode_event,
)
from conveyor.core.models.tasks import StatusEvent, TaskEnvelope
from conveyor.core.types.result import is_err, is_ok
from conveyor.core.types.status import TaskStatus, TaskType

pytestmark = pytest.mark.unit


class TestEnvelopeWireFormat:
    def test_encoded_shape(self) -> None:
        env = TaskEnvelope('abc', 'data_processing', {'values': [1, 2], 'operation': 'sum'})
        assert json.loads(encode_envelope(env)) == {
            'id': 'abc',
            'data': {'type': 'data_processing', 'payload': {'values': [1, 2], 'operation': 'sum'}},
        }

    def test_decodes_bytes(self) -> None:
        raw = b'{"id": "x", "data": {"type": "default", "payload": {"a": "\xc3\xa9"}}}'
        result = decode_envelope(raw)
        assert is_ok(result)
        assert result.ok_value.payload == {'a': 'é'}
        assert result.ok_value.known_type is TaskType.DEFAULT

    def test_null_payload_becomes_empty(self) -> None:
        result = decode_envelope('{"id": "x", "data": {"type": "default", "payload": null}}')
        assert is_ok(result)
        assert result.ok_value.payload == {}

    def test_unknown_type_still_decodes(self) -> None:
        result = decode_envelope('{"id": "x", "data": {"type": "video_transcode"}}')
        assert is_ok(result)
        assert result.ok_value.known_type is None


class TestMalformedEnvelopes:
    @pytest.mark.parametrize(
        'raw,reason',
        [
            (None, 'empty body'),
            ('{', 'invalid JSON'),
            ('[1, 2]', 'not an object'),
            ('{"data": {"type": "default"}}', 'missing task id'),
            ('{"id": "", "data": {"type": "default"}}', 'missing task id'),
            ('{"id": "x"}', 'missing data'),
            ('{"id": "x", "data": {}}', 'missing task type'),
            ('{"id": "x", "data": {"type": "default", "payload": 3}}', 'payload is not an object'),
        ],
    )
    def test_rejected_without_raising(self, raw: str | None, reason: str) -> None:
        result = decode_envelope(raw)
        assert is_err(result)
        assert reason in result.err_value.reason


class TestStatusEvents:
    def test_processing_time_only_when_set(self) -> None:
        assert json.loads(encode_event(StatusEvent('t', TaskStatus.IN_PROGRESS, 1))) == {
            'id': 't',
            'status': 'in_progress',
            'retries': 1,
        }
        assert json.loads(encode_event(StatusEvent('t', TaskStatus.COMPLETED, 0, 42))) == {
            'id': 't',
            'status': 'completed',
            'retries': 0,
            'processingTime': 42,
        }


class TestDumpsJson:
    def test_compact(self) -> None:
        assert dumps_json({'a': [1, 2]}) == '{"a":[1,2]}'

    def test_rejects_unserializable(self) -> None:
        with pytest.raises(SerializationError):
            dumps_json({'when': object()})
        with pytest.raises(SerializationError):
            dumps_json({'x': float('inf')})
