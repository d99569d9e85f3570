"""Envelope codec and trigger-input parsing.

Queue values are UTF-8 JSON objects ``{"message_type": ..., "payload": ...}``.
The external trigger delivers them as a JSON array of ``{"Key", "Value"}``
records with ``Value`` base64-encoded.
"""

from __future__ import annotations

import base64
import binascii
import json

from recovery_coordinator.coordinator.models import Envelope, QueueEntry


class EnvelopeDecodeError(ValueError):
    """Queue value is not a valid envelope."""


class TriggerInputError(ValueError):
    """Trigger input is not a JSON array of key/value records."""


def encode_envelope(envelope: Envelope) -> bytes:
    return json.dumps(
        {"message_type": envelope.message_type, "payload": envelope.payload},
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")


def decode_envelope(value: bytes) -> Envelope:
    """Decode a stored queue value into an envelope."""

    try:
        record = json.loads(value.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise EnvelopeDecodeError(f"Envelope is not UTF-8 JSON: {error}") from error
    if not isinstance(record, dict):
        raise EnvelopeDecodeError("Envelope must be a JSON object.")

    message_type = record.get("message_type")
    if not isinstance(message_type, str) or not message_type:
        raise EnvelopeDecodeError("Envelope is missing message_type.")

    payload = record.get("payload", "")
    if payload is None:
        payload = ""
    elif not isinstance(payload, str):
        payload = json.dumps(payload, ensure_ascii=False)
    return Envelope(message_type=message_type, payload=payload)


def parse_trigger_input(raw: str) -> list[QueueEntry]:
    """Parse the watch trigger payload into queue entries in delivered order.

    Empty input, ``null`` and ``[]`` mean "no changes" and yield no entries.
    Records without a value (prefix folder markers) are dropped.
    """

    text = raw.strip()
    if not text:
        return []
    try:
        records = json.loads(text)
    except json.JSONDecodeError as error:
        raise TriggerInputError(f"Trigger input is not JSON: {error}") from error
    if records is None:
        return []
    if not isinstance(records, list):
        raise TriggerInputError("Trigger input must be a JSON array.")

    entries: list[QueueEntry] = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise TriggerInputError(f"Trigger record #{index} is not an object.")
        key = record.get("Key", record.get("key"))
        if not isinstance(key, str) or not key:
            raise TriggerInputError(f"Trigger record #{index} has no Key.")
        value = record.get("Value", record.get("value"))
        if value is None:
            continue
        entries.append(QueueEntry(key=key, value=_decode_transport_value(str(value))))
    return entries


def render_trigger_input(entries: list[QueueEntry]) -> str:
    """Inverse of `parse_trigger_input`, used by producers and tests."""

    return json.dumps(
        [
            {"Key": entry.key, "Value": base64.b64encode(entry.value).decode("ascii")}
            for entry in entries
        ],
    )


def _decode_transport_value(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        # Left undecoded so the dispatcher reports it as a per-event decode error.
        return value.encode("utf-8")
