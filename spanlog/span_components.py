"""Serialized span handles used to resume or nest traces across processes.

Binary layout (base64 encoded for plain-text transport)::

    byte 0        format version (2)
    byte 1        object type (SpanObjectType)
    byte 2        number N of packed uuid fields
    N * 17 bytes  field id (1 byte) + uuid (16 bytes)
    remainder     UTF-8 JSON object with every field that was not packed

Any of ``object_id``, ``row_id``, ``span_id`` and ``root_span_id`` that is a
canonical uuid string is packed as 16 raw bytes; other values (and the
compute-metadata arguments) travel in the JSON tail.
"""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic import ValidationError as PydanticValidationError

from spanlog.errors import MalformedToken

ENCODING_VERSION_NUMBER = 2

_HEADER_LEN = 3
_UUID_ENTRY_LEN = 17


class SpanObjectType(IntEnum):
    EXPERIMENT = 1
    PROJECT_LOGS = 2


class _UuidField(IntEnum):
    OBJECT_ID = 1
    ROW_ID = 2
    SPAN_ID = 3
    ROOT_SPAN_ID = 4


_UUID_FIELD_NAMES: dict[_UuidField, str] = {
    _UuidField.OBJECT_ID: "object_id",
    _UuidField.ROW_ID: "row_id",
    _UuidField.SPAN_ID: "span_id",
    _UuidField.ROOT_SPAN_ID: "root_span_id",
}


class SpanRowIds(BaseModel):
    """Ids of an existing row, needed to attach children or update it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    row_id: str
    span_id: str
    root_span_id: str

    @model_validator(mode="after")
    def _non_empty(self) -> "SpanRowIds":
        if not (self.row_id and self.span_id and self.root_span_id):
            raise ValueError("row_id, span_id and root_span_id must all be non-empty")
        return self


class SpanComponents(BaseModel):
    """Decoded form of a span export token."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    object_type: SpanObjectType
    object_id: str | None = None
    compute_object_metadata_args: dict[str, Any] | None = None
    row_ids: SpanRowIds | None = None

    @model_validator(mode="after")
    def _check_object_reference(self) -> "SpanComponents":
        has_id = bool(self.object_id)
        has_args = self.compute_object_metadata_args is not None
        if has_id == has_args:
            raise ValueError("exactly one of object_id or compute_object_metadata_args must be set")
        if self.object_type == SpanObjectType.EXPERIMENT and not has_id:
            raise ValueError("experiment span components require an object_id")
        return self

    def object_id_fields(self) -> dict[str, str]:
        """Linkage fields identifying the container that owns a row."""
        if not self.object_id:
            raise ValueError("object_id_fields requires a resolved object_id")
        if self.object_type == SpanObjectType.EXPERIMENT:
            return {"experiment_id": self.object_id}
        return {"project_id": self.object_id, "log_id": "g"}

    def to_str(self) -> str:
        values: dict[str, Any] = {"object_id": self.object_id}
        if self.row_ids is not None:
            values.update(self.row_ids.model_dump())

        packed: list[bytes] = []
        for field_id, name in _UUID_FIELD_NAMES.items():
            raw = _uuid_bytes(values.get(name))
            if raw is not None:
                packed.append(bytes([field_id]) + raw)
                values.pop(name)

        json_fields = {k: v for k, v in values.items() if v is not None}
        if self.compute_object_metadata_args is not None:
            json_fields["compute_object_metadata_args"] = self.compute_object_metadata_args

        header = bytes([ENCODING_VERSION_NUMBER, int(self.object_type), len(packed)])
        tail = json.dumps(json_fields, separators=(",", ":")).encode("utf-8") if json_fields else b""
        return base64.b64encode(header + b"".join(packed) + tail).decode("ascii")

    @classmethod
    def from_str(cls, token: str) -> "SpanComponents":
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
            raise MalformedToken(f"span token is not valid base64: {token!r}", original=exc) from exc
        if len(raw) < _HEADER_LEN:
            raise MalformedToken(f"span token too short ({len(raw)} bytes)")

        version, object_type_byte, num_uuids = raw[0], raw[1], raw[2]
        if version != ENCODING_VERSION_NUMBER:
            raise MalformedToken(
                f"unsupported span token version {version}; expected {ENCODING_VERSION_NUMBER}"
            )
        try:
            object_type = SpanObjectType(object_type_byte)
        except ValueError as exc:
            raise MalformedToken(f"unknown span object type {object_type_byte}", original=exc) from exc

        offset = _HEADER_LEN
        fields: dict[str, Any] = {}
        for _ in range(num_uuids):
            entry = raw[offset : offset + _UUID_ENTRY_LEN]
            if len(entry) < _UUID_ENTRY_LEN:
                raise MalformedToken("span token truncated inside uuid section")
            try:
                name = _UUID_FIELD_NAMES[_UuidField(entry[0])]
            except ValueError as exc:
                raise MalformedToken(f"unknown span token field id {entry[0]}", original=exc) from exc
            fields[name] = str(uuid.UUID(bytes=bytes(entry[1:])))
            offset += _UUID_ENTRY_LEN

        tail = raw[offset:]
        if tail:
            try:
                parsed = json.loads(tail.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise MalformedToken("span token JSON section is not valid", original=exc) from exc
            if not isinstance(parsed, dict):
                raise MalformedToken("span token JSON section must be an object")
            fields.update(parsed)

        row_keys = ("row_id", "span_id", "root_span_id")
        present = [k for k in row_keys if fields.get(k)]
        if present and len(present) != len(row_keys):
            raise MalformedToken(f"span token has partial row ids: {sorted(present)}")

        try:
            return cls(
                object_type=object_type,
                object_id=fields.get("object_id"),
                compute_object_metadata_args=fields.get("compute_object_metadata_args"),
                row_ids=SpanRowIds(**{k: fields[k] for k in row_keys}) if present else None,
            )
        except PydanticValidationError as exc:
            raise MalformedToken(f"span token is missing required fields: {exc}", original=exc) from exc


def _uuid_bytes(value: Any) -> bytes | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        return None
    # Only canonical spellings round-trip byte-for-byte.
    if str(parsed) != value:
        return None
    return parsed.bytes
