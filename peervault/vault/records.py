"""
Record payload serialization.

Payloads are JSON values stored by the engine as orjson-encoded bytes and
handed back exactly as written. Binary content travels as the record's
attachment, never inside the payload.
"""
from typing import Any, Optional

import orjson

from ..exceptions import InvalidInputError


class AttachedRecord(dict):
    """Deserialized record payload with its binary attachment.

    The attachment is exposed as the read-only ``file`` attribute; the
    mapping itself is exactly the stored payload.
    """

    __slots__ = ("_file",)

    def __init__(self, data: dict, file: bytes):
        super().__init__(data)
        self._file = file

    @property
    def file(self) -> bytes:
        return self._file


def serialize_value(value: Any) -> bytes:
    """Serialize a JSON value to bytes for storage.

    Supports: str, int, float, dict, list, bool, None.

    Raises:
        InvalidInputError: For bytes or any other non-JSON value.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        raise InvalidInputError("Binary data must be stored as an attachment")
    try:
        return orjson.dumps(value)
    except orjson.JSONEncodeError as err:
        raise InvalidInputError(f"Record data is not JSON serializable: {err}") from err


def deserialize_value(data: Any) -> Any:
    """Deserialize stored bytes (or str) back to the JSON value."""
    return orjson.loads(data)


def load_record(value: Any, file: Optional[bytes] = None) -> Any:
    """Deserialize a stored record, attaching ``file`` when present."""
    parsed = deserialize_value(value)
    if file is not None and isinstance(parsed, dict):
        return AttachedRecord(parsed, file)
    return parsed
