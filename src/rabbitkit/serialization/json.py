"""
JSON serialization utilities for message bodies.

This module provides utilities for JSON serialization of common types
that are not natively JSON-serializable, such as UUIDs, datetimes and
pydantic models, and the single function publishers use to turn an
outgoing message into body bytes.

Example:
    >>> from rabbitkit.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>>
    >>> data = {"id": uuid4()}
    >>> json_str = json_dumps(data)
    >>> parsed = json_loads(json_str)
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel

CONTENT_TYPE_JSON = "application/json"
ENCODING = "utf-8"


class RabbitKitJSONEncoder(json.JSONEncoder):
    """
    Custom JSON encoder for message payloads.

    This encoder extends the standard JSONEncoder to support serialization of:
    - UUID objects: Converted to string representation
    - datetime and date objects: Converted to ISO 8601 format string
    - Decimal: Converted to string to keep precision (monetary amounts)
    - Enum members: Converted to their value
    - pydantic models: Converted with ``model_dump(mode="json")``

    Example:
        >>> import json
        >>> from uuid import uuid4
        >>> from datetime import datetime, UTC
        >>>
        >>> data = {"id": uuid4(), "timestamp": datetime.now(UTC)}
        >>> json_str = json.dumps(data, cls=RabbitKitJSONEncoder)
    """

    def default(self, obj: Any) -> Any:
        """
        Convert non-serializable objects to JSON-serializable formats.

        Args:
            obj: Object to serialize

        Returns:
            JSON-serializable representation

        Raises:
            TypeError: If object type is not supported
        """
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to JSON string with UUID, datetime and model support.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=RabbitKitJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON document (str, or UTF-8 bytes) to a Python object.

    UUID and datetime strings are NOT converted back to their original
    types; that is the handler's responsibility.
    """
    return json.loads(s)


def encode_body(message: Any) -> bytes:
    """
    Turn an outgoing message into a UTF-8 JSON body.

    ``bytes`` are passed through unchanged and ``str`` is encoded as-is,
    so callers that already hold serialized JSON keep a byte-identical body.
    Pydantic models use their own JSON serializer; anything else goes
    through json_dumps.

    Args:
        message: The message to serialize

    Returns:
        Body bytes

    Raises:
        TypeError: If the message contains unsupported types
    """
    if isinstance(message, bytes | bytearray | memoryview):
        return bytes(message)
    if isinstance(message, str):
        return message.encode(ENCODING)
    if isinstance(message, BaseModel):
        return message.model_dump_json().encode(ENCODING)
    return json_dumps(message).encode(ENCODING)


__all__ = [
    "CONTENT_TYPE_JSON",
    "ENCODING",
    "RabbitKitJSONEncoder",
    "encode_body",
    "json_dumps",
    "json_loads",
]
