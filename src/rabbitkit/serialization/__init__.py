"""
Wire serialization for rabbitkit message bodies.

Message bodies travel as UTF-8 encoded JSON. This package turns outgoing
messages into body bytes and decodes received bodies, with support for
UUIDs, datetimes and pydantic models.

Example:
    >>> from rabbitkit.serialization import encode_body, json_loads
    >>> body = encode_body({"order_id": 42})
    >>> json_loads(body)
    {'order_id': 42}
"""

from rabbitkit.serialization.json import (
    CONTENT_TYPE_JSON,
    RabbitKitJSONEncoder,
    encode_body,
    json_dumps,
    json_loads,
)

__all__ = [
    "CONTENT_TYPE_JSON",
    "RabbitKitJSONEncoder",
    "encode_body",
    "json_dumps",
    "json_loads",
]
