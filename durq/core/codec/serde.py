# durq/core/codec/serde.py
from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Union
import json
from durq.core.logging import get_logger

logger = get_logger('serde')


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(ValueError):
    """
    Raised when a payload cannot be serialized to or from JSON.
    """

    pass


def dumps_payload(payload: Mapping[str, Any]) -> str:
    """
    Serialize an item payload to a compact JSON string.

    The payload is opaque to the queue; it only has to be a JSON object.

    Raises:
        SerializationError: if the payload is not a mapping or holds values
            JSON cannot represent (NaN, sets, arbitrary objects).
    """
    if not isinstance(payload, Mapping):
        raise SerializationError(
            f'payload must be a JSON object (mapping), got {type(payload).__name__}'
        )
    try:
        return json.dumps(
            dict(payload),
            ensure_ascii=False,
            separators=(',', ':'),
            allow_nan=False,  # PostgreSQL JSONB rejects NaN
        )
    except (TypeError, ValueError) as exc:
        raise SerializationError(f'payload is not JSON-serializable: {exc}') from exc


def loads_payload(raw: Optional[Union[str, bytes, Mapping[str, Any]]]) -> Dict[str, Json]:
    """
    Decode a payload read back from the database.

    psycopg already decodes JSONB into Python objects, so a mapping is returned
    as a plain dict; strings (e.g. from a text cast) are parsed.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise SerializationError(f'stored payload is not valid JSON: {exc}') from exc
    if not isinstance(decoded, dict):
        logger.warning(f'Stored payload is not a JSON object ({type(decoded).__name__}); wrapping it')
        return {'value': decoded}
    return decoded
