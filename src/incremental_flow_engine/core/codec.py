"""Value encoding, canonical JSON and fingerprints."""

from __future__ import annotations

import base64
import hashlib
import json
import uuid
from datetime import date, datetime
from typing import Any, Iterable

# Namespace for generated entry UUIDs. Changing it changes every generated id.
ENTRY_UUID_NAMESPACE = uuid.UUID("6f4c1b8e-2d0a-5c7e-9a3b-1e8f4d2c7b60")


def to_jsonable(value: Any) -> Any:
    """Encode a value into JSON-safe form, tagging non-JSON types."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, uuid.UUID):
        return {"$uuid": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    if isinstance(value, tuple):
        return {"$tuple": [to_jsonable(v) for v in value]}
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((to_jsonable(v) for v in value), key=canonical_json)
    # numpy arrays and similar expose tolist()
    if hasattr(value, "tolist"):
        return to_jsonable(value.tolist())
    raise TypeError(f"Value of type {type(value).__name__} is not serializable")


def from_jsonable(value: Any) -> Any:
    """Decode a value produced by to_jsonable."""
    if isinstance(value, list):
        return [from_jsonable(v) for v in value]
    if isinstance(value, dict):
        if len(value) == 1:
            (tag, payload), = value.items()
            if tag == "$uuid":
                return uuid.UUID(payload)
            if tag == "$bytes":
                return base64.b64decode(payload)
            if tag == "$datetime":
                return datetime.fromisoformat(payload)
            if tag == "$date":
                return date.fromisoformat(payload)
            if tag == "$tuple":
                return tuple(from_jsonable(v) for v in payload)
        return {k: from_jsonable(v) for k, v in value.items()}
    return value


def canonical_json(value: Any) -> str:
    """Deterministic JSON text for a value (sorted keys, no whitespace)."""
    return json.dumps(to_jsonable(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(value: Any) -> str:
    """Stable content hash of a value."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def key_str(key: Any) -> str:
    """String form of a row or primary key, used as a state mapping key."""
    return canonical_json(key)


def generate_entry_uuid(values: Iterable[Any], key_path: Iterable[Any] = ()) -> uuid.UUID:
    """UUID derived from the non-generated field values of an entry and
    the key path of the row that collected it.

    Identical values collected by the same row always produce the identical
    UUID across runs; the same values under different parent rows do not
    collide.
    """
    return uuid.uuid5(ENTRY_UUID_NAMESPACE, canonical_json([list(key_path), list(values)]))
