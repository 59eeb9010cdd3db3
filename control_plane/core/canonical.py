"""Canonical JSON and hashing helpers for verifying copied records."""
from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any
from uuid import UUID


def _canonical_value(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        return obj
    if isinstance(obj, Mapping):
        return {str(key): _canonical_value(value) for key, value in sorted(obj.items(), key=lambda item: str(item[0]))}
    if isinstance(obj, (list, tuple)):
        return [_canonical_value(value) for value in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    return str(obj)


def canonical_json(obj: Any) -> str:
    return json.dumps(_canonical_value(obj), sort_keys=True, separators=(",", ":"))


def records_checksum(records: Iterable[Mapping[str, Any]]) -> str:
    """SHA-256 over the canonical JSON of ``records`` ordered by their ``id``."""
    ordered = sorted((_canonical_value(record) for record in records), key=lambda record: str(record.get("id")))
    return hashlib.sha256(canonical_json(ordered).encode()).hexdigest()
