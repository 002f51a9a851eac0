"""
Deterministic hashing and canonicalization for request fingerprints.

The simulation layer keys every recorded response by a fingerprint of the
operation name plus its request. Two requests that are logically identical
must hash identically even when they were built differently (dict insertion
order, ``1.5`` vs ``1.5000000001`` from float arithmetic, a tuple vs a list),
so requests are canonicalized before hashing.

Manifesto:
    - **Deterministic:** Same inputs → same output, across processes and runs
    - **Order-independent maps:** Keys are sorted before serialization
    - **Fixed float precision:** Floats are rounded before serialization
    - **Order-dependent values:** ``compute_hash(a, b) != compute_hash(b, a)``

Architecture:
    ::

        payload ──canonicalize()──▶ plain JSON types ──canonical_json()──▶ str
                                                                            │
        operation name ─────────────────────┐                              │
                                            ▼                              ▼
                                    compute_hash(name, canonical_json) = fingerprint

Canonicalization rules:
    - ``dict``: keys stringified and sorted
    - ``list``/``tuple``: list, order preserved
    - ``set``/``frozenset``: sorted list of canonical elements
    - ``float``: rounded to ``precision`` digits; NaN/Inf become strings;
      ``-0.0`` becomes ``0.0``
    - ``Decimal``: treated as the float it denotes
    - ``datetime``/``date``: ISO-8601 string (aware datetimes in UTC)
    - ``Enum``: its value
    - ``bytes``: hex string
    - dataclasses / objects with ``model_dump()``: their dict form

Examples:
    >>> fingerprint("issue.get", {"b": 1, "a": 2.0000000001})
    ... == fingerprint("issue.get", {"a": 2.0, "b": 1})
    True

Tags:
    hashing, canonicalization, fingerprint, simulation, bulwark

Doc-Types:
    - API Reference
"""

import dataclasses
import hashlib
import json
import math
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

DEFAULT_FLOAT_PRECISION = 6


def compute_hash(*values: Any, length: int = 64) -> str:
    """
    Compute deterministic hash from values.

    Joins the string form of every value with ``|`` and returns the SHA-256
    hex digest truncated to ``length`` characters.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 64 = full SHA-256)

    Returns:
        Hex string of specified length
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def canonicalize(value: Any, precision: int = DEFAULT_FLOAT_PRECISION) -> Any:
    """Reduce ``value`` to plain JSON types in a canonical form."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Enum):
        return canonicalize(value.value, precision)
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        return canonicalize(float(value), precision)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        rounded = round(value, precision)
        return 0.0 if rounded == 0 else rounded
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {
            str(k): canonicalize(v, precision)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
        }
    if isinstance(value, (list, tuple)):
        return [canonicalize(v, precision) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [canonicalize(v, precision) for v in value]
        return sorted(items, key=canonical_json)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return canonicalize(dataclasses.asdict(value), precision)
    if hasattr(value, "model_dump"):
        return canonicalize(value.model_dump(mode="json"), precision)
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def canonical_json(value: Any) -> str:
    """Serialize an already-canonical value to a compact, key-sorted string."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(
    operation_name: str,
    request: Any,
    precision: int = DEFAULT_FLOAT_PRECISION,
) -> str:
    """Fingerprint an (operation, request) pair for simulation lookup."""
    return compute_hash(operation_name, canonical_json(canonicalize(request, precision)))


__all__ = [
    "DEFAULT_FLOAT_PRECISION",
    "compute_hash",
    "canonicalize",
    "canonical_json",
    "fingerprint",
]
