"""
Canonical Serializer: deterministic byte encoding of report payloads.

Two structurally equal values always produce identical bytes:
- object keys sorted by their UTF-8 bytes, no whitespace
- arrays keep their order
- numbers have exactly one textual form (42, 42.0 and Decimal("42.00")
  all encode as 42; fractions are fixed-point, never exponent notation)
- anything that is not null, bool, number, string, list or dict is rejected

The output is valid JSON, so stored payloads stay readable by other tools,
but only this module's encoding is authoritative for hashing.
"""

import json
import math
from decimal import Decimal
from typing import Any

from ..core.security import sha256_hex
from .errors import UnserializableValueError


def canonicalize(value: Any) -> bytes:
    """Encode a payload tree into its canonical UTF-8 bytes."""
    parts: list[str] = []
    _encode(value, parts, set(), "$")
    try:
        return "".join(parts).encode("utf-8")
    except UnicodeEncodeError as e:
        raise UnserializableValueError(f"String is not valid Unicode: {e.reason}")


def canonical_hash(value: Any) -> str:
    """Lowercase hex SHA-256 of the canonical encoding."""
    return sha256_hex(canonicalize(value))


def _encode(value: Any, out: list[str], active: set[int], path: str) -> None:
    if value is None:
        out.append("null")
    # bool is a subclass of int, so it must be checked first
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, str):
        out.append(json.dumps(value, ensure_ascii=False))
    elif isinstance(value, (int, float, Decimal)):
        out.append(_encode_number(value, path))
    elif isinstance(value, dict):
        _enter(value, active, path)
        keys = list(value.keys())
        for key in keys:
            if not isinstance(key, str):
                raise UnserializableValueError(
                    f"Object key must be a string, got {type(key).__name__}", path
                )
        out.append("{")
        for i, key in enumerate(sorted(keys, key=lambda k: _utf8_key(k, path))):
            if i:
                out.append(",")
            out.append(json.dumps(key, ensure_ascii=False))
            out.append(":")
            _encode(value[key], out, active, f"{path}.{key}")
        out.append("}")
        active.discard(id(value))
    elif isinstance(value, (list, tuple)):
        _enter(value, active, path)
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _encode(item, out, active, f"{path}[{i}]")
        out.append("]")
        active.discard(id(value))
    else:
        raise UnserializableValueError(
            f"Unsupported type {type(value).__name__}", path
        )


def _enter(container: Any, active: set[int], path: str) -> None:
    marker = id(container)
    if marker in active:
        raise UnserializableValueError("Cyclic reference", path)
    active.add(marker)


def _utf8_key(key: str, path: str) -> bytes:
    try:
        return key.encode("utf-8")
    except UnicodeEncodeError:
        raise UnserializableValueError("Object key is not valid Unicode", path)


def _integer_text(value: int, path: str) -> str:
    try:
        return str(value)
    except ValueError:
        # Beyond the interpreter's int-to-str digit limit
        raise UnserializableValueError("Integer too large", path)


def _encode_number(value: int | float | Decimal, path: str) -> str:
    if isinstance(value, int):
        return _integer_text(value, path)

    if isinstance(value, float):
        if not math.isfinite(value):
            raise UnserializableValueError("Non-finite number", path)
        # repr is the shortest round-tripping form on every platform
        number = Decimal(repr(value))
    else:
        if not value.is_finite():
            raise UnserializableValueError("Non-finite number", path)
        number = value

    if number == number.to_integral_value():
        return _integer_text(int(number), path)
    return format(number.normalize(), "f")
