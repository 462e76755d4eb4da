"""Closed JSON value type used at the trust boundary.

Payloads coming back from a sandbox are untrusted. Instead of duck-typed
``dict.get`` chains, decoders go through ``JsonObject`` which checks every
field it reads and reports the offending path. Keys a decoder does not ask for
are ignored, so manifests and responses can grow new fields.
"""

import json
import math
from collections.abc import Mapping, Sequence
from typing import Union

from sandlint.domain.errors import SchemaMismatch

JsonScalar = Union[None, bool, int, float, str]
JsonValue = Union[JsonScalar, list["JsonValue"], dict[str, "JsonValue"]]


class JsonValues:
    """Helpers for validating and serializing ``JsonValue`` trees."""

    @staticmethod
    def is_json_value(value: object) -> bool:
        """True when value is built only from JSON-representable types."""
        stack: list[object] = [value]
        while stack:
            current = stack.pop()
            if current is None or isinstance(current, (bool, int, str)):
                continue
            if isinstance(current, float):
                if not math.isfinite(current):
                    return False
                continue
            if isinstance(current, (list, tuple)):
                stack.extend(current)
                continue
            if isinstance(current, dict):
                if not all(isinstance(k, str) for k in current):
                    return False
                stack.extend(current.values())
                continue
            return False
        return True

    @staticmethod
    def canonical(value: object) -> bytes:
        """Deterministic UTF-8 encoding: sorted keys, no insignificant whitespace."""
        return json.dumps(
            value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        ).encode("utf-8")


class JsonObject:
    """Typed read access to one JSON object, with a path for error messages."""

    def __init__(self, data: Mapping[str, object], where: str = "$") -> None:
        self._data = data
        self.where = where

    @classmethod
    def parse(cls, raw: bytes, where: str = "$") -> "JsonObject":
        """Decode UTF-8 JSON bytes whose top-level value must be an object."""
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SchemaMismatch(f"{where}: payload is not valid UTF-8 ({exc})") from exc
        try:
            value = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SchemaMismatch(f"{where}: invalid JSON ({exc.msg} at offset {exc.pos})") from exc
        except RecursionError as exc:
            raise SchemaMismatch(f"{where}: invalid JSON (nesting too deep)") from exc
        except ValueError as exc:
            # e.g. integer literals past the int-to-str digit limit
            raise SchemaMismatch(f"{where}: invalid JSON ({exc})") from exc
        return cls.wrap(value, where)

    @classmethod
    def wrap(cls, value: object, where: str) -> "JsonObject":
        if not isinstance(value, dict):
            raise SchemaMismatch(f"{where}: expected object, got {cls.type_name(value)}")
        return cls(value, where)

    @staticmethod
    def type_name(value: object) -> str:
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, (int, float)):
            return "number"
        if isinstance(value, str):
            return "string"
        if isinstance(value, list):
            return "array"
        if isinstance(value, dict):
            return "object"
        return type(value).__name__

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def _path(self, key: str) -> str:
        return f"{self.where}.{key}"

    def _required(self, key: str) -> object:
        if key not in self._data:
            raise SchemaMismatch(f"{self._path(key)}: missing required field")
        return self._data[key]

    def _mismatch(self, key: str, expected: str, value: object) -> SchemaMismatch:
        return SchemaMismatch(f"{self._path(key)}: expected {expected}, got {self.type_name(value)}")

    def require_str(self, key: str) -> str:
        value = self._required(key)
        if not isinstance(value, str):
            raise self._mismatch(key, "string", value)
        return value

    def optional_str(self, key: str, default: str | None = None) -> str | None:
        value = self._data.get(key)
        if value is None:
            return default
        if not isinstance(value, str):
            raise self._mismatch(key, "string", value)
        return value

    def require_int(self, key: str) -> int:
        value = self._required(key)
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._mismatch(key, "integer", value)
        return value

    def optional_int(self, key: str) -> int | None:
        if self._data.get(key) is None:
            return None
        return self.require_int(key)

    def optional_bool(self, key: str, default: bool = False) -> bool:
        value = self._data.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise self._mismatch(key, "boolean", value)
        return value

    def require_list(self, key: str) -> Sequence[object]:
        value = self._required(key)
        if not isinstance(value, list):
            raise self._mismatch(key, "array", value)
        return value

    def optional_list(self, key: str) -> Sequence[object]:
        if self._data.get(key) is None:
            return []
        return self.require_list(key)

    def child(self, key: str) -> "JsonObject":
        return JsonObject.wrap(self._required(key), self._path(key))

    def optional_child(self, key: str) -> "JsonObject | None":
        if self._data.get(key) is None:
            return None
        return self.child(key)

    def optional_object(self, key: str) -> dict[str, JsonValue]:
        """Return a nested object as a plain dict (used for opaque schemas)."""
        if self._data.get(key) is None:
            return {}
        value = self._data[key]
        if not isinstance(value, dict):
            raise self._mismatch(key, "object", value)
        return value

    def items_of(self, key: str, *, required: bool = True) -> list["JsonObject"]:
        """Wrap every element of an array field as an object."""
        values = self.require_list(key) if required else self.optional_list(key)
        return [JsonObject.wrap(v, f"{self._path(key)}[{i}]") for i, v in enumerate(values)]
