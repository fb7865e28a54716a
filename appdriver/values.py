"""JSON values returned from scripts evaluated in the page."""

from __future__ import annotations

import math
from typing import Any, Union

from appdriver.errors import ScriptError

JsonValue = Union[None, bool, int, float, str, list["JsonValue"], dict[str, "JsonValue"]]

_UNSERIALIZABLE = {
    "NaN": math.nan,
    "Infinity": math.inf,
    "-Infinity": -math.inf,
    "-0": -0.0,
}


def json_kind(value: JsonValue) -> str:
    """Return the JSON type tag of a value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    raise TypeError(f"{type(value).__name__} is not a JSON value")


def to_json_value(value: Any) -> JsonValue:
    """Validate that ``value`` is a JSON tree, converting tuples to lists."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    if isinstance(value, dict):
        out: dict[str, JsonValue] = {}
        for key, v in value.items():
            if not isinstance(key, str):
                raise TypeError(f"JSON object keys must be strings, got {key!r}")
            out[key] = to_json_value(v)
        return out
    raise TypeError(f"{type(value).__name__} is not a JSON value")


def from_remote_object(obj: dict[str, Any]) -> JsonValue:
    """Convert a DevTools ``RemoteObject`` fetched with ``returnByValue``."""
    kind = obj.get("type")
    if kind == "undefined":
        return None
    if "unserializableValue" in obj:
        raw = obj["unserializableValue"]
        if raw in _UNSERIALIZABLE:
            return _UNSERIALIZABLE[raw]
        if raw.endswith("n"):
            return int(raw[:-1])
        raise ScriptError(f"Script returned an unserializable value: {raw}")
    if kind in ("function", "symbol"):
        description = obj.get("description", kind)
        raise ScriptError(f"Script returned a {kind} ({description}), which is not JSON")
    try:
        return to_json_value(obj.get("value"))
    except TypeError as e:
        raise ScriptError(f"Script result is not JSON: {e}")
