"""Query encoding and value conversion between Python and the wire format.

Wire values follow the JSON mapping of the backend API: 64-bit integers and
NUMERIC travel as strings, BYTES as base64, timestamps as RFC 3339 in UTC,
and non-finite floats as "NaN" / "Infinity" / "-Infinity".
"""

import base64
import json
import math
import re
from collections.abc import Mapping
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from managed_db.row import Row

Query = str | Mapping[str, Any]

_SIMPLE_TYPES = {
    "bool": "BOOL",
    "int64": "INT64",
    "float64": "FLOAT64",
    "numeric": "NUMERIC",
    "string": "STRING",
    "bytes": "BYTES",
    "timestamp": "TIMESTAMP",
    "date": "DATE",
    "json": "JSON",
}

# datetime.fromisoformat keeps at most microseconds
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def encode_query(query: Query) -> dict[str, Any]:
    """Translate a logical query into an executeSql request body.

    A bare string is shorthand for ``{"sql": string}``. ``params`` values are
    encoded and their types inferred; entries in ``types`` override the
    inferred types (and are required for ``None`` parameters). Any other
    keys pass through untouched.
    """
    if isinstance(query, str):
        query = {"sql": query}
    request = dict(query)
    params = request.pop("params", None)
    types = request.pop("types", None) or {}

    if params:
        request["params"] = {name: encode_value(value) for name, value in params.items()}
        param_types = {
            name: type_of(value) for name, value in params.items() if value is not None
        }
        param_types.update({name: to_wire_type(spec) for name, spec in types.items()})
        request["paramTypes"] = param_types
    return request


def encode_value(value: Any) -> Any:
    """Convert a Python value to its wire representation."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Row):
        return [encode_value(v) for v in value]
    if isinstance(value, Mapping):
        return [encode_value(v) for v in value.values()]
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    raise TypeError(f"Unsupported parameter type: {type(value).__name__}")


def type_of(value: Any) -> dict[str, Any]:
    """Infer the wire type of a Python value."""
    if isinstance(value, bool):
        return {"code": "BOOL"}
    if isinstance(value, int):
        return {"code": "INT64"}
    if isinstance(value, float):
        return {"code": "FLOAT64"}
    if isinstance(value, Decimal):
        return {"code": "NUMERIC"}
    if isinstance(value, str):
        return {"code": "STRING"}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"code": "BYTES"}
    if isinstance(value, datetime):
        return {"code": "TIMESTAMP"}
    if isinstance(value, date):
        return {"code": "DATE"}
    if isinstance(value, (Row, Mapping)):
        items = value.to_dict().items() if isinstance(value, Row) else value.items()
        return {
            "code": "STRUCT",
            "structType": {
                "fields": [{"name": name, "type": type_of(v)} for name, v in items]
            },
        }
    if isinstance(value, (list, tuple)):
        child = next((v for v in value if v is not None), None)
        element = type_of(child) if child is not None else {"code": "STRING"}
        return {"code": "ARRAY", "arrayElementType": element}
    raise TypeError(f"Unsupported parameter type: {type(value).__name__}")


def to_wire_type(spec: str | Mapping[str, Any]) -> dict[str, Any]:
    """Convert a user type hint to a wire type.

    Accepts ``"int64"``, ``{"type": "array", "child": "string"}`` and
    ``{"type": "struct", "fields": [{"name": ..., "type": ...}]}``.
    """
    if isinstance(spec, str):
        name = spec.lower()
        if name not in _SIMPLE_TYPES:
            raise ValueError(f"Unknown type: {spec}")
        return {"code": _SIMPLE_TYPES[name]}

    kind = str(spec.get("type", "")).lower()
    if kind == "array":
        return {"code": "ARRAY", "arrayElementType": to_wire_type(spec.get("child", "string"))}
    if kind == "struct":
        return {
            "code": "STRUCT",
            "structType": {
                "fields": [
                    {"name": f.get("name", ""), "type": to_wire_type(f["type"])}
                    for f in spec.get("fields", [])
                ]
            },
        }
    return to_wire_type(kind)


def decode_value(value: Any, field_type: Mapping[str, Any]) -> Any:
    """Convert a wire value to Python according to its column type."""
    if value is None:
        return None
    code = field_type.get("code", "STRING")
    if code == "INT64":
        return int(value)
    if code == "FLOAT64":
        return float(value)
    if code == "BOOL":
        return bool(value)
    if code == "NUMERIC":
        return Decimal(value)
    if code == "BYTES":
        return base64.b64decode(value)
    if code == "TIMESTAMP":
        text = _FRACTION_RE.sub(r".\1", value).replace("Z", "+00:00")
        return datetime.fromisoformat(text)
    if code == "DATE":
        return date.fromisoformat(value)
    if code == "JSON":
        return json.loads(value)
    if code == "ARRAY":
        element = field_type.get("arrayElementType", {})
        return [decode_value(v, element) for v in value]
    if code == "STRUCT":
        fields = field_type.get("structType", {}).get("fields", [])
        return decode_row(fields, value)
    return value


def decode_row(fields: list[Mapping[str, Any]], values: list[Any]) -> Row:
    """Build a Row from result metadata fields and raw wire values."""
    names = [f.get("name", "") for f in fields]
    decoded = [decode_value(v, f.get("type", {})) for f, v in zip(fields, values, strict=True)]
    return Row(names, decoded)
