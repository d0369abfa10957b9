"""
JSON codec for stored rows.

Native values that JSON cannot represent are written as tagged objects and
restored on read:

    datetime  -> {"$type": "TIME", "iso": "..."}
    Point     -> {"$type": "GEOMETRY", "point": [longitude, latitude]}
    Geometry  -> {"$type": "GEOMETRY", "geojson": {...}}
    bytes     -> {"$type": "BINARY", "data": "<base64>"}
"""

from __future__ import annotations

import base64
import datetime
import json
from typing import Any, Dict

from ..models.geo import Geometry, Point

__all__ = ["encode", "decode", "dumps", "loads", "encode_key"]

TYPE_TAG = "$type"


def encode(value: Any) -> Any:
    """Convert ``value`` into plain JSON-compatible data."""
    if isinstance(value, datetime.datetime):
        return {TYPE_TAG: "TIME", "iso": value.isoformat()}
    if isinstance(value, Point):
        return {TYPE_TAG: "GEOMETRY", "point": [value.longitude, value.latitude]}
    if isinstance(value, Geometry):
        return {TYPE_TAG: "GEOMETRY", "geojson": encode(value.geojson)}
    if isinstance(value, (bytes, bytearray)):
        return {TYPE_TAG: "BINARY", "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {key: encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    return value


def _restore(obj: Dict[str, Any]) -> Any:
    tag = obj.get(TYPE_TAG)
    if tag == "TIME" and "iso" in obj:
        return datetime.datetime.fromisoformat(obj["iso"])
    if tag == "GEOMETRY" and "point" in obj:
        longitude, latitude = obj["point"]
        return Point(longitude=longitude, latitude=latitude)
    if tag == "GEOMETRY" and "geojson" in obj:
        return Geometry(obj["geojson"])
    if tag == "BINARY" and "data" in obj:
        return base64.b64decode(obj["data"])
    return obj


def decode(value: Any) -> Any:
    """Inverse of ``encode`` for already-parsed JSON data."""
    if isinstance(value, dict):
        return _restore({key: decode(item) for key, item in value.items()})
    if isinstance(value, list):
        return [decode(item) for item in value]
    return value


def dumps(value: Any) -> str:
    return json.dumps(encode(value), separators=(",", ":"), sort_keys=True)


def loads(text: str) -> Any:
    return json.loads(text, object_hook=_restore)


def encode_key(key: Any) -> str:
    """Stable text form of a primary key."""
    return json.dumps(encode(key), separators=(",", ":"), sort_keys=True)
