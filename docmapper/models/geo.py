"""
Native geo values stored by point fields.

``Point`` is the native representation produced from ``{latitude,
longitude}`` mappings or ``[longitude, latitude]`` pairs; ``Geometry`` tags an
arbitrary GeoJSON object so it passes through projection untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

__all__ = ["Point", "Geometry"]


@dataclass(frozen=True)
class Point:
    longitude: float
    latitude: float

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": "Point", "coordinates": [self.longitude, self.latitude]}


@dataclass(frozen=True)
class Geometry:
    """A GeoJSON object tagged as geometry."""

    geojson: Dict[str, Any] = field(hash=False)

    @property
    def type(self) -> str:
        return self.geojson.get("type", "")

    def to_geojson(self) -> Dict[str, Any]:
        return dict(self.geojson)
