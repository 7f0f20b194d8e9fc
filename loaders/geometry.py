"""
GeoJSON helpers shared by the loaders.

Parcels arrive as a bare Polygon/MultiPolygon, a Feature or a
FeatureCollection; upstream APIs want different wrappings of the same shape.
"""

import json
from typing import Any, Dict, List, Optional, Tuple, Union

GeoJSON = Union[str, Dict[str, Any]]


def _load(geometry: GeoJSON) -> Dict[str, Any]:
    if isinstance(geometry, str):
        return json.loads(geometry)
    return geometry or {}


def ensure_feature_collection(geometry: GeoJSON) -> Dict[str, Any]:
    """Wrap a geometry or Feature into a FeatureCollection."""
    geojson = _load(geometry)
    kind = geojson.get("type")
    if kind == "FeatureCollection":
        return geojson
    if kind == "Feature":
        return {"type": "FeatureCollection", "features": [geojson]}
    return {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "properties": {}, "geometry": geojson}],
    }


def extract_polygon(geometry: GeoJSON) -> Optional[Dict[str, Any]]:
    """First Polygon/MultiPolygon geometry found, or None."""
    geojson = _load(geometry)
    kind = geojson.get("type")
    if kind == "FeatureCollection":
        for feature in geojson.get("features") or []:
            found = extract_polygon(feature)
            if found:
                return found
        return None
    if kind == "Feature":
        return extract_polygon(geojson.get("geometry") or {})
    if kind in ("Polygon", "MultiPolygon"):
        return geojson
    return None


def _rings(polygon: Dict[str, Any]) -> List[List[List[float]]]:
    if polygon["type"] == "Polygon":
        return polygon["coordinates"][:1]
    return [p[0] for p in polygon["coordinates"]]


def bbox_from_geojson(geometry: GeoJSON) -> Optional[Tuple[float, float, float, float]]:
    """(min_lon, min_lat, max_lon, max_lat) of the parcel outline."""
    polygon = extract_polygon(geometry)
    if polygon is None:
        return None
    coords = [pt for ring in _rings(polygon) for pt in ring]
    if not coords:
        return None
    lons = [c[0] for c in coords]
    lats = [c[1] for c in coords]
    return min(lons), min(lats), max(lons), max(lats)


def centroid(geometry: GeoJSON) -> Optional[Tuple[float, float]]:
    """(lat, lon) vertex mean of the outer ring."""
    polygon = extract_polygon(geometry)
    if polygon is None:
        return None
    ring = _rings(polygon)[0]
    if not ring:
        return None
    return sum(p[1] for p in ring) / len(ring), sum(p[0] for p in ring) / len(ring)


def extract_records(payload: Any) -> List[Dict[str, Any]]:
    """
    Pull the record list out of an upstream response.

    Known shapes: a bare list, {"points": [...]}, {"data": [...]}, or a dict
    keyed per parcel ("talhao_0", "ponto_0", "fazenda_1").
    """
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in payload:
        if key.startswith(("talhao_", "ponto_", "fazenda_")) and isinstance(payload[key], list):
            return payload[key]
    for key in ("points", "data", "balanco"):
        if isinstance(payload.get(key), list):
            return payload[key]
    return []


def first_value(record: Dict[str, Any], *keys: str) -> Any:
    """Value of the first key present (and not None) in a record."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None
