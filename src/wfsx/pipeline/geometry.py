"""
Geometry classification.

Maps geometry bindings (as advertised by a layer schema) and concrete shapely
geometries to the output buckets used to split features into files that hold a
single geometry type. Single and multi variants share a bucket because the
shapefile writer always normalises to the multi variant.
"""

from __future__ import annotations

from shapely.geometry import (
    GeometryCollection,
    LinearRing,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)
from shapely.geometry.base import BaseGeometry

from ..domain.enums import GeomType
from ..types import UnsupportedGeometryType

_BINDINGS: dict[str, GeomType] = {
    "point": GeomType.POINT,
    "multipoint": GeomType.POINT,
    "line": GeomType.LINE,
    "linestring": GeomType.LINE,
    "linearring": GeomType.LINE,
    "multilinestring": GeomType.LINE,
    "multiline": GeomType.LINE,
    "curve": GeomType.LINE,
    "multicurve": GeomType.LINE,
    "polygon": GeomType.POLYGON,
    "multipolygon": GeomType.POLYGON,
    "surface": GeomType.POLYGON,
    "multisurface": GeomType.POLYGON,
    "geometry": GeomType.GEOMETRY,
    "geometrycollection": GeomType.GEOMETRY,
    "multigeometry": GeomType.GEOMETRY,
}

# Multi variant written for each homogeneous bucket
_MULTI_TYPES = {
    GeomType.POINT: MultiPoint,
    GeomType.LINE: MultiLineString,
    GeomType.POLYGON: MultiPolygon,
}


def normalize_binding(binding: str) -> str:
    """Strip namespace prefixes and GML ``PropertyType`` suffixes from a binding tag.

    ``gml:MultiPolygonPropertyType`` -> ``multipolygon``
    """
    tag = str(binding).strip().split(":")[-1].lower()
    for suffix in ("propertytype", "property", "type"):
        if tag.endswith(suffix) and tag != suffix:
            tag = tag[: -len(suffix)]
            break
    return tag


def is_geometry_binding(binding: str) -> bool:
    """True for known geometry bindings and for any GML ``*PropertyType``.

    ``gml:SolidPropertyType`` is a geometry even though no bucket exists for
    it; ``classify_binding`` rejects it later.
    """
    if normalize_binding(binding) in _BINDINGS:
        return True
    prefix, _, local = str(binding).strip().rpartition(":")
    return prefix.lower() == "gml" and local.endswith("PropertyType")


def classify_binding(binding: str) -> GeomType:
    """Return the bucket for a schema geometry binding.

    Raises:
        UnsupportedGeometryType: binding is not a known geometry type
    """
    bucket = _BINDINGS.get(normalize_binding(binding))
    if bucket is None:
        raise UnsupportedGeometryType(str(binding))
    return bucket


def classify_geometry(geom: BaseGeometry) -> GeomType:
    """Return the bucket of a concrete geometry.

    Only used to split layers whose schema declares a generic geometry.
    """
    if isinstance(geom, (Polygon, MultiPolygon)):
        return GeomType.POLYGON
    if isinstance(geom, (LineString, LinearRing, MultiLineString)):
        return GeomType.LINE
    if isinstance(geom, (Point, MultiPoint)):
        return GeomType.POINT
    if isinstance(geom, GeometryCollection):
        return GeomType.GEOMETRY
    raise UnsupportedGeometryType(getattr(geom, "geom_type", type(geom).__name__))


def promote_to_multi(geom: BaseGeometry | None) -> BaseGeometry | None:
    """Wrap single-part geometries into their multi variant; others pass through."""
    if geom is None or geom.is_empty:
        return geom
    if isinstance(geom, LinearRing):
        return MultiLineString([LineString(geom.coords)])
    if isinstance(geom, tuple(_MULTI_TYPES.values())):
        return geom
    if isinstance(geom, Point):
        return MultiPoint([geom])
    if isinstance(geom, LineString):
        return MultiLineString([geom])
    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    return geom
