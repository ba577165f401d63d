"""
Extraction Enumerations

Core enums for type safety and clear interface definitions across the extractor.
"""

from enum import Enum

from ..types import InvalidStateTransition, UnsupportedFormat


class OWSType(str, Enum):
    """OGC service families a layer request can target."""
    WFS = "wfs"     # Vector features (the only family the extractor handles)
    WCS = "wcs"     # Coverages, accepted in requests but never extracted here


class OutputFormat(str, Enum):
    """Vector output formats accepted in extraction requests."""
    SHP = "shp"             # ESRI Shapefile, one geometry type per file
    MIF = "mif"             # MapInfo Interchange Format
    TAB = "tab"             # MapInfo TAB
    KML = "kml"             # Keyhole Markup Language (always WGS84)
    GPKG = "gpkg"           # GeoPackage
    GEOJSON = "geojson"     # GeoJSON FeatureCollection

    @classmethod
    def from_identifier(cls, value: "str | OutputFormat") -> "OutputFormat":
        """Resolve a format identifier case-insensitively."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnsupportedFormat(str(value)) from None


class GeomType(str, Enum):
    """Geometry buckets used to split features into homogeneous output files."""
    POINT = "point"
    LINE = "line"
    POLYGON = "polygon"
    GEOMETRY = "geometry"   # Generic or mixed, no further splitting by schema


class ExtractionState(str, Enum):
    """Lifecycle of a single extraction."""
    REQUESTED = "requested"
    PERMISSION_CHECKED = "permission_checked"
    SCHEMA_FETCHED = "schema_fetched"
    QUERY_BUILT = "query_built"
    FEATURES_RETRIEVED = "features_retrieved"
    FEATURES_WRITTEN = "features_written"
    BBOX_WRITTEN = "bbox_written"
    COMPLETED = "completed"
    FAILED = "failed"

    def advance(self, target: "ExtractionState") -> "ExtractionState":
        """Return ``target`` if it directly follows this state, else raise."""
        if target is ExtractionState.FAILED and self not in (ExtractionState.COMPLETED, ExtractionState.FAILED):
            return target
        if _NEXT_STATE.get(self) is not target:
            raise InvalidStateTransition(self.value, target.value)
        return target


_NEXT_STATE = {
    ExtractionState.REQUESTED: ExtractionState.PERMISSION_CHECKED,
    ExtractionState.PERMISSION_CHECKED: ExtractionState.SCHEMA_FETCHED,
    ExtractionState.SCHEMA_FETCHED: ExtractionState.QUERY_BUILT,
    ExtractionState.QUERY_BUILT: ExtractionState.FEATURES_RETRIEVED,
    ExtractionState.FEATURES_RETRIEVED: ExtractionState.FEATURES_WRITTEN,
    ExtractionState.FEATURES_WRITTEN: ExtractionState.BBOX_WRITTEN,
    ExtractionState.BBOX_WRITTEN: ExtractionState.COMPLETED,
}
