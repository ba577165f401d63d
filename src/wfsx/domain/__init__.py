"""
Domain Models and Types

This module contains the core domain models and enumerations used throughout the extractor.

Models:
- ExtractionRequest: One layer extraction (service, layer, format, bbox, identity)
- LayerSchema: Layer attributes and primary geometry as described by the service
- SpatialQuery: Intersects query derived from a request and a schema
- ExtractionResult: Output directory and feature count of a finished extraction

Enums:
- OWSType: Service families (wfs, wcs)
- OutputFormat: Output formats (shp, mif, tab, kml, gpkg, geojson)
- GeomType: Geometry buckets (point, line, polygon, geometry)
- ExtractionState: Extraction lifecycle states
"""

from .enums import ExtractionState, GeomType, OutputFormat, OWSType
from .models import (
    BoundingBox,
    ExtractionRequest,
    ExtractionResult,
    LayerSchema,
    PropertyDescriptor,
    PropertyFilter,
    SecurityContext,
    SpatialQuery,
)

__all__ = [
    "BoundingBox", "ExtractionRequest", "ExtractionResult", "LayerSchema",
    "PropertyDescriptor", "PropertyFilter", "SecurityContext", "SpatialQuery",
    "ExtractionState", "GeomType", "OutputFormat", "OWSType"
]
