"""
WFS Extraction Pipeline Components

This module provides the extraction pipeline following the
Permission -> Query -> Retrieve -> Write pattern.

Components:
- security: CapabilitiesGate for layer access control
- query: QueryBuilder for bbox reprojection and the intersects filter
- source: WfsSource for schema and feature retrieval
- export: Writer registry, shapefile/OGR writers and BBoxWriter
- extract: WfsExtractor orchestrating one extraction
"""

from .export import WRITERS, BBoxWriter, OGRFeatureWriter, ShpFeatureWriter, register_writer
from .extract import WfsExtractor
from .query import QueryBuilder
from .security import CapabilitiesGate, is_trusted_host
from .source import WfsSource

__all__ = [
    "WfsExtractor", "CapabilitiesGate", "QueryBuilder", "WfsSource",
    "ShpFeatureWriter", "OGRFeatureWriter", "BBoxWriter", "WRITERS",
    "register_writer", "is_trusted_host"
]
