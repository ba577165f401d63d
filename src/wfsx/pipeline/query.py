"""
QueryBuilder - Spatial Query Construction

Reprojects the requested bbox into the layer's native CRS, builds the
intersects filter on the primary geometry property and selects the output
properties. Also encodes the resulting query as an OGC Filter 1.0 document
for GetFeature requests, using owslib.fes expressions.
"""

from __future__ import annotations

import logging
from typing import Optional

from owslib import fes
from owslib.etree import etree
from owslib.util import nspath_eval
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError
from shapely.geometry import Polygon, box

from ..domain.enums import OWSType
from ..domain.models import BoundingBox, ExtractionRequest, LayerSchema, SpatialQuery
from ..types import ReprojectionFailure

logger = logging.getLogger(__name__)

# Sampling points per envelope edge when reprojecting a bbox
DENSIFY_POINTS = 10

NAMESPACES = {
    "ogc": "http://www.opengis.net/ogc",
    "gml": "http://www.opengis.net/gml",
    "wfs": "http://www.opengis.net/wfs",
}


def parse_crs(identifier: str) -> CRS:
    """Resolve a CRS identifier, wrapping pyproj errors."""
    try:
        return CRS.from_user_input(identifier)
    except CRSError as e:
        raise ReprojectionFailure(f"Unknown CRS '{identifier}': {e}") from e


def epsg_code(crs: CRS) -> str:
    """Return ``EPSG:nnnn`` for ``crs``; a CRS without an EPSG code is an error."""
    code = crs.to_epsg()
    if code is None:
        raise ReprojectionFailure(f"No EPSG code found for CRS {crs.name}")
    return f"EPSG:{code}"


def reproject_bbox(bbox: BoundingBox, target_crs: str) -> BoundingBox:
    """
    Reproject ``bbox`` into ``target_crs``.

    The envelope is densified with ``DENSIFY_POINTS`` points per edge so curved
    edges in the target CRS are still covered.

    Raises:
        ReprojectionFailure: unknown CRS or failed transform
    """
    source = parse_crs(bbox.crs)
    target = parse_crs(target_crs)
    if source.equals(target, ignore_axis_order=True):
        return BoundingBox(minx=bbox.minx, miny=bbox.miny, maxx=bbox.maxx, maxy=bbox.maxy, crs=target_crs)

    try:
        transformer = Transformer.from_crs(source, target, always_xy=True)
        minx, miny, maxx, maxy = transformer.transform_bounds(*bbox.as_tuple(), densify_pts=DENSIFY_POINTS)
    except ProjError as e:
        raise ReprojectionFailure(f"Cannot transform bbox from {bbox.crs} to {target_crs}: {e}") from e

    if any(v != v or v in (float("inf"), float("-inf")) for v in (minx, miny, maxx, maxy)):
        raise ReprojectionFailure(f"Bbox {bbox.as_tuple()} is outside the valid area of {target_crs}")

    logger.debug(f"Reprojected bbox {bbox.as_tuple()} ({bbox.crs}) -> {(minx, miny, maxx, maxy)} ({target_crs})")
    return BoundingBox(minx=minx, miny=miny, maxx=maxx, maxy=maxy, crs=target_crs)


class QueryBuilder:
    """Builds the spatial query for one extraction."""

    def create_query(self, request: ExtractionRequest, schema: LayerSchema) -> Optional[SpatialQuery]:
        """
        Build the query for ``request`` against ``schema``.

        Args:
            request: Extraction request (bbox, projection, filters)
            schema: Layer schema (native CRS, primary geometry, properties)

        Returns:
            SpatialQuery, or None when the request's service family has no
            feature query (callers must treat that as nothing to extract)

        Raises:
            ReprojectionFailure: bbox cannot be reprojected or tagged with an EPSG code
        """
        if request.ows_type is not OWSType.WFS:
            logger.info(f"No feature query for service family {request.ows_type.value}")
            return None

        # bbox may not be in the same projection as the data
        bbox = request.bbox
        if schema.crs is not None:
            bbox = reproject_bbox(bbox, schema.crs)

        srs_name = epsg_code(parse_crs(bbox.crs))
        geometry = box(*bbox.as_tuple())

        property_names = []
        for desc in schema.properties:
            if desc.is_geometry and desc.name != schema.geometry_property:
                # single geometry column formats: skip auxiliary geometries
                continue
            property_names.append(desc.name)

        query = SpatialQuery(
            type_name=request.wfs_name,
            geometry_property=schema.geometry_property,
            bbox_geometry=geometry,
            srs_name=srs_name,
            property_names=tuple(property_names),
            projection=request.projection,
            filters=tuple(request.filters),
        )
        logger.debug(f"Built query on {query.type_name}: intersects({query.geometry_property}, {srs_name}), {len(property_names)} properties")
        return query


class Intersects(fes.OgcExpression):
    """Filter 1.0 ``Intersects`` on a property, against a GML 2 polygon."""

    def __init__(self, propertyname: str, polygon: Polygon, srs_name: str):
        self.propertyname = propertyname
        self.polygon = polygon
        self.srs_name = srs_name

    def toXML(self):
        node = etree.Element(nspath_eval("ogc:Intersects", NAMESPACES))
        etree.SubElement(node, nspath_eval("ogc:PropertyName", NAMESPACES)).text = self.propertyname
        polygon = etree.SubElement(node, nspath_eval("gml:Polygon", NAMESPACES), srsName=self.srs_name)
        boundary = etree.SubElement(polygon, nspath_eval("gml:outerBoundaryIs", NAMESPACES))
        ring = etree.SubElement(boundary, nspath_eval("gml:LinearRing", NAMESPACES))
        coordinates = etree.SubElement(ring, nspath_eval("gml:coordinates", NAMESPACES), decimal=".", cs=",", ts=" ")
        coordinates.text = " ".join(f"{x!r},{y!r}" for x, y in self.polygon.exterior.coords)
        return node


def build_filter(query: SpatialQuery):
    """
    Encode the query predicate as an ``ogc:Filter`` element.

    The intersects predicate is AND-ed with one ``PropertyIsEqualTo`` per
    legacy property filter, in the order given.
    """
    constraint = Intersects(query.geometry_property, query.bbox_geometry, query.srs_name)
    if query.filters:
        constraint = fes.And([constraint] + [fes.PropertyIsEqualTo(f.property, f.value) for f in query.filters])
    return fes.FilterRequest().setConstraint(constraint)


def build_filter_xml(query: SpatialQuery) -> str:
    """The query filter serialized for a GetFeature ``FILTER`` parameter."""
    return etree.tostring(build_filter(query), encoding="unicode")
