"""
Request loading for the WFS extractor.

Builds ExtractionRequest objects from YAML request files or CLI options.

Example request file:

    url: https://geo.example.org/geoserver/wfs
    layer: parcels
    namespace: cadastre
    format: shp
    bbox: [0, 0, 10, 10]
    bbox_crs: EPSG:4326
    projection: EPSG:3857
    filters:
      - property: zone
        value: A
    security:
      username: alice
      roles: [ROLE_USER]
"""

from pathlib import Path
from typing import Any, Optional, Sequence

from .domain.models import BoundingBox, ExtractionRequest, PropertyFilter, SecurityContext
from .utils import load_yaml_file


def parse_filter_args(values: Optional[Sequence[str]]) -> list[PropertyFilter]:
    """
    Parse ``property=value`` pairs, order preserved.

    Raises:
        ValueError: an entry has no ``=``
    """
    filters = []
    for item in values or []:
        if "=" not in item:
            raise ValueError(f"Filter '{item}' must be written as property=value")
        prop, value = item.split("=", 1)
        filters.append(PropertyFilter(property=prop.strip(), value=value.strip()))
    return filters


def build_request(
    url: str,
    layer: str,
    format: str,
    bbox: Any,
    bbox_crs: str = "EPSG:4326",
    projection: Optional[str] = None,
    namespace: Optional[str] = None,
    ows_type: str = "wfs",
    username: Optional[str] = None,
    roles: Any = None,
    filters: Optional[list[PropertyFilter]] = None,
    request_id: Optional[str] = None,
) -> ExtractionRequest:
    """
    Assemble an ExtractionRequest from individual values.

    Raises:
        UnsupportedFormat: unknown format identifier
        ValueError: malformed bbox or other invalid field
    """
    if not isinstance(bbox, BoundingBox):
        bbox = BoundingBox.from_sequence(bbox, crs=bbox_crs)

    return ExtractionRequest(
        url=url,
        layer_name=layer,
        namespace=namespace,
        format=format,
        bbox=bbox,
        ows_type=ows_type,
        projection=projection or bbox.crs,
        security=SecurityContext(
            username=username,
            roles=roles,
        ),
        filters=filters or [],
        request_id=request_id,
    )


def load_request(request_path: Path) -> ExtractionRequest:
    """
    Load an extraction request from a YAML file.

    Args:
        request_path: Path to the request file

    Returns:
        ExtractionRequest described by the file

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If required fields are missing or invalid
    """
    raw = load_yaml_file(Path(request_path))

    missing = [key for key in ("url", "layer", "format", "bbox") if key not in raw]
    if missing:
        raise ValueError(f"Request file {request_path} is missing: {', '.join(missing)}")

    security = raw.get("security") or {}
    filters = [PropertyFilter(property=str(f["property"]), value=str(f["value"])) for f in raw.get("filters") or []]

    return build_request(
        url=raw["url"],
        layer=raw["layer"],
        format=raw["format"],
        bbox=raw["bbox"],
        bbox_crs=raw.get("bbox_crs", "EPSG:4326"),
        projection=raw.get("projection"),
        namespace=raw.get("namespace"),
        ows_type=raw.get("ows_type", "wfs"),
        username=security.get("username"),
        roles=security.get("roles"),
        filters=filters,
        request_id=raw.get("request_id"),
    )
