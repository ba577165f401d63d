"""
Feature Writers - Multi-format File Generation

Writer strategies that turn a retrieved feature collection into files in an
extraction directory, plus the bounding-box descriptor written next to them.

Formats are registered in ``WRITERS``; adding a format means registering a
factory with the common signature ``(listener, schema, basedir, features)``.
"""

from __future__ import annotations

import functools
import json
import logging
from pathlib import Path
from typing import Callable, Optional, Protocol

import fiona
import geopandas as gpd
from shapely.geometry import box

from ..domain.enums import GeomType, OutputFormat
from ..domain.models import BoundingBox, LayerSchema
from ..types import ProgressListener, UnsupportedFormat
from .geometry import classify_binding, classify_geometry, promote_to_multi
from .query import epsg_code, parse_crs

logger = logging.getLogger(__name__)

EXTENSIONS = {
    OutputFormat.SHP: "shp",
    OutputFormat.MIF: "mif",
    OutputFormat.TAB: "tab",
    OutputFormat.KML: "kml",
    OutputFormat.GPKG: "gpkg",
    OutputFormat.GEOJSON: "geojson",
}

# OGR driver per format; MapInfo picks MIF or TAB from the file extension
OGR_DRIVERS = {
    OutputFormat.SHP: "ESRI Shapefile",
    OutputFormat.MIF: "MapInfo File",
    OutputFormat.TAB: "MapInfo File",
    OutputFormat.KML: "KML",
    OutputFormat.GPKG: "GPKG",
    OutputFormat.GEOJSON: "GeoJSON",
}

KML_CRS = "EPSG:4326"
BBOX_BASENAME = "bounding"


class FeatureWriterStrategy(Protocol):
    """A writer generates one or more files and returns their paths."""

    def generate_files(self) -> list[Path]:
        ...


WriterFactory = Callable[[ProgressListener, LayerSchema, Path, gpd.GeoDataFrame], FeatureWriterStrategy]


def base_name(type_name: str) -> str:
    """File base name for a (possibly namespaced) type name."""
    return type_name.split(":")[-1]


def _ensure_driver(driver: str) -> None:
    """Enable write support for OGR drivers fiona does not enable by default."""
    if driver == "KML" and "KML" not in fiona.supported_drivers:
        fiona.supported_drivers["KML"] = "rw"


def write_frame(gdf: gpd.GeoDataFrame, path: Path, fmt: OutputFormat, listener: ProgressListener) -> Path:
    """Write ``gdf`` to ``path``; writer errors are reported through ``listener``."""
    driver = OGR_DRIVERS[fmt]
    _ensure_driver(driver)
    if fmt is OutputFormat.KML and gdf.crs is not None and not gdf.crs.equals(parse_crs(KML_CRS)):
        gdf = gdf.to_crs(KML_CRS)

    try:
        if fmt is OutputFormat.GPKG:
            gdf.to_file(path, driver=driver, layer=path.stem)
        else:
            gdf.to_file(path, driver=driver)
    except Exception as e:
        listener.exception_occurred(e, f"Failed to write {path.name} ({driver}): {e}")

    if fmt is OutputFormat.GEOJSON and not _validate_geojson_file(path):
        listener.exception_occurred(ValueError(f"invalid GeoJSON: {path}"))

    logger.debug(f"Wrote {len(gdf):,} features to {path}")
    return path


def _validate_geojson_file(path: Path) -> bool:
    """Validate that an exported GeoJSON file is a FeatureCollection."""
    try:
        with open(path, encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"GeoJSON validation failed: {e}")
        return False

    if not isinstance(data, dict) or data.get("type") != "FeatureCollection":
        logger.error("Invalid GeoJSON: type must be 'FeatureCollection'")
        return False
    if not isinstance(data.get("features"), list):
        logger.error("Invalid GeoJSON: features must be an array")
        return False
    return True


class ShpFeatureWriter:
    """
    Shapefile writer: one geometry type per file.

    A layer whose schema declares a concrete geometry type is written to a
    single ``<layer>.shp`` with geometries promoted to their multi variant. A
    layer declaring a generic geometry is split into one ``<layer>_<bucket>.shp``
    per bucket present in the features.
    """

    def __init__(self, listener: ProgressListener, schema: LayerSchema, basedir: Path, features: gpd.GeoDataFrame):
        self.listener = listener
        self.schema = schema
        self.basedir = Path(basedir)
        self.features = features
        self.bucket = classify_binding(schema.geometry_descriptor.binding)

    def split(self) -> dict[GeomType, gpd.GeoDataFrame]:
        """Group features into homogeneous buckets."""
        gdf = self.features
        if self.bucket is not GeomType.GEOMETRY:
            return {self.bucket: gdf}

        labels = [None if g is None or g.is_empty else classify_geometry(g) for g in gdf.geometry]
        unwritable = sum(1 for label in labels if label is None or label is GeomType.GEOMETRY)
        if unwritable:
            logger.warning(f"Skipping {unwritable} features without a single-type geometry in {self.schema.type_name}")

        # list masks: pandas may store str-enum labels as plain str
        groups = {}
        for bucket in (GeomType.POINT, GeomType.LINE, GeomType.POLYGON):
            part = gdf[[label is bucket for label in labels]]
            if len(part):
                groups[bucket] = part
        return groups

    def generate_files(self) -> list[Path]:
        self.listener.started()
        if len(self.features) == 0:
            logger.warning(f"No features to write for {self.schema.type_name}")
            self.listener.complete()
            return []

        groups = self.split()
        name = base_name(self.schema.type_name)
        written = []
        for i, (bucket, gdf) in enumerate(groups.items()):
            self.listener.check_cancelled()
            gdf = gdf.set_geometry(gdf.geometry.apply(promote_to_multi))
            filename = f"{name}.shp" if self.bucket is not GeomType.GEOMETRY else f"{name}_{bucket.value}.shp"
            written.append(write_frame(gdf, self.basedir / filename, OutputFormat.SHP, self.listener))
            self.listener.progress(100.0 * (i + 1) / len(groups))

        self.listener.complete()
        logger.info(f"Shapefile export completed: {len(written)} file(s) in {self.basedir}")
        return written


class OGRFeatureWriter:
    """Converter-based writer producing a single ``<layer>.<ext>`` file."""

    def __init__(self,
                 listener: ProgressListener,
                 schema: LayerSchema,
                 basedir: Path,
                 features: gpd.GeoDataFrame,
                 file_format: OutputFormat = OutputFormat.GPKG):
        if file_format not in OGR_DRIVERS:
            raise UnsupportedFormat(str(file_format))
        self.listener = listener
        self.schema = schema
        self.basedir = Path(basedir)
        self.features = features
        self.file_format = file_format

    def generate_files(self) -> list[Path]:
        self.listener.started()
        if len(self.features) == 0:
            logger.warning(f"No features to write for {self.schema.type_name}")
            self.listener.complete()
            return []

        self.listener.check_cancelled()
        path = self.basedir / f"{base_name(self.schema.type_name)}.{EXTENSIONS[self.file_format]}"
        write_frame(self.features, path, self.file_format, self.listener)
        self.listener.complete()
        logger.info(f"{self.file_format.value.upper()} export completed: {len(self.features):,} features written to {path}")
        return [path]


class BBoxWriter:
    """
    Writes the extraction extent as a single polygon feature.

    The requested bbox is reprojected to the output projection and stored in
    ``bounding.<ext>`` with its extent and SRS as attributes.
    """

    def __init__(self,
                 bbox: BoundingBox,
                 basedir: Path,
                 file_format: OutputFormat,
                 projection: str,
                 listener: ProgressListener):
        if file_format not in OGR_DRIVERS:
            raise UnsupportedFormat(str(file_format))
        self.bbox = bbox
        self.basedir = Path(basedir)
        self.file_format = file_format
        self.projection = projection
        self.listener = listener

    def bounding_frame(self) -> gpd.GeoDataFrame:
        """Bbox polygon in the output projection, with extent attributes."""
        source = gpd.GeoDataFrame(geometry=[box(*self.bbox.as_tuple())], crs=parse_crs(self.bbox.crs))
        # KML output is WGS84; extent and srs attributes follow it
        target = parse_crs(KML_CRS if self.file_format is OutputFormat.KML else self.projection)
        frame = source.to_crs(target)
        minx, miny, maxx, maxy = frame.total_bounds
        frame["minx"] = [float(minx)]
        frame["miny"] = [float(miny)]
        frame["maxx"] = [float(maxx)]
        frame["maxy"] = [float(maxy)]
        frame["srs"] = [epsg_code(target)]
        return frame

    def generate_files(self) -> list[Path]:
        self.listener.started()
        self.listener.check_cancelled()
        frame = self.bounding_frame()
        path = self.basedir / f"{BBOX_BASENAME}.{EXTENSIONS[self.file_format]}"
        write_frame(frame, path, self.file_format, self.listener)
        self.listener.complete()
        logger.info(f"Bounding box written to {path}")
        return [path]


WRITERS: dict[OutputFormat, WriterFactory] = {
    OutputFormat.SHP: ShpFeatureWriter,
    OutputFormat.MIF: functools.partial(OGRFeatureWriter, file_format=OutputFormat.MIF),
    OutputFormat.TAB: functools.partial(OGRFeatureWriter, file_format=OutputFormat.TAB),
    OutputFormat.KML: functools.partial(OGRFeatureWriter, file_format=OutputFormat.KML),
    OutputFormat.GPKG: functools.partial(OGRFeatureWriter, file_format=OutputFormat.GPKG),
    OutputFormat.GEOJSON: functools.partial(OGRFeatureWriter, file_format=OutputFormat.GEOJSON),
}


def register_writer(fmt: OutputFormat, factory: WriterFactory) -> None:
    """Register (or replace) the writer used for ``fmt``."""
    WRITERS[fmt] = factory


def get_writer_factory(fmt: "OutputFormat | str", registry: Optional[dict] = None) -> WriterFactory:
    """
    Look up the writer for a format identifier (case-insensitive).

    Raises:
        UnsupportedFormat: unknown identifier or no writer registered
    """
    registry = WRITERS if registry is None else registry
    fmt = OutputFormat.from_identifier(fmt)
    try:
        return registry[fmt]
    except KeyError:
        raise UnsupportedFormat(fmt.value) from None
