"""Tests for the feature and bounding box writers."""

from unittest.mock import patch

import geopandas as gpd
import pytest
from shapely.geometry import GeometryCollection, LineString, Point, Polygon

from wfsx.domain.enums import GeomType, OutputFormat
from wfsx.domain.models import BoundingBox, LayerSchema, PropertyDescriptor
from wfsx.pipeline.export import (
    WRITERS,
    BBoxWriter,
    OGRFeatureWriter,
    ShpFeatureWriter,
    base_name,
    get_writer_factory,
)
from wfsx.types import ExtractionCancelled, ProgressListener, UnsupportedFormat, WriteFailure


def make_schema(binding: str) -> LayerSchema:
    return LayerSchema(
        type_name="cad:parcels",
        geometry_property="the_geom",
        crs="EPSG:4326",
        properties=[
            PropertyDescriptor(name="the_geom", binding=binding, is_geometry=True),
            PropertyDescriptor(name="name", binding="string"),
        ],
    )


@pytest.fixture
def listener():
    return ProgressListener("test")


@pytest.fixture
def polygons():
    return gpd.GeoDataFrame(
        {"name": ["a", "b"]},
        geometry=[Polygon([(0, 0), (1, 0), (1, 1), (0, 1)]), Polygon([(2, 2), (3, 2), (3, 3), (2, 3)])],
        crs="EPSG:4326",
    )


@pytest.fixture
def mixed():
    return gpd.GeoDataFrame(
        {"name": ["pt", "ln", "pg", "none", "coll"]},
        geometry=[
            Point(0, 0),
            LineString([(0, 0), (1, 1)]),
            Polygon([(0, 0), (1, 0), (1, 1), (0, 1)]),
            None,
            GeometryCollection([Point(5, 5), LineString([(5, 5), (6, 6)])]),
        ],
        crs="EPSG:4326",
    )


class TestShpFeatureWriter:

    def test_concrete_geometry_single_file(self, listener, polygons, tmp_path):
        files = ShpFeatureWriter(listener, make_schema("MultiPolygonPropertyType"), tmp_path, polygons).generate_files()

        assert files == [tmp_path / "parcels.shp"]
        written = gpd.read_file(files[0])
        assert len(written) == 2
        assert listener.completed

    def test_generic_geometry_split_per_bucket(self, listener, mixed, tmp_path):
        writer = ShpFeatureWriter(listener, make_schema("GeometryPropertyType"), tmp_path, mixed)
        files = writer.generate_files()

        assert sorted(p.name for p in files) == ["parcels_line.shp", "parcels_point.shp", "parcels_polygon.shp"]
        assert len(gpd.read_file(tmp_path / "parcels_point.shp")) == 1
        assert len(gpd.read_file(tmp_path / "parcels_line.shp")) == 1

    def test_split_groups_features_by_bucket(self, listener, mixed, tmp_path):
        groups = ShpFeatureWriter(listener, make_schema("GeometryPropertyType"), tmp_path, mixed).split()

        assert {bucket: list(part["name"]) for bucket, part in groups.items()} == {
            GeomType.POINT: ["pt"],
            GeomType.LINE: ["ln"],
            GeomType.POLYGON: ["pg"],
        }

    def test_split_skips_unwritable_geometries(self, listener, mixed, tmp_path):
        groups = ShpFeatureWriter(listener, make_schema("GeometryPropertyType"), tmp_path, mixed).split()
        assert sum(len(g) for g in groups.values()) == 3

    def test_empty_collection_writes_nothing(self, listener, polygons, tmp_path):
        writer = ShpFeatureWriter(listener, make_schema("PolygonPropertyType"), tmp_path, polygons.iloc[0:0])
        assert writer.generate_files() == []
        assert list(tmp_path.iterdir()) == []

    def test_cancelled_listener_aborts(self, listener, polygons, tmp_path):
        listener.cancel()
        with pytest.raises(ExtractionCancelled):
            ShpFeatureWriter(listener, make_schema("PolygonPropertyType"), tmp_path, polygons).generate_files()

    def test_writer_error_becomes_write_failure(self, listener, polygons, tmp_path):
        with patch.object(gpd.GeoDataFrame, "to_file", side_effect=OSError("disk full")):
            with pytest.raises(WriteFailure) as exc_info:
                ShpFeatureWriter(listener, make_schema("PolygonPropertyType"), tmp_path, polygons).generate_files()
        assert isinstance(exc_info.value.__cause__, OSError)


class TestOGRFeatureWriter:

    def test_geopackage(self, listener, polygons, tmp_path):
        files = OGRFeatureWriter(listener, make_schema("PolygonPropertyType"), tmp_path, polygons).generate_files()

        assert files == [tmp_path / "parcels.gpkg"]
        assert len(gpd.read_file(files[0], layer="parcels")) == 2

    def test_geojson(self, listener, polygons, tmp_path):
        factory = get_writer_factory("GeoJSON")
        files = factory(listener, make_schema("PolygonPropertyType"), tmp_path, polygons).generate_files()

        assert files == [tmp_path / "parcels.geojson"]
        assert len(gpd.read_file(files[0])) == 2

    def test_kml_is_written_in_wgs84(self, listener, polygons, tmp_path):
        projected = polygons.to_crs("EPSG:3857")
        with patch.object(gpd.GeoDataFrame, "to_file", autospec=True) as mock_to_file:
            files = OGRFeatureWriter(listener, make_schema("PolygonPropertyType"), tmp_path, projected,
                                     file_format=OutputFormat.KML).generate_files()

        written = mock_to_file.call_args.args[0]
        assert files == [tmp_path / "parcels.kml"]
        assert written.crs.to_epsg() == 4326
        assert mock_to_file.call_args.kwargs["driver"] == "KML"

    @pytest.mark.parametrize("fmt, extension", [(OutputFormat.MIF, "mif"), (OutputFormat.TAB, "tab")])
    def test_mapinfo_driver(self, listener, polygons, tmp_path, fmt, extension):
        with patch.object(gpd.GeoDataFrame, "to_file", autospec=True) as mock_to_file:
            files = WRITERS[fmt](listener, make_schema("PolygonPropertyType"), tmp_path, polygons).generate_files()

        assert files == [tmp_path / f"parcels.{extension}"]
        assert mock_to_file.call_args.kwargs["driver"] == "MapInfo File"


class TestBBoxWriter:

    def test_bounding_frame_in_output_projection(self, listener, tmp_path):
        bbox = BoundingBox(minx=0, miny=0, maxx=10, maxy=10, crs="EPSG:4326")
        frame = BBoxWriter(bbox, tmp_path, OutputFormat.SHP, "EPSG:3857", listener).bounding_frame()

        assert len(frame) == 1
        assert frame["srs"].iloc[0] == "EPSG:3857"
        assert frame["maxx"].iloc[0] == pytest.approx(1113194.91, abs=1.0)
        assert frame.crs.to_epsg() == 3857

    def test_kml_bounding_frame_is_wgs84(self, listener, tmp_path):
        bbox = BoundingBox(minx=0, miny=0, maxx=10, maxy=10, crs="EPSG:4326")
        frame = BBoxWriter(bbox, tmp_path, OutputFormat.KML, "EPSG:3857", listener).bounding_frame()

        assert frame["srs"].iloc[0] == "EPSG:4326"
        assert frame["maxx"].iloc[0] == pytest.approx(10.0)
        assert frame.crs.to_epsg() == 4326

    def test_bounding_file_written(self, listener, tmp_path):
        bbox = BoundingBox(minx=0, miny=0, maxx=10, maxy=10, crs="EPSG:4326")
        files = BBoxWriter(bbox, tmp_path, OutputFormat.GPKG, "EPSG:4326", listener).generate_files()

        assert files == [tmp_path / "bounding.gpkg"]
        written = gpd.read_file(files[0])
        assert written["minx"].iloc[0] == pytest.approx(0.0)
        assert written["srs"].iloc[0] == "EPSG:4326"


class TestWriterRegistry:

    def test_lookup_is_case_insensitive(self):
        assert get_writer_factory("SHP") is ShpFeatureWriter

    def test_unknown_identifier(self):
        with pytest.raises(UnsupportedFormat):
            get_writer_factory("xyz")

    def test_format_without_writer(self):
        with pytest.raises(UnsupportedFormat):
            get_writer_factory(OutputFormat.SHP, registry={})

    def test_every_format_has_a_writer(self):
        assert set(WRITERS) == set(OutputFormat)

    def test_base_name_strips_namespace(self):
        assert base_name("cad:parcels") == "parcels"
        assert base_name("parcels") == "parcels"
