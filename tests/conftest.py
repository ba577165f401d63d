"""Pytest configuration and shared fixtures."""

from pathlib import Path
from typing import Any, Optional

import pytest
import requests

from wfsx.config.settings import Config
from wfsx.domain.models import BoundingBox, ExtractionRequest, SecurityContext

SECURE_HOST = "geo.example.org"

CAPABILITIES = """<?xml version="1.0" encoding="UTF-8"?>
<WFS_Capabilities version="1.0.0" xmlns="http://www.opengis.net/wfs" xmlns:cad="http://example.org/cadastre"
                  xmlns:ogc="http://www.opengis.net/ogc">
  <Service>
    <Name>WFS</Name>
    <Title>Cadastre</Title>
    <Abstract>Cadastral layers</Abstract>
    <OnlineResource>https://geo.example.org/geoserver/wfs</OnlineResource>
    <Fees>NONE</Fees>
    <AccessConstraints>NONE</AccessConstraints>
  </Service>
  <Capability>
    <Request>
      <GetCapabilities>
        <DCPType><HTTP><Get onlineResource="https://geo.example.org/geoserver/wfs?request=GetCapabilities"/></HTTP></DCPType>
      </GetCapabilities>
      <DescribeFeatureType>
        <SchemaDescriptionLanguage><XMLSCHEMA/></SchemaDescriptionLanguage>
        <DCPType><HTTP><Get onlineResource="https://geo.example.org/geoserver/wfs?request=DescribeFeatureType"/></HTTP></DCPType>
      </DescribeFeatureType>
      <GetFeature>
        <ResultFormat><GML2/><JSON/></ResultFormat>
        <DCPType><HTTP><Get onlineResource="https://geo.example.org/geoserver/wfs?request=GetFeature"/></HTTP></DCPType>
        <DCPType><HTTP><Post onlineResource="https://geo.example.org/geoserver/wfs"/></HTTP></DCPType>
      </GetFeature>
    </Request>
  </Capability>
  <FeatureTypeList>
    <Operations><Query/></Operations>
    <FeatureType>
      <Name>cad:parcels</Name>
      <Title>Parcels</Title>
      <SRS>EPSG:3857</SRS>
      <LatLongBoundingBox minx="0" miny="0" maxx="10" maxy="10"/>
    </FeatureType>
    <FeatureType>
      <Name>cad:Roads</Name>
      <Title>Roads</Title>
      <SRS>EPSG:4326</SRS>
      <LatLongBoundingBox minx="0" miny="0" maxx="10" maxy="10"/>
    </FeatureType>
  </FeatureTypeList>
</WFS_Capabilities>
"""

DESCRIBE_PARCELS = """<?xml version="1.0" encoding="UTF-8"?>
<xsd:schema xmlns:xsd="http://www.w3.org/2001/XMLSchema" xmlns:gml="http://www.opengis.net/gml"
            xmlns:cad="http://example.org/cadastre" targetNamespace="http://example.org/cadastre"
            elementFormDefault="qualified">
  <xsd:import namespace="http://www.opengis.net/gml" schemaLocation="http://schemas.opengis.net/gml/2.1.2/feature.xsd"/>
  <xsd:complexType name="parcelsType">
    <xsd:complexContent>
      <xsd:extension base="gml:AbstractFeatureType">
        <xsd:sequence>
          <xsd:element name="the_geom" type="gml:MultiPolygonPropertyType" minOccurs="0" nillable="true"/>
          <xsd:element name="parcel_id" type="xsd:string" minOccurs="0" nillable="true"/>
          <xsd:element name="centroid" type="gml:PointPropertyType" minOccurs="0" nillable="true"/>
          <xsd:element name="area" type="xsd:double" minOccurs="0" nillable="true"/>
        </xsd:sequence>
      </xsd:extension>
    </xsd:complexContent>
  </xsd:complexType>
  <xsd:element name="parcels" type="cad:parcelsType" substitutionGroup="gml:_Feature"/>
</xsd:schema>
"""


def square(x0: float, y0: float, size: float) -> dict[str, Any]:
    return {
        "type": "Polygon",
        "coordinates": [[[x0, y0], [x0 + size, y0], [x0 + size, y0 + size], [x0, y0 + size], [x0, y0]]],
    }


PARCEL_FEATURES = {
    "type": "FeatureCollection",
    "crs": {"type": "name", "properties": {"name": "urn:ogc:def:crs:EPSG::3857"}},
    "features": [
        {"type": "Feature", "id": "parcels.1", "geometry": square(100000.0, 100000.0, 5000.0),
         "properties": {"parcel_id": "P-1", "area": 25000000.0}},
        {"type": "Feature", "id": "parcels.2", "geometry": square(300000.0, 200000.0, 2500.0),
         "properties": {"parcel_id": "P-2", "area": 6250000.0}},
    ],
}


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, text: str = "", status_code: int = 200, payload: Optional[dict] = None):
        self.text = text
        self.status_code = status_code
        self._payload = payload

    @property
    def content(self) -> bytes:
        return self.text.encode("utf-8")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self) -> dict:
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Routes WFS requests to canned responses and records every call."""

    def __init__(self,
                 capabilities: str = CAPABILITIES,
                 describe: str = DESCRIBE_PARCELS,
                 features: Optional[dict] = None,
                 fail_with: Optional[Exception] = None):
        self.capabilities = capabilities
        self.describe = describe
        self.features = PARCEL_FEATURES if features is None else features
        self.fail_with = fail_with
        self.calls: list[tuple[str, str, dict]] = []
        self.auth = None
        self.closed = False

    def _route(self, method: str, url: str, params: Optional[dict]) -> FakeResponse:
        if self.fail_with is not None:
            raise self.fail_with
        if method == "POST":
            return FakeResponse(payload=self.features)
        operation = (params or {}).get("REQUEST") or ("GetCapabilities" if "GetCapabilities" in url else "GetFeature")
        if operation == "GetCapabilities":
            return FakeResponse(text=self.capabilities)
        if operation == "DescribeFeatureType":
            return FakeResponse(text=self.describe)
        return FakeResponse(payload=self.features)

    def get(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append(("GET", url, kwargs))
        return self._route("GET", url, kwargs.get("params"))

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        return self._route(method, url, kwargs.get("params"))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        load_env=False,
        admin_username="admin",
        admin_password="geoserver",
        secure_host=SECURE_HOST,
        output_dir=str(tmp_path / "extractions"),
        timeout_ms=60000,
        capabilities_timeout_s=30,
        wfs_version="1.0.0",
        check_permission=True,
    )


@pytest.fixture
def make_request():
    def _make(**overrides) -> ExtractionRequest:
        values = {
            "url": f"https://{SECURE_HOST}/geoserver/wfs",
            "layer_name": "parcels",
            "namespace": "cad",
            "format": "shp",
            "bbox": BoundingBox(minx=0, miny=0, maxx=10, maxy=10, crs="EPSG:4326"),
            "projection": "EPSG:4326",
            "security": SecurityContext(username="alice", roles=["ROLE_USER", "ROLE_EDITOR"]),
        }
        values.update(overrides)
        return ExtractionRequest(**values)
    return _make


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()
