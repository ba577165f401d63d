"""
WfsSource - Remote Feature Service Access

WFS client used by the extractor. Capabilities are fetched through the
extraction's requests session and parsed by owslib; the layer schema comes
from DescribeFeatureType and features from a GetFeature request carrying an
OGC filter. Features are returned as a GeoDataFrame reprojected to the
requested output projection.

Access control is not enforced here: a successful CapabilitiesGate check is
what authorizes the fetch.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import geopandas as gpd
import requests
from owslib.etree import etree
from owslib.util import nspath_eval, xmltag_split
from owslib.wfs import WebFeatureService
from requests.auth import HTTPBasicAuth

from ..config.settings import Config
from ..domain.models import ExtractionRequest, LayerSchema, PropertyDescriptor, SpatialQuery
from ..types import ReprojectionFailure, UpstreamUnavailable
from .geometry import classify_binding, is_geometry_binding
from .query import NAMESPACES, build_filter, build_filter_xml, parse_crs
from .security import is_trusted_host

logger = logging.getLogger(__name__)

GEOJSON_FORMAT = "application/json"


def _strip_prefix(name: str) -> str:
    return name.split(":")[-1]


def _as_bytes(document: Union[str, bytes]) -> bytes:
    # lxml refuses str input that carries an encoding declaration
    return document.encode("utf-8") if isinstance(document, str) else document


def service_endpoint(url: str) -> str:
    """Service URL without OGC request parameters (SERVICE/VERSION/REQUEST)."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if k.lower() not in ("service", "version", "request")]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def parse_capabilities(document: Union[str, bytes], endpoint: str, version: str = "1.0.0"):
    """
    Parse a GetCapabilities response into an owslib ``WebFeatureService``.

    Raises:
        UpstreamUnavailable: document is not a usable capabilities response
    """
    try:
        return WebFeatureService(url=endpoint, version=version, xml=_as_bytes(document))
    except (SyntaxError, AttributeError, TypeError) as e:
        # owslib raises AttributeError/TypeError on documents missing required sections
        raise UpstreamUnavailable(endpoint, f"invalid capabilities document: {e}") from e


def native_srs(wfs, type_name: str) -> Optional[str]:
    """First SRS advertised for ``type_name`` (qualified or local name), if any."""
    wanted = _strip_prefix(type_name)
    for name, content in wfs.contents.items():
        if name == type_name or _strip_prefix(name) == wanted:
            codes = [crs.getcode() for crs in content.crsOptions if crs.getcode()]
            return codes[0] if codes else None
    return None


def parse_feature_schema(xsd: Union[str, bytes], type_name: str, crs: Optional[str] = None,
                         lenient: bool = True) -> LayerSchema:
    """
    Build a LayerSchema from a DescribeFeatureType response.

    The first geometry-typed element is the primary geometry property, as
    in GeoTools. Elements without a resolvable type are kept as strings when
    ``lenient`` is set.

    Raises:
        UpstreamUnavailable: document is not a schema or declares no geometry
        UnsupportedGeometryType: primary geometry type has no output bucket
    """
    try:
        root = etree.fromstring(_as_bytes(xsd))
    except SyntaxError as e:
        raise UpstreamUnavailable(type_name, f"invalid DescribeFeatureType response: {e}") from e

    complex_types = [el for el in root.iter() if xmltag_split(el.tag) == "complexType"]
    if not complex_types:
        raise UpstreamUnavailable(type_name, "DescribeFeatureType response declares no feature type")

    wanted = f"{_strip_prefix(type_name)}Type"
    feature_type = next((ct for ct in complex_types if ct.get("name") == wanted), complex_types[0])

    properties = []
    for el in feature_type.iter():
        if xmltag_split(el.tag) != "element" or not el.get("name"):
            continue
        binding = el.get("type")
        if binding is None:
            restriction = next((r for r in el.iter() if xmltag_split(r.tag) == "restriction"), None)
            binding = restriction.get("base") if restriction is not None else None
        if binding is None:
            if not lenient:
                raise UpstreamUnavailable(type_name, f"property {el.get('name')} has no type")
            binding = "xsd:string"
        properties.append(PropertyDescriptor(
            name=el.get("name"),
            binding=_strip_prefix(binding),
            is_geometry=is_geometry_binding(binding),
        ))

    geometry = next((p for p in properties if p.is_geometry), None)
    if geometry is None:
        raise UpstreamUnavailable(type_name, "layer has no geometry property")
    classify_binding(geometry.binding)

    return LayerSchema(type_name=type_name, geometry_property=geometry.name, crs=crs, properties=properties)


def _feature_crs(payload: dict[str, Any]) -> Optional[str]:
    crs = payload.get("crs")
    if isinstance(crs, dict):
        return (crs.get("properties") or {}).get("name")
    return None


def features_to_geodataframe(payload: dict[str, Any], attributes: list[str], default_crs: str) -> gpd.GeoDataFrame:
    """Convert a GeoJSON FeatureCollection into a GeoDataFrame limited to ``attributes``."""
    crs = _feature_crs(payload) or default_crs
    features = payload.get("features") or []
    if not features:
        data = {name: [] for name in attributes}
        return gpd.GeoDataFrame(data, geometry=gpd.GeoSeries([], crs=crs), crs=crs)
    return gpd.GeoDataFrame.from_features(features, crs=crs, columns=[*attributes, "geometry"])


class WfsSource:
    """
    WFS connection for one extraction.

    Admin credentials are attached to the connection only for trusted hosts.
    The underlying session is closed by ``close()`` or on leaving a ``with``
    block.
    """

    def __init__(self, request: ExtractionRequest, config: Config, session: Optional[requests.Session] = None):
        """
        Initialize the source for ``request``.

        Args:
            request: Extraction request naming the service and layer
            config: Extractor configuration (admin identity, timeouts, secure host)
            session: Optional requests session, created when omitted
        """
        self.request = request
        self.config = config
        self.endpoint = service_endpoint(request.url)
        self.version = config.service.wfs_version
        self.trusted = is_trusted_host(request.host, config.service.secure_host)

        self.session = session or requests.Session()
        if self.trusted and config.admin.is_set:
            logger.debug("WfsSource - secured server: adding admin credentials to connection")
            self.session.auth = HTTPBasicAuth(config.admin.username, config.admin.password)
        else:
            logger.debug("WfsSource - non secured server")

        self._wfs = None

    def __enter__(self) -> "WfsSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def connection_params(self) -> dict[str, Any]:
        """Connection parameters in use (password masked)."""
        params = {
            'url': self.request.capabilities_url("WFS", self.version),
            'lenient': self.config.service.lenient,
            'protocol': self.config.service.protocol,
            'timeout': self.config.service.timeout_ms,
            'max_features': self.config.service.max_features,
        }
        if self.trusted and self.config.admin.is_set:
            params['username'] = self.config.admin.username
            params['password'] = '***'
        return params

    def _send(self, method: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, self.endpoint, timeout=self.config.service.timeout_s, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamUnavailable(self.endpoint, str(e)) from e
        return response

    def get_capabilities(self):
        """The service capabilities as an owslib ``WebFeatureService``; fetched once."""
        if self._wfs is None:
            params = {"SERVICE": "WFS", "VERSION": self.version, "REQUEST": "GetCapabilities"}
            response = self._send("GET", params=params)
            self._wfs = parse_capabilities(response.content, self.endpoint, self.version)
        return self._wfs

    def get_schema(self, type_name: str) -> LayerSchema:
        """
        Describe ``type_name``; the native CRS comes from the capabilities.

        Raises:
            UpstreamUnavailable: schema could not be fetched or parsed
            UnsupportedGeometryType: primary geometry type has no output bucket
        """
        params = {
            "SERVICE": "WFS",
            "VERSION": self.version,
            "REQUEST": "DescribeFeatureType",
            "TYPENAME": type_name,
        }
        xsd = self._send("GET", params=params).content
        crs = native_srs(self.get_capabilities(), type_name)
        if crs is None:
            logger.info(f"No native SRS advertised for {type_name}; bbox will not be reprojected")
        schema = parse_feature_schema(xsd, type_name, crs=crs, lenient=self.config.service.lenient)
        logger.debug(f"Schema for {type_name}: geometry={schema.geometry_property}, crs={schema.crs}, {len(schema.properties)} properties")
        return schema

    def get_feature_request(self, query: SpatialQuery) -> str:
        """GetFeature POST body for ``query``."""
        root = etree.Element(nspath_eval("wfs:GetFeature", NAMESPACES),
                             service="WFS", version=self.version, outputFormat=GEOJSON_FORMAT)
        if self.config.service.max_features > 0:
            root.set("maxFeatures", str(self.config.service.max_features))
        wfs_query = etree.SubElement(root, nspath_eval("wfs:Query", NAMESPACES), typeName=query.type_name)
        for name in query.property_names:
            etree.SubElement(wfs_query, nspath_eval("ogc:PropertyName", NAMESPACES)).text = name
        wfs_query.append(build_filter(query))
        return etree.tostring(root, encoding="unicode")

    def get_features(self, query: SpatialQuery) -> gpd.GeoDataFrame:
        """
        Run ``query`` and return its features in ``query.projection``.

        Raises:
            UpstreamUnavailable: request failed or the response is not GeoJSON
            ReprojectionFailure: features cannot be reprojected to the output projection
        """
        if self.config.service.protocol:
            response = self._send(
                "POST",
                data=self.get_feature_request(query).encode("utf-8"),
                headers={"Content-Type": "text/xml"},
            )
        else:
            params = {
                "SERVICE": "WFS",
                "VERSION": self.version,
                "REQUEST": "GetFeature",
                "TYPENAME": query.type_name,
                "OUTPUTFORMAT": GEOJSON_FORMAT,
                "PROPERTYNAME": ",".join(query.property_names),
                "FILTER": build_filter_xml(query),
            }
            response = self._send("GET", params=params)

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(self.endpoint, f"GetFeature did not return GeoJSON: {e}") from e

        attributes = [name for name in query.property_names if name != query.geometry_property]
        gdf = features_to_geodataframe(payload, attributes, query.srs_name)

        target = parse_crs(query.projection)
        if gdf.crs is not None and not gdf.crs.equals(target):
            try:
                gdf = gdf.to_crs(target)
            except Exception as e:
                raise ReprojectionFailure(f"Cannot reproject features to {query.projection}: {e}") from e

        logger.info(f"Retrieved {len(gdf):,} features from {query.type_name}")
        return gdf
