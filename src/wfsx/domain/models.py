"""
Extraction Domain Models

Pydantic models for the inputs of an extraction and frozen dataclasses for the
short-lived values derived from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator, model_validator
from shapely.geometry.base import BaseGeometry

from ..utils import clean_filename
from .enums import ExtractionState, OutputFormat, OWSType

# OGC KVP keys replaced when a capabilities URL is derived from a service URL
_OWS_KEYS = {"service", "version", "request"}


class BoundingBox(BaseModel):
    """Requested extent with the CRS its coordinates are expressed in."""
    minx: float = Field(..., description="Minimum X (easting/longitude)")
    miny: float = Field(..., description="Minimum Y (northing/latitude)")
    maxx: float = Field(..., description="Maximum X (easting/longitude)")
    maxy: float = Field(..., description="Maximum Y (northing/latitude)")
    crs: str = Field(default="EPSG:4326", description="CRS identifier of the coordinates")

    class Config:
        """Pydantic configuration."""
        frozen = True

    @model_validator(mode="after")
    def _check_extent(self) -> "BoundingBox":
        if self.minx > self.maxx or self.miny > self.maxy:
            raise ValueError(f"Invalid extent: min ({self.minx}, {self.miny}) exceeds max ({self.maxx}, {self.maxy})")
        return self

    @classmethod
    def from_sequence(cls, values, crs: str = "EPSG:4326") -> "BoundingBox":
        """Build from ``[minx, miny, maxx, maxy]`` or a ``"minx,miny,maxx,maxy"`` string."""
        if isinstance(values, str):
            values = [v for v in values.split(",") if v.strip()]
        if len(values) != 4:
            raise ValueError(f"Bounding box needs 4 values, got {len(values)}")
        minx, miny, maxx, maxy = (float(v) for v in values)
        return cls(minx=minx, miny=miny, maxx=maxx, maxy=maxy, crs=crs)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.minx, self.miny, self.maxx, self.maxy)


class SecurityContext(BaseModel):
    """Identity the request runs as, forwarded to trusted upstream services."""
    username: Optional[str] = Field(None, description="Effective username (None = anonymous)")
    roles: list[str] = Field(default_factory=list, description="Roles of the user")

    class Config:
        """Pydantic configuration."""
        frozen = True

    @field_validator("roles", mode="before")
    @classmethod
    def _split_roles(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [r.strip() for r in value.split(";") if r.strip()]
        return value

    @property
    def roles_header(self) -> Optional[str]:
        """Roles as sent in the ``imp-roles`` header, None when there are none."""
        return ";".join(self.roles) if self.roles else None


class PropertyFilter(BaseModel):
    """Legacy text-equality filter on one attribute."""
    property: str
    value: str

    class Config:
        """Pydantic configuration."""
        frozen = True


class ExtractionRequest(BaseModel):
    """Everything needed to extract one layer."""
    url: str = Field(..., description="Service endpoint URL")
    layer_name: str = Field(..., description="Layer (feature type) name, optionally 'ns:name'")
    format: OutputFormat = Field(..., description="Output format identifier")
    bbox: BoundingBox = Field(..., description="Requested extent")
    ows_type: OWSType = Field(default=OWSType.WFS, description="Service family")
    namespace: Optional[str] = Field(None, description="Namespace prefix for the layer")
    projection: str = Field(default="EPSG:4326", description="Output CRS of the written features")
    security: SecurityContext = Field(default_factory=SecurityContext)
    filters: list[PropertyFilter] = Field(default_factory=list, description="AND-ed equality filters")
    request_id: Optional[str] = Field(None, description="Identifier used for the output directory name")

    class Config:
        """Pydantic configuration."""
        frozen = True

    @field_validator("format", mode="before")
    @classmethod
    def _resolve_format(cls, value):
        return OutputFormat.from_identifier(value)

    @field_validator("ows_type", mode="before")
    @classmethod
    def _resolve_ows_type(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("Service URL must include protocol (http:// or https://)")
        return value

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname or ""

    @property
    def wfs_name(self) -> str:
        """Qualified type name as used in WFS requests."""
        if self.namespace and ":" not in self.layer_name:
            return f"{self.namespace}:{self.layer_name}"
        return self.layer_name

    def capabilities_url(self, family: str, version: str) -> str:
        """Service URL with GetCapabilities parameters, other query params kept."""
        parts = urlsplit(self.url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k.lower() not in _OWS_KEYS]
        query += [("SERVICE", family), ("VERSION", version), ("REQUEST", "GetCapabilities")]
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    def containing_dir(self, basedir: Path) -> Path:
        """Directory that holds this extraction's files under ``basedir``."""
        name = self.request_id or f"{self.ows_type.value}_{self.wfs_name}_{self.format.value}"
        return Path(basedir) / clean_filename(name)


class PropertyDescriptor(BaseModel):
    """One attribute of a layer schema."""
    name: str
    binding: str = Field(default="string", description="Type tag (xsd type or geometry binding)")
    is_geometry: bool = False

    class Config:
        """Pydantic configuration."""
        frozen = True


class LayerSchema(BaseModel):
    """Layer schema as described by the service."""
    type_name: str
    geometry_property: str = Field(..., description="Primary geometry property name")
    crs: Optional[str] = Field(None, description="Native CRS, None when not advertised")
    properties: list[PropertyDescriptor] = Field(default_factory=list)

    class Config:
        """Pydantic configuration."""
        frozen = True

    @model_validator(mode="after")
    def _check_primary_geometry(self) -> "LayerSchema":
        primary = [p for p in self.properties if p.name == self.geometry_property]
        if len(primary) != 1 or not primary[0].is_geometry:
            raise ValueError(f"Schema {self.type_name} must declare exactly one geometry property named {self.geometry_property}")
        return self

    @property
    def geometry_descriptor(self) -> PropertyDescriptor:
        return next(p for p in self.properties if p.name == self.geometry_property)

    @property
    def attribute_names(self) -> list[str]:
        return [p.name for p in self.properties if not p.is_geometry]


@dataclass(frozen=True)
class SpatialQuery:
    """Query built for one extraction; consumed once by the feature source."""
    type_name: str
    geometry_property: str
    bbox_geometry: BaseGeometry
    srs_name: str
    property_names: tuple[str, ...]
    projection: str
    filters: tuple[PropertyFilter, ...] = ()


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of a successful extraction."""
    output_dir: Path
    feature_count: int
    files: tuple[Path, ...] = field(default_factory=tuple)
    state: ExtractionState = ExtractionState.COMPLETED
