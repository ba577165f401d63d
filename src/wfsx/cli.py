import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from .cleanup import register_cleanup_handlers, remove_partial_extraction
from .config.settings import Config, ConfigurationError
from .config_loader import build_request, load_request, parse_filter_args
from .domain.enums import OutputFormat
from .domain.models import ExtractionRequest
from .pipeline.export import WRITERS
from .pipeline.extract import WfsExtractor
from .types import (
    AccessDenied,
    ExtractionError,
    ReprojectionFailure,
    UnsupportedFormat,
    UnsupportedGeometryType,
    UnsupportedProtocol,
    UpstreamUnavailable,
)
from .utils import setup_logging, validate_geographic_bbox

app = typer.Typer(help="WFS extractor: permission check -> query -> retrieve -> write files")

# Exit codes per failure kind
EXIT_CODES = {
    AccessDenied: 3,
    UpstreamUnavailable: 4,
    ReprojectionFailure: 5,
    UnsupportedFormat: 2,
    UnsupportedGeometryType: 2,
    UnsupportedProtocol: 2,
}


def exit_code_for(error: Exception) -> int:
    for kind, code in EXIT_CODES.items():
        if isinstance(error, kind):
            return code
    return 1


def load_settings(env_file: Optional[str], output_dir: Optional[str], check_permission: bool) -> Config:
    """Load configuration, turning configuration errors into a CLI exit."""
    overrides = {"check_permission": check_permission}
    if output_dir:
        overrides["output_dir"] = output_dir
    try:
        return Config(env_file=Path(env_file) if env_file else None, **overrides)
    except ConfigurationError as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(1)


def resolve_request(
    request_file: Optional[str],
    url: Optional[str],
    layer: Optional[str],
    format: Optional[str],
    bbox: Optional[str],
    bbox_crs: str,
    projection: Optional[str],
    namespace: Optional[str],
    username: Optional[str],
    roles: Optional[str],
    filters: Optional[list[str]],
) -> ExtractionRequest:
    """Build the request from a YAML file or from individual options."""
    if request_file:
        return load_request(Path(request_file))

    missing = [name for name, value in (("--url", url), ("--layer", layer), ("--format", format), ("--bbox", bbox)) if not value]
    if missing:
        raise ValueError(f"Missing options: {', '.join(missing)} (or pass --request)")

    return build_request(
        url=url,
        layer=layer,
        format=format,
        bbox=bbox,
        bbox_crs=bbox_crs,
        projection=projection,
        namespace=namespace,
        username=username,
        roles=roles,
        filters=parse_filter_args(filters),
    )


@app.command("extract")
def extract_command(
    request_file: Annotated[Optional[str], typer.Option("--request", "-r", help="YAML request file (overrides the request options)")] = None,
    url: Annotated[Optional[str], typer.Option("--url", help="WFS endpoint URL")] = None,
    layer: Annotated[Optional[str], typer.Option("--layer", "-l", help="Layer (feature type) name")] = None,
    format: Annotated[Optional[str], typer.Option("--format", "-f", help="Output format: shp, mif, tab, kml, gpkg, geojson")] = None,
    bbox: Annotated[Optional[str], typer.Option("--bbox", help="Extent as minx,miny,maxx,maxy")] = None,
    bbox_crs: Annotated[str, typer.Option("--bbox-crs", help="CRS of --bbox")] = "EPSG:4326",
    projection: Annotated[Optional[str], typer.Option("--projection", "-p", help="Output CRS (defaults to --bbox-crs)")] = None,
    namespace: Annotated[Optional[str], typer.Option("--namespace", help="Namespace prefix of the layer")] = None,
    username: Annotated[Optional[str], typer.Option("--username", "-u", help="User to impersonate on the secured host")] = None,
    roles: Annotated[Optional[str], typer.Option("--roles", help="Semicolon separated roles of the user")] = None,
    filters: Annotated[Optional[list[str]], typer.Option("--filter", help="property=value equality filter (repeatable, AND-ed)")] = None,
    output_dir: Annotated[Optional[str], typer.Option("--output-dir", "-o", help="Base output directory")] = None,
    env_file: Annotated[Optional[str], typer.Option("--env-file", help="Explicit .env file")] = None,
    check_permission: Annotated[bool, typer.Option("--check-permission/--skip-permission-check", help="Verify layer access before extracting")] = True,
    keep_partial: Annotated[bool, typer.Option("--keep-partial", help="Keep the output directory of a failed extraction")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable detailed logging output")] = False,
    log_to_file: Annotated[bool, typer.Option("--log-to-file", help="Create timestamped log files")] = False,
):
    """
    Extract one layer of a WFS to files.

    Examples:
        wfsx extract --url https://geo.example.org/wfs --layer parcels --format shp --bbox 0,0,10,10
        wfsx extract --request parcels.yml -v
    """
    config = load_settings(env_file, output_dir, check_permission)

    try:
        request = resolve_request(request_file, url, layer, format, bbox, bbox_crs,
                                  projection, namespace, username, roles, filters)
    except (ValueError, FileNotFoundError, ExtractionError) as e:
        typer.echo(f"ERROR: {e}", err=True)
        raise typer.Exit(exit_code_for(e) if isinstance(e, ExtractionError) else 1)

    setup_logging(verbose, request.layer_name, "extract", log_to_file)

    if request.bbox.crs.upper() == "EPSG:4326" and not validate_geographic_bbox(request.bbox.as_tuple()):
        logging.warning(f"Bbox {request.bbox.as_tuple()} is outside the lon/lat range")

    logging.info(f"Extracting {request.wfs_name} from {request.url}")
    logging.info(f"Output format: {request.format.value}, projection: {request.projection}")
    logging.debug(f"Security: {config.get_security_summary()}")

    extractor = WfsExtractor(config)
    target_dir = request.containing_dir(extractor.basedir)
    pre_existing = target_dir.exists()
    if not pre_existing:
        register_cleanup_handlers(target_dir)

    try:
        result = extractor.extract(request)
    except ExtractionError as e:
        logging.error(f"Extraction failed: {e}")
        if isinstance(e, AccessDenied):
            logging.debug(f"Capabilities returned:\n{e.capabilities}")
        if not keep_partial and not pre_existing:
            remove_partial_extraction(target_dir)
        raise typer.Exit(exit_code_for(e))

    logging.info(f"Extraction completed successfully: {result.feature_count:,} features")
    for path in result.files:
        logging.debug(f"  {path}")
    print(f"Extracted to: {result.output_dir}")


@app.command("check-permission")
def check_permission_command(
    url: Annotated[str, typer.Option("--url", help="WFS endpoint URL")],
    layer: Annotated[str, typer.Option("--layer", "-l", help="Layer (feature type) name")],
    username: Annotated[Optional[str], typer.Option("--username", "-u", help="User to impersonate on the secured host")] = None,
    roles: Annotated[Optional[str], typer.Option("--roles", help="Semicolon separated roles of the user")] = None,
    env_file: Annotated[Optional[str], typer.Option("--env-file", help="Explicit .env file")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable detailed logging output")] = False,
):
    """Check whether a user may access a layer, without extracting anything."""
    setup_logging(verbose)
    config = load_settings(env_file, None, True)

    request = build_request(url=url, layer=layer, format="shp", bbox=[0, 0, 0, 0],
                            username=username, roles=roles)
    extractor = WfsExtractor(config)
    try:
        extractor.check_permission(request, config.service.secure_host, username, request.security.roles_header)
    except ExtractionError as e:
        typer.echo(f"DENIED: {e}", err=True)
        raise typer.Exit(exit_code_for(e))

    print(f"Access granted to layer {layer}")


@app.command("formats")
def list_formats():
    """List the output formats with a registered writer."""
    for fmt in OutputFormat:
        if fmt in WRITERS:
            print(fmt.value)


if __name__ == "__main__":
    app()
