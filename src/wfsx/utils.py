"""
Shared helpers for the extractor.

Sections:
- Logging setup and stage timing
- Output paths
- Bbox checks
- Request files
"""

import functools
import logging
import re
import sys
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Libraries that log every HTTP connection or OGR driver lookup at INFO/DEBUG
NOISY_LOGGERS = ("urllib3", "fiona", "pyogrio", "pyproj", "owslib")

# =============================================================================
# Logging Setup and Stage Timing
# =============================================================================

def setup_logging(
    verbose: bool,
    layer_name: Optional[str] = None,
    command: Optional[str] = None,
    enable_file_logging: bool = False,
    logs_dir: Path = Path("logs"),
) -> Optional[Path]:
    """
    Configure root logging for a CLI run.

    Args:
        verbose: DEBUG level when True, INFO otherwise
        layer_name: Layer being extracted, used in the log file name
        command: CLI command name, used in the log file name
        enable_file_logging: Also write ``<layer>_<command>_<timestamp>.log``
        logs_dir: Directory for log files

    Returns:
        Path of the log file, None when only logging to stdout
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = None

    if enable_file_logging and layer_name and command:
        logs_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = logs_dir / f"{clean_filename(layer_name)}_{command}_{stamp}.log"
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
        force=True
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file


def timer(func: Callable) -> Callable:
    """Log the wall time of each call, including calls that raise."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logger.info(f"{func.__name__} finished in {time.perf_counter() - started:.2f}s")
    return wrapper


# =============================================================================
# Output Paths
# =============================================================================

def ensure_directory(path: Path) -> Path:
    """Create ``path`` (and parents) if missing; existing files are kept."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def clean_filename(name: str) -> str:
    """
    Make a type name or request id usable as a file or directory name.

    Namespace separators, path separators and whitespace become ``_``;
    runs of ``_`` collapse to one.
    """
    cleaned = re.sub(r'[<>:"/\\|?*\s]', '_', name)
    cleaned = re.sub(r'_+', '_', cleaned)
    return cleaned.strip('_')


# =============================================================================
# Bbox Checks
# =============================================================================

def validate_geographic_bbox(bbox: tuple[float, float, float, float]) -> bool:
    """True when a lon/lat bbox is ordered and inside [-180, 180] x [-90, 90]."""
    if len(bbox) != 4:
        return False
    minx, miny, maxx, maxy = bbox
    in_range = all(-180 <= x <= 180 for x in (minx, maxx)) and all(-90 <= y <= 90 for y in (miny, maxy))
    return in_range and minx <= maxx and miny <= maxy


# =============================================================================
# Request Files
# =============================================================================

def load_yaml_file(file_path: Path) -> dict[str, Any]:
    """
    Read a YAML request file.

    Raises:
        FileNotFoundError: file does not exist
        ValueError: invalid YAML, or the document is not a mapping
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Request file not found: {file_path}")

    try:
        with open(file_path, encoding='utf-8') as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {file_path}: {e}") from e

    if not isinstance(content, dict):
        raise ValueError(f"Expected a mapping at the top of {file_path}")
    return content
