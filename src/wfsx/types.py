"""
Error taxonomy and progress reporting for the extraction pipeline.

Every stage either returns a typed result or raises one of the exceptions below.
Nothing is retried internally; callers decide whether a failure is worth a new
extraction (only ``UpstreamUnavailable`` is transient).
"""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """Base exception for extraction failures."""
    pass


class AccessDenied(ExtractionError):
    """Requested layer is not advertised in the capabilities visible to the caller.

    ``capabilities`` holds the full document for diagnostics. It can list other
    layers, so it is deliberately left out of ``str(exc)``.
    """
    def __init__(self, layer_name: str, capabilities: str = ""):
        self.layer_name = layer_name
        self.capabilities = capabilities
        super().__init__(f"User does not have sufficient privileges to access the layer: {layer_name}")


class UpstreamUnavailable(ExtractionError):
    """Capabilities, schema or feature fetch failed."""
    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"Upstream service unavailable ({url}): {message}")


class UnsupportedFormat(ExtractionError):
    """Output format identifier is not one of the supported formats."""
    def __init__(self, format_id: str):
        self.format_id = format_id
        super().__init__(f"{format_id} is not a recognized vector format")


class UnsupportedGeometryType(ExtractionError):
    """Geometry binding cannot be mapped to an output bucket."""
    def __init__(self, binding: str):
        self.binding = binding
        super().__init__(f"{binding} is not a recognized geometry type")


class UnsupportedProtocol(ExtractionError):
    """Request targets a service family the extractor does not handle."""
    def __init__(self, ows_type: str):
        self.ows_type = ows_type
        super().__init__(f"{ows_type} must be WFS for the WFS extractor")


class ReprojectionFailure(ExtractionError):
    """CRS lookup or bbox transformation failed."""
    pass


class WriteFailure(ExtractionError):
    """A writer reported an internal error while generating files."""
    pass


class ExtractionCancelled(ExtractionError):
    """Progress listener was cancelled while files were being written."""
    pass


class InvalidStateTransition(ExtractionError):
    """Extraction state machine was asked to move backwards or skip a stage."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move extraction from '{current}' to '{target}'")


class ProgressListener:
    """Progress and cancellation sink handed to every writer.

    Writers report ``started``/``progress``/``complete`` and forward any
    internal error through ``exception_occurred``, which aborts the whole
    extraction instead of leaving silently partial files behind.
    """

    def __init__(self, description: str = ""):
        self.description = description
        self.percent = 0.0
        self.completed = False
        self._cancelled = False

    def started(self) -> None:
        self.percent = 0.0
        logger.debug(f"{self.description or 'writer'} started")

    def progress(self, percent: float) -> None:
        self.check_cancelled()
        self.percent = max(0.0, min(100.0, percent))

    def complete(self) -> None:
        self.percent = 100.0
        self.completed = True
        logger.debug(f"{self.description or 'writer'} complete")

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def check_cancelled(self) -> None:
        if self._cancelled:
            raise ExtractionCancelled(f"{self.description or 'Extraction'} was cancelled")

    def exception_occurred(self, exception: BaseException, message: Optional[str] = None) -> None:
        """Abort the extraction; always raises."""
        raise WriteFailure(message or f"Writer failed: {exception}") from exception
