"""
WfsExtractor - Extraction Orchestration

Runs one extraction end to end:
CapabilitiesGate -> schema -> QueryBuilder -> WfsSource -> feature writer -> BBoxWriter.
Every stage either succeeds or raises a specific ExtractionError; nothing is
retried and a failed extraction is never resumed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

import requests

from ..config.settings import Config
from ..domain.enums import ExtractionState, OWSType
from ..domain.models import ExtractionRequest, ExtractionResult
from ..types import ExtractionError, ProgressListener, UnsupportedProtocol
from ..utils import ensure_directory, timer
from .export import BBoxWriter, get_writer_factory
from .query import QueryBuilder
from .security import CapabilitiesGate
from .source import WfsSource

logger = logging.getLogger(__name__)


class ExtractionRun:
    """State of one extraction; states only move forward."""

    def __init__(self, request: ExtractionRequest):
        self.request = request
        self.state = ExtractionState.REQUESTED
        self.failure: Optional[BaseException] = None

    def advance(self, target: ExtractionState) -> None:
        self.state = self.state.advance(target)
        logger.debug(f"[{self.request.layer_name}] -> {self.state.value}")

    def fail(self, error: BaseException) -> None:
        self.failure = error
        self.state = self.state.advance(ExtractionState.FAILED)
        logger.error(f"[{self.request.layer_name}] extraction failed: {error}")


class WfsExtractor:
    """
    Obtains data from a WFS and writes it to the filesystem.

    Example:
        extractor = WfsExtractor(Config())
        result = extractor.extract(request)
        print(result.output_dir, result.feature_count)
    """

    def __init__(self,
                 config: Config,
                 basedir: Optional[Path] = None,
                 session_factory: Callable[[], requests.Session] = requests.Session):
        """
        Initialize extractor.

        Args:
            config: Extractor configuration (admin identity, secure host, timeouts)
            basedir: Directory extraction directories are created in
                (defaults to ``config.output_dir``)
            session_factory: Creates the HTTP session used for one extraction
        """
        self.config = config
        self.basedir = Path(basedir) if basedir is not None else config.output_dir
        self.session_factory = session_factory
        self.query_builder = QueryBuilder()

    def check_permission(self,
                         request: ExtractionRequest,
                         secured_host: str,
                         username: Optional[str],
                         roles: Optional[str],
                         session: Optional[requests.Session] = None) -> str:
        """Verify ``username`` may access the request's layer; see ``CapabilitiesGate``."""
        gate = CapabilitiesGate(
            self.config.admin,
            wfs_version=self.config.service.wfs_version,
            timeout=self.config.service.capabilities_timeout_s,
            session=session,
        )
        return gate.check_permission(request, secured_host, username, roles)

    @timer
    def extract(self, request: ExtractionRequest, listener: Optional[ProgressListener] = None) -> ExtractionResult:
        """
        Extract the data as defined in the request.

        Args:
            request: What to extract and where from
            listener: Progress/cancellation sink handed to the writers

        Returns:
            ExtractionResult with the directory holding the extracted files

        Raises:
            UnsupportedFormat: no writer for the requested format (before any I/O)
            UnsupportedProtocol: request does not target a WFS
            AccessDenied, UpstreamUnavailable, ReprojectionFailure,
            WriteFailure, ExtractionCancelled: from the corresponding stage
        """
        # validated before any network or file work
        writer_factory = get_writer_factory(request.format)
        if request.ows_type is not OWSType.WFS:
            raise UnsupportedProtocol(request.ows_type.value)

        listener = listener or ProgressListener(f"{request.layer_name} ({request.format.value})")
        run = ExtractionRun(request)
        session = self.session_factory()
        try:
            return self._run(run, writer_factory, listener, session)
        except ExtractionError as e:
            run.fail(e)
            raise
        finally:
            session.close()

    def _run(self, run: ExtractionRun, writer_factory, listener: ProgressListener,
             session: requests.Session) -> ExtractionResult:
        request = run.request
        security = request.security

        if self.config.check_permission:
            # same trusted-host rule as WfsSource: the configured host, never the request
            self.check_permission(request, self.config.service.secure_host, security.username,
                                  security.roles_header, session=session)
        else:
            logger.debug("Permission check disabled by configuration")
        run.advance(ExtractionState.PERMISSION_CHECKED)

        source = WfsSource(request, self.config, session=session)
        logger.debug(f"Connection params: {source.connection_params()}")
        schema = source.get_schema(request.wfs_name)
        run.advance(ExtractionState.SCHEMA_FETCHED)

        query = self.query_builder.create_query(request, schema)
        if query is None:
            raise UnsupportedProtocol(request.ows_type.value)
        run.advance(ExtractionState.QUERY_BUILT)

        features = source.get_features(query)
        run.advance(ExtractionState.FEATURES_RETRIEVED)
        logger.info(f"Number of features returned: {len(features):,}")

        basedir = ensure_directory(request.containing_dir(self.basedir))

        files = list(writer_factory(listener, schema, basedir, features).generate_files())
        run.advance(ExtractionState.FEATURES_WRITTEN)

        bbox_writer = BBoxWriter(request.bbox, basedir, request.format, request.projection, listener)
        files += bbox_writer.generate_files()
        run.advance(ExtractionState.BBOX_WRITTEN)

        run.advance(ExtractionState.COMPLETED)
        logger.info(f"Extraction of {request.wfs_name} completed: {len(files)} file(s) in {basedir}")
        return ExtractionResult(output_dir=basedir, feature_count=len(features), files=tuple(files), state=run.state)
