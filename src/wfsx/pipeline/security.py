"""
CapabilitiesGate - Layer Access Control

Authorization is delegated to the upstream service: its capabilities document
is generated for the identity carried in the impersonation headers, so a layer
the user may not read is simply not listed. The gate fetches that document and
re-verifies the requested layer really appears in it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Optional

import requests
from requests.auth import HTTPBasicAuth

from ..config.settings import AdminCredentials
from ..domain.models import ExtractionRequest
from ..types import AccessDenied, UpstreamUnavailable

logger = logging.getLogger(__name__)

IMP_USERNAME_HEADER = "imp-username"
IMP_ROLES_HEADER = "imp-roles"

LOOPBACK_HOSTS = ("localhost", "127.0.0.1")


def is_trusted_host(host: Optional[str], secured_host: Optional[str]) -> bool:
    """True when ``host`` is the configured secured host or a loopback address.

    Shared by the permission check and the feature source so both apply the
    same rule.
    """
    if not host:
        return False
    host = host.lower()
    if secured_host and host == secured_host.lower():
        return True
    return host in LOOPBACK_HOSTS


@dataclass(frozen=True)
class ConnectionSettings:
    """Immutable description of one upstream HTTP request."""
    url: str
    timeout: float = 60.0
    headers: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    auth: Optional[tuple[str, str]] = None

    def with_impersonation(self, username: str, roles: Optional[str] = None) -> "ConnectionSettings":
        """Return a copy carrying the impersonation headers."""
        headers = [(IMP_USERNAME_HEADER, username)]
        if roles is not None:
            headers.append((IMP_ROLES_HEADER, roles))
        return replace(self, headers=self.headers + tuple(headers))

    def with_basic_auth(self, username: str, password: str) -> "ConnectionSettings":
        """Return a copy with preemptive HTTP Basic credentials."""
        return replace(self, auth=(username, password))

    def request_kwargs(self) -> dict:
        """Keyword arguments for ``requests``."""
        kwargs = {"headers": dict(self.headers), "timeout": self.timeout}
        if self.auth is not None:
            # requests sends Basic credentials with the first request
            kwargs["auth"] = HTTPBasicAuth(*self.auth)
        return kwargs


def fetch_text(settings: ConnectionSettings, session: Optional[requests.Session] = None) -> str:
    """GET ``settings.url`` and return the body as text.

    Raises:
        UpstreamUnavailable: transport error or HTTP error status
    """
    getter = session.get if session is not None else requests.get
    try:
        response = getter(settings.url, **settings.request_kwargs())
        response.raise_for_status()
    except requests.RequestException as e:
        raise UpstreamUnavailable(settings.url, str(e)) from e
    return response.text


def layer_pattern(layer_name: str) -> re.Pattern:
    """Pattern matching a ``<FeatureType>`` whose ``<Name>`` is the layer, namespace optional."""
    return re.compile(
        r"<FeatureType[^>]*>(\\n|\s)*<Name>\s*(\w*:)?" + re.escape(layer_name) + r"\s*</Name>",
        re.MULTILINE,
    )


def is_layer_advertised(capabilities: str, layer_name: str) -> bool:
    return layer_pattern(layer_name).search(capabilities) is not None


class CapabilitiesGate:
    """
    Verifies a caller may access a layer before anything is extracted.

    Impersonation headers and admin credentials are only sent to trusted hosts;
    a remote public service is queried anonymously.
    """

    def __init__(self,
                 admin: AdminCredentials,
                 wfs_version: str = "1.0.0",
                 timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        """
        Args:
            admin: Privileged identity used for the capabilities fetch on trusted hosts
            wfs_version: Protocol version of the capabilities request
            timeout: Capabilities fetch timeout in seconds
            session: Optional requests session (a module-level GET is used otherwise)
        """
        self.admin = admin
        self.wfs_version = wfs_version
        self.timeout = timeout
        self.session = session

    def connection_settings(self,
                            request: ExtractionRequest,
                            secured_host: str,
                            username: Optional[str],
                            roles: Optional[str]) -> ConnectionSettings:
        """Build the capabilities request for ``request``; pure, no I/O."""
        settings = ConnectionSettings(
            url=request.capabilities_url("WFS", self.wfs_version),
            timeout=self.timeout,
        )
        if username is not None and is_trusted_host(request.host, secured_host):
            logger.debug("checkPermission - secured server: adding impersonation headers")
            settings = settings.with_impersonation(username, roles)
            if self.admin.is_set:
                settings = settings.with_basic_auth(self.admin.username, self.admin.password)
            else:
                logger.warning("No admin credentials configured; capabilities request sent without authentication")
        else:
            logger.debug("checkPermission - non secured server")
        return settings

    def check_permission(self,
                         request: ExtractionRequest,
                         secured_host: str,
                         username: Optional[str],
                         roles: Optional[str]) -> str:
        """
        Fetch the capabilities as the caller and verify the layer is listed.

        Args:
            request: Extraction request naming the service and layer
            secured_host: Host trusted with impersonation headers
            username: Effective username (None = anonymous)
            roles: Semicolon separated roles, sent only when not None

        Returns:
            The capabilities document

        Raises:
            AccessDenied: layer not advertised in the capabilities
            UpstreamUnavailable: capabilities could not be fetched
        """
        settings = self.connection_settings(request, secured_host, username, roles)
        logger.info(f"Checking access to layer {request.layer_name} on {request.host}")
        capabilities = fetch_text(settings, self.session)

        if not is_layer_advertised(capabilities, request.layer_name):
            logger.warning(f"Layer {request.layer_name} not advertised to user {username or '<anonymous>'}")
            raise AccessDenied(request.layer_name, capabilities)

        logger.debug(f"Layer {request.layer_name} is advertised in capabilities")
        return capabilities
