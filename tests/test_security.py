"""Tests for the capabilities permission check."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from requests.auth import HTTPBasicAuth

from wfsx.config.settings import AdminCredentials
from wfsx.pipeline.security import (
    IMP_ROLES_HEADER,
    IMP_USERNAME_HEADER,
    CapabilitiesGate,
    ConnectionSettings,
    is_layer_advertised,
    is_trusted_host,
)
from wfsx.pipeline.source import WfsSource
from wfsx.types import AccessDenied, UpstreamUnavailable

from .conftest import CAPABILITIES, SECURE_HOST, FakeResponse, FakeSession

ROADS_CAPABILITIES = "<FeatureType><Name>ns:Roads</Name></FeatureType>"


@pytest.fixture
def gate():
    return CapabilitiesGate(AdminCredentials("admin", "geoserver"), wfs_version="1.0.0", timeout=30)


class TestLayerMatching:

    def test_namespaced_layer_matches(self):
        assert is_layer_advertised(ROADS_CAPABILITIES, "Roads")

    def test_match_is_case_sensitive(self):
        assert not is_layer_advertised(ROADS_CAPABILITIES, "roads")

    def test_other_layer_does_not_match(self):
        assert not is_layer_advertised(ROADS_CAPABILITIES, "Bridges")

    def test_whitespace_and_newlines_tolerated(self):
        capabilities = '<FeatureType xmlns:ns="urn:x">\n   \n  <Name>\n  ns:Roads  \n</Name></FeatureType>'
        assert is_layer_advertised(capabilities, "Roads")

    def test_without_namespace(self):
        assert is_layer_advertised("<FeatureType><Name>Roads</Name></FeatureType>", "Roads")

    def test_partial_name_does_not_match(self):
        assert not is_layer_advertised("<FeatureType><Name>ns:MainRoads</Name></FeatureType>", "Roads")

    def test_regex_characters_in_layer_name_are_literal(self):
        assert not is_layer_advertised("<FeatureType><Name>ns:RoadsX</Name></FeatureType>", "Roads.")


class TestTrustedHost:

    def test_secured_host_case_insensitive(self):
        assert is_trusted_host("GEO.Example.org", SECURE_HOST)

    @pytest.mark.parametrize("host", ["localhost", "127.0.0.1", "LOCALHOST"])
    def test_loopback_is_trusted(self, host):
        assert is_trusted_host(host, SECURE_HOST)

    def test_remote_host_is_not_trusted(self):
        assert not is_trusted_host("public.example.com", SECURE_HOST)
        assert not is_trusted_host("", SECURE_HOST)


class TestConnectionSettings:

    def test_builders_return_new_values(self):
        base = ConnectionSettings(url="http://localhost/wfs")
        with_headers = base.with_impersonation("alice", "ROLE_A")
        with_auth = with_headers.with_basic_auth("admin", "pw")

        assert base.headers == ()
        assert base.auth is None
        assert dict(with_headers.headers) == {IMP_USERNAME_HEADER: "alice", IMP_ROLES_HEADER: "ROLE_A"}
        assert with_headers.auth is None
        assert with_auth.auth == ("admin", "pw")

    def test_roles_header_omitted_when_none(self):
        settings = ConnectionSettings(url="http://localhost/wfs").with_impersonation("alice", None)
        assert dict(settings.headers) == {IMP_USERNAME_HEADER: "alice"}

    def test_request_kwargs_use_preemptive_basic_auth(self):
        kwargs = ConnectionSettings(url="http://x", timeout=5).with_basic_auth("admin", "pw").request_kwargs()
        assert isinstance(kwargs["auth"], HTTPBasicAuth)
        assert kwargs["auth"].username == "admin"
        assert kwargs["timeout"] == 5


class TestCheckPermission:

    def test_secured_host_gets_headers_and_credentials(self, gate, make_request):
        session = FakeSession()
        request = make_request()

        gate.session = session
        gate.check_permission(request, SECURE_HOST, "alice", "ROLE_USER;ROLE_EDITOR")

        method, url, kwargs = session.calls[0]
        assert method == "GET"
        assert "SERVICE=WFS" in url and "VERSION=1.0.0" in url and "REQUEST=GetCapabilities" in url
        assert kwargs["headers"] == {IMP_USERNAME_HEADER: "alice", IMP_ROLES_HEADER: "ROLE_USER;ROLE_EDITOR"}
        assert kwargs["auth"].username == "admin"
        assert kwargs["auth"].password == "geoserver"

    def test_loopback_host_gets_headers_and_credentials(self, gate, make_request):
        settings = gate.connection_settings(make_request(url="http://127.0.0.1:8080/geoserver/wfs"),
                                            SECURE_HOST, "alice", None)
        assert dict(settings.headers) == {IMP_USERNAME_HEADER: "alice"}
        assert settings.auth == ("admin", "geoserver")

    def test_remote_host_gets_nothing(self, gate, make_request):
        session = FakeSession()
        gate.session = session
        request = make_request(url="https://public.example.com/wfs")

        gate.check_permission(request, SECURE_HOST, "alice", "ROLE_USER")

        _, _, kwargs = session.calls[0]
        assert kwargs["headers"] == {}
        assert "auth" not in kwargs

    def test_anonymous_user_gets_nothing(self, gate, make_request):
        settings = gate.connection_settings(make_request(), SECURE_HOST, None, "ROLE_USER")
        assert settings.headers == ()
        assert settings.auth is None

    def test_no_admin_credentials_sends_headers_only(self, make_request):
        gate = CapabilitiesGate(AdminCredentials(), timeout=30)
        settings = gate.connection_settings(make_request(), SECURE_HOST, "alice", None)

        assert dict(settings.headers) == {IMP_USERNAME_HEADER: "alice"}
        assert settings.auth is None
        assert "auth" not in settings.request_kwargs()

    @pytest.mark.parametrize("url, trusted", [
        (f"https://{SECURE_HOST}/geoserver/wfs", True),
        ("http://localhost:8080/geoserver/wfs", True),
        ("https://public.example.com/wfs", False),
    ])
    def test_gate_and_source_trust_the_same_hosts(self, gate, make_request, config, url, trusted):
        request = make_request(url=url)
        settings = gate.connection_settings(request, config.service.secure_host, "alice", None)
        source = WfsSource(request, config, session=FakeSession())

        assert (settings.auth is not None) is trusted
        assert source.trusted is trusted
        assert (source.session.auth is not None) is trusted

    def test_returns_capabilities_when_permitted(self, gate, make_request):
        gate.session = FakeSession()
        assert gate.check_permission(make_request(), SECURE_HOST, "alice", None) == CAPABILITIES

    def test_denied_when_layer_missing(self, gate, make_request):
        gate.session = FakeSession()
        with pytest.raises(AccessDenied) as exc_info:
            gate.check_permission(make_request(layer_name="Bridges"), SECURE_HOST, "alice", None)

        assert exc_info.value.layer_name == "Bridges"
        assert exc_info.value.capabilities == CAPABILITIES
        assert "FeatureTypeList" not in str(exc_info.value)

    def test_denied_is_case_sensitive(self, gate, make_request):
        gate.session = FakeSession()
        with pytest.raises(AccessDenied):
            gate.check_permission(make_request(layer_name="roads"), SECURE_HOST, "alice", None)

    def test_fetch_failure_is_upstream_unavailable(self, gate, make_request):
        gate.session = FakeSession(fail_with=requests.ConnectionError("connection refused"))
        with pytest.raises(UpstreamUnavailable):
            gate.check_permission(make_request(), SECURE_HOST, "alice", None)

    def test_http_error_is_upstream_unavailable(self, gate, make_request):
        with patch("wfsx.pipeline.security.requests.get", return_value=FakeResponse(status_code=503)) as mock_get:
            with pytest.raises(UpstreamUnavailable):
                gate.check_permission(make_request(), SECURE_HOST, "alice", None)
        assert mock_get.call_count == 1

    def test_module_level_get_used_without_session(self, gate, make_request):
        mock_get = MagicMock(return_value=FakeResponse(text=CAPABILITIES))
        with patch("wfsx.pipeline.security.requests.get", mock_get):
            gate.check_permission(make_request(), SECURE_HOST, "alice", None)
        assert mock_get.call_args.kwargs["timeout"] == 30
