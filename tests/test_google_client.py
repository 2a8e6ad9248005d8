"""
Unit tests for the shared Google API plumbing.

Covers lazy per-thread service creation and the mapping of googleapiclient
and google-auth failures onto the msgsync error taxonomy.
"""

import json
import socket
import ssl
import threading
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from msgsync.api.google_client import (
    GoogleAPIConnector,
    http_error_reasons,
    translate_http_error,
)
from msgsync.errors import PlatformAPIError, TransientUpstreamError, UpstreamAuthError


def http_error(status, content=b"error"):
    """Create an HttpError with the given status code and body."""
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.reason = "error"
    return HttpError(mock_resp, content)


def error_body(reason=None, status=None):
    error = {"code": 403, "message": "denied"}
    if reason:
        error["errors"] = [{"reason": reason, "message": "denied"}]
    if status:
        error["status"] = status
    return json.dumps({"error": error}).encode("utf-8")


class ExampleConnector(GoogleAPIConnector):
    SERVICE_NAME = "gmail"
    SERVICE_VERSION = "v1"


class TestServiceCreation:
    """Tests for lazy service creation."""

    @patch("msgsync.api.google_client.build")
    def test_service_created_on_first_access(self, mock_build):
        """Test that the service is built with the connector's credentials."""
        mock_creds = MagicMock()
        mock_service = MagicMock()
        mock_build.return_value = mock_service

        connector = ExampleConnector(mock_creds)
        service = connector.service

        mock_build.assert_called_once_with(
            "gmail", "v1", credentials=mock_creds, cache_discovery=False
        )
        assert service is mock_service

    @patch("msgsync.api.google_client.build")
    def test_service_cached_per_thread(self, mock_build):
        """Test that one thread reuses its service."""
        connector = ExampleConnector(MagicMock())

        first = connector.service
        second = connector.service

        mock_build.assert_called_once()
        assert first is second

    @patch("msgsync.api.google_client.build")
    def test_each_thread_builds_its_own_service(self, mock_build):
        """Test that service objects are never shared between threads."""
        mock_build.side_effect = lambda *args, **kwargs: MagicMock()
        connector = ExampleConnector(MagicMock())
        services = []

        main_service = connector.service
        thread = threading.Thread(target=lambda: services.append(connector.service))
        thread.start()
        thread.join()

        assert mock_build.call_count == 2
        assert services[0] is not main_service

    @patch("msgsync.api.google_client.build")
    def test_service_creation_failure_raises_error(self, mock_build):
        """Test that build failures become PlatformAPIError."""
        mock_build.side_effect = Exception("Connection failed")

        connector = ExampleConnector(MagicMock())

        with pytest.raises(PlatformAPIError, match="Failed to create API service"):
            _ = connector.service


class TestTranslateHttpError:
    """Tests for HttpError classification."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_transient_statuses(self, status):
        """Test that rate limits and server errors are transient."""
        error = translate_http_error(http_error(status), "op")
        assert isinstance(error, TransientUpstreamError)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_statuses(self, status):
        """Test that 401 and plain 403 are authentication failures."""
        error = translate_http_error(http_error(status), "op")
        assert isinstance(error, UpstreamAuthError)

    def test_rate_limited_403_is_transient(self):
        """Test that a 403 carrying a rate-limit reason is retried."""
        error = translate_http_error(
            http_error(403, error_body(reason="userRateLimitExceeded")), "op"
        )
        assert isinstance(error, TransientUpstreamError)

    def test_resource_exhausted_status_is_transient(self):
        """Test that a 403 with RESOURCE_EXHAUSTED status is retried."""
        error = translate_http_error(
            http_error(403, error_body(status="RESOURCE_EXHAUSTED")), "op"
        )
        assert isinstance(error, TransientUpstreamError)

    def test_permission_403_is_auth(self):
        """Test that a 403 with another reason is not retried."""
        error = translate_http_error(
            http_error(403, error_body(reason="insufficientPermissions")), "op"
        )
        assert isinstance(error, UpstreamAuthError)

    def test_other_statuses_are_plain_api_errors(self):
        """Test that client errors are neither transient nor auth."""
        error = translate_http_error(http_error(400), "list_threads")
        assert type(error) is PlatformAPIError
        assert "list_threads failed with status 400" in str(error)

    def test_reasons_from_unparseable_body(self):
        """Test that a non-JSON body yields no reasons."""
        assert http_error_reasons(http_error(403, b"<html>")) == set()


class TestExecute:
    """Tests for request execution and error mapping."""

    @pytest.fixture
    def connector(self):
        return ExampleConnector(MagicMock())

    def test_returns_response(self, connector):
        """Test that the response is passed through."""
        assert connector._execute(lambda: {"ok": True}, "op") == {"ok": True}

    def test_not_found_tolerated(self, connector):
        """Test that 404 returns None when allowed."""
        def request():
            raise http_error(404)

        assert connector._execute(request, "op", not_found_ok=True) is None

    def test_not_found_raises_by_default(self, connector):
        """Test that 404 is an API error otherwise."""
        def request():
            raise http_error(404)

        with pytest.raises(PlatformAPIError):
            connector._execute(request, "op")

    def test_http_error_is_chained(self, connector):
        """Test that the translated error keeps the original as its cause."""
        def request():
            raise http_error(503)

        with pytest.raises(TransientUpstreamError) as exc_info:
            connector._execute(request, "op")
        assert isinstance(exc_info.value.__cause__, HttpError)

    def test_refresh_error_is_auth(self, connector):
        """Test that a rejected token refresh is an auth failure."""
        def request():
            raise RefreshError("invalid_grant")

        with pytest.raises(UpstreamAuthError, match="credentials rejected"):
            connector._execute(request, "op")

    @pytest.mark.parametrize(
        "error",
        [
            TransportError("reset"),
            TimeoutError("slow"),
            ConnectionError("down"),
            ssl.SSLEOFError("EOF"),
            socket.gaierror(-2, "Name or service not known"),
            httplib2.ServerNotFoundError("oauth2.googleapis.com"),
        ],
    )
    def test_network_errors_are_transient(self, connector, error):
        """Test that network failures are retried."""
        def request():
            raise error

        with pytest.raises(TransientUpstreamError, match="network error"):
            connector._execute(request, "op")
