"""Tests for OAuth coordinator module."""

import os
import socket
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest import mock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from src.oauth.config import GmailOAuthConfig, parse_callback_url
from src.oauth.coordinator import (
    AuthorizationRequest,
    FlowState,
    OAuthCoordinator,
    build_authorization_url,
)
from src.oauth.exceptions import (
    AuthorizationTimeoutError,
    FlowInProgressError,
    RemoteDeniedError,
    TokenExchangeError,
)
from src.oauth.token_storage import Credential


@pytest.fixture
def temp_token_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "credentials.json")


@pytest.fixture
def config(temp_token_file):
    return GmailOAuthConfig(
        client_id="test_client_id",
        client_secret="test_client_secret",
        callback_port=0,
        token_file=temp_token_file,
        callback_timeout=5,
    )


@pytest.fixture
def coordinator(config):
    return OAuthCoordinator(config=config)


def token_response(payload):
    response = mock.Mock()
    response.status_code = 200
    response.json.return_value = payload
    return response


GOOD_TOKENS = {
    "access_token": "flow_access",
    "refresh_token": "flow_refresh",
    "expires_in": 3600,
    "scope": "https://www.googleapis.com/auth/gmail.modify",
}


def fake_browser(**overrides):
    """
    Stand-in for the user's browser: follows the authorization URL's
    redirect_uri back to the listener with a code and the echoed state.
    """
    seen = {}

    def present(auth_url, open_browser):
        query = parse_qs(urlparse(auth_url).query)
        seen["auth_url"] = auth_url
        seen["redirect_uri"] = query["redirect_uri"][0]
        params = {"code": "browser_code", "state": query["state"][0]}
        params.update(overrides)

        def visit():
            seen["response"] = requests.get(seen["redirect_uri"], params=params, timeout=5)

        threading.Thread(target=visit, daemon=True).start()

    return present, seen


class TestBuildAuthorizationUrl:
    """Tests for authorization URL generation."""

    def test_url_parameters(self, config):
        auth_request = AuthorizationRequest(
            scopes=["scope.a", "scope.b"], host="localhost", port=4123, path="/cb"
        )

        url = build_authorization_url(config, auth_request)
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["client_id"] == ["test_client_id"]
        assert query["redirect_uri"] == ["http://localhost:4123/cb"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["scope.a scope.b"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == [auth_request.state]

    def test_ipv6_redirect_uri_round_trips(self):
        """An IPv6 callback URL is advertised exactly as it was requested."""
        requested = "http://[::1]:3000/oauth2callback"
        host, port, path = parse_callback_url(requested)

        auth_request = AuthorizationRequest(scopes=["s"], host=host, port=port, path=path)

        assert auth_request.redirect_uri == requested

    def test_root_path_redirect_uri_round_trips(self):
        requested = "http://localhost:4100/"
        host, port, path = parse_callback_url("http://localhost:4100")

        auth_request = AuthorizationRequest(scopes=["s"], host=host, port=port, path=path)

        assert auth_request.redirect_uri == requested

    def test_requests_have_distinct_state(self):
        first = AuthorizationRequest(scopes=["s"], host="localhost", port=1, path="/cb")
        second = AuthorizationRequest(scopes=["s"], host="localhost", port=1, path="/cb")

        assert first.state != second.state
        assert first.flow_id != second.flow_id


class TestAuthenticate:
    """Tests for the end-to-end authorization flow."""

    @mock.patch("requests.post")
    def test_successful_flow(self, mock_post, coordinator, config):
        mock_post.return_value = token_response(GOOD_TOKENS)
        present, seen = fake_browser()

        with mock.patch.object(coordinator, "_present", side_effect=present):
            credential = coordinator.authenticate(open_browser=False)

        assert credential.access_token == "flow_access"
        assert coordinator.state == FlowState.RESOLVED
        assert coordinator.current_request is None
        assert mock_post.call_args[1]["data"]["code"] == "browser_code"
        assert mock_post.call_args[1]["data"]["redirect_uri"] == seen["redirect_uri"]

        stored = coordinator.storage.load()
        assert stored.refresh_token == "flow_refresh"

    @mock.patch("requests.post")
    def test_fallback_port_used_for_url_and_exchange(self, mock_post, coordinator):
        """When the preferred port is taken the actual port is used consistently."""
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        busy_port = holder.getsockname()[1]
        mock_post.return_value = token_response(GOOD_TOKENS)
        present, seen = fake_browser()

        try:
            with mock.patch.object(coordinator, "_present", side_effect=present):
                coordinator.authenticate(
                    callback_url=f"http://localhost:{busy_port}/oauth2callback",
                    open_browser=False,
                )
        finally:
            holder.close()

        actual_port = urlparse(seen["redirect_uri"]).port
        assert actual_port != busy_port
        assert mock_post.call_args[1]["data"]["redirect_uri"] == (
            f"http://localhost:{actual_port}/oauth2callback"
        )

    @mock.patch("requests.post")
    def test_browser_response_written_before_exchange(self, mock_post, coordinator):
        mock_post.return_value = token_response(GOOD_TOKENS)
        present, seen = fake_browser()

        with mock.patch.object(coordinator, "_present", side_effect=present):
            coordinator.authenticate(open_browser=False)

        # Give the client thread a moment to record the already-sent response
        for _ in range(50):
            if "response" in seen:
                break
            time.sleep(0.1)
        assert seen["response"].status_code == 200

    @mock.patch("requests.post")
    def test_remote_denial(self, mock_post, coordinator):
        present, _ = fake_browser(error="access_denied", code="")

        with mock.patch.object(coordinator, "_present", side_effect=present):
            with pytest.raises(RemoteDeniedError):
                coordinator.authenticate(open_browser=False)

        assert coordinator.state == FlowState.FAILED
        mock_post.assert_not_called()
        assert coordinator.storage.exists() is False

    @mock.patch("requests.post")
    def test_exchange_failure(self, mock_post, coordinator):
        mock_post.return_value = mock.Mock(status_code=400, text="invalid_grant")
        present, _ = fake_browser()

        with mock.patch.object(coordinator, "_present", side_effect=present):
            with pytest.raises(TokenExchangeError):
                coordinator.authenticate(open_browser=False)

        assert coordinator.state == FlowState.FAILED
        assert coordinator.storage.exists() is False

    def test_timeout(self, coordinator):
        with mock.patch.object(coordinator, "_present"):
            with pytest.raises(AuthorizationTimeoutError):
                coordinator.authenticate(open_browser=False, timeout=0.2)

        assert coordinator.state == FlowState.FAILED

    def test_ipv6_callback_advertised_with_brackets(self, coordinator):
        with mock.patch("src.oauth.coordinator.OAuthCallbackServer") as server_class:
            server = server_class.return_value
            server.start.return_value = 3000
            server.wait_for_callback.side_effect = AuthorizationTimeoutError("slow")

            with mock.patch.object(coordinator, "_present") as present:
                with pytest.raises(AuthorizationTimeoutError):
                    coordinator.authenticate(
                        callback_url="http://[::1]:3000/oauth2callback", open_browser=False
                    )

        assert server_class.call_args[1]["bind_host"] == "::1"
        query = parse_qs(urlparse(present.call_args[0][0]).query)
        assert query["redirect_uri"] == ["http://[::1]:3000/oauth2callback"]
        server.stop.assert_called()

    def test_concurrent_flow_rejected(self, coordinator):
        presented = threading.Event()
        release = threading.Event()
        errors = []

        def slow_present(auth_url, open_browser):
            presented.set()
            release.wait(5)

        def run_first():
            try:
                coordinator.authenticate(open_browser=False, timeout=0.2)
            except AuthorizationTimeoutError as e:
                errors.append(e)

        with mock.patch.object(coordinator, "_present", side_effect=slow_present):
            first = threading.Thread(target=run_first)
            first.start()
            assert presented.wait(5)

            with pytest.raises(FlowInProgressError):
                coordinator.authenticate(open_browser=False)

            release.set()
            first.join(5)

        assert len(errors) == 1

    def test_present_opens_browser(self, coordinator):
        with mock.patch("webbrowser.open") as mock_open:
            coordinator._present("https://example.com/auth", open_browser=True)
            mock_open.assert_called_once_with("https://example.com/auth")

        with mock.patch("webbrowser.open") as mock_open:
            coordinator._present("https://example.com/auth", open_browser=False)
            mock_open.assert_not_called()


class TestTokenAccess:
    """Tests for token access helpers."""

    def _store(self, coordinator, expires_in=3600):
        coordinator.storage.save(
            Credential(
                access_token="stored_access",
                refresh_token="stored_refresh",
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
                scopes=["scope.a"],
            )
        )

    def test_get_authorization_header(self, coordinator):
        self._store(coordinator)

        assert coordinator.get_authorization_header() == {
            "Authorization": "Bearer stored_access"
        }

    def test_ensure_authorized_when_already_authorized(self, coordinator):
        self._store(coordinator)

        with mock.patch.object(coordinator, "authenticate") as mock_auth:
            assert coordinator.ensure_authorized() is True
            mock_auth.assert_not_called()

    def test_ensure_authorized_runs_flow(self, coordinator):
        with mock.patch.object(coordinator, "authenticate") as mock_auth:
            assert coordinator.ensure_authorized(auto_open_browser=False) is True
            mock_auth.assert_called_once_with(open_browser=False)

    def test_ensure_authorized_reports_failure(self, coordinator):
        with mock.patch.object(
            coordinator, "authenticate", side_effect=AuthorizationTimeoutError("slow")
        ):
            assert coordinator.ensure_authorized() is False

    def test_status_and_revoke(self, coordinator):
        self._store(coordinator)
        assert coordinator.is_authorized() is True
        assert coordinator.get_status()["authorized"] is True

        coordinator.revoke()

        assert coordinator.is_authorized() is False
        assert coordinator.get_status()["authorized"] is False
