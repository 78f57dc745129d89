"""Tests for the loopback callback listener."""

from unittest import mock

import pytest
import requests

from authkeeper.callback_server import CallbackOutcome, LoopbackCallbackServer


class TestLoopbackCallbackServer:
    """Tests for LoopbackCallbackServer."""

    @pytest.fixture
    def handler(self):
        return mock.Mock(return_value=CallbackOutcome(True, "Authorized."))

    def test_server_initialization(self, handler):
        """Server is created without binding a port."""
        server = LoopbackCallbackServer(handler)

        assert server.app is not None
        assert server.port is None
        assert server.running is False

    def test_redirect_uri_requires_running_server(self, handler):
        """redirect_uri is only known once the port is bound."""
        server = LoopbackCallbackServer(handler)

        with pytest.raises(RuntimeError):
            server.redirect_uri

    def test_handle_callback_success(self, handler):
        """Query parameters are passed to the handler."""
        server = LoopbackCallbackServer(handler)

        with server.app.test_request_context("/oauth/callback?code=auth_code_123&state=xyz"):
            response = server._handle_callback()

        handler.assert_called_once_with({"code": "auth_code_123", "state": "xyz"})
        assert response.status_code == 200
        assert b"Authorization Successful" in response.data

    def test_handle_callback_failure(self):
        """A rejected callback renders a failure page with status 400."""
        handler = mock.Mock(return_value=CallbackOutcome(False, "Access was not granted."))
        server = LoopbackCallbackServer(handler)

        with server.app.test_request_context("/oauth/callback?error=access_denied"):
            response = server._handle_callback()

        assert response.status_code == 400
        assert b"Access was not granted." in response.data

    def test_page_does_not_echo_code(self, handler):
        """The authorization code is never rendered back to the browser."""
        server = LoopbackCallbackServer(handler)

        with server.app.test_request_context("/oauth/callback?code=secret_code_value&state=s"):
            response = server._handle_callback()

        assert b"secret_code_value" not in response.data

    def test_status_endpoint(self, handler):
        """Status endpoint reports the listener is waiting."""
        server = LoopbackCallbackServer(handler)

        with server.app.test_client() as client:
            response = client.get("/oauth/status")

        assert response.status_code == 200
        assert response.get_json()["status"] == "running"

    def test_start_binds_loopback_port(self, handler):
        """start() binds an OS-assigned loopback port and stop() releases it."""
        server = LoopbackCallbackServer(handler, callback_path="/cb")
        server.start()
        try:
            assert server.running
            assert server.port > 0
            assert server.redirect_uri == f"http://127.0.0.1:{server.port}/cb"

            response = requests.get(f"{server.redirect_uri}?code=c&state=s", timeout=5)

            assert response.status_code == 200
            handler.assert_called_once_with({"code": "c", "state": "s"})
        finally:
            server.stop()

        assert server.running is False
        assert server.port is None
