"""
Loopback callback listener for the local-callback authorization flow.

The listener binds to the loopback interface on an OS-assigned port,
receives exactly one authorization redirect, hands its query parameters
to a handler, and is torn down as soon as the flow ends.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from flask import Flask, Response, request
from werkzeug.serving import make_server

logger = logging.getLogger(__name__)


@dataclass
class CallbackOutcome:
    """
    What the listener should tell the browser.

    Attributes:
        success: Whether the callback was accepted
        message: Short explanation shown in the browser
    """

    success: bool
    message: str


CallbackHandler = Callable[[dict], CallbackOutcome]

_PAGE = """<html>
<head><title>{title}</title></head>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 50px auto; padding: 20px;">
    <h1 style="color: {color};">{title}</h1>
    <p>{message}</p>
    <p style="margin-top: 30px; color: #666;">You can close this window and return to the terminal.</p>
</body>
</html>"""


class LoopbackCallbackServer:
    """
    Ephemeral HTTP listener on 127.0.0.1 for the OAuth redirect.

    The server:
    1. Binds to the loopback address with port 0 (OS-assigned)
    2. Advertises ``redirect_uri`` for the authorization request
    3. Passes callback query parameters to the handler
    4. Shuts down on ``stop()``

    Security:
    - Loopback only, never a routable interface
    - No secret material is rendered back to the browser
    """

    def __init__(
        self,
        handler: CallbackHandler,
        host: str = "127.0.0.1",
        callback_path: str = "/oauth/callback",
    ):
        self.handler = handler
        self.host = host
        self.callback_path = callback_path
        self.app = Flask(__name__)
        self.app.logger.setLevel(logging.WARNING)  # Suppress Flask logs
        self._server = None
        self._thread: Optional[threading.Thread] = None
        self._received = threading.Event()

        self.app.add_url_rule(
            self.callback_path,
            "oauth_callback",
            self._handle_callback,
            methods=["GET"],
        )
        self.app.add_url_rule(
            "/oauth/status", "oauth_status", self._handle_status, methods=["GET"]
        )

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    @property
    def redirect_uri(self) -> str:
        if self._server is None:
            raise RuntimeError("callback server is not running")
        return f"http://{self.host}:{self.port}{self.callback_path}"

    @property
    def running(self) -> bool:
        return self._server is not None

    def _handle_callback(self) -> Response:
        """Handle the authorization redirect."""
        logger.info("Received authorization callback")
        self._received.set()
        outcome = self.handler(request.args.to_dict())

        if outcome.success:
            body = _PAGE.format(
                title="Authorization Successful", color="#4caf50", message=outcome.message
            )
            return Response(body, status=200, content_type="text/html")

        body = _PAGE.format(
            title="Authorization Failed", color="#d32f2f", message=outcome.message
        )
        return Response(body, status=400, content_type="text/html")

    def _handle_status(self) -> Response:
        """Status endpoint for debugging."""
        return Response(
            '{"status": "running", "waiting_for": "oauth_callback"}',
            status=200,
            content_type="application/json",
        )

    def start(self) -> None:
        """
        Bind the listener and serve in a background thread.

        Raises:
            OSError: If the loopback address cannot be bound
        """
        self._server = make_server(self.host, 0, self.app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="authkeeper-callback", daemon=True
        )
        self._thread.start()
        logger.info(f"Callback listener started on {self.host}:{self.port}")

    def stop(self) -> None:
        """Shut the listener down and release the port."""
        server, self._server = self._server, None
        if server is None:
            return
        logger.info("Callback listener shutting down")
        server.shutdown()
        server.server_close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
