"""Agent gateway WebSocket RPC client."""

import json
import logging
import threading
import time
import uuid

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 3
CLIENT_ID = "mission-control"


class GatewayError(Exception):
    """Raised when a gateway operation fails."""


class GatewayClient:
    """Synchronous request/response client for the agent gateway.

    Frames are JSON: requests ``{"type": "req", "id", "method", "params"}`` and
    responses ``{"type": "res", "id", "ok", "payload" | "error"}``. Event frames
    pushed by the gateway are skipped. One request is in flight at a time.
    """

    def __init__(self, url: str, token: str | None = None, timeout: float = 10.0):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._ws = None
        self._lock = threading.Lock()

    def is_connected(self) -> bool:
        return self._ws is not None

    def connect(self) -> None:
        """Open the socket and perform the connect handshake. No-op if connected."""
        with self._lock:
            if self._ws is not None:
                return
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            try:
                self._ws = ws_connect(
                    self.url,
                    open_timeout=self.timeout,
                    additional_headers=headers,
                )
            except (OSError, TimeoutError, WebSocketException) as e:
                raise GatewayError(f"Failed to connect to gateway at {self.url}: {e}") from e

            params = {
                "minProtocol": PROTOCOL_VERSION,
                "maxProtocol": PROTOCOL_VERSION,
                "client": {"id": CLIENT_ID, "mode": "backend"},
            }
            if self.token:
                params["auth"] = {"token": self.token}
            try:
                self._request("connect", params)
            except GatewayError:
                self._drop()
                raise
            logger.info("Connected to gateway at %s", self.url)

    def call(self, method: str, params: dict | None = None):
        """Invoke a gateway method and return its payload."""
        with self._lock:
            if self._ws is None:
                raise GatewayError("Not connected to gateway")
            return self._request(method, params or {})

    def list_sessions(self) -> list[dict]:
        payload = self.call("sessions.list", {})
        if isinstance(payload, dict):
            return payload.get("sessions", [])
        return payload or []

    def close(self) -> None:
        with self._lock:
            self._drop()

    def _request(self, method: str, params: dict):
        request_id = str(uuid.uuid4())
        frame = {"type": "req", "id": request_id, "method": method, "params": params}
        deadline = time.monotonic() + self.timeout
        try:
            self._ws.send(json.dumps(frame))
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError
                raw = self._ws.recv(timeout=remaining)
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON gateway frame")
                    continue
                if not isinstance(msg, dict):
                    continue
                if msg.get("type") != "res" or msg.get("id") != request_id:
                    continue
                if not msg.get("ok", False):
                    error = msg.get("error") or {}
                    detail = error.get("message", error) if isinstance(error, dict) else error
                    raise GatewayError(f"{method} failed: {detail}")
                return msg.get("payload")
        except TimeoutError as e:
            raise GatewayError(f"{method} timed out after {self.timeout}s") from e
        except ConnectionClosed as e:
            self._drop()
            raise GatewayError(f"Gateway connection closed: {e}") from e

    def _drop(self) -> None:
        if self._ws is not None:
            try:
                self._ws.close()
            except Exception:
                logger.debug("Error closing gateway socket", exc_info=True)
            self._ws = None


# Process-wide client, shared by every request handler.
_client: GatewayClient | None = None
_client_lock = threading.Lock()


def get_gateway_client(config) -> GatewayClient:
    """Return the process-wide gateway client, creating it on first use."""
    global _client
    with _client_lock:
        if _client is None or _client.url != config.gateway_url:
            _client = GatewayClient(
                config.gateway_url,
                token=config.gateway_token,
                timeout=config.gateway_timeout,
            )
        return _client
