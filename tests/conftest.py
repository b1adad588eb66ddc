"""Shared test fixtures."""

import pytest

from mission_control.integrations.gateway import GatewayError


class FakeGateway:
    """In-memory stand-in for ``GatewayClient``.

    ``chat.send`` calls are recorded in ``sent``. Assistant replies are queued
    with ``reply`` (immediately visible) or ``reply_on_send`` (visible after the
    next send to that session key).
    """

    def __init__(self):
        self.connected = False
        self.fail_connect = False
        self.fail_send = False
        self.fail_list = False
        self.fail_history = False
        self.connect_calls = 0
        self.sent: list[dict] = []
        self.history: dict[str, list[dict]] = {}
        self._on_send: dict[str, list[str]] = {}

    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise GatewayError("Failed to connect to gateway at ws://fake: refused")
        self.connected = True

    def call(self, method: str, params: dict | None = None):
        params = params or {}
        if not self.connected:
            raise GatewayError("Not connected to gateway")

        if method == "chat.send":
            if self.fail_send:
                raise GatewayError("chat.send failed: session unavailable")
            self.sent.append(params)
            key = params["sessionKey"]
            self.history.setdefault(key, []).append(
                {"role": "user", "content": [{"type": "text", "text": params["message"]}]}
            )
            queued = self._on_send.get(key)
            if queued:
                self.reply(key, queued.pop(0))
            return {"runId": f"run-{len(self.sent)}"}

        if method == "chat.history":
            if self.fail_history:
                raise GatewayError("chat.history failed: timeout")
            limit = params.get("limit", 20)
            return {"messages": self.history.get(params["sessionKey"], [])[-limit:]}

        if method == "sessions.list":
            if self.fail_list:
                raise GatewayError("sessions.list failed: internal")
            return {"sessions": [{"key": k} for k in self.history]}

        raise GatewayError(f"{method} failed: unknown method")

    def list_sessions(self) -> list[dict]:
        return self.call("sessions.list", {})["sessions"]

    def close(self) -> None:
        self.connected = False

    # ── test helpers ──

    def reply(self, key: str, text: str) -> None:
        self.history.setdefault(key, []).append(
            {"role": "assistant", "content": [{"type": "text", "text": text}]}
        )

    def reply_on_send(self, key: str, text: str) -> None:
        self._on_send.setdefault(key, []).append(text)


@pytest.fixture
def gateway():
    return FakeGateway()
