"""
Shared fixtures for relay tests.

Provides:
- FakeWebSocket: an in-memory stand-in for fastapi.WebSocket that records
  outbound JSON and can be fed inbound frames
- A fresh SessionRegistry per test
- A factory for accepted Connection objects
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.websockets import WebSocketState

from connection import Connection
from registry import SessionRegistry


class FakeWebSocket:
    def __init__(self):
        self.sent_messages: List[Dict[str, Any]] = []
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.client = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def closed(self) -> bool:
        return self.application_state == WebSocketState.DISCONNECTED

    def messages_of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent_messages if m.get("type") == message_type]

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError("Cannot send on a closed websocket")
        # Round-trip through JSON so tests see exactly what goes on the wire
        self.sent_messages.append(json.loads(json.dumps(message)))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code
        self.close_reason = reason

    async def receive(self) -> Dict[str, Any]:
        message = await self._incoming.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    def feed(self, payload: Any) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def feed_disconnect(self, code: int = 1000) -> None:
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": code})


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry(max_idle_seconds=60)


@pytest.fixture
def make_connection():
    def _make() -> Connection:
        return Connection(FakeWebSocket())
    return _make


@pytest.fixture
def fixed_codes(monkeypatch):
    """Make the registry hand out display codes from a fixed list, skipping ones in use."""
    import registry as registry_module

    candidates = ["K7M2QX", "P4ZR8N", "HW3EVT"]

    def _generate(in_use, *args, **kwargs):
        for code in candidates:
            if code not in in_use:
                return code
        raise AssertionError("ran out of test codes")

    monkeypatch.setattr(registry_module, "generate_code", _generate)
    return candidates
