import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from errors import ConnectionAlreadyClassified
from logging_config import get_logger
from schemas.messages import to_legacy_wire

logger = get_logger(__name__)


@dataclass(frozen=True)
class Unclassified:
    pass


@dataclass(frozen=True)
class HostRole:
    session_key: str
    connection_id: str


@dataclass(frozen=True)
class WebRole:
    full_code: str


Role = Union[Unclassified, HostRole, WebRole]

UNCLASSIFIED = Unclassified()


@dataclass(eq=False)
class Connection:
    """A websocket plus the role it was given by its first handshake message.

    The transport owns the socket; the registry only records membership.
    """
    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    role: Role = UNCLASSIFIED
    # Set once the peer speaks the first-release wire names; replies are translated back
    legacy_wire: bool = False
    _closed: bool = field(default=False, repr=False)
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_classified(self) -> bool:
        return not isinstance(self.role, Unclassified)

    @property
    def closed(self) -> bool:
        if self._closed:
            return True
        return (
            self.websocket.application_state != WebSocketState.CONNECTED
            or self.websocket.client_state != WebSocketState.CONNECTED
        )

    def classify(self, role: Role) -> None:
        if self.is_classified:
            raise ConnectionAlreadyClassified()
        self.role = role
        logger.debug(f"Connection {self.id} classified as {role}")

    async def send(self, message: dict) -> bool:
        """Best-effort send; returns False instead of raising when the peer is gone."""
        if self.closed:
            logger.debug(f"Skipping {message.get('type')} for closed connection {self.id}")
            return False
        try:
            if self.legacy_wire:
                message = to_legacy_wire(message)
            async with self._send_lock:
                await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send {message.get('type')} to connection {self.id}: {e}")
            return False

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closed:
            return
        self._closed = True
        if WebSocketState.DISCONNECTED in (self.websocket.application_state, self.websocket.client_state):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
            logger.debug(f"Closed connection {self.id} ({code}: {reason})")
        except Exception as e:
            logger.debug(f"Error closing connection {self.id}: {e}")


async def broadcast(connections, message: dict) -> int:
    """Send ``message`` to every connection concurrently; returns how many sends succeeded."""
    connections = list(connections)
    if not connections:
        return 0
    results = await asyncio.gather(*(conn.send(message) for conn in connections), return_exceptions=True)
    return sum(1 for result in results if result is True)
