import asyncio
import json
from typing import Awaitable, Callable, Dict, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from connection import Connection, HostRole, broadcast
from errors import MalformedMessage, RelayError
from logging_config import get_logger
from reconciler import DisconnectReconciler
from registry import SessionRegistry
from schemas.messages import (
    CodeAssignment,
    ConnectRequest,
    JoinRequest,
    LEGACY_MESSAGE_TYPES,
    MessageType,
    SessionRequest,
    TelemetryMessage,
    connection_successful,
    error_message,
    join_response,
    session_response,
    web_connected,
)
from telemetry import TelemetryRouter

logger = get_logger(__name__)

Handler = Callable[[Connection, BaseModel], Awaitable[None]]

# Kinds that expect a reply; the rest are fire-and-forget and fail silently
REPLY_ON_FAILURE = {MessageType.SESSION_REQUEST, MessageType.JOIN_REQUEST, MessageType.CONNECT_REQUEST}

INVALID_REQUEST = {
    MessageType.SESSION_REQUEST: "Session request requires sessionKey and hostConnectionId.",
    MessageType.JOIN_REQUEST: "Join request requires sessionKey and hostConnectionId.",
    MessageType.CONNECT_REQUEST: "Invalid code format.",
}


def parse_message(raw: Union[str, bytes]) -> dict:
    """Decode one inbound frame into a dict.

    Some tracker builds append stray bytes after the JSON object, so anything
    past the last closing brace is discarded first.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"Undecodable frame: {e}")
    if not isinstance(raw, str):
        raise MalformedMessage("Empty frame")
    last_brace = raw.rfind("}")
    if last_brace != -1:
        raw = raw[:last_brace + 1]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedMessage("Message is not a JSON object")
    return data


class ConnectionDispatcher:
    """Routes each inbound message of a connection to the handler for its ``type``."""

    def __init__(
        self,
        registry: SessionRegistry,
        router: TelemetryRouter = None,
        reconciler: DisconnectReconciler = None,
    ):
        self.registry = registry
        self.router = router or TelemetryRouter(registry)
        self.reconciler = reconciler or DisconnectReconciler(registry)
        self._handlers: Dict[MessageType, Tuple[Type[BaseModel], Handler]] = {
            MessageType.SESSION_REQUEST: (SessionRequest, self.handle_session_request),
            MessageType.JOIN_REQUEST: (JoinRequest, self.handle_join_request),
            MessageType.CODE_ASSIGNMENT: (CodeAssignment, self.handle_code_assignment),
            MessageType.CONNECT_REQUEST: (ConnectRequest, self.handle_connect_request),
            MessageType.TELEMETRY: (TelemetryMessage, self.handle_telemetry),
        }

    async def run(self, connection: Connection) -> None:
        """Receive and dispatch until the peer goes away, then clean up its registrations."""
        message_count = 0
        try:
            while not connection.closed:
                message = await connection.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"Connection {connection.id} disconnected ({message.get('code')})")
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection.id}")
                await self.dispatch(connection, raw)
        except Exception as e:
            logger.error(f"Error receiving from connection {connection.id}: {e}", exc_info=True)
        finally:
            # The transport may cancel this task right after the disconnect; cleanup and
            # the notices it sends to the other side of the session must still run
            await asyncio.shield(self.reconciler.reconcile(connection))

    async def dispatch(self, connection: Connection, raw: Union[str, bytes]) -> None:
        try:
            data = parse_message(raw)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message from connection {connection.id}: {e.message}")
            return

        message_type = MessageType.from_wire(data.get("type"))
        if message_type is None:
            logger.warning(f"Unknown message type received from connection {connection.id}: {data.get('type')!r}")
            return
        if data.get("type") in LEGACY_MESSAGE_TYPES:
            connection.legacy_wire = True

        schema, handler = self._handlers[message_type]
        try:
            payload = schema.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid {message_type.value} from connection {connection.id}: {e.error_count()} errors")
            if message_type in REPLY_ON_FAILURE:
                await self._reject(connection, message_type, INVALID_REQUEST[message_type])
            return

        try:
            await handler(connection, payload)
        except RelayError as e:
            logger.info(f"{message_type.value} from connection {connection.id} failed: {e.message}")
            if message_type in REPLY_ON_FAILURE:
                await self._reject(connection, message_type, e.message)
        except Exception as e:
            logger.error(f"Error handling {message_type.value} from connection {connection.id}: {e}", exc_info=True)

    async def _reject(self, connection: Connection, message_type: MessageType, reason: str) -> None:
        await connection.send(error_message(reason))
        # A web client without a valid code has nothing left to do on this socket
        if message_type is MessageType.CONNECT_REQUEST and not connection.is_classified:
            await connection.close(code=1008, reason=reason)

    async def handle_session_request(self, connection: Connection, payload: SessionRequest) -> None:
        logger.info(f"Host [{payload.host_connection_id}] requested session [{payload.session_key}]")
        session = await self.registry.create_session(payload.session_key, payload.host_connection_id, connection)
        await connection.send(session_response(session.display_code, session.session_key))

    async def handle_join_request(self, connection: Connection, payload: JoinRequest) -> None:
        logger.info(f"Host [{payload.host_connection_id}] joining session [{payload.session_key}]")
        session = await self.registry.join_as_host(payload.session_key, payload.host_connection_id, connection)
        await connection.send(join_response(session.display_code, session.session_key))

    async def handle_code_assignment(self, connection: Connection, payload: CodeAssignment) -> None:
        session_key = payload.session_key
        host_connection_id = payload.host_connection_id
        if isinstance(connection.role, HostRole):
            session_key = session_key or connection.role.session_key
            host_connection_id = host_connection_id or connection.role.connection_id
        if not session_key or not host_connection_id:
            logger.warning(f"Code assignment from connection {connection.id} names no session or host")
            return
        await self.registry.register_participant_code(
            session_key,
            host_connection_id,
            suffix_char=payload.suffix_char,
            display_name=payload.display_name,
            full_code=payload.full_code,
        )

    async def handle_connect_request(self, connection: Connection, payload: ConnectRequest) -> None:
        session = await self.registry.claim_code(payload.full_code, connection)
        full_code = connection.role.full_code
        await connection.send(connection_successful(full_code))
        await broadcast(session.host_connections(), web_connected(full_code))

    async def handle_telemetry(self, connection: Connection, payload: TelemetryMessage) -> None:
        await self.router.route(connection, payload.full_code, payload.openness_value)
