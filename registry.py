import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from codes import generate_code, is_valid_full_code, is_valid_suffix, normalize_code, split_full_code
from connection import Connection, HostRole, WebRole, broadcast
from constants import SESSION_MAX_IDLE_SECONDS
from errors import CodeAlreadyInUse, ConnectionAlreadyClassified, DuplicateSessionKey, InvalidCode, SessionNotFound
from logging_config import get_logger
from schemas.messages import error_message, session_ended, web_disconnected

logger = get_logger(__name__)

HOST_DISCONNECTED = "Host disconnected."
SESSION_EXPIRED = "Session expired."
SERVER_SHUTDOWN = "Server shutting down."


@dataclass(eq=False)
class Session:
    session_key: str
    display_code: str
    # host connection id (supplied by the lens) -> connection
    hosts: Dict[str, Connection] = field(default_factory=dict)
    # full code -> host connection id that registered it
    code_owners: Dict[str, str] = field(default_factory=dict)
    display_names: Dict[str, str] = field(default_factory=dict)
    # full code -> web connection holding the claim, None while unclaimed
    web_claims: Dict[str, Optional[Connection]] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self, now: Optional[float] = None) -> None:
        self.last_activity = time.monotonic() if now is None else now

    def is_idle(self, now: float, max_idle: float) -> bool:
        return now - self.last_activity > max_idle

    def host_connections(self) -> List[Connection]:
        return list(self.hosts.values())

    def web_connections(self) -> List[Connection]:
        return [conn for conn in self.web_claims.values() if conn is not None]


class SessionRegistry:
    """In-memory store of live sessions.

    Every read-modify-write of the maps below happens under ``_lock``.
    Notifications caused by a mutation are sent after the lock is released,
    from snapshots taken while it was held.
    """

    def __init__(self, max_idle_seconds: float = SESSION_MAX_IDLE_SECONDS):
        self.max_idle_seconds = max_idle_seconds
        self._sessions: Dict[str, Session] = {}
        # display code -> session; doubles as the set of reserved codes
        self._sessions_by_code: Dict[str, Session] = {}
        # Connection.id -> session key, for hosts and web claimants alike
        self._connection_sessions: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        logger.info(f"Initializing SessionRegistry (max idle {max_idle_seconds}s)")

    async def create_session(self, session_key: str, host_connection_id: str, connection: Connection) -> Session:
        async with self._lock:
            if connection.is_classified:
                raise ConnectionAlreadyClassified()
            if session_key in self._sessions:
                logger.warning(f"Session creation rejected: key {session_key} already live")
                raise DuplicateSessionKey()
            display_code = generate_code(self._sessions_by_code)
            session = Session(session_key=session_key, display_code=display_code)
            session.hosts[host_connection_id] = connection
            self._sessions[session_key] = session
            self._sessions_by_code[display_code] = session
            self._connection_sessions[connection.id] = session_key
            connection.classify(HostRole(session_key, host_connection_id))
        logger.info(f"Session {session_key} created with code {display_code} by host {host_connection_id}")
        return session

    async def join_as_host(self, session_key: str, connection_id: str, connection: Connection) -> Session:
        async with self._lock:
            if connection.is_classified:
                raise ConnectionAlreadyClassified()
            session = self._sessions.get(session_key)
            if not session:
                logger.warning(f"Host {connection_id} tried to join unknown session {session_key}")
                raise SessionNotFound()
            previous = session.hosts.get(connection_id)
            if previous is connection:
                previous = None
            if previous is not None:
                # Reconnect under the same id; the stale socket no longer owns the slot
                self._connection_sessions.pop(previous.id, None)
                logger.info(f"Host {connection_id} reconnected to session {session_key}, replacing {previous.id}")
            session.hosts[connection_id] = connection
            self._connection_sessions[connection.id] = session_key
            connection.classify(HostRole(session_key, connection_id))
            session.touch()
        if previous is not None:
            await previous.close(code=4000, reason="Replaced by a newer connection")
        logger.info(f"Host {connection_id} joined session {session_key} ({len(session.hosts)} host connections)")
        return session

    async def register_participant_code(
        self,
        session_key: str,
        host_connection_id: str,
        suffix_char: Optional[str] = None,
        display_name: Optional[str] = None,
        full_code: Optional[str] = None,
    ) -> Optional[str]:
        """Bind a full code to a host connection. Returns the full code, or None if ignored."""
        async with self._lock:
            session = self._sessions.get(session_key)
            if not session:
                logger.warning(f"Code registration ignored: session {session_key} not found")
                return None
            if host_connection_id not in session.hosts:
                logger.warning(f"Code registration ignored: host {host_connection_id} not in session {session_key}")
                return None

            if full_code:
                full_code = normalize_code(full_code)
                prefix, _ = split_full_code(full_code)
                if not is_valid_full_code(full_code) or prefix != session.display_code:
                    logger.warning(f"Code registration ignored: {full_code} does not belong to session {session_key}")
                    return None
            elif suffix_char and is_valid_suffix(normalize_code(suffix_char)):
                full_code = session.display_code + normalize_code(suffix_char)
            else:
                logger.warning(f"Code registration ignored: invalid suffix {suffix_char!r} for session {session_key}")
                return None

            owner = session.code_owners.get(full_code)
            if owner is not None and owner != host_connection_id:
                logger.warning(f"Code registration ignored: {full_code} already owned by host {owner}")
                return None

            session.code_owners[full_code] = host_connection_id
            if display_name:
                session.display_names[full_code] = display_name
            session.web_claims.setdefault(full_code, None)
            session.touch()
        logger.info(f"Code registered: [{display_name}] ({host_connection_id}) -> [{full_code}]")
        return full_code

    async def claim_code(self, full_code: str, connection: Connection) -> Session:
        full_code = normalize_code(full_code)
        if not is_valid_full_code(full_code):
            raise InvalidCode("Invalid code format.")
        async with self._lock:
            if connection.is_classified:
                raise ConnectionAlreadyClassified()
            prefix, _ = split_full_code(full_code)
            session = self._sessions_by_code.get(prefix)
            if not session or full_code not in session.code_owners:
                logger.warning(f"Claim rejected: {full_code} is not registered")
                raise InvalidCode()
            if session.web_claims.get(full_code) is not None:
                logger.warning(f"Claim rejected: {full_code} already claimed")
                raise CodeAlreadyInUse()
            session.web_claims[full_code] = connection
            self._connection_sessions[connection.id] = session.session_key
            connection.classify(WebRole(full_code))
            session.touch()
        logger.info(f"Web connection {connection.id} claimed code {full_code}")
        return session

    async def resolve_claimant(self, full_code: str, connection: Connection) -> Optional[Session]:
        """Return the session if ``connection`` currently holds ``full_code``, touching it."""
        full_code = normalize_code(full_code)
        async with self._lock:
            session = self._sessions_by_code.get(split_full_code(full_code)[0])
            if not session or session.web_claims.get(full_code) is not connection:
                return None
            session.touch()
            return session

    async def lookup_by_connection(self, connection_id: str) -> Optional[Session]:
        async with self._lock:
            session_key = self._connection_sessions.get(connection_id)
            if session_key is None:
                return None
            return self._sessions.get(session_key)

    async def get_session(self, session_key: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(session_key)

    async def get_by_display_code(self, display_code: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions_by_code.get(normalize_code(display_code))

    async def remove_host(self, session_key: str, connection_id: str, connection: Optional[Connection] = None) -> bool:
        """Detach one host connection; the last one out tears the session down."""
        async with self._lock:
            session = self._sessions.get(session_key)
            if not session:
                return False
            current = session.hosts.get(connection_id)
            if current is None or (connection is not None and current is not connection):
                return False
            del session.hosts[connection_id]
            self._connection_sessions.pop(current.id, None)

            evicted: List[Tuple[str, Connection]] = []
            for code in [code for code, owner in session.code_owners.items() if owner == connection_id]:
                del session.code_owners[code]
                session.display_names.pop(code, None)
                claimant = session.web_claims.pop(code, None)
                if claimant is not None:
                    self._connection_sessions.pop(claimant.id, None)
                    evicted.append((code, claimant))

            torn_down = not session.hosts
            if torn_down:
                hosts, webs = self._detach(session)
                webs.extend(claimant for _, claimant in evicted)
            else:
                remaining_hosts = session.host_connections()

        if torn_down:
            logger.info(f"Last host {connection_id} left session {session_key}, tearing it down")
            await self._end_session(session, HOST_DISCONNECTED, hosts, webs)
            return True

        logger.info(f"Host {connection_id} left session {session_key} ({len(remaining_hosts)} remaining)")
        for code, claimant in evicted:
            await claimant.send(error_message("The lens that registered this code disconnected."))
            await claimant.close(reason="Code released")
            await broadcast(remaining_hosts, web_disconnected(code))
        return True

    async def remove_web(self, full_code: str, connection: Optional[Connection] = None) -> bool:
        """Release a web claim; the code stays registered for the next claimant."""
        full_code = normalize_code(full_code)
        async with self._lock:
            session = self._sessions_by_code.get(split_full_code(full_code)[0])
            if not session:
                return False
            claimant = session.web_claims.get(full_code)
            if claimant is None or (connection is not None and claimant is not connection):
                return False
            session.web_claims[full_code] = None
            self._connection_sessions.pop(claimant.id, None)
            hosts = session.host_connections()
        logger.info(f"Web connection for code {full_code} disconnected from session {session.session_key}")
        await broadcast(hosts, web_disconnected(full_code))
        return True

    async def sweep_expired(self, now: Optional[float] = None, max_idle: Optional[float] = None) -> List[str]:
        now = time.monotonic() if now is None else now
        max_idle = self.max_idle_seconds if max_idle is None else max_idle
        async with self._lock:
            expired = [session for session in self._sessions.values() if session.is_idle(now, max_idle)]
            detached = [(session, *self._detach(session)) for session in expired]

        for session, hosts, webs in detached:
            logger.info(f"Session {session.session_key} ({session.display_code}) expired after {max_idle}s idle")
            await self._end_session(session, SESSION_EXPIRED, hosts, webs)
        return [session.session_key for session in expired]

    async def run_expiry_sweeper(self, interval: float) -> None:
        logger.info(f"Starting session expiry sweeper (every {interval}s)")
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self.sweep_expired()
                if removed:
                    logger.info(f"Expiry sweep removed {len(removed)} sessions")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error during expiry sweep: {e}", exc_info=True)

    async def close_all(self, reason: str = SERVER_SHUTDOWN) -> int:
        async with self._lock:
            detached = [(session, *self._detach(session)) for session in list(self._sessions.values())]
        for session, hosts, webs in detached:
            await self._end_session(session, reason, hosts, webs)
        return len(detached)

    async def stats(self) -> dict:
        async with self._lock:
            sessions = list(self._sessions.values())
            return {
                "sessions": len(sessions),
                "host_connections": sum(len(session.hosts) for session in sessions),
                "web_connections": sum(len(session.web_connections()) for session in sessions),
                "registered_codes": sum(len(session.code_owners) for session in sessions),
            }

    def _detach(self, session: Session) -> Tuple[List[Connection], List[Connection]]:
        """Drop a session from every index and release its display code. Caller holds the lock."""
        hosts = session.host_connections()
        webs = session.web_connections()
        for conn in hosts + webs:
            self._connection_sessions.pop(conn.id, None)
        self._sessions.pop(session.session_key, None)
        self._sessions_by_code.pop(session.display_code, None)
        return hosts, webs

    async def _end_session(self, session: Session, reason: str, hosts: List[Connection], webs: List[Connection]) -> None:
        await broadcast(hosts, session_ended(reason))
        for conn in hosts + webs:
            await conn.close(reason="Session ended")
        logger.info(f"Session {session.session_key} ended ({reason}); released code {session.display_code}, "
                    f"closed {len(hosts)} host and {len(webs)} web connections")
