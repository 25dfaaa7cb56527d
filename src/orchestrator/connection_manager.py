"""
SSH connection management.

Keeps at most one live paramiko session per host. A fresh connection
attempt dials the host's overlay address first and falls back to the
primary address; stale sessions are detected through the transport state
and redialled on the next acquisition.
"""
import io
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

import paramiko

from orchestrator.host_locks import HostLockManager
from orchestrator.logging_utils import log_with_fields
from orchestrator.models import Host

logger = logging.getLogger(__name__)

# Session lifecycle events delivered to listeners
EVENT_CONNECTED = "connected"
EVENT_FALLBACK = "fallback"
EVENT_DISCONNECTED = "disconnected"

DIAL_ERRORS = (paramiko.SSHException, OSError, EOFError)


class HostConnectionError(Exception):
    """Every candidate address of a host failed to connect."""

    def __init__(self, host_id: str, message: str):
        super().__init__(f"Cannot connect to host {host_id}: {message}")
        self.host_id = host_id
        self.reason = message


class CredentialError(Exception):
    """The private key of a host could not be obtained."""
    pass


class CredentialResolver(Protocol):
    def get_private_key(self, host: Host) -> Optional[str]:
        ...


@dataclass
class Session:
    """A live SSH session to one host."""
    host_id: str
    client: paramiko.SSHClient
    address: str
    connected_at: float
    connected: bool = True

    def is_alive(self) -> bool:
        """True while the underlying transport is still active."""
        if not self.connected:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        self.connected = False
        self.client.close()


class SessionRegistry:
    """
    Thread-safe map of host id -> Session.

    Owned by the ConnectionManager; other components only read from it.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, host_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(host_id)

    def put(self, session: Session) -> Optional[Session]:
        """Store a session, returning the one it replaced (if any)."""
        with self._lock:
            previous = self._sessions.get(session.host_id)
            self._sessions[session.host_id] = session
            return previous

    def pop(self, host_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(host_id, None)

    def host_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def candidate_addresses(host: Host, max_fallbacks: int = 1) -> List[str]:
    """
    Ordered list of addresses to dial for a fresh connection.

    The overlay address comes first when set and different from the primary
    address. At most ``max_fallbacks`` addresses follow the first one.

    Example:
        >>> candidate_addresses(Host(id="a", owner="o", address="203.0.113.5",
        ...                          overlay_address="100.64.0.5"))
        ['100.64.0.5', '203.0.113.5']
    """
    candidates = []
    if host.overlay_address and host.overlay_address != host.address:
        candidates.append(host.overlay_address)
    candidates.append(host.address)
    return candidates[:1 + max(0, max_fallbacks)]


def load_private_key(key_material: str) -> paramiko.PKey:
    """
    Parse a PEM/OpenSSH private key of any supported type.

    Raises:
        paramiko.SSHException: If no key type accepts the material
    """
    errors = []
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(key_material))
        except paramiko.SSHException as e:
            errors.append(f"{key_class.__name__}: {e}")
    raise paramiko.SSHException("Unsupported private key (" + "; ".join(errors) + ")")


class ConnectionManager:
    """
    Owns the SSH sessions of every host.

    Exactly one session object exists per host id; a reconnect replaces it
    wholesale. Dialing for one host is serialized through a per-host lock so
    concurrent callers share the resulting session.
    """

    def __init__(
        self,
        credentials: CredentialResolver,
        connect_timeout: float = 10.0,
        keepalive_interval: int = 10,
        max_fallbacks: int = 1,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        registry: Optional[SessionRegistry] = None,
    ):
        """
        Args:
            credentials: Resolver returning the private key text for a host
            connect_timeout: Seconds allowed per dial attempt
            keepalive_interval: Transport keepalive in seconds (0 disables)
            max_fallbacks: Addresses tried after the first candidate fails
            client_factory: Creates SSH clients (replaced in tests)
            registry: Session store (a fresh one by default)
        """
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.max_fallbacks = max_fallbacks
        self.client_factory = client_factory
        self.sessions = registry or SessionRegistry()
        self._dial_locks = HostLockManager("dial")
        self._listeners: List[Callable[[str, str, Dict[str, str]], None]] = []

    def add_listener(self, callback: Callable[[str, str, Dict[str, str]], None]) -> None:
        """Register ``callback(event, host_id, fields)`` for session events."""
        self._listeners.append(callback)

    def _emit(self, event: str, host_id: str, **fields) -> None:
        log_with_fields(
            logger,
            logging.WARNING if event == EVENT_FALLBACK else logging.INFO,
            f"SSH session {event}",
            host=host_id,
            **fields
        )
        for callback in self._listeners:
            try:
                callback(event, host_id, fields)
            except Exception as e:
                logger.error(f"Session listener failed for {event}: {e}", exc_info=True)

    def acquire_session(self, host: Host) -> Session:
        """
        Return a connected session for the host, dialing if needed.

        Raises:
            HostConnectionError: If every candidate address failed
        """
        session = self._live_session(host.id)
        if session is not None:
            return session

        with self._dial_locks.acquire(host.id):
            # Another thread may have connected while we waited
            session = self._live_session(host.id)
            if session is not None:
                return session
            return self._connect(host)

    def _live_session(self, host_id: str) -> Optional[Session]:
        session = self.sessions.get(host_id)
        if session is None:
            return None
        if session.is_alive():
            return session

        logger.info(f"Dropping stale SSH session for host {host_id}")
        self._drop(host_id, session, reason="transport inactive")
        return None

    def _connect(self, host: Host) -> Session:
        try:
            key_material = self.credentials.get_private_key(host)
            pkey = load_private_key(key_material) if key_material else None
        except CredentialError as e:
            raise HostConnectionError(host.id, str(e))
        except paramiko.SSHException as e:
            raise HostConnectionError(host.id, f"invalid private key: {e}")

        candidates = candidate_addresses(host, self.max_fallbacks)
        last_error = "no address configured"

        for index, address in enumerate(candidates):
            if index > 0:
                self._emit(
                    EVENT_FALLBACK, host.id,
                    address=address, failed_address=candidates[index - 1], error=last_error
                )
            try:
                client = self._dial(host, address, pkey)
            except DIAL_ERRORS as e:
                last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                logger.debug(f"Dial of {host.id} via {address} failed: {last_error}")
                continue

            session = Session(
                host_id=host.id,
                client=client,
                address=address,
                connected_at=time.time(),
            )
            previous = self.sessions.put(session)
            if previous is not None and previous is not session:
                previous.close()
            self._emit(EVENT_CONNECTED, host.id, address=address)
            return session

        raise HostConnectionError(host.id, last_error)

    def _dial(self, host: Host, address: str, pkey: Optional[paramiko.PKey]) -> paramiko.SSHClient:
        client = self.client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=address,
                port=host.port,
                username=host.username,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=pkey is None,
            )
        except DIAL_ERRORS:
            client.close()
            raise

        transport = client.get_transport()
        if transport is not None and self.keepalive_interval:
            transport.set_keepalive(self.keepalive_interval)
        return client

    def _drop(self, host_id: str, session: Session, reason: str) -> None:
        # Only remove the entry if it still points at this session
        current = self.sessions.get(host_id)
        if current is session:
            self.sessions.pop(host_id)
        session.close()
        self._emit(EVENT_DISCONNECTED, host_id, address=session.address, reason=reason)

    def release(self, host_id: str) -> None:
        """Close the host's session, if any."""
        self.invalidate(host_id, reason="released")

    def invalidate(self, host_id: str, reason: str = "invalidated") -> None:
        """Forcibly tear down the host's session so the next use redials."""
        session = self.sessions.pop(host_id)
        if session is not None:
            session.close()
            self._emit(EVENT_DISCONNECTED, host_id, address=session.address, reason=reason)

    def close_all(self) -> None:
        """Close every session (shutdown)."""
        for host_id in self.sessions.host_ids():
            self.release(host_id)

    def active_address(self, host_id: str) -> Optional[str]:
        """Address of the host's current session, if connected."""
        session = self.sessions.get(host_id)
        return session.address if session is not None and session.connected else None
