"""
State synchronizer - keeps the inventory cache in line with the hosts.

On every tick the hosts are visited one at a time. A host's container rows
are replaced as a unit; failures are recorded per host and never stop the
tick.
"""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from orchestrator.command_executor import CommandError, CommandExecutor
from orchestrator.connection_manager import ConnectionManager, HostConnectionError
from orchestrator.docker_commands import INSPECT_RESTART_POLICIES, LIST_CONTAINERS, host_facts_command
from orchestrator.events import CONTAINERS_UPDATED, HOSTINFO_UPDATED, SYNC_FAILED, EventSink
from orchestrator.host_locks import HostLockManager
from orchestrator.inventory_parser import (
    Degraded,
    apply_restart_policies,
    host_facts_record,
    parse_container_listing,
    parse_host_facts,
    parse_restart_policies,
)
from orchestrator.inventory_store import InventoryStore
from orchestrator.logging_utils import correlation_context, log_with_fields
from orchestrator.models import Host

logger = logging.getLogger(__name__)


class HostDirectory(Protocol):
    def list_hosts(self) -> List[Host]:
        ...

    def get_host(self, host_id: str) -> Optional[Host]:
        ...


class UnknownHostError(Exception):
    """The host id is not in the host directory."""
    pass


@dataclass
class SyncError:
    message: str
    occurred_at: float


class SyncErrorRegistry:
    """Most recent sync failure per host; cleared by the next success."""

    def __init__(self):
        self._errors: Dict[str, SyncError] = {}
        self._lock = threading.Lock()

    def record(self, host_id: str, message: str, occurred_at: float) -> None:
        with self._lock:
            self._errors[host_id] = SyncError(message, occurred_at)

    def clear(self, host_id: str) -> None:
        with self._lock:
            self._errors.pop(host_id, None)

    def get(self, host_id: str) -> Optional[SyncError]:
        with self._lock:
            return self._errors.get(host_id)

    def all(self) -> Dict[str, SyncError]:
        with self._lock:
            return dict(self._errors)


class Synchronizer:
    """
    Pulls container inventory and host facts from every host into the cache.

    ``tick()`` is safe to call from several places: a call made while a tick
    is running returns immediately without doing anything.
    """

    def __init__(
        self,
        hosts: HostDirectory,
        executor: CommandExecutor,
        connections: ConnectionManager,
        store: InventoryStore,
        events: EventSink,
        errors: Optional[SyncErrorRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.hosts = hosts
        self.executor = executor
        self.connections = connections
        self.store = store
        self.events = events
        self.errors = errors or SyncErrorRegistry()
        self.clock = clock

        self._busy = threading.Lock()
        self._host_locks = HostLockManager("sync")
        self._refresh_queue: "OrderedDict[str, None]" = OrderedDict()
        self._queue_lock = threading.Lock()
        self.last_tick_at: Optional[float] = None

    def refresh_server(self, host_id: str) -> bool:
        """
        Visit this host first on the next tick.

        Returns:
            False if the host is not registered (nothing is queued)
        """
        if self.hosts.get_host(host_id) is None:
            logger.debug(f"Ignoring refresh for unknown host {host_id!r}")
            return False
        with self._queue_lock:
            self._refresh_queue[host_id] = None
        logger.debug(f"Queued refresh for host {host_id}")
        return True

    def pending_refreshes(self) -> List[str]:
        with self._queue_lock:
            return list(self._refresh_queue)

    def forget_host(self, host_id: str) -> None:
        """Drop the error and lock of a host that left the directory."""
        self.errors.clear(host_id)
        self._host_locks.forget(host_id)

    def syncing_hosts(self) -> List[str]:
        """Hosts with a sync in progress (best-effort)."""
        return [host_id for host_id, held in self._host_locks.get_lock_status().items() if held]

    def last_error(self, host_id: str) -> Optional[str]:
        """Message of the host's most recent failed sync, or None."""
        error = self.errors.get(host_id)
        return error.message if error is not None else None

    def _visit_order(self, queued: List[str]) -> List[Host]:
        hosts = self.hosts.list_hosts()
        by_id = {host.id: host for host in hosts}
        order = [by_id[host_id] for host_id in queued if host_id in by_id]
        first = {host.id for host in order}
        order.extend(host for host in hosts if host.id not in first)
        return order

    def tick(self) -> bool:
        """
        Sync every host once.

        Returns:
            False if another tick was still running (nothing was done)
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Sync tick skipped: previous tick still running")
            return False

        try:
            with self._queue_lock:
                queued = list(self._refresh_queue)
                self._refresh_queue.clear()

            order = self._visit_order(queued)
            failed = 0
            started = time.monotonic()

            for host in order:
                try:
                    if not self._sync_locked(host):
                        failed += 1
                except Exception as e:
                    failed += 1
                    logger.error(f"Unexpected error syncing host {host.id}: {e}", exc_info=True)
                    self.errors.record(host.id, str(e), self.clock())

            self.last_tick_at = self.clock()
            log_with_fields(
                logger, logging.INFO if failed else logging.DEBUG,
                "Sync tick completed",
                hosts=len(order), failed=failed,
                duration_ms=int((time.monotonic() - started) * 1000)
            )
            return True
        finally:
            self._busy.release()

    def sync_one(self, host_id: str) -> bool:
        """
        Sync a single host now, outside the regular tick.

        Returns:
            True on success; on failure the error is available from last_error()

        Raises:
            UnknownHostError: If the host is not registered
        """
        host = self.hosts.get_host(host_id)
        if host is None:
            raise UnknownHostError(f"Unknown host: {host_id}")
        return self._sync_locked(host)

    def _sync_locked(self, host: Host) -> bool:
        with correlation_context(host_id=host.id):
            with self._host_locks.acquire(host.id):
                return self._sync_host(host)

    def _sync_host(self, host: Host) -> bool:
        try:
            listing = self.executor.run(host, LIST_CONTAINERS)
            policies = self._restart_policies(host)
        except (HostConnectionError, CommandError) as e:
            message = str(e)
            self.errors.record(host.id, message, self.clock())
            # Timeouts are already invalidated by the executor
            if isinstance(e, HostConnectionError):
                self.connections.invalidate(host.id, reason="sync failed")
            logger.warning(f"Sync failed for host {host.id}: {message}")
            self._publish(SYNC_FAILED, {"server_id": host.id, "error": message})
            return False

        now = self.clock()
        results = parse_container_listing(host.id, listing.stdout, now)
        apply_restart_policies(results, policies)

        degraded = [r for r in results if isinstance(r, Degraded)]
        if degraded:
            logger.warning(
                f"{len(degraded)} of {len(results)} container lines on {host.id} "
                f"could not be parsed cleanly (first: {degraded[0].reason})"
            )

        self.store.replace_host_records(host.id, [r.record for r in results], now)
        self._refresh_facts(host, now)

        self.errors.clear(host.id)
        self._publish(CONTAINERS_UPDATED, {"server_id": host.id})
        self._publish(HOSTINFO_UPDATED, {"server_id": host.id})
        logger.debug(f"Synced host {host.id}: {len(results)} containers")
        return True

    def _restart_policies(self, host: Host) -> Optional[Dict[str, str]]:
        """Restart policy per container id, or None if the lookup failed."""
        result = self.executor.run(host, INSPECT_RESTART_POLICIES, allow_failure=True)
        if result.exit_code != 0:
            logger.warning(
                f"Restart policy lookup failed on {host.id} (exit {result.exit_code}); "
                f"auto-restart state unknown this cycle"
            )
            return None
        return parse_restart_policies(result.stdout)

    def _refresh_facts(self, host: Host, now: float) -> None:
        try:
            result = self.executor.run(host, host_facts_command(), allow_failure=True)
        except (HostConnectionError, CommandError) as e:
            logger.warning(f"Host facts refresh failed for {host.id}: {e}")
            return
        facts = parse_host_facts(result.stdout)
        self.store.upsert_host_facts(host.id, host_facts_record(host.id, facts, now))

    def _publish(self, event: str, payload: Dict[str, str]) -> None:
        try:
            self.events.publish(event, payload)
        except Exception as e:
            logger.warning(f"Could not publish {event}: {e}")
