"""
Container monitor - alerting state machine over the inventory.

Two independent tracks per container:

- liveness (containers with an auto-restart policy): alerts when a
  container goes down, repeats after the cooldown while it stays down and
  announces the recovery;
- no-auto-restart (running containers without a restart policy): alerts
  once, repeats after its own cooldown, forgets the container when it stops.

State is keyed by (owner, host id, container id) and lives in an
AlertStateStore owned by the monitor.
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from orchestrator.command_executor import CommandError, CommandExecutor
from orchestrator.connection_manager import HostConnectionError
from orchestrator.docker_commands import INSPECT_RESTART_POLICIES, LIST_CONTAINERS
from orchestrator.inventory_parser import (
    Parsed,
    apply_restart_policies,
    has_auto_restart,
    is_running,
    parse_container_listing,
    parse_restart_policies,
)
from orchestrator.inventory_store import InventoryStore
from orchestrator.logging_utils import correlation_context, log_with_fields
from orchestrator.models import Host, OrchestratorConfig
from orchestrator.notifications import Notifier, NotifyResult
from orchestrator.synchronizer import HostDirectory

logger = logging.getLogger(__name__)

StateKey = Tuple[str, str, str]

ALERT_DOWN = "down"
ALERT_UP = "up"
ALERT_NO_AUTO_RESTART = "no_auto_restart"


class InventoryUnavailable(Exception):
    """No trustworthy inventory for a host this tick."""
    pass


@dataclass
class LivenessState:
    was_down: bool = False
    down_since: Optional[float] = None
    last_alert_at: Optional[float] = None


class AlertStateStore:
    """Liveness and no-auto-restart state, readable from other threads."""

    def __init__(self):
        self._liveness: Dict[StateKey, LivenessState] = {}
        self._no_auto_restart: Dict[StateKey, float] = {}
        self._lock = threading.Lock()

    def get_liveness(self, key: StateKey) -> Optional[LivenessState]:
        with self._lock:
            state = self._liveness.get(key)
            return replace(state) if state is not None else None

    def put_liveness(self, key: StateKey, state: LivenessState) -> None:
        with self._lock:
            self._liveness[key] = replace(state)

    def get_no_auto_restart(self, key: StateKey) -> Optional[float]:
        with self._lock:
            return self._no_auto_restart.get(key)

    def put_no_auto_restart(self, key: StateKey, alerted_at: float) -> None:
        with self._lock:
            self._no_auto_restart[key] = alerted_at

    def remove_no_auto_restart(self, key: StateKey) -> None:
        with self._lock:
            self._no_auto_restart.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'liveness': {key: replace(state) for key, state in self._liveness.items()},
                'no_auto_restart': dict(self._no_auto_restart),
            }


class InventorySource(Protocol):
    def containers(self, host: Host) -> List[Dict[str, Any]]:
        ...


class CacheInventorySource:
    """
    Reads container payloads from the synchronizer's cache.

    Hosts never synced, or synced longer than ``max_age`` seconds ago, are
    unavailable. Degraded rows are left out.
    """

    def __init__(self, store: InventoryStore, max_age: float, clock: Callable[[], float] = time.time):
        self.store = store
        self.max_age = max_age
        self.clock = clock

    def containers(self, host: Host) -> List[Dict[str, Any]]:
        synced_at = self.store.last_synced_at(host.id)
        if synced_at is None:
            raise InventoryUnavailable(f"host {host.id} has not been synced yet")
        age = self.clock() - synced_at
        if age > self.max_age:
            raise InventoryUnavailable(f"cached inventory of {host.id} is {int(age)}s old")
        return [record.payload for record in self.store.query(host.id) if not record.degraded]


class DirectInventorySource:
    """Polls the host directly through the command executor."""

    def __init__(self, executor: CommandExecutor, clock: Callable[[], float] = time.time):
        self.executor = executor
        self.clock = clock

    def containers(self, host: Host) -> List[Dict[str, Any]]:
        listing = self.executor.run(host, LIST_CONTAINERS)
        results = parse_container_listing(host.id, listing.stdout, self.clock())
        lookup = self.executor.run(host, INSPECT_RESTART_POLICIES, allow_failure=True)
        policies = parse_restart_policies(lookup.stdout) if lookup.exit_code == 0 else None
        apply_restart_policies(results, policies)
        return [r.record.payload for r in results if isinstance(r, Parsed)]


class ContainerMonitor:
    """
    Evaluates container state on every tick and sends debounced alerts.

    Time is measured in seconds from ``clock``; cooldowns are configured in
    milliseconds.
    """

    def __init__(
        self,
        hosts: HostDirectory,
        source: InventorySource,
        notifier: Notifier,
        settings: OrchestratorConfig.MonitoringConfig,
        state: Optional[AlertStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.hosts = hosts
        self.source = source
        self.notifier = notifier
        self.settings = settings
        self.state = state or AlertStateStore()
        self.clock = clock
        self._busy = threading.Lock()

    @property
    def cooldown(self) -> float:
        return self.settings.alert_cooldown_ms / 1000.0

    @property
    def no_auto_restart_cooldown(self) -> float:
        return self.settings.no_auto_restart_cooldown_ms / 1000.0

    @property
    def min_down_time(self) -> float:
        return self.settings.min_down_time_before_alert_ms / 1000.0

    def tick(self) -> bool:
        """
        Evaluate every host once.

        Returns:
            False if the previous tick was still running
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Monitor tick skipped: previous tick still running")
            return False

        try:
            for host in self.hosts.list_hosts():
                with correlation_context(host_id=host.id):
                    try:
                        containers = self.source.containers(host)
                    except (InventoryUnavailable, HostConnectionError, CommandError) as e:
                        logger.info(f"Skipping host {host.id} this tick: {e}")
                        continue
                    except Exception as e:
                        logger.error(f"Inventory read failed for {host.id}: {e}", exc_info=True)
                        continue
                    self.evaluate(host, containers, self.clock())
            return True
        finally:
            self._busy.release()

    def evaluate(self, host: Host, containers: List[Dict[str, Any]], now: float) -> None:
        """Advance the state machines of one host's containers to ``now``."""
        for container in containers:
            policy = container.get("restart_policy")
            if policy is None:
                # Restart policy unknown this cycle
                continue

            key = (host.owner, host.id, container.get("id", ""))
            running = is_running(container.get("status"))

            if has_auto_restart(policy):
                self._evaluate_liveness(key, host, container, running, now)
            else:
                self._evaluate_no_auto_restart(key, host, container, running, now)

    def _evaluate_liveness(self, key: StateKey, host: Host, container: Dict[str, Any],
                           running: bool, now: float) -> None:
        state = self.state.get_liveness(key)

        if state is None:
            state = LivenessState()
            if not running:
                state.was_down = True
                state.down_since = now
                self._maybe_alert_down(state, host, container, now)
            self.state.put_liveness(key, state)
            return

        if not running:
            if not state.was_down:
                state.was_down = True
                state.down_since = now
                state.last_alert_at = None
            self._maybe_alert_down(state, host, container, now)
        elif state.was_down:
            if state.last_alert_at is not None and self.settings.alert_on_container_recovery:
                self._send(ALERT_UP, host, container)
            state = LivenessState()

        self.state.put_liveness(key, state)

    def _maybe_alert_down(self, state: LivenessState, host: Host, container: Dict[str, Any],
                          now: float) -> None:
        if state.down_since is not None and now - state.down_since < self.min_down_time:
            return
        if state.last_alert_at is not None and now - state.last_alert_at < self.cooldown:
            return
        if not self.settings.alert_on_container_down:
            return
        self._send(ALERT_DOWN, host, container)
        # A failed send still counts as alerted
        state.last_alert_at = now

    def _evaluate_no_auto_restart(self, key: StateKey, host: Host, container: Dict[str, Any],
                                  running: bool, now: float) -> None:
        if not running:
            self.state.remove_no_auto_restart(key)
            return

        last = self.state.get_no_auto_restart(key)
        if last is not None and now - last < self.no_auto_restart_cooldown:
            return
        if self.settings.alert_on_no_auto_restart:
            self._send(ALERT_NO_AUTO_RESTART, host, container)
        self.state.put_no_auto_restart(key, now)

    def _send(self, kind: str, host: Host, container: Dict[str, Any]) -> NotifyResult:
        senders = {
            ALERT_DOWN: self.notifier.send_down_alert,
            ALERT_UP: self.notifier.send_up_alert,
            ALERT_NO_AUTO_RESTART: self.notifier.send_no_auto_restart_alert,
        }
        try:
            result = senders[kind](host.owner, host, container)
        except Exception as e:
            logger.error(f"Notifier raised for {kind} alert: {e}", exc_info=True)
            result = NotifyResult(success=False, error=str(e))

        log_with_fields(
            logger,
            logging.INFO if result.success else logging.ERROR,
            "Alert sent" if result.success else "Alert delivery failed",
            kind=kind,
            container=container.get("name") or container.get("id"),
            recipient=host.owner,
            **({"error": result.error} if result.error else {})
        )
        return result
