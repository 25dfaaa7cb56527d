"""
In-memory cache of remote inventory.

Holds the container rows and the host-facts row of every host. The set of
container rows of a host is replaced as a unit so readers never see a
half-updated host. The cache can always be rebuilt from zero by syncing.
"""
import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from orchestrator.models import HostSyncStatus, InventoryRecord

logger = logging.getLogger(__name__)


class InventoryStore:
    """
    Thread-safe inventory cache.

    Readers receive copies, so records handed out never change underneath
    them.
    """

    def __init__(self):
        self._containers: Dict[str, Dict[str, InventoryRecord]] = {}
        self._facts: Dict[str, InventoryRecord] = {}
        self._status: Dict[str, HostSyncStatus] = {}
        self._lock = threading.Lock()

    def replace_host_records(self, host_id: str, records: List[InventoryRecord], synced_at: float) -> None:
        """
        Atomically replace every container row of a host.

        A row whose payload is unchanged keeps its previous ``updated_at``
        so re-syncing identical state leaves the cache unchanged.
        """
        with self._lock:
            previous = self._containers.get(host_id, {})
            rows: Dict[str, InventoryRecord] = {}
            for record in records:
                old = previous.get(record.resource_id)
                if (old is not None
                        and old.payload == record.payload
                        and old.degraded_reason == record.degraded_reason):
                    rows[record.resource_id] = old
                else:
                    rows[record.resource_id] = copy.deepcopy(record)
            self._containers[host_id] = rows

            status = self._status.setdefault(host_id, HostSyncStatus(host_id=host_id))
            status.last_synced_at = synced_at
            status.record_count = len(rows)
            status.degraded_count = sum(1 for r in rows.values() if r.degraded)

        logger.debug(f"Replaced {len(records)} container rows for host {host_id}")

    def upsert_host_facts(self, host_id: str, record: InventoryRecord) -> None:
        """Insert or update the host-facts row of a host."""
        with self._lock:
            old = self._facts.get(host_id)
            if old is not None and old.payload == record.payload:
                return
            self._facts[host_id] = copy.deepcopy(record)

    def query(self, host_id: str) -> List[InventoryRecord]:
        """Container rows of a host, ordered by resource id."""
        with self._lock:
            rows = self._containers.get(host_id, {})
            return [copy.deepcopy(rows[key]) for key in sorted(rows)]

    def host_facts(self, host_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._facts.get(host_id)
            return copy.deepcopy(record.payload) if record is not None else None

    def last_synced_at(self, host_id: str) -> Optional[float]:
        with self._lock:
            status = self._status.get(host_id)
            return status.last_synced_at if status is not None else None

    def sync_status(self) -> Dict[str, HostSyncStatus]:
        with self._lock:
            return {host_id: copy.copy(status) for host_id, status in self._status.items()}

    def forget_host(self, host_id: str) -> None:
        """Drop every row of a host that left the directory."""
        with self._lock:
            self._containers.pop(host_id, None)
            self._facts.pop(host_id, None)
            self._status.pop(host_id, None)

    def snapshot(self) -> Dict[str, List[InventoryRecord]]:
        """Every cached row grouped by host (host facts included)."""
        with self._lock:
            result = {}
            for host_id in sorted(set(self._containers) | set(self._facts)):
                rows = self._containers.get(host_id, {})
                records = [copy.deepcopy(rows[key]) for key in sorted(rows)]
                if host_id in self._facts:
                    records.append(copy.deepcopy(self._facts[host_id]))
                result[host_id] = records
            return result

