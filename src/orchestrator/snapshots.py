"""
Container snapshots: commit a container to an image and prune old ones.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from orchestrator import docker_commands
from orchestrator.command_executor import CommandError, CommandExecutor
from orchestrator.connection_manager import HostConnectionError
from orchestrator.inventory_parser import (
    Parsed,
    SnapshotImage,
    parse_container_listing,
    parse_snapshot_listing,
)
from orchestrator.models import Host
from orchestrator.security_utils import DOCKER_ID_PATTERN, normalize_container_name

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContainerNotFoundError(Exception):
    """No container with this name or id on the host."""
    pass


@dataclass
class SnapshotOutcome:
    host_id: str
    container_name: str
    image: Optional[str] = None
    pruned: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


def select_for_pruning(snapshots: List[SnapshotImage], retention: int) -> List[SnapshotImage]:
    """
    Snapshots beyond the ``retention`` newest ones.

    Ordered newest first by creation time, ties broken by image id;
    snapshots with an unreadable creation time count as oldest.
    """
    keep = max(1, retention)
    ordered = sorted(snapshots, key=lambda s: (s.created or _OLDEST, s.id), reverse=True)
    return ordered[keep:]


class SnapshotRunner:
    """Runs one snapshot target: find, commit, prune."""

    def __init__(self, executor: CommandExecutor, clock: Callable[[], datetime] = _utcnow):
        self.executor = executor
        self.clock = clock

    def find_container_id(self, host: Host, container_name: str) -> Optional[str]:
        """Id of the container with this name (leading slash ignored)."""
        wanted = normalize_container_name(container_name)
        listing = self.executor.run(host, docker_commands.LIST_CONTAINERS)
        for result in parse_container_listing(host.id, listing.stdout, 0.0):
            if not isinstance(result, Parsed):
                continue
            names = [n.strip().lstrip('/') for n in result.record.payload["name"].split(',')]
            if wanted in names:
                return result.record.payload["id"]
        return None

    def resolve_container(self, host: Host, container: str) -> str:
        """
        Container id for a name or id.

        Raises:
            ContainerNotFoundError: If no container has this name and the
                value is not an id either.
        """
        container_id = self.find_container_id(host, container)
        if container_id is not None:
            return container_id
        if DOCKER_ID_PATTERN.match(container):
            return container
        raise ContainerNotFoundError(f"Container {container!r} not found on {host.id}")

    def run(self, host: Host, container_name: str, retention: int) -> SnapshotOutcome:
        """
        Snapshot one container and prune its snapshots down to ``retention``.

        Raises:
            HostConnectionError, CommandError: If finding or committing fails.
            Pruning problems are logged and do not raise.
        """
        outcome = SnapshotOutcome(host_id=host.id, container_name=container_name)

        container_id = self.find_container_id(host, container_name)
        if container_id is None:
            outcome.skipped_reason = "container not found"
            logger.warning(f"Snapshot skipped: container {container_name!r} not found on {host.id}")
            return outcome

        image = docker_commands.snapshot_image_name(container_name, self.clock())
        self.executor.run_long(
            host,
            docker_commands.commit_container(container_id, container_name, image)
        )
        outcome.image = f"{image}:{docker_commands.SNAPSHOT_TAG}"
        logger.info(f"Snapshot created on {host.id}: {container_name} -> {outcome.image}")

        outcome.pruned = self.prune(host, container_name, retention)
        return outcome

    def list_snapshots(self, host: Host, container_name: str) -> List[SnapshotImage]:
        """Snapshots of one container, newest first."""
        listing = self.executor.run(host, docker_commands.list_snapshots(container_name))
        snapshots = parse_snapshot_listing(listing.stdout)
        return sorted(snapshots, key=lambda s: (s.created or _OLDEST, s.id), reverse=True)

    def prune(self, host: Host, container_name: str, retention: int) -> List[str]:
        """Remove snapshots beyond the retention count. Returns removed ids."""
        try:
            listing = self.executor.run(host, docker_commands.list_snapshots(container_name))
        except (HostConnectionError, CommandError) as e:
            logger.warning(f"Could not list snapshots of {container_name} on {host.id}: {e}")
            return []

        removed = []
        for snapshot in select_for_pruning(parse_snapshot_listing(listing.stdout), retention):
            try:
                self.executor.run_long(host, docker_commands.remove_image(snapshot.id))
            except (HostConnectionError, CommandError) as e:
                logger.warning(f"Could not prune snapshot {snapshot.reference} ({snapshot.id}): {e}")
                continue
            removed.append(snapshot.id)
            logger.debug(f"Pruned old snapshot: {snapshot.reference} ({snapshot.id})")

        if removed:
            logger.info(f"Pruned {len(removed)} old snapshots of {container_name} on {host.id}")
        return removed
