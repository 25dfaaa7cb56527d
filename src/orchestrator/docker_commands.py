"""
Command lines executed on remote hosts.

Only builders live here; output parsing is in inventory_parser. Every
caller-supplied value is validated and quoted before interpolation.
"""
import re
from datetime import datetime, timezone
from typing import Dict, Optional

from orchestrator.security_utils import (
    SecurityError,
    quote_arg,
    validate_container_name,
    validate_docker_id,
    validate_image_name,
    validate_tag,
)

FIELD_SEPARATOR = "|"
SNAPSHOT_TAG = "snapshot"
SNAPSHOT_LABEL = "dockerfleet.snapshot.of"

LIST_CONTAINERS = (
    "docker ps -a --format "
    "'{{.ID}}|{{.Names}}|{{.Image}}|{{.Status}}|{{.Ports}}'"
)

# Full id, name and restart policy of every container (empty output when none exist)
INSPECT_RESTART_POLICIES = (
    "docker ps -aq --no-trunc | xargs -r docker inspect --format "
    "'{{.Id}}|{{.Name}}|{{.HostConfig.RestartPolicy.Name}}'"
)

# Host fact commands, run as one command with a marker line before each section.
# A command that fails leaves its section empty.
HOST_FACT_COMMANDS: Dict[str, str] = {
    "hostname": "hostname",
    "cpu_count": "nproc",
    "loadavg": "cat /proc/loadavg",
    "meminfo": "cat /proc/meminfo",
    "disk": "df -P -B1 /",
    "uptime": "cat /proc/uptime",
    "docker_version": "docker version --format '{{.Server.Version}}'",
}
SECTION_MARKER = "@@dockerfleet:"


def host_facts_command() -> str:
    """Single command printing every host fact in its own section."""
    parts = []
    for name, fact_command in HOST_FACT_COMMANDS.items():
        parts.append(f"echo '{SECTION_MARKER}{name}'; {fact_command} 2>/dev/null")
    return "; ".join(parts) + "; true"


def snapshot_image_name(container_name: str, now: Optional[datetime] = None) -> str:
    """
    Repository name for a new snapshot: ``<name>-snapshot-YYYYMMDD-HHMMSS``.

    The timestamp is UTC. Docker repository names must be lowercase.
    """
    now = now or datetime.now(timezone.utc)
    name = validate_container_name(container_name).lower()
    return f"{name}-snapshot-{now.strftime('%Y%m%d-%H%M%S')}"


def commit_container(container_id: str, container_name: str, image_name: str,
                     tag: str = SNAPSHOT_TAG) -> str:
    """``docker commit`` labelling the image with the source container name."""
    container_id = validate_docker_id(container_id)
    name = validate_container_name(container_name)
    image = validate_image_name(image_name)
    tag = validate_tag(tag)
    label = quote_arg(f"LABEL {SNAPSHOT_LABEL}={name}")
    return f"docker commit --change {label} {container_id} {quote_arg(f'{image}:{tag}')}"


def list_snapshots(container_name: str) -> str:
    """Snapshot images of one container, one ``id|repo|tag|created`` line each."""
    name = validate_container_name(container_name)
    label_filter = quote_arg(f"label={SNAPSHOT_LABEL}={name}")
    return (
        f"docker images --no-trunc --filter {label_filter} --format "
        "'{{.ID}}|{{.Repository}}|{{.Tag}}|{{.CreatedAt}}'"
    )


def remove_image(image_id: str, force: bool = True) -> str:
    if image_id.startswith("sha256:"):
        image_id = image_id[len("sha256:"):]
    image_id = validate_docker_id(image_id, "image ID")
    return f"docker rmi {'-f ' if force else ''}{image_id}"


def container_logs(container_id: str, tail: int = 100, follow: bool = False,
                   since: Optional[str] = None) -> str:
    """``docker logs`` for one container, optionally following."""
    command = f"docker logs {validate_docker_id(container_id)} --tail {int(tail)}"
    if since:
        command += f" --since {quote_arg(since)}"
    if follow:
        command += " --follow"
    return command


CONTAINER_ACTIONS = ("start", "stop", "restart")
RESTART_POLICY_PATTERN = re.compile(r'^(no|always|unless-stopped|on-failure(:[0-9]{1,4})?)$')

LIST_IMAGES = (
    "docker images --format "
    "'{{.ID}}|{{.Repository}}|{{.Tag}}|{{.CreatedAt}}|{{.Size}}'"
)


def validate_restart_policy(policy: str) -> str:
    """``no``, ``always``, ``unless-stopped`` or ``on-failure[:N]``."""
    policy = (policy or "").strip()
    if not RESTART_POLICY_PATTERN.match(policy):
        raise SecurityError(f"Invalid restart policy: {policy!r}")
    return policy


def container_action(action: str, container_id: str) -> str:
    if action not in CONTAINER_ACTIONS:
        raise SecurityError(f"Invalid container action: {action!r}")
    return f"docker {action} {validate_docker_id(container_id)}"


def remove_container(container_id: str, force: bool = False) -> str:
    return f"docker rm {'-f ' if force else ''}{validate_docker_id(container_id)}"


def update_restart_policy(container_id: str, policy: str) -> str:
    policy = validate_restart_policy(policy)
    return f"docker update --restart {policy} {validate_docker_id(container_id)}"


def container_stats(container_id: str) -> str:
    """One-shot resource usage of a container as a single ``|``-separated line."""
    return (
        f"docker stats {validate_docker_id(container_id)} --no-stream --format "
        "'{{.Container}}|{{.Name}}|{{.CPUPerc}}|{{.MemUsage}}|{{.MemPerc}}|"
        "{{.NetIO}}|{{.BlockIO}}|{{.PIDs}}'"
    )


def pull_image(image_name: str, tag: str = "latest") -> str:
    image = validate_image_name(image_name)
    return f"docker pull {quote_arg(f'{image}:{validate_tag(tag)}')}"


def run_from_image(image_ref: str, container_name: str, restart: str = "unless-stopped") -> str:
    """
    Start a detached container from an image, e.g. to restore a snapshot.

    ``image_ref`` is ``repository[:tag]``; a missing tag means ``latest``.
    """
    image, _, tag = image_ref.rpartition(":")
    if not image or "/" in tag:
        image, tag = image_ref, ""
    image = validate_image_name(image)
    tag = validate_tag(tag)
    name = validate_container_name(container_name)
    restart = validate_restart_policy(restart)
    return (
        f"docker run -d --name {quote_arg(name)} --restart {restart} "
        f"{quote_arg(f'{image}:{tag}')}"
    )
