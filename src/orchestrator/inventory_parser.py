"""
Parsers turning free-text docker and /proc output into structured records.

Parsing never raises on bad input. Each container line yields either
``Parsed`` or ``Degraded``; a degraded result still carries a placeholder
record so the container stays visible in the cache.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from orchestrator.docker_commands import FIELD_SEPARATOR, SECTION_MARKER
from orchestrator.models import HOST_FACTS_RESOURCE_ID, InventoryRecord

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
EXPECTED_FIELDS = 5


@dataclass
class Parsed:
    record: InventoryRecord


@dataclass
class Degraded:
    record: InventoryRecord
    reason: str


ParseResult = Union[Parsed, Degraded]


@dataclass
class SnapshotImage:
    """One snapshot image as listed by ``docker images``."""
    id: str
    repository: str
    tag: str
    created: Optional[datetime]

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


def is_running(status: Optional[str]) -> bool:
    """Docker status text such as ``Up 3 hours`` or ``running`` means running."""
    text = (status or "").lower()
    return "up" in text or "running" in text


def has_auto_restart(policy: Optional[str]) -> bool:
    """Any restart policy except ``no`` (or none at all) restarts the container."""
    return bool(policy) and policy != "no"


def parse_container_line(host_id: str, line: str, now: float, line_number: int = 0) -> ParseResult:
    """
    Parse one ``docker ps`` line in ``id|names|image|status|ports`` format.

    Lines with fewer than four fields become a Degraded placeholder with id
    ``degraded-<line_number>``; the raw line is kept in the payload.
    """
    parts = line.split(FIELD_SEPARATOR)

    if len(parts) >= 4 and parts[0].strip():
        status = parts[3].strip() or "Unknown"
        payload = {
            "id": parts[0].strip(),
            "name": parts[1].strip().lstrip("/"),
            "image": parts[2].strip() or "Unknown",
            "status": status,
            "ports": FIELD_SEPARATOR.join(parts[4:]).strip() if len(parts) > 4 else "",
            "state": "running" if is_running(status) else "stopped",
            "restart_policy": None,
        }
        record = InventoryRecord(host_id=host_id, resource_id=payload["id"],
                                 payload=payload, updated_at=now)
        if len(parts) < EXPECTED_FIELDS:
            record.degraded_reason = f"missing ports field ({len(parts)} of {EXPECTED_FIELDS})"
            return Degraded(record, record.degraded_reason)
        return Parsed(record)

    placeholder_id = f"degraded-{line_number}"
    reason = f"malformed line ({len(parts)} of {EXPECTED_FIELDS} fields)"
    payload = {
        "id": placeholder_id,
        "name": "",
        "image": "Unknown",
        "status": "Unknown",
        "ports": "",
        "state": UNKNOWN,
        "restart_policy": None,
        "raw": line.strip()[:200],
    }
    record = InventoryRecord(host_id=host_id, resource_id=placeholder_id, payload=payload,
                             updated_at=now, degraded_reason=reason)
    return Degraded(record, reason)


def parse_container_listing(host_id: str, stdout: str, now: float) -> List[ParseResult]:
    """Parse the full ``docker ps -a`` output of a host, skipping blank lines."""
    results = []
    seen = set()
    for line_number, line in enumerate(stdout.splitlines(), start=1):
        if not line.strip():
            continue
        result = parse_container_line(host_id, line, now, line_number)
        if result.record.resource_id in seen:
            logger.debug(f"Duplicate container id {result.record.resource_id} on {host_id}; keeping first")
            continue
        seen.add(result.record.resource_id)
        results.append(result)
    return results


def parse_restart_policies(stdout: str) -> Dict[str, str]:
    """
    Parse ``docker inspect`` lines of ``full_id|/name|policy``.

    Returns a map of full container id -> policy name. An empty policy is
    reported by docker for containers created without one and maps to "no".
    """
    policies = {}
    for line in stdout.splitlines():
        parts = line.strip().split(FIELD_SEPARATOR)
        if len(parts) < 3 or not parts[0]:
            continue
        policies[parts[0]] = parts[2].strip() or "no"
    return policies


def apply_restart_policies(results: List[ParseResult], policies: Optional[Dict[str, str]]) -> None:
    """
    Fill ``restart_policy`` on parsed container records.

    ``ps`` prints short ids and ``inspect`` full ids, so records are matched
    by prefix. With ``policies=None`` (lookup failed) every policy stays None.
    """
    if policies is None:
        return
    for result in results:
        short_id = result.record.resource_id
        if not short_id:
            continue
        for full_id, policy in policies.items():
            if full_id.startswith(short_id):
                result.record.payload["restart_policy"] = policy
                break


def _sections(stdout: str) -> Dict[str, str]:
    sections: Dict[str, List[str]] = {}
    current = None
    for line in stdout.splitlines():
        if line.startswith(SECTION_MARKER):
            current = line[len(SECTION_MARKER):].strip()
            sections[current] = []
        elif current is not None:
            sections[current].append(line)
    return {name: "\n".join(lines).strip() for name, lines in sections.items()}


def _parse_loadavg(text: str) -> Any:
    fields = text.split()
    if len(fields) < 3:
        return UNKNOWN
    try:
        return {"1m": float(fields[0]), "5m": float(fields[1]), "15m": float(fields[2])}
    except ValueError:
        return UNKNOWN


def _parse_meminfo(text: str) -> Any:
    values = {}
    for line in text.splitlines():
        key, _, rest = line.partition(":")
        number = rest.strip().split(" ")[0]
        if number.isdigit():
            values[key.strip()] = int(number) * 1024
    total = values.get("MemTotal")
    if not total:
        return UNKNOWN
    available = values.get("MemAvailable", values.get("MemFree", 0))
    return {
        "total_bytes": total,
        "available_bytes": available,
        "used_percent": round((total - available) * 100.0 / total, 1),
    }


def _parse_disk(text: str) -> Any:
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return UNKNOWN
    fields = lines[-1].split()
    if len(fields) < 6:
        return UNKNOWN
    try:
        total, used, available = int(fields[1]), int(fields[2]), int(fields[3])
    except ValueError:
        return UNKNOWN
    return {
        "mount": fields[5],
        "total_bytes": total,
        "used_bytes": used,
        "available_bytes": available,
        "used_percent": round(used * 100.0 / total, 1) if total else 0.0,
    }


def _parse_int(text: str) -> Any:
    try:
        return int(text.split()[0])
    except (ValueError, IndexError):
        return UNKNOWN


def _parse_uptime(text: str) -> Any:
    try:
        return int(float(text.split()[0]))
    except (ValueError, IndexError):
        return UNKNOWN


def parse_host_facts(stdout: str) -> Dict[str, Any]:
    """
    Parse the sectioned output of the host fact commands.

    Every fact is always present; a command that failed or printed garbage is
    reported as ``"unknown"``.
    """
    sections = _sections(stdout)

    def text(name: str) -> str:
        return sections.get(name, "")

    return {
        "hostname": text("hostname").splitlines()[0] if text("hostname") else UNKNOWN,
        "cpu_count": _parse_int(text("cpu_count")),
        "load": _parse_loadavg(text("loadavg")),
        "memory": _parse_meminfo(text("meminfo")),
        "disk": _parse_disk(text("disk")),
        "uptime_seconds": _parse_uptime(text("uptime")),
        "docker_version": text("docker_version").splitlines()[0] if text("docker_version") else UNKNOWN,
    }


def host_facts_record(host_id: str, facts: Dict[str, Any], now: float) -> InventoryRecord:
    return InventoryRecord(host_id=host_id, resource_id=HOST_FACTS_RESOURCE_ID,
                           payload=facts, updated_at=now)


def parse_docker_timestamp(value: str) -> Optional[datetime]:
    """
    Parse docker's ``CreatedAt`` text, e.g. ``2024-01-01 03:00:00 +0000 UTC``.

    Returns None when the text cannot be parsed.
    """
    fields = value.strip().split(" ")
    if len(fields) < 3:
        return None
    try:
        return datetime.strptime(" ".join(fields[:3]), "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        return None


def parse_snapshot_listing(stdout: str) -> List[SnapshotImage]:
    """Parse ``id|repository|tag|created`` lines of the snapshot listing."""
    snapshots = []
    for line in stdout.splitlines():
        parts = line.strip().split(FIELD_SEPARATOR)
        if len(parts) < 4 or not parts[0]:
            continue
        snapshots.append(SnapshotImage(
            id=parts[0],
            repository=parts[1],
            tag=parts[2],
            created=parse_docker_timestamp(parts[3]),
        ))
    return snapshots


IMAGE_FIELDS = ("id", "repository", "tag", "created", "size")
STATS_FIELDS = ("container", "name", "cpu_percent", "mem_usage", "mem_percent",
                "net_io", "block_io", "pids")


def parse_image_listing(stdout: str) -> List[Dict[str, str]]:
    """Parse ``id|repository|tag|created|size`` lines of ``docker images``."""
    images = []
    for line in stdout.splitlines():
        parts = [p.strip() for p in line.strip().split(FIELD_SEPARATOR)]
        if len(parts) < len(IMAGE_FIELDS) or not parts[0]:
            continue
        images.append(dict(zip(IMAGE_FIELDS, parts)))
    return images


def parse_container_stats(stdout: str) -> Optional[Dict[str, str]]:
    """
    Parse the single ``docker stats --no-stream`` line.

    None when there is no output; ``{"raw": ...}`` when the line has an
    unexpected shape.
    """
    line = stdout.strip()
    if not line:
        return None
    parts = [p.strip() for p in line.splitlines()[0].split(FIELD_SEPARATOR)]
    if len(parts) != len(STATS_FIELDS):
        return {"raw": line}
    return dict(zip(STATS_FIELDS, parts))
