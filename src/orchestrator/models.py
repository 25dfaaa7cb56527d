"""
Data models for the DockerFleet orchestrator.

Configuration, host and job definitions are pydantic models loaded from YAML.
Runtime values that never leave the process are plain dataclasses.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from orchestrator.security_utils import (
    validate_container_name,
    validate_identifier,
    validate_key_path,
)

logger = logging.getLogger(__name__)

HOST_FACTS_RESOURCE_ID = "host-facts"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Host(BaseModel):
    """A remote machine running Docker, reachable over SSH."""
    id: str = Field(description="Unique host identifier")
    name: str = Field(default="", description="Display name")
    owner: str = Field(description="Owning account, also the alert recipient")
    address: str = Field(description="Primary hostname or IP")
    overlay_address: Optional[str] = Field(
        default=None,
        description="Private overlay (Tailscale) address, preferred when set"
    )
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(default="root")
    key_file: Optional[str] = Field(default=None, description="Path to the private key")

    @field_validator('id')
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate host ID format."""
        return validate_identifier(v, "host ID")

    @field_validator('overlay_address')
    @classmethod
    def blank_overlay_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @field_validator('key_file')
    @classmethod
    def validate_key_file(cls, v: Optional[str]) -> Optional[str]:
        """Reject unsafe key paths early."""
        if v is None:
            return v
        try:
            validate_key_path(v)
        except Exception as e:
            raise ValueError(f"Invalid key file: {e}")
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.id


class HostsFile(BaseModel):
    """Root structure of the hosts YAML file."""
    hosts: List[Host] = Field(default_factory=list)


class ScheduleType(str, Enum):
    """Recurrence kinds for scheduled jobs."""
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"


class ScheduleConfig(BaseModel):
    """
    Recurrence parameters.

    Values are clamped when the next run is computed, so out-of-range
    numbers are tolerated here.
    """
    interval_hours: Optional[float] = None
    hour: Optional[int] = None
    minute: Optional[int] = None
    day_of_week: Optional[int] = Field(default=None, description="0 = Sunday")


class JobTarget(BaseModel):
    """One container to snapshot on one host."""
    host_id: str
    container_name: str

    @field_validator('host_id')
    @classmethod
    def validate_host_id(cls, v: str) -> str:
        return validate_identifier(v, "host ID")

    @field_validator('container_name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Container names are interpolated into commands."""
        try:
            return validate_container_name(v)
        except Exception as e:
            raise ValueError(str(e))


class ScheduledJob(BaseModel):
    """A recurring snapshot job over a list of targets."""
    id: str = Field(description="Unique job identifier")
    name: str = Field(default="")
    owner: str
    schedule_type: ScheduleType = ScheduleType.DAILY
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    retention: int = Field(default=5, ge=1, description="Snapshots kept per target")
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    targets: List[JobTarget] = Field(default_factory=list)

    @field_validator('id')
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate job ID format."""
        return validate_identifier(v, "job ID")

    @field_validator('last_run_at', 'next_run_at')
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store every timestamp as an aware UTC datetime."""
        return _as_utc(v)

    def is_due(self, now: datetime) -> bool:
        """True when the job is enabled and its next run has passed."""
        if not self.enabled:
            return False
        return self.next_run_at is None or self.next_run_at <= now

    def __repr__(self):
        return (
            f"ScheduledJob({self.id}, {self.schedule_type.value}, "
            f"targets={len(self.targets)}, retention={self.retention})"
        )


class JobsFile(BaseModel):
    """Root structure of the jobs YAML file."""
    jobs: List[ScheduledJob] = Field(default_factory=list)


@dataclass
class CommandResult:
    """Outcome of one remote command."""
    command: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass
class InventoryRecord:
    """
    One cached row of remote state.

    ``resource_id`` is a container id, or ``HOST_FACTS_RESOURCE_ID`` for the
    per-host facts row. ``degraded_reason`` is set when the source line could
    not be parsed cleanly and the payload holds placeholder values.
    """
    host_id: str
    resource_id: str
    payload: Dict[str, Any]
    updated_at: float
    degraded_reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


@dataclass
class HostSyncStatus:
    """Per-host bookkeeping kept next to the cached records."""
    host_id: str
    last_synced_at: Optional[float] = None
    record_count: int = 0
    degraded_count: int = 0


class OrchestratorConfig(BaseModel):
    """Orchestrator configuration."""
    class SshConfig(BaseModel):
        connect_timeout: float = Field(default=10.0, gt=0, description="Seconds per dial attempt")
        command_timeout: float = Field(default=30.0, gt=0, description="Default command bound in seconds")
        long_command_timeout: float = Field(
            default=600.0, gt=0,
            description="Bound for long operations such as docker commit"
        )
        keepalive_interval: int = Field(default=10, ge=0)
        max_fallbacks: int = Field(
            default=1, ge=0,
            description="Extra addresses tried after the first candidate fails"
        )
        default_key_file: Optional[str] = Field(
            default=None,
            description="Private key used for hosts without their own key_file"
        )

    class PollingConfig(BaseModel):
        enabled: bool = True
        interval: int = Field(default=30, ge=5, description="Seconds between sync ticks")

    class MonitoringConfig(BaseModel):
        enabled: bool = True
        interval: int = Field(default=60, ge=5, description="Seconds between monitor ticks")
        alert_cooldown_ms: int = Field(default=43200000, ge=0)
        no_auto_restart_cooldown_ms: int = Field(default=43200000, ge=0)
        alert_on_container_down: bool = True
        alert_on_container_recovery: bool = True
        alert_on_no_auto_restart: bool = True
        min_down_time_before_alert_ms: int = Field(default=0, ge=0)
        notifier: str = Field(default="email", description="'email' or 'log'")
        source: str = Field(default="cache", description="'cache' or 'direct'")
        max_inventory_age_s: Optional[int] = Field(
            default=None, ge=1,
            description="Skip hosts whose cached inventory is older (default: 3x poll interval)"
        )

        @field_validator('source')
        @classmethod
        def validate_source(cls, v: str) -> str:
            if v not in ('cache', 'direct'):
                raise ValueError(f"Invalid monitoring source: {v}. Must be 'cache' or 'direct'")
            return v

        @field_validator('notifier')
        @classmethod
        def validate_notifier(cls, v: str) -> str:
            if v not in ('email', 'log'):
                raise ValueError(f"Invalid notifier: {v}. Must be 'email' or 'log'")
            return v

    class SchedulerConfig(BaseModel):
        enabled: bool = True
        interval: int = Field(default=60, ge=1, description="Seconds between scheduler ticks")

    class EmailConfig(BaseModel):
        enabled: bool = False
        smtp_host: str = "localhost"
        smtp_port: int = 587
        smtp_user: Optional[str] = None
        smtp_password: Optional[str] = None
        from_address: str = "dockerfleet@localhost"
        use_tls: bool = True
        timeout: float = 30.0

    class MqttConfig(BaseModel):
        enabled: bool = False
        broker: str = "localhost"
        port: int = 1883
        keepalive: int = 60
        client_id: str = "dockerfleet-orchestrator"
        topic_prefix: str = "dockerfleet"
        accept_refresh_requests: bool = True

    class LoggingConfig(BaseModel):
        level: str = Field(
            default="INFO",
            description="Global log level: DEBUG, INFO, WARNING, ERROR"
        )
        file: Optional[str] = Field(
            default=None,
            description="Optional log file path (in addition to stdout)"
        )
        json_format: bool = Field(
            default=False,
            description="Output logs in JSON format for machine parsing"
        )
        module_levels: Dict[str, str] = Field(
            default_factory=dict,
            description="Per-module log levels, e.g. {'connection_manager': 'DEBUG'}"
        )

    hosts_file: str = "/etc/dockerfleet/hosts.yaml"
    jobs_file: str = "/var/lib/dockerfleet/jobs.yaml"
    ssh: SshConfig = Field(default_factory=SshConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def inventory_max_age(self) -> int:
        """Seconds after which cached inventory is too old for the monitor."""
        if self.monitoring.max_inventory_age_s is not None:
            return self.monitoring.max_inventory_age_s
        return self.polling.interval * 3


class OrchestratorConfigFile(BaseModel):
    """Root structure of the orchestrator config file."""
    orchestrator: OrchestratorConfig


# Environment variable -> (section, field, minimum)
ENV_OVERRIDES = {
    'DOCKERFLEET_POLLING_INTERVAL': ('polling', 'interval', 5),
    'DOCKERFLEET_MONITORING_INTERVAL': ('monitoring', 'interval', 5),
    'DOCKERFLEET_ALERT_COOLDOWN_MS': ('monitoring', 'alert_cooldown_ms', 0),
    'DOCKERFLEET_SCHEDULER_INTERVAL': ('scheduler', 'interval', 1),
}


def apply_env_overrides(config: OrchestratorConfig, environ: Optional[Dict[str, str]] = None) -> OrchestratorConfig:
    """
    Apply numeric overrides from the environment.

    Values that are not integers or fall below the minimum are logged and
    ignored.
    """
    environ = os.environ if environ is None else environ

    for var, (section, field_name, minimum) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == '':
            continue
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Ignoring {var}={raw!r}: not an integer")
            continue
        if value < minimum:
            logger.warning(f"Ignoring {var}={value}: minimum is {minimum}")
            continue
        setattr(getattr(config, section), field_name, value)
        logger.info(f"Config override from environment: {section}.{field_name}={value}")

    return config
