#!/usr/bin/env python3
"""
DockerFleet Orchestrator - Main entry point.
"""
import sys
import logging
import signal
import threading
import time
import yaml
import click
from datetime import datetime, timezone
from typing import List, Optional, Union

from orchestrator.command_executor import (
    CommandError,
    CommandExecutor,
    CommandFailure,
    CommandTimeoutError,
)
from orchestrator.connection_manager import ConnectionManager, HostConnectionError
from orchestrator import docker_commands
from orchestrator.docker_commands import container_logs
from orchestrator.events import FanoutEventSink, LoggingEventSink
from orchestrator.host_directory import HostDirectoryError, KeyFileResolver, YamlHostDirectory
from orchestrator.inventory_parser import SnapshotImage, parse_container_stats, parse_image_listing
from orchestrator.inventory_store import InventoryStore
from orchestrator.job_store import JobStoreError, YamlJobStore
from orchestrator.logging_utils import setup_logging, log_with_fields
from orchestrator.models import (
    CommandResult,
    Host,
    OrchestratorConfigFile,
    apply_env_overrides,
)
from orchestrator.monitor import CacheInventorySource, ContainerMonitor, DirectInventorySource
from orchestrator.mqtt_client import MqttClientError, MqttEventSink
from orchestrator.notifications import build_notifier
from orchestrator.periodic import PeriodicLoop
from orchestrator.scheduler import JobScheduler, compute_next_run_at
from orchestrator.security_utils import SecurityError
from orchestrator.snapshots import ContainerNotFoundError, SnapshotOutcome, SnapshotRunner
from orchestrator.synchronizer import Synchronizer, UnknownHostError

logger = logging.getLogger(__name__)


class Orchestrator:
    """Main orchestrator class."""

    def __init__(self, config_path: str):
        """
        Initialize orchestrator.

        Args:
            config_path: Path to orchestrator config YAML
        """
        self.config_path = config_path
        self.config = None
        self.hosts: Optional[YamlHostDirectory] = None
        self.connections: Optional[ConnectionManager] = None
        self.executor: Optional[CommandExecutor] = None
        self.store = InventoryStore()
        self.events: Optional[FanoutEventSink] = None
        self.mqtt_sink: Optional[MqttEventSink] = None
        self.synchronizer: Optional[Synchronizer] = None
        self.monitor: Optional[ContainerMonitor] = None
        self.jobs: Optional[YamlJobStore] = None
        self.scheduler: Optional[JobScheduler] = None
        self.loops: List[PeriodicLoop] = []
        self._reload_requested = False
        self._stop_requested = threading.Event()

    def load_config(self):
        """Load orchestrator configuration."""
        logger.info(f"Loading configuration from {self.config_path}")

        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f)

            config_file = OrchestratorConfigFile(**data)
            self.config = apply_env_overrides(config_file.orchestrator)
            logger.info("Configuration loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise

    def initialize_hosts(self):
        """Load the host directory."""
        self.hosts = YamlHostDirectory(self.config.hosts_file)
        self.hosts.load()

    def initialize_connections(self):
        """Create the SSH connection manager and command executor."""
        ssh = self.config.ssh
        self.connections = ConnectionManager(
            credentials=KeyFileResolver(ssh.default_key_file),
            connect_timeout=ssh.connect_timeout,
            keepalive_interval=ssh.keepalive_interval,
            max_fallbacks=ssh.max_fallbacks,
        )
        self.executor = CommandExecutor(
            self.connections,
            default_timeout=ssh.command_timeout,
            long_timeout=ssh.long_command_timeout,
        )

    def initialize_events(self, use_mqtt: bool = True):
        """Set up change-event sinks (log, plus MQTT when enabled)."""
        self.events = FanoutEventSink(LoggingEventSink())

        if not use_mqtt or not self.config.mqtt.enabled:
            logger.info("MQTT disabled - change events are only logged")
            return

        sink = MqttEventSink(self.config.mqtt)
        try:
            sink.connect()
        except MqttClientError as e:
            logger.error(f"MQTT unavailable, change events are only logged: {e}")
            return

        self.mqtt_sink = sink
        self.events.add(sink)

    def initialize_synchronizer(self):
        """Create the state synchronizer."""
        self.synchronizer = Synchronizer(
            hosts=self.hosts,
            executor=self.executor,
            connections=self.connections,
            store=self.store,
            events=self.events,
        )
        if self.mqtt_sink is not None:
            self.mqtt_sink.register_refresh_handler(self.refresh_server)

    def initialize_monitor(self):
        """Create the container monitor, or leave it disabled."""
        monitoring = self.config.monitoring
        if not monitoring.enabled:
            logger.info("Monitoring disabled by configuration")
            return

        notifier = build_notifier(self.config)
        if notifier is None:
            logger.warning("No notifier configured - container monitoring disabled")
            return

        if monitoring.source == "cache" and self.config.polling.enabled:
            source = CacheInventorySource(self.store, max_age=self.config.inventory_max_age())
        else:
            if monitoring.source == "cache":
                logger.warning("Polling is disabled - monitor polls hosts directly")
            source = DirectInventorySource(self.executor)

        self.monitor = ContainerMonitor(
            hosts=self.hosts,
            source=source,
            notifier=notifier,
            settings=monitoring,
        )

    def initialize_scheduler(self):
        """Load snapshot jobs and create the job scheduler."""
        self.jobs = YamlJobStore(self.config.jobs_file)
        self.jobs.load()
        self.scheduler = JobScheduler(
            jobs=self.jobs,
            hosts=self.hosts,
            runner=SnapshotRunner(self.executor),
        )

    def initialize(self, use_mqtt: bool = True):
        """Initialize orchestrator components."""
        logger.info("=" * 60)
        logger.info("DockerFleet Orchestrator starting...")
        logger.info("=" * 60)

        self.load_config()
        self.initialize_hosts()
        self.initialize_connections()
        self.initialize_events(use_mqtt=use_mqtt)
        self.initialize_synchronizer()
        self.initialize_monitor()
        self.initialize_scheduler()

        logger.info("=" * 60)
        logger.info("Orchestrator initialized successfully!")
        logger.info("=" * 60)
        logger.info("")
        logger.info("Summary:")
        logger.info(f"  Hosts: {len(self.hosts.list_hosts())}")
        logger.info(f"  Scheduled jobs: {len(self.jobs.list_jobs())}")
        logger.info(f"  Monitoring: {'on' if self.monitor else 'off'}")
        if self.mqtt_sink:
            logger.info(f"  MQTT broker: {self.config.mqtt.broker}:{self.config.mqtt.port}")
        logger.info("")

    # Operations exposed to callers

    def _require_host(self, host_id: str) -> Host:
        host = self.hosts.get_host(host_id)
        if host is None:
            raise UnknownHostError(f"Unknown host: {host_id}")
        return host

    def run_command(
        self,
        host_id: str,
        command: str,
        timeout: Optional[float] = None,
        allow_failure: bool = False,
        stdin: Optional[Union[bytes, str]] = None,
    ) -> CommandResult:
        """
        Run a command on a host and wait for the result.

        Raises:
            UnknownHostError, HostConnectionError, CommandTimeoutError, CommandFailure
        """
        host = self._require_host(host_id)
        return self.executor.run(
            host, command, timeout=timeout, allow_failure=allow_failure, stdin=stdin
        )

    def sync_host_now(self, host_id: str) -> bool:
        """Sync one host immediately. Returns False if the sync failed."""
        return self.synchronizer.sync_one(host_id)

    def get_last_sync_error(self, host_id: str) -> Optional[str]:
        return self.synchronizer.last_error(host_id)

    def refresh_server(self, host_id: str) -> bool:
        """Have the next sync tick visit this host first. False for unknown hosts."""
        return self.synchronizer.refresh_server(host_id)

    # Container operations. Each one that changes a host queues a refresh
    # afterwards, also when the command failed part way.

    def _mutate(self, host: Host, command: str, long: bool = False) -> CommandResult:
        try:
            if long:
                return self.executor.run_long(host, command)
            return self.executor.run(host, command)
        finally:
            self.refresh_server(host.id)

    def container_action(self, host_id: str, container: str, action: str) -> CommandResult:
        """
        Start, stop or restart a container given by name or id.

        Raises:
            UnknownHostError, ContainerNotFoundError, HostConnectionError,
            CommandTimeoutError, CommandFailure, SecurityError
        """
        host = self._require_host(host_id)
        container_id = SnapshotRunner(self.executor).resolve_container(host, container)
        command = docker_commands.container_action(action, container_id)
        logger.info(f"Container {action} on {host_id}: {container}")
        return self._mutate(host, command)

    def remove_container(self, host_id: str, container: str, force: bool = False) -> CommandResult:
        host = self._require_host(host_id)
        container_id = SnapshotRunner(self.executor).resolve_container(host, container)
        logger.info(f"Removing container on {host_id}: {container} (force={force})")
        return self._mutate(host, docker_commands.remove_container(container_id, force=force))

    def update_restart_policy(self, host_id: str, container: str, policy: str) -> CommandResult:
        """Change a container's restart policy (``docker update --restart``)."""
        host = self._require_host(host_id)
        command = docker_commands.update_restart_policy(
            SnapshotRunner(self.executor).resolve_container(host, container), policy
        )
        logger.info(f"Restart policy of {container} on {host_id} set to {policy}")
        return self._mutate(host, command)

    def create_snapshot(self, host_id: str, container: str, retention: int = 5) -> SnapshotOutcome:
        """Snapshot a container now and prune its snapshots to ``retention``."""
        host = self._require_host(host_id)
        try:
            return SnapshotRunner(self.executor).run(host, container, retention)
        finally:
            self.refresh_server(host_id)

    def list_snapshots(self, host_id: str, container: str) -> List[SnapshotImage]:
        host = self._require_host(host_id)
        return SnapshotRunner(self.executor).list_snapshots(host, container)

    def restore_snapshot(self, host_id: str, image_ref: str, container_name: str,
                         restart: str = "unless-stopped") -> CommandResult:
        """Start a new container named ``container_name`` from a snapshot image."""
        host = self._require_host(host_id)
        command = docker_commands.run_from_image(image_ref, container_name, restart=restart)
        logger.info(f"Restoring {image_ref} as {container_name} on {host_id}")
        return self._mutate(host, command, long=True)

    def container_stats(self, host_id: str, container: str) -> Optional[dict]:
        host = self._require_host(host_id)
        container_id = SnapshotRunner(self.executor).resolve_container(host, container)
        result = self.executor.run(host, docker_commands.container_stats(container_id))
        return parse_container_stats(result.stdout)

    def list_images(self, host_id: str) -> List[dict]:
        host = self._require_host(host_id)
        return parse_image_listing(self.executor.run(host, docker_commands.LIST_IMAGES).stdout)

    def pull_image(self, host_id: str, image: str, tag: str = "latest") -> CommandResult:
        host = self._require_host(host_id)
        logger.info(f"Pulling {image}:{tag} on {host_id}")
        return self.executor.run_long(host, docker_commands.pull_image(image, tag))

    # Lifecycle

    def reload(self):
        """Re-read the hosts and jobs files."""
        removed = self.hosts.reload()
        for host_id in removed:
            self.connections.invalidate(host_id, reason="host removed")
            self.store.forget_host(host_id)
            self.synchronizer.forget_host(host_id)

        try:
            self.jobs.load()
        except JobStoreError as e:
            logger.error(f"Job reload failed, keeping previous jobs: {e}")

    def _handle_reload_signal(self, signum, frame):
        """Signal handler for SIGHUP to trigger a reload."""
        logger.info("Received SIGHUP signal - reload requested")
        self._reload_requested = True

    def _handle_stop_signal(self, signum, frame):
        logger.info(f"Received signal {signum} - shutting down")
        self._stop_requested.set()

    def start_loops(self):
        """Start the periodic loops that are enabled."""
        if self.config.polling.enabled:
            self.loops.append(
                PeriodicLoop("synchronizer", self.config.polling.interval, self.synchronizer.tick)
            )
        else:
            logger.info("Polling disabled by configuration")

        if self.monitor is not None:
            self.loops.append(
                PeriodicLoop("monitor", self.config.monitoring.interval, self.monitor.tick)
            )

        if self.config.scheduler.enabled:
            self.loops.append(
                PeriodicLoop("scheduler", self.config.scheduler.interval, self.scheduler.tick)
            )
        else:
            logger.info("Snapshot scheduler disabled by configuration")

        for loop in self.loops:
            loop.start()

    def run(self):
        """Run orchestrator until interrupted."""
        try:
            self.initialize()

            signal.signal(signal.SIGHUP, self._handle_reload_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)
            logger.info("Signal handlers registered: SIGHUP -> reload, SIGTERM -> stop")

            self.start_loops()

            while not self._stop_requested.wait(1.0):
                if self._reload_requested:
                    self._reload_requested = False
                    try:
                        self.reload()
                    except Exception as e:
                        logger.error(f"Reload failed: {e}", exc_info=True)

        except KeyboardInterrupt:
            logger.info("Orchestrator stopped by user")
        except Exception as e:
            logger.error(f"Orchestrator failed: {e}", exc_info=True)
            sys.exit(1)
        finally:
            self.shutdown()

    def shutdown(self):
        """Clean shutdown of orchestrator."""
        for loop in self.loops:
            loop.stop()
        for loop in self.loops:
            loop.join(timeout=5)
        self.loops = []

        if self.mqtt_sink and self.mqtt_sink.is_connected():
            logger.info("Disconnecting MQTT client...")
            self.mqtt_sink.disconnect()

        if self.connections:
            self.connections.close_all()

    def get_state_summary(self) -> dict:
        """
        Get current orchestrator state for querying/display.

        Returns:
            Dictionary with hosts, jobs and loop state
        """
        now = time.time()
        sync_status = self.store.sync_status()

        hosts_data = []
        for host in (self.hosts.list_hosts() if self.hosts else []):
            status = sync_status.get(host.id)
            last_synced = status.last_synced_at if status else None
            hosts_data.append({
                'host_id': host.id,
                'name': host.display_name,
                'owner': host.owner,
                'active_address': self.connections.active_address(host.id) if self.connections else None,
                'last_synced_at': last_synced,
                'last_synced_ago_s': (now - last_synced) if last_synced else None,
                'containers': status.record_count if status else 0,
                'degraded': status.degraded_count if status else 0,
                'last_error': self.get_last_sync_error(host.id) if self.synchronizer else None,
            })

        jobs_data = []
        for job in (self.jobs.list_jobs() if self.jobs else []):
            jobs_data.append({
                'job_id': job.id,
                'schedule': job.schedule_type.value,
                'enabled': job.enabled,
                'targets': len(job.targets),
                'retention': job.retention,
                'last_run_at': job.last_run_at.isoformat() if job.last_run_at else None,
                'next_run_at': job.next_run_at.isoformat() if job.next_run_at else None,
            })

        return {
            'timestamp': now,
            'hosts': hosts_data,
            'jobs': jobs_data,
            'loops': {loop.name: {'running': loop.is_running(), 'ticks': loop.ticks} for loop in self.loops},
            'pending_refreshes': self.synchronizer.pending_refreshes() if self.synchronizer else [],
            'syncing': self.synchronizer.syncing_hosts() if self.synchronizer else [],
            'monitoring': self.monitor is not None,
        }


def _one_shot(config_path: str) -> Orchestrator:
    """Orchestrator with hosts and SSH ready, without loops or MQTT."""
    orchestrator = Orchestrator(config_path)
    orchestrator.load_config()
    orchestrator.initialize_hosts()
    orchestrator.initialize_connections()
    orchestrator.initialize_events(use_mqtt=False)
    orchestrator.initialize_synchronizer()
    return orchestrator


@click.group()
@click.option(
    '--config', '-c',
    default='/etc/dockerfleet/config.yaml',
    type=click.Path(exists=True),
    help='Path to orchestrator configuration file'
)
@click.option(
    '--log-level', '-l',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Override log level from config'
)
@click.pass_context
def cli(ctx, config, log_level):
    """DockerFleet Orchestrator - Docker fleet management over SSH."""
    level = "INFO"
    json_format = False
    log_file = None
    module_levels = {}

    try:
        with open(config, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        logging_config = (config_data.get('orchestrator') or {}).get('logging') or {}
        level = logging_config.get('level', 'INFO')
        json_format = logging_config.get('json_format', False)
        log_file = logging_config.get('file')
        module_levels = logging_config.get('module_levels', {})
    except (OSError, yaml.YAMLError, AttributeError) as e:
        # Commands report the config problem themselves
        click.echo(f"Warning: could not read logging settings: {e}", err=True)

    # CLI option overrides config
    if log_level:
        level = log_level

    setup_logging(
        level=level,
        json_output=json_format,
        log_file=log_file,
        module_levels=module_levels
    )

    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config


@cli.command()
@click.pass_context
def run(ctx):
    """Run the synchronizer, monitor and scheduler loops (default mode)."""
    config_path = ctx.obj['config_path']
    orchestrator = Orchestrator(config_path)
    orchestrator.run()


@cli.command()
@click.pass_context
def status(ctx):
    """Show configured hosts and scheduled jobs."""
    config_path = ctx.obj['config_path']
    orchestrator = Orchestrator(config_path)

    try:
        orchestrator.load_config()
        orchestrator.initialize_hosts()
        orchestrator.jobs = YamlJobStore(orchestrator.config.jobs_file)
        orchestrator.jobs.load()
        summary = orchestrator.get_state_summary()

        click.echo("=" * 60)
        click.echo("Orchestrator Status")
        click.echo("=" * 60)
        click.echo(f"Config: {config_path}")
        click.echo(f"Hosts file: {orchestrator.config.hosts_file}")
        click.echo(f"Jobs file: {orchestrator.config.jobs_file}")
        click.echo("")

        click.echo(f"Hosts ({len(summary['hosts'])}):")
        for host in orchestrator.hosts.list_hosts():
            via = f" via {host.overlay_address}" if host.overlay_address else ""
            click.echo(f"  - {host.id}: {host.username}@{host.address}:{host.port}{via} (owner {host.owner})")
        click.echo("")

        click.echo(f"Scheduled jobs ({len(summary['jobs'])}):")
        for job in summary['jobs']:
            state = "enabled" if job['enabled'] else "disabled"
            click.echo(f"  - {job['job_id']}: {job['schedule']}, {job['targets']} targets, "
                       f"keep {job['retention']} ({state})")
            click.echo(f"     Last run: {job['last_run_at'] or 'never'}")
            click.echo(f"     Next run: {job['next_run_at'] or 'on next scheduler tick'}")

    except Exception as e:
        logger.error(f"Status check failed: {e}", exc_info=True)
        sys.exit(1)


@cli.command()
@click.argument('host_id')
@click.pass_context
def sync(ctx, host_id):
    """Sync one host now and print its containers."""
    orchestrator = None
    try:
        orchestrator = _one_shot(ctx.obj['config_path'])
        ok = orchestrator.sync_host_now(host_id)
        if not ok:
            click.echo(f"Sync failed: {orchestrator.get_last_sync_error(host_id)}", err=True)
            sys.exit(1)

        for record in orchestrator.store.query(host_id):
            payload = record.payload
            marker = " [degraded]" if record.degraded else ""
            click.echo(f"{payload['id'][:12]}  {payload['name']:<30} {payload['status']}{marker}")
    except (UnknownHostError, HostDirectoryError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    finally:
        if orchestrator and orchestrator.connections:
            orchestrator.connections.close_all()


@cli.command(name='exec')
@click.argument('host_id')
@click.argument('command')
@click.option('--timeout', type=float, default=None, help='Seconds before the command is abandoned')
@click.option('--allow-failure', is_flag=True, help='Do not treat a non-zero exit as an error')
@click.pass_context
def exec_command(ctx, host_id, command, timeout, allow_failure):
    """Run COMMAND on a host and print its output."""
    orchestrator = None
    try:
        orchestrator = _one_shot(ctx.obj['config_path'])
        result = orchestrator.run_command(host_id, command, timeout=timeout, allow_failure=allow_failure)
        click.echo(result.stdout, nl=False)
        if result.stderr:
            click.echo(result.stderr, nl=False, err=True)
        sys.exit(result.exit_code or 0)
    except CommandTimeoutError as e:
        click.echo(f"ERROR: {e}", err=True)
        click.echo("Hint: avoid interactive commands; they never finish without a terminal", err=True)
        sys.exit(124)
    except CommandFailure as e:
        click.echo(e.stdout, nl=False)
        click.echo(e.stderr, nl=False, err=True)
        sys.exit(e.exit_code or 1)
    except (UnknownHostError, HostConnectionError, HostDirectoryError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    finally:
        if orchestrator and orchestrator.connections:
            orchestrator.connections.close_all()


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.option('--tail', default=100, type=int, help='Number of lines to show')
@click.option('--follow', '-f', is_flag=True, help='Keep streaming new output')
@click.option('--since', default=None, help='Only logs since this time (e.g. 10m)')
@click.pass_context
def logs(ctx, host_id, container, tail, follow, since):
    """Print the logs of CONTAINER (name or ID) on a host."""
    orchestrator = None
    try:
        orchestrator = _one_shot(ctx.obj['config_path'])
        host = orchestrator._require_host(host_id)
        container_id = SnapshotRunner(orchestrator.executor).find_container_id(host, container) or container
        command = container_logs(container_id, tail=tail, follow=follow, since=since)

        with orchestrator.executor.stream(host, command) as stream:
            try:
                for channel, text in stream:
                    click.echo(text, nl=False, err=(channel == "stderr"))
            except KeyboardInterrupt:
                stream.cancel()
        if stream.exit_code:
            sys.exit(stream.exit_code)
    except (UnknownHostError, HostConnectionError, CommandError, HostDirectoryError, SecurityError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    finally:
        if orchestrator and orchestrator.connections:
            orchestrator.connections.close_all()


OPERATION_ERRORS = (
    UnknownHostError,
    ContainerNotFoundError,
    HostConnectionError,
    HostDirectoryError,
    CommandError,
    SecurityError,
)


def _container_operation(ctx, operation):
    """Run ``operation(orchestrator)`` on a one-shot orchestrator and report errors."""
    orchestrator = None
    try:
        orchestrator = _one_shot(ctx.obj['config_path'])
        return operation(orchestrator)
    except CommandFailure as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(e.exit_code or 1)
    except OPERATION_ERRORS as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    finally:
        if orchestrator and orchestrator.connections:
            orchestrator.connections.close_all()


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.pass_context
def start(ctx, host_id, container):
    """Start CONTAINER (name or ID) on a host."""
    _container_operation(ctx, lambda o: o.container_action(host_id, container, "start"))
    click.echo(f"{container}: started")


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.pass_context
def stop(ctx, host_id, container):
    """Stop CONTAINER (name or ID) on a host."""
    _container_operation(ctx, lambda o: o.container_action(host_id, container, "stop"))
    click.echo(f"{container}: stopped")


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.pass_context
def restart(ctx, host_id, container):
    """Restart CONTAINER (name or ID) on a host."""
    _container_operation(ctx, lambda o: o.container_action(host_id, container, "restart"))
    click.echo(f"{container}: restarted")


@cli.command(name='rm')
@click.argument('host_id')
@click.argument('container')
@click.option('--force', '-f', is_flag=True, help='Remove even if running')
@click.pass_context
def remove(ctx, host_id, container, force):
    """Remove CONTAINER (name or ID) from a host."""
    _container_operation(ctx, lambda o: o.remove_container(host_id, container, force=force))
    click.echo(f"{container}: removed")


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.option('--restart', 'policy', required=True,
              help='Restart policy: no, always, unless-stopped or on-failure[:N]')
@click.pass_context
def update(ctx, host_id, container, policy):
    """Change the restart policy of CONTAINER on a host."""
    _container_operation(ctx, lambda o: o.update_restart_policy(host_id, container, policy))
    click.echo(f"{container}: restart policy {policy}")


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.option('--retention', default=5, type=click.IntRange(min=1),
              help='Number of snapshots to keep')
@click.pass_context
def snapshot(ctx, host_id, container, retention):
    """Snapshot CONTAINER now and prune old snapshots."""
    outcome = _container_operation(ctx, lambda o: o.create_snapshot(host_id, container, retention))
    if outcome.skipped_reason:
        click.echo(f"ERROR: {container}: {outcome.skipped_reason}", err=True)
        sys.exit(1)
    click.echo(outcome.image)
    for image_id in outcome.pruned:
        click.echo(f"  pruned {image_id}")


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.pass_context
def snapshots(ctx, host_id, container):
    """List snapshots of CONTAINER, newest first."""
    found = _container_operation(ctx, lambda o: o.list_snapshots(host_id, container))
    for image in found:
        created = image.created.isoformat() if image.created else "unknown"
        click.echo(f"{image.id[:19]}  {image.reference:<50} {created}")


@cli.command()
@click.argument('host_id')
@click.argument('image_ref')
@click.argument('name')
@click.option('--restart', 'policy', default='unless-stopped', help='Restart policy of the new container')
@click.pass_context
def restore(ctx, host_id, image_ref, name, policy):
    """Start a new container NAME from snapshot IMAGE_REF."""
    result = _container_operation(ctx, lambda o: o.restore_snapshot(host_id, image_ref, name, restart=policy))
    click.echo(result.stdout.strip())


@cli.command()
@click.argument('host_id')
@click.argument('container')
@click.pass_context
def stats(ctx, host_id, container):
    """Show CPU, memory and I/O usage of CONTAINER."""
    usage = _container_operation(ctx, lambda o: o.container_stats(host_id, container))
    if usage is None:
        click.echo("No stats (container not running?)")
        return
    for key, value in usage.items():
        click.echo(f"{key}: {value}")


@cli.command()
@click.argument('host_id')
@click.pass_context
def images(ctx, host_id):
    """List images on a host."""
    for image in _container_operation(ctx, lambda o: o.list_images(host_id)):
        click.echo(f"{image['id']:<15} {image['repository']}:{image['tag']:<30} {image['size']}")


@cli.command()
@click.argument('host_id')
@click.argument('image')
@click.option('--tag', default='latest', help='Image tag')
@click.pass_context
def pull(ctx, host_id, image, tag):
    """Pull IMAGE on a host."""
    _container_operation(ctx, lambda o: o.pull_image(host_id, image, tag))
    click.echo(f"{image}:{tag} pulled")


@cli.command(name='next-run')
@click.argument('job_id')
@click.option('--save/--no-save', default=True, help='Persist the computed time to the jobs file')
@click.pass_context
def next_run(ctx, job_id, save):
    """Compute the next run of a scheduled job."""
    orchestrator = Orchestrator(ctx.obj['config_path'])
    try:
        orchestrator.load_config()
        jobs = YamlJobStore(orchestrator.config.jobs_file)
        jobs.load()
        job = jobs.get_job(job_id)
        if job is None:
            click.echo(f"ERROR: Unknown job: {job_id}", err=True)
            sys.exit(1)
        next_run_at = compute_next_run_at(job, datetime.now(timezone.utc))
        if save:
            jobs.update(job_id, next_run_at=next_run_at)
        log_with_fields(logger, logging.DEBUG, "Next run computed", job=job_id, saved=save)
        click.echo(next_run_at.isoformat())
    except JobStoreError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
