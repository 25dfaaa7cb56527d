"""
Unit tests for orchestrator wiring and the command-line interface.
"""
import sys
from datetime import datetime
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from orchestrator.command_executor import CommandFailure
from orchestrator.job_store import YamlJobStore
from orchestrator.main import Orchestrator, cli
from orchestrator.monitor import CacheInventorySource, DirectInventorySource
from orchestrator.security_utils import SecurityError
from orchestrator.snapshots import ContainerNotFoundError
from orchestrator.synchronizer import UnknownHostError

HOSTS = {
    "hosts": [
        {"id": "web-01", "owner": "ops@example.com", "address": "203.0.113.5",
         "overlay_address": "100.64.0.5"},
        {"id": "db-01", "owner": "dba@example.com", "address": "203.0.113.6"},
    ]
}

PS_OUTPUT = "a1b2c3d4e5f6|web|nginx:1.25|Up 3 hours|80/tcp\n"

JOBS = {
    "jobs": [
        {"id": "nightly-web", "owner": "ops@example.com", "schedule_type": "daily",
         "schedule_config": {"hour": 2}, "retention": 3,
         "targets": [{"host_id": "web-01", "container_name": "web"}]},
    ]
}


@pytest.fixture
def workspace(tmp_path):
    """Config, hosts and jobs files in a temporary directory."""
    hosts_file = tmp_path / "hosts.yaml"
    jobs_file = tmp_path / "jobs.yaml"
    hosts_file.write_text(yaml.safe_dump(HOSTS))
    jobs_file.write_text(yaml.safe_dump(JOBS))

    def write_config(**sections):
        orchestrator = {
            "hosts_file": str(hosts_file),
            "jobs_file": str(jobs_file),
            "monitoring": {"notifier": "log"},
        }
        orchestrator.update(sections)
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.safe_dump({"orchestrator": orchestrator}))
        return str(config_file)

    return {
        "dir": tmp_path,
        "hosts_file": hosts_file,
        "jobs_file": jobs_file,
        "write_config": write_config,
    }


class TestOrchestrator:

    def test_initialize_without_mqtt(self, workspace):
        orchestrator = Orchestrator(workspace["write_config"]())

        orchestrator.initialize(use_mqtt=False)

        assert [h.id for h in orchestrator.hosts.list_hosts()] == ["web-01", "db-01"]
        assert [j.id for j in orchestrator.jobs.list_jobs()] == ["nightly-web"]
        assert orchestrator.mqtt_sink is None
        assert isinstance(orchestrator.monitor.source, CacheInventorySource)
        assert orchestrator.monitor.source.max_age == 90

    def test_monitor_disabled_without_notifier(self, workspace):
        config = workspace["write_config"](monitoring={"notifier": "email"})
        orchestrator = Orchestrator(config)

        orchestrator.initialize(use_mqtt=False)

        assert orchestrator.monitor is None
        assert orchestrator.get_state_summary()["monitoring"] is False

    def test_direct_source_when_polling_disabled(self, workspace):
        config = workspace["write_config"](polling={"enabled": False})
        orchestrator = Orchestrator(config)

        orchestrator.initialize(use_mqtt=False)

        assert isinstance(orchestrator.monitor.source, DirectInventorySource)

    def test_run_command_unknown_host(self, workspace):
        orchestrator = Orchestrator(workspace["write_config"]())
        orchestrator.initialize(use_mqtt=False)

        with pytest.raises(UnknownHostError):
            orchestrator.run_command("ghost", "uptime")

    def test_refresh_server_queues_host(self, workspace):
        orchestrator = Orchestrator(workspace["write_config"]())
        orchestrator.initialize(use_mqtt=False)

        assert orchestrator.refresh_server("db-01") is True
        assert orchestrator.refresh_server("web-01/../ghost") is False

        assert orchestrator.get_state_summary()["pending_refreshes"] == ["db-01"]

    def test_reload_forgets_removed_hosts(self, workspace):
        orchestrator = Orchestrator(workspace["write_config"]())
        orchestrator.initialize(use_mqtt=False)
        orchestrator.store.replace_host_records("db-01", [], synced_at=1.0)

        workspace["hosts_file"].write_text(yaml.safe_dump({"hosts": HOSTS["hosts"][:1]}))
        orchestrator.reload()

        assert [h["host_id"] for h in orchestrator.get_state_summary()["hosts"]] == ["web-01"]
        assert orchestrator.store.last_synced_at("db-01") is None

    def test_state_summary_lists_jobs(self, workspace):
        orchestrator = Orchestrator(workspace["write_config"]())
        orchestrator.initialize(use_mqtt=False)

        summary = orchestrator.get_state_summary()

        assert summary["jobs"][0]["job_id"] == "nightly-web"
        assert summary["jobs"][0]["next_run_at"] is None
        assert summary["hosts"][0]["last_error"] is None
        assert summary["loops"] == {}

    def test_invalid_config(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("orchestrator:\n  polling:\n    interval: 1\n")

        with pytest.raises(Exception):
            Orchestrator(str(config_file)).load_config()


class TestCli:

    def test_status(self, workspace):
        result = CliRunner().invoke(cli, ["-c", workspace["write_config"](), "status"], obj={})

        assert result.exit_code == 0, result.output
        assert "web-01: root@203.0.113.5:22 via 100.64.0.5" in result.output
        assert "nightly-web: daily, 1 targets, keep 3 (enabled)" in result.output
        assert "Last run: never" in result.output

    def test_next_run_saved(self, workspace):
        config = workspace["write_config"]()

        result = CliRunner().invoke(cli, ["-c", config, "next-run", "nightly-web"], obj={})

        assert result.exit_code == 0, result.output
        printed = datetime.fromisoformat(result.output.strip())
        assert (printed.hour, printed.minute) == (2, 0)

        store = YamlJobStore(str(workspace["jobs_file"]))
        store.load()
        assert store.get_job("nightly-web").next_run_at == printed

    def test_next_run_no_save(self, workspace):
        config = workspace["write_config"]()
        before = workspace["jobs_file"].read_text()

        result = CliRunner().invoke(cli, ["-c", config, "next-run", "nightly-web", "--no-save"], obj={})

        assert result.exit_code == 0, result.output
        assert workspace["jobs_file"].read_text() == before

    def test_next_run_unknown_job(self, workspace):
        result = CliRunner().invoke(cli, ["-c", workspace["write_config"](), "next-run", "ghost"], obj={})

        assert result.exit_code == 1
        assert "Unknown job: ghost" in result.output

    def test_exec_unknown_host(self, workspace):
        result = CliRunner().invoke(cli, ["-c", workspace["write_config"](), "exec", "ghost", "uptime"], obj={})

        assert result.exit_code == 1
        assert "Unknown host: ghost" in result.output


@pytest.fixture
def operator(workspace, fake_executor):
    """Initialized orchestrator whose commands go to the scripted executor."""
    orchestrator = Orchestrator(workspace["write_config"]())
    orchestrator.initialize(use_mqtt=False)
    orchestrator.executor = fake_executor
    fake_executor.on("docker ps -a --format", stdout=PS_OUTPUT)
    return orchestrator


def pending(orchestrator):
    return orchestrator.get_state_summary()["pending_refreshes"]


class TestContainerOperations:

    def test_stop_by_name_queues_refresh(self, operator, fake_executor):
        operator.container_action("web-01", "web", "stop")

        assert fake_executor.commands("web-01")[-1] == "docker stop a1b2c3d4e5f6"
        assert pending(operator) == ["web-01"]

    def test_action_by_unlisted_id(self, operator, fake_executor):
        operator.container_action("web-01", "fedcba987654", "restart")

        assert fake_executor.commands("web-01")[-1] == "docker restart fedcba987654"

    def test_unknown_container_runs_nothing(self, operator, fake_executor):
        with pytest.raises(ContainerNotFoundError):
            operator.container_action("web-01", "cache", "start")

        assert len(fake_executor.commands()) == 1
        assert pending(operator) == []

    def test_failed_command_still_refreshes(self, operator, fake_executor):
        fake_executor.on("docker start", stderr="port is already allocated", exit_code=1)

        with pytest.raises(CommandFailure):
            operator.container_action("web-01", "web", "start")

        assert pending(operator) == ["web-01"]

    def test_unknown_host(self, operator):
        with pytest.raises(UnknownHostError):
            operator.container_action("ghost", "web", "stop")

    def test_invalid_action(self, operator):
        with pytest.raises(SecurityError):
            operator.container_action("web-01", "web", "kill")

    def test_remove_force(self, operator, fake_executor):
        operator.remove_container("web-01", "web", force=True)

        assert fake_executor.commands()[-1] == "docker rm -f a1b2c3d4e5f6"
        assert pending(operator) == ["web-01"]

    def test_update_restart_policy(self, operator, fake_executor):
        operator.update_restart_policy("web-01", "web", "always")

        assert fake_executor.commands()[-1] == "docker update --restart always a1b2c3d4e5f6"
        assert pending(operator) == ["web-01"]

    def test_invalid_restart_policy_not_sent(self, operator, fake_executor):
        with pytest.raises(SecurityError):
            operator.update_restart_policy("web-01", "web", "sometimes")

        assert not any(c.startswith("docker update") for c in fake_executor.commands())

    def test_create_snapshot_now(self, operator, fake_executor):
        outcome = operator.create_snapshot("db-01", "web", retention=2)

        assert outcome.image.endswith(":snapshot")
        assert any(c.startswith("docker commit") for c in fake_executor.commands("db-01"))
        assert pending(operator) == ["db-01"]

    def test_list_snapshots(self, operator, fake_executor):
        fake_executor.on("docker images --no-trunc", stdout=(
            "sha256:aaa|web-snapshot-20240101-030000|snapshot|2024-01-01 03:00:00 +0000 UTC\n"
            "sha256:bbb|web-snapshot-20240102-030000|snapshot|2024-01-02 03:00:00 +0000 UTC\n"
        ))

        found = operator.list_snapshots("web-01", "web")

        assert [s.id for s in found] == ["sha256:bbb", "sha256:aaa"]
        assert pending(operator) == []

    def test_restore_snapshot(self, operator, fake_executor):
        operator.restore_snapshot("web-01", "web-snapshot-20240101-030000:snapshot", "web-restored")

        assert fake_executor.commands()[-1] == (
            "docker run -d --name 'web-restored' --restart unless-stopped "
            "'web-snapshot-20240101-030000:snapshot'"
        )
        assert pending(operator) == ["web-01"]

    def test_stats_and_images(self, operator, fake_executor):
        fake_executor.on("docker stats", stdout="a1b2c3d4e5f6|web|0.50%|10MiB / 1GiB|0.98%|1kB / 2kB|0B / 0B|3\n")
        fake_executor.on("docker images --format", stdout="sha256:aaa|nginx|1.25|2024-01-01 03:00:00 +0000 UTC|187MB\n")

        assert operator.container_stats("web-01", "web")["cpu_percent"] == "0.50%"
        assert [i["repository"] for i in operator.list_images("web-01")] == ["nginx"]

    def test_pull_image(self, operator, fake_executor):
        operator.pull_image("web-01", "nginx", "1.25")

        assert fake_executor.commands()[-1] == "docker pull 'nginx:1.25'"


class TestContainerCli:

    @pytest.fixture(autouse=True)
    def scripted_executor(self, monkeypatch, fake_executor):
        monkeypatch.setattr("orchestrator.main.CommandExecutor", lambda *args, **kwargs: fake_executor)
        fake_executor.on("docker ps -a --format", stdout=PS_OUTPUT)

    def invoke(self, workspace, *args):
        return CliRunner().invoke(cli, ["-c", workspace["write_config"](), *args], obj={})

    def test_stop(self, workspace, fake_executor):
        result = self.invoke(workspace, "stop", "web-01", "web")

        assert result.exit_code == 0, result.output
        assert "web: stopped" in result.output
        assert "docker stop a1b2c3d4e5f6" in fake_executor.commands()

    def test_update_requires_restart_option(self, workspace):
        result = self.invoke(workspace, "update", "web-01", "web")

        assert result.exit_code == 2

    def test_update_invalid_policy(self, workspace):
        result = self.invoke(workspace, "update", "web-01", "web", "--restart", "sometimes")

        assert result.exit_code == 1
        assert "Invalid restart policy" in result.output

    def test_failed_start_reports_stderr(self, workspace, fake_executor):
        fake_executor.on("docker start", stderr="port is already allocated\n", exit_code=125)

        result = self.invoke(workspace, "start", "web-01", "web")

        assert result.exit_code == 125
        assert "port is already allocated" in result.output

    def test_snapshot_missing_container(self, workspace):
        result = self.invoke(workspace, "snapshot", "web-01", "cache")

        assert result.exit_code == 1
        assert "container not found" in result.output

    def test_snapshots_listing(self, workspace, fake_executor):
        fake_executor.on("docker images --no-trunc", stdout=(
            "sha256:aaa|web-snapshot-20240101-030000|snapshot|2024-01-01 03:00:00 +0000 UTC\n"
        ))

        result = self.invoke(workspace, "snapshots", "web-01", "web")

        assert result.exit_code == 0, result.output
        assert "web-snapshot-20240101-030000:snapshot" in result.output
        assert "2024-01-01T03:00:00+00:00" in result.output
