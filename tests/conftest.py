"""
Pytest fixtures for DockerFleet orchestrator tests.

Provides in-process fakes for paramiko clients and for the command
executor, and spawns a local Mosquitto broker for integration tests.
"""
import os
import sys
import time
import socket
import shutil
import tempfile
import subprocess
from pathlib import Path
from contextlib import closing
from typing import Dict, List, Optional, Union

import paramiko
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from orchestrator.command_executor import CommandFailure
from orchestrator.models import CommandResult


def find_free_port() -> int:
    """Find a free TCP port."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('127.0.0.1', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


def wait_for_port(port: int, timeout: float = 10.0) -> bool:
    """Wait for a port to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
                s.connect(('127.0.0.1', port))
                return True
        except ConnectionRefusedError:
            time.sleep(0.1)
    return False


@pytest.fixture(scope="session")
def mosquitto_server():
    """
    Start a Mosquitto MQTT broker for testing.

    Yields:
        dict with 'host', 'port' keys
    """
    if shutil.which('mosquitto') is None:
        pytest.skip("mosquitto binary not installed")

    port = find_free_port()

    config_dir = tempfile.mkdtemp(prefix="mosquitto_test_")
    config_file = os.path.join(config_dir, "mosquitto.conf")

    with open(config_file, 'w') as f:
        f.write(f"""
listener {port} 127.0.0.1
allow_anonymous true
""")

    proc = subprocess.Popen(
        ['mosquitto', '-c', config_file],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE
    )

    if not wait_for_port(port, timeout=5.0):
        proc.kill()
        shutil.rmtree(config_dir, ignore_errors=True)
        pytest.skip("Could not start Mosquitto broker")

    yield {
        'host': '127.0.0.1',
        'port': port,
    }

    proc.terminate()
    try:
        proc.wait(timeout=2)
    except subprocess.TimeoutExpired:
        proc.kill()
    shutil.rmtree(config_dir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Fake paramiko objects
# ---------------------------------------------------------------------------

class FakeChannel:
    """
    Channel returning canned output; ``hang`` keeps it running forever.

    ``stdout`` may be a list of chunks, delivered one per read.
    ``stdin_blocked`` makes the remote side never accept input.
    """

    def __init__(self, stdout: Union[bytes, List[bytes]] = b"", stderr: bytes = b"",
                 exit_code: int = 0, hang: bool = False, stdin_blocked: bool = False):
        self._stdout = list(stdout) if isinstance(stdout, list) else ([stdout] if stdout else [])
        self._stderr = [stderr] if stderr else []
        self.exit_code = exit_code
        self.hang = hang
        self.stdin_blocked = stdin_blocked
        self.command: Optional[str] = None
        self.stdin = b""
        self.write_shut = False
        self.closed = False

    def exec_command(self, command: str) -> None:
        self.command = command

    def send_ready(self) -> bool:
        return not self.stdin_blocked and not self.closed

    def send(self, data: bytes) -> int:
        self.stdin += bytes(data)
        return len(data)

    def shutdown_write(self) -> None:
        self.write_shut = True

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, size: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        # A process reading stdin finishes only after EOF
        return not self.hang and not self.closed and (self.write_shut or not self.stdin)

    def recv_exit_status(self) -> int:
        return self.exit_code

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, world: "FakeSSHWorld"):
        self.world = world
        self.active = True
        self.keepalive = None
        self.channels: List[FakeChannel] = []

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def open_session(self) -> FakeChannel:
        if not self.active:
            raise paramiko.SSHException("transport closed")
        channel = self.world.next_channel()
        self.channels.append(channel)
        return channel


class FakeSSHClient:
    def __init__(self, world: "FakeSSHWorld"):
        self.world = world
        self.transport: Optional[FakeTransport] = None
        self.connect_kwargs: Dict = {}
        self.closed = False

    def set_missing_host_key_policy(self, policy) -> None:
        pass

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        self.world.dialed.append(kwargs['hostname'])
        error = self.world.failing.get(kwargs['hostname'])
        if error is not None:
            raise error
        self.transport = FakeTransport(self.world)

    def get_transport(self) -> Optional[FakeTransport]:
        return self.transport

    def close(self) -> None:
        self.closed = True
        if self.transport is not None:
            self.transport.active = False


class FakeSSHWorld:
    """
    Builds FakeSSHClients and scripts what they do.

    Example:
        world.fail("100.64.0.5")
        world.queue(FakeChannel(stdout=b"ok\\n"))
        manager = ConnectionManager(creds, client_factory=world.client_factory)
    """

    def __init__(self):
        self.failing: Dict[str, Exception] = {}
        self.dialed: List[str] = []
        self.clients: List[FakeSSHClient] = []
        self._channels: List[FakeChannel] = []

    def fail(self, address: str, error: Optional[Exception] = None) -> None:
        self.failing[address] = error or OSError("Connection refused")

    def queue(self, *channels: FakeChannel) -> None:
        self._channels.extend(channels)

    def next_channel(self) -> FakeChannel:
        if self._channels:
            return self._channels.pop(0)
        return FakeChannel()

    def client_factory(self) -> FakeSSHClient:
        client = FakeSSHClient(self)
        self.clients.append(client)
        return client


class NoKeyResolver:
    """Credential resolver for hosts authenticated by agent-less default keys."""

    def get_private_key(self, host) -> Optional[str]:
        return None


@pytest.fixture
def ssh_world() -> FakeSSHWorld:
    return FakeSSHWorld()


@pytest.fixture
def no_key_resolver() -> NoKeyResolver:
    return NoKeyResolver()


@pytest.fixture
def fake_channel():
    """The FakeChannel class, for scripting command output."""
    return FakeChannel


# ---------------------------------------------------------------------------
# Fake command executor
# ---------------------------------------------------------------------------

class FakeExecutor:
    """
    Scripted stand-in for CommandExecutor.

    Rules match on a substring of the command (and optionally the host id);
    the most recently added matching rule wins. Unmatched commands succeed
    with empty output.
    """

    def __init__(self):
        self.rules: List[Dict] = []
        self.calls: List[Dict] = []

    def on(self, match: str, stdout: str = "", stderr: str = "", exit_code: int = 0,
           host_id: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.rules.insert(0, {
            'match': match, 'host_id': host_id, 'stdout': stdout,
            'stderr': stderr, 'exit_code': exit_code, 'error': error,
        })

    def commands(self, host_id: Optional[str] = None) -> List[str]:
        return [c['command'] for c in self.calls if host_id is None or c['host_id'] == host_id]

    def run(self, host, command, timeout=None, allow_failure=False, stdin=None) -> CommandResult:
        self.calls.append({
            'host_id': host.id, 'command': command, 'timeout': timeout,
            'allow_failure': allow_failure, 'stdin': stdin,
        })
        for rule in self.rules:
            if rule['match'] not in command:
                continue
            if rule['host_id'] is not None and rule['host_id'] != host.id:
                continue
            if rule['error'] is not None:
                raise rule['error']
            result = CommandResult(command, rule['stdout'], rule['stderr'], rule['exit_code'])
            if result.exit_code != 0 and not allow_failure:
                raise CommandFailure(host.id, result)
            return result
        return CommandResult(command, "", "", 0)

    def run_long(self, host, command, **kwargs) -> CommandResult:
        return self.run(host, command, **kwargs)


class FakeConnections:
    """Records session invalidations requested by the synchronizer."""

    def __init__(self):
        self.invalidated: List[tuple] = []

    def invalidate(self, host_id: str, reason: str = "invalidated") -> None:
        self.invalidated.append((host_id, reason))


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_connections() -> FakeConnections:
    return FakeConnections()
