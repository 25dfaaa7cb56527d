"""
Remote command execution over a host's SSH session.

Each command runs on its own channel with a hard deadline. Timeouts tear
down the whole session so the next command starts from a fresh
connection; the remote process itself may keep running.
"""
import codecs
import logging
import time
from typing import Callable, Iterator, List, Optional, Tuple, Union

import paramiko

from orchestrator.connection_manager import DIAL_ERRORS, ConnectionManager, HostConnectionError
from orchestrator.models import CommandResult, Host

logger = logging.getLogger(__name__)

RECV_BUFFER = 32768
PREFIX_LENGTH = 80


class CommandError(Exception):
    """Base class for command execution errors."""

    def __init__(self, host_id: str, command: str, message: str):
        super().__init__(message)
        self.host_id = host_id
        self.command = command


class CommandTimeoutError(CommandError):
    """The command did not finish within its deadline."""

    def __init__(self, host_id: str, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        super().__init__(
            host_id, command,
            f"Command timed out after {timeout:g}s on {host_id}: {command_prefix(command)}"
        )
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr


class CommandFailure(CommandError):
    """The command exited non-zero and failure was not allowed."""

    def __init__(self, host_id: str, result: CommandResult):
        detail = (result.stderr or result.stdout).strip()
        super().__init__(
            host_id, result.command,
            f"Command failed with exit code {result.exit_code} on {host_id}: "
            f"{command_prefix(result.command)}" + (f" ({detail[:500]})" if detail else "")
        )
        self.result = result

    @property
    def exit_code(self) -> Optional[int]:
        return self.result.exit_code

    @property
    def stderr(self) -> str:
        return self.result.stderr

    @property
    def stdout(self) -> str:
        return self.result.stdout


def command_prefix(command: str, length: int = PREFIX_LENGTH) -> str:
    """First line of a command, shortened for logs and error messages."""
    first_line = command.strip().splitlines()[0] if command.strip() else ""
    if len(first_line) > length:
        return first_line[:length - 3] + "..."
    return first_line


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


class CommandExecutor:
    """
    Runs commands on hosts through the ConnectionManager.

    Example:
        executor = CommandExecutor(connections)
        result = executor.run(host, "docker ps -a", timeout=30)
        print(result.stdout)
    """

    def __init__(
        self,
        connections: ConnectionManager,
        default_timeout: float = 30.0,
        long_timeout: float = 600.0,
        poll_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connections = connections
        self.default_timeout = default_timeout
        self.long_timeout = long_timeout
        self.poll_interval = poll_interval
        self.clock = clock

    def _open_channel(self, host: Host, command: str) -> paramiko.Channel:
        session = self.connections.acquire_session(host)
        try:
            transport = session.client.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException("transport is not active")
            channel = transport.open_session()
            channel.exec_command(command)
            return channel
        except DIAL_ERRORS as e:
            # The session is unusable; the next caller dials fresh
            self.connections.invalidate(host.id, reason="channel error")
            raise HostConnectionError(host.id, f"{type(e).__name__}: {e}")

    def run(
        self,
        host: Host,
        command: str,
        timeout: Optional[float] = None,
        allow_failure: bool = False,
        stdin: Optional[Union[bytes, str]] = None,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            host: Target host
            command: Shell command line (already quoted by the caller)
            timeout: Seconds before the command is abandoned (default: short timeout)
            allow_failure: Return non-zero exits instead of raising
            stdin: Payload written to the remote process before EOF

        Returns:
            CommandResult with the full stdout/stderr and exit code

        Raises:
            HostConnectionError: If no session could be established
            CommandTimeoutError: If the deadline passed (session invalidated)
            CommandFailure: If the exit code is non-zero and not allowed
        """
        timeout = self.default_timeout if timeout is None else timeout
        started = self.clock()
        deadline = started + timeout

        channel = self._open_channel(host, command)
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []

        pending = b""
        if stdin is not None:
            pending = stdin.encode("utf-8") if isinstance(stdin, str) else bytes(stdin)
        writing = stdin is not None

        try:
            while True:
                received = False
                if writing:
                    # Only write what the channel accepts without blocking
                    if pending and channel.send_ready():
                        sent = channel.send(pending[:RECV_BUFFER])
                        pending = pending[sent:]
                        received = True
                    if not pending:
                        channel.shutdown_write()
                        writing = False

                if channel.recv_ready():
                    stdout_chunks.append(channel.recv(RECV_BUFFER))
                    received = True
                if channel.recv_stderr_ready():
                    stderr_chunks.append(channel.recv_stderr(RECV_BUFFER))
                    received = True

                if (channel.exit_status_ready()
                        and not channel.recv_ready()
                        and not channel.recv_stderr_ready()):
                    break

                if self.clock() >= deadline:
                    self._abandon(host, channel)
                    raise CommandTimeoutError(
                        host.id, command, timeout,
                        stdout=_decode(stdout_chunks), stderr=_decode(stderr_chunks)
                    )

                if not received:
                    time.sleep(self.poll_interval)

            exit_code = channel.recv_exit_status()
        except DIAL_ERRORS as e:
            self.connections.invalidate(host.id, reason="channel error")
            raise HostConnectionError(host.id, f"{type(e).__name__}: {e}")
        finally:
            channel.close()

        result = CommandResult(
            command=command,
            stdout=_decode(stdout_chunks),
            stderr=_decode(stderr_chunks),
            exit_code=exit_code,
            duration_ms=int((self.clock() - started) * 1000),
        )
        logger.debug(
            f"Command on {host.id} exited {exit_code} in {result.duration_ms}ms: "
            f"{command_prefix(command)}"
        )

        if exit_code != 0 and not allow_failure:
            raise CommandFailure(host.id, result)
        return result

    def run_long(self, host: Host, command: str, **kwargs) -> CommandResult:
        """Run with the long-operation timeout (commit, pull, image removal)."""
        kwargs.setdefault("timeout", self.long_timeout)
        return self.run(host, command, **kwargs)

    def _abandon(self, host: Host, channel: paramiko.Channel) -> None:
        logger.warning(f"Abandoning command on {host.id}; invalidating session")
        channel.close()
        self.connections.invalidate(host.id, reason="command timeout")

    def stream(self, host: Host, command: str, timeout: Optional[float] = None) -> "CommandStream":
        """
        Start a command and return an iterator over its output.

        Use for long-running output such as ``docker logs --follow``. The
        stream may be cancelled at any time from another thread.
        """
        channel = self._open_channel(host, command)
        return CommandStream(self, host, command, channel, timeout)


class CommandStream:
    """
    Cancellable iterator over the output of one running command.

    Yields ``("stdout" | "stderr", text)`` tuples. After the iterator is
    exhausted ``exit_code`` holds the remote exit status (None when
    cancelled). A passed deadline raises CommandTimeoutError from the
    iterator.
    """

    def __init__(self, executor: CommandExecutor, host: Host, command: str,
                 channel: paramiko.Channel, timeout: Optional[float]):
        self._executor = executor
        self._host = host
        self._channel = channel
        self.command = command
        self.timeout = timeout
        self.exit_code: Optional[int] = None
        self.cancelled = False
        self.finished = False

    def __enter__(self) -> "CommandStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.finished:
            self.cancel()

    def cancel(self) -> None:
        """Stop reading and tear down the host's session."""
        if self.finished:
            return
        self.cancelled = True
        self.finished = True
        self._channel.close()
        self._executor.connections.invalidate(self._host.id, reason="stream cancelled")

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        clock = self._executor.clock
        deadline = clock() + self.timeout if self.timeout is not None else None
        channel = self._channel
        decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

        while not self.cancelled:
            received = False
            if channel.recv_ready():
                data = channel.recv(RECV_BUFFER)
                received = True
                text = decoders["stdout"].decode(data)
                if text:
                    yield "stdout", text
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(RECV_BUFFER)
                received = True
                text = decoders["stderr"].decode(data)
                if text:
                    yield "stderr", text

            if self.cancelled:
                break

            if (channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()):
                for name, decoder in decoders.items():
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        yield name, tail
                self.exit_code = channel.recv_exit_status()
                self.finished = True
                channel.close()
                return

            if deadline is not None and clock() >= deadline:
                self.finished = True
                self._executor._abandon(self._host, channel)
                raise CommandTimeoutError(self._host.id, self.command, self.timeout)

            if not received:
                time.sleep(self._executor.poll_interval)
