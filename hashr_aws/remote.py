"""
Remote command execution on the worker instance.

Every command gets its own SSH session: the session is opened, one command
runs, and the session is closed again whether the command succeeded or not.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import time
from types import TracebackType
from typing import Callable, List, Optional, Type

import paramiko

from .errors import RemoteConnectionError, RemoteExecutionError

logger = logging.getLogger(__name__)


class RemoteSession(ABC):
    """A single-command session against a host."""

    @abstractmethod
    def run(self, command: str) -> str:
        """
        Run one command.

        Args:
            command: Shell command to execute

        Returns:
            Standard output of the command

        Raises:
            RemoteExecutionError: If the command exits with a non-zero status
        """
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()


class RemoteExecutor(ABC):
    """Opens command sessions against worker hosts."""

    @abstractmethod
    def open(self, host: str) -> RemoteSession:
        """
        Open a session to a host.

        Raises:
            RemoteConnectionError: If the host cannot be reached
        """
        ...


def run_remote(executor: RemoteExecutor, host: str, command: str) -> str:
    """Open a session, run one command and close the session."""
    with executor.open(host) as session:
        return session.run(command)


@dataclass(frozen=True)
class SshCredentials:
    username: str
    key_filename: str


class _StreamBuffer:
    """
    Raw bytes of one channel stream.

    Chunks from recv can end in the middle of a line, so output is only
    split into lines once it is complete. Lines are logged as soon as their
    newline arrives.
    """

    def __init__(self, log: Callable[[str], None]):
        self.data = bytearray()
        self.log = log
        self._logged = 0

    def feed(self, chunk: bytes) -> None:
        self.data.extend(chunk)
        end = self.data.rfind(b'\n')
        if end >= self._logged:
            self._log_lines(self.data[self._logged:end])
            self._logged = end + 1

    def flush(self) -> None:
        self._log_lines(self.data[self._logged:])
        self._logged = len(self.data)

    def _log_lines(self, data: bytes) -> None:
        for line in data.decode('utf-8', errors='replace').splitlines():
            if line.strip():
                self.log(f"  {line.rstrip()}")

    def lines(self) -> List[str]:
        text = self.data.decode('utf-8', errors='replace')
        return [line.rstrip() for line in text.splitlines() if line.strip()]


def _drain(channel: paramiko.Channel, stderr: bool, buffer: _StreamBuffer) -> None:
    ready = channel.recv_stderr_ready if stderr else channel.recv_ready
    recv = channel.recv_stderr if stderr else channel.recv
    while ready():
        buffer.feed(recv(4096))


class SshSession(RemoteSession):
    """Session backed by a connected paramiko SSHClient."""

    def __init__(self, ssh_client: paramiko.SSHClient, host: str, stream_output: bool = False):
        self.ssh_client = ssh_client
        self.host = host
        self.stream_output = stream_output
        self._used = False

    def run(self, command: str) -> str:
        if self._used:
            raise RuntimeError("SSH session already ran a command")
        self._used = True

        logger.debug(f"Executing command on {self.host}: {command}")

        _, stdout_file, _ = self.ssh_client.exec_command(command, get_pty=False)
        channel = stdout_file.channel

        stdout = _StreamBuffer(logger.info if self.stream_output else logger.debug)
        stderr = _StreamBuffer(logger.debug)

        # Non-blocking reads of both streams so neither buffer fills up
        channel.setblocking(0)
        while not channel.exit_status_ready():
            _drain(channel, False, stdout)
            _drain(channel, True, stderr)
            time.sleep(0.1)

        _drain(channel, False, stdout)
        _drain(channel, True, stderr)
        stdout.flush()
        stderr.flush()

        exit_code = channel.recv_exit_status()
        if exit_code != 0:
            raise RemoteExecutionError(command, exit_code, '\n'.join(stderr.lines()))

        return '\n'.join(stdout.lines())

    def close(self) -> None:
        self.ssh_client.close()


class SshExecutor(RemoteExecutor):
    """
    Opens SSH sessions with paramiko.

    Args:
        credentials: Username and private key used for every session
        connect_attempts: Connection attempts before giving up
        retry_delay: Seconds between connection attempts
        stream_output: Log command output at info level instead of debug
    """

    def __init__(
        self,
        credentials: SshCredentials,
        connect_attempts: int = 3,
        retry_delay: float = 10,
        stream_output: bool = False,
    ):
        self.credentials = credentials
        self.connect_attempts = connect_attempts
        self.retry_delay = retry_delay
        self.stream_output = stream_output

    def open(self, host: str) -> SshSession:
        ssh_client = paramiko.SSHClient()
        ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        for attempt in range(1, self.connect_attempts + 1):
            try:
                ssh_client.connect(
                    hostname=host,
                    username=self.credentials.username,
                    key_filename=self.credentials.key_filename,
                    timeout=10,
                    banner_timeout=10,
                )
                ssh_client.get_transport().set_keepalive(30)
                return SshSession(ssh_client, host, stream_output=self.stream_output)
            except (paramiko.SSHException, OSError) as e:
                if attempt < self.connect_attempts:
                    logger.warning(f"SSH connection to {host} failed: {e}. Retrying in {self.retry_delay}s...")
                    time.sleep(self.retry_delay)
                else:
                    ssh_client.close()
                    raise RemoteConnectionError(
                        f"Unable to connect to {host} after {self.connect_attempts} attempts: {e}"
                    ) from e

        raise RemoteConnectionError(f"Unable to connect to {host}")
