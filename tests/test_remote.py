"""Tests for SSH command execution."""

from unittest.mock import MagicMock, patch

import paramiko
import pytest

from hashr_aws.errors import RemoteConnectionError, RemoteExecutionError
from hashr_aws.remote import SshCredentials, SshExecutor, SshSession, run_remote


def fake_channel(stdout=b'', stderr=b'', exit_code=0):
    """Channel that has already finished and has its output buffered."""
    channel = MagicMock()
    channel.exit_status_ready.return_value = True
    out = list(stdout) if isinstance(stdout, list) else ([stdout] if stdout else [])
    err = [stderr] if stderr else []
    channel.recv_ready.side_effect = lambda: bool(out)
    channel.recv.side_effect = lambda size: out.pop(0)
    channel.recv_stderr_ready.side_effect = lambda: bool(err)
    channel.recv_stderr.side_effect = lambda size: err.pop(0)
    channel.recv_exit_status.return_value = exit_code
    return channel


def fake_ssh_client(channel):
    ssh_client = MagicMock()
    stdout = MagicMock()
    stdout.channel = channel
    ssh_client.exec_command.return_value = (MagicMock(), stdout, MagicMock())
    return ssh_client


class TestSshSession:
    def test_returns_stdout(self):
        ssh_client = fake_ssh_client(fake_channel(stdout=b'/dev/sda\n/dev/sdi\n'))

        output = SshSession(ssh_client, 'worker').run('ls /dev/sd*')

        assert output == '/dev/sda\n/dev/sdi'
        ssh_client.exec_command.assert_called_once_with('ls /dev/sd*', get_pty=False)

    def test_line_split_across_chunks(self):
        channel = fake_channel(stdout=[b'/dev/sda\n/dev/s', b'dj\n'])

        output = SshSession(fake_ssh_client(channel), 'worker').run('ls /dev/sd*')

        assert output.splitlines() == ['/dev/sda', '/dev/sdj']

    def test_multibyte_character_split_across_chunks(self):
        text = 'caf\u00e9\n'.encode('utf-8')
        channel = fake_channel(stdout=[text[:4], text[4:]])

        output = SshSession(fake_ssh_client(channel), 'worker').run('echo')

        assert output == 'caf\u00e9'

    def test_non_zero_exit_raises(self):
        ssh_client = fake_ssh_client(fake_channel(stderr=b'No such file\n', exit_code=2))

        with pytest.raises(RemoteExecutionError) as exc_info:
            SshSession(ssh_client, 'worker').run('ls /data/img.done')

        assert exc_info.value.exit_code == 2
        assert 'No such file' in exc_info.value.stderr

    def test_single_use(self):
        session = SshSession(fake_ssh_client(fake_channel()), 'worker')
        session.run('true')

        with pytest.raises(RuntimeError):
            session.run('true')

    def test_context_manager_closes_on_error(self):
        ssh_client = fake_ssh_client(fake_channel(exit_code=1))

        with pytest.raises(RemoteExecutionError):
            with SshSession(ssh_client, 'worker') as session:
                session.run('false')

        ssh_client.close.assert_called_once()


class TestSshExecutor:
    @patch('hashr_aws.remote.paramiko.SSHClient')
    def test_open_connects_with_credentials(self, ssh_client_cls):
        executor = SshExecutor(SshCredentials('ec2-user', '/keys/hashr'))

        session = executor.open('worker.example.com')

        assert isinstance(session, SshSession)
        ssh_client_cls.return_value.connect.assert_called_once_with(
            hostname='worker.example.com',
            username='ec2-user',
            key_filename='/keys/hashr',
            timeout=10,
            banner_timeout=10,
        )

    @patch('hashr_aws.remote.time.sleep')
    @patch('hashr_aws.remote.paramiko.SSHClient')
    def test_retries_then_gives_up(self, ssh_client_cls, sleep):
        ssh_client = ssh_client_cls.return_value
        ssh_client.connect.side_effect = paramiko.SSHException('connection refused')
        executor = SshExecutor(SshCredentials('ec2-user', '/keys/hashr'), connect_attempts=3, retry_delay=5)

        with pytest.raises(RemoteConnectionError):
            executor.open('worker.example.com')

        assert ssh_client.connect.call_count == 3
        assert sleep.call_count == 2
        ssh_client.close.assert_called_once()

    @patch('hashr_aws.remote.time.sleep')
    @patch('hashr_aws.remote.paramiko.SSHClient')
    def test_recovers_after_transient_failure(self, ssh_client_cls, sleep):
        ssh_client = ssh_client_cls.return_value
        ssh_client.connect.side_effect = [OSError('timed out'), None]
        executor = SshExecutor(SshCredentials('ec2-user', '/keys/hashr'))

        executor.open('worker.example.com')

        assert ssh_client.connect.call_count == 2

    @patch('hashr_aws.remote.paramiko.SSHClient')
    def test_run_remote_closes_session(self, ssh_client_cls):
        ssh_client = ssh_client_cls.return_value
        stdout = MagicMock()
        stdout.channel = fake_channel(stdout=b'ok\n')
        ssh_client.exec_command.return_value = (MagicMock(), stdout, MagicMock())

        output = run_remote(SshExecutor(SshCredentials('ec2-user', '/keys/hashr')), 'worker', 'echo ok')

        assert output == 'ok'
        ssh_client.close.assert_called_once()
