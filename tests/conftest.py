"""Pytest fixtures and fakes for sshvault tests."""

import asyncio
import os
from contextlib import contextmanager

import asyncssh
import pytest

from sshvault.known_hosts import KnownHostsFile
from sshvault.models import ConnectionParameters, LoginRecord


# ==================== Keys & records ====================


@pytest.fixture(scope="session")
def host_key():
    return asyncssh.generate_private_key("ssh-ed25519").convert_to_public()


@pytest.fixture(scope="session")
def other_host_key():
    """A different key of the same type as `host_key`."""
    return asyncssh.generate_private_key("ssh-ed25519").convert_to_public()


@pytest.fixture(scope="session")
def ecdsa_host_key():
    return asyncssh.generate_private_key("ecdsa-sha2-nistp256").convert_to_public()


def make_record(username, password="secret", uri="ssh://10.0.0.5", record_id=None):
    return LoginRecord(
        id=record_id or f"id-{username}",
        username=username,
        password=password,
        uris=[uri] if uri else [],
    )


@pytest.fixture
def params():
    return ConnectionParameters(host="10.0.0.5", port=22, username="alice", password="p1")


@pytest.fixture
def ledger(tmp_path):
    return KnownHostsFile(tmp_path / ".ssh" / "known_hosts")


class Answers:
    """Scripted answers for the host key confirmation prompt."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if not self.answers:
            raise EOFError
        return self.answers.pop(0)


# ==================== Session fakes ====================


class FakeTerminal:
    """Stands in for LocalTerminal: a pipe for stdin, buffers for output."""

    def __init__(self, columns=120, rows=40):
        self.stdin_fd, self.stdin_writer = os.pipe()
        self.columns = columns
        self.rows = rows
        self.out = bytearray()
        self.err = bytearray()
        self.raw_entered = 0
        self.raw_restored = 0

    def size(self):
        return self.columns, self.rows

    @contextmanager
    def raw(self):
        self.raw_entered += 1
        try:
            yield
        finally:
            self.raw_restored += 1

    def write_stdout(self, data):
        self.out += data

    def write_stderr(self, data):
        self.err += data

    def close(self):
        os.close(self.stdin_fd)
        os.close(self.stdin_writer)


class FakeReader:
    def __init__(self):
        self._queue = asyncio.Queue()

    def feed(self, data):
        self._queue.put_nowait(data)

    def feed_eof(self):
        self._queue.put_nowait(b"")

    async def read(self, n=-1):
        return await self._queue.get()


class FakeWriter:
    def __init__(self):
        self.data = bytearray()
        self.eof = False

    def write(self, data):
        self.data += data

    def write_eof(self):
        self.eof = True


class FakeProcess:
    def __init__(self):
        self.stdout = FakeReader()
        self.stderr = FakeReader()
        self.stdin = FakeWriter()
        self.exit_status = None
        self.resizes = []
        self._closed = asyncio.Event()

    def finish(self, status):
        self.exit_status = status
        self.lose_connection()

    def lose_connection(self):
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._closed.set()

    async def wait_closed(self):
        await self._closed.wait()

    def change_terminal_size(self, width, height):
        self.resizes.append((width, height))


class FakeConnection:
    def __init__(self, process):
        self.process = process
        self.close_calls = 0
        self.create_process_kwargs = None

    async def create_process(self, **kwargs):
        self.create_process_kwargs = kwargs
        return self.process

    def close(self):
        self.close_calls += 1
        self.process.lose_connection()


def fake_connect(conn, before_return=None):
    """Builds an asyncssh.connect replacement that drives the client callbacks."""

    async def _connect(host, **kwargs):
        client = kwargs["client_factory"]()
        client.connection_made(None)
        if before_return is not None:
            before_return(client, host, kwargs)
        return conn

    return _connect


async def wait_for_state(manager, state, timeout=2.0):
    async def _poll():
        while manager.state != state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def fake_terminal():
    terminal = FakeTerminal()
    yield terminal
    terminal.close()
