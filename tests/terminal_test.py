import fcntl
import io
import os
import struct

import pytest

from sshvault.terminal import LocalTerminal

termios = pytest.importorskip("termios")

pytestmark = pytest.mark.unit


@pytest.fixture
def pty_terminal():
    master, slave = os.openpty()
    terminal = LocalTerminal(stdin_fd=slave, stdout=io.BytesIO(), stderr=io.BytesIO())
    yield terminal
    os.close(slave)
    os.close(master)


def _is_raw(attrs):
    lflag = attrs[3]
    return not lflag & (termios.ICANON | termios.ECHO | termios.ISIG)


def test_pty_is_a_tty(pty_terminal):
    assert pty_terminal.is_tty()


def test_raw_mode_is_restored_on_exit(pty_terminal):
    before = termios.tcgetattr(pty_terminal.stdin_fd)
    assert not _is_raw(before)

    with pty_terminal.raw():
        assert _is_raw(termios.tcgetattr(pty_terminal.stdin_fd))

    assert termios.tcgetattr(pty_terminal.stdin_fd) == before


def test_raw_mode_is_restored_on_error(pty_terminal):
    before = termios.tcgetattr(pty_terminal.stdin_fd)

    with pytest.raises(RuntimeError, match="connection dropped"):
        with pty_terminal.raw():
            assert _is_raw(termios.tcgetattr(pty_terminal.stdin_fd))
            raise RuntimeError("connection dropped")

    assert termios.tcgetattr(pty_terminal.stdin_fd) == before


def test_raw_is_a_no_op_on_a_pipe():
    read_fd, write_fd = os.pipe()
    try:
        terminal = LocalTerminal(stdin_fd=read_fd, stdout=io.BytesIO(), stderr=io.BytesIO())
        assert not terminal.is_tty()
        with terminal.raw():
            pass
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_size_reads_window_size(pty_terminal):
    fcntl.ioctl(pty_terminal.stdin_fd, termios.TIOCSWINSZ, struct.pack("HHHH", 50, 200, 0, 0))

    assert pty_terminal.size() == (200, 50)


def test_writes_are_flushed_to_streams(pty_terminal):
    pty_terminal.write_stdout(b"out")
    pty_terminal.write_stderr(b"err")

    assert pty_terminal.stdout.getvalue() == b"out"
    assert pty_terminal.stderr.getvalue() == b"err"
