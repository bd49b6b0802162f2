import logging
import os
import shutil
import sys
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

try:
    import termios
    import tty
except ImportError:  # Windows
    termios = None
    tty = None


class LocalTerminal:
    """The operator's terminal: stdin fd, binary stdout/stderr and tty modes."""

    def __init__(
        self,
        stdin_fd: Optional[int] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ):
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout = stdout or sys.stdout.buffer
        self.stderr = stderr or sys.stderr.buffer

    def is_tty(self) -> bool:
        return os.isatty(self.stdin_fd)

    def size(self) -> Tuple[int, int]:
        """Returns (columns, rows), falling back to 80x24."""
        try:
            size = os.get_terminal_size(self.stdin_fd)
        except OSError:
            size = shutil.get_terminal_size()
        return size.columns, size.lines

    @contextmanager
    def raw(self) -> Iterator[None]:
        """Puts stdin in raw mode; the previous mode is restored on every exit path."""
        if termios is None or not self.is_tty():
            yield
            return

        old = termios.tcgetattr(self.stdin_fd)
        tty.setraw(self.stdin_fd)
        try:
            yield
        finally:
            termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, old)
            logger.debug("Restored terminal mode on fd %d", self.stdin_fd)

    def write_stdout(self, data: bytes) -> None:
        self.stdout.write(data)
        self.stdout.flush()

    def write_stderr(self, data: bytes) -> None:
        self.stderr.write(data)
        self.stderr.flush()
