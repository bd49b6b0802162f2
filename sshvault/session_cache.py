import os
import tempfile
from pathlib import Path
from typing import Optional

from .errors import SessionCacheError


def default_session_path() -> Path:
    return Path(tempfile.gettempdir()) / "sshvault_session"


class SessionCache:
    """Keeps the vault session key in a single temp file between invocations."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_session_path()

    def load(self) -> str:
        """Returns the cached key, or "" when nothing is cached."""
        if not self.path.exists():
            return ""
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise SessionCacheError(f"Failed reading session file {self.path}: {e}")

    def save(self, session_key: str) -> None:
        """Writes the key atomically, readable by the owner only."""
        tmp_path = self.path.parent / f"{self.path.name}.tmp"
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(session_key)
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise SessionCacheError(f"Failed writing session file {self.path}: {e}")

    def discard(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise SessionCacheError(f"Error removing stored session {self.path}: {e}")
