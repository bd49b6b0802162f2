"""
Reading and appending OpenSSH known_hosts files.

Matching (plain, wildcard, negated and hashed host patterns, @revoked and
@cert-authority markers) is done by asyncssh. This module only adds the
append path, which never rewrites existing lines.
"""

import logging
import os
from pathlib import Path
from typing import NamedTuple, Optional, Sequence

import asyncssh

from .models import KnownHostEntry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22


def default_known_hosts_path() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def normalize_host(host: str, port: int = DEFAULT_PORT) -> str:
    """Returns the name OpenSSH stores for a host: ``host`` or ``[host]:port``."""
    host = host.lower()
    if port == DEFAULT_PORT:
        return host
    return f"[{host}]:{port}"


class KnownHostKeys(NamedTuple):
    """Keys a known_hosts file holds for one host."""

    host_keys: Sequence[asyncssh.SSHKey]
    revoked_keys: Sequence[asyncssh.SSHKey]


class KnownHostsFile:
    """A known_hosts ledger on disk."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else default_known_hosts_path()

    def load(self) -> asyncssh.SSHKnownHosts:
        """
        Loads the file into asyncssh. Lines asyncssh refuses are skipped one
        by one, so a single bad line doesn't hide the rest of the file.
        """
        known_hosts = asyncssh.SSHKnownHosts()
        if not self.path.exists():
            return known_hosts
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                try:
                    known_hosts.load(line)
                except ValueError as e:
                    logger.debug("%s:%d: skipping malformed line: %s", self.path, lineno, e)
        return known_hosts

    def match(self, host: str, port: int = DEFAULT_PORT) -> KnownHostKeys:
        """Returns the trusted and revoked keys recorded for a host."""
        host_keys, _, revoked_keys, *_ = self.load().match(
            host.lower(), "", None if port == DEFAULT_PORT else port
        )
        return KnownHostKeys(host_keys=host_keys, revoked_keys=revoked_keys)

    def append(self, hostname: str, key_type: str, key_data: str) -> KnownHostEntry:
        """Appends one entry, creating ~/.ssh and the file if needed."""
        entry = KnownHostEntry(hostnames=hostname, key_type=key_type, key_data=key_data)

        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        needs_newline = False
        if self.path.exists() and self.path.stat().st_size > 0:
            with open(self.path, "rb") as f:
                f.seek(-1, os.SEEK_END)
                needs_newline = f.read(1) != b"\n"

        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            if needs_newline:
                f.write("\n")
            f.write(entry.to_line() + "\n")
            f.flush()
            os.fsync(f.fileno())

        logger.info("Added host %s to %s", hostname, self.path)
        return entry
