"""
Bitwarden CLI (`bw`) boundary: session handling and login lookup.

Every call goes through `subprocess.run` with an argument list; secrets are
handed to `bw` through the child environment, never on the command line.
"""

import getpass
import json
import logging
import os
import shutil
import subprocess
from typing import Callable, Dict, List, Optional

from .errors import (
    InvalidMasterPassword,
    VaultCommandError,
    VaultLocked,
    VaultParseError,
    VaultUnavailable,
)
from .models import ConnectionParameters, LoginRecord
from .resolver import resolve, search_token
from .session_cache import SessionCache

logger = logging.getLogger(__name__)

SESSION_ENV = "BW_SESSION"
PASSWORD_ENV = "SSHVAULT_BW_PASSWORD"
MASTER_PASSWORD_PROMPT = "? Master password: [input is hidden] "

_LOCKED_MARKERS = (
    "you are not logged in",
    "vault is locked",
    "session key is invalid",
    "master password is required",
)


def _classify_failure(args: List[str], returncode: int, stderr: str) -> Exception:
    lowered = stderr.lower()
    if "invalid master password" in lowered:
        return InvalidMasterPassword()
    if any(marker in lowered for marker in _LOCKED_MARKERS):
        return VaultLocked(f"❌ Your vault is locked or the session expired: {stderr.strip()}")
    return VaultCommandError(args, returncode, stderr)


class Vault:
    """Runs `bw` commands on behalf of the CLI."""

    def __init__(
        self,
        bw_bin: str = "bw",
        cache: Optional[SessionCache] = None,
        ask_password: Optional[Callable[[str], str]] = None,
    ):
        self.bw_bin = bw_bin
        self.cache = cache or SessionCache()
        self._ask_password = ask_password or getpass.getpass

    def check_executable(self) -> str:
        path = shutil.which(self.bw_bin)
        if path is None:
            raise VaultUnavailable(f"❌ Bitwarden CLI executable '{self.bw_bin}' not found on PATH")
        return path

    def _run(
        self,
        args: List[str],
        session_key: str = "",
        extra_env: Optional[Dict[str, str]] = None,
    ) -> str:
        env = os.environ.copy()
        if session_key:
            env[SESSION_ENV] = session_key
        if extra_env:
            env.update(extra_env)

        cmd = [self.bw_bin] + args
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise VaultUnavailable(f"❌ Bitwarden CLI executable '{self.bw_bin}' not found: {e}")

        if result.returncode != 0:
            raise _classify_failure(cmd, result.returncode, result.stderr or "")
        return result.stdout

    def unlock(self, master_password: str) -> str:
        """Unlocks the vault and returns the new session key."""
        output = self._run(
            ["unlock", "--raw", "--passwordenv", PASSWORD_ENV],
            extra_env={PASSWORD_ENV: master_password},
        )
        session_key = output.strip()
        if not session_key:
            raise VaultCommandError([self.bw_bin, "unlock"], 0, "no session key returned")
        return session_key

    def lock(self) -> None:
        self._run(["lock"])

    def sync(self) -> None:
        self._run(["sync", "--nointeraction"], session_key=self.current_session())

    def current_session(self) -> str:
        """The exported BW_SESSION if set, else the cached key, else ""."""
        return os.environ.get(SESSION_ENV) or self.cache.load()

    def ensure_session(self) -> str:
        """
        Returns a usable session key, prompting for the master password only
        when neither an exported nor a cached session exists.
        """
        session_key = self.current_session()
        if session_key:
            return session_key
        return self.unlock_interactive()

    def unlock_interactive(self) -> str:
        """Prompts for the master password, unlocks and caches the session key."""
        master_password = self._ask_password(MASTER_PASSWORD_PROMPT)
        session_key = self.unlock(master_password)
        self.cache.save(session_key)
        logger.info("Vault unlocked, session cached at %s", self.cache.path)
        return session_key

    def list_logins(self, host: str, session_key: str) -> List[LoginRecord]:
        output = self._run(
            ["list", "items", "--search", search_token(host), "--nointeraction"],
            session_key=session_key,
        )
        try:
            items = json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise VaultParseError(f"❌ Could not parse vault items: {e}")
        if not isinstance(items, list):
            raise VaultParseError("❌ Unexpected vault output: expected a list of items")

        records = [LoginRecord.from_vault_item(item) for item in items if isinstance(item, dict)]
        logger.debug("Vault returned %d item(s) for %s", len(records), search_token(host))
        return records

    def find_credentials(
        self,
        host: str,
        preferred_user: str = "",
        port: Optional[int] = None,
        host_key_check: bool = True,
    ) -> ConnectionParameters:
        """Looks up the host in the vault and resolves a single credential."""
        session_key = self.ensure_session()
        try:
            records = self.list_logins(host, session_key)
        except VaultLocked:
            if os.environ.get(SESSION_ENV):
                raise
            logger.info("Cached vault session is no longer valid, unlocking again")
            self.cache.discard()
            session_key = self.ensure_session()
            records = self.list_logins(host, session_key)
        return resolve(records, host, preferred_user, port=port, host_key_check=host_key_check)
