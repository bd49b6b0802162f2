from typing import List, Optional


class SSHVaultError(Exception):
    """Base class for all sshvault errors."""


# Credential resolution


class ResolutionError(SSHVaultError):
    """No single credential could be chosen for a host."""


class NoCredentials(ResolutionError):
    def __init__(self, host: str):
        self.host = host
        super().__init__(f"❌ No credentials found for host {host} in your vault")


class NoMatchingUser(ResolutionError):
    def __init__(self, host: str, username: str):
        self.host = host
        self.username = username
        super().__init__(f"❌ No credentials for user '{username}' found for host {host}")


class AmbiguousCredentials(ResolutionError):
    def __init__(self, host: str, candidates: List[str]):
        self.host = host
        self.candidates = list(candidates)
        super().__init__(
            f"❌ Found multiple users for host {host}: {', '.join(self.candidates)}\n"
            "Choose one with the user flag (-u or --user)"
        )


# Host identity


class TrustError(SSHVaultError):
    """The remote host identity was not trusted."""

    def __init__(self, host: str, reason: str):
        self.host = host
        self.reason = reason
        super().__init__(reason)


class UntrustedHost(TrustError):
    pass


class ConflictingHostKey(TrustError):
    pass


# Session lifecycle


class SessionError(SSHVaultError):
    """Failure to establish or keep an interactive session."""


class ConnectError(SessionError):
    pass


class ConnectTimeout(ConnectError):
    pass


class AuthFailure(SessionError):
    pass


class PtyFailure(SessionError):
    pass


class TransportFailure(SessionError):
    pass


class RemoteExitStatus(TransportFailure):
    def __init__(self, status: Optional[int]):
        self.status = status
        super().__init__(f"Remote shell exited with status {status}")


# Vault boundary


class VaultError(SSHVaultError):
    pass


class VaultUnavailable(VaultError):
    pass


class InvalidMasterPassword(VaultError):
    def __init__(self):
        super().__init__("❌ Invalid master password")


class VaultLocked(VaultError):
    """The vault has no valid session (locked, logged out or expired key)."""


class VaultCommandError(VaultError):
    def __init__(self, args: List[str], returncode: int, stderr: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        super().__init__(f"❌ '{' '.join(self.args_list)}' failed (rc={returncode}): {detail}")


class VaultParseError(VaultError):
    pass


class SessionCacheError(SSHVaultError):
    pass


class ConfigError(SSHVaultError):
    pass
