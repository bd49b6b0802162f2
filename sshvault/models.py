from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import SSHVaultError


class LoginRecord(BaseModel):
    """A vault login that may apply to the requested host."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str = ""
    password: str = Field(default="", repr=False)
    uris: List[str] = Field(default_factory=list)

    @classmethod
    def from_vault_item(cls, item: Dict[str, Any]) -> "LoginRecord":
        """Build a record from one item of `bw list items` output."""
        login = item.get("login") or {}
        uris = [u.get("uri") for u in login.get("uris") or [] if u.get("uri")]
        return cls(
            id=item.get("id", ""),
            username=login.get("username") or "",
            password=login.get("password") or "",
            uris=uris,
        )


class ConnectionParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 22
    username: str
    password: str = Field(repr=False)
    host_key_check: bool = True

    @property
    def target_address(self) -> str:
        return f"{self.host}:{self.port}"


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    ACCEPT_AND_REMEMBER = "accept_and_remember"


class TrustDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    verdict: Verdict
    reason: str = ""
    conflict: bool = False
    interrupted: bool = False

    @classmethod
    def accept(cls) -> "TrustDecision":
        return cls(verdict=Verdict.ACCEPT)

    @classmethod
    def accept_and_remember(cls) -> "TrustDecision":
        return cls(verdict=Verdict.ACCEPT_AND_REMEMBER)

    @classmethod
    def reject(cls, reason: str, conflict: bool = False, interrupted: bool = False) -> "TrustDecision":
        return cls(verdict=Verdict.REJECT, reason=reason, conflict=conflict, interrupted=interrupted)

    @property
    def accepted(self) -> bool:
        return self.verdict != Verdict.REJECT


class KnownHostEntry(BaseModel):
    """One line written to an OpenSSH known_hosts file."""

    hostnames: str
    key_type: str
    key_data: str
    comment: str = ""

    def to_line(self) -> str:
        parts = [self.hostnames, self.key_type, self.key_data]
        if self.comment:
            parts.append(self.comment)
        return " ".join(parts)


class SessionState(str, Enum):
    IDLE = "idle"
    DIALING = "dialing"
    AUTHENTICATING = "authenticating"
    PTY_REQUESTED = "pty_requested"
    STREAMING = "streaming"
    CLOSED = "closed"
    FAILED = "failed"


class SessionOptions(BaseModel):
    """How the session transport is set up."""

    transport: Literal["asyncssh"] = "asyncssh"
    connect_timeout: float = Field(default=5.0, gt=0)
    term_type: str = "xterm-256color"
    clean_exit_statuses: FrozenSet[int] = frozenset({0, 130})


class SessionOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: SessionState
    exit_status: Optional[int] = None
    error: Optional[SSHVaultError] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.state == SessionState.CLOSED
