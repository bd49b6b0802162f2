import base64
import logging
import signal
import sys
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TextIO, Tuple

import asyncssh

from .known_hosts import DEFAULT_PORT, KnownHostsFile, normalize_host
from .models import TrustDecision, Verdict

logger = logging.getLogger(__name__)

AskFn = Callable[[str], str]

CONFIRM_PROMPT = "Are you sure you want to continue connecting (yes/no)? "
UNKNOWN_KEY_REJECTED = "unknown host key not accepted"
CONFIRMATION_INTERRUPTED = "host key confirmation interrupted"


def describe_key(key: asyncssh.SSHKey) -> Tuple[str, str, str]:
    """Returns (key type, base64 key material, SHA256 fingerprint) of a public key."""
    key_type = key.get_algorithm()
    key_data = base64.b64encode(key.public_data).decode("ascii")
    return key_type, key_data, key.get_fingerprint("sha256")


def changed_key_message(hostname: str, key_type: str, fingerprint: str, path) -> str:
    return (
        f"REMOTE HOST IDENTIFICATION HAS CHANGED for host {hostname}! "
        f"Someone could be eavesdropping on you right now (man-in-the-middle attack), "
        f"or the host key has just been changed. The {key_type} key sent by the remote "
        f"host has fingerprint {fingerprint}. If you verified that this is not an issue, "
        f"remove the old key for {hostname} from {path} to proceed."
    )


@contextmanager
def keyboard_interrupts() -> Iterator[None]:
    """
    Lets Ctrl-C raise KeyboardInterrupt for the duration of the block.

    Event loop signal handlers only run between callbacks, so a prompt that
    blocks inside a callback would otherwise never see SIGINT.
    """
    installed = False
    try:
        previous = signal.signal(signal.SIGINT, signal.default_int_handler)
        installed = True
    except ValueError:
        # only the main thread may change signal handlers
        previous = None
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous if previous is not None else signal.SIG_DFL)


class TrustStore:
    """
    Trust-on-first-use host key policy backed by a known_hosts ledger.

    Unknown hosts are confirmed interactively and remembered. A known host
    presenting a different key of the same type is always rejected, without
    a prompt, and the ledger is left untouched.
    """

    def __init__(
        self,
        ledger: Optional[KnownHostsFile] = None,
        enabled: bool = True,
        ask: Optional[AskFn] = None,
        out: Optional[TextIO] = None,
    ):
        self.ledger = ledger or KnownHostsFile()
        self.enabled = enabled
        self._ask = ask or input
        self._out = out

    def _print(self, message: str) -> None:
        print(message, file=self._out or sys.stdout, flush=True)

    def _confirm(self) -> bool:
        while True:
            try:
                answer = self._ask(CONFIRM_PROMPT)
            except EOFError:
                return False
            answer = answer.strip().lower()
            if answer == "yes":
                return True
            if answer == "no":
                return False
            self._print("Please type 'yes' or 'no'.")

    def decide(self, host: str, key: asyncssh.SSHKey, port: int = DEFAULT_PORT) -> TrustDecision:
        """Decides whether `key` may identify `host` on `port`."""
        hostname = normalize_host(host, port)
        if not self.enabled:
            logger.warning(
                "Host key checking is DISABLED: accepting key for %s without verification", hostname
            )
            return TrustDecision.accept()

        key_type, _, fingerprint = describe_key(key)
        known = self.ledger.match(host, port)

        if key in known.revoked_keys:
            reason = f"The {key_type} key for {hostname} is marked as revoked in {self.ledger.path}"
            logger.error(reason)
            return TrustDecision.reject(reason)

        if key in known.host_keys:
            logger.debug("Host key for %s matches %s", hostname, self.ledger.path)
            return TrustDecision.accept()
        if any(k.get_algorithm() == key_type for k in known.host_keys):
            reason = changed_key_message(hostname, key_type, fingerprint, self.ledger.path)
            logger.error(reason)
            return TrustDecision.reject(reason, conflict=True)

        self._print(f"The authenticity of host '{hostname}' can't be established.")
        self._print(f"{key_type} key fingerprint is {fingerprint}.")
        if known.host_keys:
            other_types = ", ".join(sorted({k.get_algorithm() for k in known.host_keys}))
            self._print(f"This host is already known with other key types: {other_types}.")
        if not self._confirm():
            logger.info("Host key for %s not accepted", hostname)
            return TrustDecision.reject(UNKNOWN_KEY_REJECTED)
        return TrustDecision.accept_and_remember()

    def remember(self, host: str, key: asyncssh.SSHKey, port: int = DEFAULT_PORT) -> None:
        key_type, key_data, _ = describe_key(key)
        self.ledger.append(normalize_host(host, port), key_type, key_data)

    def verify(self, host: str, key: asyncssh.SSHKey, port: int = DEFAULT_PORT) -> TrustDecision:
        """`decide`, then persist the key if the operator confirmed it."""
        decision = self.decide(host, key, port)
        if decision.verdict == Verdict.ACCEPT_AND_REMEMBER:
            self.remember(host, key, port)
        return decision

    def policy_client(
        self,
        on_connected: Optional[Callable[[], None]] = None,
        on_interrupted: Optional[Callable[[], None]] = None,
    ) -> "TrustPolicyClient":
        return TrustPolicyClient(self, on_connected=on_connected, on_interrupted=on_interrupted)


class TrustPolicyClient(asyncssh.SSHClient):
    """asyncssh client that routes host key validation through a TrustStore."""

    def __init__(
        self,
        store: TrustStore,
        on_connected: Optional[Callable[[], None]] = None,
        on_interrupted: Optional[Callable[[], None]] = None,
    ):
        super().__init__()
        self.store = store
        self.decision: Optional[TrustDecision] = None
        self.hostname: Optional[str] = None
        self._on_connected = on_connected
        self._on_interrupted = on_interrupted

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        if self._on_connected:
            self._on_connected()

    def validate_host_public_key(self, host: str, addr: str, port: int, key: asyncssh.SSHKey) -> bool:
        self.hostname = normalize_host(host, port)
        try:
            with keyboard_interrupts():
                self.decision = self.store.verify(host, key, port)
        except KeyboardInterrupt:
            logger.info("Host key confirmation for %s interrupted", self.hostname)
            self.decision = TrustDecision.reject(CONFIRMATION_INTERRUPTED, interrupted=True)
            if self._on_interrupted:
                self._on_interrupted()
        except OSError as e:
            logger.error("Failed to add host %s to known hosts: %s", self.hostname, e)
            self.decision = TrustDecision.reject(f"Failed to record host key for {self.hostname}: {e}")
        return self.decision.accepted
