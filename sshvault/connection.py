import asyncio
import logging
import os
import signal
import socket
from typing import Callable, List, Optional

import asyncssh

from .errors import (
    AuthFailure,
    ConflictingHostKey,
    ConnectError,
    ConnectTimeout,
    PtyFailure,
    RemoteExitStatus,
    SessionError,
    SSHVaultError,
    TransportFailure,
    TrustError,
    UntrustedHost,
)
from .models import ConnectionParameters, SessionOptions, SessionOutcome, SessionState
from .terminal import LocalTerminal
from .trust import TrustPolicyClient, TrustStore

logger = logging.getLogger(__name__)

# RFC 4254 section 8 terminal mode opcodes
PTY_ECHO = 53
PTY_OP_ISPEED = 128
PTY_OP_OSPEED = 129

TERM_MODES = {
    PTY_ECHO: 1,
    PTY_OP_ISPEED: 14400,
    PTY_OP_OSPEED: 14400,
}

READ_SIZE = 32768
DRAIN_TIMEOUT = 2.0

PRE_STREAMING = (
    SessionState.IDLE,
    SessionState.DIALING,
    SessionState.AUTHENTICATING,
    SessionState.PTY_REQUESTED,
)


class CancelToken:
    """A one-shot cancellation signal. Only the first trigger counts."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def trigger(self, reason: str) -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ConnectionManager:
    """Runs one interactive SSH session from dial to close."""

    def __init__(self, options: Optional[SessionOptions] = None, terminal: Optional[LocalTerminal] = None):
        self.options = options or SessionOptions()
        self.terminal = terminal or LocalTerminal()
        self.cancel_token = CancelToken()
        self.state = SessionState.IDLE
        self.transitions: List[SessionState] = [SessionState.IDLE]
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._interrupted = False
        self._stdin_attached = False
        self._signals: List[int] = []

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.debug("Session state %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def _get_error(
        self,
        params: ConnectionParameters,
        error: Exception,
        client: Optional[TrustPolicyClient],
    ) -> SSHVaultError:
        """Maps a dial/auth exception to a user-facing sshvault error."""
        address = params.target_address

        if isinstance(error, asyncssh.HostKeyNotVerifiable):
            decision = client.decision if client else None
            hostname = (client.hostname if client else None) or params.host
            if decision is not None and decision.conflict:
                return ConflictingHostKey(hostname, decision.reason)
            reason = decision.reason if decision is not None and decision.reason else str(error)
            return UntrustedHost(hostname, f"❌ Host key for {hostname} not trusted: {reason}")

        if isinstance(error, asyncssh.PermissionDenied):
            return AuthFailure(f"❌ Authentication failed for {params.username}@{address}: Invalid password")

        # Checked before OSError: TimeoutError is an OSError on Python 3.11+
        if isinstance(error, asyncio.TimeoutError):
            return ConnectTimeout(
                f"❌ Connection to {address} timed out after {self.options.connect_timeout:g}s: "
                "Host may be unreachable or network is slow"
            )

        if isinstance(error, ConnectionRefusedError):
            return ConnectError(f"❌ Connection refused by {address}: SSH server may be down")

        if isinstance(error, OSError):
            error_str = str(error).lower()
            if "network is unreachable" in error_str or "no route to host" in error_str:
                return ConnectError(f"❌ Network unreachable for {address}: Check your network connection")
            return ConnectError(f"❌ Cannot connect to {address}: {error}")

        return TransportFailure(f"❌ SSH error while connecting to {address}: {error}")

    async def _open_socket(self, params: ConnectionParameters) -> socket.socket:
        """Opens the TCP connection, trying each resolved address in turn."""
        loop = asyncio.get_running_loop()
        addresses = await loop.getaddrinfo(params.host, params.port, type=socket.SOCK_STREAM)
        last_error: Optional[OSError] = None
        for family, sock_type, proto, _, address in addresses:
            sock = socket.socket(family, sock_type, proto)
            sock.setblocking(False)
            try:
                await loop.sock_connect(sock, address)
            except OSError as e:
                sock.close()
                last_error = e
                continue
            except asyncio.CancelledError:
                sock.close()
                raise
            return sock
        raise last_error or OSError(f"No address found for {params.host}")

    async def _dial(self, params: ConnectionParameters, trust_store: TrustStore) -> asyncssh.SSHClientConnection:
        client: Optional[TrustPolicyClient] = None

        def client_factory() -> TrustPolicyClient:
            nonlocal client
            client = trust_store.policy_client(
                on_connected=lambda: self._set_state(SessionState.AUTHENTICATING),
                on_interrupted=lambda: self._on_signal("SIGINT"),
            )
            return client

        self._set_state(SessionState.DIALING)
        logger.info("Connecting to %s as %s", params.target_address, params.username)
        # Only the TCP connect is bounded: the handshake may wait on the operator
        # confirming an unknown host key.
        try:
            sock = await asyncio.wait_for(self._open_socket(params), self.options.connect_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise self._get_error(params, e, None) from e

        try:
            conn = await asyncssh.connect(
                params.host,
                port=params.port,
                sock=sock,
                username=params.username,
                password=params.password,
                known_hosts=(),
                client_factory=client_factory,
                client_keys=None,
                agent_path=None,
            )
        except (asyncssh.Error, OSError) as e:
            sock.close()
            raise self._get_error(params, e, client) from e
        except asyncio.CancelledError:
            sock.close()
            raise

        self._conn = conn
        return conn

    async def _open_shell(self, conn: asyncssh.SSHClientConnection) -> asyncssh.SSHClientProcess:
        self._set_state(SessionState.PTY_REQUESTED)
        columns, rows = self.terminal.size()
        try:
            return await conn.create_process(
                term_type=self.options.term_type,
                term_size=(columns, rows),
                term_modes=TERM_MODES,
                request_pty="force",
                encoding=None,
            )
        except (asyncssh.Error, OSError) as e:
            raise PtyFailure(f"❌ Could not open an interactive terminal: {e}") from e

    async def _forward(self, reader: asyncssh.SSHReader, write: Callable[[bytes], None]) -> None:
        """Copies remote bytes to a local stream, in order, until EOF."""
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                write(data)
        except (asyncssh.Error, OSError) as e:
            logger.debug("Stream forwarding stopped: %s", e)

    def _on_stdin_ready(self, process: asyncssh.SSHClientProcess) -> None:
        try:
            data = os.read(self.terminal.stdin_fd, READ_SIZE)
        except OSError as e:
            logger.debug("Reading local stdin failed: %s", e)
            data = b""

        try:
            if data:
                process.stdin.write(data)
            else:
                self._detach_stdin()
                process.stdin.write_eof()
        except (asyncssh.Error, OSError) as e:
            logger.debug("Remote stdin closed: %s", e)
            self._detach_stdin()

    def _attach_stdin(self, process: asyncssh.SSHClientProcess) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_reader(self.terminal.stdin_fd, self._on_stdin_ready, process)
            self._stdin_attached = True
        except NotImplementedError:
            logger.warning("Forwarding local input is not supported on this platform")

    def _detach_stdin(self) -> None:
        if self._stdin_attached:
            self._stdin_attached = False
            asyncio.get_running_loop().remove_reader(self.terminal.stdin_fd)

    def _on_resize(self, process: asyncssh.SSHClientProcess) -> None:
        columns, rows = self.terminal.size()
        try:
            process.change_terminal_size(columns, rows)
        except (asyncssh.Error, OSError) as e:
            logger.debug("Resize not forwarded: %s", e)

    def _on_signal(self, signame: str) -> None:
        if self.cancel_token.trigger(f"received {signame}"):
            logger.info("Received %s, closing session", signame)
            self._interrupted = True
            self.close()
        else:
            logger.debug("Received %s, already closing", signame)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig.name)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Cannot watch %s on this platform", sig.name)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        while self._signals:
            loop.remove_signal_handler(self._signals.pop())

    def close(self) -> None:
        """Closes the transport. Safe to call any number of times."""
        conn, self._conn = self._conn, None
        if conn is not None:
            logger.debug("Closing connection")
            conn.close()

    async def _wait_exit(self, process: asyncssh.SSHClientProcess) -> None:
        try:
            await process.wait_closed()
        finally:
            self.cancel_token.trigger("remote session ended")

    async def _stream(self, process: asyncssh.SSHClientProcess) -> SessionOutcome:
        self._set_state(SessionState.STREAMING)
        loop = asyncio.get_running_loop()
        tasks = [
            asyncio.create_task(self._forward(process.stdout, self.terminal.write_stdout)),
            asyncio.create_task(self._forward(process.stderr, self.terminal.write_stderr)),
            asyncio.create_task(self._wait_exit(process)),
        ]
        winch = getattr(signal, "SIGWINCH", None)

        with self.terminal.raw():
            self._attach_stdin(process)
            if winch is not None:
                loop.add_signal_handler(winch, self._on_resize, process)
            try:
                await self.cancel_token.wait()
            finally:
                if winch is not None:
                    loop.remove_signal_handler(winch)
                self._detach_stdin()
                self.close()
                _, pending = await asyncio.wait(tasks, timeout=DRAIN_TIMEOUT)
                for task in pending:
                    task.cancel()

        if self._interrupted:
            self._set_state(SessionState.CLOSED)
            return SessionOutcome(state=SessionState.CLOSED, cancelled=True)

        status = process.exit_status
        if status is None:
            self._set_state(SessionState.FAILED)
            return SessionOutcome(
                state=SessionState.FAILED,
                error=TransportFailure("❌ Connection lost before the remote shell exited"),
            )
        if status in self.options.clean_exit_statuses:
            self._set_state(SessionState.CLOSED)
            return SessionOutcome(state=SessionState.CLOSED, exit_status=status)

        self._set_state(SessionState.FAILED)
        return SessionOutcome(state=SessionState.FAILED, exit_status=status, error=RemoteExitStatus(status))

    async def _run(self, params: ConnectionParameters, trust_store: TrustStore) -> SessionOutcome:
        try:
            try:
                conn = await self._dial(params, trust_store)
                process = await self._open_shell(conn)
            except (SessionError, TrustError) as e:
                self.close()
                if self._interrupted:
                    self._set_state(SessionState.CLOSED)
                    return SessionOutcome(state=SessionState.CLOSED, cancelled=True)
                logger.debug("Session failed in state %s: %s", self.state.value, e)
                self._set_state(SessionState.FAILED)
                return SessionOutcome(state=SessionState.FAILED, error=e)
            return await self._stream(process)
        finally:
            self.cancel_token.trigger("session ended")

    async def connect(
        self,
        params: ConnectionParameters,
        trust_store: Optional[TrustStore] = None,
    ) -> SessionOutcome:
        """
        Runs an interactive session and returns how it ended.

        Connection and trust failures are returned in the outcome rather than
        raised. The local terminal mode is restored before this returns.
        """
        if trust_store is None:
            trust_store = TrustStore(enabled=params.host_key_check)
        if not trust_store.enabled:
            logger.warning("Host key checking is disabled for %s", params.target_address)

        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)
        lifecycle = asyncio.create_task(self._run(params, trust_store))
        try:
            await self.cancel_token.wait()
            if not lifecycle.done() and self.state in PRE_STREAMING:
                # interrupted before streaming: abandon the pending dial/handshake
                self.close()
                lifecycle.cancel()
            try:
                return await lifecycle
            except asyncio.CancelledError:
                if not self._interrupted:
                    raise
                self._set_state(SessionState.CLOSED)
                return SessionOutcome(state=SessionState.CLOSED, cancelled=True)
        finally:
            self._remove_signal_handlers(loop)


def run_session(
    params: ConnectionParameters,
    trust_store: Optional[TrustStore] = None,
    options: Optional[SessionOptions] = None,
    terminal: Optional[LocalTerminal] = None,
) -> SessionOutcome:
    """Synchronous entry point: runs one session on a fresh event loop."""
    manager = ConnectionManager(options=options, terminal=terminal)
    return asyncio.run(manager.connect(params, trust_store))
