import asyncio

import asyncssh
import pytest

from sshvault.connection import ConnectionManager
from sshvault.errors import (
    AmbiguousCredentials,
    InvalidMasterPassword,
    NoCredentials,
    NoMatchingUser,
    RemoteExitStatus,
    TransportFailure,
    UntrustedHost,
    VaultCommandError,
)
from sshvault.models import SessionOptions


@pytest.fixture
def connection_manager(fake_terminal):
    return ConnectionManager(terminal=fake_terminal)


def test_error_message_authentication(connection_manager, params):
    error = asyncssh.PermissionDenied("Permission denied")
    message = str(connection_manager._get_error(params, error, None))

    assert "❌" in message
    assert "Authentication failed" in message
    assert "alice@10.0.0.5:22" in message


def test_error_message_connection_refused(connection_manager, params):
    error = ConnectionRefusedError("Connection refused")
    message = str(connection_manager._get_error(params, error, None))

    assert "Connection refused" in message
    assert params.target_address in message


def test_error_message_timeout(fake_terminal, params):
    manager = ConnectionManager(SessionOptions(connect_timeout=5), terminal=fake_terminal)
    message = str(manager._get_error(params, asyncio.TimeoutError(), None))

    assert "timed out after 5s" in message
    assert params.target_address in message


def test_error_message_network_unreachable(connection_manager, params):
    message = str(connection_manager._get_error(params, OSError("No route to host"), None))

    assert "Network unreachable" in message


def test_error_message_host_key_without_decision(connection_manager, params):
    error = asyncssh.HostKeyNotVerifiable("Host key is not trusted")
    result = connection_manager._get_error(params, error, None)

    assert isinstance(result, UntrustedHost)
    assert result.host == "10.0.0.5"
    assert "Host key is not trusted" in str(result)


def test_error_message_generic(connection_manager, params):
    error = asyncssh.ProtocolError("bad packet")
    result = connection_manager._get_error(params, error, None)

    assert isinstance(result, TransportFailure)
    assert "bad packet" in str(result)


def test_resolution_messages():
    assert "10.0.0.5" in str(NoCredentials("10.0.0.5"))
    assert "'bob'" in str(NoMatchingUser("10.0.0.5", "bob"))
    message = str(AmbiguousCredentials("10.0.0.5", ["alice", "bob"]))
    assert "alice, bob" in message
    assert "-u or --user" in message


def test_remote_exit_status_message():
    error = RemoteExitStatus(127)
    assert error.status == 127
    assert "127" in str(error)


def test_vault_messages():
    assert "Invalid master password" in str(InvalidMasterPassword())
    error = VaultCommandError(["bw", "sync"], 1, "  boom \n")
    assert error.returncode == 1
    assert "bw sync" in str(error)
    assert "boom" in str(error)
    assert "no output" in str(VaultCommandError(["bw", "sync"], 1, ""))
