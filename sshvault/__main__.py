#!/usr/bin/env python3
"""
sshvault - open SSH sessions using credentials stored in Bitwarden.

Command-line entry point for the application.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .config import Settings, default_config_path, load_config, save_config
from .errors import AmbiguousCredentials, ResolutionError, SSHVaultError
from .known_hosts import KnownHostsFile
from .session_cache import SessionCache
from .trust import TrustStore
from .vault import Vault

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RESOLUTION = 2
EXIT_INTERRUPTED = 130


def _epilog() -> str:
    return (
        "Examples:\n"
        "  sshvault login 10.0.0.5\n"
        "  sshvault login db01.example.com -u admin -p 2222\n"
        "  sshvault unlock --raw\n"
        "\n"
        'Vault items must carry a URI of the form "ssh://<host>" to be used for <host>.\n'
        f"Default config path: {default_config_path()}\n"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshvault",
        description="Connect to hosts via SSH using credentials from your Bitwarden vault",
        epilog=_epilog(),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-v", "--version", action="version", version=f"sshvault {__version__}")
    parser.add_argument(
        "-c", "--config",
        type=Path,
        metavar="PATH",
        help="Path to config file (default: platform-specific, see below)",
    )
    parser.add_argument(
        "-l", "--log-level",
        choices=["info", "debug", "warning", "error"],
        default="warning",
        help="Set logging level (default: warning)",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("login", help="Open an interactive SSH session to a host.")
    sp.add_argument("host", help="Host as stored in the vault URI (ssh://<host>)")
    sp.add_argument("-u", "--user", default="", help="Connect with the specified username")
    sp.add_argument("-p", "--port", type=int, help="Override the SSH port")
    sp.add_argument(
        "--no-host-key-check",
        dest="host_key_check",
        action="store_false",
        default=None,
        help="INSECURE: accept any host key without checking known_hosts",
    )
    sp.set_defaults(func=cmd_login)

    sp = sub.add_parser("unlock", help="Unlock your vault and print the session key.")
    sp.add_argument("--raw", action="store_true", help="Only print the session key")
    sp.set_defaults(func=cmd_unlock)

    sp = sub.add_parser("lock", help="Lock your vault and discard the stored session.")
    sp.set_defaults(func=cmd_lock)

    sp = sub.add_parser("sync", help="Pull the latest vault data from the server.")
    sp.set_defaults(func=cmd_sync)

    sp = sub.add_parser("config", help="Show the effective configuration.")
    sp.add_argument("--init", action="store_true", help="Write a config file with default values")
    sp.set_defaults(func=cmd_config)

    return parser


def _vault(settings: Settings) -> Vault:
    vault = Vault(bw_bin=settings.bw_bin, cache=SessionCache(settings.session_cache))
    vault.check_executable()
    return vault


def cmd_login(args: argparse.Namespace, settings: Settings) -> int:
    from .connection import run_session

    host_key_check = settings.host_key_check if args.host_key_check is None else args.host_key_check
    vault = _vault(settings)
    try:
        params = vault.find_credentials(args.host, args.user, port=args.port, host_key_check=host_key_check)
    except AmbiguousCredentials as e:
        print(f"Failed finding SSH credentials: {e}", file=sys.stderr)
        for username in e.candidates:
            print(f"  - {username}", file=sys.stderr)
        return EXIT_RESOLUTION
    except ResolutionError as e:
        print(f"Failed finding SSH credentials: {e}", file=sys.stderr)
        return EXIT_RESOLUTION

    print(f"Connecting to {params.target_address} as {params.username}")
    if not host_key_check:
        print("WARNING: host key checking is disabled; the server identity is NOT verified.", file=sys.stderr)

    trust_store = TrustStore(ledger=KnownHostsFile(settings.known_hosts), enabled=host_key_check)
    outcome = run_session(params, trust_store=trust_store, options=settings.session)
    if outcome.ok:
        return EXIT_OK
    print(str(outcome.error), file=sys.stderr)
    return EXIT_FAILURE


def cmd_unlock(args: argparse.Namespace, settings: Settings) -> int:
    session_key = _vault(settings).unlock_interactive()
    if args.raw:
        print(session_key)
    else:
        print(
            "\nYour vault is unlocked. To use this session in other tools, set BW_SESSION. ex:\n"
            f'\t$ export BW_SESSION="{session_key}"\n'
            f'\t> $env:BW_SESSION="{session_key}"\n'
        )
    return EXIT_OK


def cmd_lock(args: argparse.Namespace, settings: Settings) -> int:
    rc = EXIT_OK
    vault = _vault(settings)
    try:
        vault.lock()
        print("Your vault is locked.")
    except SSHVaultError as e:
        print(f"Error locking vault: {e}", file=sys.stderr)
        rc = EXIT_FAILURE
    try:
        vault.cache.discard()
        print("The session was discarded.")
    except SSHVaultError as e:
        print(f"Error discarding session: {e}", file=sys.stderr)
        rc = EXIT_FAILURE
    return rc


def cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    _vault(settings).sync()
    print("Syncing complete.")
    return EXIT_OK


def cmd_config(args: argparse.Namespace, settings: Settings) -> int:
    path = args.config or default_config_path()
    if args.init:
        if path.exists():
            print(f"Config already exists at {path}", file=sys.stderr)
            return EXIT_FAILURE
        save_config(settings, path)
        print(f"Wrote default config to {path}")
        return EXIT_OK
    print(f"# {path}{'' if path.exists() else ' (not present, defaults in use)'}")
    print(settings.model_dump_json(indent=2))
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the sshvault CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    log_levels = {
        "info": logging.INFO,
        "debug": logging.DEBUG,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }
    logging.basicConfig(
        level=log_levels[args.log_level],
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        if args.cmd == "config" and args.init:
            settings = Settings()
        else:
            settings = load_config(args.config)
        return args.func(args, settings)
    except SSHVaultError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
