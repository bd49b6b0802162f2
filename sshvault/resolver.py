import logging
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import AmbiguousCredentials, NoCredentials, NoMatchingUser
from .models import ConnectionParameters, LoginRecord

logger = logging.getLogger(__name__)

SSH_SCHEME = "ssh"
DEFAULT_PORT = 22


def search_token(host: str) -> str:
    """Returns the vault search string for a host, e.g. ``ssh://10.0.0.5``."""
    return f"{SSH_SCHEME}://{host}"


def _ssh_address(record: LoginRecord) -> Optional[Tuple[str, Optional[int]]]:
    """Returns (host, port) of the first ssh:// URI of a record, or None."""
    for uri in record.uris:
        parts = urlsplit(uri.strip())
        if parts.scheme.lower() != SSH_SCHEME or not parts.hostname:
            continue
        try:
            port = parts.port
        except ValueError:
            logger.debug("Ignoring %s on %s: invalid port", uri, record.id)
            return None
        return parts.hostname, port
    return None


def resolve(
    records: Iterable[LoginRecord],
    host: str,
    preferred_user: str = "",
    port: Optional[int] = None,
    host_key_check: bool = True,
) -> ConnectionParameters:
    """
    Picks exactly one credential for a host.

    Records without an ssh:// URI are not applicable and are dropped before
    anything else is decided. A preferred user must match exactly; there is
    no fallback to another candidate.

    Raises:
        NoCredentials: no applicable record
        NoMatchingUser: preferred user given but not among the candidates
        AmbiguousCredentials: several candidates and no preferred user
    """
    candidates: List[Tuple[LoginRecord, Tuple[str, Optional[int]]]] = []
    for record in records:
        address = _ssh_address(record)
        if address is None:
            logger.debug("Skipping record %s: no %s:// URI", record.id, SSH_SCHEME)
            continue
        candidates.append((record, address))

    if not candidates:
        raise NoCredentials(host)

    if preferred_user:
        chosen = next((c for c in candidates if c[0].username == preferred_user), None)
        if chosen is None:
            raise NoMatchingUser(host, preferred_user)
    elif len(candidates) == 1:
        chosen = candidates[0]
    else:
        raise AmbiguousCredentials(host, [record.username for record, _ in candidates])

    record, (address_host, uri_port) = chosen
    if port is not None:
        resolved_port = port
    elif uri_port is not None:
        resolved_port = uri_port
    else:
        resolved_port = DEFAULT_PORT

    logger.debug("Resolved %s to record %s (user %s)", host, record.id, record.username)
    if address_host != host.lower():
        # the vault search is a substring match: ssh://10.0.0.5 also finds ssh://10.0.0.50
        logger.debug("Record %s points at %s, not the requested %s", record.id, address_host, host)
    return ConnectionParameters(
        host=address_host,
        port=resolved_port,
        username=record.username,
        password=record.password,
        host_key_check=host_key_check,
    )
