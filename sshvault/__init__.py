"""sshvault - interactive SSH sessions with credentials from a Bitwarden vault."""

__version__ = "0.1.0"
