"""Build version information."""

from __future__ import annotations

APP_VERSION = "dev"
APP_COMMIT = "unknown"


def build_version_string(version: str = APP_VERSION, commit: str = APP_COMMIT) -> str:
    """Return "version (commit)", or just the version when the commit is unknown."""
    version = version.strip() or "dev"
    commit = commit.strip()
    if not commit or commit == "unknown":
        return version
    return f"{version} ({commit})"