"""Operator-supplied postgresql.conf overrides for branch clusters.

Only allow-listed keys survive.  The allow-list is passed in by the caller
(``BranchdSettings.allowed_branch_settings``) rather than read from a
module global.
"""

import base64
from collections.abc import Collection

MAX_BRANCH_CONNECTIONS = 100


def filter_postgresql_settings(custom_conf: str, allowed: Collection[str]) -> str:
    """Keep valid, allow-listed ``key = value`` lines.

    Comments, blank lines, lines without ``=`` and keys outside ``allowed``
    are dropped silently.  ``max_connections`` must be an integer between 1
    and 100.

    Args:
        custom_conf: Raw postgresql.conf fragment.
        allowed: Setting names that may be overridden.

    Returns:
        Normalized ``key = value`` lines, newline-terminated, or ``""``.

    Example:
        >>> filter_postgresql_settings("work_mem=64MB\\nfsync = off", {"work_mem"})
        'work_mem = 64MB\\n'
    """
    lines: list[str] = []
    for raw in custom_conf.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if key not in allowed or not value:
            continue
        if key == "max_connections":
            try:
                connections = int(value)
            except ValueError:
                continue
            if not 1 <= connections <= MAX_BRANCH_CONNECTIONS:
                continue
        lines.append(f"{key} = {value}\n")
    return "".join(lines)


def encode_settings(custom_conf: str, allowed: Collection[str]) -> str:
    """Filter and base64-encode overrides for the clone script ("" if none)."""
    filtered = filter_postgresql_settings(custom_conf, allowed)
    if not filtered:
        return ""
    return base64.b64encode(filtered.encode()).decode("ascii")
