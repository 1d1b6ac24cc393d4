"""TOML loader for branchd service settings."""

import tomllib
from pathlib import Path

import pydantic

from branchd.config.models import BranchdSettings

DEFAULT_CONFIG_PATH = Path("/etc/branchd/branchd.toml")


def load_settings(config_path: Path | None = None) -> BranchdSettings:
    """Load service settings from a TOML file.

    Keys live under a ``[branchd]`` table; keys missing from the file keep
    their defaults.

    Args:
        config_path: Path to branchd.toml (default:
            ``/etc/branchd/branchd.toml``).

    Returns:
        Validated ``BranchdSettings``.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the config format is invalid.

    Example:
        >>> settings = load_settings(Path("branchd.toml"))
        >>> settings.zfs_pool
        'tank'
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise FileNotFoundError(
            f"branchd config not found: {config_path}\n"
            f"Copy branchd.toml.example to {config_path} and adjust it."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    section = data.get("branchd", {})
    if not isinstance(section, dict):
        raise ValueError(f"[branchd] must be a table in {config_path}")

    # allow-list arrives as a TOML array
    if "allowed_branch_settings" in section:
        section["allowed_branch_settings"] = frozenset(section["allowed_branch_settings"])

    try:
        return BranchdSettings(**section)
    except pydantic.ValidationError as e:
        raise ValueError(f"Invalid branchd config {config_path}: {e}") from e
