"""Service settings models and TOML loader."""

from branchd.config.loader import load_settings
from branchd.config.models import DEFAULT_ALLOWED_BRANCH_SETTINGS, BranchdSettings

__all__ = ["load_settings", "BranchdSettings", "DEFAULT_ALLOWED_BRANCH_SETTINGS"]
