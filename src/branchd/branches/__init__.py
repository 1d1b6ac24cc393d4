"""Branch creation and deletion."""

from branchd.branches.service import BranchService, ForcedBranchMetadata
from branchd.branches.settings import encode_settings, filter_postgresql_settings

__all__ = [
    "BranchService",
    "ForcedBranchMetadata",
    "encode_settings",
    "filter_postgresql_settings",
]
