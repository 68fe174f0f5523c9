"""
Directory (OpenLDAP) bootstrap: seed data model and idempotent seeding routine.
"""

from .seed import (
    InitDataSpec,
    OUSpec,
    DepartmentSpec,
    UserSpec,
    GroupSpec,
    default_init_data,
    parse_init_data,
    compute_init_data_hash,
)
from .bootstrap import DirectoryBootstrapper, DirectoryBootstrapError

__all__ = [
    "InitDataSpec",
    "OUSpec",
    "DepartmentSpec",
    "UserSpec",
    "GroupSpec",
    "default_init_data",
    "parse_init_data",
    "compute_init_data_hash",
    "DirectoryBootstrapper",
    "DirectoryBootstrapError",
]
