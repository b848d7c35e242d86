"""Package registry, install coordinator, and the apt collaborator."""

from provisioner.packages.apt import AptPackageManager, PackageManager
from provisioner.packages.registry import (
    DEFAULT_CATEGORY,
    PACKAGE_CATEGORIES,
    FilePackageRegistry,
    InstallCoordinator,
    MemoryPackageRegistry,
    PackageRecord,
    PackageRegistry,
    PackageStatus,
    normalize_category,
    validate_package_names,
)

__all__ = [
    "AptPackageManager",
    "DEFAULT_CATEGORY",
    "FilePackageRegistry",
    "InstallCoordinator",
    "MemoryPackageRegistry",
    "PACKAGE_CATEGORIES",
    "PackageManager",
    "PackageRecord",
    "PackageRegistry",
    "PackageStatus",
    "normalize_category",
    "validate_package_names",
]
