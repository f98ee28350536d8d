"""Audio fix resources.

This module handles:
- Mirroring the upstream fix repository
- Verifying the patch / firmware / UCM2 bundle is complete
- Installing the firmware blob and UCM2 routing configs
"""

from fedora_kernel_builder.resources.cache import LocalResourceSet, ResourceCache
from fedora_kernel_builder.resources.install import InstallReport, ResourceInstaller

__all__ = ["InstallReport", "LocalResourceSet", "ResourceCache", "ResourceInstaller"]
