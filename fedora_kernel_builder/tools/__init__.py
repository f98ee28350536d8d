"""External tool wrappers.

This module handles:
- Running and logging external commands
- fedpkg / git operations on the kernel dist-git checkout
- dnf / rpm package queries and installation
"""

from fedora_kernel_builder.tools.runner import CommandResult, CommandRunner

__all__ = ["CommandResult", "CommandRunner"]
