"""Fedora Kernel Builder - rebuild and sign the Fedora kernel with the AW88399 audio fix.

This package orchestrates fetching fix resources, customizing the Fedora
`kernel` dist-git package, building and installing it, and enrolling a
signing key with the firmware so the result boots under Secure Boot.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
