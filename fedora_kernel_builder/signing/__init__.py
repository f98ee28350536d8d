"""Secure Boot signing.

This module handles:
- MOK key pair generation and firmware enrollment
- pesign keystore import
- Signing and verifying the installed kernel image
"""

from fedora_kernel_builder.signing.signer import ImageSigner
from fedora_kernel_builder.signing.trust import TrustAction, TrustKeyManager, TrustStatus

__all__ = ["ImageSigner", "TrustAction", "TrustKeyManager", "TrustStatus"]
