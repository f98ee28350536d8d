"""Sign installed kernel images with pesign."""

from __future__ import annotations

import logging
from pathlib import Path

from fedora_kernel_builder.errors import SigningFailed, ToolMissing
from fedora_kernel_builder.tools.runner import CommandRunner

logger = logging.getLogger(__name__)

UNSIGNED_SUFFIX = ".unsigned"
SIGNED_SUFFIX = ".signed"


class ImageSigner:
    """Sign a vmlinuz image in place and regenerate GRUB.

    Args:
        runner: Command runner.
        pesign_db: pesign NSS database.
        cert_name: Keystore nickname of the signing certificate.
        grub_config: GRUB config file to regenerate after signing.
    """

    def __init__(
        self,
        runner: CommandRunner,
        pesign_db: Path,
        cert_name: str,
        grub_config: Path = Path("/boot/grub2/grub.cfg"),
    ) -> None:
        self.runner = runner
        self.pesign_db = pesign_db
        self.cert_name = cert_name
        self.grub_config = grub_config

    def sign(self, vmlinuz: Path) -> bool:
        """Sign ``vmlinuz``, keeping an ``.unsigned`` backup.

        Returns:
            Whether the signature could be verified afterwards.

        Raises:
            SigningFailed: If the image is missing or pesign fails.
        """
        if not vmlinuz.is_file():
            raise SigningFailed(f"Kernel file not found: {vmlinuz}")

        backup = vmlinuz.with_name(vmlinuz.name + UNSIGNED_SUFFIX)
        if backup.exists():
            logger.info("Backup already exists, skipping: %s", backup)
        else:
            self._privileged(["cp", "-p", str(vmlinuz), str(backup)], "back up unsigned kernel")
            logger.info("Backup: %s", backup)

        signed = vmlinuz.with_name(vmlinuz.name + SIGNED_SUFFIX)
        logger.info("Signing kernel with pesign...")
        self._privileged(
            [
                "pesign",
                "-n",
                str(self.pesign_db),
                "-c",
                self.cert_name,
                "-i",
                str(vmlinuz),
                "-o",
                str(signed),
                "-s",
            ],
            "sign kernel",
        )
        self._privileged(["mv", "-f", str(signed), str(vmlinuz)], "replace kernel with signed image")
        logger.info("Kernel signed: %s", vmlinuz)

        self._regenerate_grub()

        return self.verify(vmlinuz)

    def _regenerate_grub(self) -> None:
        try:
            result = self.runner.run(["grub2-mkconfig", "-o", str(self.grub_config)], sudo=True)
        except ToolMissing:
            logger.warning("grub2-mkconfig not installed, GRUB configuration not regenerated")
            return
        if result.ok:
            logger.info("GRUB configuration updated")
        else:
            logger.warning("GRUB config regeneration had warnings (usually safe to ignore)")

    def verify(self, vmlinuz: Path) -> bool:
        """List signatures with sbverify; True if at least one exists."""
        if not self.runner.has("sbverify"):
            logger.warning("sbverify not installed, skipping verification")
            return False
        result = self.runner.run(["sbverify", "--list", str(vmlinuz)], sudo=True)
        count = sum(1 for line in result.output.splitlines() if line.startswith("signature"))
        if not result.ok or count == 0:
            logger.warning("Could not verify signature of %s", vmlinuz)
            return False
        logger.info("Kernel signature verified (%d signatures)", count)
        return True

    def is_signed_by(self, vmlinuz: Path, subject: str) -> bool:
        """Whether ``vmlinuz`` already carries a signature from ``subject``."""
        if not vmlinuz.is_file() or not self.runner.has("sbverify"):
            return False
        result = self.runner.run(["sbverify", "--list", str(vmlinuz)], sudo=True)
        return result.ok and subject in result.output

    def sign_matching(self, boot_dir: Path, pattern: str, subject: str) -> list[Path]:
        """Sign every ``vmlinuz-<pattern>`` not yet signed by ``subject``.

        Returns:
            Images that were signed.
        """
        signed: list[Path] = []
        for image in sorted(boot_dir.glob(f"vmlinuz-{pattern}")):
            if image.name.endswith((UNSIGNED_SUFFIX, SIGNED_SUFFIX)) or not image.is_file():
                continue
            if self.is_signed_by(image, subject):
                logger.info("Already signed with '%s', skipping: %s", subject, image.name)
                continue
            try:
                self.sign(image)
            except SigningFailed as e:
                logger.error("Failed to sign %s: %s", image.name, e)
                continue
            signed.append(image)
        logger.info("Signed %d kernel(s)", len(signed))
        return signed

    def _privileged(self, args: list[str], what: str) -> None:
        result = self.runner.run(args, sudo=True)
        if not result.ok:
            raise SigningFailed(f"Failed to {what}", hint=result.tail(5))


__all__ = ["SIGNED_SUFFIX", "UNSIGNED_SUFFIX", "ImageSigner"]
