"""Machine Owner Key (MOK) material, firmware enrollment and pesign keystore.

Readiness to sign depends on four facts: the key files exist, the
certificate is enrolled in firmware, and the pesign NSS keystore holds both
the certificate and its private key. They are folded into a 3-bit status:

    bit 0 (1)  key files missing
    bit 1 (2)  certificate not enrolled in firmware
    bit 2 (4)  keystore missing certificate or private key

and ``TrustKeyManager.resolve`` dispatches on that status. Enrollment only
completes at the next boot (shim's MOK manager asks for the one-time
password), so queuing it ends the current run with EnrollmentPending.
"""

from __future__ import annotations

import logging
import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, IntFlag
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from fedora_kernel_builder.decisions import Choice, Decider
from fedora_kernel_builder.errors import (
    EnrollmentPending,
    OperatorCancelled,
    SigningFailed,
    SigningPrerequisiteMissing,
)
from fedora_kernel_builder.tools.runner import CommandRunner

logger = logging.getLogger(__name__)

PRIVATE_KEY_NAME = "MOK.priv"
DER_CERT_NAME = "MOK.der"
PEM_CERT_NAME = "MOK.pem"
# Records a key directory chosen outside the configured one
KEY_LOCATION_NAME = "key-location"


class TrustStatus(IntFlag):
    """Bitmask of unmet signing prerequisites."""

    READY = 0
    FILES_MISSING = 1
    NOT_ENROLLED = 2
    KEYSTORE_UNCONFIGURED = 4


class TrustAction(str, Enum):
    """Actions offered or taken while resolving a trust status."""

    GENERATE = "generate"
    USE_EXISTING = "use_existing"
    ENROLL = "enroll"
    IMPORT = "import"
    SKIP = "skip"
    ABORT = "abort"


def actions_for(status: TrustStatus, efi_available: bool = True) -> list[TrustAction]:
    """Actions available for a status.

    Missing key files always take precedence: generation (or pointing at
    existing keys) must happen before enrollment or import make sense.
    """
    if status & TrustStatus.FILES_MISSING:
        return [
            TrustAction.GENERATE,
            TrustAction.USE_EXISTING,
            TrustAction.SKIP,
            TrustAction.ABORT,
        ]
    if status & TrustStatus.NOT_ENROLLED:
        if not efi_available:
            return [TrustAction.SKIP, TrustAction.ABORT]
        return [TrustAction.ENROLL, TrustAction.SKIP, TrustAction.ABORT]
    if status & TrustStatus.KEYSTORE_UNCONFIGURED:
        return [TrustAction.IMPORT]
    return []


_ACTION_LABELS = {
    TrustAction.GENERATE: "Create a new MOK key pair",
    TrustAction.USE_EXISTING: "Use existing MOK keys from another path",
    TrustAction.ENROLL: "Enroll the key now (requires reboot)",
    TrustAction.SKIP: "Continue without signing",
    TrustAction.ABORT: "Abort",
}


def sha1_fingerprint(der: bytes) -> str:
    """Lower-case, colon-separated SHA-1 fingerprint of a DER certificate."""
    cert = x509.load_der_x509_certificate(der)
    return cert.fingerprint(hashes.SHA1()).hex(":")


@dataclass(frozen=True)
class TrustKeyMaterial:
    """MOK key files in one directory."""

    key_dir: Path

    @property
    def private_key(self) -> Path:
        return self.key_dir / PRIVATE_KEY_NAME

    @property
    def der_cert(self) -> Path:
        return self.key_dir / DER_CERT_NAME

    @property
    def pem_cert(self) -> Path:
        return self.key_dir / PEM_CERT_NAME

    def exists(self) -> bool:
        return self.private_key.is_file() and self.der_cert.is_file()

    def certificate(self) -> x509.Certificate:
        return x509.load_der_x509_certificate(self.der_cert.read_bytes())

    def common_name(self) -> str | None:
        names = self.certificate().subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(names[0].value) if names else None

    def fingerprint(self) -> str:
        return sha1_fingerprint(self.der_cert.read_bytes())


def remember_key_dir(home: Path, key_dir: Path) -> None:
    """Record in ``home`` that the MOK files live in ``key_dir``."""
    marker = home / KEY_LOCATION_NAME
    if key_dir.resolve() == home.resolve():
        marker.unlink(missing_ok=True)
        return
    home.mkdir(mode=0o700, parents=True, exist_ok=True)
    marker.write_text(f"{key_dir.resolve()}\n")
    logger.info("Remembering MOK location %s in %s", key_dir, marker)


def recall_key_dir(home: Path) -> Path:
    """Directory holding the MOK files for ``home``.

    Key files in ``home`` itself win; otherwise a recorded location is
    followed if it still holds a complete key pair.
    """
    if TrustKeyMaterial(home).exists():
        return home
    marker = home / KEY_LOCATION_NAME
    if not marker.is_file():
        return home
    recorded = Path(marker.read_text().strip())
    if TrustKeyMaterial(recorded).exists():
        return recorded
    logger.warning("Recorded MOK location %s no longer holds key files", recorded)
    return home


def generate_key_pair(
    key_dir: Path,
    common_name: str,
    validity_days: int = 36500,
    key_size: int = 2048,
) -> TrustKeyMaterial:
    """Create an RSA key and a self-signed code-signing certificate.

    Writes ``MOK.priv`` (0600), ``MOK.der`` and ``MOK.pem`` (0644).
    """
    logger.info("Creating new MOK key pair in %s", key_dir)
    key_dir.mkdir(parents=True, exist_ok=True)

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .sign(key, hashes.SHA256())
    )

    material = TrustKeyMaterial(key_dir)
    key_bytes = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    fd = os.open(material.private_key, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key_bytes)
    material.private_key.chmod(0o600)

    material.der_cert.write_bytes(cert.public_bytes(serialization.Encoding.DER))
    material.pem_cert.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    material.der_cert.chmod(0o644)
    material.pem_cert.chmod(0o644)

    logger.info("MOK key pair created (CN=%s, fingerprint %s)", common_name, material.fingerprint())
    return material


class FirmwareTrustStore:
    """Firmware (shim MOK list) enrollment via mokutil.

    Args:
        runner: Command runner.
        efi_dir: EFI sysfs directory (``/sys/firmware/efi``).
    """

    def __init__(self, runner: CommandRunner, efi_dir: Path = Path("/sys/firmware/efi")) -> None:
        self.runner = runner
        self.efi_dir = efi_dir

    def efi_available(self) -> bool:
        """Whether the system booted via UEFI with EFI variables exposed."""
        if not self.efi_dir.is_dir():
            return False
        return (self.efi_dir / "efivars").is_dir() or (self.efi_dir / "vars").is_dir()

    def is_enrolled(self, material: TrustKeyMaterial) -> bool:
        if not material.der_cert.is_file():
            return False
        if not self.runner.has("mokutil"):
            logger.warning("mokutil not installed, cannot verify MOK enrollment")
            return False
        result = self.runner.run(["mokutil", "--list-enrolled"])
        if not result.ok:
            return False
        return material.fingerprint() in result.output.lower()

    def queue_enrollment(self, material: TrustKeyMaterial) -> None:
        """Queue the certificate for enrollment at next boot.

        mokutil prompts for a one-time password on the terminal.

        Raises:
            SigningFailed: If mokutil fails.
        """
        logger.warning("You will be prompted to set a one-time password")
        logger.warning("Remember this password - you'll need it after reboot!")
        result = self.runner.run(
            ["mokutil", "--import", str(material.der_cert)], sudo=True, interactive=True
        )
        if not result.ok:
            raise SigningFailed("Failed to queue MOK certificate for enrollment")
        logger.info("MOK certificate queued for enrollment")


class Keystore:
    """pesign's NSS certificate database.

    Args:
        runner: Command runner.
        db: NSS database directory (``/etc/pki/pesign``).
        nickname: Certificate nickname used for signing.
    """

    def __init__(self, runner: CommandRunner, db: Path, nickname: str) -> None:
        self.runner = runner
        self.db = db
        self.nickname = nickname

    def _certutil(self, *args: str) -> str | None:
        result = self.runner.run(["certutil", "-d", str(self.db), *args], sudo=True)
        return result.output if result.ok else None

    def has_certificate(self) -> bool:
        output = self._certutil("-L")
        return output is not None and self.nickname in output

    def has_private_key(self) -> bool:
        output = self._certutil("-K")
        return output is not None and self.nickname in output

    def configured(self) -> bool:
        return self.has_certificate() and self.has_private_key()

    def import_material(self, material: TrustKeyMaterial) -> None:
        """Import key and certificate through a temporary PKCS#12 bundle.

        The bundle and its password file are overwritten and removed
        whether or not the import succeeds.

        Raises:
            SigningPrerequisiteMissing: If the key files are missing.
            SigningFailed: If the import or its verification fails.
        """
        if not material.exists():
            raise SigningPrerequisiteMissing(f"MOK key files not found in {material.key_dir}")

        key = serialization.load_pem_private_key(material.private_key.read_bytes(), password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningFailed(f"{material.private_key} is not an RSA private key")
        password = secrets.token_hex(16)
        bundle = pkcs12.serialize_key_and_certificates(
            name=self.nickname.encode(),
            key=key,
            cert=material.certificate(),
            cas=None,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
        )

        temporary: list[Path] = []
        try:
            bundle_path = _private_temp_file(bundle, ".p12")
            temporary.append(bundle_path)
            password_path = _private_temp_file(password.encode(), ".pw")
            temporary.append(password_path)

            if self.has_certificate():
                logger.warning("Certificate '%s' already in keystore, replacing it", self.nickname)
                self._certutil("-D", "-n", self.nickname)

            result = self.runner.run(
                ["pk12util", "-d", str(self.db), "-i", str(bundle_path), "-w", str(password_path)],
                sudo=True,
            )
            if not result.ok:
                raise SigningFailed(
                    f"Failed to import key into {self.db}", hint=result.tail(5)
                )
        finally:
            for path in temporary:
                _destroy(path)

        if not self.configured():
            raise SigningFailed(
                f"Certificate or private key for '{self.nickname}' missing after import"
            )
        logger.info("MOK imported to pesign database")


def _private_temp_file(data: bytes, suffix: str) -> Path:
    """Write ``data`` to a new 0600 temporary file."""
    fd, name = tempfile.mkstemp(prefix="MOK-", suffix=suffix)
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return Path(name)


def _destroy(path: Path) -> None:
    """Overwrite a file with zeros and remove it."""
    if not path.exists():
        return
    try:
        size = path.stat().st_size
        with path.open("r+b") as f:
            f.write(b"\0" * size)
            f.flush()
            os.fsync(f.fileno())
    finally:
        path.unlink(missing_ok=True)


@dataclass
class TrustResolution:
    """Outcome of TrustKeyManager.resolve."""

    ready: bool
    skipped: bool
    key_dir: Path
    actions: list[TrustAction]


class TrustKeyManager:
    """Drive MOK key material to a signing-ready state.

    A key directory picked with USE_EXISTING is recorded in ``key_dir`` and
    followed by later managers built for the same ``key_dir``.

    Args:
        key_dir: Configured MOK directory.
        common_name: Certificate CN for newly generated keys.
        firmware: Firmware enrollment store.
        keystore: pesign keystore.
        decider: Operator decision source.
        validity_days: Validity of newly generated certificates.
        key_size: RSA key size for newly generated keys.
        selected: Directory picked by an earlier run, used while it still
            holds key files.
    """

    def __init__(
        self,
        key_dir: Path,
        common_name: str,
        firmware: FirmwareTrustStore,
        keystore: Keystore,
        decider: Decider,
        validity_days: int = 36500,
        key_size: int = 2048,
        selected: Path | None = None,
    ) -> None:
        self.home = key_dir
        if selected is not None and TrustKeyMaterial(selected).exists():
            self.key_dir = selected
        else:
            self.key_dir = recall_key_dir(key_dir)
        self.common_name = common_name
        self.firmware = firmware
        self.keystore = keystore
        self.decider = decider
        self.validity_days = validity_days
        self.key_size = key_size

    @property
    def material(self) -> TrustKeyMaterial:
        return TrustKeyMaterial(self.key_dir)

    def status(self) -> TrustStatus:
        status = TrustStatus.READY
        if not self.material.exists():
            status |= TrustStatus.FILES_MISSING
        if not self.firmware.is_enrolled(self.material):
            status |= TrustStatus.NOT_ENROLLED
        if not self.keystore.configured():
            status |= TrustStatus.KEYSTORE_UNCONFIGURED
        return status

    def status_report(self) -> dict[str, bool]:
        material = self.material
        return {
            "key_files": material.exists(),
            "enrolled": self.firmware.is_enrolled(material),
            "keystore_certificate": self.keystore.has_certificate(),
            "keystore_private_key": self.keystore.has_private_key(),
            "efi": self.firmware.efi_available(),
        }

    def resolve(self, status: TrustStatus | None = None) -> TrustResolution:
        """Dispatch on the trust status until ready, skipped or suspended.

        Raises:
            EnrollmentPending: After queuing the certificate for enrollment.
            OperatorCancelled: If the operator aborts.
            SigningPrerequisiteMissing: If an operator-supplied key path is invalid.
        """
        taken: list[TrustAction] = []
        if status is None:
            status = self.status()

        while True:
            logger.info(
                "MOK status: key files %s, enrollment %s, keystore %s",
                "missing" if status & TrustStatus.FILES_MISSING else "present",
                "missing" if status & TrustStatus.NOT_ENROLLED else "enrolled",
                "unconfigured" if status & TrustStatus.KEYSTORE_UNCONFIGURED else "configured",
            )
            if status == TrustStatus.READY:
                logger.info("MOK signing fully configured")
                return TrustResolution(True, False, self.key_dir, taken)

            efi = self.firmware.efi_available()
            offered = actions_for(status, efi_available=efi)
            if offered == [TrustAction.IMPORT]:
                action = TrustAction.IMPORT
            else:
                action = self._ask(status, offered, efi)
            taken.append(action)

            if action is TrustAction.ABORT:
                raise OperatorCancelled("Signing setup aborted by operator")
            if action is TrustAction.SKIP:
                logger.warning("Signing disabled - the kernel will NOT be signed for Secure Boot")
                return TrustResolution(False, True, self.key_dir, taken)
            if action is TrustAction.GENERATE:
                self.key_dir = self.home
                generate_key_pair(
                    self.key_dir, self.common_name, self.validity_days, self.key_size
                )
                remember_key_dir(self.home, self.key_dir)
            elif action is TrustAction.USE_EXISTING:
                self._use_existing(self.decider.ask_path("Path to directory with MOK.priv and MOK.der"))
            elif action is TrustAction.ENROLL:
                self.firmware.queue_enrollment(self.material)
                raise EnrollmentPending(str(self.key_dir))
            elif action is TrustAction.IMPORT:
                logger.info("Importing MOK into pesign database...")
                self.keystore.import_material(self.material)
            status = self.status()

    def complete_enrollment(self) -> None:
        """Finish setup after the enrollment reboot.

        Raises:
            SigningPrerequisiteMissing: If the certificate is still not enrolled.
        """
        material = self.material
        if not material.exists():
            raise SigningPrerequisiteMissing(f"MOK key files not found in {self.key_dir}")
        if not self.firmware.is_enrolled(material):
            raise SigningPrerequisiteMissing(
                "MOK certificate is still not enrolled in firmware",
                hint=(
                    "The enrollment was not confirmed at boot. Run the build again "
                    "to re-queue it, or disable signing"
                ),
            )
        logger.info("MOK enrollment confirmed")
        if not self.keystore.configured():
            self.keystore.import_material(material)

    def signing_ready(self) -> bool:
        return self.keystore.configured()

    def _ask(self, status: TrustStatus, offered: list[TrustAction], efi: bool) -> TrustAction:
        if status & TrustStatus.FILES_MISSING:
            prompt = f"MOK key files are missing in {self.key_dir}"
            default = TrustAction.GENERATE
        elif not efi:
            prompt = "MOK key is not enrolled and EFI is not available (legacy BIOS or VM without UEFI)"
            default = TrustAction.SKIP
        else:
            prompt = "MOK key exists but is not enrolled in UEFI; enrollment requires a reboot"
            default = TrustAction.SKIP
        choices = [Choice(a.value, _ACTION_LABELS[a]) for a in offered]
        return TrustAction(self.decider.choose(prompt, choices, default=default.value))

    def _use_existing(self, path: Path) -> None:
        candidate = TrustKeyMaterial(path)
        if not candidate.exists():
            raise SigningPrerequisiteMissing(
                f"MOK files not found in: {path}",
                hint=f"Expected {PRIVATE_KEY_NAME} and {DER_CERT_NAME}",
            )
        self.key_dir = path
        remember_key_dir(self.home, path)
        logger.info("Using MOK from: %s", path)


__all__ = [
    "KEY_LOCATION_NAME",
    "FirmwareTrustStore",
    "Keystore",
    "TrustAction",
    "TrustKeyManager",
    "TrustKeyMaterial",
    "TrustResolution",
    "TrustStatus",
    "actions_for",
    "generate_key_pair",
    "recall_key_dir",
    "remember_key_dir",
    "sha1_fingerprint",
]
