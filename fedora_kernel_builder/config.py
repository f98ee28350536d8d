"""Configuration settings for fedora_kernel_builder.

Uses pydantic-settings for config parsing from environment variables and
defaults, with an optional YAML config file on top. Configuration
precedence: CLI flags > config file > env vars > defaults.

The resolved WorkflowConfig is frozen; it is built once per invocation
and passed explicitly to every component.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fedora_kernel_builder.errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_FIX_REPO = "https://github.com/nadimkobeissi/16iax10h-linux-sound-saga.git"

DEFAULT_MANAGED_OPTIONS = [
    "CONFIG_SND_HDA_SCODEC_AW88399",
    "CONFIG_SND_HDA_SCODEC_AW88399_I2C",
    "CONFIG_SND_SOC_SOF_INTEL_COMMON",
    "CONFIG_SND_SOC_SOF_INTEL_MTL",
    "CONFIG_SND_SOC_SOF_INTEL_LNL",
]

_REPO_URL_RE = re.compile(r"^(https?://|git@)")


def _default_work_dir() -> Path:
    """Return the default build work directory."""
    return Path.home() / "fedora-kernel-build"


def _default_state_file() -> Path:
    """Return the default workflow state location (survives reboots)."""
    return (
        Path.home()
        / ".local"
        / "state"
        / "fedora-kernel-builder"
        / "workflow-state.json"
    )


def _default_mok_key_dir() -> Path:
    """Return the default signing key directory."""
    return Path.home() / ".local" / "share" / "fedora-kernel-builder" / "mok"


def _default_db_url() -> str:
    """Return the default history database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "fedora-kernel-builder" / "history.sqlite"
    return f"sqlite:///{db_path}"


class WorkflowConfig(BaseSettings):
    """Resolved, immutable workflow configuration.

    Settings are loaded from environment variables with the FKB_ prefix.
    A YAML config file and CLI flags can override them.
    """

    model_config = SettingsConfigDict(
        env_prefix="FKB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for kernel sources and build output",
    )
    resource_cache_dir: Path | None = Field(
        default=None,
        description="Local mirror of the audio fix repository (default: WORK_DIR/resources)",
    )
    archive_dir: Path | None = Field(
        default=None,
        description="Where RPM archives are kept (default: WORK_DIR/archives)",
    )
    log_dir: Path | None = Field(
        default=None,
        description="Where run logs are written (default: WORK_DIR/logs)",
    )
    state_file: Path = Field(
        default_factory=_default_state_file,
        description="Persisted workflow state used to resume after a reboot",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Build history database URL",
    )

    # System locations
    boot_dir: Path = Field(default=Path("/boot"), description="Kernel image directory")
    modules_dir: Path = Field(
        default=Path("/lib/modules"), description="Kernel modules directory"
    )
    firmware_dir: Path = Field(
        default=Path("/lib/firmware"), description="Firmware install directory"
    )
    ucm2_dir: Path = Field(
        default=Path("/usr/share/alsa/ucm2/HDA"),
        description="ALSA UCM2 routing config directory",
    )
    grub_config: Path = Field(
        default=Path("/boot/grub2/grub.cfg"), description="GRUB config to regenerate"
    )
    efi_dir: Path = Field(
        default=Path("/sys/firmware/efi"), description="EFI sysfs directory"
    )
    fedora_release_file: Path = Field(
        default=Path("/etc/fedora-release"), description="Fedora release marker file"
    )

    # Build
    kernel_version: str | None = Field(
        default=None,
        description="Kernel version to build (prompted when not set)",
    )
    fedora_release: str | None = Field(
        default=None,
        pattern=r"^f\d+$",
        description="Fedora dist-git branch, e.g. f43 (detected when not set)",
    )
    build_id: str = Field(
        default=".custom",
        min_length=1,
        description="Build identifier appended to the kernel release",
    )
    max_versions_per_major: int = Field(
        default=5,
        ge=1,
        description="Versions listed per major.minor series",
    )
    build_without_selftests: bool = Field(default=True, description="Skip selftests")
    build_without_debug: bool = Field(default=True, description="Skip debug kernel")
    build_without_debuginfo: bool = Field(
        default=False, description="Skip debuginfo packages"
    )
    min_free_space_gb: int = Field(
        default=50, ge=0, description="Free space required in WORK_DIR"
    )

    # Resources
    audio_fix_repo: str = Field(
        default=DEFAULT_AUDIO_FIX_REPO,
        description="Git repository holding patches, firmware and UCM2 files",
    )

    # Config matrix
    managed_options: list[str] = Field(
        default_factory=lambda: list(DEFAULT_MANAGED_OPTIONS),
        min_length=1,
        description="Kernel config options toggled by the build",
    )
    enable_architectures: list[str] = Field(
        default_factory=lambda: ["x86_64"],
        description="Architectures on which the managed options are enabled",
    )
    option_value: Literal["m", "y"] = Field(
        default="m", description="Value for enabled options"
    )
    config_block_comment: str = Field(
        default="# Audio fix for Awinic AW88399",
        description="Header written above the managed option block",
    )

    # Signing
    enable_signing: bool = Field(default=True, description="Sign the built kernel")
    mok_key_dir: Path = Field(
        default_factory=_default_mok_key_dir,
        description="Directory holding MOK.priv, MOK.der and MOK.pem",
    )
    mok_cert_name: str = Field(
        default="MOK Signing Key",
        description="Nickname of the certificate in the pesign keystore",
    )
    mok_key_cn: str = Field(
        default="Kernel Signing Key", description="Certificate common name"
    )
    mok_validity_days: int = Field(
        default=36500, ge=1, description="Certificate validity in days"
    )
    mok_key_size: int = Field(default=2048, description="RSA key size in bits")
    pesign_db: Path = Field(
        default=Path("/etc/pki/pesign"), description="pesign NSS keystore"
    )

    # Install and cleanup
    archive_rpms: bool = Field(default=True, description="Archive RPMs after install")
    set_default_kernel: bool = Field(
        default=False, description="Make the new kernel the boot default"
    )
    skip_setup: bool = Field(default=False, description="Skip the setup phase")
    skip_cleanup: bool = Field(default=False, description="Skip archive and cleanup")
    use_sudo: bool = Field(
        default=True, description="Prefix privileged commands with sudo"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("build_id")
    @classmethod
    def _check_build_id(cls, value: str) -> str:
        if not value.startswith("."):
            logger.warning("BUILD_ID should start with '.' (got %r)", value)
        return value

    @field_validator("audio_fix_repo")
    @classmethod
    def _check_repo_url(cls, value: str) -> str:
        if not _REPO_URL_RE.match(value):
            raise ValueError("must be an http(s):// or git@ repository URL")
        return value

    @field_validator("mok_key_size")
    @classmethod
    def _check_key_size(cls, value: int) -> int:
        if value not in (2048, 3072, 4096):
            raise ValueError("must be 2048, 3072 or 4096")
        return value

    @property
    def resources_dir(self) -> Path:
        return self.resource_cache_dir or self.work_dir / "resources"

    @property
    def archives_dir(self) -> Path:
        return self.archive_dir or self.work_dir / "archives"

    @property
    def logs_dir(self) -> Path:
        return self.log_dir or self.work_dir / "logs"

    @property
    def kernel_dir(self) -> Path:
        """Fedora kernel dist-git checkout."""
        return self.work_dir / "kernel"

    @property
    def spec_path(self) -> Path:
        return self.kernel_dir / "kernel.spec"

    @property
    def rpm_dir(self) -> Path:
        return self.kernel_dir / "x86_64"


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file into a dictionary.

    Args:
        path: Path to the YAML file.

    Returns:
        Mapping of setting names to values.

    Raises:
        ConfigurationInvalid: If the file is missing, unreadable or not a mapping.
    """
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationInvalid(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationInvalid(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationInvalid(
            f"Config file {path} must contain a mapping, got {type(data).__name__}"
        )
    # Accept KEY_NAME style keys as written in shell-style configs
    return {str(k).lower(): v for k, v in data.items()}


def load_config(config_file: Path | None = None, **overrides: Any) -> WorkflowConfig:
    """Resolve the workflow configuration.

    Args:
        config_file: Optional YAML config file.
        **overrides: CLI-level overrides; None values are ignored.

    Returns:
        Frozen WorkflowConfig.

    Raises:
        ConfigurationInvalid: If any value fails validation.
    """
    values: dict[str, Any] = {}
    if config_file is not None:
        values.update(load_yaml_config(config_file))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return WorkflowConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationInvalid(
            f"Invalid configuration: {problems}",
            hint="Check the config file and FKB_* environment variables",
        ) from e


def print_config_json(config: WorkflowConfig) -> str:
    """Render effective configuration as JSON."""
    return config.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_AUDIO_FIX_REPO",
    "DEFAULT_MANAGED_OPTIONS",
    "WorkflowConfig",
    "load_config",
    "load_yaml_config",
    "print_config_json",
]
