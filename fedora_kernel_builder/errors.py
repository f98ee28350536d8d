"""Error taxonomy for fedora_kernel_builder.

Every failure the workflow can surface derives from WorkflowError and
carries a stable ``code`` string. The CLI is the only place that turns
these into process exit codes.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all workflow failures."""

    code = "workflow_error"
    exit_code = 1

    def __init__(
        self,
        message: str,
        hint: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        if code is not None:
            self.code = code


class ConfigurationInvalid(WorkflowError):
    """Configuration or persisted state could not be validated."""

    code = "configuration_invalid"


class ToolMissing(WorkflowError):
    """A required external tool is not installed."""

    code = "tool_missing"

    def __init__(self, tool: str, hint: str | None = None) -> None:
        super().__init__(f"Required tool not found: {tool}", hint=hint)
        self.tool = tool


class ResourceUnavailable(WorkflowError):
    """The resource repository could not be fetched."""

    code = "resource_unavailable"


class IncompleteResourceBundle(WorkflowError):
    """The resource repository is missing a required artifact category."""

    code = "incomplete_resource_bundle"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "Resource bundle is incomplete, missing: " + ", ".join(missing),
            hint="Check that the audio fix repository layout has not changed",
        )
        self.missing = missing


class NoVersionsFound(WorkflowError):
    """No kernel versions could be enumerated from source history."""

    code = "no_versions_found"


class NoPatchAvailable(WorkflowError):
    """No patch in the resource bundle serves the requested kernel version."""

    code = "no_patch_available"


class AnchorNotFound(WorkflowError):
    """A spec file edit could not find its insertion anchor."""

    code = "anchor_not_found"


class DuplicateOrConflictingOption(WorkflowError):
    """A managed config option is duplicated or contradicts itself."""

    code = "duplicate_or_conflicting_option"


class BuildFailed(WorkflowError):
    """An external build step failed.

    Attributes:
        diagnostic: Tail of the tool output.
        transient: Whether the failure matches a known remediable pattern.
    """

    code = "build_failed"

    def __init__(
        self,
        message: str,
        diagnostic: str = "",
        transient: bool = False,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.diagnostic = diagnostic
        self.transient = transient


class InstallFailed(WorkflowError):
    """Installing packages or files onto the system failed."""

    code = "install_failed"


class SigningPrerequisiteMissing(WorkflowError):
    """Signing cannot proceed because key material or enrollment is missing."""

    code = "signing_prerequisite_missing"


class SigningFailed(WorkflowError):
    """pesign or keystore operations failed."""

    code = "signing_failed"


class EnrollmentPending(WorkflowError):
    """A certificate has been queued for firmware enrollment.

    This is a controlled suspension, not a failure: the operator must
    reboot and confirm the enrollment in the firmware manager.
    """

    code = "enrollment_pending"
    exit_code = 0

    def __init__(self, key_dir: str, message: str | None = None) -> None:
        super().__init__(
            message or "Key queued for enrollment, reboot required",
            hint=(
                "Reboot, choose 'Enroll MOK' in the blue MOK manager screen, "
                "enter the password you just set, then run the build again"
            ),
        )
        self.key_dir = key_dir


class ArchiveError(WorkflowError):
    """Archiving, listing or restoring RPM archives failed."""

    code = "archive_error"


class OperatorCancelled(WorkflowError):
    """The operator chose to abort."""

    code = "operator_cancelled"
    exit_code = 130

    def __init__(self, message: str = "Cancelled by operator") -> None:
        super().__init__(message)


__all__ = [
    "AnchorNotFound",
    "ArchiveError",
    "BuildFailed",
    "ConfigurationInvalid",
    "DuplicateOrConflictingOption",
    "EnrollmentPending",
    "IncompleteResourceBundle",
    "InstallFailed",
    "NoPatchAvailable",
    "NoVersionsFound",
    "OperatorCancelled",
    "ResourceUnavailable",
    "SigningFailed",
    "SigningPrerequisiteMissing",
    "ToolMissing",
    "WorkflowError",
]
