"""Checkpointed build workflow.

WorkflowEngine drives the fixed phase order::

    setup -> version_select -> patch_select -> source_prepare ->
    spec_mutate -> config_mutate -> build -> install -> sign -> archive

After each phase the engine persists a WorkflowState naming it as the last
completed phase. A later invocation loads that state, re-verifies the
side effects of the recorded phase (walking backwards until one verifies)
and continues with the phase after it.

Queuing a key for firmware enrollment ends the run early with a SUSPENDED
outcome and a pending-enrollment marker in the state. The next invocation
confirms the enrollment before doing anything else.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from fedora_kernel_builder.archive import Archiver
from fedora_kernel_builder.config import WorkflowConfig
from fedora_kernel_builder.decisions import Choice, Decider
from fedora_kernel_builder.errors import (
    BuildFailed,
    ConfigurationInvalid,
    EnrollmentPending,
    IncompleteResourceBundle,
    InstallFailed,
    SigningFailed,
    SigningPrerequisiteMissing,
    ToolMissing,
    WorkflowError,
)
from fedora_kernel_builder.history import BuildHistory
from fedora_kernel_builder.kconfig import ConfigMatrixMutator
from fedora_kernel_builder.preflight import (
    check_disk_space,
    check_fedora,
    check_required_tools,
    detect_fedora_release,
    setup_pesign_user,
)
from fedora_kernel_builder.resolver import VersionPatchResolver, validate_patch
from fedora_kernel_builder.resources.cache import LocalResourceSet, ResourceCache
from fedora_kernel_builder.resources.install import ResourceInstaller
from fedora_kernel_builder.signing.signer import ImageSigner
from fedora_kernel_builder.signing.trust import (
    FirmwareTrustStore,
    Keystore,
    TrustKeyManager,
    TrustResolution,
)
from fedora_kernel_builder.specfile import SpecMutator
from fedora_kernel_builder.state import StateStore, WorkflowState
from fedora_kernel_builder.tools.builder import (
    BuildInvoker,
    KernelSourceTree,
    build_branch_name,
)
from fedora_kernel_builder.tools.packages import (
    BUILD_DEPENDENCIES,
    RPM_MACRO_PACKAGES,
    PackageInstaller,
)
from fedora_kernel_builder.tools.runner import CommandRunner
from fedora_kernel_builder.types import (
    BuildArtifact,
    OutcomeStatus,
    Phase,
    RunStatus,
    VersionPatchPairing,
    WorkflowOutcome,
)

logger = logging.getLogger(__name__)

# Versions offered when prompting
MAX_VERSION_CHOICES = 20


@dataclass
class Toolchain:
    """External-tool wrappers used by the workflow.

    Built from configuration by ``from_config``; tests substitute a
    fake runner and construct it the same way.
    """

    runner: CommandRunner
    packages: PackageInstaller
    source: KernelSourceTree
    builder: BuildInvoker
    resources: ResourceCache
    installer: ResourceInstaller
    signer: ImageSigner
    firmware: FirmwareTrustStore
    keystore: Keystore

    @classmethod
    def from_config(cls, config: WorkflowConfig, runner: CommandRunner) -> Toolchain:
        return cls(
            runner=runner,
            packages=PackageInstaller(runner),
            source=KernelSourceTree(runner, config.kernel_dir),
            builder=BuildInvoker(runner, config.kernel_dir, config.rpm_dir),
            resources=ResourceCache(runner, config.resources_dir, config.audio_fix_repo),
            installer=ResourceInstaller(runner, config.firmware_dir, config.ucm2_dir),
            signer=ImageSigner(
                runner, config.pesign_db, config.mok_cert_name, config.grub_config
            ),
            firmware=FirmwareTrustStore(runner, config.efi_dir),
            keystore=Keystore(runner, config.pesign_db, config.mok_cert_name),
        )


class WorkflowEngine:
    """Run, resume and suspend the kernel build workflow.

    Args:
        config: Resolved configuration.
        tools: External-tool wrappers.
        decider: Operator decision source.
        store: Workflow state persistence.
        history: Optional build history ledger.
    """

    def __init__(
        self,
        config: WorkflowConfig,
        tools: Toolchain,
        decider: Decider,
        store: StateStore,
        history: BuildHistory | None = None,
    ) -> None:
        self.config = config
        self.tools = tools
        self.decider = decider
        self.store = store
        self.history = history

        self.spec = SpecMutator(config.spec_path)
        self.kconfig = ConfigMatrixMutator(
            config.managed_options,
            config.enable_architectures,
            value=config.option_value,
            block_comment=config.config_block_comment,
        )
        self.archiver = Archiver(config.archives_dir, decider)

        self._handlers: dict[Phase, Callable[[WorkflowState], dict[str, object]]] = {
            Phase.SETUP: self._setup,
            Phase.VERSION_SELECT: self._select_version,
            Phase.PATCH_SELECT: self._select_patch,
            Phase.SOURCE_PREPARE: self._prepare_source,
            Phase.SPEC_MUTATE: self._mutate_spec,
            Phase.CONFIG_MUTATE: self._mutate_config,
            Phase.BUILD: self._build,
            Phase.INSTALL: self._install,
            Phase.SIGN: self._sign,
            Phase.ARCHIVE: self._archive,
        }
        self._checks: dict[Phase, Callable[[WorkflowState], bool]] = {
            Phase.SETUP: self._setup_done,
            Phase.VERSION_SELECT: self._version_selected,
            Phase.PATCH_SELECT: self._patch_selected,
            Phase.SOURCE_PREPARE: self._source_prepared,
            Phase.SPEC_MUTATE: self._spec_mutated,
            Phase.CONFIG_MUTATE: self._config_mutated,
            Phase.BUILD: self._built,
            Phase.INSTALL: self._installed,
            Phase.SIGN: lambda state: True,
            Phase.ARCHIVE: lambda state: True,
        }

        # Per-invocation context, rebuilt lazily on resume
        self._release: str | None = None
        self._resources: LocalResourceSet | None = None
        self._artifact: BuildArtifact | None = None
        self._archive_path: Path | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self) -> WorkflowOutcome:
        """Run or resume the workflow to completion.

        Returns:
            COMPLETED outcome, or SUSPENDED when a reboot is needed to
            finish key enrollment.

        Raises:
            WorkflowError: Any fatal failure. The persisted state is left
                at the last completed phase.
        """
        state: WorkflowState | None = None
        executed: list[Phase] = []
        try:
            state = self._load_state()
            start = self._resume_point(state)
            phases = Phase.ordered()[start.index :] if start is not None else []
            if start is not None and start is not Phase.SETUP:
                logger.info("Resuming workflow at phase %s", start.value)

            for phase in phases:
                logger.info("=== Phase: %s ===", phase.value)
                changes = self._handlers[phase](state)
                state = state.advance(phase, **changes)
                self.store.save(state)
                executed.append(phase)
        except EnrollmentPending as e:
            return self._suspend(state or WorkflowState(), e, executed)
        except WorkflowError as e:
            self._record(RunStatus.FAILED, state, error=e)
            raise

        self.store.clear()
        outcome = WorkflowOutcome(
            status=OutcomeStatus.COMPLETED,
            message=f"Kernel {state.kernel_release or state.kernel_version} built and installed",
            kernel_version=state.kernel_version,
            artifact=self._artifact,
            signed=state.signed,
            archive_path=self._archive_path,
            executed=executed,
        )
        self._record(RunStatus.SUCCEEDED, state)
        logger.info("%s", outcome.message)
        return outcome

    def setup_signing(self) -> WorkflowOutcome:
        """Drive key material to a signing-ready state outside a build.

        A pending enrollment recorded by an earlier run is confirmed first.
        """
        state = self.store.load()
        if state is not None and state.pending_enrollment:
            state = self._confirm_enrollment(state)

        key_dir = Path(state.key_dir) if state and state.key_dir else self.config.mok_key_dir
        try:
            resolution = self.trust_manager(key_dir).resolve()
        except EnrollmentPending as e:
            return self._suspend(state or WorkflowState(), e, [])

        if state is not None:
            self.store.save(
                state.model_copy(
                    update={
                        "key_dir": str(resolution.key_dir),
                        "signing_skipped": resolution.skipped,
                    }
                )
            )
        if resolution.ready:
            message = "Signing is fully configured"
        else:
            message = "Signing setup skipped"
        return WorkflowOutcome(status=OutcomeStatus.COMPLETED, message=message)

    def abort(self) -> bool:
        """Discard persisted state. Returns True if a state file was removed."""
        return self.store.clear()

    def trust_manager(self, key_dir: Path | None = None) -> TrustKeyManager:
        return TrustKeyManager(
            self.config.mok_key_dir,
            self.config.mok_key_cn,
            self.tools.firmware,
            self.tools.keystore,
            self.decider,
            validity_days=self.config.mok_validity_days,
            key_size=self.config.mok_key_size,
            selected=key_dir,
        )

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _load_state(self) -> WorkflowState:
        state = self.store.load()
        if state is None:
            return WorkflowState()

        if (
            self.config.kernel_version
            and state.kernel_version
            and self.config.kernel_version != state.kernel_version
        ):
            raise ConfigurationInvalid(
                f"An unfinished build of {state.kernel_version} exists, "
                f"but {self.config.kernel_version} was requested",
                hint="Run 'kernel-builder abort' to discard the unfinished build",
            )

        if state.pending_enrollment:
            state = self._confirm_enrollment(state)
        return state

    def _confirm_enrollment(self, state: WorkflowState) -> WorkflowState:
        """Verify a queued enrollment completed during the reboot.

        Raises:
            SigningPrerequisiteMissing: If the key is still not enrolled. The
                marker is cleared so the next run can re-queue it.
        """
        logger.info("Checking MOK enrollment queued before reboot...")
        key_dir = Path(state.key_dir) if state.key_dir else self.config.mok_key_dir
        cleared = state.model_copy(update={"pending_enrollment": False})
        try:
            self.trust_manager(key_dir).complete_enrollment()
        except SigningPrerequisiteMissing:
            self.store.save(cleared)
            raise
        self.store.save(cleared)
        return cleared

    def _resume_point(self, state: WorkflowState) -> Phase | None:
        """First phase to run; None when every phase already completed."""
        phase = state.phase
        while phase is not None and not self._checks[phase](state):
            logger.warning(
                "Side effects of phase %s are no longer present, stepping back", phase.value
            )
            phase = phase.previous()
        if phase is None:
            return Phase.SETUP
        return phase.next()

    def _suspend(
        self, state: WorkflowState, pending: EnrollmentPending, executed: list[Phase]
    ) -> WorkflowOutcome:
        state = state.model_copy(
            update={"pending_enrollment": True, "key_dir": pending.key_dir}
        )
        self.store.save(state)
        self._record(RunStatus.SUSPENDED, state)
        logger.warning("%s", pending.message)
        return WorkflowOutcome(
            status=OutcomeStatus.SUSPENDED,
            message=pending.message,
            kernel_version=state.kernel_version,
            executed=executed,
        )

    def _record(
        self,
        status: RunStatus,
        state: WorkflowState | None,
        error: WorkflowError | None = None,
    ) -> None:
        if self.history is None:
            return
        archive = self._archive_path or (self._artifact.rpm_dir if self._artifact else None)
        self.history.record(
            status,
            kernel_version=state.kernel_version if state else self.config.kernel_version,
            kernel_release=state.kernel_release if state else None,
            phase=state.phase.value if state and state.phase else None,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            signed=state.signed if state else False,
            artifact_path=str(archive) if archive else None,
        )

    # ------------------------------------------------------------------
    # Lazily rebuilt context
    # ------------------------------------------------------------------

    def _fedora_release(self) -> str:
        if self._release is None:
            self._release = detect_fedora_release(self.tools.runner, self.config.fedora_release)
        return self._release

    def _resource_set(self) -> LocalResourceSet:
        if self._resources is None:
            self._resources = self.tools.resources.current()
        return self._resources

    def _build_artifact(self, state: WorkflowState) -> BuildArtifact:
        if self._artifact is None:
            self._artifact = self.tools.builder.find_artifact(
                state.kernel_version, self.config.build_id
            )
        return self._artifact

    def _resolver(self) -> VersionPatchResolver:
        return VersionPatchResolver(
            self.tools.source.history(),
            self._resource_set().patches,
            max_per_series=self.config.max_versions_per_major,
        )

    def _signing_wanted(self, state: WorkflowState) -> bool:
        return self.config.enable_signing and not state.signing_skipped

    @staticmethod
    def _pairing(state: WorkflowState) -> VersionPatchPairing:
        if not (state.kernel_version and state.source_commit and state.patch_path):
            raise ConfigurationInvalid(
                "Workflow state is missing the selected version or patch",
                hint="Run 'kernel-builder abort' and start again",
            )
        return VersionPatchPairing(
            state.kernel_version, state.source_commit, Path(state.patch_path)
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _setup(self, state: WorkflowState) -> dict[str, object]:
        if self.config.skip_setup:
            logger.info("Skipping setup (skip_setup enabled)")
            try:
                self._resources = self.tools.resources.current()
            except IncompleteResourceBundle:
                self._resources = self.tools.resources.ensure()
            return {}

        check_fedora(self.config.fedora_release_file)
        check_disk_space(self.config.work_dir, self.config.min_free_space_gb, self.decider)
        self.tools.packages.ensure(BUILD_DEPENDENCIES)
        self.tools.packages.upgrade(RPM_MACRO_PACKAGES)
        self._resources = self.tools.resources.ensure()

        if not self._signing_wanted(state):
            logger.info("Signing disabled, skipping MOK setup")
            return {}
        setup_pesign_user(self.tools.runner)
        key_dir = Path(state.key_dir) if state.key_dir else self.config.mok_key_dir
        resolution: TrustResolution = self.trust_manager(key_dir).resolve()
        return {"key_dir": str(resolution.key_dir), "signing_skipped": resolution.skipped}

    def _select_version(self, state: WorkflowState) -> dict[str, object]:
        check_required_tools(self.tools.runner)
        source = self.tools.source
        source.ensure_clone()

        resolver = self._resolver()
        version = self.config.kernel_version
        if version:
            logger.info("Using configured kernel version: %s", version)
        else:
            candidates = resolver.candidate_versions()[:MAX_VERSION_CHOICES]
            version = self.decider.choose(
                f"Available kernel versions for {self._fedora_release()}",
                [Choice(v, v) for v in candidates],
                default=candidates[0],
            )
        logger.info("Selected kernel version: %s", version)
        return {"kernel_version": version}

    def _select_patch(self, state: WorkflowState) -> dict[str, object]:
        if not state.kernel_version:
            raise ConfigurationInvalid("No kernel version selected")
        pairing = self._resolver().pair(state.kernel_version)
        validate_patch(pairing.patch_path)
        logger.info(
            "Kernel %s: commit %s, patch %s",
            pairing.kernel_version,
            pairing.source_commit,
            pairing.patch_name,
        )
        return {
            "patch_path": str(pairing.patch_path),
            "source_commit": pairing.source_commit,
        }

    def _prepare_source(self, state: WorkflowState) -> dict[str, object]:
        pairing = self._pairing(state)
        source = self.tools.source
        branch = build_branch_name(pairing.kernel_version, self.config.build_id)
        source.prepare_build_branch(branch, pairing.source_commit)
        source.stage_patch(pairing.patch_path)
        source.fetch_sources()
        self.tools.packages.builddep(self.config.spec_path)
        return {}

    def _mutate_spec(self, state: WorkflowState) -> dict[str, object]:
        pairing = self._pairing(state)
        self.spec.apply(pairing.patch_name, self.config.build_id)
        return {}

    def _mutate_config(self, state: WorkflowState) -> dict[str, object]:
        self.kconfig.apply(self.config.kernel_dir)
        self._prep()
        return {}

    def _prep(self) -> None:
        """Run ``fedpkg prep``, remediating the RPM macro bug once."""
        release = self._fedora_release()
        try:
            self.tools.builder.prep(release)
        except BuildFailed as e:
            if not e.transient:
                raise
            logger.warning("Applying workaround: updating RPM macro packages...")
            if not self.tools.packages.upgrade(RPM_MACRO_PACKAGES):
                raise InstallFailed(
                    "Failed to update RPM macro packages",
                    hint="Try manually: sudo dnf update -y " + " ".join(RPM_MACRO_PACKAGES),
                ) from e
            logger.info("Retrying fedpkg prep...")
            self.tools.builder.prep(release)
        logger.info("Prep successful")

    def _build(self, state: WorkflowState) -> dict[str, object]:
        without = []
        if self.config.build_without_selftests:
            without.append("selftests")
        if self.config.build_without_debug:
            without.append("debug")
        if self.config.build_without_debuginfo:
            without.append("debuginfo")
        self._artifact = self.tools.builder.build(
            self._fedora_release(), without, state.kernel_version, self.config.build_id
        )
        logger.info("Built kernel %s", self._artifact.kernel_release)
        return {"kernel_release": self._artifact.kernel_release}

    def _install(self, state: WorkflowState) -> dict[str, object]:
        artifact = self._build_artifact(state)
        self.tools.packages.install(artifact.packages)

        vmlinuz = self.config.boot_dir / f"vmlinuz-{artifact.kernel_release}"
        if not vmlinuz.is_file():
            raise InstallFailed(f"Kernel installation verification failed: {vmlinuz} missing")
        artifact.vmlinuz = vmlinuz
        if not (self.config.modules_dir / artifact.kernel_release).is_dir():
            logger.warning("Modules directory not found for %s", artifact.kernel_release)
        logger.info("Kernel installed: %s", vmlinuz)

        resources = self._resource_set()
        try:
            self.tools.installer.install_firmware(resources)
        except InstallFailed as e:
            logger.warning("Firmware installation failed: %s", e)
        try:
            self.tools.installer.install_ucm2(resources)
        except InstallFailed as e:
            logger.warning("UCM2 installation failed: %s", e)

        if self.config.set_default_kernel:
            self.tools.packages.set_default_kernel(vmlinuz)
        return {"signed": False}

    def _sign(self, state: WorkflowState) -> dict[str, object]:
        if not self._signing_wanted(state):
            logger.info("Signing skipped")
            return {"signed": False}
        if not self.tools.runner.has("pesign") or not self.tools.keystore.configured():
            logger.warning("Signing prerequisites not met, kernel will NOT be signed")
            return {"signed": False}

        vmlinuz = self.config.boot_dir / f"vmlinuz-{self._build_artifact(state).kernel_release}"
        try:
            self.tools.signer.sign(vmlinuz)
        except (SigningFailed, ToolMissing) as e:
            logger.warning("Kernel signing failed: %s", e)
            logger.warning("The kernel is installed but will not boot with Secure Boot enabled")
            return {"signed": False}
        return {"signed": True}

    def _archive(self, state: WorkflowState) -> dict[str, object]:
        if self.config.skip_cleanup:
            logger.info("Skipping archive and cleanup (skip_cleanup enabled)")
            return {}
        cleanup = self.archiver.archive_and_clean(
            self._build_artifact(state), self.config.kernel_dir, self.config.archive_rpms
        )
        self._archive_path = cleanup.archive_path
        return {}

    # ------------------------------------------------------------------
    # Side-effect checks used when resuming
    # ------------------------------------------------------------------

    def _setup_done(self, state: WorkflowState) -> bool:
        try:
            self._resource_set()
        except IncompleteResourceBundle:
            return False
        return True

    def _version_selected(self, state: WorkflowState) -> bool:
        return bool(state.kernel_version) and self.tools.source.exists()

    def _patch_selected(self, state: WorkflowState) -> bool:
        return (
            bool(state.source_commit)
            and state.patch_path is not None
            and Path(state.patch_path).is_file()
        )

    def _source_prepared(self, state: WorkflowState) -> bool:
        pairing = self._pairing(state)
        source = self.tools.source
        branch = build_branch_name(pairing.kernel_version, self.config.build_id)
        return (
            source.current_branch() == branch
            and (self.config.kernel_dir / pairing.patch_name).is_file()
            and source.has_sources()
        )

    def _spec_mutated(self, state: WorkflowState) -> bool:
        return self.spec.is_applied(self._pairing(state).patch_name, self.config.build_id)

    def _config_mutated(self, state: WorkflowState) -> bool:
        return self.kconfig.is_consistent(self.config.kernel_dir)

    def _built(self, state: WorkflowState) -> bool:
        try:
            artifact = self._build_artifact(state)
        except BuildFailed:
            return False
        return artifact.kernel_release == state.kernel_release

    def _installed(self, state: WorkflowState) -> bool:
        return (self.config.boot_dir / f"vmlinuz-{state.kernel_release}").is_file()


__all__ = ["MAX_VERSION_CHOICES", "Toolchain", "WorkflowEngine"]
