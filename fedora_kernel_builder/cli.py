"""Thin CLI wrapper for fedora_kernel_builder.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console

from fedora_kernel_builder import __version__
from fedora_kernel_builder.config import WorkflowConfig, load_config, print_config_json
from fedora_kernel_builder.errors import BuildFailed, OperatorCancelled, WorkflowError

if TYPE_CHECKING:
    from fedora_kernel_builder.workflow import WorkflowEngine

app = typer.Typer(
    name="kernel-builder",
    help="Fedora kernel builder - patch, build, install and sign a custom kernel",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"fedora-kernel-builder version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="YAML config file"),
    ] = None,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Fedora kernel builder - patch, build, install and sign a custom kernel."""
    ctx.obj = {"config_file": config_file}


@contextmanager
def cli_errors() -> Iterator[None]:
    """Turn workflow errors into messages and exit codes."""
    try:
        yield
    except OperatorCancelled as e:
        console.print(f"[yellow]{e.message}[/yellow]")
        raise typer.Exit(code=e.exit_code) from None
    except WorkflowError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        if isinstance(e, BuildFailed) and e.diagnostic:
            console.print("[bold]Last output lines:[/bold]")
            console.print(e.diagnostic, markup=False, highlight=False)
        if e.hint:
            console.print(f"Hint: {e.hint}", markup=False)
        raise typer.Exit(code=e.exit_code) from None
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(code=130) from None


def _load(ctx: typer.Context, **overrides: Any) -> WorkflowConfig:
    config_file = ctx.obj.get("config_file") if ctx.obj else None
    return load_config(config_file, **overrides)


def _engine(
    config: WorkflowConfig,
    interactive: bool = True,
    log_path: Path | None = None,
    with_history: bool = True,
) -> "WorkflowEngine":
    from fedora_kernel_builder.decisions import ConsoleDecider, NonInteractiveDecider
    from fedora_kernel_builder.history import BuildHistory
    from fedora_kernel_builder.state import StateStore
    from fedora_kernel_builder.tools.runner import CommandRunner
    from fedora_kernel_builder.workflow import Toolchain, WorkflowEngine

    runner = CommandRunner(log_path=log_path, use_sudo=config.use_sudo)
    decider = ConsoleDecider(console) if interactive else NonInteractiveDecider()
    return WorkflowEngine(
        config,
        Toolchain.from_config(config, runner),
        decider,
        StateStore(config.state_file),
        history=BuildHistory.open(config.db_url) if with_history else None,
    )


def _start_logging(config: WorkflowConfig) -> Path | None:
    from fedora_kernel_builder.logs import configure_logging

    log_path = configure_logging(config.log_level, config.logs_dir)
    if log_path is not None:
        console.print(f"[dim]Log file: {log_path}[/dim]")
    return log_path


def _print_enrollment_steps() -> None:
    console.print()
    console.print("[bold yellow]REBOOT REQUIRED to complete MOK enrollment[/bold yellow]")
    console.print("  1. Reboot your computer")
    console.print("  2. In the blue MOK Manager screen choose 'Enroll MOK'")
    console.print("  3. Choose 'Continue', then 'Yes'")
    console.print("  4. Enter the password you just set")
    console.print("  5. After boot, run 'kernel-builder run' again to continue")


@app.command()
def run(
    ctx: typer.Context,
    kernel_version: Annotated[
        str | None,
        typer.Option("--version", "-v", help="Kernel version to build (e.g. 6.18.7)"),
    ] = None,
    skip_setup: Annotated[
        bool,
        typer.Option("--skip-setup", help="Skip dependency installation and signing setup"),
    ] = False,
    skip_cleanup: Annotated[
        bool,
        typer.Option("--skip-cleanup", help="Keep the build tree and do not archive"),
    ] = False,
    no_sign: Annotated[
        bool,
        typer.Option("--no-sign", help="Build without Secure Boot signing"),
    ] = False,
    non_interactive: Annotated[
        bool,
        typer.Option("--non-interactive", help="Answer every prompt with its default"),
    ] = False,
) -> None:
    """Run (or resume) the full build workflow."""
    with cli_errors():
        config = _load(
            ctx,
            kernel_version=kernel_version,
            skip_setup=skip_setup or None,
            skip_cleanup=skip_cleanup or None,
            enable_signing=False if no_sign else None,
        )
        log_path = _start_logging(config)
        engine = _engine(config, interactive=not non_interactive, log_path=log_path)
        outcome = engine.run()

    if outcome.suspended:
        console.print(f"[yellow]{outcome.message}[/yellow]")
        _print_enrollment_steps()
        return

    console.print()
    console.print("[bold green]BUILD AND INSTALLATION COMPLETE[/bold green]")
    if outcome.artifact is not None:
        console.print(f"  Kernel:  {outcome.artifact.kernel_release}")
        console.print(f"  RPMs:    {outcome.artifact.rpm_dir}")
    console.print(f"  Signed:  {'yes' if outcome.signed else 'no'}")
    if outcome.archive_path is not None:
        console.print(f"  Archive: {outcome.archive_path}")
    console.print()
    console.print("Next steps:")
    console.print("  1. Reboot your computer")
    console.print("  2. Select the new kernel in GRUB")
    console.print("  3. Check with: uname -r")


@app.command("setup-signing")
def setup_signing(
    ctx: typer.Context,
    non_interactive: Annotated[
        bool,
        typer.Option("--non-interactive", help="Answer every prompt with its default"),
    ] = False,
) -> None:
    """Set up MOK signing only (also completes a pending enrollment)."""
    with cli_errors():
        config = _load(ctx)
        log_path = _start_logging(config)
        engine = _engine(config, interactive=not non_interactive, log_path=log_path)
        outcome = engine.setup_signing()

    if outcome.suspended:
        console.print(f"[yellow]{outcome.message}[/yellow]")
        _print_enrollment_steps()
        return
    console.print(f"[green]{outcome.message}[/green]")


@app.command()
def sign(
    ctx: typer.Context,
    pattern: Annotated[
        str,
        typer.Option("--pattern", "-p", help="Glob matched against /boot/vmlinuz-<pattern>"),
    ] = "*",
) -> None:
    """Sign installed kernels not yet signed with the MOK key."""
    with cli_errors():
        config = _load(ctx)
        log_path = _start_logging(config)
        engine = _engine(config, log_path=log_path, with_history=False)
        if not engine.trust_manager().signing_ready():
            console.print("[red]pesign keystore is not configured[/red]")
            console.print("Run 'kernel-builder setup-signing' first")
            raise typer.Exit(code=1)
        signed = engine.tools.signer.sign_matching(
            config.boot_dir, pattern, config.mok_key_cn
        )

    if not signed:
        console.print("[yellow]No kernels were signed[/yellow]")
        return
    console.print(f"[green]Signed {len(signed)} kernel(s):[/green]")
    for image in signed:
        console.print(f"  {image}")


@app.command()
def status(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show system, resource, signing and workflow status."""
    from fedora_kernel_builder.errors import IncompleteResourceBundle
    from fedora_kernel_builder.preflight import free_space_gb, tool_report
    from fedora_kernel_builder.specfile import SpecMutator

    with cli_errors():
        config = _load(ctx)
        engine = _engine(config, interactive=False, with_history=False)
        tools = engine.tools
        state = engine.store.load()

        resources: dict[str, Any]
        try:
            found = tools.resources.current()
            resources = {
                "path": str(found.root),
                "commit": found.commit,
                "patches": [p.name for p in found.patches],
                "firmware_installed": tools.installer.firmware_installed(found),
            }
        except IncompleteResourceBundle as e:
            resources = {"path": str(tools.resources.repo_dir), "error": e.message}

        key_dir = Path(state.key_dir) if state and state.key_dir else config.mok_key_dir
        report: dict[str, Any] = {
            "fedora": config.fedora_release_file.is_file(),
            "free_space_gb": free_space_gb(config.work_dir),
            "tools": tool_report(tools.runner),
            "resources": resources,
            "ucm2_customized": tools.installer.ucm2_customized(),
            "signing": {
                "enabled": config.enable_signing,
                "key_dir": str(key_dir),
                **engine.trust_manager(key_dir).status_report(),
            },
            "kernel_source": {
                "path": str(config.kernel_dir),
                "exists": tools.source.exists(),
                "branch": tools.source.current_branch(),
            },
            "workflow": json.loads(state.model_dump_json()) if state else None,
        }
        if config.spec_path.is_file():
            summary = SpecMutator(config.spec_path).summary()
            report["kernel_source"]["build_id"] = summary.build_id
            report["kernel_source"]["latest_patches"] = summary.declarations

    if json_output:
        console.print(json.dumps(report, indent=2, default=str))
        return

    def mark(value: bool) -> str:
        return "[green]yes[/green]" if value else "[red]no[/red]"

    console.print("[bold]System:[/bold]")
    console.print(f"  Fedora:           {mark(report['fedora'])}")
    console.print(f"  Free space:       {report['free_space_gb']} GB")
    console.print()
    console.print("[bold]Tools:[/bold]")
    for tool, present in report["tools"].items():
        console.print(f"  {tool:<16}  {mark(present)}")
    console.print()
    console.print("[bold]Resources:[/bold]")
    console.print(f"  Path:             {resources['path']}")
    if "error" in resources:
        console.print(f"  [yellow]{resources['error']}[/yellow]")
    else:
        console.print(f"  Commit:           {resources['commit'] or 'unknown'}")
        console.print(f"  Patches:          {', '.join(resources['patches'])}")
        console.print(f"  Firmware:         {mark(resources['firmware_installed'])}")
    console.print(f"  UCM2 customized:  {mark(report['ucm2_customized'])}")
    console.print()
    signing = report["signing"]
    console.print("[bold]Signing:[/bold]")
    console.print(f"  Enabled:          {mark(signing['enabled'])}")
    console.print(f"  Key directory:    {signing['key_dir']}")
    console.print(f"  Key files:        {mark(signing['key_files'])}")
    console.print(f"  Enrolled:         {mark(signing['enrolled'])}")
    console.print(f"  Keystore cert:    {mark(signing['keystore_certificate'])}")
    console.print(f"  Keystore key:     {mark(signing['keystore_private_key'])}")
    console.print(f"  EFI:              {mark(signing['efi'])}")
    console.print()
    source = report["kernel_source"]
    console.print("[bold]Kernel source:[/bold]")
    console.print(f"  Path:             {source['path']}")
    console.print(f"  Cloned:           {mark(source['exists'])}")
    if source["branch"]:
        console.print(f"  Branch:           {source['branch']}")
    if source.get("build_id"):
        console.print(f"  Build ID:         {source['build_id']}")
    console.print()
    console.print("[bold]Workflow:[/bold]")
    if state is None:
        console.print("  No unfinished build")
    else:
        console.print(f"  Last phase:       {state.phase.value if state.phase else 'none'}")
        console.print(f"  Kernel version:   {state.kernel_version or '-'}")
        console.print(f"  Updated:          {state.timestamp.isoformat()}")
        if state.pending_enrollment:
            console.print("  [yellow]MOK enrollment pending (reboot required)[/yellow]")


@app.command("install-firmware")
def install_firmware(
    ctx: typer.Context,
    restore: Annotated[
        bool,
        typer.Option("--restore", help="Restore original UCM2 configs instead"),
    ] = False,
) -> None:
    """Install firmware and UCM2 configs, then reload ALSA."""
    with cli_errors():
        config = _load(ctx)
        log_path = _start_logging(config)
        engine = _engine(config, log_path=log_path, with_history=False)
        tools = engine.tools

        if restore:
            restored = tools.installer.restore_ucm2()
            if not restored:
                console.print("[yellow]No UCM2 backups found[/yellow]")
                return
            console.print(f"[green]Restored {len(restored)} UCM2 config(s)[/green]")
        else:
            resources = tools.resources.ensure()
            firmware = tools.installer.install_firmware(resources)
            ucm2 = tools.installer.install_ucm2(resources)
            console.print(
                f"[green]Firmware: {len(firmware.installed)} installed, "
                f"{len(firmware.unchanged)} unchanged[/green]"
            )
            console.print(
                f"[green]UCM2: {len(ucm2.installed)} installed, "
                f"{len(ucm2.unchanged)} unchanged[/green]"
            )

        if tools.runner.has("alsaucm"):
            for action in ("reset", "reload"):
                tools.runner.run(["alsaucm", "-c", "hw:0", action])
            console.print("ALSA UCM reloaded")
        else:
            console.print("[yellow]alsaucm not found, reboot to apply audio changes[/yellow]")


@app.command()
def archive(
    ctx: typer.Context,
    list_archives: Annotated[
        bool,
        typer.Option("--list", help="List existing archives"),
    ] = False,
    restore: Annotated[
        str | None,
        typer.Option("--restore", help="Extract the named archive"),
    ] = None,
    dest: Annotated[
        Path | None,
        typer.Option("--dest", help="Extraction directory for --restore"),
    ] = None,
) -> None:
    """Archive built RPMs and remove the build tree."""
    with cli_errors():
        config = _load(ctx)
        engine = _engine(config, with_history=False)
        archiver = engine.archiver

        if list_archives:
            archives = archiver.list_archives()
            if not archives:
                console.print("[yellow]No archives found[/yellow]")
                return
            console.print(f"[bold]Found {len(archives)} archive(s):[/bold]")
            for info in archives:
                console.print(f"  {info.name}  ({info.size_bytes / (1024 * 1024):.1f} MiB)")
            return

        if restore is not None:
            extracted = archiver.restore(restore, dest or Path.cwd())
            console.print(f"[green]Extracted to {extracted}[/green]")
            console.print(f"Install with: sudo dnf install {extracted}/*.rpm")
            return

        _start_logging(config)
        artifact = engine.tools.builder.find_artifact(config.kernel_version, config.build_id)
        outcome = archiver.archive_and_clean(artifact, config.kernel_dir, config.archive_rpms)

    if outcome.archive_path is not None:
        console.print(f"[green]Archive: {outcome.archive_path}[/green]")
    console.print("Build directory removed" if outcome.removed else "Build directory kept")


@app.command()
def abort(ctx: typer.Context) -> None:
    """Discard the unfinished build's saved state."""
    from fedora_kernel_builder.state import StateStore

    with cli_errors():
        config = _load(ctx)
        removed = StateStore(config.state_file).clear()
    if removed:
        console.print("[green]Workflow state discarded[/green]")
    else:
        console.print("[yellow]No unfinished build[/yellow]")


@app.command("restore-spec")
def restore_spec(ctx: typer.Context) -> None:
    """Restore kernel.spec from its pristine backup."""
    from fedora_kernel_builder.specfile import SpecMutator

    with cli_errors():
        config = _load(ctx)
        restored = SpecMutator(config.spec_path).restore()
    if not restored:
        console.print(f"[red]No backup found for {config.spec_path}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Restored {config.spec_path}[/green]")


@app.command()
def history(
    ctx: typer.Context,
    status_filter: Annotated[
        str | None,
        typer.Option("--status", help="Filter by status (succeeded, suspended, failed)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum runs to show"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List past workflow runs."""
    from fedora_kernel_builder.history import BuildHistory
    from fedora_kernel_builder.types import RunStatus

    run_status: RunStatus | None = None
    if status_filter:
        try:
            run_status = RunStatus(status_filter)
        except ValueError:
            console.print(f"[red]Invalid status: {status_filter}[/red]")
            console.print("Valid values: succeeded, suspended, failed")
            raise typer.Exit(code=1) from None

    with cli_errors():
        config = _load(ctx)
        runs = BuildHistory.open(config.db_url).list_runs(status=run_status, limit=limit)

    if not runs:
        if json_output:
            console.print("[]")
        else:
            console.print("[yellow]No runs recorded[/yellow]")
        return

    if json_output:
        output = [
            {
                "id": r.id,
                "kernel_version": r.kernel_version,
                "kernel_release": r.kernel_release,
                "status": r.status,
                "phase": r.phase,
                "error_code": r.error_code,
                "error_message": r.error_message,
                "signed": r.signed,
                "artifact_path": r.artifact_path,
                "finished_at": r.finished_at.isoformat() if r.finished_at else None,
            }
            for r in runs
        ]
        console.print(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
    console.print()
    for r in runs:
        color = {"succeeded": "green", "suspended": "yellow", "failed": "red"}.get(
            r.status, "white"
        )
        console.print(
            f"  [{color}]#{r.id} {r.kernel_version or '-'} {r.status}[/{color}]"
            f"  {r.finished_at:%Y-%m-%d %H:%M}"
        )
        if r.kernel_release:
            console.print(f"    Release: {r.kernel_release}")
        if r.phase:
            console.print(f"    Phase: {r.phase}")
        if r.error_message:
            console.print(f"    Error: {r.error_message}", markup=False)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    with cli_errors():
        settings = _load(ctx)
    if json_output:
        console.print(print_config_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Resources:           {settings.resources_dir}")
    console.print(f"  Archives:            {settings.archives_dir}")
    console.print(f"  Logs:                {settings.logs_dir}")
    console.print(f"  State file:          {settings.state_file}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Kernel version:      {settings.kernel_version or '(prompt)'}")
    console.print(f"  Fedora release:      {settings.fedora_release or '(auto-detect)'}")
    console.print(f"  Build ID:            {settings.build_id}")
    console.print(f"  Without selftests:   {settings.build_without_selftests}")
    console.print(f"  Without debug:       {settings.build_without_debug}")
    console.print(f"  Without debuginfo:   {settings.build_without_debuginfo}")
    console.print(f"  Audio fix repo:      {settings.audio_fix_repo}")
    console.print()
    console.print("[bold]Signing:[/bold]")
    console.print(f"  Enabled:             {settings.enable_signing}")
    console.print(f"  Key directory:       {settings.mok_key_dir}")
    console.print(f"  Certificate name:    {settings.mok_cert_name}")
    console.print(f"  pesign database:     {settings.pesign_db}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Archive RPMs:        {settings.archive_rpms}")
    console.print(f"  Set default kernel:  {settings.set_default_kernel}")
    console.print(f"  Log level:           {settings.log_level}")


if __name__ == "__main__":
    app()
