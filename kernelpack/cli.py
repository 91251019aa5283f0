"""Thin CLI wrapper for kernelpack.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Exit codes of ``run``:
    0: every plan succeeded
    1: at least one plan did not succeed
    2: invalid invocation
"""

import json
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from kernelpack import __version__
from kernelpack.config import Settings, get_settings, parse_duration, print_settings_json

app = typer.Typer(
    name="kernelpack",
    help="Kernel build-and-package orchestrator - build a kernel tree into distribution packages",
    no_args_is_help=True,
)
console = Console()

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2

_STATUS_STYLES = {
    "succeeded": "green",
    "partially_succeeded": "yellow",
    "failed": "red",
    "cancelled": "magenta",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kernelpack version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Kernel build-and-package orchestrator."""
    setup_logging("DEBUG" if verbose else get_settings().log_level)


def _invalid(message: str) -> typer.Exit:
    console.print(f"[red]Error: {escape(message)}[/red]")
    return typer.Exit(code=EXIT_INVALID)


def _load_config_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise _invalid(f"Cannot read config file {path}: {e}") from None
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise _invalid(f"Config file {path} must contain a mapping of kernel options")
    return {str(key): value for key, value in data.items()}


def parse_overrides(assignments: list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` assignments.

    Raises:
        ValueError: If an assignment has no ``=`` or no key.
    """
    overrides: dict[str, str] = {}
    for assignment in assignments:
        key, sep, value = assignment.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid override '{assignment}' (expected KEY=VALUE)")
        overrides[key.strip()] = value.strip()
    return overrides


@app.command()
def run(
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Kernel git repository URL or path"),
    ],
    platforms: Annotated[
        str,
        typer.Option(
            "--platforms",
            "-p",
            help="Comma-separated platform families (debian, rpm, arch)",
        ),
    ],
    ref: Annotated[
        str | None,
        typer.Option("--ref", "-r", help="Branch or tag (default branch if omitted)"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, help="make parallelism (default: CPU count)"),
    ] = None,
    workers: Annotated[
        int | None,
        typer.Option("--workers", "-w", min=1, help="Plans built concurrently"),
    ] = None,
    timeout_per_step: Annotated[
        str | None,
        typer.Option("--timeout-per-step", help="Step timeout such as 90m or 2h"),
    ] = None,
    artifact_dir: Annotated[
        Path | None,
        typer.Option("--artifact-dir", "-o", help="Artifact root directory"),
    ] = None,
    assignments: Annotated[
        list[str] | None,
        typer.Option("--set", help="Kernel option override KEY=VALUE (repeatable)"),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config-file", help="YAML file of kernel option overrides"),
    ] = None,
    retention_days: Annotated[
        int | None,
        typer.Option("--retention-days", min=1, help="Days to keep stored artifacts"),
    ] = None,
    skip_probe: Annotated[
        bool,
        typer.Option("--skip-probe", help="Do not check that the source is reachable"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the build report as JSON"),
    ] = False,
) -> None:
    """Build the kernel for one or more platform families.

    Every platform is built in its own working directory. Artifacts land in
    a namespaced directory per platform below the artifact root, next to a
    JSON report of the whole run.
    """
    from kernelpack.builds.config_resolver import BuildConfig, find_conflicts
    from kernelpack.builds.orchestrator import BuildOrchestrator, BuildRequest
    from kernelpack.db import create_all_tables, get_engine, get_session, get_session_factory
    from kernelpack.errors import ConfigInvalidError, SourceUnavailableError
    from kernelpack.source import probe_source
    from kernelpack.storage.service import record_artifacts
    from kernelpack.types import BuildStatus

    settings = get_settings()
    updates: dict[str, Any] = {}
    if timeout_per_step is not None:
        try:
            updates["step_timeout"] = parse_duration(timeout_per_step)
        except ValueError as e:
            raise _invalid(str(e)) from None
    if artifact_dir is not None:
        updates["artifacts_dir"] = artifact_dir
    if workers is not None:
        updates["max_workers"] = workers
    if retention_days is not None:
        updates["retention_days"] = retention_days
    settings = settings.model_copy(update=updates)

    overrides: dict[str, Any] = {}
    if config_file is not None:
        overrides.update(_load_config_file(config_file))
    try:
        overrides.update(parse_overrides(assignments or []))
        resolved = BuildConfig(overrides)
        conflicts = find_conflicts(resolved)
    except (ValueError, ConfigInvalidError) as e:
        raise _invalid(str(e)) from None
    if conflicts:
        raise _invalid(f"Conflicting kernel options: {', '.join(conflicts)}")

    request_data: dict[str, Any] = {
        "source": {"url": source, "ref": ref},
        "platforms": platforms,
        "step_timeout": settings.step_timeout,
        "config_overrides": resolved.to_dict(),
    }
    if jobs is not None:
        request_data["parallelism"] = jobs
    try:
        request = BuildRequest.model_validate(request_data)
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise _invalid(f"Invalid build request: {messages}") from None

    if not skip_probe:
        try:
            probe_source(request.source, settings.work_dir / "probe")
        except SourceUnavailableError as e:
            raise _invalid(str(e)) from None

    orchestrator = BuildOrchestrator(settings=settings)
    previous_handler = signal.signal(
        signal.SIGTERM, lambda signum, frame: orchestrator.cancel()
    )
    try:
        if not json_output:
            console.print(
                f"[blue]Building {', '.join(p.value for p in request.platforms)} "
                f"from {request.source.url} ({request.source.effective_ref})...[/blue]"
            )
        report = orchestrator.run(request)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    with get_session(get_session_factory(engine)) as session:
        record_artifacts(session, report, retention_days=settings.retention_days)

    if json_output:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)

    succeeded = report.status is BuildStatus.SUCCEEDED
    raise typer.Exit(code=EXIT_SUCCESS if succeeded else EXIT_FAILURE)


def _print_report(report: Any) -> None:
    style = _STATUS_STYLES.get(report.status.value, "white")
    console.print()
    console.print(f"[bold]Run {report.run_id}:[/bold] [{style}]{report.status.value}[/{style}]")
    if report.cancelled:
        console.print("  [magenta]Run was cancelled[/magenta]")
    for plan in report.plans:
        plan_style = _STATUS_STYLES.get(plan.status.value, "white")
        console.print()
        console.print(f"  [{plan_style}]{plan.platform.value}: {plan.status.value}[/{plan_style}]")
        if plan.kernel_release:
            console.print(f"    Kernel release: {plan.kernel_release}")
        if plan.config_policy:
            console.print(f"    Config policy: {plan.config_policy.value}")
        produced = plan.produced_artifacts
        console.print(
            f"    Artifacts: {len(produced)} produced, {len(plan.missing_artifacts)} missing"
        )
        for artifact in produced:
            console.print(f"      {artifact.destination}")
        for error in plan.errors:
            prefix = "Error" if error.fatal else "Warning"
            where = f" [{error.step}]" if error.step else ""
            console.print(f"    {prefix}{where}: {error.message}", markup=False)
        failed = plan.failed_step
        if failed is not None and failed.log_path is not None:
            console.print(f"    Log: {failed.log_path}")
    if report.report_path is not None:
        console.print()
        console.print(f"Report: {report.report_path}")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        _print_settings(settings)


def _print_settings(settings: Settings) -> None:
    step_timeout = (
        f"{settings.step_timeout:g}" if settings.step_timeout is not None else "(no limit)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Install tools:       {settings.install_tools}")
    console.print(f"  Use sudo:            {settings.use_sudo}")
    console.print(f"  Reuse config:        {settings.reuse_config}")
    console.print(f"  Keep work dirs:      {settings.keep_work_dirs}")
    console.print(f"  Clone depth:         {settings.clone_depth or '(full)'}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max workers:         {settings.max_workers}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Step timeout:        {step_timeout}")
    console.print(f"  Source timeout:      {settings.source_timeout}")
    console.print()
    console.print("[bold]Retention:[/bold]")
    console.print(f"  Retention days:      {settings.retention_days}")
    console.print(f"  Output tail bytes:   {settings.output_tail_bytes}")


@app.command("platforms")
def platforms_cmd(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List supported platform families and their rules."""
    from kernelpack.builds.platforms import PLATFORM_RULES

    if json_output:
        output = [
            {
                "platform": rules.family.value,
                "label": rules.label,
                "tools": list(rules.tools),
                "packaging": [" ".join(cmd) for cmd in rules.packaging],
                "artifacts": [
                    {
                        "search_path": list(rule.search_path),
                        "pattern": rule.pattern,
                        "required": rule.required,
                    }
                    for rule in rules.artifact_rules
                ],
            }
            for rules in PLATFORM_RULES.values()
        ]
        typer.echo(json.dumps(output, indent=2))
        return

    for rules in PLATFORM_RULES.values():
        console.print(f"[green]{rules.family.value}[/green] ({rules.label})")
        console.print(f"    Tools: {', '.join(rules.tools)}")
        for cmd in rules.packaging:
            console.print(f"    Package: {' '.join(cmd)}", markup=False)
        for rule in rules.artifact_rules:
            kind = "required" if rule.required else "optional"
            console.print(
                f"    Artifact: {rule.pattern} in {', '.join(rule.search_path)} ({kind})",
                markup=False,
            )
        console.print()


artifacts_app = typer.Typer(help="Manage stored artifacts")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("list")
def artifacts_list(
    run_id: Annotated[
        str | None,
        typer.Option("--run", help="Filter by run ID"),
    ] = None,
    platform: Annotated[
        str | None,
        typer.Option("--platform", "-p", help="Filter by platform family"),
    ] = None,
    expired: Annotated[
        bool,
        typer.Option("--expired", help="Only list expired artifacts"),
    ] = False,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Maximum results"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List artifacts recorded in the artifact store."""
    from kernelpack.builds.platforms import PlatformFamily
    from kernelpack.db import create_all_tables, get_engine, get_session, get_session_factory
    from kernelpack.storage.service import list_stored_artifacts

    family = None
    if platform is not None:
        try:
            family = PlatformFamily.parse(platform).value
        except ValueError as e:
            raise _invalid(str(e)) from None

    engine = get_engine()
    create_all_tables(engine)
    now = datetime.now()

    with get_session(get_session_factory(engine)) as session:
        artifacts = list_stored_artifacts(
            session, run_id=run_id, platform=family, expired_only=expired, limit=limit
        )

        if json_output:
            typer.echo(json.dumps([a.to_dict() for a in artifacts], indent=2))
            return
        if not artifacts:
            console.print("[yellow]No artifacts found[/yellow]")
            return

        console.print(f"[bold]Found {len(artifacts)} artifact(s):[/bold]")
        console.print()
        for a in artifacts:
            console.print(f"  [green]{a.filename}[/green]")
            console.print(f"    Run: {a.run_id} ({a.platform}, {a.ref})")
            console.print(f"    Path: {a.path}")
            console.print(f"    Size: {a.size_bytes} bytes")
            if a.sha256:
                console.print(f"    SHA-256: {a.sha256}")
            expires = a.expires_at.isoformat(timespec="seconds")
            if a.is_expired(now):
                console.print(f"    Expires: {expires} [red](expired)[/red]")
            else:
                console.print(f"    Expires: {expires}")


@artifacts_app.command("prune")
def artifacts_prune(
    keep_files: Annotated[
        bool,
        typer.Option("--keep-files", help="Forget expired artifacts without deleting files"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Delete artifacts whose retention period has passed."""
    from kernelpack.db import create_all_tables, get_engine, get_session, get_session_factory
    from kernelpack.storage.service import prune_expired

    engine = get_engine()
    create_all_tables(engine)
    with get_session(get_session_factory(engine)) as session:
        pruned = prune_expired(session, delete_files=not keep_files)

        if json_output:
            typer.echo(json.dumps([a.to_dict() for a in pruned], indent=2))
        elif pruned:
            console.print(f"[green]Pruned {len(pruned)} artifact(s)[/green]")
            for a in pruned:
                console.print(f"  {a.path}")
        else:
            console.print("[yellow]No expired artifacts[/yellow]")


if __name__ == "__main__":
    app()
