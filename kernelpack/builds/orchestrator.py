"""Build orchestration.

This module provides the top-level build API:
- BuildOrchestrator.run(): expand the platform matrix, run every target
  plan in isolation with bounded parallelism and aggregate a BuildReport
- BuildOrchestrator.cancel(): run-level cancellation

Each plan owns its working directory and its artifact namespace, so plans
share nothing but the report, whose writes are serialised by a lock. The
report lists plans in request order, independent of completion order.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kernelpack.builds.artifacts import (
    ArtifactCollector,
    ArtifactRecord,
    collection_errors,
    generate_manifest,
    write_manifest,
)
from kernelpack.builds.config_resolver import ConfigResolver
from kernelpack.builds.plan import (
    KERNELRELEASE_STEP,
    TargetPlan,
    build_target_plan,
    save_cached_config,
)
from kernelpack.builds.platforms import PlatformFamily, PlatformRules
from kernelpack.builds.runner import CancelToken, StepResult, StepSequencer
from kernelpack.config import Settings, get_settings
from kernelpack.errors import (
    ARTIFACT_RELOCATION_FAILED,
    INTERNAL_ERROR,
    ErrorRecord,
    OrchestrationError,
    RunCancelledError,
)
from kernelpack.source import SourceLocator, acquire_source
from kernelpack.toolchain import ensure_tools
from kernelpack.types import BuildStatus, ConfigPolicy, StepOutcome

logger = logging.getLogger(__name__)

# Seconds between checks for interrupts while waiting for plans
WAIT_INTERVAL = 0.5

SourceProvider = Callable[[SourceLocator, Path, Path, CancelToken], Path]
ToolProvisioner = Callable[[PlatformRules, Path, CancelToken], None]
PlanFactory = Callable[["BuildRequest", PlatformFamily, str], TargetPlan]


def _default_parallelism() -> int:
    return os.cpu_count() or 1


class BuildRequest(BaseModel):
    """Immutable input of an orchestration run.

    Attributes:
        source: Kernel source locator.
        platforms: Requested platform families (non-empty, no duplicates).
        parallelism: Parallelism hint passed to make as ``-j``.
        step_timeout: Maximum duration of each step in seconds.
        config_overrides: Kernel options overriding the resolved config.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: SourceLocator
    platforms: tuple[PlatformFamily, ...] = Field(min_length=1)
    parallelism: int = Field(default_factory=_default_parallelism, ge=1)
    step_timeout: float | None = Field(default=None, gt=0)
    config_overrides: dict[str, bool | int | str] = Field(default_factory=dict)

    @field_validator("platforms", mode="before")
    @classmethod
    def parse_platforms(cls, v: Any) -> tuple[PlatformFamily, ...]:
        """Accept platform names and aliases; drop duplicates."""
        if isinstance(v, str):
            v = [p for p in v.split(",") if p.strip()]
        platforms: list[PlatformFamily] = []
        for item in v:
            family = item if isinstance(item, PlatformFamily) else PlatformFamily.parse(item)
            if family not in platforms:
                platforms.append(family)
        return tuple(platforms)


class PlanResult(BaseModel):
    """Result of one target plan.

    Attributes:
        platform: Platform family.
        status: Final plan status.
        work_dir: Working directory of the plan.
        artifact_dir: Namespaced artifact directory.
        config_policy: Config resolution policy, if configure ran.
        kernel_release: Kernel release string, if known.
        steps: Step results in execution order.
        artifacts: Artifact records.
        errors: Every error of the plan, fatal or not.
        started_at: Plan start time.
        finished_at: Plan finish time.
    """

    platform: PlatformFamily
    status: BuildStatus
    work_dir: Path
    artifact_dir: Path
    config_policy: ConfigPolicy | None = None
    kernel_release: str | None = None
    steps: list[StepResult] = Field(default_factory=list)
    artifacts: list[ArtifactRecord] = Field(default_factory=list)
    errors: list[ErrorRecord] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def produced_artifacts(self) -> list[ArtifactRecord]:
        """Artifacts that were relocated."""
        return [a for a in self.artifacts if a.ok]

    @property
    def missing_artifacts(self) -> list[ArtifactRecord]:
        """Artifacts that were expected but not found."""
        return [a for a in self.artifacts if a.missing]

    @property
    def failed_step(self) -> StepResult | None:
        """The required step that failed the plan, if any."""
        for step in self.steps:
            if step.required and step.outcome in (StepOutcome.FAILED, StepOutcome.TIMED_OUT):
                return step
        return None


class BuildReport(BaseModel):
    """Aggregate result of an orchestration run.

    Attributes:
        run_id: Identifier of the run.
        source: Kernel source locator.
        status: Overall status.
        plans: One result per requested platform, in request order.
        cancelled: Whether cancellation was requested.
        started_at: Run start time.
        finished_at: Run finish time.
        report_path: Where the report was written.
    """

    run_id: str
    source: SourceLocator
    status: BuildStatus
    plans: list[PlanResult]
    cancelled: bool = False
    started_at: datetime
    finished_at: datetime
    report_path: Path | None = None

    def plan_for(self, platform: PlatformFamily) -> PlanResult:
        """Return the result of a platform's plan."""
        for plan in self.plans:
            if plan.platform is platform:
                return plan
        raise KeyError(platform.value)

    @property
    def errors(self) -> list[ErrorRecord]:
        """Every error of every plan."""
        return [e for plan in self.plans for e in plan.errors]


def aggregate_status(statuses: Iterable[BuildStatus], cancelled: bool = False) -> BuildStatus:
    """Fold plan statuses into the overall run status.

    Args:
        statuses: Final plan statuses.
        cancelled: Whether the run was cancelled.

    Returns:
        SUCCEEDED if every plan succeeded, FAILED (or CANCELLED for a
        cancelled run) if none did, PARTIALLY_SUCCEEDED otherwise.
    """
    statuses = list(statuses)
    if statuses and all(s is BuildStatus.SUCCEEDED for s in statuses):
        return BuildStatus.SUCCEEDED
    if not any(s.is_success for s in statuses):
        if cancelled and BuildStatus.CANCELLED in statuses:
            return BuildStatus.CANCELLED
        return BuildStatus.FAILED
    return BuildStatus.PARTIALLY_SUCCEEDED


def new_run_id() -> str:
    """Create a unique run identifier."""
    return f"{datetime.now(timezone.utc):%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


def report_filename(run_id: str) -> str:
    """File name of a run's report inside the artifact root."""
    return f"kernel-report-{run_id}.json"


def write_report(report: BuildReport, output_path: Path) -> Path:
    """Write a build report to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.info("Wrote build report to %s", output_path)
    return output_path


class BuildOrchestrator:
    """Run one target plan per requested platform and aggregate the results."""

    def __init__(
        self,
        settings: Settings | None = None,
        max_workers: int | None = None,
        artifacts_dir: Path | None = None,
        source_provider: SourceProvider | None = None,
        tool_provisioner: ToolProvisioner | None = None,
        plan_factory: PlanFactory | None = None,
        collector: ArtifactCollector | None = None,
        on_plan_complete: Callable[[PlanResult], None] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.max_workers = max_workers or self.settings.max_workers
        self.artifacts_dir = artifacts_dir or self.settings.artifacts_dir
        self.resolver = ConfigResolver(self.settings.config_defaults)
        self.source_provider = source_provider or self._acquire_source
        self.tool_provisioner = tool_provisioner or self._provision_tools
        self.plan_factory = plan_factory or self._build_plan
        self.collector = collector or ArtifactCollector()
        self.on_plan_complete = on_plan_complete
        self.cancel_token = CancelToken()
        self._lock = threading.Lock()
        self._results: dict[PlatformFamily, PlanResult] = {}

    def cancel(self) -> None:
        """Cancel the run.

        Running steps receive a termination request and steps that have not
        started are skipped. Plans that already succeeded keep their result.
        Called between runs, it cancels the next run. Every run ends with a
        fresh token, so later runs are unaffected.
        """
        self.cancel_token.cancel()

    def run(self, request: BuildRequest, run_id: str | None = None) -> BuildReport:
        """Build every requested platform.

        Args:
            request: Build request.
            run_id: Run identifier (generated if not given).

        Returns:
            BuildReport with one PlanResult per requested platform.
        """
        run_id = run_id or new_run_id()
        started_at = datetime.now(timezone.utc)
        self._results = {}
        try:
            return self._run(request, run_id, started_at)
        finally:
            self.cancel_token = CancelToken()

    def _run(self, request: BuildRequest, run_id: str, started_at: datetime) -> BuildReport:
        plans = [self.plan_factory(request, platform, run_id) for platform in request.platforms]
        workers = max(1, min(self.max_workers, len(plans)))
        logger.info(
            "Run %s: building %s from %s (%s) with %d worker(s)",
            run_id,
            ", ".join(p.platform.value for p in plans),
            request.source.url,
            request.source.effective_ref,
            workers,
        )

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kernelpack") as executor:
            futures = [executor.submit(self._run_plan, request, plan) for plan in plans]
            self._wait(futures)

        with self._lock:
            results = [self._results[plan.platform] for plan in plans]

        cancelled = self.cancel_token.is_cancelled
        status = aggregate_status((r.status for r in results), cancelled=cancelled)
        report = BuildReport(
            run_id=run_id,
            source=request.source,
            status=status,
            plans=results,
            cancelled=cancelled,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            report_path=self.artifacts_dir / report_filename(run_id),
        )
        if report.report_path is not None:
            write_report(report, report.report_path)
        logger.info("Run %s finished: %s", run_id, status.value)
        return report

    def _wait(self, futures: list[Future[None]]) -> None:
        pending = set(futures)
        while pending:
            try:
                _, pending = wait(pending, timeout=WAIT_INTERVAL)
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling run")
                self.cancel()

    def _run_plan(self, request: BuildRequest, plan: TargetPlan) -> None:
        started_at = datetime.now(timezone.utc)
        try:
            result = self._execute_plan(request, plan, started_at)
        except Exception as e:
            # Contain the failure to its own plan
            logger.exception("Plan %s failed unexpectedly", plan.platform.value)
            plan.status = BuildStatus.FAILED
            result = self._plan_result(
                plan,
                started_at,
                errors=[
                    ErrorRecord(
                        code=INTERNAL_ERROR,
                        message=f"Unexpected error: {e}",
                        platform=plan.platform.value,
                    )
                ],
            )

        with self._lock:
            self._results[plan.platform] = result
        logger.info("Plan %s finished: %s", plan.platform.value, result.status.value)
        if self.on_plan_complete is not None:
            self.on_plan_complete(result)

    def _execute_plan(
        self, request: BuildRequest, plan: TargetPlan, started_at: datetime
    ) -> PlanResult:
        platform = plan.platform.value

        if self.cancel_token.is_cancelled:
            plan.status = BuildStatus.CANCELLED
            return self._plan_result(
                plan,
                started_at,
                steps=[
                    StepResult.not_run(s, StepOutcome.CANCELLED, "Run was cancelled")
                    for s in plan.steps
                ],
                errors=[
                    ErrorRecord.from_exception(
                        RunCancelledError("Run was cancelled before the plan started"),
                        platform,
                    )
                ],
            )

        plan.status = BuildStatus.RUNNING
        plan.prepare_dirs()
        logger.info("Starting plan %s in %s", platform, plan.work_dir)

        try:
            self.tool_provisioner(plan.rules, plan.log_dir, self.cancel_token)
            self.source_provider(request.source, plan.source_dir, plan.log_dir, self.cancel_token)
        except OrchestrationError as e:
            plan.status = (
                BuildStatus.CANCELLED if self.cancel_token.is_cancelled else BuildStatus.FAILED
            )
            logger.error("Plan %s aborted before building: %s", platform, e)
            return self._plan_result(
                plan,
                started_at,
                steps=[
                    StepResult.not_run(s, StepOutcome.SKIPPED, str(e)) for s in plan.steps
                ],
                errors=[ErrorRecord.from_exception(e, platform)],
            )

        sequencer = StepSequencer(
            plan.log_dir,
            cancel_token=self.cancel_token,
            default_timeout=request.step_timeout or self.settings.step_timeout,
            output_limit=self.settings.output_tail_bytes,
        )
        sequence = sequencer.execute(plan.steps)

        errors = [
            ErrorRecord.from_exception(e, platform, fatal=False)
            for e in sequence.best_effort_errors
        ]
        if sequence.error is not None:
            errors.append(ErrorRecord.from_exception(sequence.error, platform))
            plan.status = BuildStatus.FAILED
            return self._plan_result(plan, started_at, sequence.steps, errors=errors)
        if sequence.cancelled:
            errors.append(ErrorRecord.from_exception(RunCancelledError(), platform))
            plan.status = BuildStatus.CANCELLED
            return self._plan_result(plan, started_at, sequence.steps, errors=errors)

        records = self.collector.collect(plan)
        for fatal in collection_errors(records):
            errors.append(ErrorRecord.from_exception(fatal, platform))
        for record in records:
            if not record.required and record.error is not None:
                errors.append(
                    ErrorRecord(
                        code=ARTIFACT_RELOCATION_FAILED,
                        message=record.error,
                        platform=platform,
                        fatal=False,
                        details={"path": str(record.source_path)},
                    )
                )

        manifest = generate_manifest(
            records,
            run_id=plan.run_id,
            platform=platform,
            source=request.source.model_dump(),
            extra_metadata={"kernel_release": _kernel_release(sequence.steps)},
        )
        write_manifest(manifest, plan.artifact_dir / "manifest.json")

        if any(e.fatal for e in errors):
            plan.status = BuildStatus.FAILED
        elif self.cancel_token.is_cancelled:
            errors.append(ErrorRecord.from_exception(RunCancelledError(), platform))
            plan.status = BuildStatus.CANCELLED
        elif errors:
            plan.status = BuildStatus.PARTIALLY_SUCCEEDED
        else:
            plan.status = BuildStatus.SUCCEEDED

        if plan.status.is_success:
            save_cached_config(plan)
            if not self.settings.keep_work_dirs:
                shutil.rmtree(plan.work_dir, ignore_errors=True)

        return self._plan_result(plan, started_at, sequence.steps, records, errors)

    @staticmethod
    def _plan_result(
        plan: TargetPlan,
        started_at: datetime,
        steps: list[StepResult] | None = None,
        artifacts: list[ArtifactRecord] | None = None,
        errors: list[ErrorRecord] | None = None,
    ) -> PlanResult:
        steps = steps or []
        return PlanResult(
            platform=plan.platform,
            status=plan.status,
            work_dir=plan.work_dir,
            artifact_dir=plan.artifact_dir,
            config_policy=plan.config_resolution.policy if plan.config_resolution else None,
            kernel_release=_kernel_release(steps),
            steps=steps,
            artifacts=artifacts or [],
            errors=errors or [],
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    def _build_plan(
        self, request: BuildRequest, platform: PlatformFamily, run_id: str
    ) -> TargetPlan:
        return build_target_plan(
            request,
            platform,
            run_id,
            self.settings,
            resolver=self.resolver,
            artifacts_dir=self.artifacts_dir,
        )

    def _acquire_source(
        self,
        locator: SourceLocator,
        destination: Path,
        log_dir: Path,
        cancel_token: CancelToken,
    ) -> Path:
        return acquire_source(
            locator,
            destination,
            log_dir,
            depth=self.settings.clone_depth,
            timeout=self.settings.source_timeout,
            cancel_token=cancel_token,
        )

    def _provision_tools(
        self, rules: PlatformRules, log_dir: Path, cancel_token: CancelToken
    ) -> None:
        ensure_tools(
            rules,
            log_dir,
            install=self.settings.install_tools,
            use_sudo=self.settings.use_sudo,
            cancel_token=cancel_token,
        )


def _kernel_release(steps: list[StepResult]) -> str | None:
    for step in steps:
        if step.name == KERNELRELEASE_STEP and step.succeeded:
            lines = step.output.strip().splitlines()
            return lines[-1].strip() if lines else None
    return None


__all__ = [
    "BuildOrchestrator",
    "BuildReport",
    "BuildRequest",
    "PlanResult",
    "aggregate_status",
    "new_run_id",
    "report_filename",
    "write_report",
]
