"""Target plans.

A TargetPlan describes one (source tree, platform family) pair of a run:
the exclusive working directory, the ordered steps and the namespaced
artifact directory. Plans are created when the orchestrator expands the
platform matrix and discarded once their result is in the build report.

Working directory layout::

    <work_root>/<run_id>/<platform>/
        linux/          kernel source tree
        arch-install/   staged install tree (arch only)
        rpmbuild/       rpm top directory (rpm only)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from kernelpack.builds.config_resolver import (
    BuildConfig,
    ConfigResolution,
    ConfigResolver,
    config_cache_key,
    config_cache_path,
    verify_applied,
)
from kernelpack.builds.platforms import PlatformFamily, PlatformRules, get_rules, render_command
from kernelpack.builds.runner import ExecutionStep, StepResult
from kernelpack.types import BuildStatus, ConfigPolicy

if TYPE_CHECKING:
    from kernelpack.builds.orchestrator import BuildRequest
    from kernelpack.config import Settings

logger = logging.getLogger(__name__)

SOURCE_DIR_NAME = "linux"
STAGE_DIR_NAME = "arch-install"

CLEAN_STEP = "clean"
CONFIGURE_STEP = "configure"
COMPILE_STEP = "compile"
KERNELRELEASE_STEP = "kernelrelease"


def artifact_namespace(run_id: str, platform: PlatformFamily, ref: str) -> str:
    """Name of a plan's artifact directory.

    Namespacing by run, platform and ref keeps concurrent and repeated runs
    from overwriting each other's outputs.
    """
    return f"kernel-artifacts-{run_id}-{platform.label}-{ref}"


@dataclass
class TargetPlan:
    """One platform family's build of a run.

    Attributes:
        platform: Platform family.
        rules: Rule table row of the platform family.
        run_id: Identifier of the owning run.
        work_dir: Exclusive working directory.
        artifact_dir: Namespaced artifact directory.
        steps: Ordered steps.
        status: Plan status.
        config_resolution: Resolution chosen by the configure step.
        config_cache: Path of the persisted config for later runs.
    """

    platform: PlatformFamily
    rules: PlatformRules
    run_id: str
    work_dir: Path
    artifact_dir: Path
    steps: list[ExecutionStep] = field(default_factory=list)
    status: BuildStatus = BuildStatus.PENDING
    config_resolution: ConfigResolution | None = None
    config_cache: Path | None = None

    @property
    def source_dir(self) -> Path:
        """Kernel source tree of the plan."""
        return self.work_dir / SOURCE_DIR_NAME

    @property
    def stage_dir(self) -> Path:
        """Staging directory for installed trees."""
        return self.work_dir / STAGE_DIR_NAME

    @property
    def log_dir(self) -> Path:
        """Directory for step logs, shipped with the artifacts."""
        return self.artifact_dir / "logs"

    def context(self, jobs: int = 1) -> dict[str, str]:
        """Placeholder values for command and search path templates."""
        return {
            "work": str(self.work_dir),
            "source": str(self.source_dir),
            "stage": str(self.stage_dir),
            "jobs": str(jobs),
        }

    def prepare_dirs(self) -> list[Path]:
        """Create the working, log and staging directories of the plan.

        Returns:
            The staging directories that were created.
        """
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        context = self.context()
        stage_dirs = [Path(t.format(**context)) for t in self.rules.stage_dirs]
        for path in stage_dirs:
            path.mkdir(parents=True, exist_ok=True)
        return stage_dirs


def load_cached_config(path: Path | None) -> BuildConfig | None:
    """Load a persisted config if there is one."""
    if path is None or not path.is_file():
        return None
    logger.info("Using cached kernel config %s", path)
    return BuildConfig.load(path)


def save_cached_config(plan: TargetPlan) -> Path | None:
    """Persist the plan's final kernel config for later runs."""
    config_file = plan.source_dir / ".config"
    if plan.config_cache is None or not config_file.is_file():
        return None
    plan.config_cache.parent.mkdir(parents=True, exist_ok=True)
    plan.config_cache.write_bytes(config_file.read_bytes())
    logger.info("Saved kernel config for %s to %s", plan.platform.value, plan.config_cache)
    return plan.config_cache


def _verify_config(config_file: Path, requested: BuildConfig, _result: StepResult) -> None:
    verify_applied(config_file, requested)


def configure_steps(
    plan: TargetPlan,
    resolver: ConfigResolver,
    overrides: BuildConfig,
    step: ExecutionStep,
) -> list[ExecutionStep]:
    """Expand the configure step once the resolver has chosen a policy.

    Update-in-place writes the merged config and lets the kernel reconcile
    it. Generate-default creates the default config, applies the resolved
    options with ``scripts/config`` and reconciles. Both end with a check
    that the kernel kept every requested override.

    Raises:
        ConfigInvalidError: If resolution fails.
    """
    existing = load_cached_config(plan.config_cache)
    resolution = resolver.resolve(existing, overrides)
    plan.config_resolution = resolution

    source = plan.source_dir
    config_file = source / ".config"
    steps: list[ExecutionStep] = []

    if resolution.policy is ConfigPolicy.UPDATE_IN_PLACE:
        resolution.config.dump(config_file)
    else:
        steps.append(
            ExecutionStep(
                name=f"{step.name}:{resolution.make_target}",
                command=("make", resolution.make_target),
                cwd=source,
                timeout=step.timeout,
            )
        )
        if len(resolution.config):
            steps.append(
                ExecutionStep(
                    name=f"{step.name}:apply-options",
                    command=(
                        "scripts/config",
                        "--file",
                        str(config_file),
                        *resolution.config.scripts_config_args(),
                    ),
                    cwd=source,
                    timeout=step.timeout,
                )
            )

    steps.append(
        ExecutionStep(
            name=f"{step.name}:olddefconfig",
            command=("make", "olddefconfig"),
            cwd=source,
            timeout=step.timeout,
            verify=partial(_verify_config, config_file, resolution.overrides),
        )
    )
    return steps


def build_target_plan(
    request: BuildRequest,
    platform: PlatformFamily,
    run_id: str,
    settings: Settings,
    resolver: ConfigResolver | None = None,
    artifacts_dir: Path | None = None,
) -> TargetPlan:
    """Create the plan for one platform family of a request.

    Args:
        request: Build request.
        platform: Platform family.
        run_id: Identifier of the run.
        settings: Application settings.
        resolver: Config resolver (settings defaults if not given).
        artifacts_dir: Artifact root (settings value if not given).

    Returns:
        TargetPlan with its full step list.
    """
    rules = get_rules(platform)
    if resolver is None:
        resolver = ConfigResolver(settings.config_defaults)
    root = artifacts_dir or settings.artifacts_dir

    plan = TargetPlan(
        platform=platform,
        rules=rules,
        run_id=run_id,
        work_dir=settings.work_dir / run_id / platform.value,
        artifact_dir=root
        / artifact_namespace(run_id, platform, request.source.effective_ref),
    )
    if settings.reuse_config:
        key = config_cache_key(request.source.url, request.source.ref, platform.value)
        plan.config_cache = config_cache_path(settings.cache_dir, key)

    context = plan.context(jobs=request.parallelism)
    source = plan.source_dir
    timeout = request.step_timeout
    overrides = BuildConfig(request.config_overrides)

    plan.steps = [
        ExecutionStep(
            name=CLEAN_STEP, command=("make", "mrproper"), cwd=source, timeout=timeout
        ),
        ExecutionStep(
            name=CONFIGURE_STEP,
            command=("make", "olddefconfig"),
            cwd=source,
            timeout=timeout,
            expand=partial(configure_steps, plan, resolver, overrides),
        ),
        ExecutionStep(
            name=COMPILE_STEP,
            command=("make", f"-j{request.parallelism}"),
            cwd=source,
            timeout=timeout,
        ),
        ExecutionStep(
            name=KERNELRELEASE_STEP,
            command=("make", "-s", "kernelrelease"),
            cwd=source,
            required=False,
            timeout=timeout,
        ),
    ]
    for index, template in enumerate(rules.packaging, start=1):
        name = "package" if len(rules.packaging) == 1 else f"package-{index}"
        plan.steps.append(
            ExecutionStep(
                name=name,
                command=tuple(render_command(template, context)),
                cwd=source,
                timeout=timeout,
            )
        )
    return plan


__all__ = [
    "CLEAN_STEP",
    "COMPILE_STEP",
    "CONFIGURE_STEP",
    "KERNELRELEASE_STEP",
    "TargetPlan",
    "artifact_namespace",
    "build_target_plan",
    "configure_steps",
    "load_cached_config",
    "save_cached_config",
]
