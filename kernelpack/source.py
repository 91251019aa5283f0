"""Kernel source acquisition.

This module handles:
- Checking that a source repository is reachable
- Cloning a repository (optionally a specific branch) into a plan's
  working directory
- Initialising nested submodules recursively
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kernelpack.builds.runner import CancelToken, ExecutionStep, StepResult, run_step
from kernelpack.errors import SourceUnavailableError

logger = logging.getLogger(__name__)

# Timeout for reachability checks (seconds)
PROBE_TIMEOUT = 60


class SourceLocator(BaseModel):
    """Location of a kernel source tree.

    Attributes:
        url: Git repository URL or local path.
        ref: Branch or tag to check out (None for the default branch).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(min_length=1, description="Git repository URL")
    ref: str | None = Field(default=None, description="Branch or tag")

    @field_validator("ref")
    @classmethod
    def validate_ref(cls, v: str | None) -> str | None:
        """Treat an empty ref as the default branch."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @property
    def effective_ref(self) -> str:
        """Ref name used in artifact names and logs."""
        if self.ref is None:
            return "default"
        return re.sub(r"[^A-Za-z0-9_.-]+", "-", self.ref).strip("-") or "default"


def _git_failure(result: StepResult, locator: SourceLocator, action: str) -> SourceUnavailableError:
    return SourceUnavailableError(
        f"Failed to {action} {locator.url}: {result.error}",
        url=locator.url,
        output=result.output,
    )


def probe_source(
    locator: SourceLocator,
    log_dir: Path,
    timeout: float = PROBE_TIMEOUT,
) -> None:
    """Check that the repository (and ref) can be reached.

    Args:
        locator: Source locator.
        log_dir: Directory for the probe log.
        timeout: Probe timeout in seconds.

    Raises:
        SourceUnavailableError: If the repository or ref is unreachable.
    """
    command = ["git", "ls-remote", "--exit-code", locator.url]
    if locator.ref:
        command.append(locator.ref)
    else:
        command.append("HEAD")
    step = ExecutionStep(
        name="probe-source", command=tuple(command), cwd=log_dir, timeout=timeout
    )
    log_dir.mkdir(parents=True, exist_ok=True)
    result = run_step(step, log_dir / "probe-source.log")
    if not result.succeeded:
        raise _git_failure(result, locator, "reach")
    logger.info("Source %s (%s) is reachable", locator.url, locator.effective_ref)


def acquire_source(
    locator: SourceLocator,
    destination: Path,
    log_dir: Path,
    depth: int | None = None,
    timeout: float | None = None,
    cancel_token: CancelToken | None = None,
) -> Path:
    """Clone the kernel source into a plan's working directory.

    Any previous content of the destination is removed first so every plan
    starts from a clean tree.

    Args:
        locator: Source locator.
        destination: Directory receiving the checkout.
        log_dir: Directory for git logs.
        depth: Shallow clone depth (None = full history).
        timeout: Timeout per git command in seconds.
        cancel_token: Run-level cancellation token.

    Returns:
        Path to the checked-out tree.

    Raises:
        SourceUnavailableError: If cloning or submodule update fails.
    """
    if destination.exists():
        logger.info("Removing previous checkout at %s", destination)
        shutil.rmtree(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    clone = ["git", "clone"]
    if depth is not None:
        clone.extend(["--depth", str(depth)])
    if locator.ref:
        clone.extend(["--branch", locator.ref])
    clone.extend([locator.url, str(destination)])

    logger.info("Cloning %s (%s) into %s", locator.url, locator.effective_ref, destination)
    result = run_step(
        ExecutionStep(
            name="clone", command=tuple(clone), cwd=destination.parent, timeout=timeout
        ),
        log_dir / "source-clone.log",
        cancel_token=cancel_token,
    )
    if not result.succeeded:
        raise _git_failure(result, locator, "clone")

    result = run_step(
        ExecutionStep(
            name="submodules",
            command=("git", "submodule", "update", "--init", "--recursive"),
            cwd=destination,
            timeout=timeout,
        ),
        log_dir / "source-submodules.log",
        cancel_token=cancel_token,
    )
    if not result.succeeded:
        raise _git_failure(result, locator, "update submodules of")

    return destination


__all__ = [
    "SourceLocator",
    "acquire_source",
    "probe_source",
]
