"""Error taxonomy for kernelpack.

Every failure that can happen while orchestrating a build has an exception
class with a stable ``code``. Errors that happen inside a target plan are
converted to ``ErrorRecord`` instances and stored on the plan result, so the
build report surfaces them with their owning platform and step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Stable error codes
SOURCE_UNAVAILABLE = "source_unavailable"
TOOL_MISSING = "tool_missing"
CONFIG_INVALID = "config_invalid"
STEP_FAILED = "step_failed"
STEP_TIMED_OUT = "step_timed_out"
ARTIFACT_MISSING = "artifact_missing"
ARTIFACT_RELOCATION_FAILED = "artifact_relocation_failed"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal_error"


class OrchestrationError(Exception):
    """Base error for orchestration failures."""

    def __init__(self, message: str, code: str = INTERNAL_ERROR) -> None:
        super().__init__(message)
        self.code = code

    def details(self) -> dict[str, Any]:
        """Return structured details for the error record."""
        return {}


class SourceUnavailableError(OrchestrationError):
    """Raised when the kernel source cannot be acquired."""

    def __init__(self, message: str, url: str, output: str = "") -> None:
        super().__init__(message, code=SOURCE_UNAVAILABLE)
        self.url = url
        self.output = output

    def details(self) -> dict[str, Any]:
        return {"url": self.url, "output": self.output}


class ToolMissingError(OrchestrationError):
    """Raised when required build tools are not available."""

    def __init__(
        self, missing: list[str], install_failure: dict[str, Any] | None = None
    ) -> None:
        message = f"Required tools not found: {', '.join(missing)}"
        if install_failure:
            message += f" (package installation failed at {install_failure.get('step')})"
        super().__init__(message, code=TOOL_MISSING)
        self.missing = list(missing)
        self.install_failure = install_failure

    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"missing": self.missing}
        if self.install_failure:
            details["install_failure"] = self.install_failure
        return details


class ConfigInvalidError(OrchestrationError):
    """Raised when a resolved kernel configuration is inconsistent."""

    def __init__(self, message: str, conflicts: list[str] | None = None) -> None:
        super().__init__(message, code=CONFIG_INVALID)
        self.conflicts = list(conflicts or [])

    def details(self) -> dict[str, Any]:
        return {"conflicts": self.conflicts}


class StepFailedError(OrchestrationError):
    """Raised when a step exits non-zero or cannot be started."""

    def __init__(self, step_name: str, exit_code: int | None, output: str) -> None:
        if exit_code is None:
            message = f"Step '{step_name}' could not be executed"
        else:
            message = f"Step '{step_name}' failed with exit code {exit_code}"
        super().__init__(message, code=STEP_FAILED)
        self.step_name = step_name
        self.exit_code = exit_code
        self.output = output

    def details(self) -> dict[str, Any]:
        return {
            "step": self.step_name,
            "exit_code": self.exit_code,
            "output": self.output,
        }


class StepTimedOutError(OrchestrationError):
    """Raised when a step exceeds its maximum duration."""

    def __init__(self, step_name: str, timeout: float | None) -> None:
        super().__init__(
            f"Step '{step_name}' timed out after {timeout} seconds",
            code=STEP_TIMED_OUT,
        )
        self.step_name = step_name
        self.timeout = timeout

    def details(self) -> dict[str, Any]:
        return {"step": self.step_name, "timeout": self.timeout}


class ArtifactMissingError(OrchestrationError):
    """Raised when a required artifact rule matches nothing."""

    def __init__(self, pattern: str, search_path: list[str] | None = None) -> None:
        super().__init__(
            f"No artifacts matched required pattern '{pattern}'",
            code=ARTIFACT_MISSING,
        )
        self.pattern = pattern
        self.search_path = list(search_path or [])

    def details(self) -> dict[str, Any]:
        return {"pattern": self.pattern, "search_path": self.search_path}


class ArtifactRelocationError(OrchestrationError):
    """Raised when an artifact cannot be moved to its destination."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Failed to relocate artifact {path}: {reason}",
            code=ARTIFACT_RELOCATION_FAILED,
        )
        self.path = path
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"path": self.path, "reason": self.reason}


class RunCancelledError(OrchestrationError):
    """Raised when work is abandoned because the run was cancelled."""

    def __init__(self, message: str = "Run was cancelled") -> None:
        super().__init__(message, code=CANCELLED)


@dataclass
class ErrorRecord:
    """Serialisable error attached to a plan result.

    Attributes:
        code: Stable error code for programmatic handling.
        message: Human-readable error message.
        platform: Platform family owning the error.
        step: Step name, if the error belongs to a step.
        fatal: Whether the error failed the owning plan.
        details: Additional structured details.
    """

    code: str
    message: str
    platform: str | None = None
    step: str | None = None
    fatal: bool = True
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        exc: OrchestrationError,
        platform: str | None = None,
        step: str | None = None,
        fatal: bool = True,
    ) -> ErrorRecord:
        """Build a record from an orchestration error."""
        if step is None:
            step = getattr(exc, "step_name", None)
        return cls(
            code=exc.code,
            message=str(exc),
            platform=platform,
            step=step,
            fatal=fatal,
            details=exc.details(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "fatal": self.fatal,
        }
        if self.platform is not None:
            result["platform"] = self.platform
        if self.step is not None:
            result["step"] = self.step
        if self.details:
            result["details"] = self.details
        return result


__all__ = [
    "ARTIFACT_MISSING",
    "ARTIFACT_RELOCATION_FAILED",
    "CANCELLED",
    "CONFIG_INVALID",
    "INTERNAL_ERROR",
    "SOURCE_UNAVAILABLE",
    "STEP_FAILED",
    "STEP_TIMED_OUT",
    "TOOL_MISSING",
    "ArtifactMissingError",
    "ArtifactRelocationError",
    "ConfigInvalidError",
    "ErrorRecord",
    "OrchestrationError",
    "RunCancelledError",
    "SourceUnavailableError",
    "StepFailedError",
    "StepTimedOutError",
    "ToolMissingError",
]
