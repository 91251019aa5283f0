"""Shared type definitions for kernelpack.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum


class BuildStatus(str, Enum):
    """Status of a target plan or of a whole orchestration run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    CANCELLED = "cancelled"

    @property
    def is_success(self) -> bool:
        """Whether all required work completed."""
        return self in (BuildStatus.SUCCEEDED, BuildStatus.PARTIALLY_SUCCEEDED)


class StepOutcome(str, Enum):
    """Outcome of a single execution step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class ConfigPolicy(str, Enum):
    """How a kernel configuration is produced."""

    UPDATE_IN_PLACE = "update-in-place"
    GENERATE_DEFAULT = "generate-default"

    @property
    def make_target(self) -> str:
        """Kernel make target that realises the policy."""
        if self is ConfigPolicy.UPDATE_IN_PLACE:
            return "olddefconfig"
        return "defconfig"


__all__ = [
    "BuildStatus",
    "ConfigPolicy",
    "StepOutcome",
]
