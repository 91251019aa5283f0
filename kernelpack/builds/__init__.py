"""Build orchestration module.

This module handles:
- Running external commands as ordered steps
- Resolving kernel configurations
- Platform rule tables and target plans
- Artifact collection and manifest generation
- Orchestrating concurrent target plans

Submodules are imported directly, e.g. ``kernelpack.builds.orchestrator``.
"""

from kernelpack.builds.runner import (
    CancelToken,
    ExecutionStep,
    StepResult,
    StepSequencer,
)

__all__ = ["CancelToken", "ExecutionStep", "StepResult", "StepSequencer"]
