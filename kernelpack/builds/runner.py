"""Step execution for target plans.

This module handles:
- Executing a single external tool invocation (ExecutionStep)
- Capturing merged stdout/stderr to per-step log files
- Enforcing per-step timeouts and run-level cancellation
- Sequencing steps with required/best-effort failure policies

Steps are never retried: build tools are not idempotent mid-failure, so a
retry is a fresh build request.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

from kernelpack.errors import (
    OrchestrationError,
    RunCancelledError,
    StepFailedError,
    StepTimedOutError,
)
from kernelpack.types import StepOutcome

logger = logging.getLogger(__name__)

# Bytes of output kept on a StepResult
DEFAULT_OUTPUT_LIMIT = 8192

# Seconds between checks for timeout and cancellation
POLL_INTERVAL = 0.1

# Seconds a terminated process gets before it is killed
TERMINATE_GRACE = 5.0

StepExpander = Callable[["ExecutionStep"], Sequence["ExecutionStep"]]
StepVerifier = Callable[["StepResult"], None]


@dataclass(frozen=True)
class ExecutionStep:
    """A single invocation of an external tool.

    Attributes:
        name: Step name, unique within a plan.
        command: Command as argv tuple.
        cwd: Working directory of the command.
        required: Whether a failure is fatal to the owning plan.
        timeout: Maximum duration in seconds (None = sequencer default).
        env: Environment variable overrides.
        expand: Hook producing the concrete steps to run in place of this
            one. Called right before the step's turn.
        verify: Hook called after a successful run. Raising an
            OrchestrationError turns the step into a failure.
    """

    name: str
    command: tuple[str, ...]
    cwd: Path
    required: bool = True
    timeout: float | None = None
    env: Mapping[str, str] | None = field(default=None, compare=False)
    expand: StepExpander | None = field(default=None, compare=False, repr=False)
    verify: StepVerifier | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", tuple(str(c) for c in self.command))
        object.__setattr__(self, "cwd", Path(self.cwd))

    @property
    def command_str(self) -> str:
        """Shell-quoted command string for logs and reports."""
        return shlex.join(self.command)


@dataclass(frozen=True)
class StepResult:
    """Captured result of an execution step.

    Attributes:
        name: Step name.
        command: The command that was (or would have been) executed.
        outcome: Step outcome.
        required: Required-success flag of the step.
        exit_code: Process exit code (None if no process finished).
        output: Tail of the merged stdout/stderr.
        truncated: Whether output was truncated.
        duration: Wall-clock duration in seconds.
        timeout: Effective timeout in seconds.
        log_path: Full log of the step.
        error: Error message if the step did not succeed.
    """

    name: str
    command: str
    outcome: StepOutcome
    required: bool = True
    exit_code: int | None = None
    output: str = ""
    truncated: bool = False
    duration: float = 0.0
    timeout: float | None = None
    log_path: Path | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the step succeeded."""
        return self.outcome is StepOutcome.SUCCEEDED

    @classmethod
    def not_run(
        cls, step: ExecutionStep, outcome: StepOutcome, reason: str
    ) -> StepResult:
        """Result for a step that never started a process."""
        return cls(
            name=step.name,
            command=step.command_str,
            outcome=outcome,
            required=step.required,
            error=reason,
        )


class CancelToken:
    """Run-level cancellation signal shared by all plans of a run.

    In-flight processes are registered with the token; cancelling sends each
    of them a termination request.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen[bytes]] = set()

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation and terminate all registered processes."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            processes = list(self._processes)
        logger.warning(
            "Cancellation requested; terminating %d running step(s)", len(processes)
        )
        for proc in processes:
            terminate_process(proc)

    def register(self, proc: subprocess.Popen[bytes]) -> None:
        """Track an in-flight process."""
        with self._lock:
            self._processes.add(proc)
            cancelled = self._event.is_set()
        if cancelled:
            terminate_process(proc)

    def unregister(self, proc: subprocess.Popen[bytes]) -> None:
        """Stop tracking a finished process."""
        with self._lock:
            self._processes.discard(proc)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancellation is requested or the timeout expires."""
        return self._event.wait(timeout)


def terminate_process(
    proc: subprocess.Popen[bytes], sig: int = signal.SIGTERM
) -> None:
    """Send a signal to the process group of a step."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _stop_process(proc: subprocess.Popen[bytes], grace: float = TERMINATE_GRACE) -> None:
    terminate_process(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d ignored SIGTERM, killing it", proc.pid)
        terminate_process(proc, signal.SIGKILL)
        proc.wait()


def _wait_for_process(
    proc: subprocess.Popen[bytes],
    timeout: float | None,
    cancel_token: CancelToken | None,
    start: float,
) -> tuple[StepOutcome, str | None]:
    deadline = start + timeout if timeout is not None else None
    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass
        if deadline is not None and time.monotonic() >= deadline:
            _stop_process(proc)
            return StepOutcome.TIMED_OUT, f"Step timed out after {timeout} seconds"
        if cancel_token is not None and cancel_token.is_cancelled:
            _stop_process(proc)
            return StepOutcome.CANCELLED, "Step was cancelled"

    if proc.returncode != 0:
        if cancel_token is not None and cancel_token.is_cancelled:
            return StepOutcome.CANCELLED, "Step was cancelled"
        return StepOutcome.FAILED, f"Exit code {proc.returncode}"
    return StepOutcome.SUCCEEDED, None


def read_output_tail(
    log_path: Path, start: int, end: int, limit: int
) -> tuple[str, bool]:
    """Read the tail of a byte range of a log file.

    Args:
        log_path: Log file path.
        start: Offset of the first output byte.
        end: Offset after the last output byte.
        limit: Maximum bytes to return.

    Returns:
        Tuple of (decoded output, truncated flag).
    """
    length = max(end - start, 0)
    truncated = length > limit
    with log_path.open("rb") as f:
        f.seek(max(start, end - limit))
        data = f.read(min(length, limit))
    return data.decode("utf-8", errors="replace"), truncated


def run_step(
    step: ExecutionStep,
    log_path: Path,
    cancel_token: CancelToken | None = None,
    output_limit: int = DEFAULT_OUTPUT_LIMIT,
    timeout: float | None = None,
) -> StepResult:
    """Execute a step exactly once.

    Args:
        step: Step to execute.
        log_path: File receiving the merged stdout/stderr.
        cancel_token: Run-level cancellation token.
        output_limit: Bytes of output kept on the result.
        timeout: Default timeout used when the step has none.

    Returns:
        StepResult with execution details.
    """
    effective_timeout = step.timeout if step.timeout is not None else timeout
    if cancel_token is not None and cancel_token.is_cancelled:
        return StepResult.not_run(
            step, StepOutcome.CANCELLED, "Run was cancelled before the step started"
        )

    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = step.command_str
    logger.info("Running step %s: %s", step.name, cmd_str)
    logger.debug("Working directory: %s", step.cwd)

    env: dict[str, str] | None = None
    if step.env:
        env = dict(os.environ)
        env.update(step.env)

    started_at = datetime.now(timezone.utc)
    start = time.monotonic()
    exit_code: int | None = None

    with log_path.open("wb") as log_file:
        header = (
            f"# Step: {step.name}\n"
            f"# Command: {cmd_str}\n"
            f"# Started: {started_at.isoformat()}\n"
            f"# CWD: {step.cwd}\n"
            "# " + "=" * 70 + "\n\n"
        )
        log_file.write(header.encode("utf-8"))
        log_file.flush()
        output_start = log_file.tell()

        try:
            proc = subprocess.Popen(
                list(step.command),
                cwd=step.cwd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            outcome = StepOutcome.FAILED
            error: str | None = f"Failed to execute {step.command[0]}: {e}"
            log_file.write(f"{error}\n".encode())
        else:
            if cancel_token is not None:
                cancel_token.register(proc)
            try:
                outcome, error = _wait_for_process(
                    proc, effective_timeout, cancel_token, start
                )
            finally:
                if cancel_token is not None:
                    cancel_token.unregister(proc)
            exit_code = proc.returncode

    duration = time.monotonic() - start
    output_end = log_path.stat().st_size
    output, truncated = read_output_tail(log_path, output_start, output_end, output_limit)

    with log_path.open("a", encoding="utf-8") as log_file:
        log_file.write(f"\n# Finished: {datetime.now(timezone.utc).isoformat()}\n")
        log_file.write(f"# Outcome: {outcome.value}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if outcome is StepOutcome.SUCCEEDED:
        logger.info("Step %s succeeded in %.1fs", step.name, duration)
    else:
        logger.error("Step %s %s: %s. See log: %s", step.name, outcome.value, error, log_path)

    return StepResult(
        name=step.name,
        command=cmd_str,
        outcome=outcome,
        required=step.required,
        exit_code=exit_code,
        output=output,
        truncated=truncated,
        duration=duration,
        timeout=effective_timeout,
        log_path=log_path,
        error=error,
    )


def _error_for(result: StepResult) -> OrchestrationError:
    if result.outcome is StepOutcome.TIMED_OUT:
        return StepTimedOutError(result.name, result.timeout)
    if result.outcome is StepOutcome.CANCELLED:
        return RunCancelledError(f"Step '{result.name}' was cancelled")
    return StepFailedError(result.name, result.exit_code, result.output)


def _log_name(index: int, step_name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", step_name).strip("-") or "step"
    return f"{index:02d}-{slug}.log"


@dataclass
class SequenceResult:
    """Result of running an ordered list of steps.

    Attributes:
        steps: One result per step, in execution order.
        error: The fatal error that halted the sequence, if any.
        best_effort_errors: Failures of steps that were not required.
        cancelled: Whether the run was cancelled during the sequence.
    """

    steps: list[StepResult] = field(default_factory=list)
    error: OrchestrationError | None = None
    best_effort_errors: list[OrchestrationError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def halted(self) -> bool:
        """Whether a required step failed."""
        return self.error is not None

    @property
    def succeeded(self) -> bool:
        """Whether every required step succeeded."""
        return self.error is None and not self.cancelled

    def result_for(self, name: str) -> StepResult | None:
        """Return the result of a step by name."""
        for result in self.steps:
            if result.name == name:
                return result
        return None


class StepSequencer:
    """Run the steps of one target plan strictly in order."""

    def __init__(
        self,
        log_dir: Path,
        cancel_token: CancelToken | None = None,
        default_timeout: float | None = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
    ) -> None:
        self.log_dir = log_dir
        self.cancel_token = cancel_token or CancelToken()
        self.default_timeout = default_timeout
        self.output_limit = output_limit

    def execute(self, steps: Sequence[ExecutionStep]) -> SequenceResult:
        """Execute steps in order.

        A failed required step halts the sequence: every later step is
        recorded as skipped and never started. Best-effort failures are
        recorded and the sequence continues. After cancellation, steps that
        have not started are recorded as cancelled.

        Args:
            steps: Ordered steps.

        Returns:
            SequenceResult with one StepResult per step.
        """
        result = SequenceResult()
        pending: deque[ExecutionStep] = deque(steps)
        index = 0

        while pending:
            step = pending.popleft()

            if result.error is not None:
                result.steps.append(
                    StepResult.not_run(
                        step, StepOutcome.SKIPPED, "Skipped after a required step failed"
                    )
                )
                continue

            if self.cancel_token.is_cancelled:
                result.cancelled = True
                result.steps.append(
                    StepResult.not_run(
                        step, StepOutcome.CANCELLED, "Run was cancelled"
                    )
                )
                continue

            if step.expand is not None:
                try:
                    expanded = list(step.expand(step))
                except OrchestrationError as exc:
                    failed = StepResult.not_run(step, StepOutcome.FAILED, str(exc))
                    self._record_failure(result, step, failed, exc)
                    continue
                logger.debug(
                    "Step %s expanded to: %s",
                    step.name,
                    ", ".join(s.name for s in expanded),
                )
                pending.extendleft(reversed(expanded))
                continue

            index += 1
            step_result = run_step(
                step,
                self.log_dir / _log_name(index, step.name),
                cancel_token=self.cancel_token,
                output_limit=self.output_limit,
                timeout=self.default_timeout,
            )

            if step_result.outcome is StepOutcome.CANCELLED:
                result.cancelled = True
                result.steps.append(step_result)
                continue

            if not step_result.succeeded:
                self._record_failure(result, step, step_result, _error_for(step_result))
                continue

            if step.verify is not None:
                try:
                    step.verify(step_result)
                except OrchestrationError as exc:
                    failed = replace(
                        step_result, outcome=StepOutcome.FAILED, error=str(exc)
                    )
                    self._record_failure(result, step, failed, exc)
                    continue

            result.steps.append(step_result)

        return result

    @staticmethod
    def _record_failure(
        result: SequenceResult,
        step: ExecutionStep,
        step_result: StepResult,
        exc: OrchestrationError,
    ) -> None:
        result.steps.append(step_result)
        if step.required:
            logger.error("Required step %s failed: %s", step.name, exc)
            result.error = exc
        else:
            logger.warning("Best-effort step %s failed: %s", step.name, exc)
            result.best_effort_errors.append(exc)


__all__ = [
    "DEFAULT_OUTPUT_LIMIT",
    "CancelToken",
    "ExecutionStep",
    "SequenceResult",
    "StepResult",
    "StepSequencer",
    "read_output_tail",
    "run_step",
    "terminate_process",
]
