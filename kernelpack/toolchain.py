"""Build dependency provisioning.

Checks that the executables a platform family needs are on PATH and, when
allowed, installs the distribution packages that provide them with apt-get.
"""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path

from kernelpack.builds.platforms import PlatformRules
from kernelpack.builds.runner import CancelToken, ExecutionStep, StepResult, run_step
from kernelpack.errors import ToolMissingError

logger = logging.getLogger(__name__)

# apt-get holds a global lock; plans must not install concurrently
_install_lock = threading.Lock()


def find_missing_tools(tools: tuple[str, ...] | list[str]) -> list[str]:
    """Return the tools that are not on PATH.

    Args:
        tools: Executable names.

    Returns:
        Missing executable names, in input order.
    """
    return [tool for tool in tools if shutil.which(tool) is None]


def install_packages(
    packages: tuple[str, ...] | list[str],
    log_dir: Path,
    use_sudo: bool = True,
    timeout: float | None = None,
    cancel_token: CancelToken | None = None,
) -> list[StepResult]:
    """Install distribution packages with apt-get.

    Args:
        packages: Package names.
        log_dir: Directory for installation logs.
        use_sudo: Prefix commands with sudo.
        timeout: Timeout per command in seconds.
        cancel_token: Run-level cancellation token.

    Returns:
        Results of the commands that ran. Installation stops at the first
        failed command, which is then the last result.
    """
    prefix = ("sudo",) if use_sudo else ()
    commands = [
        ("apt-get-update", (*prefix, "apt-get", "update")),
        ("apt-get-install", (*prefix, "apt-get", "install", "-y", *packages)),
    ]
    results: list[StepResult] = []
    with _install_lock:
        for name, command in commands:
            result = run_step(
                ExecutionStep(
                    name=name,
                    command=command,
                    cwd=log_dir,
                    timeout=timeout,
                    env={"DEBIAN_FRONTEND": "noninteractive"},
                ),
                log_dir / f"{name}.log",
                cancel_token=cancel_token,
            )
            results.append(result)
            if not result.succeeded:
                logger.error("%s failed: %s", name, result.error)
                break
    return results


def ensure_tools(
    rules: PlatformRules,
    log_dir: Path,
    install: bool = False,
    use_sudo: bool = True,
    timeout: float | None = None,
    cancel_token: CancelToken | None = None,
) -> None:
    """Make sure a platform family's tools are available.

    Args:
        rules: Platform rule table row.
        log_dir: Directory for installation logs.
        install: Install missing packages with apt-get.
        use_sudo: Prefix installation commands with sudo.
        timeout: Timeout per installation command in seconds.
        cancel_token: Run-level cancellation token.

    Raises:
        ToolMissingError: If tools are still missing.
    """
    missing = find_missing_tools(rules.tools)
    if not missing:
        logger.debug("All tools for %s are available", rules.label)
        return

    if install:
        logger.info(
            "Installing build dependencies for %s (missing: %s)",
            rules.label,
            ", ".join(missing),
        )
        log_dir.mkdir(parents=True, exist_ok=True)
        results = install_packages(
            rules.packages,
            log_dir,
            use_sudo=use_sudo,
            timeout=timeout,
            cancel_token=cancel_token,
        )
        missing = find_missing_tools(rules.tools)
        failed = next((r for r in results if not r.succeeded), None)
        if missing and failed is not None:
            raise ToolMissingError(
                missing,
                install_failure={
                    "step": failed.name,
                    "log_path": str(failed.log_path) if failed.log_path else None,
                    "error": failed.error,
                },
            )

    if missing:
        raise ToolMissingError(missing)


__all__ = ["ensure_tools", "find_missing_tools", "install_packages"]
