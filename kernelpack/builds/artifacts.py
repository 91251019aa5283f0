"""Artifact collection and manifest generation.

This module handles:
- Evaluating a plan's artifact rules in order
- Relocating matches into the plan's namespaced artifact directory
- Recording produced, missing and failed artifacts
- Computing checksums
- Generating per-plan manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kernelpack.errors import (
    ArtifactMissingError,
    ArtifactRelocationError,
    OrchestrationError,
)
from kernelpack.types import BuildStatus

if TYPE_CHECKING:
    from kernelpack.builds.plan import TargetPlan

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class ArtifactRecord:
    """An artifact a plan produced, or was expected to produce.

    Attributes:
        platform: Platform family of the owning plan.
        pattern: Pattern of the rule that matched.
        required: Whether the rule was required.
        source_path: Where the artifact was found.
        destination: Where the artifact was moved to.
        size_bytes: File size (total size for directories).
        sha256: SHA-256 hash (files only).
        missing: Whether a rule expected the artifact but nothing matched.
        error: Relocation error message, if relocation failed.
    """

    platform: str
    pattern: str
    required: bool
    source_path: Path | None = None
    destination: Path | None = None
    size_bytes: int = 0
    sha256: str | None = None
    missing: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the artifact was relocated."""
        return not self.missing and self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["source_path"] = str(self.source_path) if self.source_path else None
        data["destination"] = str(self.destination) if self.destination else None
        return data


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def path_size(path: Path) -> int:
    """Size of a file, or total size of the files below a directory."""
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file() and not p.is_symlink())
    return path.stat().st_size


def relocate(source: Path, destination_dir: Path) -> Path:
    """Move an artifact into a destination directory.

    Existing destinations are never overwritten.

    Args:
        source: File or directory to move.
        destination_dir: Target directory.

    Returns:
        Path of the moved artifact.

    Raises:
        ArtifactRelocationError: If the move fails or the destination exists.
    """
    target = destination_dir / source.name
    if target.exists():
        raise ArtifactRelocationError(str(source), f"destination exists: {target}")
    try:
        destination_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
    except OSError as e:
        raise ArtifactRelocationError(str(source), str(e)) from e
    return target


class ArtifactCollector:
    """Harvest a plan's outputs according to its artifact rules."""

    def __init__(self, hash_files: bool = True) -> None:
        self.hash_files = hash_files

    def collect(self, plan: TargetPlan) -> list[ArtifactRecord]:
        """Collect the artifacts of a plan.

        Rules are evaluated in order. Every match is moved into the plan's
        artifact directory. A required rule that matches nothing, or a
        required artifact that cannot be moved, fails the plan. Failures of
        non-required rules are recorded on the returned records only.

        Args:
            plan: Plan whose steps have completed.

        Returns:
            One record per relocated, failed or missing artifact.
        """
        context = plan.context()
        records: list[ArtifactRecord] = []

        for rule in plan.rules.artifact_rules:
            directories = rule.directories(context)
            matches: list[Path] = []
            for directory in directories:
                if directory.is_dir():
                    matches.extend(
                        p for p in sorted(directory.glob(rule.pattern)) if p not in matches
                    )

            if not matches:
                if rule.required:
                    logger.error(
                        "No artifacts matched required pattern %s in %s",
                        rule.pattern,
                        ", ".join(str(d) for d in directories),
                    )
                    records.append(
                        ArtifactRecord(
                            platform=plan.platform.value,
                            pattern=rule.pattern,
                            required=True,
                            missing=True,
                        )
                    )
                else:
                    logger.debug("Optional pattern %s matched nothing", rule.pattern)
                continue

            destination_dir = (plan.artifact_dir / rule.destination).resolve()
            for match in matches:
                records.append(self._relocate(plan, rule.pattern, rule.required, match, destination_dir))

        fatal = collection_errors(records)
        if fatal:
            plan.status = BuildStatus.FAILED
        logger.info(
            "Collected %d artifact(s) for %s (%d fatal error(s))",
            sum(1 for r in records if r.ok),
            plan.platform.value,
            len(fatal),
        )
        return records

    def _relocate(
        self,
        plan: TargetPlan,
        pattern: str,
        required: bool,
        match: Path,
        destination_dir: Path,
    ) -> ArtifactRecord:
        record = ArtifactRecord(
            platform=plan.platform.value,
            pattern=pattern,
            required=required,
            source_path=match,
        )
        try:
            target = relocate(match, destination_dir)
        except ArtifactRelocationError as e:
            level = logging.ERROR if required else logging.WARNING
            logger.log(level, "%s", e)
            record.error = str(e)
            return record

        record.destination = target
        record.size_bytes = path_size(target)
        if self.hash_files and target.is_file():
            record.sha256 = compute_file_hash(target)
        logger.debug("Relocated %s to %s (%d bytes)", match, target, record.size_bytes)
        return record


def collection_errors(records: list[ArtifactRecord]) -> list[OrchestrationError]:
    """Errors that fail the owning plan."""
    errors: list[OrchestrationError] = []
    for record in records:
        if not record.required:
            continue
        if record.missing:
            errors.append(ArtifactMissingError(record.pattern))
        elif record.error is not None:
            errors.append(
                ArtifactRelocationError(str(record.source_path), record.error)
            )
    return errors


def generate_manifest(
    records: list[ArtifactRecord],
    run_id: str,
    platform: str,
    source: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a plan manifest.

    Args:
        records: Artifact records of the plan.
        run_id: Identifier of the run.
        platform: Platform family.
        source: Optional source locator data.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    produced = [r for r in records if r.ok]
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "run_id": run_id,
        "platform": platform,
        "artifacts": [r.to_dict() for r in records],
        "summary": {
            "total_artifacts": len(produced),
            "total_size_bytes": sum(r.size_bytes for r in produced),
            "missing": sum(1 for r in records if r.missing),
            "failed": sum(1 for r in records if r.error is not None),
        },
    }
    if source:
        manifest["source"] = source
    if extra_metadata:
        manifest["metadata"] = extra_metadata
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "ArtifactCollector",
    "ArtifactRecord",
    "collection_errors",
    "compute_file_hash",
    "generate_manifest",
    "path_size",
    "relocate",
    "write_manifest",
]
