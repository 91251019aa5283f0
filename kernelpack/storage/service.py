"""Artifact storage service.

Records the artifacts of finished runs together with an expiry date and
prunes them once their retention period has passed.
"""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from kernelpack.builds.orchestrator import BuildReport, report_filename
from kernelpack.builds.plan import artifact_namespace
from kernelpack.builds.platforms import PlatformFamily
from kernelpack.storage.models import StoredArtifact

logger = logging.getLogger(__name__)

# Retention period of uploaded artifacts (days)
DEFAULT_RETENTION_DAYS = 7


def record_artifacts(
    session: Session,
    report: BuildReport,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    now: datetime | None = None,
) -> list[StoredArtifact]:
    """Record every relocated artifact of a run.

    Artifacts that are already recorded are left untouched.

    Args:
        session: Database session.
        report: Build report of the run.
        retention_days: Days before the artifacts may be pruned.
        now: Current time (defaults to now).

    Returns:
        Newly recorded artifacts.
    """
    now = now or datetime.now()
    expires_at = now + timedelta(days=retention_days)
    ref = report.source.effective_ref
    stored: list[StoredArtifact] = []

    for plan in report.plans:
        for artifact in plan.produced_artifacts:
            if artifact.destination is None:
                continue
            path = str(artifact.destination)
            existing = session.execute(
                select(StoredArtifact).where(StoredArtifact.path == path)
            ).scalar_one_or_none()
            if existing is not None:
                continue
            record = StoredArtifact(
                run_id=report.run_id,
                platform=plan.platform.value,
                ref=ref,
                path=path,
                filename=artifact.destination.name,
                size_bytes=artifact.size_bytes,
                sha256=artifact.sha256,
                stored_at=now,
                expires_at=expires_at,
            )
            session.add(record)
            stored.append(record)

    session.flush()
    logger.info(
        "Recorded %d artifact(s) of run %s (expire %s)",
        len(stored),
        report.run_id,
        expires_at.isoformat(timespec="seconds"),
    )
    return stored


def list_stored_artifacts(
    session: Session,
    run_id: str | None = None,
    platform: str | None = None,
    expired_only: bool = False,
    now: datetime | None = None,
    limit: int = 100,
) -> list[StoredArtifact]:
    """List stored artifacts with optional filters.

    Args:
        session: Database session.
        run_id: Filter by run.
        platform: Filter by platform family.
        expired_only: Only return artifacts past their expiry.
        now: Current time used with expired_only.
        limit: Maximum results to return.

    Returns:
        List of StoredArtifact instances, newest first.
    """
    stmt = select(StoredArtifact)

    if run_id is not None:
        stmt = stmt.where(StoredArtifact.run_id == run_id)
    if platform is not None:
        stmt = stmt.where(StoredArtifact.platform == platform)
    if expired_only:
        stmt = stmt.where(StoredArtifact.expires_at <= (now or datetime.now()))

    stmt = stmt.order_by(StoredArtifact.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def _delete_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _namespace_dir(artifact: StoredArtifact) -> Path | None:
    """Artifact directory of the plan that produced an artifact."""
    try:
        platform = PlatformFamily(artifact.platform)
    except ValueError:
        return None
    name = artifact_namespace(artifact.run_id, platform, artifact.ref)
    for parent in Path(artifact.path).parents:
        if parent.name == name:
            return parent
    return None


def _has_artifacts(session: Session, run_id: str, platform: str | None = None) -> bool:
    stmt = select(StoredArtifact.id).where(StoredArtifact.run_id == run_id)
    if platform is not None:
        stmt = stmt.where(StoredArtifact.platform == platform)
    return session.execute(stmt.limit(1)).first() is not None


def _prune_leftovers(session: Session, pruned: list[StoredArtifact]) -> None:
    """Remove namespaces and reports no stored artifact refers to anymore.

    A namespace keeps step logs and a manifest next to its artifacts, and
    the artifact root keeps one report per run.
    """
    namespaces: dict[Path, StoredArtifact] = {}
    for artifact in pruned:
        namespace = _namespace_dir(artifact)
        if namespace is not None:
            namespaces.setdefault(namespace, artifact)

    emptied_runs: dict[str, Path] = {}
    for namespace, artifact in namespaces.items():
        if _has_artifacts(session, artifact.run_id, artifact.platform):
            continue
        try:
            _delete_path(namespace)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", namespace, e)
            continue
        logger.debug("Removed artifact namespace %s", namespace)
        emptied_runs.setdefault(artifact.run_id, namespace.parent)

    for run_id, artifact_root in emptied_runs.items():
        if _has_artifacts(session, run_id):
            continue
        report = artifact_root / report_filename(run_id)
        try:
            report.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", report, e)
            continue
        logger.debug("Removed report %s", report)


def prune_expired(
    session: Session,
    now: datetime | None = None,
    delete_files: bool = True,
) -> list[StoredArtifact]:
    """Delete artifacts whose retention period has passed.

    An artifact whose file cannot be removed stays recorded so a later
    prune can retry it. When files are deleted, a plan's artifact
    directory (logs and manifest included) goes once none of its artifacts
    are stored, and a run's report goes once none of the run's are.

    Args:
        session: Database session.
        now: Current time (defaults to now).
        delete_files: Also remove the artifact files.

    Returns:
        Pruned artifacts.
    """
    now = now or datetime.now()
    expired = session.execute(
        select(StoredArtifact).where(StoredArtifact.expires_at <= now)
    ).scalars().all()

    pruned: list[StoredArtifact] = []
    for artifact in expired:
        if delete_files:
            try:
                _delete_path(Path(artifact.path))
            except OSError as e:
                logger.warning("Failed to delete %s: %s", artifact.path, e)
                continue
        session.delete(artifact)
        pruned.append(artifact)

    session.flush()
    if delete_files:
        _prune_leftovers(session, pruned)
    logger.info("Pruned %d expired artifact(s)", len(pruned))
    return pruned


__all__ = [
    "DEFAULT_RETENTION_DAYS",
    "list_stored_artifacts",
    "prune_expired",
    "record_artifacts",
]
