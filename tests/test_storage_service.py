"""Tests for storage/service.py module."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from kernelpack.builds.artifacts import ArtifactRecord
from kernelpack.builds.orchestrator import BuildReport, PlanResult
from kernelpack.builds.platforms import PlatformFamily
from kernelpack.db import Base, create_all_tables, get_engine, get_session, get_session_factory
from kernelpack.source import SourceLocator
from kernelpack.storage.models import StoredArtifact
from kernelpack.storage.service import (
    list_stored_artifacts,
    prune_expired,
    record_artifacts,
)
from kernelpack.types import BuildStatus

NOW = datetime(2026, 1, 10, 12, 0, 0)


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_report(tmp_path: Path, run_id: str = "run1") -> BuildReport:
    """Create a report with one debian artifact and one missing rpm artifact."""
    artifact_dir = tmp_path / f"kernel-artifacts-{run_id}-debian-based-v6.6"
    artifact_dir.mkdir(parents=True)
    deb = artifact_dir / "linux-image.deb"
    deb.write_bytes(b"deb")
    started = datetime.now(timezone.utc)
    return BuildReport(
        run_id=run_id,
        source=SourceLocator(url="https://example.com/linux.git", ref="v6.6"),
        status=BuildStatus.PARTIALLY_SUCCEEDED,
        plans=[
            PlanResult(
                platform=PlatformFamily.DEBIAN,
                status=BuildStatus.SUCCEEDED,
                work_dir=tmp_path / "work",
                artifact_dir=artifact_dir,
                artifacts=[
                    ArtifactRecord(
                        platform="debian",
                        pattern="*.deb",
                        required=True,
                        source_path=tmp_path / "work" / "linux-image.deb",
                        destination=deb,
                        size_bytes=3,
                        sha256="ab" * 32,
                    )
                ],
            ),
            PlanResult(
                platform=PlatformFamily.RPM,
                status=BuildStatus.FAILED,
                work_dir=tmp_path / "work-rpm",
                artifact_dir=tmp_path / "rpm",
                artifacts=[
                    ArtifactRecord(platform="rpm", pattern="*/*.rpm", required=True, missing=True)
                ],
            ),
        ],
        started_at=started,
        finished_at=started,
    )


class TestRecordArtifacts:
    """Tests for record_artifacts."""

    def test_records_relocated_artifacts(self, session, tmp_path: Path) -> None:
        """Only relocated artifacts should be recorded."""
        stored = record_artifacts(session, make_report(tmp_path), retention_days=7, now=NOW)

        assert len(stored) == 1
        artifact = stored[0]
        assert artifact.run_id == "run1"
        assert artifact.platform == "debian"
        assert artifact.ref == "v6.6"
        assert artifact.filename == "linux-image.deb"
        assert artifact.size_bytes == 3
        assert artifact.expires_at == NOW + timedelta(days=7)
        assert artifact.id is not None

    def test_idempotent(self, session, tmp_path: Path) -> None:
        report = make_report(tmp_path)
        record_artifacts(session, report, now=NOW)
        assert record_artifacts(session, report, now=NOW) == []
        assert len(list_stored_artifacts(session)) == 1


class TestListStoredArtifacts:
    """Tests for list_stored_artifacts."""

    def test_filters(self, session, tmp_path: Path) -> None:
        record_artifacts(session, make_report(tmp_path / "a", "run1"), now=NOW)
        record_artifacts(
            session, make_report(tmp_path / "b", "run2"), now=NOW - timedelta(days=30)
        )

        assert len(list_stored_artifacts(session)) == 2
        assert [a.run_id for a in list_stored_artifacts(session, run_id="run2")] == ["run2"]
        assert list_stored_artifacts(session, platform="rpm") == []
        expired = list_stored_artifacts(session, expired_only=True, now=NOW)
        assert [a.run_id for a in expired] == ["run2"]

    def test_newest_first(self, session, tmp_path: Path) -> None:
        record_artifacts(session, make_report(tmp_path / "a", "run1"), now=NOW)
        record_artifacts(session, make_report(tmp_path / "b", "run2"), now=NOW)
        assert [a.run_id for a in list_stored_artifacts(session)] == ["run2", "run1"]

    def test_limit(self, session, tmp_path: Path) -> None:
        record_artifacts(session, make_report(tmp_path / "a", "run1"), now=NOW)
        record_artifacts(session, make_report(tmp_path / "b", "run2"), now=NOW)
        assert len(list_stored_artifacts(session, limit=1)) == 1


class TestPruneExpired:
    """Tests for prune_expired."""

    def test_prunes_expired_only(self, session, tmp_path: Path) -> None:
        """Expired artifacts and their files should be removed."""
        old = record_artifacts(
            session, make_report(tmp_path / "old", "run1"), now=NOW - timedelta(days=8)
        )
        fresh = record_artifacts(session, make_report(tmp_path / "new", "run2"), now=NOW)

        pruned = prune_expired(session, now=NOW)

        assert [a.run_id for a in pruned] == ["run1"]
        assert not Path(old[0].path).exists()
        assert Path(fresh[0].path).exists()
        assert [a.run_id for a in list_stored_artifacts(session)] == ["run2"]

    def test_removes_emptied_namespace_and_report(self, session, tmp_path: Path) -> None:
        """Logs, manifest and report of a fully pruned run should go too."""
        old = record_artifacts(
            session, make_report(tmp_path, "run1"), now=NOW - timedelta(days=8)
        )
        namespace = Path(old[0].path).parent
        (namespace / "logs").mkdir()
        (namespace / "logs" / "01-compile.log").write_text("log")
        (namespace / "manifest.json").write_text("{}")
        report = tmp_path / "kernel-report-run1.json"
        report.write_text("{}")
        other_report = tmp_path / "kernel-report-run9.json"
        other_report.write_text("{}")

        prune_expired(session, now=NOW)

        assert not namespace.exists()
        assert not report.exists()
        assert other_report.exists()

    def test_report_kept_while_run_has_artifacts(self, session, tmp_path: Path) -> None:
        """A run's report stays until its last stored artifact is pruned."""
        old = record_artifacts(
            session, make_report(tmp_path, "run1"), now=NOW - timedelta(days=8)
        )
        rpm_dir = tmp_path / "kernel-artifacts-run1-rpm-based-v6.6"
        rpm_dir.mkdir()
        (rpm_dir / "kernel.rpm").write_bytes(b"rpm")
        session.add(
            StoredArtifact(
                run_id="run1",
                platform="rpm",
                ref="v6.6",
                path=str(rpm_dir / "kernel.rpm"),
                filename="kernel.rpm",
                size_bytes=3,
                stored_at=NOW,
                expires_at=NOW + timedelta(days=7),
            )
        )
        session.flush()
        report = tmp_path / "kernel-report-run1.json"
        report.write_text("{}")

        prune_expired(session, now=NOW)

        assert not Path(old[0].path).parent.exists()
        assert rpm_dir.is_dir()
        assert report.exists()

    def test_keep_files(self, session, tmp_path: Path) -> None:
        old = record_artifacts(
            session, make_report(tmp_path, "run1"), now=NOW - timedelta(days=8)
        )
        prune_expired(session, now=NOW, delete_files=False)
        assert Path(old[0].path).exists()
        assert list_stored_artifacts(session) == []

    def test_directory_artifact(self, session, tmp_path: Path) -> None:
        stage = tmp_path / "arch-install"
        (stage / "boot").mkdir(parents=True)
        (stage / "boot" / "vmlinuz").write_bytes(b"k")
        session.add(
            StoredArtifact(
                run_id="run1",
                platform="arch",
                ref="default",
                path=str(stage),
                filename="arch-install",
                size_bytes=1,
                stored_at=NOW - timedelta(days=10),
                expires_at=NOW - timedelta(days=3),
            )
        )
        session.flush()

        assert len(prune_expired(session, now=NOW)) == 1
        assert not stage.exists()

    def test_missing_file_still_pruned(self, session, tmp_path: Path) -> None:
        old = record_artifacts(
            session, make_report(tmp_path, "run1"), now=NOW - timedelta(days=8)
        )
        Path(old[0].path).unlink()
        assert len(prune_expired(session, now=NOW)) == 1


class TestStoredArtifactModel:
    """Tests for the StoredArtifact model."""

    def test_is_expired(self) -> None:
        artifact = StoredArtifact(expires_at=NOW)
        assert artifact.is_expired(NOW)
        assert not artifact.is_expired(NOW - timedelta(seconds=1))

    def test_to_dict(self, session, tmp_path: Path) -> None:
        stored = record_artifacts(session, make_report(tmp_path), now=NOW)
        data = stored[0].to_dict()
        assert data["run_id"] == "run1"
        assert data["expires_at"] == (NOW + timedelta(days=7)).isoformat()


class TestDatabaseHelpers:
    """Tests for db.py helpers."""

    def test_file_database_created(self, tmp_path: Path) -> None:
        """A file database should be created with its parent directory."""
        db_url = f"sqlite:///{tmp_path}/nested/dir/db.sqlite"
        engine = get_engine(db_url)
        create_all_tables(engine)
        factory = get_session_factory(engine)

        with get_session(factory) as session:
            session.add(
                StoredArtifact(
                    run_id="r",
                    platform="debian",
                    ref="default",
                    path="/x",
                    filename="x",
                    expires_at=NOW,
                )
            )

        assert (tmp_path / "nested" / "dir" / "db.sqlite").is_file()
        with get_session(factory) as session:
            assert len(list_stored_artifacts(session)) == 1
