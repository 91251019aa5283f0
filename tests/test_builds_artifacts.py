"""Tests for builds/artifacts.py module.

Tests artifact collection, relocation and manifest generation.
"""

import hashlib
import json
from pathlib import Path

import pytest

from kernelpack.builds.artifacts import (
    ArtifactCollector,
    ArtifactRecord,
    collection_errors,
    compute_file_hash,
    generate_manifest,
    path_size,
    relocate,
    write_manifest,
)
from kernelpack.builds.plan import TargetPlan
from kernelpack.builds.platforms import PlatformFamily, get_rules
from kernelpack.errors import ArtifactMissingError, ArtifactRelocationError
from kernelpack.types import BuildStatus


def make_plan(tmp_path: Path, platform: PlatformFamily, name: str = "plan") -> TargetPlan:
    """Create a plan with its directories under tmp_path."""
    work_dir = tmp_path / "work" / name
    (work_dir / "linux").mkdir(parents=True)
    return TargetPlan(
        platform=platform,
        rules=get_rules(platform),
        run_id="run1",
        work_dir=work_dir,
        artifact_dir=tmp_path / "artifacts" / name,
        status=BuildStatus.RUNNING,
    )


class TestComputeFileHash:
    """Tests for compute_file_hash."""

    def test_matches_hashlib(self, tmp_path: Path) -> None:
        path = tmp_path / "file.bin"
        path.write_bytes(b"kernel" * 10000)
        assert compute_file_hash(path) == hashlib.sha256(b"kernel" * 10000).hexdigest()

    def test_small_chunks(self, tmp_path: Path) -> None:
        path = tmp_path / "file.bin"
        path.write_bytes(b"abc")
        assert compute_file_hash(path, chunk_size=1) == hashlib.sha256(b"abc").hexdigest()


class TestPathSize:
    """Tests for path_size."""

    def test_file(self, tmp_path: Path) -> None:
        path = tmp_path / "f"
        path.write_bytes(b"12345")
        assert path_size(path) == 5

    def test_directory(self, tmp_path: Path) -> None:
        (tmp_path / "d" / "sub").mkdir(parents=True)
        (tmp_path / "d" / "a").write_bytes(b"123")
        (tmp_path / "d" / "sub" / "b").write_bytes(b"45")
        assert path_size(tmp_path / "d") == 5


class TestRelocate:
    """Tests for relocate."""

    def test_moves_file(self, tmp_path: Path) -> None:
        source = tmp_path / "a.deb"
        source.write_bytes(b"deb")
        target = relocate(source, tmp_path / "out")

        assert target == tmp_path / "out" / "a.deb"
        assert target.read_bytes() == b"deb"
        assert not source.exists()

    def test_never_overwrites(self, tmp_path: Path) -> None:
        """An existing destination should not be replaced."""
        (tmp_path / "out").mkdir()
        (tmp_path / "out" / "a.deb").write_bytes(b"old")
        source = tmp_path / "a.deb"
        source.write_bytes(b"new")

        with pytest.raises(ArtifactRelocationError):
            relocate(source, tmp_path / "out")
        assert (tmp_path / "out" / "a.deb").read_bytes() == b"old"
        assert source.exists()

    def test_missing_source(self, tmp_path: Path) -> None:
        with pytest.raises(ArtifactRelocationError):
            relocate(tmp_path / "gone.deb", tmp_path / "out")


class TestArtifactCollector:
    """Tests for ArtifactCollector.collect."""

    def test_debian_packages(self, tmp_path: Path) -> None:
        """Debian packages next to the source tree should be collected."""
        plan = make_plan(tmp_path, PlatformFamily.DEBIAN)
        (plan.work_dir / "linux-image-6.6.0_6.6.0-1_amd64.deb").write_bytes(b"image")
        (plan.work_dir / "linux-headers-6.6.0_6.6.0-1_amd64.deb").write_bytes(b"hdrs")

        records = ArtifactCollector().collect(plan)

        assert len(records) == 2
        assert all(r.ok for r in records)
        assert plan.status is BuildStatus.RUNNING
        for record in records:
            assert record.destination.parent == plan.artifact_dir.resolve()
            assert record.destination.is_file()
            assert record.sha256 == compute_file_hash(record.destination)
            assert record.size_bytes > 0
        assert collection_errors(records) == []

    def test_required_rule_missing(self, tmp_path: Path) -> None:
        """A required rule matching nothing should fail the plan."""
        plan = make_plan(tmp_path, PlatformFamily.DEBIAN)

        records = ArtifactCollector().collect(plan)

        assert len(records) == 1
        assert records[0].missing
        assert records[0].pattern == "*.deb"
        assert plan.status is BuildStatus.FAILED
        errors = collection_errors(records)
        assert len(errors) == 1
        assert isinstance(errors[0], ArtifactMissingError)

    def test_optional_rules_do_not_fail(self, tmp_path: Path) -> None:
        plan = make_plan(tmp_path, PlatformFamily.DEBIAN)
        (plan.work_dir / "linux-image.deb").write_bytes(b"x")
        (plan.work_dir / "linux.buildinfo").write_text("info")

        records = ArtifactCollector().collect(plan)

        patterns = sorted(r.pattern for r in records)
        assert patterns == ["*.buildinfo", "*.deb"]
        assert plan.status is BuildStatus.RUNNING

    def test_rpm_nested_packages(self, tmp_path: Path) -> None:
        plan = make_plan(tmp_path, PlatformFamily.RPM)
        rpms = plan.work_dir / "rpmbuild" / "RPMS" / "x86_64"
        rpms.mkdir(parents=True)
        (rpms / "kernel-6.6.0-1.x86_64.rpm").write_bytes(b"rpm")

        records = ArtifactCollector().collect(plan)

        assert [r.destination.name for r in records] == ["kernel-6.6.0-1.x86_64.rpm"]

    def test_arch_stage_directory(self, tmp_path: Path) -> None:
        """The staged install tree should be relocated as a directory."""
        plan = make_plan(tmp_path, PlatformFamily.ARCH)
        (plan.stage_dir / "boot").mkdir(parents=True)
        (plan.stage_dir / "boot" / "vmlinuz").write_bytes(b"kernel")

        records = ArtifactCollector().collect(plan)

        assert len(records) == 1
        assert records[0].destination.is_dir()
        assert records[0].sha256 is None
        assert records[0].size_bytes == 6
        assert (records[0].destination / "boot" / "vmlinuz").is_file()

    def test_required_relocation_failure(self, tmp_path: Path) -> None:
        plan = make_plan(tmp_path, PlatformFamily.DEBIAN)
        (plan.work_dir / "a.deb").write_bytes(b"new")
        plan.artifact_dir.mkdir(parents=True)
        (plan.artifact_dir / "a.deb").write_bytes(b"old")

        records = ArtifactCollector().collect(plan)

        assert records[0].error is not None
        assert plan.status is BuildStatus.FAILED
        assert isinstance(collection_errors(records)[0], ArtifactRelocationError)

    def test_no_shared_destinations_across_plans(self, tmp_path: Path) -> None:
        """Identically named outputs of two plans must not collide."""
        first = make_plan(tmp_path, PlatformFamily.DEBIAN, "first")
        second = make_plan(tmp_path, PlatformFamily.DEBIAN, "second")
        for plan in (first, second):
            (plan.work_dir / "linux-image.deb").write_bytes(plan.work_dir.name.encode())

        collector = ArtifactCollector()
        destinations = [
            r.destination for plan in (first, second) for r in collector.collect(plan)
        ]

        assert len(destinations) == len(set(destinations)) == 2

    def test_hashing_disabled(self, tmp_path: Path) -> None:
        plan = make_plan(tmp_path, PlatformFamily.DEBIAN)
        (plan.work_dir / "a.deb").write_bytes(b"x")
        records = ArtifactCollector(hash_files=False).collect(plan)
        assert records[0].sha256 is None


class TestManifest:
    """Tests for generate_manifest and write_manifest."""

    def _records(self, tmp_path: Path) -> list[ArtifactRecord]:
        return [
            ArtifactRecord(
                platform="debian",
                pattern="*.deb",
                required=True,
                source_path=tmp_path / "a.deb",
                destination=tmp_path / "out" / "a.deb",
                size_bytes=100,
                sha256="ab" * 32,
            ),
            ArtifactRecord(platform="debian", pattern="*.changes", required=False, missing=True),
        ]

    def test_generate(self, tmp_path: Path) -> None:
        manifest = generate_manifest(
            self._records(tmp_path),
            run_id="run1",
            platform="debian",
            source={"url": "u", "ref": None},
            extra_metadata={"kernel_release": "6.6.0"},
        )

        assert manifest["run_id"] == "run1"
        assert manifest["platform"] == "debian"
        assert manifest["summary"] == {
            "total_artifacts": 1,
            "total_size_bytes": 100,
            "missing": 1,
            "failed": 0,
        }
        assert manifest["source"] == {"url": "u", "ref": None}
        assert manifest["metadata"]["kernel_release"] == "6.6.0"
        assert manifest["artifacts"][0]["destination"] == str(tmp_path / "out" / "a.deb")

    def test_write(self, tmp_path: Path) -> None:
        manifest = generate_manifest(self._records(tmp_path), run_id="r", platform="debian")
        path = write_manifest(manifest, tmp_path / "nested" / "manifest.json")

        data = json.loads(path.read_text())
        assert data["run_id"] == "r"
        assert "source" not in data
