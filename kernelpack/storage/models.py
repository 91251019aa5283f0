"""Artifact storage ORM models."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from kernelpack.db import Base


class StoredArtifact(Base):
    """ORM model for an artifact kept in the artifact store.

    Attributes:
        id: Primary key.
        run_id: Identifier of the run that produced the artifact.
        platform: Platform family of the producing plan.
        ref: Effective source ref of the run.
        path: Absolute path of the relocated artifact.
        filename: Artifact file or directory name.
        size_bytes: Size in bytes (total size for directories).
        sha256: SHA-256 hash (files only).
        stored_at: When the artifact was recorded.
        expires_at: When the artifact may be pruned.
    """

    __tablename__ = "stored_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    ref: Mapped[str] = mapped_column(String(255), nullable=False)

    path: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    stored_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (Index("ix_stored_artifacts_run_platform", "run_id", "platform"),)

    def __repr__(self) -> str:
        """Return string representation of StoredArtifact."""
        return (
            f"<StoredArtifact(id={self.id}, run_id='{self.run_id}', "
            f"platform='{self.platform}', filename='{self.filename}')>"
        )

    def is_expired(self, now: datetime) -> bool:
        """Check whether the retention period has passed."""
        return self.expires_at <= now

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "platform": self.platform,
            "ref": self.ref,
            "path": self.path,
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "stored_at": self.stored_at.isoformat() if self.stored_at else None,
            "expires_at": self.expires_at.isoformat(),
        }


__all__ = ["StoredArtifact"]
