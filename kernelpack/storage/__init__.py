"""Artifact storage module.

This module handles:
- Recording relocated artifacts with a retention period
- Listing stored artifacts
- Pruning expired artifacts and their files
"""

from kernelpack.storage.models import StoredArtifact

__all__ = ["StoredArtifact"]
