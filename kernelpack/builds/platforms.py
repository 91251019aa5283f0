"""Platform family rule table.

Each platform family fixes the tools it needs, the packaging commands it
runs after the kernel is compiled and the rules used to find its artifacts.
Adding a platform means adding a row to ``PLATFORM_RULES``; the sequencer
and the collector never branch on the family.

Command templates and search paths may use these placeholders:

- ``{work}``: the plan's exclusive working directory
- ``{source}``: the kernel source tree inside the working directory
- ``{stage}``: the staging directory for installed trees
- ``{jobs}``: make parallelism
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class PlatformFamily(str, Enum):
    """Target packaging ecosystem."""

    DEBIAN = "debian"
    RPM = "rpm"
    ARCH = "arch"

    @classmethod
    def parse(cls, value: str) -> PlatformFamily:
        """Parse a platform name or alias.

        Args:
            value: Platform name such as ``debian`` or ``rpm-based``.

        Returns:
            PlatformFamily member.

        Raises:
            ValueError: If the name is unknown.
        """
        key = value.strip().lower()
        family = _ALIASES.get(key)
        if family is None:
            valid = ", ".join(f.value for f in cls)
            raise ValueError(f"Unknown platform '{value}' (valid: {valid})")
        return family

    @property
    def label(self) -> str:
        """Matrix label used in artifact names."""
        return PLATFORM_RULES[self].label


_ALIASES: dict[str, PlatformFamily] = {
    "debian": PlatformFamily.DEBIAN,
    "deb": PlatformFamily.DEBIAN,
    "debian-based": PlatformFamily.DEBIAN,
    "rpm": PlatformFamily.RPM,
    "rpm-based": PlatformFamily.RPM,
    "arch": PlatformFamily.ARCH,
    "archlinux": PlatformFamily.ARCH,
    "archlinux-compatible": PlatformFamily.ARCH,
}


@dataclass(frozen=True)
class ArtifactRule:
    """Where to look for artifacts after packaging.

    Attributes:
        search_path: Ordered directory templates searched for the pattern.
        pattern: Glob pattern relative to each directory.
        required: Whether a rule matching nothing fails the plan.
        destination: Sub-directory of the plan's artifact directory.
    """

    search_path: tuple[str, ...]
    pattern: str
    required: bool = True
    destination: str = "."

    def directories(self, context: Mapping[str, str]) -> list[Path]:
        """Render the search path for a plan."""
        return [Path(d.format(**context)) for d in self.search_path]


@dataclass(frozen=True)
class PlatformRules:
    """Rule table row of a platform family.

    Attributes:
        family: Platform family.
        label: Label used in artifact names (matches the CI matrix names).
        tools: Executables that must be available before building.
        packages: Distribution packages providing the tools.
        packaging: Packaging command templates, run in order.
        artifact_rules: Artifact search rules, evaluated in order.
        stage_dirs: Directory templates created before the steps run. The
            install targets write into these without creating them.
    """

    family: PlatformFamily
    label: str
    tools: tuple[str, ...]
    packages: tuple[str, ...]
    packaging: tuple[tuple[str, ...], ...]
    artifact_rules: tuple[ArtifactRule, ...]
    stage_dirs: tuple[str, ...] = ()


BASE_TOOLS = ("git", "make", "gcc", "flex", "bison", "bc", "rsync")

BASE_PACKAGES = (
    "build-essential",
    "libncurses-dev",
    "flex",
    "bison",
    "libssl-dev",
    "libelf-dev",
    "dwarves",
    "bc",
    "rsync",
)

PLATFORM_RULES: dict[PlatformFamily, PlatformRules] = {
    PlatformFamily.DEBIAN: PlatformRules(
        family=PlatformFamily.DEBIAN,
        label="debian-based",
        tools=(*BASE_TOOLS, "dpkg-buildpackage"),
        packages=(*BASE_PACKAGES, "debhelper"),
        packaging=(("make", "-j{jobs}", "bindeb-pkg"),),
        artifact_rules=(
            # bindeb-pkg writes packages next to the source tree
            ArtifactRule(search_path=("{work}",), pattern="*.deb"),
            ArtifactRule(search_path=("{work}",), pattern="*.buildinfo", required=False),
            ArtifactRule(search_path=("{work}",), pattern="*.changes", required=False),
        ),
    ),
    PlatformFamily.RPM: PlatformRules(
        family=PlatformFamily.RPM,
        label="rpm-based",
        tools=(*BASE_TOOLS, "rpmbuild"),
        packages=(*BASE_PACKAGES, "rpm", "fakeroot"),
        packaging=(
            (
                "make",
                "-j{jobs}",
                "binrpm-pkg",
                "RPMOPTS=--define '_topdir {work}/rpmbuild'",
            ),
        ),
        artifact_rules=(
            ArtifactRule(search_path=("{work}/rpmbuild/RPMS",), pattern="*/*.rpm"),
            ArtifactRule(
                search_path=("{work}", "{source}"), pattern="*.rpm", required=False
            ),
        ),
    ),
    PlatformFamily.ARCH: PlatformRules(
        family=PlatformFamily.ARCH,
        label="archlinux-compatible",
        tools=BASE_TOOLS,
        packages=BASE_PACKAGES,
        packaging=(
            ("make", "install", "INSTALL_PATH={stage}/boot"),
            ("make", "modules_install", "INSTALL_MOD_PATH={stage}"),
        ),
        artifact_rules=(
            ArtifactRule(search_path=("{work}",), pattern="arch-install"),
        ),
        stage_dirs=("{stage}/boot",),
    ),
}


def get_rules(family: PlatformFamily) -> PlatformRules:
    """Return the rule table row of a platform family."""
    return PLATFORM_RULES[family]


def render_command(template: tuple[str, ...], context: Mapping[str, str]) -> list[str]:
    """Fill the placeholders of a command template.

    Args:
        template: Command template as argv tuple.
        context: Placeholder values.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [part.format(**context) for part in template]


__all__ = [
    "BASE_PACKAGES",
    "BASE_TOOLS",
    "PLATFORM_RULES",
    "ArtifactRule",
    "PlatformFamily",
    "PlatformRules",
    "get_rules",
    "render_command",
]
