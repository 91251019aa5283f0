"""Kernel configuration resolution.

This module handles:
- Parsing and rendering kernel ``.config`` files
- Merging a cached configuration with requested overrides
- Choosing between the update-in-place and generate-default policies
- Validating mutually exclusive options
- Cache keys for configurations persisted between runs

Resolution is deterministic: the same (existing config, overrides) pair
always produces the same policy and the same resolved configuration.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kernelpack.errors import ConfigInvalidError
from kernelpack.types import ConfigPolicy

logger = logging.getLogger(__name__)

# Schema version for config cache keys; bump when the key format changes
CONFIG_CACHE_SCHEMA_VERSION = "1"

OPTION_NAME_PATTERN = re.compile(r"^CONFIG_[A-Za-z0-9_]+$")
_SET_LINE = re.compile(r"^(CONFIG_[A-Za-z0-9_]+)=(.*)$")
_UNSET_LINE = re.compile(r"^# (CONFIG_[A-Za-z0-9_]+) is not set$")
_NUMBER = re.compile(r"^-?(\d+|0[xX][0-9a-fA-F]+)$")

ENABLED_VALUES = frozenset({"y", "m"})

# Kconfig choice groups: at most one member may be enabled
MUTUALLY_EXCLUSIVE_GROUPS: tuple[tuple[str, ...], ...] = (
    (
        "CONFIG_CC_OPTIMIZE_FOR_PERFORMANCE",
        "CONFIG_CC_OPTIMIZE_FOR_PERFORMANCE_O3",
        "CONFIG_CC_OPTIMIZE_FOR_SIZE",
    ),
    (
        "CONFIG_PREEMPT_NONE",
        "CONFIG_PREEMPT_VOLUNTARY",
        "CONFIG_PREEMPT",
        "CONFIG_PREEMPT_RT",
    ),
    (
        "CONFIG_KERNEL_GZIP",
        "CONFIG_KERNEL_BZIP2",
        "CONFIG_KERNEL_LZMA",
        "CONFIG_KERNEL_XZ",
        "CONFIG_KERNEL_LZO",
        "CONFIG_KERNEL_LZ4",
        "CONFIG_KERNEL_ZSTD",
    ),
    (
        "CONFIG_DEBUG_INFO_NONE",
        "CONFIG_DEBUG_INFO_DWARF_TOOLCHAIN_DEFAULT",
        "CONFIG_DEBUG_INFO_DWARF4",
        "CONFIG_DEBUG_INFO_DWARF5",
    ),
    ("CONFIG_HZ_100", "CONFIG_HZ_250", "CONFIG_HZ_300", "CONFIG_HZ_1000"),
)


def normalize_option_name(name: str) -> str:
    """Normalize an option name to its ``CONFIG_`` form.

    Args:
        name: Option name with or without the ``CONFIG_`` prefix.

    Returns:
        Normalized option name.

    Raises:
        ConfigInvalidError: If the name is not a valid Kconfig symbol.
    """
    key = name.strip()
    if not key.startswith("CONFIG_"):
        key = f"CONFIG_{key}"
    if not OPTION_NAME_PATTERN.match(key):
        raise ConfigInvalidError(f"Invalid kernel option name: {name!r}", [name])
    return key


def normalize_option_value(value: Any) -> str:
    """Normalize an option value to its ``.config`` text form.

    Booleans map to ``y``/``n``, numbers stay numeric, tristate values stay
    as is and every other string is double-quoted.
    """
    if value is None or value is False:
        return "n"
    if value is True:
        return "y"
    if isinstance(value, int):
        return str(value)
    text = str(value).strip()
    lowered = text.lower()
    if lowered in ("y", "n", "m"):
        return lowered
    if lowered == "true":
        return "y"
    if lowered == "false":
        return "n"
    if _NUMBER.match(text):
        return text
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        return text
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class BuildConfig(Mapping[str, str]):
    """Immutable, key-sorted set of kernel options."""

    def __init__(self, options: Mapping[str, Any] | None = None) -> None:
        normalized: dict[str, str] = {}
        for key, value in (options or {}).items():
            normalized[normalize_option_name(key)] = normalize_option_value(value)
        self._options = dict(sorted(normalized.items()))

    def __getitem__(self, key: str) -> str:
        return self._options[normalize_option_name(key)]

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        try:
            return normalize_option_name(key) in self._options
        except ConfigInvalidError:
            return False

    def __iter__(self) -> Iterator[str]:
        return iter(self._options)

    def __len__(self) -> int:
        return len(self._options)

    def __repr__(self) -> str:
        return f"BuildConfig({self._options!r})"

    def is_enabled(self, key: str) -> bool:
        """Whether an option is built in or built as a module."""
        return self._options.get(normalize_option_name(key)) in ENABLED_VALUES

    def to_dict(self) -> dict[str, str]:
        """Convert to a plain dictionary."""
        return dict(self._options)

    @classmethod
    def parse(cls, text: str) -> BuildConfig:
        """Parse ``.config`` text."""
        options: dict[str, str] = {}
        for line in text.splitlines():
            stripped = line.strip()
            if match := _SET_LINE.match(stripped):
                options[match.group(1)] = match.group(2)
            elif match := _UNSET_LINE.match(stripped):
                options[match.group(1)] = "n"
        return cls(options)

    def render(self) -> str:
        """Render as ``.config`` text."""
        lines = ["#", "# Kernel configuration written by kernelpack", "#"]
        for key, value in self._options.items():
            if value == "n":
                lines.append(f"# {key} is not set")
            else:
                lines.append(f"{key}={value}")
        return "\n".join(lines) + "\n"

    @classmethod
    def load(cls, path: Path) -> BuildConfig:
        """Load a ``.config`` file."""
        return cls.parse(path.read_text(encoding="utf-8", errors="replace"))

    def dump(self, path: Path) -> Path:
        """Write a ``.config`` file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        return path

    def scripts_config_args(self) -> list[str]:
        """Arguments for the kernel's ``scripts/config`` helper."""
        args: list[str] = []
        for key, value in self._options.items():
            if value == "y":
                args.extend(["--enable", key])
            elif value == "n":
                args.extend(["--disable", key])
            elif value == "m":
                args.extend(["--module", key])
            elif value.startswith('"'):
                args.extend(["--set-str", key, _unquote(value)])
            else:
                args.extend(["--set-val", key, value])
        return args


def _unquote(value: str) -> str:
    inner = value[1:-1]
    return inner.replace('\\"', '"').replace("\\\\", "\\")


def find_conflicts(config: Mapping[str, str]) -> list[str]:
    """Find mutually exclusive options that are enabled together.

    Args:
        config: Options to check.

    Returns:
        One description per conflicting group, e.g.
        ``"CONFIG_HZ_100, CONFIG_HZ_1000"``.
    """
    conflicts: list[str] = []
    for group in MUTUALLY_EXCLUSIVE_GROUPS:
        enabled = [key for key in group if config.get(key) in ENABLED_VALUES]
        if len(enabled) > 1:
            conflicts.append(", ".join(enabled))
    return conflicts


@dataclass(frozen=True)
class ConfigResolution:
    """Outcome of a config resolution.

    Attributes:
        policy: Chosen resolution policy.
        config: Fully resolved configuration.
        overrides: Normalized requested overrides.
    """

    policy: ConfigPolicy
    config: BuildConfig
    overrides: BuildConfig

    @property
    def make_target(self) -> str:
        """Kernel make target that starts the configuration."""
        return self.policy.make_target


class ConfigResolver:
    """Merge an existing kernel config with requested overrides."""

    def __init__(self, defaults: Mapping[str, Any] | None = None) -> None:
        self.defaults = BuildConfig(defaults)

    def resolve(
        self,
        existing: BuildConfig | None,
        overrides: Mapping[str, Any] | None = None,
    ) -> ConfigResolution:
        """Resolve the configuration for a build.

        With an existing config the update-in-place policy keeps every
        existing option unless it is overridden. Without one, the
        generate-default policy starts from the resolver defaults and applies
        the overrides on top.

        Args:
            existing: Previously persisted configuration, if any.
            overrides: Requested option overrides.

        Returns:
            ConfigResolution with the chosen policy and merged config.

        Raises:
            ConfigInvalidError: If the overrides or the merged result enable
                mutually exclusive options.
        """
        requested = overrides if isinstance(overrides, BuildConfig) else BuildConfig(overrides)

        conflicts = find_conflicts(requested)
        if conflicts:
            raise ConfigInvalidError(
                f"Conflicting options requested: {'; '.join(conflicts)}", conflicts
            )

        if existing is not None:
            policy = ConfigPolicy.UPDATE_IN_PLACE
            base = existing
        else:
            policy = ConfigPolicy.GENERATE_DEFAULT
            base = self.defaults

        options = base.to_dict()
        # Enabling a choice member switches off the siblings from the base
        for group in MUTUALLY_EXCLUSIVE_GROUPS:
            chosen = [key for key in group if requested.is_enabled(key)]
            if not chosen:
                continue
            for sibling in group:
                if sibling not in chosen and options.get(sibling) in ENABLED_VALUES:
                    options[sibling] = "n"
        options.update(requested.to_dict())
        config = BuildConfig(options)

        conflicts = find_conflicts(config)
        if conflicts:
            raise ConfigInvalidError(
                f"Resolved config has conflicting options: {'; '.join(conflicts)}",
                conflicts,
            )

        logger.info(
            "Resolved kernel config with policy %s (%d options, %d overrides)",
            policy.value,
            len(config),
            len(requested),
        )
        return ConfigResolution(policy=policy, config=config, overrides=requested)


def verify_applied(config_path: Path, requested: Mapping[str, str]) -> None:
    """Check that the kernel kept every requested option.

    ``make olddefconfig`` silently drops options whose dependencies are not
    met; this turns a dropped option into an error.

    Args:
        config_path: Final ``.config`` written by the kernel.
        requested: Requested overrides.

    Raises:
        ConfigInvalidError: If the file is missing or options were dropped.
    """
    if not config_path.is_file():
        raise ConfigInvalidError(f"Kernel config not found: {config_path}")
    final = BuildConfig.load(config_path)
    dropped: list[str] = []
    for key, value in requested.items():
        actual = final.get(key, "n")
        if actual != value:
            dropped.append(f"{key}={value} (got {actual})")
    if dropped:
        raise ConfigInvalidError(
            f"Kernel did not accept requested options: {', '.join(dropped)}", dropped
        )


def config_cache_key(url: str, ref: str | None, platform: str) -> str:
    """Compute the cache key of a persisted config.

    The key is a SHA-256 hash of the canonical JSON representation of the
    inputs that identify a config between runs.

    Args:
        url: Source repository URL.
        ref: Branch or ref (None for the default branch).
        platform: Platform family value.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        {
            "schema_version": CONFIG_CACHE_SCHEMA_VERSION,
            "url": url,
            "ref": ref or "",
            "platform": platform,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def config_cache_path(cache_dir: Path, cache_key: str) -> Path:
    """Path of the cached config for a cache key."""
    return cache_dir / "configs" / f"{cache_key.split(':', 1)[-1][:32]}.config"


__all__ = [
    "CONFIG_CACHE_SCHEMA_VERSION",
    "MUTUALLY_EXCLUSIVE_GROUPS",
    "BuildConfig",
    "ConfigResolution",
    "ConfigResolver",
    "config_cache_key",
    "config_cache_path",
    "find_conflicts",
    "normalize_option_name",
    "normalize_option_value",
    "verify_applied",
]
