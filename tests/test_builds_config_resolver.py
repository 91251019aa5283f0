"""Tests for builds/config_resolver.py module."""

from pathlib import Path

import pytest

from kernelpack.builds.config_resolver import (
    BuildConfig,
    ConfigResolver,
    config_cache_key,
    config_cache_path,
    find_conflicts,
    normalize_option_name,
    normalize_option_value,
    verify_applied,
)
from kernelpack.errors import ConfigInvalidError
from kernelpack.types import ConfigPolicy

SAMPLE_CONFIG = """\
#
# Automatically generated file; DO NOT EDIT.
#
CONFIG_LOCALVERSION="-custom"
CONFIG_HZ_250=y
CONFIG_HZ=250
CONFIG_EXT4_FS=m
# CONFIG_DEBUG_INFO_BTF is not set
"""


class TestNormalize:
    """Tests for option name and value normalization."""

    def test_adds_prefix(self) -> None:
        assert normalize_option_name("HZ_1000") == "CONFIG_HZ_1000"
        assert normalize_option_name("CONFIG_HZ_1000") == "CONFIG_HZ_1000"

    @pytest.mark.parametrize("name", ["", "HZ-1000", "CONFIG_", "with space"])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ConfigInvalidError):
            normalize_option_name(name)

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (True, "y"),
            (False, "n"),
            (None, "n"),
            ("Y", "y"),
            ("m", "m"),
            ("true", "y"),
            ("false", "n"),
            (250, "250"),
            ("0x1000", "0x1000"),
            ("-custom", '"-custom"'),
            ('"quoted"', '"quoted"'),
            ('say "hi"', '"say \\"hi\\""'),
        ],
    )
    def test_values(self, value, expected: str) -> None:
        assert normalize_option_value(value) == expected


class TestBuildConfig:
    """Tests for BuildConfig."""

    def test_parse(self) -> None:
        """Should parse set and unset options."""
        config = BuildConfig.parse(SAMPLE_CONFIG)
        assert config["CONFIG_LOCALVERSION"] == '"-custom"'
        assert config["HZ_250"] == "y"
        assert config["CONFIG_HZ"] == "250"
        assert config["CONFIG_EXT4_FS"] == "m"
        assert config["CONFIG_DEBUG_INFO_BTF"] == "n"
        assert len(config) == 5

    def test_render_roundtrip(self) -> None:
        config = BuildConfig.parse(SAMPLE_CONFIG)
        assert BuildConfig.parse(config.render()) == config

    def test_render_unset(self) -> None:
        text = BuildConfig({"DEBUG_INFO_BTF": "n"}).render()
        assert "# CONFIG_DEBUG_INFO_BTF is not set" in text

    def test_sorted_keys(self) -> None:
        config = BuildConfig({"B": "y", "A": "y"})
        assert list(config) == ["CONFIG_A", "CONFIG_B"]

    def test_contains_normalizes(self) -> None:
        config = BuildConfig({"HZ_250": True})
        assert "HZ_250" in config
        assert "CONFIG_HZ_250" in config
        assert "bad name" not in config
        assert 42 not in config

    def test_is_enabled(self) -> None:
        config = BuildConfig({"A": "y", "B": "m", "C": "n"})
        assert config.is_enabled("A")
        assert config.is_enabled("B")
        assert not config.is_enabled("C")

    def test_load_and_dump(self, tmp_path: Path) -> None:
        path = BuildConfig({"A": "y"}).dump(tmp_path / "sub" / ".config")
        assert BuildConfig.load(path) == BuildConfig({"A": "y"})

    def test_scripts_config_args(self) -> None:
        config = BuildConfig(
            {"A": "y", "B": "n", "C": "m", "D": "-custom", "E": 100}
        )
        assert config.scripts_config_args() == [
            "--enable", "CONFIG_A",
            "--disable", "CONFIG_B",
            "--module", "CONFIG_C",
            "--set-str", "CONFIG_D", "-custom",
            "--set-val", "CONFIG_E", "100",
        ]  # fmt: skip


class TestFindConflicts:
    """Tests for find_conflicts."""

    def test_no_conflicts(self) -> None:
        assert find_conflicts(BuildConfig({"HZ_250": "y", "HZ_1000": "n"})) == []

    def test_conflicting_choice(self) -> None:
        conflicts = find_conflicts(BuildConfig({"HZ_250": "y", "HZ_1000": "y"}))
        assert conflicts == ["CONFIG_HZ_250, CONFIG_HZ_1000"]


class TestConfigResolver:
    """Tests for ConfigResolver.resolve."""

    def test_generate_default_without_existing(self) -> None:
        """Without an existing config, defaults plus overrides are used."""
        resolver = ConfigResolver({"LOCALVERSION_AUTO": "n"})
        resolution = resolver.resolve(None, {"HZ_1000": True})

        assert resolution.policy is ConfigPolicy.GENERATE_DEFAULT
        assert resolution.make_target == "defconfig"
        assert resolution.config.to_dict() == {
            "CONFIG_HZ_1000": "y",
            "CONFIG_LOCALVERSION_AUTO": "n",
        }
        assert resolution.overrides.to_dict() == {"CONFIG_HZ_1000": "y"}

    def test_update_in_place_with_existing(self) -> None:
        """An existing config should be kept and overridden."""
        existing = BuildConfig.parse(SAMPLE_CONFIG)
        resolution = ConfigResolver().resolve(existing, {"EXT4_FS": "y"})

        assert resolution.policy is ConfigPolicy.UPDATE_IN_PLACE
        assert resolution.make_target == "olddefconfig"
        assert resolution.config["CONFIG_EXT4_FS"] == "y"
        assert resolution.config["CONFIG_LOCALVERSION"] == '"-custom"'

    def test_choice_override_disables_siblings(self) -> None:
        """Choosing a group member should switch off the existing choice."""
        existing = BuildConfig.parse(SAMPLE_CONFIG)
        resolution = ConfigResolver().resolve(existing, {"HZ_1000": "y"})

        assert resolution.config["CONFIG_HZ_1000"] == "y"
        assert resolution.config["CONFIG_HZ_250"] == "n"
        assert find_conflicts(resolution.config) == []

    def test_conflicting_overrides_rejected(self) -> None:
        with pytest.raises(ConfigInvalidError) as exc_info:
            ConfigResolver().resolve(None, {"HZ_250": "y", "HZ_1000": "y"})
        assert exc_info.value.conflicts

    def test_conflicting_defaults_rejected(self) -> None:
        resolver = ConfigResolver({"PREEMPT_NONE": "y", "PREEMPT": "y"})
        with pytest.raises(ConfigInvalidError):
            resolver.resolve(None, {})

    def test_deterministic(self) -> None:
        """Same inputs should always produce the same resolution."""
        existing = BuildConfig.parse(SAMPLE_CONFIG)
        overrides = {"HZ_1000": "y", "LOCALVERSION": "-test"}
        first = ConfigResolver().resolve(existing, overrides)
        second = ConfigResolver().resolve(BuildConfig.parse(SAMPLE_CONFIG), dict(overrides))

        assert first.policy is second.policy
        assert first.config == second.config
        assert first.config.render() == second.config.render()


class TestVerifyApplied:
    """Tests for verify_applied."""

    def test_all_applied(self, tmp_path: Path) -> None:
        path = tmp_path / ".config"
        path.write_text(SAMPLE_CONFIG)
        verify_applied(path, BuildConfig({"HZ_250": "y", "DEBUG_INFO_BTF": "n"}))

    def test_missing_option_treated_as_unset(self, tmp_path: Path) -> None:
        path = tmp_path / ".config"
        path.write_text(SAMPLE_CONFIG)
        verify_applied(path, BuildConfig({"NOT_PRESENT": "n"}))

    def test_dropped_option(self, tmp_path: Path) -> None:
        """Options the kernel dropped should be reported."""
        path = tmp_path / ".config"
        path.write_text(SAMPLE_CONFIG)
        with pytest.raises(ConfigInvalidError) as exc_info:
            verify_applied(path, BuildConfig({"HZ_1000": "y"}))
        assert "CONFIG_HZ_1000" in str(exc_info.value)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigInvalidError):
            verify_applied(tmp_path / ".config", BuildConfig())


class TestConfigCacheKey:
    """Tests for config cache keys."""

    def test_format(self) -> None:
        key = config_cache_key("https://example.com/linux.git", "v6.6", "debian")
        assert key.startswith("sha256:")
        assert len(key) == len("sha256:") + 64

    def test_stable(self) -> None:
        assert config_cache_key("u", "r", "rpm") == config_cache_key("u", "r", "rpm")

    def test_inputs_matter(self) -> None:
        base = config_cache_key("u", "r", "rpm")
        assert config_cache_key("u", "r", "debian") != base
        assert config_cache_key("u", "other", "rpm") != base
        assert config_cache_key("v", "r", "rpm") != base

    def test_none_ref_same_as_empty(self) -> None:
        assert config_cache_key("u", None, "arch") == config_cache_key("u", "", "arch")

    def test_cache_path(self, tmp_path: Path) -> None:
        key = config_cache_key("u", None, "arch")
        path = config_cache_path(tmp_path, key)
        assert path.parent == tmp_path / "configs"
        assert path.name == f"{key[7:39]}.config"
