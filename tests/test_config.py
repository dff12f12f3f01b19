"""Tests for configuration loading and the data model."""

import json
from pathlib import Path

import pytest

from cfbench.config import (
    ConfigError,
    ThrottlingSpec,
    default_scenarios,
    load_config,
    normalize_targets,
    parse_config,
    parse_scenario,
    parse_throttling,
)


class TestLoadConfig:
    """Reading the JSON config file."""

    def test_missing_file_is_config_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Cannot read config"):
            load_config(tmp_path / "nope.json")

    def test_invalid_json_is_config_error(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_config(path)

    def test_top_level_must_be_object(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text(json.dumps([1, 2]), encoding="utf-8")
        with pytest.raises(ConfigError, match="JSON object"):
            load_config(path)

    def test_defaults(self, config_file) -> None:
        path = config_file({"frameworks": [{"name": "a", "url": "https://a.test/"}]})
        config = load_config(path)
        assert config.path == path
        assert [t.url for t in config.targets] == ["https://a.test"]
        assert config.iterations == 5
        assert config.warmup is True
        assert config.profiles == ["parity", "idiomatic"]
        assert config.settings_for("parity").chart_cache == "no-store"
        assert config.settings_for("idiomatic").chart_cache == "default"
        assert [s.name for s in config.scenarios] == [s.name for s in default_scenarios()]

    def test_invalid_iterations(self) -> None:
        with pytest.raises(ConfigError, match="iterations"):
            parse_config({"frameworks": [], "iterations": 0})
        with pytest.raises(ConfigError, match="iterations"):
            parse_config({"frameworks": [], "iterations": "many"})


class TestTargets:
    """Targets may be a list or a mapping keyed by name."""

    def test_mapping_with_strings_and_objects(self) -> None:
        targets = normalize_targets(
            {
                "a": "https://a.test",
                "b": {"url": "https://b.test/", "delivery": "spa", "features": {"clientNav": 1}},
            }
        )
        assert [t.name for t in targets] == ["a", "b"]
        assert targets[1].delivery == "spa"
        assert targets[1].has_feature("clientNav")
        assert not targets[0].has_feature("clientNav")

    def test_entry_without_url(self) -> None:
        with pytest.raises(ConfigError, match="name and a url"):
            normalize_targets([{"name": "a"}])

    def test_select_targets(self) -> None:
        config = parse_config({"frameworks": {"a": "https://a.test", "b": "https://b.test"}})
        assert [t.name for t in config.select_targets(["b"])] == ["b"]
        assert len(config.select_targets(None)) == 2
        with pytest.raises(ConfigError, match="Unknown target"):
            config.select_targets(["zzz"])

    def test_rendering_for_unknown_route(self, target) -> None:
        assert target.rendering_for("chart") == "csr"
        assert target.rendering_for("nope") == "unknown"


class TestScenarios:
    """Scenario parsing."""

    def test_client_nav_scenario(self) -> None:
        scenario = parse_scenario(
            {
                "name": "nav",
                "clientNav": {"from": "/stays", "click": "a", "toPattern": r"/stays/\d+$"},
            }
        )
        assert scenario.is_client_nav
        assert scenario.warmup_path == "/stays"
        assert scenario.client_nav.url_pattern().search("https://x.test/stays/12")

    def test_to_pattern_from_plain_path(self) -> None:
        nav = parse_scenario({"name": "nav", "clientNav": {"to": "/stays"}}).client_nav
        pattern = nav.url_pattern()
        assert pattern.search("https://x.test/stays")
        assert not pattern.search("https://x.test/stays/1")

    def test_page_scenario_needs_path(self) -> None:
        with pytest.raises(ConfigError, match="path is required"):
            parse_scenario({"name": "home", "type": "ssr"})

    def test_unknown_wait_condition(self) -> None:
        with pytest.raises(ConfigError, match="waitUntil"):
            parse_scenario({"name": "home", "path": "/", "waitUntil": "forever"})

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ConfigError, match="unique"):
            parse_config(
                {"frameworks": [], "scenarios": [{"name": "a", "path": "/"}, {"name": "a", "path": "/x"}]}
            )

    def test_reload_flag(self) -> None:
        assert parse_scenario({"name": "blog", "path": "/blog", "reload": False}).reload is False
        assert parse_scenario({"name": "home", "path": "/"}).reload is True


class TestThrottlingValues:
    """Throttling entries are names or explicit cpu/network objects."""

    def test_name_is_kept(self) -> None:
        assert parse_throttling("fast-4g") == "fast-4g"

    def test_object(self) -> None:
        spec = parse_throttling({"cpu": 4, "network": "slow-3g", "timeoutScale": 5})
        assert spec == ThrottlingSpec(cpu=4.0, network="slow-3g", timeout_scale=5.0)

    def test_negative_cpu(self) -> None:
        with pytest.raises(ConfigError, match="cpu"):
            parse_throttling({"cpu": -1})

    def test_named_profiles_must_be_objects(self) -> None:
        with pytest.raises(ConfigError, match="throttlingProfiles"):
            parse_config({"frameworks": [], "throttlingProfiles": {"x": "fast-4g"}})

    def test_profile_settings(self) -> None:
        config = parse_config(
            {
                "frameworks": [],
                "profileSettings": {"p": {"chartCache": "no-store", "iterations": 2, "warmup": False}},
            }
        )
        settings = config.settings_for("p")
        assert settings.iterations == 2
        assert settings.warmup is False
        assert config.settings_for("missing").chart_cache == "default"


class TestMalformedEntries:
    """Entries of the wrong JSON type are configuration errors, not crashes."""

    @pytest.mark.parametrize("entry", ["home", 3, ["home", "/"]])
    def test_scenario_entry_must_be_object(self, entry) -> None:
        with pytest.raises(ConfigError, match="Invalid scenario entry"):
            parse_config({"frameworks": [], "scenarios": [entry]})

    def test_client_nav_block_must_be_object(self) -> None:
        with pytest.raises(ConfigError, match="clientNav must be an object"):
            parse_scenario({"name": "spa_nav", "type": "client-nav", "clientNav": "/stays"})

    def test_profile_settings_value_must_be_object(self) -> None:
        with pytest.raises(ConfigError, match="Profile settings"):
            parse_config({"frameworks": [], "profileSettings": {"parity": "no-store"}})

    def test_throttling_profiles_must_be_mapping(self) -> None:
        with pytest.raises(ConfigError, match="throttlingProfiles"):
            parse_config({"frameworks": [], "throttlingProfiles": ["fast-4g"]})

    def test_load_config_reports_bad_scenario(self, config_file) -> None:
        with pytest.raises(ConfigError):
            load_config(config_file({"frameworks": [], "scenarios": ["home"]}))
