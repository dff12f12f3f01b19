from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

SCENARIO_TYPES: tuple[str, ...] = ("ssr", "ssg", "spa", "client-nav")
PHASES: tuple[str, ...] = ("cold", "warm")
WAIT_CONDITIONS: tuple[str, ...] = ("load", "domcontentloaded", "networkidle", "commit")
DEFAULT_PROFILES: tuple[str, ...] = ("parity", "idiomatic")
DEFAULT_ITERATIONS = 5


class ConfigError(Exception):
    """Raised when the benchmark configuration cannot be used to start a run."""


@dataclass(frozen=True)
class Timing:
    """Wait and timeout constants in milliseconds, before timeout scaling."""

    chart_ready_poll_ms: int = 100
    interaction_settle_ms: int = 150
    control_change_ms: int = 250
    warmup_settle_ms: int = 500
    warmup_nav_timeout_ms: int = 15_000
    lcp_stable_window_ms: int = 1_000
    lcp_max_wait_ms: int = 5_000
    lcp_poll_ms: int = 100
    lcp_min_stable_checks: int = 2
    hydration_max_wait_ms: int = 2_000
    hydration_missing_grace_ms: int = 250
    hydration_poll_ms: int = 50
    post_load_settle_ms: int = 500
    client_nav_timeout_ms: int = 12_000
    scenario_wait_timeout_ms: int = 12_000
    scenario_hard_timeout_ms: int = 60_000
    chart_ready_timeout_ms: int = 8_000
    cdp_timeout_ms: int = 5_000
    inp_settle_ms: int = 1_500
    inp_poll_ms: int = 100


TIMING = Timing()


@dataclass(frozen=True)
class Target:
    """A deployed implementation of the benchmarked product."""

    name: str
    url: str
    delivery: str | None = None
    rendering: Mapping[str, str] = field(default_factory=dict)
    features: Mapping[str, bool] = field(default_factory=dict)
    deploy: Mapping[str, Any] | None = None

    def has_feature(self, feature: str) -> bool:
        return bool(self.features.get(feature))

    def rendering_for(self, route: str) -> str:
        return self.rendering.get(route) or "unknown"

    def meta(self) -> dict[str, Any]:
        return {
            "delivery": self.delivery,
            "rendering": dict(self.rendering) or None,
            "features": dict(self.features) or None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            **self.meta(),
            "deploy": dict(self.deploy) if self.deploy else None,
        }


@dataclass(frozen=True)
class ClientNavSpec:
    """From/click/to description of an in-app navigation."""

    from_path: str = "/"
    wait_for_from: str | None = None
    click: str | None = None
    to: str | None = None
    to_pattern: str | None = None
    wait_for: str | None = None
    wait_until: str = "load"

    def url_pattern(self) -> re.Pattern[str] | None:
        if self.to_pattern:
            return re.compile(self.to_pattern)
        if self.to:
            return re.compile(re.escape(self.to) + "$")
        return None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "from": self.from_path,
            "waitForFrom": self.wait_for_from,
            "click": self.click,
            "to": self.to,
            "toPattern": self.to_pattern,
            "waitFor": self.wait_for,
            "waitUntil": self.wait_until,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class Scenario:
    """A measured user journey, shared by every target."""

    name: str
    type: str
    path: str | None = None
    wait_for: str | None = None
    wait_until: str = "load"
    reload: bool = True
    interact: bool = False
    requires_feature: str | None = None
    client_nav: ClientNavSpec | None = None

    @property
    def is_client_nav(self) -> bool:
        return self.type == "client-nav"

    @property
    def warmup_path(self) -> str | None:
        if self.path is not None:
            return self.path
        if self.client_nav is not None:
            return self.client_nav.from_path
        return None

    def url_for(self, target: Target) -> str:
        if self.path is not None:
            return target.url + self.path
        if self.client_nav is not None:
            return target.url + (self.client_nav.to or self.client_nav.from_path)
        return target.url

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "type": self.type}
        if self.path is not None:
            data["path"] = self.path
        if self.wait_for:
            data["waitFor"] = self.wait_for
        if self.wait_until != "load":
            data["waitUntil"] = self.wait_until
        if not self.reload:
            data["reload"] = False
        if self.interact:
            data["interact"] = True
        if self.requires_feature:
            data["requiresFeature"] = self.requires_feature
        if self.client_nav is not None:
            data["clientNav"] = self.client_nav.to_dict()
        return data


@dataclass(frozen=True)
class ThrottlingSpec:
    """CPU slowdown rate plus a named network condition."""

    cpu: float = 1.0
    network: str = "none"
    timeout_scale: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"cpu": self.cpu, "network": self.network}
        if self.timeout_scale is not None:
            data["timeoutScale"] = self.timeout_scale
        return data


@dataclass(frozen=True)
class ProfileSettings:
    """Per-profile knobs. ``None`` means fall back to the global default."""

    chart_cache: str = "default"
    throttling: str | ThrottlingSpec | None = None
    iterations: int | None = None
    warmup: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"chartCache": self.chart_cache}
        if isinstance(self.throttling, ThrottlingSpec):
            data["throttling"] = self.throttling.to_dict()
        elif self.throttling is not None:
            data["throttling"] = self.throttling
        if self.iterations is not None:
            data["iterations"] = self.iterations
        if self.warmup is not None:
            data["warmup"] = self.warmup
        return data


DEFAULT_PROFILE_SETTINGS: dict[str, ProfileSettings] = {
    "parity": ProfileSettings(chart_cache="no-store"),
    "idiomatic": ProfileSettings(chart_cache="default"),
}


@dataclass
class BenchmarkConfig:
    """Everything a run needs, loaded once from the JSON config file."""

    targets: list[Target]
    scenarios: list[Scenario] = field(default_factory=lambda: default_scenarios())
    profiles: list[str] = field(default_factory=lambda: list(DEFAULT_PROFILES))
    profile_settings: dict[str, ProfileSettings] = field(
        default_factory=lambda: dict(DEFAULT_PROFILE_SETTINGS)
    )
    iterations: int = DEFAULT_ITERATIONS
    warmup: bool = True
    throttling: str | ThrottlingSpec | None = None
    throttling_profiles: dict[str, ThrottlingSpec] = field(default_factory=dict)
    web_vitals_path: str | None = None
    path: Path | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def settings_for(self, profile: str) -> ProfileSettings:
        return self.profile_settings.get(profile) or ProfileSettings()

    def select_targets(self, only: Iterable[str] | None) -> list[Target]:
        if not only:
            return list(self.targets)
        allow = {name for name in only if name}
        unknown = allow - {target.name for target in self.targets}
        if unknown:
            raise ConfigError(f"Unknown target(s) in --only: {', '.join(sorted(unknown))}")
        return [target for target in self.targets if target.name in allow]


def default_scenarios() -> list[Scenario]:
    """Return the default scenario plan: page loads, the chart and two in-app navigations."""

    return [
        Scenario(name="home", type="ssr", path="/"),
        Scenario(name="stays", type="ssr", path="/stays", wait_for='[data-testid="stay-card"]'),
        Scenario(
            name="blog",
            type="ssg",
            path="/blog",
            wait_for='[data-testid="blog-post-card"]',
            wait_until="domcontentloaded",
            reload=False,
        ),
        Scenario(name="chart", type="spa", path="/chart", interact=True),
        Scenario(
            name="spa_nav",
            type="client-nav",
            requires_feature="clientNav",
            client_nav=ClientNavSpec(
                from_path="/",
                to="/stays",
                click='a[href="/stays"]',
                wait_for='[data-testid="stay-card"]',
            ),
        ),
        Scenario(
            name="spa_nav_dynamic",
            type="client-nav",
            requires_feature="clientNav",
            client_nav=ClientNavSpec(
                from_path="/stays",
                wait_for_from='[data-testid="stay-card"]',
                click='[data-testid="stay-card"]',
                to_pattern=r"/stays/\d+$",
                wait_for='[data-testid="stay-description"]',
            ),
        ),
    ]


def load_config(path: str | Path) -> BenchmarkConfig:
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"Config {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {config_path} must be a JSON object")
    config = parse_config(raw)
    config.path = config_path
    return config


def parse_config(raw: Mapping[str, Any]) -> BenchmarkConfig:
    targets = normalize_targets(raw.get("frameworks", raw.get("targets")))

    scenarios_raw = raw.get("scenarios")
    if isinstance(scenarios_raw, list):
        scenarios = [parse_scenario(item) for item in scenarios_raw]
    else:
        scenarios = default_scenarios()
    names = [scenario.name for scenario in scenarios]
    if len(set(names)) != len(names):
        raise ConfigError("Scenario names must be unique")

    profiles_raw = raw.get("profiles")
    if isinstance(profiles_raw, list) and profiles_raw:
        profiles = [str(name) for name in profiles_raw]
    else:
        profiles = list(DEFAULT_PROFILES)

    settings_raw = raw.get("profileSettings")
    if isinstance(settings_raw, Mapping):
        profile_settings = {
            str(name): parse_profile_settings(value or {}) for name, value in settings_raw.items()
        }
    else:
        profile_settings = dict(DEFAULT_PROFILE_SETTINGS)

    throttling_raw = raw.get("throttlingProfiles") or {}
    if not isinstance(throttling_raw, Mapping):
        raise ConfigError("throttlingProfiles must be an object keyed by name")
    throttling_profiles: dict[str, ThrottlingSpec] = {}
    for name, value in throttling_raw.items():
        spec = parse_throttling(value)
        if not isinstance(spec, ThrottlingSpec):
            raise ConfigError(f"throttlingProfiles.{name} must be an object with cpu/network")
        throttling_profiles[str(name)] = spec

    return BenchmarkConfig(
        targets=targets,
        scenarios=scenarios,
        profiles=profiles,
        profile_settings=profile_settings,
        iterations=parse_positive_int(raw.get("iterations", DEFAULT_ITERATIONS), "iterations"),
        warmup=bool(raw.get("warmup", True)),
        throttling=parse_throttling(raw.get("throttling")),
        throttling_profiles=throttling_profiles,
        web_vitals_path=raw.get("webVitalsPath"),
        raw=dict(raw),
    )


def normalize_targets(value: Any) -> list[Target]:
    if not value:
        return []
    if isinstance(value, Mapping):
        entries = []
        for name, item in value.items():
            if isinstance(item, str):
                entries.append({"name": name, "url": item})
            else:
                entries.append({"name": name, **dict(item)})
    elif isinstance(value, Sequence) and not isinstance(value, str):
        entries = list(value)
    else:
        raise ConfigError("frameworks must be a list or an object keyed by name")

    targets: list[Target] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise ConfigError(f"Invalid target entry: {entry!r}")
        name = entry.get("name")
        url = entry.get("url")
        if not name or not url:
            raise ConfigError(f"Target entries need a name and a url: {dict(entry)!r}")
        targets.append(
            Target(
                name=str(name),
                url=str(url).rstrip("/"),
                delivery=entry.get("delivery"),
                rendering=dict(entry.get("rendering") or {}),
                features={key: bool(flag) for key, flag in (entry.get("features") or {}).items()},
                deploy=entry.get("deploy"),
            )
        )
    return targets


def parse_scenario(raw: Mapping[str, Any]) -> Scenario:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Invalid scenario entry: {raw!r}")
    name = raw.get("name")
    if not name:
        raise ConfigError(f"Scenario without a name: {dict(raw)!r}")
    scenario_type = raw.get("type") or ("client-nav" if raw.get("clientNav") else "ssr")
    if scenario_type not in SCENARIO_TYPES:
        raise ConfigError(f"Scenario {name}: unknown type {scenario_type!r}")

    client_nav = None
    nav_raw = raw.get("clientNav")
    if nav_raw:
        if not isinstance(nav_raw, Mapping):
            raise ConfigError(f"Scenario {name}: clientNav must be an object")
        client_nav = ClientNavSpec(
            from_path=nav_raw.get("from") or "/",
            wait_for_from=nav_raw.get("waitForFrom"),
            click=nav_raw.get("click"),
            to=nav_raw.get("to"),
            to_pattern=nav_raw.get("toPattern"),
            wait_for=nav_raw.get("waitFor"),
            wait_until=_wait_condition(nav_raw.get("waitUntil"), name),
        )
    if scenario_type == "client-nav" and client_nav is None:
        raise ConfigError(f"Scenario {name}: client-nav scenarios need a clientNav block")
    if scenario_type != "client-nav" and not raw.get("path"):
        raise ConfigError(f"Scenario {name}: a path is required")

    return Scenario(
        name=str(name),
        type=scenario_type,
        path=raw.get("path"),
        wait_for=raw.get("waitFor"),
        wait_until=_wait_condition(raw.get("waitUntil"), name),
        reload=raw.get("reload") is not False,
        interact=bool(raw.get("interact", False)),
        requires_feature=raw.get("requiresFeature"),
        client_nav=client_nav,
    )


def parse_profile_settings(raw: Mapping[str, Any]) -> ProfileSettings:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Profile settings must be an object, got {raw!r}")
    iterations = raw.get("iterations")
    warmup = raw.get("warmup")
    return ProfileSettings(
        chart_cache=raw.get("chartCache") or "default",
        throttling=parse_throttling(raw.get("throttling")),
        iterations=None if iterations is None else parse_positive_int(iterations, "iterations"),
        warmup=warmup if isinstance(warmup, bool) else None,
    )


def parse_throttling(value: Any) -> str | ThrottlingSpec | None:
    if not value:
        return None
    if isinstance(value, ThrottlingSpec):
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        cpu = value.get("cpu", 1)
        scale = value.get("timeoutScale")
        try:
            cpu = float(cpu)
            scale = None if scale is None else float(scale)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid throttling values: {dict(value)!r}") from exc
        if not math.isfinite(cpu) or cpu < 0:
            raise ConfigError(f"Throttling cpu rate must be >= 0, got {cpu}")
        return ThrottlingSpec(cpu=cpu, network=value.get("network") or "none", timeout_scale=scale)
    raise ConfigError(f"Invalid throttling value: {value!r}")


def parse_positive_int(value: Any, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be an integer, got {value!r}") from exc
    if number < 1:
        raise ConfigError(f"{label} must be >= 1, got {number}")
    return number


def _wait_condition(value: Any, scenario: str) -> str:
    if value is None:
        return "load"
    if value not in WAIT_CONDITIONS:
        raise ConfigError(f"Scenario {scenario}: unknown waitUntil {value!r}")
    return str(value)
