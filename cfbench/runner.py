from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from playwright.async_api import Error as PlaywrightError

from .config import (
    DEFAULT_PROFILES,
    PHASES,
    TIMING,
    BenchmarkConfig,
    ProfileSettings,
    Target,
    ThrottlingSpec,
    Timing,
)
from .instrumentation import build_init_script
from .navigation import error_to_string
from .records import FailureRecord, RunRecord
from .scenario import ScenarioRunner, UnitContext, missing_feature
from .session import BENCH_API_PATH, BrowserSessionManager, SessionOptions
from .throttle import resolve_throttling, timeout_scale_for

LOGGER = logging.getLogger("cfbench.runner")

RUN_ORDER = ("profile", "target", "scenario", "iteration", "phase")
PHASE_ORDER = PHASES


@dataclass(frozen=True)
class RunOverrides:
    """Command line values that win over profile settings and config defaults."""

    iterations: int | None = None
    profile: str | None = None
    skip_warmup: bool = False
    throttle: str | ThrottlingSpec | None = None


@dataclass(frozen=True)
class ProfilePlan:
    name: str
    settings: ProfileSettings
    iterations: int
    warmup: bool
    throttling: ThrottlingSpec | None
    timeout_scale: float

    def bench_config(self) -> dict[str, Any]:
        """The object exposed to pages as ``__CF_BENCH_CONFIG__``."""
        return {"profile": self.name, **self.settings.to_dict()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "settings": self.settings.to_dict(),
            "iterations": self.iterations,
            "warmup": self.warmup,
            "throttling": self.throttling.to_dict() if self.throttling else None,
            "timeoutScale": self.timeout_scale,
        }


def resolve_profiles(config: BenchmarkConfig, requested: str | None) -> list[str]:
    if requested == "both":
        return list(DEFAULT_PROFILES)
    if requested:
        return [requested]
    return list(config.profiles)


def build_profile_plans(config: BenchmarkConfig, overrides: RunOverrides) -> list[ProfilePlan]:
    plans = []
    for name in resolve_profiles(config, overrides.profile):
        settings = config.settings_for(name)
        if overrides.iterations is not None:
            iterations = overrides.iterations
        else:
            iterations = settings.iterations or config.iterations
        if overrides.skip_warmup:
            warmup = False
        elif settings.warmup is not None:
            warmup = settings.warmup
        else:
            warmup = config.warmup
        throttling = resolve_throttling(config, name, overrides.throttle)
        plans.append(
            ProfilePlan(
                name=name,
                settings=settings,
                iterations=iterations,
                warmup=warmup,
                throttling=throttling,
                timeout_scale=timeout_scale_for(throttling),
            )
        )
    return plans


@dataclass
class RunOutcome:
    records: list[RunRecord] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)
    bundle_sizes: dict[str, dict[str, Any]] = field(default_factory=dict)
    bench_api: dict[str, dict[str, Any]] = field(default_factory=dict)
    started_at: str = ""
    duration_ms: float = 0.0

    def add(self, record: RunRecord) -> None:
        self.records.append(record)
        if not record.ok and not record.skipped:
            self.failures.append(FailureRecord.from_record(record))


def _fmt(value: float | None) -> str:
    return "-" if value is None else f"{value:.1f}"


def _bytes(value: float) -> str:
    if value < 1024:
        return f"{value:.0f}B"
    if value < 1024 * 1024:
        return f"{value / 1024:.1f}KB"
    return f"{value / (1024 * 1024):.2f}MB"


class RunController:
    """Drive every (profile, target, scenario, iteration, phase) unit in order.

    Units run one after another. No unit failure stops the run: failed
    records are kept and listed in ``RunOutcome.failures``.
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        targets: list[Target],
        plans: list[ProfilePlan],
        sessions: BrowserSessionManager,
        scenario_runner: ScenarioRunner | None = None,
        web_vitals_source: str | None = None,
        timing: Timing = TIMING,
    ) -> None:
        self._config = config
        self._targets = targets
        self._plans = plans
        self._sessions = sessions
        self._timing = timing
        self._runner = scenario_runner or ScenarioRunner(timing)
        self._web_vitals_source = web_vitals_source

    async def run(self) -> RunOutcome:
        outcome = RunOutcome(started_at=datetime.now(timezone.utc).isoformat())
        started = time.perf_counter()

        for target in self._targets:
            outcome.bench_api[target.name] = await self._sessions.fetch_bench_api(target)

        for plan in self._plans:
            LOGGER.info(
                "Profile %s (chartCache=%s, warmup=%s, iterations=%d, timeoutScale=%.1f)",
                plan.name,
                plan.settings.chart_cache,
                "on" if plan.warmup else "off",
                plan.iterations,
                plan.timeout_scale,
            )
            options = SessionOptions(
                profile=plan.name,
                init_script=build_init_script(plan.bench_config(), self._web_vitals_source),
                throttling=plan.throttling,
                timeout_scale=plan.timeout_scale,
            )
            for target in self._targets:
                await self._run_target(target, plan, options, outcome)

        outcome.duration_ms = (time.perf_counter() - started) * 1000
        return outcome

    async def _run_target(
        self, target: Target, plan: ProfilePlan, options: SessionOptions, outcome: RunOutcome
    ) -> None:
        LOGGER.info("Target %s (%s)", target.name, target.url)
        if plan.warmup:
            await self._sessions.warmup(target, self._config.scenarios, options)

        sizes = outcome.bundle_sizes.setdefault(target.name, {})
        sizes.update(js=0, css=0, total=0, measured=False)

        for index, scenario in enumerate(self._config.scenarios):
            for iteration in range(1, plan.iterations + 1):
                cold_unit = UnitContext(
                    target=target,
                    scenario=scenario,
                    iteration=iteration,
                    phase="cold",
                    profile=plan.name,
                    throttling=plan.throttling,
                    timeout_scale=plan.timeout_scale,
                    is_cold=index == 0 and iteration == 1,
                )
                if missing_feature(target, scenario):
                    outcome.add(self._runner.skipped_record(cold_unit))
                    continue

                cold, warm = await self._run_iteration(target, cold_unit, options)
                outcome.add(cold)
                if warm is not None:
                    outcome.add(warm)
                self._track_bundle_sizes(sizes, cold)
                self._log_progress(plan, cold, warm)

    async def _run_iteration(
        self, target: Target, cold_unit: UnitContext, options: SessionOptions
    ) -> tuple[RunRecord, RunRecord | None]:
        try:
            async with self._sessions.session(options, target.url + BENCH_API_PATH) as session:
                unit = replace(cold_unit, throttle_applied=session.throttle_applied)
                cold = await self._runner.run(session.page, unit)
                warm = None
                if not cold.skipped:
                    warm_unit = replace(unit, phase="warm", is_cold=False)
                    warm = await self._runner.run(session.page, warm_unit)
                return cold, warm
        except PlaywrightError as exc:
            LOGGER.error(
                "Could not open a browser session for %s/%s: %s",
                target.name,
                cold_unit.scenario.name,
                error_to_string(exc),
            )
            return self._runner.failed_record(cold_unit, error_to_string(exc)), None

    def _track_bundle_sizes(self, sizes: dict[str, Any], record: RunRecord) -> None:
        if sizes["measured"] or not record.ok or record.phase != "cold" or record.iteration != 1:
            return
        scenario = next((s for s in self._config.scenarios if s.name == record.scenario), None)
        if scenario is None or not scenario.interact:
            return
        for kind in ("js", "css", "total"):
            sizes[kind] += record.resource_bytes(kind)
        sizes["measured"] = True

    def _log_progress(self, plan: ProfilePlan, cold: RunRecord, warm: RunRecord | None) -> None:
        total = plan.iterations
        if cold.iteration == 1:
            LOGGER.info(
                "  [1/%d] %s cold: ttfb=%sms lcp=%sms tbt=%sms js=%s%s",
                total,
                cold.scenario,
                _fmt(cold.ttfb),
                _fmt(cold.web_vital("lcp")),
                _fmt(cold.tbt),
                _bytes(cold.resource_bytes("js")),
                "" if cold.ok else f" error={cold.error}",
            )
        if warm is None:
            return
        if cold.iteration == 1 or cold.iteration == total:
            LOGGER.info(
                "  [%d/%d] %s warm: ttfb=%sms lcp=%sms tbt=%sms%s",
                warm.iteration,
                total,
                warm.scenario,
                _fmt(warm.ttfb),
                _fmt(warm.web_vital("lcp")),
                _fmt(warm.tbt),
                "" if warm.ok else f" error={warm.error}",
            )

