from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from playwright.async_api import Page, Response

from .collector import CdpMetricsSession, capture_headers, cdp_metrics, collect, wait_for_inp
from .config import TIMING, Scenario, Target, ThrottlingSpec, Timing
from .interactions import ScenarioError, chart_interactions
from .navigation import NavigationError, error_to_string, navigate_with_retry
from .records import RunRecord

LOGGER = logging.getLogger("cfbench.scenario")

SCENARIO_TIMEOUT = "scenario_timeout"


class ScenarioTimeout(ScenarioError):
    """The unit did not finish within its hard timeout."""

    def __init__(self) -> None:
        super().__init__(SCENARIO_TIMEOUT)


@dataclass(frozen=True)
class UnitContext:
    """Coordinates of one measured unit plus the profile settings it runs under."""

    target: Target
    scenario: Scenario
    iteration: int
    phase: str
    profile: str
    throttling: ThrottlingSpec | None = None
    timeout_scale: float = 1.0
    throttle_applied: Mapping[str, Any] | None = None
    is_cold: bool = False

    def throttling_dict(self) -> dict[str, Any] | None:
        if self.throttling is None:
            return None
        return {
            "cpu": self.throttling.cpu,
            "network": self.throttling.network,
            "timeoutScale": self.timeout_scale,
        }


@dataclass
class _UnitProgress:
    status: int | None = None
    attempts: int = 0
    wait_until: str | None = None


def missing_feature(target: Target, scenario: Scenario) -> str | None:
    if scenario.requires_feature and not target.has_feature(scenario.requires_feature):
        return scenario.requires_feature
    return None


class ScenarioRunner:
    """Run one unit: navigation, scenario-specific waits, then metric collection.

    ``run`` always returns a ``RunRecord``; every failure inside the unit,
    including the hard timeout, becomes a failed record.
    """

    def __init__(self, timing: Timing = TIMING) -> None:
        self._timing = timing

    def _base(self, unit: UnitContext) -> dict[str, Any]:
        return {
            "target": unit.target.name,
            "target_meta": unit.target.meta(),
            "profile": unit.profile,
            "phase": unit.phase,
            "scenario": unit.scenario.name,
            "scenario_type": unit.scenario.type,
            "iteration": unit.iteration,
            "url": unit.scenario.url_for(unit.target),
            "is_cold": unit.is_cold,
            "throttling": unit.throttling_dict(),
            "throttle_applied": unit.throttle_applied,
        }

    def skipped_record(self, unit: UnitContext) -> RunRecord:
        feature = missing_feature(unit.target, unit.scenario)
        return RunRecord(
            **self._base(unit),
            ok=False,
            skipped=True,
            error=f"missing_feature:{feature}",
        )

    def failed_record(
        self, unit: UnitContext, error: str, status: int | None = None, progress: _UnitProgress | None = None
    ) -> RunRecord:
        progress = progress or _UnitProgress()
        return RunRecord(
            **self._base(unit),
            ok=False,
            status=status,
            nav_attempts=progress.attempts,
            wait_until=progress.wait_until,
            error=error,
        )

    async def run(self, page: Page, unit: UnitContext) -> RunRecord:
        if missing_feature(unit.target, unit.scenario):
            return self.skipped_record(unit)

        progress = _UnitProgress()
        hard_timeout_s = self._timing.scenario_hard_timeout_ms * unit.timeout_scale / 1000
        try:
            try:
                return await asyncio.wait_for(self._execute(page, unit, progress), hard_timeout_s)
            except asyncio.TimeoutError as exc:
                raise ScenarioTimeout() from exc
        except ScenarioTimeout as exc:
            LOGGER.warning(
                "%s/%s %s #%d hit the hard timeout (%.0fs)",
                unit.target.name,
                unit.scenario.name,
                unit.phase,
                unit.iteration,
                hard_timeout_s,
            )
            return self.failed_record(unit, str(exc), progress.status, progress)

    async def _execute(self, page: Page, unit: UnitContext, progress: _UnitProgress) -> RunRecord:
        async with cdp_metrics(page) as cdp:
            try:
                if unit.scenario.is_client_nav:
                    return await self._client_nav(page, unit, progress, cdp)
                return await self._page_load(page, unit, progress, cdp)
            except Exception as exc:  # noqa: BLE001
                status = exc.status if isinstance(exc, NavigationError) and exc.status is not None else progress.status
                if isinstance(exc, NavigationError):
                    progress.attempts = max(progress.attempts, exc.attempts)
                LOGGER.debug("%s/%s %s failed: %s", unit.target.name, unit.scenario.name, unit.phase, exc)
                return self.failed_record(unit, error_to_string(exc), status, progress)

    async def _client_nav(
        self, page: Page, unit: UnitContext, progress: _UnitProgress, cdp: CdpMetricsSession
    ) -> RunRecord:
        nav = unit.scenario.client_nav
        if nav is None:
            raise ScenarioError("client_nav_not_configured")
        scale = unit.timeout_scale
        nav_timeout = self._timing.client_nav_timeout_ms * scale

        result = await navigate_with_retry(
            page,
            "goto",
            unit.target.url + nav.from_path,
            wait_until=nav.wait_until,
            timeout_ms=self._timing.scenario_wait_timeout_ms * scale,
        )
        progress.status, progress.attempts, progress.wait_until = result.status, result.attempts, result.wait_until

        if nav.wait_for_from:
            await page.wait_for_selector(nav.wait_for_from, timeout=nav_timeout)
        started = time.perf_counter()
        if nav.click:
            await page.click(nav.click)
        pattern = nav.url_pattern()
        if pattern is not None:
            await page.wait_for_url(pattern, timeout=nav_timeout)
        if nav.wait_for:
            await page.wait_for_selector(nav.wait_for, timeout=nav_timeout)
        client_nav_ms = (time.perf_counter() - started) * 1000

        await wait_for_inp(page, self._timing.inp_settle_ms * scale, self._timing)
        metrics = await collect(
            page, cdp, skip_lcp=True, suppress_nav=True, timeout_scale=scale, timing=self._timing
        )
        return self._success_record(unit, progress, result.response, metrics, client_nav_ms)

    async def _page_load(
        self, page: Page, unit: UnitContext, progress: _UnitProgress, cdp: CdpMetricsSession
    ) -> RunRecord:
        scenario = unit.scenario
        scale = unit.timeout_scale
        wait_timeout = self._timing.scenario_wait_timeout_ms * scale
        action = "reload" if unit.phase == "warm" and scenario.reload else "goto"

        result = await navigate_with_retry(
            page,
            action,
            scenario.url_for(unit.target),
            wait_until=scenario.wait_until,
            timeout_ms=wait_timeout,
        )
        progress.status, progress.attempts, progress.wait_until = result.status, result.attempts, result.wait_until

        if scenario.wait_for:
            await page.wait_for_selector(scenario.wait_for, timeout=wait_timeout)
        if scenario.interact:
            await chart_interactions(page, scale, self._timing)
            await wait_for_inp(page, self._timing.inp_settle_ms * scale, self._timing)

        metrics = await collect(page, cdp, timeout_scale=scale, timing=self._timing)
        if scenario.interact:
            chart = ((metrics.synthetic or {}).get("app") or {}).get("chart") or {}
            if chart.get("error"):
                raise ScenarioError(f"chart_error:{chart.get('errorMessage') or 'chart_error'}")
        return self._success_record(unit, progress, result.response, metrics, None)

    def _success_record(
        self,
        unit: UnitContext,
        progress: _UnitProgress,
        response: Response | None,
        metrics: Any,
        client_nav_ms: float | None,
    ) -> RunRecord:
        headers = capture_headers(response.headers if response is not None else None)
        nav = (metrics.synthetic or {}).get("nav") or {}
        return RunRecord(
            **self._base(unit),
            ok=True,
            status=progress.status,
            nav_attempts=progress.attempts,
            wait_until=progress.wait_until,
            headers=headers,
            server_metrics={"ttfb": nav.get("ttfb"), "serverTiming": headers["serverTiming"]},
            synthetic=metrics.synthetic,
            host=metrics.host,
            hydration=metrics.hydration,
            client_nav_ms=client_nav_ms,
        )
