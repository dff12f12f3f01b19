from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

from playwright.async_api import CDPSession, Page
from playwright.async_api import Error as PlaywrightError

from .config import TIMING, Timing
from .instrumentation import SNAPSHOT_SCRIPT

LOGGER = logging.getLogger("cfbench.collector")

LCP_STATE_SCRIPT = """() => {
  const root = globalThis.__BENCH__;
  const lcp = root && root.cwv && root.cwv.lcp ? root.cwv.lcp.value : null;
  const lastTs = root && root.cwv ? (root.cwv.lcpLastTs ?? null) : null;
  return { lcp: lcp, lastTs: lastTs, now: performance.now() };
}"""

HYDRATION_STATE_SCRIPT = """() => {
  const h = globalThis.__CF_BENCH__ && globalThis.__CF_BENCH__.hydration;
  if (!h) return { status: 'missing' };
  return { status: 'present', startMs: h.startMs, endMs: h.endMs };
}"""

INP_STATE_SCRIPT = """() => {
  const root = globalThis.__BENCH__;
  return Number.isFinite(root && root.cwv && root.cwv.inp ? root.cwv.inp.value : NaN);
}"""

HEADER_KEYS: tuple[str, ...] = (
    "server-timing",
    "cf-cache-status",
    "cf-ray",
    "cache-control",
    "age",
    "date",
)

HOST_METRIC_SOURCE = "cdp:Performance.getMetrics"

HYDRATION_COMPLETE = "complete"
HYDRATION_NOT_APPLICABLE = "not_applicable"
HYDRATION_TIMEOUT = "timeout"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _coerce(raw: str) -> Any:
    cleaned = raw.strip().strip('"')
    if not cleaned:
        return cleaned
    for cast in (int, float):
        try:
            number = cast(cleaned)
        except ValueError:
            continue
        if _is_number(number):
            return number
    return cleaned


def parse_server_timing(value: str | None) -> list[dict[str, Any]] | None:
    """Split a ``Server-Timing`` header into ``{"name": ..., key: value}`` entries.

    A key without ``=`` becomes ``True``; numeric values are converted.
    """
    if not value:
        return None
    entries = [entry.strip() for entry in value.split(",") if entry.strip()]
    if not entries:
        return None
    parsed = []
    for entry in entries:
        parts = [part.strip() for part in entry.split(";") if part.strip()]
        data: dict[str, Any] = {"name": parts[0]}
        for part in parts[1:]:
            key, sep, raw_value = part.partition("=")
            key = key.strip()
            if not key:
                continue
            data[key] = _coerce(raw_value) if sep else True
        parsed.append(data)
    return parsed


def capture_headers(headers: Mapping[str, str] | None) -> dict[str, Any]:
    headers = {key.lower(): value for key, value in (headers or {}).items()}
    captured: dict[str, Any] = {key: headers.get(key) for key in HEADER_KEYS}
    captured["serverTiming"] = parse_server_timing(headers.get("server-timing"))
    return captured


def extract_colo(cf_ray: str | None) -> str | None:
    """``"8f1c2a3b4d5e6f70-AMS"`` -> ``"AMS"``."""
    if not cf_ray:
        return None
    prefix, sep, colo = cf_ray.rpartition("-")
    if not sep or not colo:
        return None
    return colo


@dataclass(frozen=True)
class HostMetrics:
    """Host-side counters read over CDP. Durations are ms since the unit started."""

    js_heap_used_size: float | None = None
    js_heap_total_size: float | None = None
    task_duration_ms: float | None = None
    script_duration_ms: float | None = None
    layout_duration_ms: float | None = None
    recalc_style_duration_ms: float | None = None
    source: str = HOST_METRIC_SOURCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "jsHeapUsedSize": self.js_heap_used_size,
            "jsHeapTotalSize": self.js_heap_total_size,
            "taskDurationMs": self.task_duration_ms,
            "scriptDurationMs": self.script_duration_ms,
            "layoutDurationMs": self.layout_duration_ms,
            "recalcStyleDurationMs": self.recalc_style_duration_ms,
        }


def _metric_values(payload: Mapping[str, Any] | None) -> dict[str, float]:
    if not payload:
        return {}
    return {
        item["name"]: item["value"]
        for item in payload.get("metrics", [])
        if "name" in item and _is_number(item.get("value"))
    }


class CdpMetricsSession:
    """CDP sub-session reading ``Performance.getMetrics`` relative to a baseline."""

    def __init__(self, page: Page) -> None:
        self._page = page
        self._client: CDPSession | None = None
        self._baseline: dict[str, float] = {}

    async def start(self) -> None:
        try:
            self._client = await self._page.context.new_cdp_session(self._page)
            await self._client.send("Performance.enable")
            self._baseline = _metric_values(await self._client.send("Performance.getMetrics"))
        except PlaywrightError as exc:
            LOGGER.debug("CDP metrics session unavailable: %s", exc)
            self._client = None
            self._baseline = {}

    async def sample(self) -> HostMetrics | None:
        try:
            client = self._client
            if client is None:
                client = await self._page.context.new_cdp_session(self._page)
                await client.send("Performance.enable")
                self._client = client
            current = _metric_values(await client.send("Performance.getMetrics"))
        except PlaywrightError as exc:
            LOGGER.debug("CDP metrics sample failed: %s", exc)
            return None

        def delta_ms(name: str) -> float | None:
            value = current.get(name)
            if value is None:
                return None
            base = self._baseline.get(name)
            seconds = value - base if base is not None else value
            return seconds * 1000

        return HostMetrics(
            js_heap_used_size=current.get("JSHeapUsedSize"),
            js_heap_total_size=current.get("JSHeapTotalSize"),
            task_duration_ms=delta_ms("TaskDuration"),
            script_duration_ms=delta_ms("ScriptDuration"),
            layout_duration_ms=delta_ms("LayoutDuration"),
            recalc_style_duration_ms=delta_ms("RecalcStyleDuration"),
        )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        with contextlib.suppress(PlaywrightError):
            await client.detach()


@contextlib.asynccontextmanager
async def cdp_metrics(page: Page) -> AsyncIterator[CdpMetricsSession]:
    session = CdpMetricsSession(page)
    await session.start()
    try:
        yield session
    finally:
        await session.close()


@dataclass
class CollectedMetrics:
    synthetic: dict[str, Any] | None
    host: HostMetrics | None
    hydration: str


async def wait_for_lcp_settled(page: Page, timeout_scale: float = 1.0, timing: Timing = TIMING) -> bool:
    """Wait until the largest paint has not changed for the quiet window.

    Needs ``lcp_min_stable_checks`` consecutive stable polls; gives up after
    the scaled max wait.
    """
    deadline = time.monotonic() + timing.lcp_max_wait_ms * timeout_scale / 1000
    stable_checks = 0
    while time.monotonic() < deadline:
        state = await page.evaluate(LCP_STATE_SCRIPT) or {}
        lcp, last_ts, now = state.get("lcp"), state.get("lastTs"), state.get("now")
        if lcp is not None and last_ts is not None and now is not None:
            if now - last_ts >= timing.lcp_stable_window_ms:
                stable_checks += 1
                if stable_checks >= timing.lcp_min_stable_checks:
                    return True
            else:
                stable_checks = 0
        await page.wait_for_timeout(timing.lcp_poll_ms)
    return False


async def wait_for_hydration(page: Page, timeout_scale: float = 1.0, timing: Timing = TIMING) -> str:
    """Wait for the page's hydration start/end markers.

    Pages that never expose the markers are ``not_applicable`` once the grace
    period has passed.
    """
    started = time.monotonic()
    deadline = started + timing.hydration_max_wait_ms * timeout_scale / 1000
    grace_s = timing.hydration_missing_grace_ms / 1000
    while time.monotonic() < deadline:
        state = await page.evaluate(HYDRATION_STATE_SCRIPT) or {}
        if state.get("status") == "present":
            if _is_number(state.get("startMs")) and _is_number(state.get("endMs")):
                return HYDRATION_COMPLETE
        elif time.monotonic() - started > grace_s:
            return HYDRATION_NOT_APPLICABLE
        await page.wait_for_timeout(timing.hydration_poll_ms)
    return HYDRATION_TIMEOUT


async def wait_for_inp(page: Page, timeout_ms: float, timing: Timing = TIMING) -> bool:
    deadline = time.monotonic() + timeout_ms / 1000
    while time.monotonic() < deadline:
        if await page.evaluate(INP_STATE_SCRIPT):
            return True
        await page.wait_for_timeout(timing.inp_poll_ms)
    return False


async def collect(
    page: Page,
    cdp: CdpMetricsSession | None,
    *,
    skip_lcp: bool = False,
    suppress_nav: bool = False,
    timeout_scale: float = 1.0,
    timing: Timing = TIMING,
) -> CollectedMetrics:
    """Wait for the page to settle, then pull synthetic and host-side metrics.

    Host metrics are best effort: a slow or failing CDP channel yields
    ``host=None`` rather than an error.
    """
    if not skip_lcp:
        await wait_for_lcp_settled(page, timeout_scale, timing)
    hydration = await wait_for_hydration(page, timeout_scale, timing)
    await page.wait_for_timeout(timing.post_load_settle_ms * timeout_scale)

    synthetic = await page.evaluate(SNAPSHOT_SCRIPT)
    if synthetic is not None and suppress_nav:
        synthetic["nav"] = None

    host = None
    if cdp is not None:
        try:
            host = await asyncio.wait_for(cdp.sample(), timing.cdp_timeout_ms * timeout_scale / 1000)
        except asyncio.TimeoutError:
            LOGGER.debug("CDP metrics timed out for %s", getattr(page, "url", "<page>"))
    return CollectedMetrics(synthetic=synthetic, host=host, hydration=hydration)
