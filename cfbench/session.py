from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from playwright.async_api import Browser, BrowserContext, Page
from playwright.async_api import Error as PlaywrightError

from .collector import capture_headers
from .config import TIMING, Scenario, Target, ThrottlingSpec, Timing
from .navigation import error_to_string
from .throttle import apply_throttling

LOGGER = logging.getLogger("cfbench.session")

VIEWPORT = {"width": 1280, "height": 720}
BENCH_PROFILE_HEADER = "x-cf-bench-profile"
BENCH_API_PATH = "/api/bench"
BENCH_API_TIMEOUT_MS = 8_000

BROWSER_ENV_SCRIPT = """() => ({
  language: navigator.language,
  languages: navigator.languages,
  timeZone: Intl.DateTimeFormat().resolvedOptions().timeZone,
  hardwareConcurrency: navigator.hardwareConcurrency,
  deviceMemory: navigator.deviceMemory,
  userAgent: navigator.userAgent,
})"""


def bench_headers(profile: str | None) -> dict[str, str]:
    if not profile:
        return {}
    return {BENCH_PROFILE_HEADER: profile}


@dataclass(frozen=True)
class SessionOptions:
    """What every session opened for one profile shares."""

    profile: str
    init_script: str
    throttling: ThrottlingSpec | None = None
    timeout_scale: float = 1.0


@dataclass
class BrowserSession:
    context: BrowserContext
    page: Page
    throttle_applied: dict[str, Any] | None


class BrowserSessionManager:
    """Hand out fresh, isolated browser contexts; one per measured unit."""

    def __init__(self, browser: Browser, timing: Timing = TIMING) -> None:
        self._browser = browser
        self._timing = timing

    def session(
        self, options: SessionOptions, sanity_url: str | None = None
    ) -> contextlib.AbstractAsyncContextManager[BrowserSession]:
        return _SessionContext(self, options, sanity_url)

    async def _start(self, options: SessionOptions, sanity_url: str | None) -> BrowserSession:
        context = await self._browser.new_context(
            viewport=VIEWPORT, extra_http_headers=bench_headers(options.profile)
        )
        try:
            await context.add_init_script(script=options.init_script)
            page = await context.new_page()
            throttle_applied = await apply_throttling(page, options.throttling)
            if sanity_url:
                try:
                    await page.goto(sanity_url, wait_until="load")
                except PlaywrightError as exc:
                    LOGGER.debug("Sanity request to %s failed: %s", sanity_url, error_to_string(exc))
        except BaseException:
            await self._stop(context)
            raise
        return BrowserSession(context=context, page=page, throttle_applied=throttle_applied)

    async def _stop(self, context: BrowserContext) -> None:
        with contextlib.suppress(PlaywrightError):
            await context.close()

    async def warmup(self, target: Target, scenarios: Iterable[Scenario], options: SessionOptions) -> bool:
        """Hit every scenario route once, unmeasured, so the first measured
        request does not pay for cold isolates or empty edge caches.

        Returns False when any route failed; failures never abort the run.
        """
        LOGGER.info("Warming up %s", target.name)
        ok = True
        try:
            async with self.session(options) as session:
                for scenario in scenarios:
                    path = scenario.warmup_path
                    if path is None:
                        continue
                    try:
                        await session.page.goto(
                            target.url + path,
                            wait_until="load",
                            timeout=self._timing.warmup_nav_timeout_ms * options.timeout_scale,
                        )
                        await session.page.wait_for_timeout(self._timing.warmup_settle_ms)
                    except PlaywrightError as exc:
                        LOGGER.warning("Warmup failed for %s%s: %s", target.name, path, error_to_string(exc))
                        ok = False
        except PlaywrightError as exc:
            LOGGER.warning("Warmup session for %s could not be opened: %s", target.name, error_to_string(exc))
            return False
        return ok

    async def fetch_bench_api(self, target: Target) -> dict[str, Any]:
        """Read the target's ``/api/bench`` endpoint (isolate id, hit counter)."""
        context = None
        try:
            context = await self._browser.new_context(viewport=VIEWPORT)
            response = await context.request.get(target.url + BENCH_API_PATH, timeout=BENCH_API_TIMEOUT_MS)
            try:
                data = await response.json()
            except (PlaywrightError, ValueError):
                data = None
            return {
                "ok": response.ok,
                "status": response.status,
                "data": data,
                "headers": capture_headers(response.headers),
            }
        except PlaywrightError as exc:
            LOGGER.warning("Bench API request failed for %s: %s", target.name, error_to_string(exc))
            return {"ok": False, "error": error_to_string(exc)}
        finally:
            if context is not None:
                await self._stop(context)

    async def browser_env(self) -> dict[str, Any] | None:
        context = None
        try:
            context = await self._browser.new_context(viewport=VIEWPORT)
            page = await context.new_page()
            await page.goto("about:blank")
            return await page.evaluate(BROWSER_ENV_SCRIPT)
        except PlaywrightError as exc:
            LOGGER.debug("Could not read browser environment: %s", exc)
            return None
        finally:
            if context is not None:
                await self._stop(context)


class _SessionContext(contextlib.AbstractAsyncContextManager):
    def __init__(self, manager: BrowserSessionManager, options: SessionOptions, sanity_url: str | None) -> None:
        self._manager = manager
        self._options = options
        self._sanity_url = sanity_url
        self._session: BrowserSession | None = None

    async def __aenter__(self) -> BrowserSession:
        self._session = await self._manager._start(self._options, self._sanity_url)
        return self._session

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session is not None:
            await self._manager._stop(self._session.context)
            self._session = None
