"""Pytest fixtures and in-memory stand-ins for Playwright objects."""

from __future__ import annotations

import copy
import re
from pathlib import Path
from typing import Any, Callable

import pytest

from cfbench.collector import HYDRATION_STATE_SCRIPT, INP_STATE_SCRIPT, LCP_STATE_SCRIPT
from cfbench.config import Target, Timing
from cfbench.instrumentation import SNAPSHOT_SCRIPT
from cfbench.interactions import CHART_READY_SCRIPT
from cfbench.session import BROWSER_ENV_SCRIPT


def make_snapshot(
    ttfb: float = 40.0,
    lcp: float = 900.0,
    tbt: float = 12.0,
    js: int = 50_000,
    css: int = 5_000,
    app: dict[str, Any] | None = None,
    has_fcp: bool = True,
) -> dict[str, Any]:
    return {
        "href": "https://example.test/",
        "nav": {"ttfb": ttfb, "domContentLoaded": 200.0, "loadEvent": 400.0},
        "cwv": {
            "lcp": {"value": lcp, "source": "observer"},
            "cls": {"value": 0.01, "source": "observer"},
            "fcp": {"value": 300.0, "source": "observer"},
        },
        "longTasks": {"tbt": tbt, "count": 2, "totalCount": 3, "hasFcp": has_fcp},
        "resources": {"js": js, "css": css, "total": js + css + 1_000},
        "errors": [],
        "app": app or {},
    }


class FakeResponse:
    def __init__(self, status: int = 200, headers: dict[str, str] | None = None, body: Any = None) -> None:
        self.status = status
        self.headers = headers or {}
        self._body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    async def json(self) -> Any:
        if self._body is None:
            raise ValueError("no json body")
        return self._body


class FakeCDPSession:
    def __init__(self, fail: bool = False, metrics: list[dict[str, float]] | None = None) -> None:
        self.fail = fail
        self.sent: list[tuple[str, Any]] = []
        self.detached = False
        self._metrics = list(metrics or [])

    async def send(self, method: str, params: Any = None) -> Any:
        from playwright.async_api import Error as PlaywrightError

        if self.fail:
            raise PlaywrightError("Target closed")
        self.sent.append((method, params))
        if method == "Performance.getMetrics":
            values = self._metrics.pop(0) if len(self._metrics) > 1 else (self._metrics[0] if self._metrics else {})
            return {"metrics": [{"name": name, "value": value} for name, value in values.items()]}
        return {}

    async def detach(self) -> None:
        self.detached = True


class FakeMouse:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def move(self, x: float, y: float, steps: int = 1) -> None:
        self.events.append(("move", x, y, steps))

    async def down(self) -> None:
        self.events.append(("down",))

    async def up(self) -> None:
        self.events.append(("up",))

    async def wheel(self, dx: float, dy: float) -> None:
        self.events.append(("wheel", dx, dy))


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str) -> None:
        self._page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    async def count(self) -> int:
        return 1 if self.selector in self._page.present else 0

    async def bounding_box(self) -> dict[str, float] | None:
        return {"x": 0, "y": 0, "width": 1000, "height": 500}

    async def select_option(self, value: str) -> None:
        self._page.actions.append(("select", self.selector, value))

    async def click(self) -> None:
        self._page.actions.append(("click", self.selector))


class FakeContext:
    def __init__(self, page: "FakePage", options: dict[str, Any] | None = None) -> None:
        self.page = page
        self.options = options or {}
        self.init_scripts: list[str] = []
        self.closed = False
        self.request = FakeRequestContext(page)
        page.context = self

    async def add_init_script(self, script: str | None = None, path: Any = None) -> None:
        self.init_scripts.append(script or "")

    async def new_page(self) -> "FakePage":
        return self.page

    async def new_cdp_session(self, page: "FakePage") -> FakeCDPSession:
        page.cdp_sessions += 1
        return page.cdp

    async def close(self) -> None:
        self.closed = True


class FakeRequestContext:
    def __init__(self, page: "FakePage") -> None:
        self._page = page
        self.requests: list[str] = []

    async def get(self, url: str, timeout: float | None = None) -> FakeResponse:
        self.requests.append(url)
        return self._page.bench_response


class FakePage:
    """Page double.

    ``navigations`` is a queue of outcomes consumed by ``goto``/``reload``:
    an int status, a ``FakeResponse`` or an exception to raise. An empty
    queue answers 200.
    """

    def __init__(
        self,
        snapshot: dict[str, Any] | None = None,
        navigations: list[Any] | None = None,
        headers: dict[str, str] | None = None,
        cdp: FakeCDPSession | None = None,
        chart_ready: bool = True,
        hydration: dict[str, Any] | None = None,
        present: set[str] | None = None,
    ) -> None:
        self.snapshot = snapshot if snapshot is not None else make_snapshot()
        self.navigations = list(navigations or [])
        self.headers = headers or {}
        self.cdp = cdp or FakeCDPSession(metrics=[{"JSHeapUsedSize": 1_000_000, "TaskDuration": 0.5}])
        self.chart_ready = chart_ready
        self.hydration = hydration or {"status": "present", "startMs": 10, "endMs": 20}
        self.present = present if present is not None else set()
        self.context: FakeContext | None = None
        self.mouse = FakeMouse()
        self.url = "about:blank"
        self.calls: list[tuple[str, Any, Any]] = []
        self.actions: list[tuple] = []
        self.waits: list[float] = []
        self.cdp_sessions = 0
        self.bench_response = FakeResponse(200, {"cache-control": "no-store"}, {"isolateId": "iso-1", "hits": 3})
        self.hang: Callable[[], Any] | None = None

    async def _navigate(self, action: str, url: str | None, wait_until: str) -> FakeResponse:
        self.calls.append((action, url, wait_until))
        if self.hang is not None:
            await self.hang()
        outcome = self.navigations.pop(0) if self.navigations else 200
        if isinstance(outcome, BaseException):
            raise outcome
        if url:
            self.url = url
        if isinstance(outcome, FakeResponse):
            return outcome
        return FakeResponse(outcome, dict(self.headers))

    async def goto(self, url: str, wait_until: str = "load", timeout: float | None = None) -> FakeResponse:
        return await self._navigate("goto", url, wait_until)

    async def reload(self, wait_until: str = "load", timeout: float | None = None) -> FakeResponse:
        return await self._navigate("reload", None, wait_until)

    async def wait_for_timeout(self, timeout: float) -> None:
        self.waits.append(timeout)

    async def wait_for_selector(self, selector: str, timeout: float | None = None) -> None:
        self.actions.append(("wait_for_selector", selector))

    async def click(self, selector: str) -> None:
        self.actions.append(("click", selector))

    async def wait_for_url(self, pattern: re.Pattern[str], timeout: float | None = None) -> None:
        self.actions.append(("wait_for_url", pattern.pattern))

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def evaluate(self, script: str) -> Any:
        if script == SNAPSHOT_SCRIPT:
            return copy.deepcopy(self.snapshot)
        if script == LCP_STATE_SCRIPT:
            return {"lcp": 900.0, "lastTs": 100.0, "now": 5_000.0}
        if script == HYDRATION_STATE_SCRIPT:
            return dict(self.hydration)
        if script == INP_STATE_SCRIPT:
            return True
        if script == CHART_READY_SCRIPT:
            return self.chart_ready
        if script == BROWSER_ENV_SCRIPT:
            return {"language": "en-US", "timeZone": "UTC", "userAgent": "FakeChrome"}
        raise AssertionError(f"unexpected script: {script[:40]}")


class FakeBrowser:
    def __init__(self, page_factory: Callable[[], FakePage] | None = None) -> None:
        self._page_factory = page_factory or FakePage
        self.contexts: list[FakeContext] = []
        self.version = "120.0.0.0"

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self._page_factory(), options)
        self.contexts.append(context)
        return context


@pytest.fixture
def fast_timing() -> Timing:
    """Timing with short hard timeouts so tests never wait long."""
    return Timing(scenario_hard_timeout_ms=500, cdp_timeout_ms=200)


@pytest.fixture
def target() -> Target:
    return Target(
        name="alpha",
        url="https://alpha.example.test",
        delivery="edge-ssr",
        rendering={"home": "ssr", "stays": "ssr", "blog": "ssg", "chart": "csr"},
        features={"clientNav": True},
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    import json

    def write(data: dict[str, Any]) -> Path:
        path = tmp_path / "bench.config.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return write
