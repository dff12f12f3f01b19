from __future__ import annotations

import logging
import time

from playwright.async_api import Page

from .config import TIMING, Timing

LOGGER = logging.getLogger("cfbench.interactions")

CHART_CANVAS = '[data-testid="chart-canvas"]'
TIMEFRAME_SELECT = '[data-testid="timeframe-select"]'
SYMBOL_SELECT = '[data-testid="symbol-select"]'
INDICATOR_CHECKBOX = 'input[type="checkbox"]'

CHART_READY_SCRIPT = (
    "() => !!(globalThis.__CF_BENCH__ && globalThis.__CF_BENCH__.chart"
    " && globalThis.__CF_BENCH__.chart.ready)"
)

SWITCH_TIMEFRAME = "15m"
SWITCH_SYMBOL = "ETH"


class ScenarioError(Exception):
    """A scenario assertion failed, e.g. the chart never became ready."""


async def wait_for_chart_ready(page: Page, timeout_ms: float, timing: Timing = TIMING) -> bool:
    deadline = time.monotonic() + timeout_ms / 1000
    while time.monotonic() < deadline:
        if await page.evaluate(CHART_READY_SCRIPT):
            return True
        await page.wait_for_timeout(timing.chart_ready_poll_ms)
    return False


async def chart_interactions(page: Page, timeout_scale: float = 1.0, timing: Timing = TIMING) -> None:
    """Drive the chart through drag, zoom, timeframe, indicator and symbol changes.

    The sequence is fixed so every target sees identical input. Controls that
    a target does not render are skipped.
    """
    ready_timeout = timing.chart_ready_timeout_ms * timeout_scale
    settle = timing.interaction_settle_ms * timeout_scale
    control_settle = timing.control_change_ms * timeout_scale

    await page.wait_for_selector(CHART_CANVAS, timeout=ready_timeout)
    if not await wait_for_chart_ready(page, ready_timeout, timing):
        raise ScenarioError("chart_not_ready")

    box = await page.locator(CHART_CANVAS).bounding_box()
    if box:
        y = box["y"] + box["height"] * 0.4
        await page.mouse.move(box["x"] + box["width"] * 0.65, y)
        await page.mouse.down()
        await page.mouse.move(box["x"] + box["width"] * 0.45, y, steps=6)
        await page.mouse.up()
        await page.wait_for_timeout(settle)
        await page.mouse.wheel(0, -450)
        await page.wait_for_timeout(settle)
    else:
        LOGGER.debug("chart canvas has no bounding box; skipping drag and zoom")

    timeframe = page.locator(TIMEFRAME_SELECT)
    if await timeframe.count():
        await timeframe.select_option(SWITCH_TIMEFRAME)
        await page.wait_for_timeout(control_settle)

    checkbox = page.locator(INDICATOR_CHECKBOX).first
    if await checkbox.count():
        await checkbox.click()
        await page.wait_for_timeout(control_settle)

    symbol = page.locator(SYMBOL_SELECT)
    if await symbol.count():
        await symbol.select_option(SWITCH_SYMBOL)
        if not await wait_for_chart_ready(page, ready_timeout, timing):
            raise ScenarioError("chart_not_ready")
        await page.wait_for_timeout(control_settle)
