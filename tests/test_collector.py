"""Tests for header parsing and metric collection."""

import asyncio

from cfbench.collector import (
    HYDRATION_COMPLETE,
    HYDRATION_NOT_APPLICABLE,
    CdpMetricsSession,
    capture_headers,
    cdp_metrics,
    collect,
    extract_colo,
    parse_server_timing,
)
from cfbench.config import Timing

from conftest import FakeCDPSession, FakeContext, FakePage


def _page(**kwargs) -> FakePage:
    page = FakePage(**kwargs)
    FakeContext(page)
    return page


class TestServerTiming:
    def test_entries_and_values(self) -> None:
        parsed = parse_server_timing('cf_bench;dur=12.5;desc="iso-1", cache;desc=HIT, edge')
        assert parsed == [
            {"name": "cf_bench", "dur": 12.5, "desc": "iso-1"},
            {"name": "cache", "desc": "HIT"},
            {"name": "edge"},
        ]

    def test_integers_and_flags(self) -> None:
        assert parse_server_timing("db;dur=3;cached") == [{"name": "db", "dur": 3, "cached": True}]

    def test_empty(self) -> None:
        assert parse_server_timing(None) is None
        assert parse_server_timing("") is None
        assert parse_server_timing(" , ") is None


class TestHeaders:
    def test_capture_is_case_insensitive(self) -> None:
        headers = capture_headers(
            {"Server-Timing": "app;dur=4", "CF-Ray": "8f1c2a3b4d5e6f70-AMS", "cache-control": "no-store"}
        )
        assert headers["cf-ray"] == "8f1c2a3b4d5e6f70-AMS"
        assert headers["cache-control"] == "no-store"
        assert headers["age"] is None
        assert headers["serverTiming"] == [{"name": "app", "dur": 4}]

    def test_extract_colo(self) -> None:
        assert extract_colo("8f1c2a3b4d5e6f70-AMS") == "AMS"
        assert extract_colo("no-colo-") is None
        assert extract_colo("nodash") is None
        assert extract_colo(None) is None


class TestCdpMetrics:
    def test_durations_are_deltas_in_ms(self) -> None:
        cdp = FakeCDPSession(
            metrics=[
                {"JSHeapUsedSize": 100, "TaskDuration": 1.0, "ScriptDuration": 0.25},
                {"JSHeapUsedSize": 300, "TaskDuration": 1.5, "ScriptDuration": 0.5},
            ]
        )
        page = _page(cdp=cdp)

        async def scenario():
            async with cdp_metrics(page) as session:
                return await session.sample()

        host = asyncio.run(scenario())
        assert host.js_heap_used_size == 300
        assert host.task_duration_ms == 500
        assert host.script_duration_ms == 250
        assert host.layout_duration_ms is None
        assert cdp.detached

    def test_failing_channel_yields_none(self) -> None:
        page = _page(cdp=FakeCDPSession(fail=True))

        async def scenario():
            session = CdpMetricsSession(page)
            await session.start()
            sample = await session.sample()
            await session.close()
            return sample

        assert asyncio.run(scenario()) is None


class TestCollect:
    def test_collects_snapshot_and_host_metrics(self) -> None:
        page = _page()

        async def scenario():
            async with cdp_metrics(page) as cdp:
                return await collect(page, cdp, timing=Timing())

        metrics = asyncio.run(scenario())
        assert metrics.synthetic["cwv"]["lcp"]["value"] == 900.0
        assert metrics.host.js_heap_used_size == 1_000_000
        assert metrics.hydration == HYDRATION_COMPLETE
        assert 500 in page.waits

    def test_client_nav_drops_navigation_timing(self) -> None:
        page = _page()
        metrics = asyncio.run(collect(page, None, skip_lcp=True, suppress_nav=True))
        assert metrics.synthetic["nav"] is None
        assert metrics.host is None

    def test_missing_hydration_markers_are_not_applicable(self) -> None:
        page = _page(hydration={"status": "missing"})
        timing = Timing(hydration_missing_grace_ms=0)
        metrics = asyncio.run(collect(page, None, skip_lcp=True, timing=timing))
        assert metrics.hydration == HYDRATION_NOT_APPLICABLE
