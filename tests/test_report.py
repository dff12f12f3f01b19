"""Tests for the result document, header summaries and CSV/PNG exports."""

import json

import pandas as pd

from cfbench.aggregate import aggregate
from cfbench.charts import render_charts
from cfbench.collector import HostMetrics
from cfbench.config import parse_config
from cfbench.records import FailureRecord, RunRecord
from cfbench.report import (
    build_result_document,
    export_tables,
    git_info,
    log_failure_summary,
    summarize_edge_locations,
    summarize_failures,
    summarize_header_values,
    summarize_server_timing,
    write_results,
)
from cfbench.runner import RunOutcome, RunOverrides, build_profile_plans

from conftest import make_snapshot

META = {"delivery": "edge-ssr", "rendering": {"home": "ssr"}}


def _record(target, iteration=1, phase="cold", ok=True, ttfb=40.0, headers=None):
    return RunRecord(
        target=target,
        profile="parity",
        phase=phase,
        scenario="home",
        scenario_type="ssr",
        iteration=iteration,
        url=f"https://{target}.test/",
        ok=ok,
        error=None if ok else "timeout",
        status=200 if ok else None,
        target_meta=META,
        headers=headers,
        server_metrics={"ttfb": ttfb} if ok else None,
        synthetic=make_snapshot(ttfb=ttfb) if ok else None,
        host=HostMetrics(js_heap_used_size=2_000_000) if ok else None,
    )


def _outcome():
    outcome = RunOutcome(started_at="2026-01-01T00:00:00+00:00", duration_ms=1234.0)
    outcome.add(
        _record(
            "alpha",
            headers={
                "cf-ray": "8f1c-AMS",
                "cf-cache-status": "HIT",
                "cache-control": "no-store",
                "serverTiming": [{"name": "cf_bench", "dur": 4}],
            },
        )
    )
    outcome.add(
        _record(
            "alpha",
            iteration=2,
            headers={
                "cf-ray": "8f1d-FRA",
                "cf-cache-status": "MISS",
                "serverTiming": [{"name": "cf_bench", "dur": 8}, {"name": "db"}],
            },
        )
    )
    outcome.add(_record("beta", ttfb=80.0, headers={"cf-ray": "9a00-AMS", "cf-cache-status": "HIT"}))
    outcome.add(_record("beta", iteration=2, ok=False))
    outcome.bundle_sizes = {"alpha": {"js": 0, "css": 0, "total": 0, "measured": False}}
    outcome.bench_api = {"alpha": {"ok": True, "status": 200, "data": {"isolateId": "x"}}}
    return outcome


class TestHeaderSummaries:
    def test_edge_locations(self) -> None:
        summary = summarize_edge_locations(_outcome().records)
        assert summary == {"byColo": {"AMS": 2, "FRA": 1}, "distinct": ["AMS", "FRA"], "total": 3}

    def test_cache_status_counts(self) -> None:
        records = _outcome().records
        assert summarize_header_values(records, "cf-cache-status") == {"HIT": 2, "MISS": 1}
        assert summarize_header_values(records, "cache-control") == {"no-store": 1}

    def test_server_timing(self) -> None:
        summary = summarize_server_timing(_outcome().records)
        assert summary["cf_bench"]["count"] == 2
        assert summary["cf_bench"]["durMs"]["p50"] == 6.0
        assert summary["db"] == {"count": 1, "durMs": {"n": 0}}


class TestFailures:
    def test_grouped_by_unit(self) -> None:
        failures = [
            FailureRecord("a", "parity", "cold", "home", 1, "timeout"),
            FailureRecord("a", "parity", "cold", "home", 2, "timeout"),
            FailureRecord("a", "parity", "cold", "home", 3, "http_503", 503),
            FailureRecord("b", "parity", "warm", "chart", 1, "chart_not_ready"),
        ]
        summary = summarize_failures(failures)
        assert summary["a::parity::cold::home"] == {"count": 3, "errors": {"timeout": 2, "http_503": 1}}
        assert summary["b::parity::warm::chart"]["count"] == 1

    def test_logged_as_warnings(self, caplog) -> None:
        with caplog.at_level("WARNING", logger="cfbench.report"):
            log_failure_summary(_outcome().failures)
        assert "Failures: 1" in caplog.text
        assert "timeout (1)" in caplog.text

    def test_target_names_may_contain_separator(self, caplog) -> None:
        failures = [
            FailureRecord("edge::a", "parity", "cold", "home", 1, "timeout"),
            FailureRecord("edge::a", "parity", "cold", "home", 2, "http_503", 503),
        ]
        with caplog.at_level("WARNING", logger="cfbench.report"):
            log_failure_summary(failures)
        assert "edge::a parity cold home: 2 failures: timeout (1), http_503 (1)" in caplog.text

    def test_nothing_logged_without_failures(self, caplog) -> None:
        with caplog.at_level("WARNING", logger="cfbench.report"):
            log_failure_summary([])
        assert caplog.text == ""


class TestResultDocument:
    def _document(self):
        config = parse_config({"frameworks": [{"name": "alpha", "url": "https://alpha.test"}]})
        plans = build_profile_plans(config, RunOverrides(iterations=2, profile="parity"))
        outcome = _outcome()
        return build_result_document(
            config=config,
            targets=config.targets,
            plans=plans,
            outcome=outcome,
            result=aggregate(outcome.records),
            cli={"args": ["--iterations", "2"]},
            environment={"browser": {"name": "chromium"}},
        )

    def test_top_level_keys(self) -> None:
        document = self._document()
        for key in (
            "ts",
            "runStartedAt",
            "durationMs",
            "environment",
            "config",
            "cli",
            "runOrder",
            "scenarios",
            "network",
            "cache",
            "provenance",
            "edgeLocations",
            "cacheStatusSummary",
            "cacheControlSummary",
            "serverTimingSummary",
            "iterationsByProfile",
            "timeoutScaleByProfile",
            "profiles",
            "phases",
            "targets",
            "bundleSizes",
            "failures",
            "failureSummary",
            "summary",
            "bucketScores",
            "buckets",
            "rows",
        ):
            assert key in document

    def test_contents(self) -> None:
        document = self._document()
        assert document["runOrder"]["order"] == ["profile", "target", "scenario", "iteration", "phase"]
        assert document["runOrder"]["randomization"] == "none"
        assert document["iterationsByProfile"] == {"parity": 2}
        assert document["profiles"] == ["parity"]
        assert document["phases"] == ["cold", "warm"]
        assert len(document["rows"]) == 4
        assert document["failures"][0]["error"] == "timeout"
        assert document["provenance"]["benchApi"]["alpha"]["data"] == {"isolateId": "x"}
        assert document["network"]["cliThrottle"] is None

    def test_written_as_json(self, tmp_path) -> None:
        path = write_results(self._document(), tmp_path / "out" / "results.json")
        loaded = json.loads(path.read_text(encoding="utf-8"))
        assert loaded["summary"][0]["target"] == "alpha"


class TestExports:
    def test_csv_tables(self, tmp_path) -> None:
        outcome = _outcome()
        rows_path, summary_path = export_tables(outcome, aggregate(outcome.records), tmp_path / "results.json")
        assert rows_path.name == "results.rows.csv"
        assert summary_path.name == "results.summary.csv"
        rows = pd.read_csv(rows_path)
        assert len(rows) == 4
        assert {"target", "phase", "ttfb", "lcp", "clientMetrics.jsHeapUsedSize"} <= set(rows.columns)
        summary = pd.read_csv(summary_path)
        assert list(summary["target"]) == ["alpha", "beta"]
        assert list(summary["samples_failed"]) == [0, 1]
        assert summary.loc[0, "ttfb_p50"] == 40.0

    def test_charts(self, tmp_path) -> None:
        outcome = _outcome()
        paths = render_charts(aggregate(outcome.records), tmp_path, "results")
        names = [path.name for path in paths]
        assert names == ["results__parity__home.png"]
        assert all(path.exists() for path in paths)

    def test_score_chart_when_bucket_has_a_spread(self, tmp_path) -> None:
        outcome = RunOutcome()
        outcome.add(_record("alpha", ttfb=10.0))
        outcome.add(_record("beta", ttfb=30.0))
        paths = render_charts(aggregate(outcome.records), tmp_path, "run")
        assert tmp_path / "run__scores.png" in paths


def test_git_info_outside_a_repository(tmp_path) -> None:
    assert git_info(tmp_path) is None
