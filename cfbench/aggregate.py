"""Summaries and within-bucket scores computed from the finished record list.

Everything here is a pure function of the ``RunRecord`` sequence: the same
records always produce the same rows and scores, in the same order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from .records import RunRecord
from .stats import Summary, summarize

SCENARIO_WEIGHTS: dict[str, float] = {
    "home": 0.2,
    "stays": 0.25,
    "blog": 0.2,
    "chart": 0.35,
    "spa_nav": 0.0,
}
DEFAULT_SCENARIO_WEIGHT = 0.25

METRIC_WEIGHTS: dict[str, float] = {
    "ttfb": 0.25,
    "lcp": 0.4,
    "tbt": 0.2,
    "heap_used": 0.15,
}

BUCKET_ROUTES: tuple[str, ...] = ("home", "stays", "blog", "chart")

MetricExtractor = Callable[[RunRecord], Any]

METRIC_EXTRACTORS: dict[str, MetricExtractor] = {
    "ttfb": lambda r: r.ttfb,
    "lcp": lambda r: r.web_vital("lcp"),
    "cls": lambda r: r.web_vital("cls"),
    "inp": lambda r: r.web_vital("inp"),
    "fcp": lambda r: r.web_vital("fcp"),
    "tbt": lambda r: r.tbt,
    "heap_used": lambda r: r.host_value("js_heap_used_size"),
    "cpu_task_ms": lambda r: r.host_value("task_duration_ms"),
    "cpu_script_ms": lambda r: r.host_value("script_duration_ms"),
    "cpu_layout_ms": lambda r: r.host_value("layout_duration_ms"),
    "cpu_recalc_style_ms": lambda r: r.host_value("recalc_style_duration_ms"),
    "chart_switch_ms": lambda r: r.app_marker("chart", "switchDurationMs"),
    "chart_draw_ms": lambda r: r.app_marker("chartCore", "lastDrawMs"),
    "client_nav_ms": lambda r: r.client_nav_ms,
}

_CAMEL = {
    "heap_used": "heapUsed",
    "cpu_task_ms": "cpuTaskMs",
    "cpu_script_ms": "cpuScriptMs",
    "cpu_layout_ms": "cpuLayoutMs",
    "cpu_recalc_style_ms": "cpuRecalcStyleMs",
    "chart_switch_ms": "chartSwitchMs",
    "chart_draw_ms": "chartDrawMs",
    "client_nav_ms": "clientNavMs",
}


def bucket_key(meta: Mapping[str, Any] | None) -> str:
    """``<delivery>::home=<r>::stays=<r>::blog=<r>::chart=<r>``"""
    meta = meta or {}
    rendering = meta.get("rendering") or {}
    parts = [meta.get("delivery") or "unknown"]
    parts += [f"{route}={rendering.get(route) or 'unknown'}" for route in BUCKET_ROUTES]
    return "::".join(parts)


def scenario_bucket_key(meta: Mapping[str, Any] | None, scenario: str) -> str:
    meta = meta or {}
    rendering = meta.get("rendering") or {}
    return f"{meta.get('delivery') or 'unknown'}::{scenario}={rendering.get(scenario) or 'unknown'}"


@dataclass(frozen=True)
class Samples:
    expected: int = 0
    ok: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def complete(self) -> bool:
        return self.ok >= self.expected

    def to_dict(self) -> dict[str, int]:
        return {"expected": self.expected, "ok": self.ok, "failed": self.failed, "skipped": self.skipped}


@dataclass(frozen=True)
class SummaryRow:
    target: str
    profile: str
    phase: str
    scenario: str
    scenario_type: str
    bucket_key_scenario: str
    samples: Samples
    metrics: Mapping[str, Summary]
    first_request: Mapping[str, Any] | None = None
    fcp_missing: int = 0

    def metric(self, name: str) -> Summary:
        return self.metrics.get(name) or Summary()

    @property
    def fcp_missing_rate(self) -> float | None:
        if not self.samples.expected:
            return None
        return self.fcp_missing / self.samples.expected

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "target": self.target,
            "profile": self.profile,
            "phase": self.phase,
            "scenario": self.scenario,
            "scenarioType": self.scenario_type,
            "bucketKeyScenario": self.bucket_key_scenario,
            "samples": self.samples.to_dict(),
            "firstRequest": dict(self.first_request) if self.first_request else None,
            "diagnostics": {
                "longTasksTotal": self.metric("long_tasks_total").to_dict(),
                "fcpMissing": self.fcp_missing,
                "fcpMissingRate": self.fcp_missing_rate,
            },
        }
        for name in METRIC_EXTRACTORS:
            data[_CAMEL.get(name, name)] = self.metric(name).to_dict()
        return data


@dataclass(frozen=True)
class Score:
    target: str
    score: float | None
    incomplete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.target, "score": self.score, "incomplete": self.incomplete}


@dataclass
class AggregateResult:
    summary: list[SummaryRow] = field(default_factory=list)
    buckets: dict[str, list[str]] = field(default_factory=dict)
    bucket_scores: dict[str, dict[str, dict[str, list[Score]]]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": [row.to_dict() for row in self.summary],
            "buckets": {key: list(names) for key, names in self.buckets.items()},
            "bucketScores": {
                profile: {
                    phase: {key: [score.to_dict() for score in scores] for key, scores in by_bucket.items()}
                    for phase, by_bucket in by_phase.items()
                }
                for profile, by_phase in self.bucket_scores.items()
            },
        }


def group_records(records: Iterable[RunRecord]) -> dict[tuple[str, str, str, str], list[RunRecord]]:
    """Group by (target, profile, phase, scenario), keeping first-seen order."""
    groups: dict[tuple[str, str, str, str], list[RunRecord]] = {}
    for record in records:
        key = (record.target, record.profile, record.phase, record.scenario)
        groups.setdefault(key, []).append(record)
    return groups


def _first_request(rows: Sequence[RunRecord]) -> dict[str, Any] | None:
    first = next((r for r in rows if r.phase == "cold" and r.iteration == 1 and r.counts_as_sample), None)
    if first is None:
        return None
    return {
        "ttfb": first.ttfb,
        "lcp": first.web_vital("lcp"),
        "cls": first.web_vital("cls"),
        "tbt": first.tbt,
        "heapUsed": first.host_value("js_heap_used_size"),
        "cpuTaskMs": first.host_value("task_duration_ms"),
    }


def summarize_group(rows: Sequence[RunRecord]) -> SummaryRow:
    head = rows[0]
    skipped = sum(1 for r in rows if r.skipped)
    expected = len(rows) - skipped
    ok_rows = [r for r in rows if r.counts_as_sample]
    metrics = {name: summarize(extract(r) for r in ok_rows) for name, extract in METRIC_EXTRACTORS.items()}
    metrics["long_tasks_total"] = summarize(r.long_tasks_total for r in ok_rows)
    return SummaryRow(
        target=head.target,
        profile=head.profile,
        phase=head.phase,
        scenario=head.scenario,
        scenario_type=head.scenario_type,
        bucket_key_scenario=scenario_bucket_key(head.target_meta, head.scenario),
        samples=Samples(
            expected=expected,
            ok=len(ok_rows),
            failed=max(0, expected - len(ok_rows)),
            skipped=skipped,
        ),
        metrics=metrics,
        first_request=_first_request(rows),
        fcp_missing=sum(1 for r in ok_rows if r.fcp_missing),
    )


def summarize_records(records: Iterable[RunRecord]) -> list[SummaryRow]:
    return [summarize_group(rows) for rows in group_records(records).values()]


def partition_buckets(records: Iterable[RunRecord]) -> dict[str, list[str]]:
    """Map bucket key -> target names in first-seen order."""
    buckets: dict[str, list[str]] = {}
    seen: set[str] = set()
    for record in records:
        if record.target in seen:
            continue
        seen.add(record.target)
        buckets.setdefault(bucket_key(record.target_meta), []).append(record.target)
    return buckets


def _scored_value(row: SummaryRow, metric: str) -> float | None:
    value = row.metric(metric).p50
    if value is None or not math.isfinite(value):
        return None
    return value


def score_bucket(
    summary: Sequence[SummaryRow],
    profile: str,
    phase: str,
    members: Sequence[str],
    scored_scenarios: Sequence[str],
) -> list[Score]:
    """Min-max normalise each scenario/metric p50 across ``members`` and combine.

    A member missing any scored scenario, or with failed samples in one, is
    reported as incomplete and left out of the normalisation. Metrics where
    every member has the same value contribute nothing.
    """
    rows = {
        (row.target, row.scenario): row
        for row in summary
        if row.profile == profile and row.phase == phase and row.scenario_type != "client-nav"
    }

    incomplete: list[str] = []
    for target in members:
        target_rows = [rows.get((target, scenario)) for scenario in scored_scenarios]
        if any(row is None for row in target_rows):
            incomplete.append(target)
        elif any(row.samples.expected > 0 and not row.samples.complete for row in target_rows):
            incomplete.append(target)
    eligible = [target for target in members if target not in incomplete]

    totals = {target: [0.0, 0.0] for target in eligible}
    for scenario in scored_scenarios:
        scenario_weight = SCENARIO_WEIGHTS.get(scenario, DEFAULT_SCENARIO_WEIGHT)
        for metric, metric_weight in METRIC_WEIGHTS.items():
            weight = scenario_weight * metric_weight
            if not weight:
                continue
            values = {}
            for target in eligible:
                value = _scored_value(rows[(target, scenario)], metric)
                if value is not None:
                    values[target] = value
            if not values:
                continue
            low, high = min(values.values()), max(values.values())
            if low == high:
                continue
            for target, value in values.items():
                totals[target][0] += (value - low) / (high - low) * weight
                totals[target][1] += weight

    scores = [
        Score(target=target, score=total / weight if weight else None)
        for target, (total, weight) in totals.items()
    ]
    scores.sort(key=lambda s: (s.score is None, s.score if s.score is not None else 0.0))
    scores += [Score(target=target, score=None, incomplete=True) for target in incomplete]
    return scores


def aggregate(records: Sequence[RunRecord]) -> AggregateResult:
    summary = summarize_records(records)
    buckets = partition_buckets(records)

    profiles = list(dict.fromkeys(row.profile for row in summary))
    phases = list(dict.fromkeys(row.phase for row in summary))
    scored_scenarios = list(dict.fromkeys(row.scenario for row in summary if row.scenario_type != "client-nav"))

    bucket_scores: dict[str, dict[str, dict[str, list[Score]]]] = {}
    for profile in profiles:
        for phase in phases:
            by_bucket = bucket_scores.setdefault(profile, {}).setdefault(phase, {})
            for key, members in buckets.items():
                by_bucket[key] = score_bucket(summary, profile, phase, members, scored_scenarios)
    return AggregateResult(summary=summary, buckets=buckets, bucket_scores=bucket_scores)
