from __future__ import annotations

import json
import logging
import os
import platform
import subprocess
from collections import Counter
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd

from .aggregate import AggregateResult
from .collector import extract_colo
from .config import TIMING, BenchmarkConfig, Target
from .records import FailureRecord, RunRecord
from .runner import PHASE_ORDER, RUN_ORDER, ProfilePlan, RunOutcome
from .session import VIEWPORT
from .stats import summarize

LOGGER = logging.getLogger("cfbench.report")


def _git(*args: str, cwd: Path | None = None) -> str | None:
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return completed.stdout.strip()


def git_info(cwd: Path | None = None) -> dict[str, Any] | None:
    commit = _git("rev-parse", "HEAD", cwd=cwd)
    if not commit:
        return None
    return {
        "commit": commit,
        "branch": _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd),
        "describe": _git("describe", "--tags", "--always", "--dirty", cwd=cwd),
        "dirty": bool(_git("status", "--porcelain", cwd=cwd)),
    }


def _package_version(name: str) -> str | None:
    try:
        return metadata.version(name)
    except metadata.PackageNotFoundError:
        return None


def _memory_bytes() -> dict[str, int | None]:
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        return {
            "totalBytes": page_size * os.sysconf("SC_PHYS_PAGES"),
            "freeBytes": page_size * os.sysconf("SC_AVPHYS_PAGES"),
        }
    except (AttributeError, ValueError, OSError):
        return {"totalBytes": None, "freeBytes": None}


def system_info() -> dict[str, Any]:
    uname = platform.uname()
    return {
        "os": {
            "platform": uname.system.lower(),
            "release": uname.release,
            "arch": uname.machine,
            "version": uname.version,
        },
        "cpu": {"model": platform.processor() or None, "cores": os.cpu_count()},
        "memory": _memory_bytes(),
        "python": {"version": platform.python_version()},
        "playwright": {"version": _package_version("playwright")},
    }


def environment_info(
    browser_version: str | None,
    headless: bool,
    browser_env: Mapping[str, Any] | None,
) -> dict[str, Any]:
    return {
        **system_info(),
        "browser": {"name": "chromium", "version": browser_version, "headless": headless},
        "viewport": dict(VIEWPORT),
        "browserEnv": dict(browser_env) if browser_env else None,
    }


def summarize_header_values(records: Iterable[RunRecord], key: str) -> dict[str, int]:
    counts: Counter[str] = Counter()
    for record in records:
        value = (record.headers or {}).get(key)
        if value:
            counts[value] += 1
    return dict(counts)


def summarize_edge_locations(records: Iterable[RunRecord]) -> dict[str, Any]:
    by_colo: Counter[str] = Counter()
    for record in records:
        colo = extract_colo((record.headers or {}).get("cf-ray"))
        if colo:
            by_colo[colo] += 1
    distinct = sorted(by_colo)
    return {"byColo": dict(by_colo), "distinct": distinct, "total": sum(by_colo.values())}


def summarize_server_timing(records: Iterable[RunRecord]) -> dict[str, Any]:
    counts: dict[str, int] = {}
    durations: dict[str, list[float]] = {}
    for record in records:
        for entry in (record.headers or {}).get("serverTiming") or []:
            name = entry.get("name")
            if not name:
                continue
            counts[name] = counts.get(name, 0) + 1
            durations.setdefault(name, []).append(entry.get("dur"))
    return {
        name: {"count": counts[name], "durMs": summarize(durations[name]).to_dict()}
        for name in counts
    }


def summarize_failures(failures: Iterable[FailureRecord]) -> dict[str, dict[str, Any]]:
    summary: dict[str, dict[str, Any]] = {}
    for failure in failures:
        entry = summary.setdefault(failure.group_key, {"count": 0, "errors": {}})
        entry["count"] += 1
        entry["errors"][failure.error] = entry["errors"].get(failure.error, 0) + 1
    return summary


def log_failure_summary(failures: Sequence[FailureRecord]) -> None:
    if not failures:
        return
    LOGGER.warning("Failures: %d", len(failures))
    grouped: dict[tuple[str, str, str, str], Counter[str]] = {}
    for failure in failures:
        key = (failure.target, failure.profile, failure.phase, failure.scenario)
        grouped.setdefault(key, Counter())[failure.error] += 1
    for (target, profile, phase, scenario), errors in grouped.items():
        text = ", ".join(f"{error} ({count})" for error, count in errors.items())
        LOGGER.warning("  %s %s %s %s: %d failures: %s", target, profile, phase, scenario, sum(errors.values()), text)


def build_result_document(
    *,
    config: BenchmarkConfig,
    targets: Sequence[Target],
    plans: Sequence[ProfilePlan],
    outcome: RunOutcome,
    result: AggregateResult,
    cli: Mapping[str, Any],
    environment: Mapping[str, Any],
    cli_throttle: Any = None,
) -> dict[str, Any]:
    """Assemble the JSON result: run metadata, every record and the aggregates."""
    records = outcome.records
    scenarios = config.scenarios
    return {
        "ts": datetime.now(timezone.utc).isoformat(),
        "runStartedAt": outcome.started_at,
        "durationMs": outcome.duration_ms,
        "environment": dict(environment),
        "config": {"path": str(config.path) if config.path else None, "data": config.raw},
        "cli": dict(cli),
        "runOrder": {
            "randomization": "none",
            "order": list(RUN_ORDER),
            "phaseOrder": list(PHASE_ORDER),
            "scenarioOrder": [scenario.name for scenario in scenarios],
        },
        "scenarios": [scenario.to_dict() for scenario in scenarios],
        "network": {
            "throttlingProfiles": {name: spec.to_dict() for name, spec in config.throttling_profiles.items()},
            "throttlingByProfile": {
                plan.name: plan.throttling.to_dict() if plan.throttling else None for plan in plans
            },
            "cliThrottle": cli_throttle.to_dict() if hasattr(cli_throttle, "to_dict") else cli_throttle,
        },
        "cache": {
            "warmupDefault": config.warmup,
            "warmupByProfile": {plan.name: plan.warmup for plan in plans},
            "warmupSettleMs": TIMING.warmup_settle_ms,
            "warmupPaths": [s.warmup_path for s in scenarios if s.warmup_path is not None],
            "profileSettings": {plan.name: plan.settings.to_dict() for plan in plans},
        },
        "provenance": {"git": git_info(), "benchApi": outcome.bench_api},
        "edgeLocations": summarize_edge_locations(records),
        "cacheStatusSummary": summarize_header_values(records, "cf-cache-status"),
        "cacheControlSummary": summarize_header_values(records, "cache-control"),
        "serverTimingSummary": summarize_server_timing(records),
        "iterationsByProfile": {plan.name: plan.iterations for plan in plans},
        "timeoutScaleByProfile": {plan.name: plan.timeout_scale for plan in plans},
        "profiles": [plan.name for plan in plans],
        "phases": list(PHASE_ORDER),
        "targets": [target.to_dict() for target in targets],
        "bundleSizes": outcome.bundle_sizes,
        "failures": [failure.to_dict() for failure in outcome.failures],
        "failureSummary": summarize_failures(outcome.failures),
        **{key: value for key, value in result.to_dict().items() if key != "summary"},
        "summary": [row.to_dict() for row in result.summary],
        "rows": [record.to_dict() for record in records],
    }


def write_results(document: Mapping[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2, default=str)
    LOGGER.info("Results written to %s", path)
    return path


def records_frame(records: Sequence[RunRecord]) -> pd.DataFrame:
    """One flat row per record; nested payloads become dotted columns."""
    if not records:
        return pd.DataFrame(columns=["target", "profile", "phase", "scenario", "iteration", "ok", "error"])
    rows = []
    for record in records:
        data = record.to_dict()
        # resources and long task lists do not flatten into useful columns
        data.pop("synthetic", None)
        data["ttfb"] = record.ttfb
        data["lcp"] = record.web_vital("lcp")
        data["cls"] = record.web_vital("cls")
        data["inp"] = record.web_vital("inp")
        data["tbt"] = record.tbt
        rows.append(data)
    frame = pd.json_normalize(rows, sep=".")
    return frame.drop(columns=[c for c in frame.columns if c.startswith("headers.serverTiming")])


def summary_frame(result: AggregateResult) -> pd.DataFrame:
    rows = []
    for row in result.summary:
        flat = {
            "target": row.target,
            "profile": row.profile,
            "phase": row.phase,
            "scenario": row.scenario,
            "scenario_type": row.scenario_type,
            "bucket": row.bucket_key_scenario,
            **{f"samples_{key}": value for key, value in row.samples.to_dict().items()},
            "fcp_missing": row.fcp_missing,
        }
        for name, summary in row.metrics.items():
            flat[f"{name}_n"] = summary.n
            flat[f"{name}_p50"] = summary.p50
            flat[f"{name}_p90"] = summary.p90
            flat[f"{name}_mean"] = summary.mean
        rows.append(flat)
    return pd.DataFrame(rows)


def export_tables(outcome: RunOutcome, result: AggregateResult, out_path: Path) -> list[Path]:
    """Write ``<out>.rows.csv`` and ``<out>.summary.csv`` next to the JSON."""
    rows_path = out_path.with_suffix(".rows.csv")
    summary_path = out_path.with_suffix(".summary.csv")
    records_frame(outcome.records).to_csv(rows_path, index=False)
    summary_frame(result).to_csv(summary_path, index=False)
    LOGGER.info("Saved %d rows to %s and %d summary rows to %s",
                len(outcome.records), rows_path, len(result.summary), summary_path)
    return [rows_path, summary_path]
