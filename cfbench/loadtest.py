"""HTTP throughput test: N concurrent workers hammer one path per target."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiohttp

from .config import ConfigError, Target, load_config
from .main import parse_only, setup_logging
from .stats import percentile

LOGGER = logging.getLogger("cfbench.loadtest")


@dataclass
class LoadStatistics:
    target: str
    url: str
    total: int = 0
    errors: int = 0
    latencies_ms: list[float] = field(default_factory=list)
    status_counts: Counter = field(default_factory=Counter)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def ok(self) -> int:
        return max(0, self.total - self.errors)

    @property
    def rps_ok(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.ok / self.duration_s

    @property
    def error_rate(self) -> float:
        """Percentage of requests that failed or returned a non-2xx status."""
        if not self.total:
            return 0.0
        return self.errors / self.total * 100

    def to_dict(self, duration_ms: float, concurrency: int) -> dict[str, Any]:
        return {
            "target": self.target,
            "url": self.url,
            "durationMs": duration_ms,
            "concurrency": concurrency,
            "elapsedMs": self.duration_s * 1000,
            "totals": {"total": self.total, "ok": self.ok, "errors": self.errors},
            "rpsOk": self.rps_ok,
            "errorRate": self.error_rate,
            "latencyMs": {
                "p50": percentile(self.latencies_ms, 50),
                "p95": percentile(self.latencies_ms, 95),
                "p99": percentile(self.latencies_ms, 99),
            },
            "statusCounts": {str(status): count for status, count in sorted(self.status_counts.items())},
        }


async def load_target(
    session: aiohttp.ClientSession,
    name: str,
    url: str,
    duration_ms: float,
    concurrency: int,
    timeout_ms: float,
) -> LoadStatistics:
    stats = LoadStatistics(target=name, url=url)
    timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
    stats.started_at = time.perf_counter()
    deadline = stats.started_at + duration_ms / 1000

    async def worker() -> None:
        while time.perf_counter() < deadline:
            started = time.perf_counter()
            stats.total += 1
            try:
                async with session.get(url, headers={"accept": "text/html"}, timeout=timeout) as response:
                    await response.read()
                    elapsed_ms = (time.perf_counter() - started) * 1000
                    if 200 <= response.status < 300:
                        stats.latencies_ms.append(elapsed_ms)
                    else:
                        stats.errors += 1
                        stats.status_counts[response.status] += 1
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                LOGGER.debug("Request to %s failed: %s", url, exc)
                stats.errors += 1

    await asyncio.gather(*(worker() for _ in range(concurrency)))
    stats.finished_at = time.perf_counter()
    return stats


async def run_load_test(
    targets: list[Target],
    path: str,
    duration_ms: float,
    concurrency: int,
    timeout_ms: float,
) -> list[LoadStatistics]:
    results = []
    connector = aiohttp.TCPConnector(limit=concurrency, limit_per_host=concurrency)
    async with aiohttp.ClientSession(connector=connector) as session:
        for target in targets:
            url = target.url + path
            LOGGER.info("Loading %s for %.1fs with %d workers", url, duration_ms / 1000, concurrency)
            stats = await load_target(session, target.name, url, duration_ms, concurrency, timeout_ms)
            _print_row(stats)
            results.append(stats)
    return results


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HTTP throughput test against configured targets")
    parser.add_argument("--config", default=os.environ.get("CFBENCH_CONFIG", "bench.config.json"))
    parser.add_argument("--out", default=os.environ.get("CFBENCH_LOAD_OUT", "load-results.json"))
    parser.add_argument("--duration", type=float, default=15_000, help="Duration per target in ms")
    parser.add_argument("--concurrency", type=int, default=50, help="Concurrent workers")
    parser.add_argument("--path", default="/stays", help="Path requested on every target")
    parser.add_argument("--only", help="Comma-separated list of target names to load")
    parser.add_argument("--timeout", type=float, default=10_000, help="Per-request timeout in ms")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CFBENCH_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def _print_row(stats: LoadStatistics) -> None:
    p95 = percentile(stats.latencies_ms, 95)
    p95_text = f"{p95:.0f}ms" if p95 is not None else "-"
    print(
        f"{stats.target:<20} rps(ok)={stats.rps_ok:>9.1f} total={stats.total:>9} "
        f"errors={stats.error_rate:>6.1f}% p95={p95_text:>9}"
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.duration <= 0:
            raise ConfigError(f"Invalid --duration {args.duration}")
        if args.concurrency <= 0:
            raise ConfigError(f"Invalid --concurrency {args.concurrency}")
        if args.timeout <= 0:
            raise ConfigError(f"Invalid --timeout {args.timeout}")
        config = load_config(args.config)
        targets = config.select_targets(parse_only(args.only))
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 2

    results = asyncio.run(run_load_test(targets, args.path, args.duration, args.concurrency, args.timeout))
    output = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "configPath": args.config,
        "targetPath": args.path,
        "durationMs": args.duration,
        "concurrency": args.concurrency,
        "results": [stats.to_dict(args.duration, args.concurrency) for stats in results],
    }
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(output, f, indent=2)
    LOGGER.info("Load test results written to %s", out_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
