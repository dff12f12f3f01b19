from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

from playwright.async_api import async_playwright

from .aggregate import aggregate
from .charts import render_charts
from .config import BenchmarkConfig, ConfigError, Target, ThrottlingSpec, load_config, parse_positive_int
from .instrumentation import load_web_vitals_source
from .report import build_result_document, environment_info, export_tables, log_failure_summary, write_results
from .runner import ProfilePlan, RunController, RunOutcome, RunOverrides, build_profile_plans
from .session import BrowserSessionManager

LOGGER = logging.getLogger("cfbench.main")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Browser benchmark runner for deployed web targets")
    parser.add_argument(
        "--config",
        default=os.environ.get("CFBENCH_CONFIG", "bench.config.json"),
        help="JSON file listing targets, scenarios and profiles",
    )
    parser.add_argument(
        "--out",
        default=os.environ.get("CFBENCH_OUT", "results.json"),
        help="Where to write the JSON result document",
    )
    parser.add_argument("--iterations", help="Iterations per scenario; overrides config and profile settings")
    parser.add_argument("--profile", help="Profile name to run, or 'both' for parity and idiomatic")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--skip-warmup", action="store_true", help="Do not warm targets up before measuring")
    parser.add_argument("--throttle", help="Named throttling profile applied to every profile")
    parser.add_argument("--cpu", help="CPU slowdown rate, e.g. 4")
    parser.add_argument("--network", help="Network condition: none, fast-4g or slow-3g")
    parser.add_argument("--only", help="Comma-separated list of target names to run")
    parser.add_argument("--no-charts", action="store_true", help="Skip PNG chart rendering")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned profiles, targets and scenarios without running them",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CFBENCH_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        default=os.environ.get("CFBENCH_LOG_FILE"),
        help="Optional file that receives a copy of the log",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def configure_file_logger(log_path: Path) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.getLogger("cfbench").addHandler(handler)
    return handler


def parse_only(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def cli_throttle(args: argparse.Namespace) -> str | ThrottlingSpec | None:
    """``--cpu``/``--network`` build an explicit spec and win over ``--throttle``."""
    if args.cpu is None and args.network is None:
        return args.throttle or None
    cpu = 1.0
    if args.cpu is not None:
        try:
            cpu = float(args.cpu)
        except ValueError as exc:
            raise ConfigError(f"--cpu must be a number, got {args.cpu!r}") from exc
        if cpu < 0:
            raise ConfigError(f"--cpu must be >= 0, got {cpu}")
    return ThrottlingSpec(cpu=cpu, network=args.network or "none")


def build_overrides(args: argparse.Namespace) -> RunOverrides:
    iterations = None
    if args.iterations is not None:
        iterations = parse_positive_int(args.iterations, "--iterations")
    return RunOverrides(
        iterations=iterations,
        profile=args.profile,
        skip_warmup=args.skip_warmup,
        throttle=cli_throttle(args),
    )


def cli_snapshot(args: argparse.Namespace, argv: list[str] | None) -> dict[str, Any]:
    return {
        "args": list(sys.argv[1:] if argv is None else argv),
        "configPath": args.config,
        "outPath": args.out,
        "iterationsArg": args.iterations,
        "profileArg": args.profile,
        "headless": not args.headed,
        "skipWarmup": args.skip_warmup,
        "only": parse_only(args.only),
    }


async def run_benchmark(
    config: BenchmarkConfig,
    targets: list[Target],
    plans: list[ProfilePlan],
    *,
    headless: bool,
    web_vitals_source: str | None,
) -> tuple[RunOutcome, str | None, dict[str, Any] | None]:
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=headless)
        try:
            sessions = BrowserSessionManager(browser)
            browser_env = await sessions.browser_env()
            controller = RunController(
                config,
                targets,
                plans,
                sessions,
                web_vitals_source=web_vitals_source,
            )
            outcome = await controller.run()
            return outcome, browser.version, browser_env
        finally:
            await browser.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    if args.log_file:
        configure_file_logger(Path(args.log_file))

    try:
        config = load_config(args.config)
        targets = config.select_targets(parse_only(args.only))
        if not targets:
            raise ConfigError(f"No targets configured in {args.config}")
        overrides = build_overrides(args)
        plans = build_profile_plans(config, overrides)
        web_vitals_source = load_web_vitals_source(config.web_vitals_path)
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 2

    LOGGER.info("Targets: %s", ", ".join(target.name for target in targets))
    LOGGER.info("Profiles: %s", ", ".join(plan.name for plan in plans))
    LOGGER.info("Scenarios: %s", ", ".join(scenario.name for scenario in config.scenarios))

    if args.dry_run:
        _print_plan(config, targets, plans)
        return 0

    out_path = Path(args.out)
    headless = not args.headed
    outcome, browser_version, browser_env = asyncio.run(
        run_benchmark(config, targets, plans, headless=headless, web_vitals_source=web_vitals_source)
    )

    log_failure_summary(outcome.failures)
    result = aggregate(outcome.records)
    document = build_result_document(
        config=config,
        targets=targets,
        plans=plans,
        outcome=outcome,
        result=result,
        cli=cli_snapshot(args, argv),
        environment=environment_info(browser_version, headless, browser_env),
        cli_throttle=overrides.throttle,
    )
    write_results(document, out_path)
    export_tables(outcome, result, out_path)
    if not args.no_charts:
        render_charts(result, out_path.parent, out_path.stem)
    LOGGER.info("Run duration: %.1fs", outcome.duration_ms / 1000)
    return 0


def _print_plan(config: BenchmarkConfig, targets: list[Target], plans: list[ProfilePlan]) -> None:
    for plan in plans:
        throttling = plan.throttling.to_dict() if plan.throttling else "none"
        print(
            f"Profile: {plan.name} (iterations={plan.iterations}, warmup={'on' if plan.warmup else 'off'}, "
            f"throttling={throttling}, timeoutScale={plan.timeout_scale})"
        )
        for target in targets:
            print(f"  Target: {target.name} {target.url} (delivery={target.delivery or 'unknown'})")
            for scenario in config.scenarios:
                skipped = ""
                if scenario.requires_feature and not target.has_feature(scenario.requires_feature):
                    skipped = f" [skipped: missing {scenario.requires_feature}]"
                label = f"{scenario.name} ({scenario.type}, rendering={target.rendering_for(scenario.name)})"
                print(f"    - {label} {scenario.url_for(target)}{skipped}")


if __name__ == "__main__":
    sys.exit(main())
