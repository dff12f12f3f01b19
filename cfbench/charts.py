from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .aggregate import AggregateResult

LOGGER = logging.getLogger("cfbench.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 200
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

COMPARED_METRICS = {
    "ttfb": "TTFB (ms)",
    "lcp": "LCP (ms)",
    "tbt": "TBT (ms)",
    "heap_used": "JS heap used (MB)",
}

PHASE_COLORS = {"cold": "#2E86AB", "warm": "#F18F01"}


def _p50_frame(result: AggregateResult) -> pd.DataFrame:
    rows = []
    for row in result.summary:
        for metric in COMPARED_METRICS:
            value = row.metric(metric).p50
            if value is None:
                continue
            if metric == "heap_used":
                value = value / (1024 * 1024)
            rows.append(
                {
                    "target": row.target,
                    "profile": row.profile,
                    "phase": row.phase,
                    "scenario": row.scenario,
                    "metric": metric,
                    "p50": value,
                }
            )
    return pd.DataFrame(rows, columns=["target", "profile", "phase", "scenario", "metric", "p50"])


def render_charts(result: AggregateResult, output_dir: Path, stem: str = "results") -> list[Path]:
    """Render one p50 comparison chart per (profile, scenario) plus a bucket score chart."""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths: list[Path] = []
    df = _p50_frame(result)
    if df.empty:
        LOGGER.warning("No successful samples; skipping metric charts")
    else:
        for (profile, scenario), subset in df.groupby(["profile", "scenario"], sort=False):
            path = output_dir / f"{stem}__{profile}__{scenario}.png"
            _render_metric_comparison(subset, f"{scenario} ({profile})", path)
            paths.append(path)

    score_path = output_dir / f"{stem}__scores.png"
    if _render_bucket_scores(result, score_path):
        paths.append(score_path)
    return paths


def _render_metric_comparison(df: pd.DataFrame, title: str, chart_path: Path) -> None:
    metrics = [m for m in COMPARED_METRICS if m in set(df["metric"])]
    fig, axes = plt.subplots(1, len(metrics), figsize=(4.5 * len(metrics), 4.5), squeeze=False)
    for ax, metric in zip(axes[0], metrics):
        data = df[df["metric"] == metric]
        sns.barplot(
            data=data,
            x="target",
            y="p50",
            hue="phase",
            palette=PHASE_COLORS,
            ax=ax,
        )
        ax.set_title(COMPARED_METRICS[metric], fontweight="bold")
        ax.set_xlabel("")
        ax.set_ylabel("p50")
        ax.tick_params(axis="x", rotation=35)
        for label in ax.get_xticklabels():
            label.set_horizontalalignment("right")
    fig.suptitle(title, fontweight="bold")
    fig.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white", edgecolor="none")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)


def _render_bucket_scores(result: AggregateResult, chart_path: Path) -> bool:
    rows = []
    for profile, by_phase in result.bucket_scores.items():
        for phase, by_bucket in by_phase.items():
            for bucket, scores in by_bucket.items():
                for score in scores:
                    if score.score is None:
                        continue
                    rows.append(
                        {
                            "group": f"{profile}/{phase}",
                            "bucket": bucket.replace("::", " | "),
                            "target": score.target,
                            "score": score.score,
                        }
                    )
    if not rows:
        LOGGER.info("No bucket has two or more complete targets; skipping score chart")
        return False

    df = pd.DataFrame(rows)
    groups = list(dict.fromkeys(df["group"]))
    height = max(3.0, 0.45 * df["target"].nunique() * len(groups))
    fig, axes = plt.subplots(len(groups), 1, figsize=(10, height), squeeze=False)
    for ax, group in zip(axes[:, 0], groups):
        data = df[df["group"] == group].sort_values("score")
        colors = sns.color_palette("viridis", n_colors=len(data))
        ax.barh(np.arange(len(data)), data["score"], color=colors)
        ax.set_yticks(np.arange(len(data)))
        ax.set_yticklabels([f"{t}  [{b}]" for t, b in zip(data["target"], data["bucket"])], fontsize=8)
        ax.set_xlim(0, 1)
        ax.invert_yaxis()
        ax.set_title(f"Bucket scores, {group} (lower is better)", fontweight="bold")
        ax.set_xlabel("Weighted normalised score")
    fig.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white", edgecolor="none")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return True
