from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Iterable

import numpy as np

PERCENTILES: tuple[int, ...] = (50, 75, 90, 95, 99)


@dataclass(frozen=True)
class Summary:
    """Distribution summary of one metric over a group of samples."""

    n: int = 0
    min: float | None = None
    max: float | None = None
    mean: float | None = None
    stdev: float | None = None
    p50: float | None = None
    p75: float | None = None
    p90: float | None = None
    p95: float | None = None
    p99: float | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.n:
            return {"n": 0}
        return asdict(self)


def finite_values(values: Iterable[Any]) -> np.ndarray:
    """Keep real, finite numbers only; booleans and ``None`` are dropped."""
    kept = [
        float(value)
        for value in values
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
    ]
    return np.asarray(kept, dtype=float)


def mean(values: Iterable[Any]) -> float | None:
    arr = finite_values(values)
    if not arr.size:
        return None
    # float summation can land one ulp outside the sample range
    return float(min(max(arr.mean(), arr.min()), arr.max()))


def stdev(values: Iterable[Any]) -> float | None:
    """Sample standard deviation (n - 1 denominator)."""
    arr = finite_values(values)
    if arr.size < 2:
        return None
    return float(arr.std(ddof=1))


def percentile(values: Iterable[Any], p: float) -> float | None:
    """Percentile with linear interpolation between closest ranks.

    ``percentile([10, 20, 30, 40], 50) == 25``.
    """
    arr = finite_values(values)
    if not arr.size:
        return None
    return float(np.percentile(arr, p, method="linear"))


def summarize(values: Iterable[Any]) -> Summary:
    arr = finite_values(values)
    if not arr.size:
        return Summary()
    samples = arr.tolist()
    quantiles = {f"p{p}": percentile(samples, p) for p in PERCENTILES}
    return Summary(
        n=int(arr.size),
        min=float(arr.min()),
        max=float(arr.max()),
        mean=mean(samples),
        stdev=stdev(samples),
        **quantiles,
    )
