from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .config import BenchmarkConfig, ThrottlingSpec

LOGGER = logging.getLogger("cfbench.throttle")

THROTTLE_FAILED = "cdp_throttle_failed"
MAX_CPU_TIMEOUT_SCALE = 3.0
NETWORK_TIMEOUT_SCALE = 2.0


def _mbit_to_bytes_per_s(mbit: float) -> int:
    return math.floor(mbit * 1024 * 1024 / 8)


@dataclass(frozen=True)
class NetworkConditions:
    """Parameters for ``Network.emulateNetworkConditions``."""

    latency_ms: float
    download_throughput: int
    upload_throughput: int
    connection_type: str
    offline: bool = False

    def to_cdp(self) -> dict[str, Any]:
        return {
            "offline": self.offline,
            "latency": self.latency_ms,
            "downloadThroughput": self.download_throughput,
            "uploadThroughput": self.upload_throughput,
            "connectionType": self.connection_type,
        }


NETWORK_PROFILES: dict[str, NetworkConditions] = {
    "none": NetworkConditions(
        latency_ms=0,
        download_throughput=-1,
        upload_throughput=-1,
        connection_type="none",
    ),
    "fast-4g": NetworkConditions(
        latency_ms=150,
        download_throughput=_mbit_to_bytes_per_s(1.6),
        upload_throughput=_mbit_to_bytes_per_s(0.75),
        connection_type="cellular4g",
    ),
    "slow-3g": NetworkConditions(
        latency_ms=400,
        download_throughput=_mbit_to_bytes_per_s(0.4),
        upload_throughput=_mbit_to_bytes_per_s(0.4),
        connection_type="cellular3g",
    ),
}


def normalize_throttling(
    value: str | ThrottlingSpec | None,
    named: dict[str, ThrottlingSpec] | None = None,
) -> ThrottlingSpec | None:
    """Turn a throttling reference into a concrete spec.

    Names are looked up in the config's named profiles first and then in the
    static network table. Unknown names resolve to no throttling.
    """
    if value is None:
        return None
    if isinstance(value, ThrottlingSpec):
        return value
    if named and value in named:
        return named[value]
    if value in NETWORK_PROFILES:
        return ThrottlingSpec(network=value)
    LOGGER.warning("Unknown throttling profile %r; running unthrottled", value)
    return None


def resolve_throttling(
    config: BenchmarkConfig,
    profile: str,
    cli_override: str | ThrottlingSpec | None = None,
) -> ThrottlingSpec | None:
    """Resolve CLI override -> profile setting -> global default; first one set wins."""
    for candidate in (cli_override, config.settings_for(profile).throttling, config.throttling):
        if candidate is not None:
            return normalize_throttling(candidate, config.throttling_profiles)
    return None


def timeout_scale_for(spec: ThrottlingSpec | None) -> float:
    """Multiplier applied to every wait and timeout under this throttling."""
    if spec is None:
        return 1.0
    if spec.timeout_scale is not None and spec.timeout_scale > 0:
        return float(spec.timeout_scale)
    network_scale = NETWORK_TIMEOUT_SCALE if spec.network and spec.network != "none" else 1.0
    cpu_scale = min(MAX_CPU_TIMEOUT_SCALE, spec.cpu) if spec.cpu > 1 else 1.0
    return max(network_scale, cpu_scale)


async def apply_throttling(page: Page, spec: ThrottlingSpec | None) -> dict[str, Any] | None:
    """Apply CPU and network throttling to ``page`` over a dedicated CDP session.

    The session stays attached for the lifetime of the browser context since
    emulation is dropped when it detaches. A failing CDP call leaves the page
    unthrottled and is reported through the ``error`` field.
    """
    if spec is None:
        return None
    conditions = NETWORK_PROFILES.get(spec.network, NETWORK_PROFILES["none"])
    applied: dict[str, Any] = {"cpu": spec.cpu, "network": spec.network}
    try:
        client = await page.context.new_cdp_session(page)
        await client.send("Network.enable")
        await client.send("Network.emulateNetworkConditions", conditions.to_cdp())
        await client.send("Emulation.setCPUThrottlingRate", {"rate": spec.cpu})
    except PlaywrightError as exc:
        LOGGER.warning("Failed to apply throttling %s: %s", spec, exc)
        applied["error"] = THROTTLE_FAILED
    return applied
