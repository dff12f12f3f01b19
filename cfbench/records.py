from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from .collector import HostMetrics


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def _number(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


@dataclass(frozen=True)
class RunRecord:
    """Outcome of one (target, profile, phase, scenario, iteration) unit."""

    target: str
    profile: str
    phase: str
    scenario: str
    scenario_type: str
    iteration: int
    url: str
    ok: bool
    skipped: bool = False
    error: str | None = None
    status: int | None = None
    nav_attempts: int = 0
    wait_until: str | None = None
    is_cold: bool = False
    target_meta: Mapping[str, Any] = field(default_factory=dict)
    throttling: Mapping[str, Any] | None = None
    throttle_applied: Mapping[str, Any] | None = None
    headers: Mapping[str, Any] | None = None
    server_metrics: Mapping[str, Any] | None = None
    synthetic: Mapping[str, Any] | None = None
    host: HostMetrics | None = None
    hydration: str | None = None
    client_nav_ms: float | None = None

    def __post_init__(self) -> None:
        if self.skipped and self.ok:
            raise ValueError("a skipped record cannot be ok")
        if not self.ok and not self.error:
            raise ValueError("a failed or skipped record needs an error")
        if self.iteration < 1:
            raise ValueError("iterations are 1-based")

    @property
    def counts_as_sample(self) -> bool:
        return self.ok and not self.skipped

    @property
    def ttfb(self) -> float | None:
        value = _number(_dig(self.server_metrics, "ttfb"))
        if value is None:
            value = _number(_dig(self.synthetic, "nav", "ttfb"))
        return value

    def web_vital(self, name: str) -> float | None:
        return _number(_dig(self.synthetic, "cwv", name, "value"))

    @property
    def tbt(self) -> float | None:
        return _number(_dig(self.synthetic, "longTasks", "tbt"))

    @property
    def long_tasks_total(self) -> float | None:
        return _number(_dig(self.synthetic, "longTasks", "totalCount"))

    @property
    def fcp_missing(self) -> bool:
        return _dig(self.synthetic, "longTasks", "hasFcp") is False

    def app_marker(self, section: str, key: str) -> Any:
        return _dig(self.synthetic, "app", section, key)

    def host_value(self, name: str) -> float | None:
        if self.host is None:
            return None
        return _number(getattr(self.host, name))

    def resource_bytes(self, kind: str) -> float:
        return _number(_dig(self.synthetic, "resources", kind)) or 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "targetMeta": dict(self.target_meta),
            "profile": self.profile,
            "phase": self.phase,
            "scenario": self.scenario,
            "scenarioType": self.scenario_type,
            "iteration": self.iteration,
            "url": self.url,
            "isCold": self.is_cold,
            "throttling": dict(self.throttling) if self.throttling else None,
            "throttleApplied": dict(self.throttle_applied) if self.throttle_applied else None,
            "ok": self.ok,
            "skipped": self.skipped,
            "status": self.status,
            "navAttempts": self.nav_attempts,
            "waitUntil": self.wait_until,
            "error": self.error,
            "headers": dict(self.headers) if self.headers else None,
            "serverMetrics": dict(self.server_metrics) if self.server_metrics else None,
            "synthetic": self.synthetic,
            "clientMetrics": self.host.to_dict() if self.host else None,
            "hydration": self.hydration,
            "clientNavMs": self.client_nav_ms,
        }


@dataclass(frozen=True)
class FailureRecord:
    target: str
    profile: str
    phase: str
    scenario: str
    iteration: int
    error: str
    status: int | None = None

    @classmethod
    def from_record(cls, record: RunRecord) -> "FailureRecord":
        return cls(
            target=record.target,
            profile=record.profile,
            phase=record.phase,
            scenario=record.scenario,
            iteration=record.iteration,
            error=record.error or "unknown_error",
            status=record.status,
        )

    @property
    def group_key(self) -> str:
        return f"{self.target}::{self.profile}::{self.phase}::{self.scenario}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "profile": self.profile,
            "phase": self.phase,
            "scenario": self.scenario,
            "iteration": self.iteration,
            "error": self.error,
            "status": self.status,
        }
