from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

LOGGER = logging.getLogger("cfbench.navigation")

NAV_MAX_ATTEMPTS = 3
NAV_BACKOFF_MS = 750
FALLBACK_WAIT_UNTIL = "domcontentloaded"

_RETRYABLE_HTTP = re.compile(r"^http_(408|429|5\d\d)$")
_TRANSPORT_MARKERS = ("net::err", "err_aborted", "frame was detached")


def error_to_string(err: Any) -> str:
    if err is None:
        return "unknown_error"
    if isinstance(err, str):
        return err
    message = str(err).strip()
    if not message:
        return type(err).__name__
    # playwright appends a multi-line call log after the first line
    return message.splitlines()[0].strip()


def classify_error(err: Any) -> str:
    """Return ``http_<status>``, ``timeout``, ``transport`` or ``other``."""
    message = error_to_string(err).lower()
    if message.startswith("http_"):
        return message
    if "timeout" in message:
        return "timeout"
    if any(marker in message for marker in _TRANSPORT_MARKERS):
        return "transport"
    return "other"


def is_retryable(err: Any) -> bool:
    kind = classify_error(err)
    if kind.startswith("http_"):
        return bool(_RETRYABLE_HTTP.match(kind))
    return kind in ("timeout", "transport")


class NavigationError(Exception):
    """A page load that failed after the retry policy gave up."""

    def __init__(self, message: str, status: int | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.status = status
        self.attempts = attempts

    @property
    def kind(self) -> str:
        return classify_error(self)

    @property
    def retryable(self) -> bool:
        return is_retryable(self)


@dataclass
class NavigationResult:
    response: Response | None
    status: int | None
    attempts: int
    wait_until: str


async def navigate_with_retry(
    page: Page,
    action: str,
    url: str | None = None,
    wait_until: str = "load",
    timeout_ms: float = 12_000,
    max_attempts: int = NAV_MAX_ATTEMPTS,
    backoff_ms: float = NAV_BACKOFF_MS,
) -> NavigationResult:
    """Load ``url`` (``action="goto"``) or reload the page with bounded retries.

    Only retryable failures are retried, with a linear backoff. A timeout
    while waiting for ``load`` downgrades the remaining attempts of this call
    to ``domcontentloaded``.
    """
    if action not in ("goto", "reload"):
        raise ValueError(f"unknown navigation action {action!r}")
    if action == "goto" and not url:
        raise ValueError("goto navigation needs a url")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    current_wait = wait_until
    for attempt in range(1, max_attempts + 1):
        try:
            if action == "reload":
                response = await page.reload(wait_until=current_wait, timeout=timeout_ms)
            else:
                response = await page.goto(url, wait_until=current_wait, timeout=timeout_ms)
            status = response.status if response is not None else None
            if status is not None and status >= 400:
                raise NavigationError(f"http_{status}", status=status)
            return NavigationResult(response, status, attempt, current_wait)
        except (PlaywrightError, NavigationError) as exc:
            message = error_to_string(exc)
            if attempt < max_attempts and is_retryable(exc):
                if current_wait == "load" and classify_error(exc) == "timeout":
                    LOGGER.debug("load wait timed out for %s; falling back to %s", url, FALLBACK_WAIT_UNTIL)
                    current_wait = FALLBACK_WAIT_UNTIL
                LOGGER.info(
                    "%s %s attempt %d/%d failed (%s); retrying",
                    action,
                    url or "<current page>",
                    attempt,
                    max_attempts,
                    message,
                )
                await page.wait_for_timeout(backoff_ms * attempt)
                continue
            if isinstance(exc, NavigationError):
                exc.attempts = attempt
                raise
            raise NavigationError(message, attempts=attempt) from exc
    raise AssertionError("navigation loop exited without a result")
