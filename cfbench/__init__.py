"""
Browser benchmark runner for a set of deployed web targets.

This package drives Chromium through Playwright against every configured
target, collects client and server side performance metrics for each
scenario, and aggregates them into percentile summaries and within-bucket
comparison scores.
"""

from .main import main

__all__ = ["main"]
