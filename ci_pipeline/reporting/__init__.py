"""Reporting: execution stats delivery."""

from ci_pipeline.reporting.stats import StatsReporter

__all__ = [
    "StatsReporter",
]
