"""Session reports."""

from nightfix.reporting.aggregator import SessionReport, TargetSummary, summarize

__all__ = ["SessionReport", "TargetSummary", "summarize"]
