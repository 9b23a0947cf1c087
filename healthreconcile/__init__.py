"""Data freshness and reconciliation engine for per-day health metrics."""

__version__ = "0.1.0"
