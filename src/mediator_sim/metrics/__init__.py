"""
Simulation metrics.

Per-agent groupings, run totals and run listings read back from the
ledger.
"""

from .aggregator import MetricsAggregator

__all__ = ["MetricsAggregator"]
