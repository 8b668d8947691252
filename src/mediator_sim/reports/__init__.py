"""
Mediator Simulation Reports Module

JSON report files assembled from the ledger.
"""

from .generator import ReportGenerator, ReportKind

__all__ = ["ReportGenerator", "ReportKind"]
