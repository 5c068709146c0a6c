"""Report generation for pipeline runs."""

from testflow.reporting.reporter import Reporter

__all__ = ["Reporter"]
