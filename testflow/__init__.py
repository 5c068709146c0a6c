"""Test-execution pipeline: result caching, parallel scheduling,
reliability tracking and performance regression detection."""

from testflow.pipeline import Pipeline, PipelineResult, TestUnit

__all__ = ["Pipeline", "PipelineResult", "TestUnit"]
