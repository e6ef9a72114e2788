"""Test execution protocol: manifest, result payload and the runner."""

from __future__ import annotations

from native_harness.protocol.manifest import (
    RunPayload,
    TestMetadata,
    TestResult,
    matches_filter,
    parse_instrumentation_output,
)
from native_harness.protocol.runner import CancelToken, InvokeOutcome, TestRunner, invoke_test

__all__ = [
    "CancelToken",
    "InvokeOutcome",
    "RunPayload",
    "TestMetadata",
    "TestResult",
    "TestRunner",
    "invoke_test",
    "matches_filter",
    "parse_instrumentation_output",
]
