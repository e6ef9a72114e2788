from __future__ import annotations

from typing import List, Optional

from native_harness.protocol.manifest import RunPayload


def summary_line(payload: RunPayload) -> str:
    return (
        f"test result: {'ok' if payload.failed == 0 and not payload.cancelled else 'FAILED'}. "
        f"{payload.total} total; {payload.passed} passed; {payload.failed} failed"
    )


def render_report(payload: Optional[RunPayload], *, error: Optional[str] = None) -> List[str]:
    """Summary, then PASS/FAIL per test in manifest order, then any run-level error."""

    lines: List[str] = []
    if payload is not None:
        lines.append(summary_line(payload))
        for result in payload.results:
            lines.append(f"{'PASS' if result.passed else 'FAIL'} {result.name}")
        if payload.error:
            lines.append(f"error: {payload.error}")
    if error:
        lines.append(f"error: {error}")
    return lines
