"""Test manifest entries and the run result payload.

The payload travels from the device as the instrumentation result map: one
boolean per executed test plus the reserved keys below. `am instrument -r`
prints that map as ``INSTRUMENTATION_RESULT: key=value`` lines.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

STATUS_SUCCESS = "success"
STATUS_CANCELLED = "cancelled"

KEY_TOTAL = "total_tests"
KEY_PASSED = "passed_tests"
KEY_FAILED = "failed_tests"
KEY_ERROR = "error"
KEY_ORDER = "test_order"
RESERVED_KEYS = frozenset({KEY_TOTAL, KEY_PASSED, KEY_FAILED, KEY_ERROR, KEY_ORDER})

# Activity.RESULT_OK / RESULT_CANCELED
RESULT_OK = -1
RESULT_CANCELED = 0

_RESULT_RE = re.compile(r"^INSTRUMENTATION_RESULT: ([^=]+)=(.*)$")
_CODE_RE = re.compile(r"^INSTRUMENTATION_CODE: (-?\d+)")
_ABORTED_RE = re.compile(r"^INSTRUMENTATION_(?:ABORTED|FAILED): (.*)$")


@dataclass(frozen=True)
class TestMetadata:
    __test__ = False

    name: str
    is_async: bool = False
    should_panic: bool = False


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    name: str
    passed: bool


@dataclass(frozen=True)
class RunPayload:
    results: List[TestResult] = field(default_factory=list)
    total: int = 0
    passed: int = 0
    failed: int = 0
    error: Optional[str] = None
    status: str = STATUS_SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    @classmethod
    def from_results(cls, results: List[TestResult]) -> "RunPayload":
        passed = sum(1 for r in results if r.passed)
        return cls(
            results=list(results),
            total=len(results),
            passed=passed,
            failed=len(results) - passed,
        )

    @classmethod
    def boundary_error(cls, error: str) -> "RunPayload":
        return cls(error=error, status=STATUS_CANCELLED)

    @classmethod
    def from_bundle(cls, bundle: Mapping[str, Any], *, status: str) -> "RunPayload":
        """Rebuild the payload from a result map.

        Test entries are every non-reserved key; their order follows
        ``test_order`` when present and map order otherwise.
        """

        entries = {k: _as_bool(v) for k, v in bundle.items() if k not in RESERVED_KEYS}
        order = [n for n in str(bundle.get(KEY_ORDER) or "").split(",") if n in entries]
        order += [n for n in entries if n not in order]
        results = [TestResult(name=n, passed=entries[n]) for n in order]

        passed = sum(1 for r in results if r.passed)
        error = bundle.get(KEY_ERROR)
        return cls(
            results=results,
            total=_as_int(bundle.get(KEY_TOTAL), len(results)),
            passed=_as_int(bundle.get(KEY_PASSED), passed),
            failed=_as_int(bundle.get(KEY_FAILED), len(results) - passed),
            error=str(error) if error is not None else None,
            status=status,
        )

    def to_bundle(self) -> Dict[str, Any]:
        bundle: Dict[str, Any] = {r.name: r.passed for r in self.results}
        bundle[KEY_TOTAL] = self.total
        bundle[KEY_PASSED] = self.passed
        bundle[KEY_FAILED] = self.failed
        bundle[KEY_ORDER] = ",".join(r.name for r in self.results)
        if self.error is not None:
            bundle[KEY_ERROR] = self.error
        return bundle


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def parse_instrumentation_output(text: str) -> RunPayload:
    """Parse the raw (``-r``) output of ``am instrument -w``.

    A missing result code means the instrumentation died before finishing;
    that is reported as a cancelled run carrying whatever message adb printed.
    """

    bundle: Dict[str, str] = {}
    code: Optional[int] = None
    aborted: Optional[str] = None
    for raw in text.splitlines():
        line = raw.rstrip("\r")
        m = _RESULT_RE.match(line)
        if m:
            bundle[m.group(1).strip()] = m.group(2)
            continue
        m = _CODE_RE.match(line)
        if m:
            code = int(m.group(1))
            continue
        m = _ABORTED_RE.match(line)
        if m:
            aborted = m.group(1).strip()

    if code == RESULT_OK:
        return RunPayload.from_bundle(bundle, status=STATUS_SUCCESS)
    if code is None and KEY_ERROR not in bundle:
        bundle[KEY_ERROR] = aborted or "instrumentation did not report a result"
    elif KEY_ERROR not in bundle:
        bundle[KEY_ERROR] = aborted or f"instrumentation finished with code {code}"
    return RunPayload.from_bundle(bundle, status=STATUS_CANCELLED)


def matches_filter(name: str, test_filter: Optional[str]) -> bool:
    return not test_filter or test_filter in name
