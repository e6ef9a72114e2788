"""Host-side executor of the test execution protocol.

    Load -> Enumerate -> Filter -> Invoke (per test) -> Aggregate -> Finish

A failure to load or enumerate the library ends the run with no per-test
entries and ``status="cancelled"``. A failure while invoking one test fails
only that test. A run cancelled between tests is also ``cancelled`` but keeps
the entries of the tests that already finished.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from native_harness.errors import RunCancelled
from native_harness.protocol.manifest import (
    STATUS_CANCELLED,
    RunPayload,
    TestMetadata,
    TestResult,
    matches_filter,
)

logger = logging.getLogger(__name__)


class TestLibrary(Protocol):
    def manifest(self) -> List[TestMetadata]:
        ...

    def invoke(self, name: str) -> bool:
        ...


LibraryLoader = Callable[[Path], TestLibrary]


class CancelToken:
    """Cooperative cancellation, checked between tests and between stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise RunCancelled(f"run cancelled{f' before {where}' if where else ''}")


@dataclass(frozen=True)
class InvokeOutcome:
    passed: bool
    error: Optional[str] = None


def invoke_test(library: TestLibrary, test: TestMetadata) -> InvokeOutcome:
    """Invoke one test; the boolean already accounts for `should_panic`."""

    try:
        return InvokeOutcome(passed=bool(library.invoke(test.name)))
    except Exception as e:
        logger.error("test %s failed at the library boundary: %s", test.name, e)
        return InvokeOutcome(passed=False, error=str(e))


class TestRunner:
    __test__ = False

    def run(
        self,
        loader: LibraryLoader,
        lib_path: Path,
        test_filter: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RunPayload:
        try:
            library = loader(lib_path)
            manifest = list(library.manifest())
        except Exception as e:
            logger.error("could not load test library %s: %s", lib_path, e)
            return RunPayload.boundary_error(str(e) or type(e).__name__)

        selected = [t for t in manifest if matches_filter(t.name, test_filter)]
        logger.info("running %d of %d tests", len(selected), len(manifest))

        results: List[TestResult] = []
        for test in selected:
            if cancel is not None and cancel.cancelled:
                return replace(
                    RunPayload.from_results(results), error="run cancelled", status=STATUS_CANCELLED
                )
            kind = (" (should_panic)" if test.should_panic else "") + (
                " (async)" if test.is_async else ""
            )
            logger.info("Running test: %s%s", test.name, kind)
            outcome = invoke_test(library, test)
            results.append(TestResult(name=test.name, passed=outcome.passed))
            logger.info("Test %s %s", test.name, "PASSED" if outcome.passed else "FAILED")

        payload = RunPayload.from_results(results)
        logger.info("Test run complete: %d/%d passed", payload.passed, payload.total)
        return payload
