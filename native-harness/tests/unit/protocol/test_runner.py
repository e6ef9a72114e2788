from __future__ import annotations

import ctypes
import logging
from pathlib import Path
from typing import Dict, List

import pytest

from native_harness.errors import RunCancelled, TestBoundaryError
from native_harness.protocol import native
from native_harness.protocol.manifest import TestMetadata, TestResult
from native_harness.protocol.runner import CancelToken, TestRunner


class FakeLibrary:
    def __init__(self, tests: List[TestMetadata], outcomes: Dict[str, object]) -> None:
        self.tests = tests
        self.outcomes = outcomes
        self.invoked: List[str] = []

    def manifest(self) -> List[TestMetadata]:
        return list(self.tests)

    def invoke(self, name: str) -> bool:
        self.invoked.append(name)
        outcome = self.outcomes[name]
        if isinstance(outcome, Exception):
            raise outcome
        return bool(outcome)


MANIFEST = [
    TestMetadata("t1"),
    TestMetadata("t2", is_async=True, should_panic=True),
    TestMetadata("t3"),
]


def test_filter_selects_only_matching_tests(caplog) -> None:
    lib = FakeLibrary(MANIFEST, {"t1": True, "t2": True, "t3": True})

    with caplog.at_level(logging.INFO, logger="native_harness.protocol.runner"):
        payload = TestRunner().run(lambda path: lib, Path("libdemo.so"), test_filter="t2")

    assert lib.invoked == ["t2"]
    assert payload.results == [TestResult("t2", True)]
    assert (payload.total, payload.passed, payload.failed) == (1, 1, 0)
    assert "Running test: t2 (should_panic) (async)" in caplog.text
    assert "Test run complete: 1/1 passed" in caplog.text


def test_all_tests_run_in_manifest_order() -> None:
    lib = FakeLibrary(MANIFEST, {"t1": True, "t2": False, "t3": True})

    payload = TestRunner().run(lambda path: lib, Path("libdemo.so"))

    assert [r.name for r in payload.results] == ["t1", "t2", "t3"]
    assert (payload.total, payload.passed, payload.failed) == (3, 2, 1)
    assert not payload.cancelled


def test_boundary_error_fails_only_that_test() -> None:
    lib = FakeLibrary(
        MANIFEST, {"t1": True, "t2": TestBoundaryError("symbol missing"), "t3": True}
    )

    payload = TestRunner().run(lambda path: lib, Path("libdemo.so"))

    assert lib.invoked == ["t1", "t2", "t3"]
    assert payload.results[1] == TestResult("t2", False)
    assert payload.failed == 1 and payload.error is None


def test_load_failure_cancels_with_no_entries() -> None:
    def loader(path: Path):
        raise TestBoundaryError(f"failed to load {path}")

    payload = TestRunner().run(loader, Path("missing.so"))

    assert payload.cancelled
    assert payload.results == [] and payload.total == 0
    assert payload.error == "failed to load missing.so"


class _BrokenManifestLibrary:
    def manifest(self):
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    def invoke(self, name: str) -> bool:
        raise AssertionError("no test should run")


def test_unexpected_manifest_error_cancels_with_no_entries() -> None:
    payload = TestRunner().run(lambda path: _BrokenManifestLibrary(), Path("libdemo.so"))

    assert payload.cancelled
    assert payload.results == [] and payload.total == 0
    assert "invalid start byte" in payload.error


def test_cancel_between_tests_keeps_completed_results() -> None:
    cancel = CancelToken()
    lib = FakeLibrary(MANIFEST, {"t1": True, "t2": True, "t3": True})
    original = lib.invoke

    def invoke_then_cancel(name: str) -> bool:
        cancel.cancel()
        return original(name)

    lib.invoke = invoke_then_cancel  # type: ignore[method-assign]

    payload = TestRunner().run(lambda path: lib, Path("libdemo.so"), cancel=cancel)

    assert lib.invoked == ["t1"]
    assert payload.cancelled
    assert payload.results == [TestResult("t1", True)]
    assert payload.error == "run cancelled"


def test_cancel_token_raises_with_location() -> None:
    token = CancelToken()
    token.raise_if_cancelled("install")
    token.cancel()
    with pytest.raises(RunCancelled, match="before install"):
        token.raise_if_cancelled("install")


def _fake_cdll(names: List[str], flags: List[int], entries: Dict[str, bool]):
    class Lib:
        pass

    lib = Lib()
    lib.harness_test_count = lambda: len(names)
    lib.harness_test_name = lambda i: names[i].encode("utf-8")
    lib.harness_test_flags = lambda i: flags[i]
    for symbol, result in entries.items():
        setattr(lib, symbol, lambda result=result: result)
    return lib


def test_native_library_builds_manifest_and_registry(monkeypatch) -> None:
    fake = _fake_cdll(
        ["net::connect", "net::refused"],
        [0, native.FLAG_ASYNC | native.FLAG_SHOULD_PANIC],
        {"harness_test__net__connect": True, "harness_test__net__refused": False},
    )
    monkeypatch.setattr(ctypes, "CDLL", lambda path: fake)

    lib = native.load_library(Path("libdemo.so"))

    assert lib.manifest() == [
        TestMetadata("net::connect"),
        TestMetadata("net::refused", is_async=True, should_panic=True),
    ]
    assert lib.invoke("net::connect") is True
    assert lib.invoke("net::refused") is False
    with pytest.raises(TestBoundaryError, match="unknown test"):
        lib.invoke("net::other")


def test_native_library_missing_entry_point(monkeypatch) -> None:
    fake = _fake_cdll(["t1"], [0], {})
    monkeypatch.setattr(ctypes, "CDLL", lambda path: fake)

    with pytest.raises(TestBoundaryError, match="harness_test__t1"):
        native.load_library(Path("libdemo.so"))


def test_native_library_load_failure(monkeypatch) -> None:
    def fail(path):
        raise OSError("cannot open shared object file")

    monkeypatch.setattr(ctypes, "CDLL", fail)

    with pytest.raises(TestBoundaryError, match="cannot open shared object"):
        native.load_library(Path("libdemo.so"))


def test_native_library_rejects_non_utf8_test_name(monkeypatch) -> None:
    fake = _fake_cdll(["t1"], [0], {"harness_test__t1": True})
    fake.harness_test_name = lambda i: b"t\xff1"
    monkeypatch.setattr(ctypes, "CDLL", lambda path: fake)

    with pytest.raises(TestBoundaryError, match="non UTF-8 name"):
        native.load_library(Path("libdemo.so"))
