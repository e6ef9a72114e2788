from __future__ import annotations

from native_harness.protocol.manifest import (
    STATUS_CANCELLED,
    STATUS_SUCCESS,
    RunPayload,
    TestResult,
    matches_filter,
    parse_instrumentation_output,
)


def _lines(*pairs: tuple[str, str], code: int | None = -1) -> str:
    out = [f"INSTRUMENTATION_RESULT: {k}={v}" for k, v in pairs]
    if code is not None:
        out.append(f"INSTRUMENTATION_CODE: {code}")
    return "\r\n".join(out) + "\r\n"


def test_successful_run_follows_reported_order() -> None:
    text = _lines(
        ("t3", "true"),
        ("t1", "false"),
        ("total_tests", "2"),
        ("passed_tests", "1"),
        ("failed_tests", "1"),
        ("test_order", "t1,t3"),
    )

    payload = parse_instrumentation_output(text)

    assert payload.status == STATUS_SUCCESS
    assert not payload.cancelled
    assert payload.results == [TestResult("t1", False), TestResult("t3", True)]
    assert (payload.total, payload.passed, payload.failed) == (2, 1, 1)
    assert payload.error is None


def test_missing_result_code_is_a_cancelled_run() -> None:
    text = "INSTRUMENTATION_ABORTED: System has crashed.\n"

    payload = parse_instrumentation_output(text)

    assert payload.cancelled
    assert payload.results == []
    assert payload.error == "System has crashed."


def test_canceled_code_keeps_library_error() -> None:
    text = _lines(
        ("error", "failed to load test library: dlopen failed"),
        ("total_tests", "0"),
        code=0,
    )

    payload = parse_instrumentation_output(text)

    assert payload.status == STATUS_CANCELLED
    assert payload.total == 0
    assert payload.error == "failed to load test library: dlopen failed"


def test_unexpected_code_without_error_is_described() -> None:
    payload = parse_instrumentation_output(_lines(code=3))
    assert payload.cancelled
    assert payload.error == "instrumentation finished with code 3"

    payload = parse_instrumentation_output("")
    assert payload.error == "instrumentation did not report a result"


def test_bundle_counts_fall_back_to_entries() -> None:
    payload = RunPayload.from_bundle({"a": "true", "b": "false", "c": True}, status=STATUS_SUCCESS)
    assert [r.name for r in payload.results] == ["a", "b", "c"]
    assert (payload.total, payload.passed, payload.failed) == (3, 2, 1)


def test_to_bundle_carries_aggregates() -> None:
    payload = RunPayload.from_results([TestResult("m::a", True), TestResult("m::b", False)])

    bundle = payload.to_bundle()

    assert bundle == {
        "m::a": True,
        "m::b": False,
        "total_tests": 2,
        "passed_tests": 1,
        "failed_tests": 1,
        "test_order": "m::a,m::b",
    }
    assert payload.passed + payload.failed == payload.total


def test_boundary_error_payload_has_no_entries() -> None:
    payload = RunPayload.boundary_error("no such library")
    assert payload.cancelled
    assert payload.results == [] and payload.total == 0
    assert "error" in payload.to_bundle()


def test_filter_is_a_substring_match() -> None:
    assert matches_filter("net::tcp_connect", "tcp")
    assert not matches_filter("net::tcp_connect", "udp")
    assert matches_filter("anything", None)
    assert matches_filter("anything", "")
