from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
from fake_adb import FakeController
from fake_toolchain import FakeToolchain

import native_harness.pipeline as pipeline_mod
from native_harness.config import HarnessConfig
from native_harness.device.controller import DeviceDriver
from native_harness.errors import RunCancelled
from native_harness.pipeline import Pipeline, RunOutcome, TestOptions
from native_harness.protocol.manifest import RunPayload, TestMetadata, TestResult
from native_harness.protocol.runner import CancelToken

PASSING_RUN = (
    "INSTRUMENTATION_RESULT: t1=true\n"
    "INSTRUMENTATION_RESULT: t2=false\n"
    "INSTRUMENTATION_RESULT: total_tests=2\n"
    "INSTRUMENTATION_RESULT: passed_tests=1\n"
    "INSTRUMENTATION_RESULT: failed_tests=1\n"
    "INSTRUMENTATION_RESULT: test_order=t1,t2\n"
    "INSTRUMENTATION_CODE: -1\n"
)


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path / "home"))
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "lib.rs").write_text("#[test] fn t1() {}\n", encoding="utf-8")
    (root / "Cargo.toml").write_text('[package]\nname = "demo"\n', encoding="utf-8")
    return root


def _config(project: Path, **overrides) -> HarnessConfig:
    return HarnessConfig(
        project_dir=project,
        library="demo",
        permissions=("android.permission.INTERNET",),
        cache_dir=project.parent / "cache",
        **overrides,
    )


def _pipeline(config: HarnessConfig, ctr: FakeController, **kwargs):
    toolchain = FakeToolchain(config.native_lib_path)
    pipeline = Pipeline(
        config,
        toolchain=toolchain,
        driver=DeviceDriver(ctr),
        printer=lambda line: None,
        **kwargs,
    )
    return pipeline, toolchain


def test_first_run_builds_installs_and_launches(project: Path) -> None:
    ctr = FakeController()
    ctr.instrument_output = PASSING_RUN
    pipeline, toolchain = _pipeline(_config(project), ctr)

    outcome = pipeline.run_tests(TestOptions(test_filter="t"))

    assert toolchain.calls[0] == "cargo"
    assert "apksigner" in toolchain.calls
    assert [c[0] for c in ctr.writes] == ["install", "push", "run-as-write", "rm"]
    assert outcome.payload.results == [TestResult("t1", True), TestResult("t2", False)]
    assert outcome.exit_code == 1
    instrument = next(c[1] for c in ctr.calls if c[0] == "instrument")
    assert "-e test_filter t" in instrument


def test_unchanged_project_redeploys_nothing(project: Path) -> None:
    ctr = FakeController()
    ctr.instrument_output = PASSING_RUN
    config = _config(project)
    _pipeline(config, ctr)[0].run_tests()

    ctr.calls.clear()
    pipeline, toolchain = _pipeline(config, ctr)
    outcome = pipeline.run_tests()

    assert toolchain.calls == []
    assert ctr.writes == []
    assert not outcome.plan.compile.run
    assert not outcome.plan.install.run
    assert any(c[0] == "instrument" for c in ctr.calls)


def test_permission_change_repackages_without_compiling(project: Path) -> None:
    ctr = FakeController()
    ctr.instrument_output = PASSING_RUN
    config = _config(project)
    _pipeline(config, ctr)[0].run_tests()

    ctr.calls.clear()
    changed = dataclasses.replace(
        config, permissions=config.permissions + ("android.permission.CAMERA",)
    )
    pipeline, toolchain = _pipeline(changed, ctr)
    outcome = pipeline.run_tests()

    assert "cargo" not in toolchain.calls
    assert "aapt2" in toolchain.calls
    assert outcome.plan.package.run and outcome.plan.install.run
    assert [c[0] for c in ctr.writes] == ["install"]


def test_force_rebuilds_and_redeploys_everything(project: Path) -> None:
    ctr = FakeController()
    ctr.instrument_output = PASSING_RUN
    config = _config(project)
    _pipeline(config, ctr)[0].run_tests()

    ctr.calls.clear()
    pipeline, toolchain = _pipeline(config, ctr)
    pipeline.run_tests(TestOptions(force=True))

    assert toolchain.calls[0] == "cargo"
    assert [c[0] for c in ctr.writes] == ["install", "push", "run-as-write", "rm"]


def test_cancelled_run_stops_before_any_device_write(project: Path) -> None:
    ctr = FakeController()
    cancel = CancelToken()
    cancel.cancel()
    pipeline, toolchain = _pipeline(_config(project), ctr, cancel=cancel)

    with pytest.raises(RunCancelled):
        pipeline.run_tests()
    assert toolchain.calls == []
    assert ctr.writes == []


def test_build_without_device_compiles_and_packages(project: Path) -> None:
    config = _config(project)
    pipeline, toolchain = _pipeline(config, FakeController())

    plan = pipeline.build(lib_only=True)
    assert plan.compile.run
    assert toolchain.calls == ["cargo"]
    assert not config.apk_path.exists()

    pipeline.package()
    assert config.apk_path.exists()

    pipeline.clean()
    assert not config.output_path.exists()


class _HostLibrary:
    def manifest(self):
        return [TestMetadata("t1"), TestMetadata("t2", should_panic=True)]

    def invoke(self, name: str) -> bool:
        return True


def test_host_run_loads_the_host_library(project: Path, monkeypatch) -> None:
    built: list[Path] = []
    loaded: list[Path] = []

    def fake_build(project_dir: Path, *, timeout_s: float) -> None:
        built.append(project_dir)

    def fake_load(path: Path):
        loaded.append(path)
        return _HostLibrary()

    monkeypatch.setattr(pipeline_mod, "build_host_library", fake_build)
    monkeypatch.setattr(pipeline_mod, "load_library", fake_load)
    ctr = FakeController()
    config = _config(project)
    pipeline, _ = _pipeline(config, ctr)

    outcome = pipeline.run_tests(TestOptions(host=True, test_filter="t2"))

    assert built == [project]
    assert loaded == [config.host_lib_path]
    assert outcome.payload.results == [TestResult("t2", True)]
    assert outcome.exit_code == 0
    assert ctr.calls == []


@pytest.mark.parametrize(
    ("payload", "code"),
    [
        (RunPayload.from_results([TestResult("a", True)]), 0),
        (RunPayload.from_results([TestResult("a", True), TestResult("b", False)]), 1),
        (RunPayload.boundary_error("dlopen failed"), 2),
    ],
)
def test_exit_code(payload: RunPayload, code: int) -> None:
    assert RunOutcome(payload=payload).exit_code == code
