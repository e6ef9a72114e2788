from __future__ import annotations

import shutil
from pathlib import Path

import native_harness
from native_harness import host
from native_harness.build.fingerprint import (
    FingerprintStore,
    compute_compile_fingerprint,
    compute_package_fingerprint,
)
from native_harness.maven.coordinates import Coordinate, ResolvedDependency


def _project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "lib.rs").write_text("#[test] fn t() {}\n", encoding="utf-8")
    (tmp_path / "Cargo.toml").write_text('[package]\nname = "demo"\n', encoding="utf-8")
    return tmp_path


def _compile_fp(project: Path):
    return compute_compile_fingerprint(
        project, ["src", "tests", "Cargo.toml"], rust_target="aarch64-linux-android", library="demo"
    )


def _package_fp(compile_fp, *, permissions=("android.permission.INTERNET",), deps=()):
    return compute_package_fingerprint(
        compile_fp,
        dependencies=list(deps),
        permissions=list(permissions),
        target_sdk=30,
        min_sdk=24,
        abi="arm64-v8a",
    )


def test_compile_fingerprint_tracks_source_edits(tmp_path: Path) -> None:
    project = _project(tmp_path)
    before = _compile_fp(project)
    assert _compile_fp(project) == before

    (project / "src" / "lib.rs").write_text("#[test] fn t2() {}\n", encoding="utf-8")
    assert _compile_fp(project) != before


def test_compile_fingerprint_ignores_build_outputs(tmp_path: Path) -> None:
    project = _project(tmp_path)
    before = _compile_fp(project)
    (project / "target").mkdir()
    (project / "target" / "libdemo.so").write_bytes(b"\x7fELF")
    assert _compile_fp(project) == before


def test_package_fingerprint_depends_on_permissions_and_compile(tmp_path: Path) -> None:
    compile_fp = _compile_fp(_project(tmp_path))
    base = _package_fp(compile_fp)

    assert _package_fp(compile_fp, permissions=["android.permission.INTERNET"] * 2) == base
    assert _package_fp(compile_fp, permissions=["android.permission.CAMERA"]) != base

    dep = ResolvedDependency(
        coordinate=Coordinate.parse("com.example:a:1.0"), path=tmp_path / "a.jar", is_aar=False
    )
    assert _package_fp(compile_fp, deps=[dep]) != base


def test_package_fingerprint_tracks_harness_version(tmp_path: Path, monkeypatch) -> None:
    compile_fp = _compile_fp(_project(tmp_path))
    base = _package_fp(compile_fp)

    monkeypatch.setattr(native_harness, "__version__", "99.0.0")

    assert _package_fp(compile_fp) != base


def test_package_fingerprint_tracks_host_java_sources(tmp_path: Path, monkeypatch) -> None:
    compile_fp = _compile_fp(_project(tmp_path))
    java_root = tmp_path / "host-java"
    shutil.copytree(host.JAVA_ROOT, java_root)
    monkeypatch.setattr(host, "JAVA_ROOT", java_root)
    base = _package_fp(compile_fp)

    runner = java_root / "com" / "nativeharness" / "loader" / "TestRunner.java"
    runner.write_text(runner.read_text(encoding="utf-8") + "\n// edited\n", encoding="utf-8")

    assert _package_fp(compile_fp) != base


def test_store_records_and_forgets(tmp_path: Path) -> None:
    store = FingerprintStore(tmp_path / "out")
    assert store.recorded("compile") is None

    fp = _compile_fp(_project(tmp_path))
    store.record(fp)
    assert FingerprintStore(tmp_path / "out").recorded("compile") == fp.digest

    store.forget()
    assert store.recorded("compile") is None


def test_store_ignores_unreadable_file(tmp_path: Path) -> None:
    store = FingerprintStore(tmp_path)
    store.path.write_text("{not json", encoding="utf-8")
    assert store.recorded("package") is None
