"""Build planning, tool invocation and host APK assembly."""

from __future__ import annotations

from native_harness.build.assembler import PackageAssembler, merge_classes
from native_harness.build.fingerprint import (
    BuildFingerprint,
    FingerprintStore,
    compute_compile_fingerprint,
    compute_package_fingerprint,
)
from native_harness.build.planner import BuildPlan, BuildPlanner, StageDecision
from native_harness.build.toolchain import AndroidSdk, Toolchain, run_tool

__all__ = [
    "AndroidSdk",
    "BuildFingerprint",
    "BuildPlan",
    "BuildPlanner",
    "FingerprintStore",
    "PackageAssembler",
    "StageDecision",
    "Toolchain",
    "compute_compile_fingerprint",
    "compute_package_fingerprint",
    "merge_classes",
    "run_tool",
]
