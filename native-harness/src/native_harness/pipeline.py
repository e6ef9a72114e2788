"""End-to-end orchestration.

    resolve -> extract -> fingerprint -> plan -> compile -> package -> install
            -> push library -> launch -> report

Stages run strictly in sequence. Any `HarnessError` raised by a stage halts
the remaining ones; cancellation is checked between stages.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import Callable, List, Optional

from native_harness.build.assembler import PackageAssembler
from native_harness.build.fingerprint import (
    BuildFingerprint,
    FingerprintStore,
    compute_compile_fingerprint,
    compute_package_fingerprint,
)
from native_harness.build.planner import BuildPlan, BuildPlanner
from native_harness.build.toolchain import AndroidSdk, Toolchain, build_host_library
from native_harness.config import HarnessConfig
from native_harness.device.controller import AndroidController, DeviceDriver, LogcatStream
from native_harness.errors import BuildError
from native_harness.maven.cache import ArtifactCache
from native_harness.maven.coordinates import ResolvedDependency
from native_harness.maven.extractor import ExtractedArtifact, extract_all, union_permissions
from native_harness.maven.repository import RepositoryClient
from native_harness.maven.resolver import DependencyResolver, render_tree
from native_harness.protocol.manifest import RunPayload
from native_harness.protocol.native import load_library, redirect_native_output
from native_harness.protocol.runner import CancelToken, TestRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestOptions:
    __test__ = False

    test_filter: Optional[str] = None
    force: bool = False
    nocapture: bool = False
    update_deps: bool = False
    host: bool = False


@dataclass(frozen=True)
class RunOutcome:
    payload: RunPayload
    plan: Optional[BuildPlan] = None

    @property
    def exit_code(self) -> int:
        if self.payload.cancelled or self.payload.error:
            return 2
        return 1 if self.payload.failed else 0


@dataclass(frozen=True)
class Prepared:
    dependencies: List[ResolvedDependency]
    artifacts: List[ExtractedArtifact]
    permissions: List[str]
    compile_fp: BuildFingerprint
    package_fp: BuildFingerprint


class Pipeline:
    def __init__(
        self,
        config: HarnessConfig,
        *,
        cancel: Optional[CancelToken] = None,
        toolchain: Optional[Toolchain] = None,
        driver: Optional[DeviceDriver] = None,
        client_factory: Optional[Callable[[], RepositoryClient]] = None,
        printer: Callable[[str], None] = print,
    ) -> None:
        self.config = config
        self.cancel = cancel or CancelToken()
        self.store = FingerprintStore(config.output_path)
        self.planner = BuildPlanner()
        self._toolchain = toolchain
        self._driver = driver
        self._client_factory = client_factory or (
            lambda: RepositoryClient(config.repositories, timeout_s=config.timeouts.network_s)
        )
        self._printer = printer

    # ------------------------------------------------------------ collaborators

    @property
    def toolchain(self) -> Toolchain:
        if self._toolchain is None:
            self._toolchain = Toolchain(AndroidSdk.find(), timeout_s=self.config.timeouts.tool_s)
        return self._toolchain

    def _adb_path(self) -> str:
        if self.config.adb_path:
            return self.config.adb_path
        found = shutil.which("adb")
        if found:
            return found
        return str(self.toolchain.sdk.adb_path)

    @property
    def driver(self) -> DeviceDriver:
        if self._driver is None:
            controller = AndroidController(
                adb_path=self._adb_path(),
                serial=self.config.serial,
                timeout_s=self.config.timeouts.device_s,
            )
            self._driver = DeviceDriver(controller, timeouts=self.config.timeouts)
        return self._driver

    # ------------------------------------------------------------ dependencies

    def _resolver(self, client: RepositoryClient) -> DependencyResolver:
        return DependencyResolver(
            ArtifactCache(self.config.cache_dir, client),
            max_workers=self.config.max_download_workers,
            upgrade_transitive=self.config.upgrade_transitive,
            lock_path=self.config.lock_path,
        )

    def resolve(self, *, update: bool = False) -> List[ResolvedDependency]:
        if not self.config.dependencies:
            return []
        with self._client_factory() as client:
            return self._resolver(client).resolve(self.config.dependencies, update=update)

    def dependency_tree(self) -> str:
        if not self.config.dependencies:
            return "(no dependencies)"
        with self._client_factory() as client:
            nodes = self._resolver(client).resolve_tree(self.config.dependencies)
        return render_tree(nodes)

    def prepare(self, *, update_deps: bool = False) -> Prepared:
        cfg = self.config
        deps = self.resolve(update=update_deps)
        artifacts = extract_all(deps)
        permissions = union_permissions(cfg.permissions, artifacts)
        compile_fp = compute_compile_fingerprint(
            cfg.project_dir, cfg.source_dirs, rust_target=cfg.rust_target, library=cfg.library
        )
        package_fp = compute_package_fingerprint(
            compile_fp,
            dependencies=deps,
            permissions=permissions,
            target_sdk=cfg.target_sdk,
            min_sdk=cfg.min_sdk,
            abi=cfg.abi,
        )
        return Prepared(deps, artifacts, permissions, compile_fp, package_fp)

    # ------------------------------------------------------------ stages

    def _compile(self, fp: BuildFingerprint) -> None:
        self.cancel.raise_if_cancelled("compile")
        self.store.forget()
        logger.info("building native test library for %s", self.config.abi)
        self.toolchain.build_native_library(self.config.project_dir, abi=self.config.abi)
        if not self.config.native_lib_path.exists():
            raise BuildError(
                f"compiled library not found at {self.config.native_lib_path}", stage="compile"
            )
        self.store.record(fp)

    def _package(self, prepared: Prepared) -> None:
        self.cancel.raise_if_cancelled("package")
        PackageAssembler(self.config, self.toolchain).assemble(
            prepared.artifacts,
            permissions=prepared.permissions,
            version_name=prepared.package_fp.digest,
        )
        self.store.record(prepared.package_fp)

    def _plan(
        self, prepared: Prepared, *, installed_fingerprint: Optional[str], force: bool
    ) -> BuildPlan:
        return self.planner.plan(
            current={
                "compile": prepared.compile_fp.digest,
                "package": prepared.package_fp.digest,
                "install": prepared.package_fp.digest,
            },
            recorded={
                "compile": self.store.recorded("compile"),
                "package": self.store.recorded("package"),
                "install": installed_fingerprint,
            },
            present={
                "compile": self.config.native_lib_path.exists(),
                "package": self.config.apk_path.exists(),
                "install": installed_fingerprint is not None,
            },
            force=force,
        )

    def build(self, *, lib_only: bool = False, force: bool = False) -> BuildPlan:
        prepared = self.prepare()
        # No device is consulted here, so install always reports as needed.
        plan = self._plan(prepared, installed_fingerprint=None, force=force)
        logger.info("build plan: %s", plan.describe())
        if plan.compile.run:
            self._compile(prepared.compile_fp)
        if not lib_only and plan.package.run:
            self._package(prepared)
        return plan

    def package(self, *, force: bool = False) -> BuildPlan:
        return self.build(lib_only=False, force=force)

    def clean(self) -> None:
        out = self.config.output_path
        if out.exists():
            shutil.rmtree(out)
            logger.info("removed %s", out)

    # ------------------------------------------------------------ test run

    def run_tests(self, options: TestOptions = TestOptions()) -> RunOutcome:
        if options.host:
            return self._run_host(options)

        cfg = self.config
        self.cancel.raise_if_cancelled("resolve")
        prepared = self.prepare(update_deps=options.update_deps)

        self.cancel.raise_if_cancelled("device query")
        driver = self.driver
        state = driver.deployment_state(cfg.native_lib_filename)
        logger.info("device %s", state.device_id)

        plan = self._plan(
            prepared, installed_fingerprint=state.installed_fingerprint, force=options.force
        )
        logger.info("build plan: %s", plan.describe())

        if plan.compile.run:
            self._compile(prepared.compile_fp)
        if plan.package.run:
            self._package(prepared)
        if plan.install.run:
            self.cancel.raise_if_cancelled("install")
            driver.install(cfg.apk_path, prepared.package_fp.digest, force=True)

        self.cancel.raise_if_cancelled("push")
        deployed = driver.push_native_library(cfg.native_lib_path, force=options.force)

        self.cancel.raise_if_cancelled("launch")
        with LogcatStream(driver.controller, nocapture=options.nocapture, printer=self._printer):
            payload = driver.launch(deployed, options.test_filter)
        return RunOutcome(payload=payload, plan=plan)

    def _run_host(self, options: TestOptions) -> RunOutcome:
        self.cancel.raise_if_cancelled("compile")
        build_host_library(self.config.project_dir, timeout_s=self.config.timeouts.tool_s)
        if options.nocapture:
            redirect_native_output()
        payload = TestRunner().run(
            load_library, self.config.host_lib_path, options.test_filter, self.cancel
        )
        return RunOutcome(payload=payload)

