"""Device access over adb.

`AndroidController` is a thin, auditable adb wrapper. `DeviceDriver` builds
the deployment operations on top of it and is the only component that
mutates device contents. Deployment state is always queried live from the
device; nothing about it is cached locally.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from native_harness.config import HOST_PACKAGE, INSTRUMENTATION_CLASS, Timeouts
from native_harness.errors import DeviceError, DeviceTimeoutError
from native_harness.hashing import stable_file_sha256
from native_harness.protocol.manifest import RunPayload, parse_instrumentation_output

logger = logging.getLogger(__name__)

STAGING_DIR = "/data/local/tmp"
LOG_TAG = "TestRunner"

_VERSION_NAME_RE = re.compile(r"^\s*versionName=(\S*)", re.MULTILINE)
_SHA256_RE = re.compile(r"^([0-9a-f]{64})\b")
_THREADTIME_RE = re.compile(r"^\S+\s+\S+\s+\d+\s+\d+\s+([VDIWEF])\s+(.+?)\s*: (.*)$")


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


class AndroidController:
    """Thin wrapper around adb; every failure surfaces as a `DeviceError`."""

    def __init__(
        self,
        *,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        timeout_s: float = 120.0,
    ) -> None:
        self._adb_path = adb_path
        self._serial = serial
        self._timeout_s = timeout_s

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self._serial:
            cmd += ["-s", self._serial]
        return cmd

    def adb(
        self,
        *args: str,
        timeout_s: float | None = None,
        check: bool = True,
        stage: str = "device",
    ) -> AdbResult:
        cmd = self._base_cmd() + list(args)
        timeout = self._timeout_s if timeout_s is None else float(timeout_s)
        logger.debug("%s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise DeviceTimeoutError(stage, timeout) from e
        except FileNotFoundError as e:
            raise DeviceError(f"adb not found: {self._adb_path}") from e
        result = AdbResult(
            args=cmd,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            returncode=proc.returncode,
        )
        if check and not result.ok():
            raise DeviceError(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def adb_shell(
        self,
        command: str,
        *,
        timeout_s: float | None = None,
        check: bool = True,
        stage: str = "device",
    ) -> AdbResult:
        return self.adb("shell", command, timeout_s=timeout_s, check=check, stage=stage)

    def popen(self, *args: str) -> subprocess.Popen:
        cmd = self._base_cmd() + list(args)
        try:
            return subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            raise DeviceError(f"adb not found: {self._adb_path}") from e

    def push_file(
        self,
        src: str | Path,
        dst: str,
        *,
        timeout_s: float | None = None,
        check: bool = True,
        stage: str = "push",
    ) -> AdbResult:
        return self.adb(
            "push", str(Path(src)), str(dst), timeout_s=timeout_s, check=check, stage=stage
        )

    def run_as(
        self,
        *,
        package: str,
        command: str,
        timeout_s: float | None = None,
        check: bool = True,
        stage: str = "device",
    ) -> AdbResult:
        cmd = " ".join(shlex.quote(p) for p in ("run-as", package, "sh", "-c", command))
        return self.adb_shell(cmd, timeout_s=timeout_s, check=check, stage=stage)


@dataclass(frozen=True)
class DeploymentState:
    device_id: str
    installed_fingerprint: Optional[str]
    native_lib_fingerprint: Optional[str]

    @property
    def installed(self) -> bool:
        return self.installed_fingerprint is not None


class DeviceDriver:
    def __init__(
        self,
        controller: AndroidController,
        *,
        package: str = HOST_PACKAGE,
        timeouts: Timeouts = Timeouts(),
    ) -> None:
        self.controller = controller
        self.package = package
        self.timeouts = timeouts

    @property
    def files_dir(self) -> str:
        return f"/data/data/{self.package}/files"

    def device_id(self) -> str:
        res = self.controller.adb("get-serialno", timeout_s=self.timeouts.device_s, check=False)
        serial = res.stdout.strip()
        if not res.ok() or not serial or serial == "unknown":
            detail = (res.stderr or res.stdout).strip()
            raise DeviceError(f"no device available{f': {detail}' if detail else ''}")
        return serial

    def is_installed(self) -> bool:
        res = self.controller.adb_shell(
            f"pm list packages {shlex.quote(self.package)}", timeout_s=self.timeouts.device_s
        )
        return f"package:{self.package}" in {line.strip() for line in res.stdout.splitlines()}

    def installed_fingerprint(self) -> Optional[str]:
        """versionName of the installed host package, which carries its fingerprint."""

        if not self.is_installed():
            return None
        res = self.controller.adb_shell(
            f"dumpsys package {shlex.quote(self.package)}", timeout_s=self.timeouts.device_s
        )
        m = _VERSION_NAME_RE.search(res.stdout)
        return m.group(1) if m and m.group(1) else None

    def native_lib_fingerprint(self, filename: str) -> Optional[str]:
        res = self.controller.run_as(
            package=self.package,
            command=f"sha256sum files/{shlex.quote(filename)}",
            timeout_s=self.timeouts.device_s,
            check=False,
        )
        if not res.ok():
            return None
        m = _SHA256_RE.match(res.stdout.strip())
        return m.group(1) if m else None

    def deployment_state(self, lib_filename: str) -> DeploymentState:
        device_id = self.device_id()
        installed = self.installed_fingerprint()
        lib_fp = self.native_lib_fingerprint(lib_filename) if installed is not None else None
        return DeploymentState(
            device_id=device_id, installed_fingerprint=installed, native_lib_fingerprint=lib_fp
        )

    def install(self, bundle: Path, fingerprint: str, *, force: bool = False) -> bool:
        """Install `bundle` unless the device already reports `fingerprint`.

        Returns True when an install was performed.
        """

        if not force and self.installed_fingerprint() == fingerprint:
            logger.info("host app already installed at %s, skipping install", fingerprint[:16])
            return False
        if not bundle.exists():
            raise DeviceError(f"bundle not found: {bundle}")
        logger.info("installing %s", bundle.name)
        res = self.controller.adb(
            "install", "-r", "-t", str(bundle), timeout_s=self.timeouts.device_s, stage="install"
        )
        if "Failure" in res.stdout or "Failure" in res.stderr:
            raise DeviceError(f"install rejected: {(res.stdout + res.stderr).strip()}")
        return True

    def push_native_library(self, path: Path, *, force: bool = False) -> str:
        """Copy the test library into the host app's private files directory.

        The push is skipped when the on-device copy has the same SHA-256.
        """

        if not path.exists():
            raise DeviceError(f"native library not found: {path}")
        name = path.name
        deployed = f"{self.files_dir}/{name}"
        local_fp = stable_file_sha256(path)
        if not force and self.native_lib_fingerprint(name) == local_fp:
            logger.info("native library unchanged on device, skipping push")
            return deployed

        staged = f"{STAGING_DIR}/{name}"
        logger.info("pushing %s", name)
        self.controller.push_file(path, staged, timeout_s=self.timeouts.device_s)
        try:
            self.controller.run_as(
                package=self.package,
                command=(
                    f"mkdir -p files && cp {shlex.quote(staged)} files/{shlex.quote(name)} "
                    f"&& chmod 700 files/{shlex.quote(name)}"
                ),
                timeout_s=self.timeouts.device_s,
                stage="push",
            )
        finally:
            self.controller.adb_shell(
                f"rm -f {shlex.quote(staged)}", timeout_s=self.timeouts.device_s, check=False
            )
        return deployed

    def launch(
        self, lib_path: str, test_filter: Optional[str] = None, *, timeout_s: float | None = None
    ) -> RunPayload:
        parts = ["am", "instrument", "-w", "-r", "-e", "lib_path", lib_path]
        if test_filter:
            parts += ["-e", "test_filter", test_filter]
        parts.append(f"{self.package}/.{INSTRUMENTATION_CLASS}")
        res = self.controller.adb_shell(
            " ".join(shlex.quote(p) for p in parts),
            timeout_s=self.timeouts.launch_s if timeout_s is None else timeout_s,
            check=False,
            stage="launch",
        )
        if not res.ok() and "INSTRUMENTATION_" not in res.stdout:
            raise DeviceError(
                f"launch failed (rc={res.returncode}): {(res.stderr or res.stdout).strip()}"
            )
        return parse_instrumentation_output(res.stdout)


def format_logcat_line(line: str, *, nocapture: bool) -> Optional[str]:
    """Render one `threadtime` logcat line, or None to drop it.

    Info lines are the runner's progress and result lines. Other levels are
    captured test output, shown only with `nocapture`.
    """

    if line.startswith("--------- beginning of"):
        return None
    m = _THREADTIME_RE.match(line.rstrip("\r\n"))
    if not m:
        return None
    level, _tag, message = m.groups()
    if level == "I":
        return message
    if not nocapture:
        return None
    return f"{'err' if level in ('E', 'F') else 'out'}: {message}"


class LogcatStream:
    """Tails the runner's logcat tag on a background thread while tests run."""

    def __init__(
        self,
        controller: AndroidController,
        *,
        nocapture: bool = False,
        printer: Callable[[str], None] = print,
    ) -> None:
        self._controller = controller
        self._nocapture = nocapture
        self._printer = printer
        self._proc: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "LogcatStream":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def start(self) -> None:
        self._controller.adb("logcat", "-c", check=False)
        spec = f"{LOG_TAG}:*" if self._nocapture else f"{LOG_TAG}:I"
        self._proc = self._controller.popen("logcat", "-v", "threadtime", "-s", spec)
        self._thread = threading.Thread(target=self._pump, name="logcat", daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        for line in proc.stdout:
            rendered = format_logcat_line(line, nocapture=self._nocapture)
            if rendered is not None:
                self._printer(rendered)

    def stop(self) -> None:
        if self._proc is not None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._proc = None
        self._thread = None
