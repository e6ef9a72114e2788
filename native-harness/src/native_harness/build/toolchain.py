"""External build tools: cargo-ndk, javac, d8, aapt2, zipalign, apksigner.

The tools are invoked as subprocesses with known input/output contracts; a
non-zero exit becomes a `BuildError` carrying the captured output and an
expired timeout becomes a `StageTimeoutError` naming the stage.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from native_harness.errors import BuildError, StageTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_S = 600.0


@dataclass(frozen=True)
class ToolResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int


def run_tool(
    cmd: Sequence[str | Path],
    *,
    stage: str,
    timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> ToolResult:
    args = [str(c) for c in cmd]
    logger.debug("[%s] %s", stage, " ".join(args))
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=float(timeout_s),
            env={**os.environ, **env} if env else None,
            cwd=str(cwd) if cwd is not None else None,
        )
    except subprocess.TimeoutExpired as e:
        raise StageTimeoutError(stage, float(timeout_s)) from e
    except FileNotFoundError as e:
        raise BuildError(f"{stage}: tool not found: {args[0]}", stage=stage) from e

    result = ToolResult(
        args=args, stdout=proc.stdout or "", stderr=proc.stderr or "", returncode=proc.returncode
    )
    if result.returncode != 0:
        raise BuildError(
            f"{stage} failed (rc={result.returncode}): {' '.join(args)}",
            stage=stage,
            stdout=result.stdout,
            stderr=result.stderr,
            returncode=result.returncode,
        )
    return result


def _version_key(name: str) -> tuple[int, ...]:
    parts = []
    for p in name.split("."):
        try:
            parts.append(int(p))
        except ValueError:
            parts.append(-1)
    return tuple(parts)


@dataclass(frozen=True)
class AndroidSdk:
    sdk_path: Path
    build_tools_version: str

    @classmethod
    def find(cls, env: Mapping[str, str] | None = None) -> "AndroidSdk":
        env = os.environ if env is None else env
        candidates = [env.get("ANDROID_SDK_ROOT"), env.get("ANDROID_HOME")]
        home = Path.home()
        candidates += [str(home / "Library" / "Android" / "sdk"), str(home / "Android" / "Sdk")]

        sdk_path: Optional[Path] = None
        for raw in candidates:
            if raw and Path(raw).is_dir():
                sdk_path = Path(raw)
                break
        if sdk_path is None:
            raise BuildError(
                "Android SDK not found. Set ANDROID_SDK_ROOT or ANDROID_HOME", stage="sdk"
            )

        build_tools = sdk_path / "build-tools"
        versions = sorted(
            (p.name for p in build_tools.iterdir() if p.is_dir() and p.name[:1].isdigit())
            if build_tools.is_dir()
            else [],
            key=_version_key,
        )
        if not versions:
            raise BuildError(f"Android SDK build-tools not found under {sdk_path}", stage="sdk")
        return cls(sdk_path=sdk_path, build_tools_version=versions[-1])

    def tool_path(self, tool: str) -> Path:
        return self.sdk_path / "build-tools" / self.build_tools_version / tool

    def platform_jar(self, api_level: int) -> Path:
        jar = self.sdk_path / "platforms" / f"android-{int(api_level)}" / "android.jar"
        if not jar.exists():
            raise BuildError(f"android.jar not found for API level {api_level}: {jar}", stage="sdk")
        return jar

    @property
    def adb_path(self) -> Path:
        return self.sdk_path / "platform-tools" / "adb"


class Toolchain:
    """The concrete tool invocations used by the compile and package stages."""

    def __init__(self, sdk: AndroidSdk, *, timeout_s: float = DEFAULT_TOOL_TIMEOUT_S) -> None:
        self.sdk = sdk
        self.timeout_s = float(timeout_s)

    def build_native_library(self, project_dir: Path, *, abi: str) -> None:
        run_tool(
            ["cargo", "ndk", "-t", abi, "build", "--release"],
            stage="compile",
            timeout_s=self.timeout_s,
            env={"RUSTFLAGS": "--cfg native_harness"},
            cwd=project_dir,
        )

    def javac(
        self,
        sources: Sequence[Path],
        *,
        out_dir: Path,
        api_level: int,
        classpath: Sequence[Path] = (),
    ) -> None:
        out_dir.mkdir(parents=True, exist_ok=True)
        cmd: list[str | Path] = [
            "javac",
            "-source",
            "8",
            "-target",
            "8",
            "-bootclasspath",
            self.sdk.platform_jar(api_level),
        ]
        if classpath:
            cmd += ["-classpath", os.pathsep.join(str(p) for p in classpath)]
        cmd += ["-d", out_dir, *sources]
        run_tool(cmd, stage="package:javac", timeout_s=self.timeout_s)

    def d8(self, inputs: Sequence[Path], *, out_dir: Path, api_level: int, min_api: int) -> Path:
        out_dir.mkdir(parents=True, exist_ok=True)
        cmd: list[str | Path] = [
            self.sdk.tool_path("d8"),
            "--release",
            "--min-api",
            str(int(min_api)),
            "--lib",
            self.sdk.platform_jar(api_level),
            "--output",
            out_dir,
            *inputs,
        ]
        run_tool(cmd, stage="package:d8", timeout_s=self.timeout_s)
        dex = out_dir / "classes.dex"
        if not dex.exists():
            raise BuildError(f"d8 did not produce {dex}", stage="package:d8")
        return dex

    def aapt2_compile(self, res_dir: Path, *, out_dir: Path) -> List[Path]:
        """Compile one resource directory; returns the `.flat` files to link."""

        out_dir.mkdir(parents=True, exist_ok=True)
        out_zip = out_dir / "res.zip"
        run_tool(
            [self.sdk.tool_path("aapt2"), "compile", "--dir", res_dir, "-o", out_zip],
            stage="package:aapt2-compile",
            timeout_s=self.timeout_s,
        )
        flats: List[Path] = []
        try:
            with zipfile.ZipFile(out_zip) as zf:
                for info in zf.infolist():
                    name = Path(info.filename).name
                    if info.is_dir() or not name.endswith(".flat"):
                        continue
                    target = out_dir / name
                    target.write_bytes(zf.read(info))
                    flats.append(target)
        except (OSError, zipfile.BadZipFile) as e:
            raise BuildError(f"cannot read compiled resources {out_zip}: {e}") from e
        return flats

    def aapt2_link(
        self,
        *,
        manifest: Path,
        out_apk: Path,
        api_level: int,
        resources: Sequence[Path] = (),
        extra_packages: Sequence[str] = (),
        java_dir: Optional[Path] = None,
    ) -> None:
        cmd: List[str | Path] = [
            self.sdk.tool_path("aapt2"),
            "link",
            "-I",
            self.sdk.platform_jar(api_level),
            "--manifest",
            manifest,
            "-o",
            out_apk,
            "--auto-add-overlay",
        ]
        if java_dir is not None:
            java_dir.mkdir(parents=True, exist_ok=True)
            cmd += ["--java", java_dir]
        if extra_packages:
            cmd += ["--extra-packages", ":".join(extra_packages)]
        for flat in resources:
            cmd += ["-R", flat]
        run_tool(cmd, stage="package:aapt2", timeout_s=self.timeout_s)

    def zipalign(self, src: Path, dst: Path) -> None:
        run_tool(
            [self.sdk.tool_path("zipalign"), "-f", "-p", "4", src, dst],
            stage="package:zipalign",
            timeout_s=self.timeout_s,
        )

    def ensure_debug_keystore(self, keystore: Path) -> Path:
        if keystore.exists():
            return keystore
        keystore.parent.mkdir(parents=True, exist_ok=True)
        keytool = shutil.which("keytool") or "keytool"
        run_tool(
            [
                keytool,
                "-genkey",
                "-v",
                "-keystore",
                keystore,
                "-storepass",
                "android",
                "-alias",
                "androiddebugkey",
                "-keypass",
                "android",
                "-keyalg",
                "RSA",
                "-keysize",
                "2048",
                "-validity",
                "10000",
                "-dname",
                "CN=Android Debug,O=Android,C=US",
            ],
            stage="package:keytool",
            timeout_s=self.timeout_s,
        )
        return keystore

    def apksigner(self, src: Path, dst: Path, *, keystore: Path) -> None:
        run_tool(
            [
                self.sdk.tool_path("apksigner"),
                "sign",
                "--ks",
                keystore,
                "--ks-pass",
                "pass:android",
                "--ks-key-alias",
                "androiddebugkey",
                "--out",
                dst,
                src,
            ],
            stage="package:apksigner",
            timeout_s=self.timeout_s,
        )


def build_host_library(project_dir: Path, *, timeout_s: float = DEFAULT_TOOL_TIMEOUT_S) -> None:
    """Build the test library for the machine running the harness."""

    run_tool(
        ["cargo", "build", "--release", "--lib"],
        stage="compile",
        timeout_s=timeout_s,
        env={"RUSTFLAGS": "--cfg native_harness"},
        cwd=project_dir,
    )
