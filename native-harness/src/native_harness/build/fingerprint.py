"""Stage fingerprints and their persisted last-recorded values.

A fingerprint is a SHA-256 digest over the inputs of one stage. The compile
fingerprint feeds the package fingerprint, which is also what the device
reports for the installed APK, so an upstream change reaches every stage.
The package fingerprint also covers the host Java sources and the harness
version, so upgrading the harness rebuilds and reinstalls the host APK.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import native_harness
from native_harness import host
from native_harness.hashing import stable_sha256, tree_sha256
from native_harness.maven.coordinates import ResolvedDependency

logger = logging.getLogger(__name__)

STAGES = ("compile", "package")
FINGERPRINTS_FILE = "fingerprints.json"


@dataclass(frozen=True)
class BuildFingerprint:
    stage: str
    digest: str

    @classmethod
    def of(cls, stage: str, inputs: Any) -> "BuildFingerprint":
        return cls(stage=stage, digest=stable_sha256({"stage": stage, "inputs": inputs}))

    @property
    def short(self) -> str:
        return self.digest[:16]


def compute_compile_fingerprint(
    project_dir: Path, source_dirs: Sequence[str], *, rust_target: str, library: str
) -> BuildFingerprint:
    sources = {name: tree_sha256(project_dir / name) for name in sorted(source_dirs)}
    return BuildFingerprint.of(
        "compile", {"sources": sources, "rust_target": rust_target, "library": library}
    )


def compute_package_fingerprint(
    compile_fp: BuildFingerprint,
    *,
    dependencies: Sequence[ResolvedDependency],
    permissions: Sequence[str],
    target_sdk: int,
    min_sdk: int,
    abi: str,
) -> BuildFingerprint:
    return BuildFingerprint.of(
        "package",
        {
            "compile": compile_fp.digest,
            "dependencies": sorted(str(d.coordinate) for d in dependencies),
            "permissions": sorted(set(permissions)),
            "target_sdk": int(target_sdk),
            "min_sdk": int(min_sdk),
            "abi": abi,
            "host_sources": tree_sha256(host.JAVA_ROOT, suffixes=[".java"]),
            "harness_version": native_harness.__version__,
        },
    )


class FingerprintStore:
    """Last-recorded fingerprint per stage, kept under the output directory.

    The install stage is not stored here: the package fingerprint is written
    into the APK's versionName and read back from the device on every run.
    """

    def __init__(self, output_dir: Path) -> None:
        self.path = Path(output_dir) / FINGERPRINTS_FILE

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable fingerprint file %s", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    def recorded(self, stage: str) -> Optional[str]:
        return self._load().get(stage)

    def record(self, fingerprint: BuildFingerprint) -> None:
        data = self._load()
        data[fingerprint.stage] = fingerprint.digest
        self._save(data)
        logger.debug("recorded %s fingerprint %s", fingerprint.stage, fingerprint.short)

    def forget(self, *stages: str) -> None:
        data = self._load()
        for stage in stages or STAGES:
            data.pop(stage, None)
        self._save(data)
