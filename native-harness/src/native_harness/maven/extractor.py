"""Turn resolved archives into what the host package consumes.

A jar is already compiled code and passes through untouched. An aar bundles
`classes.jar`, an `AndroidManifest.xml` (permissions, package name),
optionally Android resources under `res/` and `jni/<abi>/*.so` native
payloads; those are unpacked next to the cached archive. Native payloads are
namespaced by the contributing artifact so two aars shipping the same file
name never collide.
"""

from __future__ import annotations

import logging
import shutil
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from native_harness.errors import ResolutionError
from native_harness.maven.coordinates import ResolvedDependency

logger = logging.getLogger(__name__)

ANDROID_NS = "http://schemas.android.com/apk/res/android"
EXTRACTED_DIR = "extracted"


@dataclass(frozen=True)
class NativeLib:
    abi: str
    name: str
    path: Path
    source: str


@dataclass
class ExtractedArtifact:
    dependency: ResolvedDependency
    classes_jar: Path
    permissions: List[str] = field(default_factory=list)
    native_libs: List[NativeLib] = field(default_factory=list)
    package_name: Optional[str] = None
    res_dir: Optional[Path] = None

    @property
    def source(self) -> str:
        return str(self.dependency.coordinate)


def parse_manifest_permissions(manifest_xml: bytes | str) -> tuple[List[str], Optional[str]]:
    """Return (`uses-permission` names in document order, manifest package)."""

    try:
        root = ET.fromstring(manifest_xml)
    except ET.ParseError:
        # Binary (compiled) manifests cannot be read without aapt.
        logger.debug("skipping non-text AndroidManifest.xml")
        return [], None
    permissions: List[str] = []
    for elem in root.iter():
        tag = elem.tag.rsplit("}", 1)[-1]
        if tag not in {"uses-permission", "uses-permission-sdk-23"}:
            continue
        name = elem.get(f"{{{ANDROID_NS}}}name") or elem.get("name")
        if name and name not in permissions:
            permissions.append(name)
    return permissions, root.get("package")


def _write_empty_jar(path: Path) -> None:
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
        zf.writestr("META-INF/MANIFEST.MF", "Manifest-Version: 1.0\n")


def _extract_resources(zf: zipfile.ZipFile, res_dir: Path) -> int:
    """Unpack `res/**` entries into `res_dir`, replacing any previous copy."""

    if res_dir.exists():
        shutil.rmtree(res_dir)
    count = 0
    for info in zf.infolist():
        parts = info.filename.split("/")
        if info.is_dir() or len(parts) < 3 or parts[0] != "res" or ".." in parts:
            continue
        target = res_dir.joinpath(*parts[1:])
        target.parent.mkdir(parents=True, exist_ok=True)
        with zf.open(info) as src, target.open("wb") as dst:
            shutil.copyfileobj(src, dst)
        count += 1
    return count


def extract_artifact(dependency: ResolvedDependency) -> ExtractedArtifact:
    if not dependency.is_aar:
        return ExtractedArtifact(dependency=dependency, classes_jar=dependency.path)

    out_dir = dependency.path.parent / EXTRACTED_DIR
    classes_jar = out_dir / "classes.jar"
    source = str(dependency.coordinate)
    result = ExtractedArtifact(dependency=dependency, classes_jar=classes_jar)

    try:
        zf = zipfile.ZipFile(dependency.path)
    except (OSError, zipfile.BadZipFile) as e:
        raise ResolutionError(f"failed to open aar {dependency.path}: {e}") from e

    with zf:
        out_dir.mkdir(parents=True, exist_ok=True)
        names = zf.namelist()
        if "classes.jar" in names:
            with zf.open("classes.jar") as src, classes_jar.open("wb") as dst:
                shutil.copyfileobj(src, dst)
        else:
            logger.info("no classes.jar in %s, using an empty jar", dependency.path.name)
            _write_empty_jar(classes_jar)

        if "AndroidManifest.xml" in names:
            perms, package_name = parse_manifest_permissions(zf.read("AndroidManifest.xml"))
            result.permissions = perms
            result.package_name = package_name

        res_files = _extract_resources(zf, out_dir / "res")
        if res_files:
            logger.debug("extracted %d resource files from %s", res_files, dependency.path.name)
            result.res_dir = out_dir / "res"

        for name in names:
            parts = name.split("/")
            if len(parts) != 3 or parts[0] != "jni" or not parts[2].endswith(".so"):
                continue
            abi, lib_name = parts[1], parts[2]
            lib_path = out_dir / "jni" / abi / dependency.coordinate.artifact / lib_name
            lib_path.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(name) as src, lib_path.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            logger.debug("extracted native library %s -> %s", name, lib_path)
            result.native_libs.append(
                NativeLib(abi=abi, name=lib_name, path=lib_path, source=source)
            )

    return result


def extract_all(dependencies: Sequence[ResolvedDependency]) -> List[ExtractedArtifact]:
    return [extract_artifact(d) for d in dependencies]


def union_permissions(declared: Sequence[str], extracted: Sequence[ExtractedArtifact]) -> List[str]:
    """Declared permissions first, then dependency-contributed ones, without duplicates."""

    out: List[str] = []
    for perm in [*declared, *(p for a in extracted for p in a.permissions)]:
        if perm not in out:
            out.append(perm)
    return out
