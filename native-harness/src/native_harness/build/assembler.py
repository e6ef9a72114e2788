"""Host APK assembly.

The bundle combines the host instrumentation classes, every resolved
dependency's classes merged into a single dex, a manifest carrying the union
of declared and dependency-contributed permissions, the compiled resources
of every aar with the `R` classes they need, and dependency native libraries
for the target ABI.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from native_harness import host
from native_harness.build.toolchain import Toolchain
from native_harness.config import APK_NAME, HOST_PACKAGE, HarnessConfig
from native_harness.errors import ClassMergeConflict, ResolutionError
from native_harness.maven.extractor import ExtractedArtifact, NativeLib

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassSource:
    label: str
    jar: Path


@dataclass(frozen=True)
class MergeReport:
    jar: Path
    classes: int
    duplicates: int


def class_name(entry: str) -> str:
    return entry[: -len(".class")].replace("/", ".")


def merge_classes(sources: Sequence[ClassSource], out_jar: Path) -> MergeReport:
    """Merge every `.class` entry of `sources` into one jar.

    The same class with identical bytes from two sources is kept once; the
    same class with different bytes is a hard failure naming both sources.
    """

    seen: Dict[str, Tuple[str, str]] = {}
    duplicates = 0
    out_jar.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(out_jar, "w", compression=zipfile.ZIP_DEFLATED) as out:
        for source in sources:
            try:
                zf = zipfile.ZipFile(source.jar)
            except (OSError, zipfile.BadZipFile) as e:
                raise ResolutionError(f"cannot read classes of {source.label}: {e}") from e
            with zf:
                for info in zf.infolist():
                    if info.is_dir() or not info.filename.endswith(".class"):
                        continue
                    data = zf.read(info)
                    digest = hashlib.sha256(data).hexdigest()
                    previous = seen.get(info.filename)
                    if previous is not None:
                        if previous[1] != digest:
                            raise ClassMergeConflict(
                                class_name(info.filename), previous[0], source.label
                            )
                        duplicates += 1
                        continue
                    seen[info.filename] = (source.label, digest)
                    out.writestr(info.filename, data)
    if duplicates:
        logger.debug("merged %d classes (%d identical duplicates)", len(seen), duplicates)
    return MergeReport(jar=out_jar, classes=len(seen), duplicates=duplicates)


def select_native_libs(artifacts: Sequence[ExtractedArtifact], abi: str) -> Dict[str, NativeLib]:
    """APK entry (`lib/<abi>/<name>`) -> native library, for the target ABI only."""

    chosen: Dict[str, NativeLib] = {}
    for artifact in artifacts:
        for lib in artifact.native_libs:
            if lib.abi != abi:
                continue
            entry = f"lib/{abi}/{lib.name}"
            previous = chosen.get(entry)
            if previous is not None and previous.path.read_bytes() != lib.path.read_bytes():
                raise ResolutionError(
                    f"native library {lib.name} ({abi}) is provided with different bytes "
                    f"by {previous.source} and {lib.source}"
                )
            chosen.setdefault(entry, lib)
    return chosen


def resource_packages(artifacts: Sequence[ExtractedArtifact]) -> List[str]:
    """Packages whose `R` class must be generated alongside the host's."""

    packages: List[str] = []
    for artifact in artifacts:
        name = artifact.package_name
        if name and name != HOST_PACKAGE and name not in packages:
            packages.append(name)
    return packages


class PackageAssembler:
    def __init__(self, config: HarnessConfig, toolchain: Toolchain) -> None:
        self._config = config
        self._toolchain = toolchain

    @property
    def build_dir(self) -> Path:
        return self._config.output_path / "host-build"

    def _compile_resources(self, artifacts: Sequence[ExtractedArtifact]) -> List[Path]:
        flats: List[Path] = []
        for index, artifact in enumerate(artifacts):
            if artifact.res_dir is None:
                continue
            label = f"{index:03d}-{artifact.dependency.coordinate.artifact}"
            out_dir = self.build_dir / "res" / label
            compiled = self._toolchain.aapt2_compile(artifact.res_dir, out_dir=out_dir)
            logger.debug("compiled %d resources of %s", len(compiled), artifact.source)
            flats.extend(compiled)
        return flats

    def assemble(
        self,
        artifacts: Sequence[ExtractedArtifact],
        *,
        permissions: Sequence[str],
        version_name: str,
        keystore: Optional[Path] = None,
    ) -> Path:
        cfg = self._config
        build_dir = self.build_dir
        if build_dir.exists():
            shutil.rmtree(build_dir)
        build_dir.mkdir(parents=True)

        sources = host.write_java_sources(build_dir / "java")

        deps_jar: Optional[Path] = None
        if artifacts:
            report = merge_classes(
                [ClassSource(label=a.source, jar=a.classes_jar) for a in artifacts],
                build_dir / "dependencies.jar",
            )
            logger.info("merged %d dependency classes", report.classes)
            deps_jar = report.jar

        manifest = build_dir / "AndroidManifest.xml"
        manifest.write_text(
            host.render_manifest(
                permissions=permissions,
                target_sdk=cfg.target_sdk,
                min_sdk=cfg.min_sdk,
                version_name=version_name,
            ),
            encoding="utf-8",
        )

        flats = self._compile_resources(artifacts)
        gen_dir = build_dir / "gen"
        unsigned = build_dir / f"{APK_NAME}-unsigned.apk"
        self._toolchain.aapt2_link(
            manifest=manifest,
            out_apk=unsigned,
            api_level=cfg.target_sdk,
            resources=flats,
            extra_packages=resource_packages(artifacts),
            java_dir=gen_dir,
        )
        generated = sorted(gen_dir.rglob("*.java"))
        if generated:
            logger.debug("compiling %d generated R sources", len(generated))

        obj_dir = build_dir / "obj"
        self._toolchain.javac(
            [*sources, *generated],
            out_dir=obj_dir,
            api_level=cfg.target_sdk,
            classpath=[deps_jar] if deps_jar else (),
        )
        dex_inputs: List[Path] = sorted(obj_dir.rglob("*.class"))
        if deps_jar is not None:
            dex_inputs.append(deps_jar)
        dex = self._toolchain.d8(
            dex_inputs, out_dir=build_dir / "dex", api_level=cfg.target_sdk, min_api=cfg.min_sdk
        )

        native_libs = select_native_libs(artifacts, cfg.abi)
        with zipfile.ZipFile(unsigned, "a", compression=zipfile.ZIP_DEFLATED) as apk:
            apk.write(dex, "classes.dex")
            for entry, lib in sorted(native_libs.items()):
                # Stored so the loader can map them directly.
                apk.write(lib.path, entry, compress_type=zipfile.ZIP_STORED)

        aligned = build_dir / f"{APK_NAME}-aligned.apk"
        self._toolchain.zipalign(unsigned, aligned)

        ks = self._toolchain.ensure_debug_keystore(
            keystore or Path.home() / ".android" / "debug.keystore"
        )
        signed = build_dir / f"{APK_NAME}.apk"
        self._toolchain.apksigner(aligned, signed, keystore=ks)

        final = cfg.apk_path
        final.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(signed, final)
        logger.info("host APK created: %s", final)
        return final
