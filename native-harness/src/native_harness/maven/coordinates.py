from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from native_harness.errors import ResolutionError

_PROPERTY_ALIASES = {
    "groupId": ("${project.groupId}", "${project/groupId}", "${pom.groupId}"),
    "artifactId": ("${project.artifactId}", "${project/artifactId}", "${pom.artifactId}"),
    "version": ("${project.version}", "${project/version}", "${pom.version}"),
}

_SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


@dataclass(frozen=True, order=True)
class Coordinate:
    group: str
    artifact: str
    version: str

    @classmethod
    def parse(cls, raw: str) -> "Coordinate":
        parts = str(raw).strip().split(":")
        if len(parts) != 3 or not all(p.strip() for p in parts):
            raise ResolutionError(
                f"Invalid Maven coordinate {raw!r}. Expected format: groupId:artifactId:version"
            )
        group, artifact, version = (p.strip() for p in parts)
        return cls(group=group, artifact=artifact, version=version)

    @property
    def key(self) -> str:
        """Identity of the dependency regardless of version."""

        return f"{self.group}:{self.artifact}"

    def with_version(self, version: str) -> "Coordinate":
        return Coordinate(self.group, self.artifact, version)

    def repository_path(self, extension: str) -> str:
        return (
            f"{self.group.replace('.', '/')}/{self.artifact}/{self.version}/"
            f"{self.artifact}-{self.version}.{extension}"
        )

    def metadata_path(self) -> str:
        return f"{self.group.replace('.', '/')}/{self.artifact}/maven-metadata.xml"

    def __str__(self) -> str:
        return f"{self.group}:{self.artifact}:{self.version}"


@dataclass(frozen=True)
class ResolvedDependency:
    coordinate: Coordinate
    path: Path
    is_aar: bool
    depth: int = 0
    requested: Optional[str] = None
    parent: Optional[str] = None

    @property
    def key(self) -> str:
        return self.coordinate.key

    @property
    def artifact_type(self) -> str:
        return "aar" if self.is_aar else "jar"

    @property
    def is_transitive(self) -> bool:
        return self.depth > 0


@dataclass
class DependencyNode:
    coordinate: Coordinate
    depth: int
    parent: Optional[Coordinate] = None
    children: list[Coordinate] = field(default_factory=list)


@dataclass(frozen=True, order=True)
class SemVer:
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, raw: str) -> Optional["SemVer"]:
        m = _SEMVER_RE.match(str(raw).strip())
        if not m:
            return None
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    def is_compatible_with(self, requested: "SemVer") -> bool:
        # Same major, and >= minor.patch.
        return self.major == requested.major and (self.minor, self.patch) >= (
            requested.minor,
            requested.patch,
        )


def normalize_version(raw: str) -> str:
    """Reduce a Maven version range to its lower bound.

    `[1.0]` -> `1.0`, `[1.0,2.0)` -> `1.0`, plain versions are returned as-is.
    """

    v = str(raw).strip()
    if v.startswith(("[", "(")):
        inner = v.lstrip("[(")
        first = inner.split(",", 1)[0]
        return first.rstrip("])").strip()
    return v


def substitute_properties(value: str, owner: Coordinate) -> str:
    """Resolve `${project.*}` placeholders against the declaring POM's coordinate."""

    values = {"groupId": owner.group, "artifactId": owner.artifact, "version": owner.version}
    out = str(value)
    for attr, placeholders in _PROPERTY_ALIASES.items():
        for placeholder in placeholders:
            out = out.replace(placeholder, values[attr])
    return out


def highest_compatible(requested: str, available: list[str]) -> str:
    """Pick the highest available version compatible with `requested`.

    Non-semver requests are returned unchanged.
    """

    base = SemVer.parse(requested)
    if base is None:
        return requested
    best_raw, best = requested, base
    for raw in available:
        parsed = SemVer.parse(raw)
        if parsed is not None and parsed.is_compatible_with(base) and parsed > best:
            best_raw, best = raw, parsed
    return best_raw
