"""POM and maven-metadata.xml parsing.

Maven descriptors are namespaced (`http://maven.apache.org/POM/4.0.0`) in
most repositories but not all, so element lookups strip the namespace.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Iterator, List, Optional

from native_harness.errors import ResolutionError
from native_harness.maven.coordinates import Coordinate, normalize_version, substitute_properties

logger = logging.getLogger(__name__)

_INCLUDED_SCOPES = {"compile", "runtime"}


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _children(elem: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in elem:
        if _local(child.tag) == name:
            yield child


def _child_text(elem: ET.Element, name: str) -> Optional[str]:
    for child in _children(elem, name):
        text = (child.text or "").strip()
        return text or None
    return None


def _parse_xml(text: str | bytes, *, what: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as e:
        raise ResolutionError(f"failed to parse {what}: {e}") from e


def parse_pom_dependencies(pom_xml: str | bytes, owner: Coordinate) -> List[Coordinate]:
    """Return the compile/runtime dependencies declared by a POM, in order."""

    root = _parse_xml(pom_xml, what=f"POM for {owner}")
    deps: List[Coordinate] = []
    for block in _children(root, "dependencies"):
        for dep in _children(block, "dependency"):
            scope = _child_text(dep, "scope") or "compile"
            if scope not in _INCLUDED_SCOPES:
                continue
            if (_child_text(dep, "optional") or "").lower() == "true":
                continue

            group = _child_text(dep, "groupId")
            artifact = _child_text(dep, "artifactId")
            version = _child_text(dep, "version")
            if not group or not artifact or not version:
                # Versions managed by a parent BOM are not followed.
                logger.debug("skipping dependency without explicit version in %s", owner)
                continue

            version = normalize_version(substitute_properties(version, owner))
            if "${" in version:
                logger.debug(
                    "skipping dependency with unresolved property %s in %s", version, owner
                )
                continue
            deps.append(
                Coordinate(
                    group=substitute_properties(group, owner),
                    artifact=substitute_properties(artifact, owner),
                    version=version,
                )
            )
    return deps


def parse_metadata_versions(metadata_xml: str | bytes) -> List[str]:
    try:
        root = ET.fromstring(metadata_xml)
    except ET.ParseError:
        return []
    versions: List[str] = []
    for versioning in _children(root, "versioning"):
        for block in _children(versioning, "versions"):
            for v in _children(block, "version"):
                text = (v.text or "").strip()
                if text:
                    versions.append(text)
    return versions
