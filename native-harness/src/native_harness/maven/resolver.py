"""Transitive Maven dependency resolution with nearest-wins conflicts.

The graph is walked breadth-first from the declared roots (depth 0) in
declaration order. The first occurrence of a `group:artifact` wins, which is
the shallowest one because every node of depth d is visited before any node
of depth d+1; ties at the same depth go to the first one visited.

Each depth level is fetched concurrently (archives, POMs and version
metadata). A failing coordinate only stops its own branch; all failures are
reported together once the walk has finished.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml

from native_harness.errors import HarnessError, ResolutionError
from native_harness.hashing import stable_file_sha256
from native_harness.maven.cache import ArtifactCache, CacheEntry
from native_harness.maven.coordinates import (
    Coordinate,
    DependencyNode,
    ResolvedDependency,
    highest_compatible,
)
from native_harness.maven.pom import parse_metadata_versions, parse_pom_dependencies

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "native-harness.lock"
LOCK_FORMAT_VERSION = "1"


@dataclass(frozen=True)
class _Pending:
    coordinate: Coordinate
    parent: Optional[Coordinate]
    requested: str


@dataclass
class _Visit:
    pending: _Pending
    entry: Optional[CacheEntry] = None
    children: List[_Pending] = field(default_factory=list)
    error: Optional[str] = None


class DependencyResolver:
    def __init__(
        self,
        cache: ArtifactCache,
        *,
        max_workers: int = 4,
        upgrade_transitive: bool = True,
        lock_path: Path | None = None,
    ) -> None:
        self._cache = cache
        self._max_workers = max(1, int(max_workers))
        self._upgrade_transitive = bool(upgrade_transitive)
        self._lock_path = Path(lock_path) if lock_path is not None else None

    # ------------------------------------------------------------------ walk

    def _upgrade(self, child: Coordinate) -> Coordinate:
        if not self._upgrade_transitive:
            return child
        try:
            metadata = self._cache.fetch_metadata(child)
        except HarnessError as e:
            logger.debug("no version metadata for %s: %s", child.key, e)
            return child
        if metadata is None:
            return child
        best = highest_compatible(child.version, parse_metadata_versions(metadata))
        if best != child.version:
            logger.info("upgrading %s from %s to %s", child.key, child.version, best)
        return child.with_version(best)

    def _visit(self, pending: _Pending, *, fetch_archive: bool, settled: set[str]) -> _Visit:
        visit = _Visit(pending=pending)
        coord = pending.coordinate
        try:
            if fetch_archive:
                visit.entry = self._cache.entry(coord)
            pom = self._cache.fetch_pom(coord)
            for child in parse_pom_dependencies(pom, coord):
                # Keys already settled at a shallower depth will be skipped anyway.
                upgraded = child if child.key in settled else self._upgrade(child)
                visit.children.append(
                    _Pending(coordinate=upgraded, parent=coord, requested=str(child))
                )
        except HarnessError as e:
            visit.error = f"{coord}: {e}"
        except (OSError, ValueError) as e:
            logger.debug("unexpected failure resolving %s", coord, exc_info=True)
            visit.error = f"{coord}: {e}"
        return visit

    def _walk(
        self, roots: Sequence[Coordinate], *, fetch_archives: bool
    ) -> tuple[Dict[str, DependencyNode], Dict[str, ResolvedDependency]]:
        nodes: Dict[str, DependencyNode] = {}
        resolved: Dict[str, ResolvedDependency] = {}
        visited: set[Coordinate] = set()
        failures: List[str] = []

        level = [_Pending(coordinate=r, parent=None, requested=str(r)) for r in roots]
        depth = 0
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            while level:
                batch: List[_Pending] = []
                for pending in level:
                    coord = pending.coordinate
                    if pending.parent is not None and pending.parent.key in nodes:
                        parent_node = nodes[pending.parent.key]
                        if coord not in parent_node.children:
                            parent_node.children.append(coord)
                    if coord in visited:
                        continue
                    visited.add(coord)
                    if coord.key in nodes:
                        # Nearest (or first at equal depth) already won.
                        continue
                    nodes[coord.key] = DependencyNode(
                        coordinate=coord, depth=depth, parent=pending.parent
                    )
                    batch.append(pending)

                settled = set(nodes)
                futures = [
                    pool.submit(self._visit, p, fetch_archive=fetch_archives, settled=settled)
                    for p in batch
                ]
                next_level: List[_Pending] = []
                for future in futures:
                    visit = future.result()
                    if visit.error is not None:
                        logger.error("failed to resolve %s", visit.error)
                        failures.append(visit.error)
                        continue
                    coord = visit.pending.coordinate
                    if visit.entry is not None:
                        resolved[coord.key] = ResolvedDependency(
                            coordinate=coord,
                            path=visit.entry.path,
                            is_aar=visit.entry.is_aar,
                            depth=depth,
                            requested=visit.pending.requested,
                            parent=str(visit.pending.parent) if visit.pending.parent else None,
                        )
                    next_level.extend(visit.children)
                level = next_level
                depth += 1

        if failures:
            raise ResolutionError(
                f"dependency resolution failed for {len(failures)} artifact(s)",
                failures=failures,
            )
        return nodes, resolved

    # -------------------------------------------------------------- public API

    def resolve(
        self, roots: Sequence[Coordinate], *, update: bool = False
    ) -> List[ResolvedDependency]:
        """Resolve `roots` into a flat, conflict-free list in BFS order."""

        roots = list(roots)
        if not roots:
            return []

        if not update:
            lock = self.read_lock()
            if lock is not None:
                if lock_matches(lock, roots):
                    logger.info("using lock file %s", self._lock_path)
                    return self._resolve_from_lock(lock)
                logger.info("lock file is stale, re-resolving dependencies")

        logger.info("resolving %d declared dependencies", len(roots))
        _, resolved = self._walk(roots, fetch_archives=True)
        artifacts = list(resolved.values())
        self.write_lock(artifacts)
        return artifacts

    def resolve_tree(self, roots: Sequence[Coordinate]) -> List[DependencyNode]:
        """Walk the graph without downloading archives (POMs only)."""

        nodes, _ = self._walk(list(roots), fetch_archives=False)
        return sorted(
            nodes.values(),
            key=lambda n: (n.depth, n.coordinate.group, n.coordinate.artifact),
        )

    # -------------------------------------------------------------- lock file

    def read_lock(self) -> Optional[dict]:
        if self._lock_path is None or not self._lock_path.exists():
            return None
        try:
            data = yaml.safe_load(self._lock_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ResolutionError(f"failed to parse lock file {self._lock_path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("artifacts"), list):
            raise ResolutionError(f"lock file must contain artifacts[]: {self._lock_path}")
        return data

    def write_lock(self, artifacts: Sequence[ResolvedDependency]) -> None:
        if self._lock_path is None:
            return
        lock = {
            "version": LOCK_FORMAT_VERSION,
            "artifacts": [
                {
                    "requested": a.requested or str(a.coordinate),
                    "resolved": str(a.coordinate),
                    "artifact_type": a.artifact_type,
                    "sha256": stable_file_sha256(a.path),
                    "transitive": a.is_transitive,
                    "depth": a.depth,
                    "parent": a.parent,
                }
                for a in artifacts
            ],
            "metadata": {
                "generated_at": datetime.now(timezone.utc).isoformat(),
                "repositories": self._cache.repositories,
            },
        }
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock_path.write_text(yaml.safe_dump(lock, sort_keys=False), encoding="utf-8")
        logger.info("lock file written: %s", self._lock_path)

    def _resolve_from_lock(self, lock: dict) -> List[ResolvedDependency]:
        artifacts: List[ResolvedDependency] = []
        for item in lock["artifacts"]:
            coord = Coordinate.parse(str(item.get("resolved") or ""))
            entry = self._cache.entry(coord)
            expected = item.get("sha256")
            if expected:
                actual = stable_file_sha256(entry.path)
                if actual != expected:
                    raise ResolutionError(
                        f"sha256 mismatch for {coord}: expected {expected}, got {actual}"
                    )
            artifacts.append(
                ResolvedDependency(
                    coordinate=coord,
                    path=entry.path,
                    is_aar=entry.is_aar,
                    depth=int(item.get("depth") or (1 if item.get("transitive") else 0)),
                    requested=item.get("requested"),
                    parent=item.get("parent"),
                )
            )
        return artifacts


def lock_matches(lock: dict, roots: Sequence[Coordinate]) -> bool:
    """A lock is reusable when its direct dependencies are exactly the declared ones."""

    declared = {str(r) for r in roots}
    locked = set()
    for item in lock.get("artifacts") or []:
        if isinstance(item, dict) and not item.get("transitive"):
            locked.add(str(item.get("requested") or ""))
    return declared == locked


def render_tree(nodes: Sequence[DependencyNode]) -> str:
    by_key = {n.coordinate.key: n for n in nodes}
    lines: List[str] = []

    def _emit(node: DependencyNode, prefix: str, is_last: bool, seen: set[str]) -> None:
        lines.append(f"{prefix}{'└── ' if is_last else '├── '}{node.coordinate}")
        child_prefix = prefix + ("    " if is_last else "│   ")
        children = [
            by_key[c.key]
            for c in node.children
            if c.key in by_key and by_key[c.key].parent == node.coordinate
            and c.key not in seen
        ]
        for i, child in enumerate(children):
            _emit(child, child_prefix, i == len(children) - 1, seen | {child.coordinate.key})

    roots = [n for n in nodes if n.depth == 0]
    for i, root in enumerate(roots):
        _emit(root, "", i == len(roots) - 1, {root.coordinate.key})
    return "\n".join(lines)
