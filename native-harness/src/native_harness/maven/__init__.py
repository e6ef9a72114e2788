"""Maven dependency resolution for the host application."""

from __future__ import annotations

from native_harness.maven.cache import ArtifactCache, CacheEntry
from native_harness.maven.coordinates import Coordinate, DependencyNode, ResolvedDependency
from native_harness.maven.extractor import ExtractedArtifact, NativeLib, extract_all
from native_harness.maven.repository import DEFAULT_REPOSITORIES, RepositoryClient
from native_harness.maven.resolver import DependencyResolver, render_tree

__all__ = [
    "ArtifactCache",
    "CacheEntry",
    "Coordinate",
    "DEFAULT_REPOSITORIES",
    "DependencyNode",
    "DependencyResolver",
    "ExtractedArtifact",
    "NativeLib",
    "RepositoryClient",
    "ResolvedDependency",
    "extract_all",
    "render_tree",
]
