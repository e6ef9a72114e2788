"""Project configuration (`harness.yaml`).

Example::

    library: my_tests
    permissions:
      - android.permission.INTERNET
    dependencies:
      com.squareup.okhttp3:okhttp: "4.12.0"
      org.chromium.net:cronet-embedded: {version: "119.6045.31"}
"""

from __future__ import annotations

import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from jsonschema import Draft202012Validator

from native_harness.errors import ConfigError
from native_harness.maven.coordinates import Coordinate
from native_harness.maven.repository import DEFAULT_REPOSITORIES

CONFIG_FILE_NAMES = ("harness.yaml", "harness.yml", "harness.json")
SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "harness_config.schema.json"

HOST_PACKAGE = "com.nativeharness.host"
INSTRUMENTATION_CLASS = "HarnessInstrumentation"
APK_NAME = "native-harness-host"


@dataclass(frozen=True)
class Timeouts:
    network_s: float = 30.0
    tool_s: float = 600.0
    device_s: float = 120.0
    launch_s: float = 900.0


@dataclass(frozen=True)
class HarnessConfig:
    project_dir: Path
    library: str
    dependencies: Tuple[Coordinate, ...] = ()
    permissions: Tuple[str, ...] = ()
    target_sdk: int = 30
    min_sdk: int = 24
    abi: str = "arm64-v8a"
    rust_target: str = "aarch64-linux-android"
    repositories: Tuple[str, ...] = DEFAULT_REPOSITORIES
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".native-harness" / "maven")
    output_dir: Path = Path("target/native-harness")
    source_dirs: Tuple[str, ...] = ("src", "tests", "Cargo.toml")
    upgrade_transitive: bool = True
    max_download_workers: int = 4
    timeouts: Timeouts = Timeouts()
    adb_path: Optional[str] = None
    serial: Optional[str] = None

    @property
    def output_path(self) -> Path:
        if self.output_dir.is_absolute():
            return self.output_dir
        return self.project_dir / self.output_dir

    @property
    def apk_path(self) -> Path:
        return self.output_path / f"{APK_NAME}.apk"

    @property
    def native_lib_filename(self) -> str:
        return f"lib{self.library}.so"

    @property
    def native_lib_path(self) -> Path:
        return (
            self.project_dir / "target" / self.rust_target / "release" / self.native_lib_filename
        )

    @property
    def host_lib_path(self) -> Path:
        suffix = "dylib" if sys.platform == "darwin" else "so"
        return self.project_dir / "target" / "release" / f"lib{self.library}.{suffix}"

    @property
    def lock_path(self) -> Path:
        return self.project_dir / "native-harness.lock"


def load_yaml_or_json(path: Path) -> Dict[str, Any]:
    """Load a YAML/JSON file into a dict; the top-level must be an object."""
    if not path.exists():
        raise FileNotFoundError(path)

    if path.suffix.lower() in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    elif path.suffix.lower() == ".json":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    else:
        raise ValueError(f"Unsupported config file extension: {path}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level config must be an object: {path}")
    return data


def validate_config(data: Dict[str, Any], *, where: str) -> None:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join([str(p) for p in e.path])
            msgs.append(f"- {where}:{loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors)-20} more)")
        raise ConfigError("\n".join(msgs))


def parse_dependencies(raw: Dict[str, Any]) -> List[Coordinate]:
    """`group:artifact -> version` or `{version: ...}` entries, in declaration order."""

    coords: List[Coordinate] = []
    for key, value in (raw or {}).items():
        version = value.get("version") if isinstance(value, dict) else value
        coords.append(Coordinate.parse(f"{key}:{version}"))
    return coords


def library_name_from_cargo(project_dir: Path) -> Optional[str]:
    cargo = project_dir / "Cargo.toml"
    if not cargo.exists():
        return None
    try:
        data = tomllib.loads(cargo.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {cargo}: {e}") from e
    lib_name = (data.get("lib") or {}).get("name")
    if isinstance(lib_name, str) and lib_name:
        return lib_name
    package_name = (data.get("package") or {}).get("name")
    if isinstance(package_name, str) and package_name:
        return package_name.replace("-", "_")
    return None


def find_config_file(project_dir: Path) -> Optional[Path]:
    for name in CONFIG_FILE_NAMES:
        candidate = project_dir / name
        if candidate.exists():
            return candidate
    return None


def load_config(project_dir: Path, *, config_path: Path | None = None) -> HarnessConfig:
    project_dir = Path(project_dir).resolve()
    path = config_path or find_config_file(project_dir)
    data: Dict[str, Any] = {}
    if path is not None:
        data = load_yaml_or_json(path)
        validate_config(data, where=path.name)

    library = data.get("library") or library_name_from_cargo(project_dir)
    if not library:
        raise ConfigError(
            f"Could not determine the test library name: set `library` in "
            f"{CONFIG_FILE_NAMES[0]} or add a Cargo.toml to {project_dir}"
        )

    timeouts = Timeouts(**(data.get("timeouts") or {}))
    cache_dir = data.get("cache_dir") or os.environ.get("NATIVE_HARNESS_CACHE_DIR")

    kwargs: Dict[str, Any] = {
        "project_dir": project_dir,
        "library": str(library),
        "dependencies": tuple(parse_dependencies(data.get("dependencies") or {})),
        "permissions": tuple(data.get("permissions") or ()),
        "timeouts": timeouts,
        "adb_path": os.environ.get("NATIVE_HARNESS_ADB_PATH"),
        "serial": os.environ.get("NATIVE_HARNESS_SERIAL") or os.environ.get("ANDROID_SERIAL"),
    }
    for key in (
        "target_sdk",
        "min_sdk",
        "abi",
        "rust_target",
        "upgrade_transitive",
        "max_download_workers",
    ):
        if key in data:
            kwargs[key] = data[key]
    if "repositories" in data:
        kwargs["repositories"] = tuple(data["repositories"])
    if "source_dirs" in data:
        kwargs["source_dirs"] = tuple(data["source_dirs"])
    if cache_dir:
        kwargs["cache_dir"] = Path(cache_dir).expanduser()
    if data.get("output_dir"):
        kwargs["output_dir"] = Path(data["output_dir"])

    cfg = HarnessConfig(**kwargs)
    if cfg.min_sdk > cfg.target_sdk:
        raise ConfigError(f"min_sdk ({cfg.min_sdk}) must not exceed target_sdk ({cfg.target_sdk})")
    return cfg
