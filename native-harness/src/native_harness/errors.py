"""Error taxonomy shared across stages.

Only individual test failures are absorbed by the run; every exception defined
here halts the remaining stages when it escapes a stage.
"""

from __future__ import annotations

from typing import Iterable, Optional


class HarnessError(RuntimeError):
    """Base class for run-level failures."""


class ConfigError(HarnessError):
    pass


class ResolutionError(HarnessError):
    """Dependency resolution failed before any device interaction."""

    def __init__(self, message: str, *, failures: Iterable[str] = ()) -> None:
        self.failures = list(failures)
        if self.failures:
            message = message + "\n" + "\n".join(f"- {f}" for f in self.failures)
        super().__init__(message)


class RepositoryError(ResolutionError):
    """A repository answered with something other than the artifact or a 404."""


class ClassMergeConflict(ResolutionError):
    def __init__(self, class_name: str, first: str, second: str) -> None:
        self.class_name = class_name
        self.first = first
        self.second = second
        super().__init__(
            f"class {class_name} is provided with different bytes by {first} and {second}"
        )


class BuildError(HarnessError):
    """An external build tool exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        stdout: str = "",
        stderr: str = "",
        returncode: Optional[int] = None,
    ) -> None:
        self.stage = stage
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        details = []
        if stdout.strip():
            details.append(f"stdout: {stdout.strip()}")
        if stderr.strip():
            details.append(f"stderr: {stderr.strip()}")
        super().__init__("\n".join([message, *details]))


class DeviceError(HarnessError):
    """Device unreachable, install rejected, push failed."""


class StageTimeoutError(HarnessError):
    def __init__(self, stage: str, timeout_s: float) -> None:
        self.stage = stage
        self.timeout_s = timeout_s
        super().__init__(f"stage '{stage}' timed out after {timeout_s:g}s")


class DeviceTimeoutError(DeviceError, StageTimeoutError):
    """A device command (install, push, launch) exceeded its timeout."""


class TestBoundaryError(HarnessError):
    """The native library could not be loaded or enumerated."""

    __test__ = False


class RunCancelled(HarnessError):
    pass
