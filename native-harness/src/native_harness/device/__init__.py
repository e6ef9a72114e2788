from __future__ import annotations

from native_harness.device.controller import (
    AdbResult,
    AndroidController,
    DeploymentState,
    DeviceDriver,
    LogcatStream,
)

__all__ = ["AdbResult", "AndroidController", "DeploymentState", "DeviceDriver", "LogcatStream"]
