"""native-harness: run native test suites on an Android device.

The harness:
- resolves Maven dependencies for the host application
- builds the native test library and packages it into a minimal host APK
- deploys the APK and library only when they changed
- drives the on-device instrumentation and reports pass/fail
"""

__version__ = "0.1.0"

__all__ = [
    "build",
    "cli",
    "config",
    "device",
    "errors",
    "maven",
    "pipeline",
    "protocol",
]
