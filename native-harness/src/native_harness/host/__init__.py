"""Host application sources and manifest.

The Java sources under `java/` are the on-device half of the test execution
protocol. They are compiled into the host APK together with the merged
dependency classes.

`com.nativeharness.loader.TestRunner` loads the test library with
`System.load` and binds two JNI entry points that the library must export:

    JNIEXPORT jobjectArray JNICALL
    Java_com_nativeharness_loader_TestRunner_getTestManifest(JNIEnv *, jclass);
        returns TestMetadata[]; descriptor
        ()[Lcom/nativeharness/loader/TestMetadata;

    JNIEXPORT jboolean JNICALL
    Java_com_nativeharness_loader_TestRunner_invokeTestNative(JNIEnv *, jclass, jstring);
        runs one test by name; descriptor (Ljava/lang/String;)Z

Each manifest element is built with the only `TestMetadata` constructor,
`TestMetadata(String name, boolean isAsync, boolean shouldPanic)`, descriptor
`(Ljava/lang/String;ZZ)V`. As with the host C ABI in
`native_harness.protocol.native`, the returned boolean already accounts for
`shouldPanic`.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Sequence
from xml.sax.saxutils import quoteattr

from native_harness.config import HOST_PACKAGE, INSTRUMENTATION_CLASS

JAVA_ROOT = Path(__file__).resolve().parent / "java"


def java_sources() -> List[Path]:
    return sorted(JAVA_ROOT.rglob("*.java"))


def write_java_sources(dest: Path) -> List[Path]:
    """Copy the host sources into `dest`, keeping their package directories."""

    written: List[Path] = []
    for src in java_sources():
        target = dest / src.relative_to(JAVA_ROOT)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, target)
        written.append(target)
    return written


def render_manifest(
    *,
    permissions: Sequence[str],
    target_sdk: int,
    min_sdk: int,
    version_name: str,
    package: str = HOST_PACKAGE,
) -> str:
    lines = [
        '<?xml version="1.0" encoding="utf-8"?>',
        '<manifest xmlns:android="http://schemas.android.com/apk/res/android"',
        f"    package={quoteattr(package)}",
        '    android:versionCode="1"',
        f"    android:versionName={quoteattr(version_name)}>",
        "",
        f'    <uses-sdk android:minSdkVersion="{int(min_sdk)}" '
        f'android:targetSdkVersion="{int(target_sdk)}" />',
    ]
    for perm in sorted(set(permissions)):
        lines.append(f"    <uses-permission android:name={quoteattr(perm)} />")
    lines += [
        "",
        '    <application android:label="Native Harness Host" android:debuggable="true"',
        '        android:extractNativeLibs="true">',
        '        <uses-library android:name="android.test.runner" android:required="false" />',
        "    </application>",
        "",
        "    <instrumentation",
        f'        android:name=".{INSTRUMENTATION_CLASS}"',
        f"        android:targetPackage={quoteattr(package)}",
        '        android:label="Native Harness Test Runner" />',
        "</manifest>",
        "",
    ]
    return "\n".join(lines)
