"""ctypes binding for test libraries built for the host.

A test library exports a small C ABI:

    size_t      harness_test_count(void);
    const char *harness_test_name(size_t index);
    uint32_t    harness_test_flags(size_t index);   /* bit0 async, bit1 should_panic */
    bool        harness_test__<symbol>(void);        /* one per test */

where ``<symbol>`` is the test name with ``::`` replaced by ``__``. The boolean
returned by a test entry point already accounts for ``should_panic``.

On device the same tests are reached through JNI instead; that contract is
described in `native_harness.host`.
"""

from __future__ import annotations

import ctypes
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List

from native_harness.errors import TestBoundaryError
from native_harness.protocol.manifest import TestMetadata

logger = logging.getLogger(__name__)

FLAG_ASYNC = 0x1
FLAG_SHOULD_PANIC = 0x2
ENTRY_PREFIX = "harness_test__"


def entry_symbol(name: str) -> str:
    return ENTRY_PREFIX + name.replace("::", "__")


class NativeTestLibrary:
    """A loaded test library and its name -> entry point registry."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            self._lib = ctypes.CDLL(str(self.path))
        except OSError as e:
            raise TestBoundaryError(f"failed to load {self.path}: {e}") from e
        self._manifest = self._enumerate()
        self._registry: Dict[str, Callable[[], bool]] = {
            t.name: self._entry_point(t.name) for t in self._manifest
        }

    def _symbol(self, name: str):
        try:
            return getattr(self._lib, name)
        except AttributeError as e:
            raise TestBoundaryError(f"{self.path.name} does not export {name}") from e

    def _entry_point(self, name: str) -> Callable[[], bool]:
        fn = self._symbol(entry_symbol(name))
        fn.argtypes = []
        fn.restype = ctypes.c_bool
        return fn

    def _enumerate(self) -> List[TestMetadata]:
        count_fn = self._symbol("harness_test_count")
        count_fn.argtypes = []
        count_fn.restype = ctypes.c_size_t
        name_fn = self._symbol("harness_test_name")
        name_fn.argtypes = [ctypes.c_size_t]
        name_fn.restype = ctypes.c_char_p
        flags_fn = self._symbol("harness_test_flags")
        flags_fn.argtypes = [ctypes.c_size_t]
        flags_fn.restype = ctypes.c_uint32

        manifest: List[TestMetadata] = []
        for i in range(int(count_fn())):
            raw = name_fn(i)
            if raw is None:
                raise TestBoundaryError(f"test {i} of {self.path.name} has no name")
            try:
                name = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise TestBoundaryError(
                    f"test {i} of {self.path.name} has a non UTF-8 name"
                ) from e
            flags = int(flags_fn(i))
            manifest.append(
                TestMetadata(
                    name=name,
                    is_async=bool(flags & FLAG_ASYNC),
                    should_panic=bool(flags & FLAG_SHOULD_PANIC),
                )
            )
        return manifest

    def manifest(self) -> List[TestMetadata]:
        return list(self._manifest)

    def invoke(self, name: str) -> bool:
        fn = self._registry.get(name)
        if fn is None:
            raise TestBoundaryError(f"unknown test: {name}")
        return bool(fn())


def load_library(path: Path) -> NativeTestLibrary:
    return NativeTestLibrary(path)


_redirect_lock = threading.Lock()
_redirected = False


def _pump(read_fd: int, target: logging.Logger, level: int) -> None:
    with os.fdopen(read_fd, "rb") as pipe:
        for raw in pipe:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                target.log(level, line)


def _detach_python_streams() -> None:
    """Point Python-level stdout/stderr (and handlers using them) at copies of fd 1/2."""

    old = {1: sys.stdout, 2: sys.stderr}
    new = {}
    for fd, stream in old.items():
        stream.flush()
        new[fd] = os.fdopen(os.dup(fd), "w", buffering=1, encoding="utf-8", errors="replace")
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(
            handler, logging.FileHandler
        ):
            if handler.stream is old[1]:
                handler.setStream(new[1])
            elif handler.stream is old[2]:
                handler.setStream(new[2])
    sys.stdout, sys.stderr = new[1], new[2]


def redirect_native_output() -> bool:
    """Route the process's fd 1/2 into logging, once per process.

    Returns False when the redirection was already in place.
    """

    global _redirected
    with _redirect_lock:
        if _redirected:
            return False
        _detach_python_streams()
        for fd, name, level in ((1, "stdout", logging.INFO), (2, "stderr", logging.WARNING)):
            read_fd, write_fd = os.pipe()
            os.dup2(write_fd, fd)
            os.close(write_fd)
            threading.Thread(
                target=_pump,
                args=(read_fd, logging.getLogger(f"native_harness.native.{name}"), level),
                name=f"native-{name}-pump",
                daemon=True,
            ).start()
        _redirected = True
        return True
