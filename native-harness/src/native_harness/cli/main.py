from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
from pathlib import Path
from typing import Optional, Sequence

from native_harness import __version__
from native_harness.config import load_config
from native_harness.errors import HarnessError
from native_harness.pipeline import Pipeline, TestOptions
from native_harness.protocol.runner import CancelToken
from native_harness.reporting import render_report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="native-harness",
        description="Build, deploy and run native test suites on an Android device.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory containing Cargo.toml (default: current directory).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Override harness.yaml (default: <project-dir>/harness.yaml).",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    build_p = sub.add_parser("build", help="Compile the test library and package the host app.")
    build_p.add_argument(
        "--lib-only", action="store_true", help="Only compile the native test library."
    )
    build_p.add_argument("--force", action="store_true", help="Ignore staleness checks.")

    test_p = sub.add_parser("test", help="Build, deploy and run tests on a device.")
    test_p.add_argument(
        "filter", nargs="?", default=None, help="Run tests whose name contains this."
    )
    test_p.add_argument(
        "--device", type=str, default=None, help="adb serial of the target device."
    )
    test_p.add_argument("--force", action="store_true", help="Rebuild and redeploy everything.")
    test_p.add_argument(
        "--nocapture", action="store_true", help="Show captured test stdout/stderr."
    )
    test_p.add_argument(
        "--update-deps", action="store_true", help="Re-resolve dependencies, ignoring the lock."
    )
    test_p.add_argument(
        "--host",
        action="store_true",
        help="Build for and run on this machine instead of a device.",
    )

    package_p = sub.add_parser("package", help="Build the host APK without deploying it.")
    package_p.add_argument("--force", action="store_true", help="Ignore staleness checks.")

    deps_p = sub.add_parser("deps", help="Resolve declared Maven dependencies.")
    deps_p.add_argument("--tree", action="store_true", help="Print the dependency tree.")
    deps_p.add_argument("--update", action="store_true", help="Ignore the lock file.")

    sub.add_parser("clean", help="Remove build outputs.")
    return parser


def _run_tests(pipeline: Pipeline, args: argparse.Namespace) -> int:
    cancel = pipeline.cancel

    def on_interrupt(signum, frame) -> None:
        logger.warning("interrupt received, cancelling after the current step")
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        outcome = pipeline.run_tests(
            TestOptions(
                test_filter=args.filter,
                force=bool(args.force),
                nocapture=bool(args.nocapture),
                update_deps=bool(args.update_deps),
                host=bool(args.host),
            )
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    for line in render_report(outcome.payload):
        print(line)
    return outcome.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = load_config(args.project_dir, config_path=args.config)
        if getattr(args, "device", None):
            config = dataclasses.replace(config, serial=args.device)
        pipeline = Pipeline(config, cancel=CancelToken())

        if args.cmd == "test":
            return _run_tests(pipeline, args)

        if args.cmd == "build":
            plan = pipeline.build(lib_only=bool(args.lib_only), force=bool(args.force))
            print(plan.describe())
            return EXIT_OK

        if args.cmd == "package":
            pipeline.package(force=bool(args.force))
            print(config.apk_path)
            return EXIT_OK

        if args.cmd == "deps":
            if args.tree:
                print(pipeline.dependency_tree())
                return EXIT_OK
            for dep in pipeline.resolve(update=bool(args.update)):
                suffix = " (transitive)" if dep.is_transitive else ""
                print(f"{dep.coordinate} [{dep.artifact_type}]{suffix}")
            return EXIT_OK

        if args.cmd == "clean":
            pipeline.clean()
            return EXIT_OK
    except HarnessError as e:
        print(f"[ERROR] {e}")
        return EXIT_ERROR
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return EXIT_ERROR

    raise SystemExit(f"unhandled command: {args.cmd!r}")  # pragma: no cover


if __name__ == "__main__":
    raise SystemExit(main())
