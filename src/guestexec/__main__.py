"""Module entrypoint for `python -m guestexec`."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .api import Harness
from .config import HarnessConfig
from .errors import HarnessError
from .preflight import check_runtime
from .qemu import EXIT_HARNESS_ERROR, EXIT_SUCCESS, emit_result
from .runconfig import FolderMapping, RunConfiguration, write_guest_config

logger = logging.getLogger("guestexec")


class _ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors with the harness-fault exit code."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_HARNESS_ERROR, f"{self.prog}: error: {message}\n")


def _command(values: list[str]) -> list[str]:
    if values and values[0] == "--":
        return values[1:]
    return values


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = _ArgumentParser(
        prog="guestexec",
        description="Run a command inside a freshly booted Redox guest.",
    )
    subparsers = parser.add_subparsers(dest="subcommand", required=True)

    exec_parser = subparsers.add_parser("exec", help="Run a command in the guest.")
    exec_parser.add_argument(
        "-f",
        "--folder",
        action="append",
        default=[],
        metavar="MAP",
        help="Copy `host_dir[:/guest/path]` into the guest (default guest path: /root).",
    )
    exec_parser.add_argument(
        "-a",
        "--artifact",
        action="append",
        default=[],
        metavar="MAP",
        help="Copy `host_dir[:/guest/path]` back out of the guest after a successful run.",
    )
    exec_parser.add_argument("-g", "--gui", action="store_true", help="Boot the GUI image with a display.")
    exec_parser.add_argument("-o", "--output", type=Path, help="Write the guest log to FILE.")
    exec_parser.add_argument(
        "--update",
        action="store_true",
        help="Rebuild the cached base image even if it is current.",
    )
    exec_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    exec_parser.add_argument("command", nargs=argparse.REMAINDER, help="Program and arguments.")

    write_parser = subparsers.add_parser(
        "write-exec",
        help="Write the guest configuration and init hook into a root directory.",
    )
    write_parser.add_argument("--root", type=Path, default=Path("."), help="Guest root directory.")
    write_parser.add_argument(
        "--folder",
        action="append",
        default=[],
        metavar="MAP",
        help="Folder mapping used to rewrite host paths in the arguments.",
    )
    write_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    write_parser.add_argument("command", nargs=argparse.REMAINDER, help="Program and arguments.")

    check_parser = subparsers.add_parser("check", help="Report missing host tools.")
    check_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    args = parser.parse_args(argv)
    if args.subcommand in {"exec", "write-exec"}:
        args.command = _command(args.command)
        if not args.command:
            parser.error(f"{args.subcommand}: a command to run is required")
    return args


def default_folders(command: list[str]) -> list[FolderMapping]:
    """Copy in the directory holding ``command[0]`` when it names a local file."""
    program = command[0]
    path = Path(program)
    if not path.is_file():
        return []
    if "/" not in program:
        logger.warning(
            "'%s' is a file in the current directory; use './%s' to copy it into the guest",
            program,
            program,
        )
        return []
    return [FolderMapping(path.resolve().parent)]


def _exec(args: argparse.Namespace) -> int:
    folders = [FolderMapping.parse(text) for text in args.folder]
    if not folders:
        folders = default_folders(args.command)
    run_config = RunConfiguration(
        arguments=args.command,
        folders=folders,
        artifacts=[FolderMapping.parse(text) for text in args.artifact],
    )
    config = HarnessConfig.from_env(gui=args.gui, update=args.update)
    result = Harness(config).run(run_config)
    emit_result(result, output=args.output)
    return result.code


def _write_exec(args: argparse.Namespace) -> int:
    run_config = RunConfiguration(
        arguments=args.command,
        folders=[FolderMapping.parse(text) for text in args.folder],
    )
    run_config.validate()
    path = write_guest_config(args.root, run_config)
    print(f"wrote: {path}")
    return EXIT_SUCCESS


def _check(args: argparse.Namespace) -> int:
    config = HarnessConfig.from_env()
    result = check_runtime(config)
    print(f"guestexec cache dir: {result.cache_dir}")
    for name, resolved in result.executables.items():
        print(f"{name}: {resolved or 'missing'}")
    if not result.ok:
        print("")
        print("guestexec runtime is not ready.")
        return EXIT_HARNESS_ERROR
    print("")
    print("guestexec runtime is ready.")
    return EXIT_SUCCESS


_SUBCOMMANDS = {"exec": _exec, "write-exec": _write_exec, "check": _check}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="guestexec: %(message)s",
        stream=sys.stderr,
    )
    try:
        return _SUBCOMMANDS[args.subcommand](args)
    except (HarnessError, OSError) as exc:
        print(f"guestexec {args.subcommand}: {exc}", file=sys.stderr)
        return EXIT_HARNESS_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
