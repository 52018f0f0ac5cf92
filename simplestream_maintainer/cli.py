"""Command line interface of the simplestream server maintainer."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from simplestream_maintainer.build import build_index
from simplestream_maintainer.prune import (
    prune_dangling_product_versions,
    prune_empty_dirs,
    prune_stream_product_versions,
)

VERSION = "0.0.1"
PROG = "simplestream-maintainer"
DEFAULT_IMAGE_DIRS = ("images",)

_PACKAGE_LOGGER = "simplestream_maintainer"
_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}

logger = logging.getLogger(_PACKAGE_LOGGER)


def _record_time(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).astimezone().isoformat(timespec="milliseconds")


def _record_level(record: logging.LogRecord) -> str:
    return _LEVEL_NAMES.get(record.levelno, record.levelname)


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = json.dumps(record.getMessage(), ensure_ascii=False)
        return f"time={_record_time(record)} level={_record_level(record)} msg={message}"


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {"time": _record_time(record), "level": _record_level(record), "msg": record.getMessage()},
            ensure_ascii=False,
        )


def set_default_logger(level: str, log_format: str) -> None:
    """Configure the package logger to write to stderr with the given level and format."""
    if level not in _LOG_LEVELS:
        raise ValueError(f'Invalid log level "{level}". Valid log levels are: [debug, info, warn, error]')

    formatters = {"text": _TextFormatter, "json": _JSONFormatter}
    if log_format not in formatters:
        raise ValueError(f'Invalid log format "{log_format}". Valid log formats are: [text, json]')

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatters[log_format]())

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(_LOG_LEVELS[level])
    logger.propagate = False


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer: {text!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return value


def _comma_list(text: str) -> list[str]:
    return text.split(",")


def _add_global_options(parser: argparse.ArgumentParser, suppress: bool) -> None:
    def default(value):
        return argparse.SUPPRESS if suppress else value

    parser.add_argument("--timeout", type=_non_negative_int, default=default(0), help="Timeout in seconds")
    parser.add_argument("--loglevel", default=default("info"), help="Log level")
    parser.add_argument("--logformat", default=default("text"), help="Log format")


def _add_stream_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("path", nargs="?", default="", help="Root directory of the simplestream server")
    parser.add_argument("--stream-version", default="v1", help="Stream version")
    parser.add_argument(
        "-d",
        "--image-dir",
        dest="image_dirs",
        action="extend",
        type=_comma_list,
        default=None,
        help='Image directory (relative to path argument) (default "images")',
    )


def _require_path(args: argparse.Namespace) -> str:
    if not args.path:
        raise ValueError('Argument "path" is required and cannot be empty')
    return args.path


def _image_dirs(args: argparse.Namespace) -> list[str]:
    return list(args.image_dirs) if args.image_dirs else list(DEFAULT_IMAGE_DIRS)


def _run_build(args: argparse.Namespace) -> None:
    root_dir = _require_path(args)
    build_index(root_dir, args.stream_version, _image_dirs(args), args.workers)


def _run_prune(args: argparse.Namespace) -> None:
    root_dir = _require_path(args)
    for image_dir in _image_dirs(args):
        if args.dangling:
            prune_dangling_product_versions(root_dir, args.stream_version, image_dir)
        prune_stream_product_versions(root_dir, args.stream_version, image_dir, args.retain_builds, args.retain_days)
    prune_empty_dirs(root_dir, True)


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with the build and prune commands."""
    parser = argparse.ArgumentParser(prog=PROG, description="Simplestream server maintainer")
    parser.add_argument("--version", action="version", version=f"{PROG} version {VERSION}")
    _add_global_options(parser, suppress=False)

    commands = parser.add_subparsers(dest="command", title="Commands")

    build = commands.add_parser("build", help="Build simplestream index on the given path")
    _add_global_options(build, suppress=True)
    _add_stream_options(build)
    build.add_argument(
        "--workers",
        type=int,
        default=max((os.cpu_count() or 1) // 2, 1),
        help="Maximum number of concurrent operations",
    )
    build.set_defaults(handler=_run_build)

    prune = commands.add_parser(
        "prune",
        help="Prune product versions",
        description="Prune product versions except for latest retaining only the specific number of latest ones.",
    )
    _add_global_options(prune, suppress=True)
    _add_stream_options(prune)
    prune.add_argument(
        "--dangling",
        action="store_true",
        help="Remove dangling product versions (not referenced from any product catalog)",
    )
    prune.add_argument("--retain-builds", type=int, default=10, help="Maximum number of product versions to retain")
    prune.add_argument("--retain-days", type=int, default=0, help="Maximum number of days to retain any product version")
    prune.set_defaults(handler=_run_prune)

    return parser


@contextmanager
def _deadline(seconds: int) -> Iterator[None]:
    if seconds <= 0 or not hasattr(signal, "SIGALRM"):
        yield
        return

    def expire(signum, frame):
        raise TimeoutError(f"Timeout of {seconds}s exceeded")

    previous = signal.signal(signal.SIGALRM, expire)
    signal.alarm(seconds)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, previous)


def main(argv: list[str] | None = None) -> int:
    """Run the command line tool and return its exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 0

    try:
        set_default_logger(args.loglevel, args.logformat)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        with _deadline(args.timeout):
            handler(args)
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1
    except Exception as exc:  # reported to the user, never a traceback
        logger.error("%s", exc)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())