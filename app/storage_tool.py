#!/usr/bin/env python3
"""Storage tool.

Runs single folder operations against a storage prefix. Backend settings are
read from environment variables named after the settings themselves (e.g.
GCS_CONTEXT_TIMEOUT, AWS_REGION, SSH_USERNAME), with a `<NAME>_FILE` variant
for secrets mounted as files.

Usage:
    python storage_tool.py [--prefix URL] ls [PATH]
    python storage_tool.py [--prefix URL] get NAME [--output FILE]
    python storage_tool.py [--prefix URL] put NAME [--input FILE]
    python storage_tool.py [--prefix URL] rm NAME [NAME ...]
    python storage_tool.py [--prefix URL] exists NAME
"""

import argparse
import os
import shutil
import sys
from typing import BinaryIO, Dict, List, Mapping, Optional

from storages.errors import StorageError
from storages.factory import configure_folder, settings_for
from storages.folder import Folder
from storages.logging_config import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_MISSING = 2


def get_env_or_file(env_name: str, file_env_name: str, default: str = "", *, env: Optional[Mapping[str, str]] = None) -> str:
    """Get value from environment variable or file.

    Args:
        env_name: Environment variable name.
        file_env_name: Environment variable containing path to file.
        default: Default value if neither is set.
        env: Environment mapping; defaults to os.environ.

    Returns:
        str: The value.
    """

    env = os.environ if env is None else env
    value = env.get(env_name, "")
    if value:
        return value

    file_path = env.get(file_env_name, "")
    if file_path and os.path.exists(file_path):
        with open(file_path, "r") as f:
            return f.read().strip()

    return default


def collect_settings(prefix: str, env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collect the backend settings for `prefix` from the environment.

    Args:
        prefix: Storage prefix.
        env: Environment mapping; defaults to os.environ.

    Returns:
        Dict[str, str]: Settings that are set.
    """

    settings: Dict[str, str] = {}
    for name in settings_for(prefix):
        value = get_env_or_file(name, f"{name}_FILE", env=env)
        if value:
            settings[name] = value
    return settings


def cmd_ls(folder: Folder, args: argparse.Namespace, out: BinaryIO) -> int:
    if args.path:
        folder = folder.get_sub_folder(args.path)
    objects, sub_folders = folder.list_folder()
    lines: List[str] = [f"{sub.get_path()}\t<dir>" for sub in sub_folders]
    for obj in sorted(objects, key=lambda o: o.name):
        lines.append(f"{obj.name}\t{obj.size}\t{obj.last_modified.isoformat()}")
    if lines:
        out.write(("\n".join(lines) + "\n").encode("utf-8"))
    return EXIT_OK


def cmd_get(folder: Folder, args: argparse.Namespace, out: BinaryIO) -> int:
    reader = folder.read_object(args.name)
    try:
        if args.output:
            with open(args.output, "wb") as f:
                shutil.copyfileobj(reader, f)
        else:
            shutil.copyfileobj(reader, out)
    finally:
        reader.close()
    return EXIT_OK


def cmd_put(folder: Folder, args: argparse.Namespace, out: BinaryIO) -> int:
    if args.input:
        with open(args.input, "rb") as f:
            folder.put_object(args.name, f)
    else:
        folder.put_object(args.name, sys.stdin.buffer)
    logger.info("Uploaded %s to %s", args.name, folder.get_path())
    return EXIT_OK


def cmd_rm(folder: Folder, args: argparse.Namespace, out: BinaryIO) -> int:
    folder.delete_objects(args.names)
    logger.info("Deleted %s object(s) from %s", len(args.names), folder.get_path())
    return EXIT_OK


def cmd_exists(folder: Folder, args: argparse.Namespace, out: BinaryIO) -> int:
    if folder.exists(args.name):
        out.write(b"true\n")
        return EXIT_OK
    out.write(b"false\n")
    return EXIT_MISSING


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remote storage folder tool")
    parser.add_argument(
        "--prefix",
        default=os.environ.get("STORAGE_PREFIX", ""),
        help="Storage prefix, e.g. s3://bucket/path, gs://bucket/path or ssh://host/path",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Log level (TRACE, DEBUG, INFO, ...)",
    )
    parser.add_argument(
        "--log-dir",
        default=os.environ.get("LOG_DIR") or None,
        help="Directory for rotating log files (default: console only)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    ls_parser = commands.add_parser("ls", help="List a folder")
    ls_parser.add_argument("path", nargs="?", default="", help="Sub-folder to list")
    ls_parser.set_defaults(handler=cmd_ls)

    get_parser = commands.add_parser("get", help="Download an object")
    get_parser.add_argument("name")
    get_parser.add_argument("--output", "-o", help="Write to this file instead of stdout")
    get_parser.set_defaults(handler=cmd_get)

    put_parser = commands.add_parser("put", help="Upload an object")
    put_parser.add_argument("name")
    put_parser.add_argument("--input", "-i", help="Read from this file instead of stdin")
    put_parser.set_defaults(handler=cmd_put)

    rm_parser = commands.add_parser("rm", help="Delete objects")
    rm_parser.add_argument("names", nargs="+")
    rm_parser.set_defaults(handler=cmd_rm)

    exists_parser = commands.add_parser("exists", help="Check whether an object exists")
    exists_parser.add_argument("name")
    exists_parser.set_defaults(handler=cmd_exists)

    return parser


def main(argv: Optional[List[str]] = None, *, folder: Optional[Folder] = None, out: Optional[BinaryIO] = None) -> int:
    """Entry point.

    Args:
        argv: Command line arguments; defaults to sys.argv.
        folder: Pre-configured folder, bypassing prefix and settings handling.
        out: Binary output stream; defaults to stdout.

    Returns:
        int: Process exit code.
    """

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging(log_dir=args.log_dir, log_level=args.log_level)
    except ValueError as exc:
        parser.error(str(exc))

    out = out or sys.stdout.buffer

    try:
        if folder is None:
            if not args.prefix:
                logger.error("Storage prefix required. Set STORAGE_PREFIX or use --prefix")
                return EXIT_ERROR
            folder = configure_folder(args.prefix, collect_settings(args.prefix))
        return args.handler(folder, args, out)
    except StorageError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
