#!/usr/bin/env python3
"""Example host: ``esh [-p PATH] [-q] [-v] COMMAND``.

The ``-p`` flag is trusted input; do not expose it to untrusted users as a
sandboxing mechanism.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from esh.errors import ShellInternalError
from esh.shell import Shell, emit_result, shell_config
from esh.vfs import Vfs

logger = logging.getLogger("esh.main")


class DirVfs(Vfs):
    """VFS rooted at a directory of the host filesystem."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._cwd = root

    def cwd(self) -> Path:
        return self._cwd


def parse_vfs_root(value: str) -> Path:
    try:
        native_path = Path(value).resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise argparse.ArgumentTypeError(f"cannot open path '{value}': {exc}") from exc
    if not native_path.is_dir():
        raise argparse.ArgumentTypeError(f"not a directory: '{value}'")
    return native_path


def add_vfs_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p",
        "--path",
        dest="vfs_path",
        default=".",
        type=parse_vfs_root,
        help="Path to open a VFS on",
    )


def create_vfs(matches: argparse.Namespace) -> Optional[Vfs]:
    root = getattr(matches, "vfs_path", None)
    if root is None:
        raise ShellInternalError("missing vfs_path argument")
    logger.info("Created DirVfs with root %s", root)
    return DirVfs(root)


def build_shell(name: str = "esh") -> Shell:
    return shell_config(name).cli_args(add_vfs_args).vfs_lookup(create_vfs).build()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args_list = list(sys.argv[1:] if argv is None else argv)
    shell = build_shell()
    result = shell.run_args(args_list)
    emit_result(result)
    return result.status


if __name__ == "__main__":
    sys.exit(main())
