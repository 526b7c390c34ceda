"""Configurable command shell: builder, dispatcher and built-in commands.

A host composes its command surface through :class:`ShellConfig` and calls
:meth:`ShellConfig.build` to get a :class:`Shell`::

    def greet_cmds(subparsers):
        subparsers.add_parser("greet").add_argument("name")

    def greet(shell, matches):
        if matches.command != "greet":
            return None
        return CommandResult(stdout=f"Hello, {matches.name}!\\n")

    sh = shell_config("greeter").cli_cmds(greet_cmds).cli_handler(greet).build()
    sys.exit(sh.run())

Handlers are tried in registration order.  Returning ``None`` (or raising
:class:`~esh.errors.CommandNotFoundError`) passes the command on to the next
handler.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import weakref
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from esh.errors import (
    CommandNotFoundError,
    GrammarError,
    LineParseError,
    ShellError,
    ShellInternalError,
    VfsNotConfiguredError,
)
from esh.grammar import (
    ArgsAugmentor,
    CmdsAugmentor,
    GrammarExit,
    ShellArgumentParser,
    add_global_flags,
    merge_global_flags,
)
from esh.parse import ShellParseError, shell_split
from esh.util import PKG_NAME, PKG_VERSION, die, get_cmd_basename, init_logging
from esh.vfs import Vfs, VfsSlot

CLI = "cli"
SHELL = "shell"
SHARED = "shared"
_SCOPES = (CLI, SHELL, SHARED)

# ---------------------------------------------------------------------------
# Command result and handler types
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    status: int = 0
    audit: Dict[str, Any] = field(default_factory=dict)
    exit_requested: bool = False
    error: Optional[ShellError] = None


Handler = Callable[["Shell", argparse.Namespace], Optional[CommandResult]]
VfsLookup = Callable[[argparse.Namespace], Optional[Vfs]]


@dataclass(frozen=True)
class HandlerEntry:
    """A handler bound to its shell through a weak reference."""

    handler: Handler
    shell_ref: "weakref.ReferenceType[Shell]"

    def invoke(self, matches: argparse.Namespace) -> Optional[CommandResult]:
        shell = self.shell_ref()
        if shell is None:
            raise ShellInternalError("shell was released before its handler ran")
        return self.handler(shell, matches)


@dataclass(frozen=True)
class CommandGroup:
    args: Optional[ArgsAugmentor] = None
    cmds: Optional[CmdsAugmentor] = None
    handler: Optional[Handler] = None


@dataclass(frozen=True)
class _BoundGroup:
    args: Optional[ArgsAugmentor]
    cmds: Optional[CmdsAugmentor]
    entry: Optional[HandlerEntry]


# ---------------------------------------------------------------------------
# Built-in commands
# ---------------------------------------------------------------------------


def _exit_status(value: str) -> int:
    try:
        status = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid exit status: '{value}'") from None
    if not 0 <= status <= 255:
        raise argparse.ArgumentTypeError(f"exit status out of range 0-255: {status}")
    return status


def add_shared_commands(subparsers: Any) -> None:
    subparsers.add_parser("version", help="Print version information")
    subparsers.add_parser("pwd", help="Print the current VFS location")


def handle_shared_command(shell: "Shell", matches: argparse.Namespace) -> Optional[CommandResult]:
    if matches.command == "version":
        return CommandResult(stdout=f"version {shell.pkg_name} {shell.version}\n")
    if matches.command == "pwd":
        with shell.vfs() as vfs:
            if vfs is None:
                raise VfsNotConfiguredError("pwd: no VFS configured")
            return CommandResult(stdout=f"{vfs.cwd()}\n")
    return None


def add_shell_commands(subparsers: Any) -> None:
    parser = subparsers.add_parser("exit", help="Leave the shell")
    parser.add_argument("status", nargs="?", type=_exit_status, default=0)


def handle_shell_command(shell: "Shell", matches: argparse.Namespace) -> Optional[CommandResult]:
    if matches.command == "exit":
        return CommandResult(status=matches.status, exit_requested=True)
    return None


def add_cli_args(parser: argparse.ArgumentParser) -> None:
    add_global_flags(parser)


def add_cli_commands(subparsers: Any) -> None:
    subparsers.add_parser("shell", help="Start an interactive shell")


def handle_cli_command(shell: "Shell", matches: argparse.Namespace) -> Optional[CommandResult]:
    if matches.command == "shell":
        die("command 'shell' not implemented")
    return None


_BUILTIN_GROUPS: Dict[str, Tuple[CommandGroup, ...]] = {
    CLI: (
        CommandGroup(cmds=add_shared_commands, handler=handle_shared_command),
        CommandGroup(args=add_cli_args, cmds=add_cli_commands, handler=handle_cli_command),
    ),
    SHELL: (
        CommandGroup(cmds=add_shared_commands, handler=handle_shared_command),
        CommandGroup(cmds=add_shell_commands, handler=handle_shell_command),
    ),
}


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


class Shell:
    """Frozen dispatcher produced by :meth:`ShellConfig.build`.

    Safe to share between threads: the command groups are immutable and the
    VFS is only reachable through its lock.
    """

    def __init__(
        self,
        name: str,
        pkg_name: str,
        version: str,
        groups: Dict[str, Sequence[CommandGroup]],
        vfs_lookup: Optional[VfsLookup] = None,
    ) -> None:
        self.name = name
        self.pkg_name = pkg_name
        self.version = version
        self.logger = logging.getLogger("esh.shell")
        self._vfs_lookup = vfs_lookup
        self._vfs_slot = VfsSlot()
        self._vfs_resolved = False
        self._start_lock = threading.Lock()
        ref = weakref.ref(self)
        self._groups: Dict[str, Tuple[_BoundGroup, ...]] = {
            mode: tuple(
                _BoundGroup(
                    args=group.args,
                    cmds=group.cmds,
                    entry=HandlerEntry(group.handler, ref) if group.handler else None,
                )
                for group in groups.get(mode, ())
            )
            for mode in (CLI, SHELL)
        }

    # -------------------- backend ------------------------------
    def vfs(self) -> AbstractContextManager[Optional[Vfs]]:
        """Lock the VFS slot; yields the backend or ``None``."""

        return self._vfs_slot.acquire()

    @property
    def has_vfs(self) -> bool:
        return not self._vfs_slot.is_empty()

    def _start(self, matches: argparse.Namespace) -> None:
        _, level = init_logging(
            self.name,
            bool(getattr(matches, "quiet", False)),
            int(getattr(matches, "verbose", 0) or 0),
        )
        with self._start_lock:
            if self._vfs_resolved:
                return
            self.logger.info(
                "starting %s (%s %s), log level: %s",
                self.name,
                PKG_NAME,
                PKG_VERSION,
                logging.getLevelName(level),
            )
            if self._vfs_lookup is not None:
                try:
                    vfs = self._vfs_lookup(matches)
                except OSError as exc:
                    raise ShellInternalError(f"VFS lookup failed: {exc}") from exc
                self._vfs_slot.replace(vfs)
            self._vfs_resolved = True

    # -------------------- grammar ------------------------------
    def _build_parser(self, mode: str) -> ShellArgumentParser:
        parser = ShellArgumentParser(prog=self.name)
        if mode == CLI:
            parser.add_argument(
                "--version",
                action="version",
                version=f"{self.name} {self.version}",
            )
        subparsers = parser.add_subparsers(
            dest="command",
            metavar="COMMAND",
            title="commands",
            required=True,
        )
        try:
            for group in self._groups[mode]:
                if group.args is not None:
                    group.args(parser)
                if group.cmds is not None:
                    group.cmds(subparsers)
            if mode == CLI:
                for subparser in subparsers.choices.values():
                    add_global_flags(subparser, suppress=True)
        except argparse.ArgumentError as exc:
            raise ShellInternalError(f"invalid command grammar: {exc}") from exc
        return parser

    # -------------------- execution ----------------------------
    def execute(self, words: Sequence[str], *, mode: str = CLI) -> CommandResult:
        """Parse *words* against the grammar for *mode* and dispatch them.

        Raises :class:`~esh.errors.ShellError` subclasses; use
        :meth:`run_args` or :meth:`run_line` to get errors back as results.
        """

        if mode not in self._groups:
            raise ValueError(f"Unknown shell mode: {mode}")
        parser = self._build_parser(mode)
        try:
            matches = parser.parse_args(list(words))
        except GrammarExit as exc:
            return CommandResult(stdout=exc.output, status=exc.status)
        if mode == CLI:
            merge_global_flags(matches)
            self._start(matches)
        return self._dispatch(mode, matches)

    def _dispatch(self, mode: str, matches: argparse.Namespace) -> CommandResult:
        command = getattr(matches, "command", None) or ""
        for group in self._groups[mode]:
            if group.entry is None:
                continue
            try:
                result = group.entry.invoke(matches)
            except CommandNotFoundError:
                continue
            if result is None:
                continue
            self.logger.debug("%s: '%s' handled with status %s", mode, command, result.status)
            result.audit.setdefault("command", command)
            result.audit.setdefault("mode", mode)
            result.audit.setdefault("status", result.status)
            return result
        raise CommandNotFoundError(command)

    def _error_result(self, exc: ShellError, mode: str) -> CommandResult:
        if isinstance(exc, GrammarError):
            stderr = exc.usage + str(exc) + "\n"
            self.logger.debug("grammar error: %s", exc)
        elif isinstance(exc, (LineParseError, CommandNotFoundError)):
            stderr = f"{self.name}: {exc}\n"
            self.logger.debug("%s", exc)
        else:
            stderr = f"{self.name}: {exc}\n"
            self.logger.error("%s", exc)
        return CommandResult(
            stderr=stderr,
            status=exc.exit_status,
            audit={"mode": mode, "error": type(exc).__name__},
            error=exc,
        )

    def run_args(self, argv: Sequence[str]) -> CommandResult:
        """Run process arguments (without the program name) verbatim."""

        try:
            return self.execute(argv, mode=CLI)
        except ShellError as exc:
            return self._error_result(exc, CLI)

    def run_line(self, line: str) -> CommandResult:
        """Tokenize and run one line of shell input."""

        try:
            words = shell_split(line)
        except ShellParseError as exc:
            return self._error_result(LineParseError(exc), SHELL)
        if not words:
            return CommandResult()
        try:
            return self.execute(words, mode=SHELL)
        except ShellError as exc:
            return self._error_result(exc, SHELL)

    def run(self) -> int:
        """Run ``sys.argv`` and print the outcome; returns the exit status."""

        result = self.run_args(sys.argv[1:])
        emit_result(result)
        return result.status


def emit_result(result: CommandResult) -> None:
    if result.stdout:
        print(result.stdout, end="")
    if result.stderr:
        print(result.stderr, end="", file=sys.stderr)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ShellConfig:
    """Builder for :class:`Shell`.

    Not thread-safe.  ``build()`` copies the configuration, so a config can
    be reused and later changes never reach shells already built.
    """

    def __init__(
        self,
        name: str,
        pkg_name: Optional[str] = None,
        version: Optional[str] = None,
    ) -> None:
        self._name = name
        self._pkg_name = pkg_name or PKG_NAME
        self._version = version or PKG_VERSION
        self._groups: Dict[str, List[CommandGroup]] = {scope: [] for scope in _SCOPES}
        self._vfs_lookup: Optional[VfsLookup] = None

    def name(self, name: str) -> "ShellConfig":
        self._name = name
        return self

    def command_group(
        self,
        args: Optional[ArgsAugmentor] = None,
        cmds: Optional[CmdsAugmentor] = None,
        handler: Optional[Handler] = None,
        *,
        scope: str = CLI,
    ) -> "ShellConfig":
        if scope not in self._groups:
            raise ValueError(f"Unknown command scope: {scope}")
        self._groups[scope].append(CommandGroup(args=args, cmds=cmds, handler=handler))
        return self

    def cli_args(self, augmentor: ArgsAugmentor) -> "ShellConfig":
        return self.command_group(args=augmentor, scope=CLI)

    def cli_cmds(self, augmentor: CmdsAugmentor) -> "ShellConfig":
        return self.command_group(cmds=augmentor, scope=CLI)

    def cli_handler(self, handler: Handler) -> "ShellConfig":
        return self.command_group(handler=handler, scope=CLI)

    def shell_args(self, augmentor: ArgsAugmentor) -> "ShellConfig":
        return self.command_group(args=augmentor, scope=SHELL)

    def shell_cmds(self, augmentor: CmdsAugmentor) -> "ShellConfig":
        return self.command_group(cmds=augmentor, scope=SHELL)

    def shell_handler(self, handler: Handler) -> "ShellConfig":
        return self.command_group(handler=handler, scope=SHELL)

    def shared_cmds(self, augmentor: CmdsAugmentor) -> "ShellConfig":
        return self.command_group(cmds=augmentor, scope=SHARED)

    def shared_handler(self, handler: Handler) -> "ShellConfig":
        return self.command_group(handler=handler, scope=SHARED)

    def vfs_lookup(self, lookup: VfsLookup) -> "ShellConfig":
        """Set the VFS factory; it runs once, on the first CLI invocation.

        Line mode (:meth:`Shell.run_line`) never runs the lookup, so a shell
        driven only through lines keeps an empty slot until a CLI invocation
        such as :meth:`Shell.run_args` has filled it.
        """

        self._vfs_lookup = lookup
        return self

    def build(self) -> Shell:
        shared = self._groups[SHARED]
        groups = {
            CLI: [*_BUILTIN_GROUPS[CLI], *self._groups[CLI], *shared],
            SHELL: [*_BUILTIN_GROUPS[SHELL], *self._groups[SHELL], *shared],
        }
        return Shell(
            self._name,
            self._pkg_name,
            self._version,
            groups,
            vfs_lookup=self._vfs_lookup,
        )


def shell_config(name: Optional[str] = None) -> ShellConfig:
    """Start a configuration named after the running program by default."""

    return ShellConfig(name or get_cmd_basename(PKG_NAME))


__all__ = [
    "CLI",
    "SHARED",
    "SHELL",
    "CommandGroup",
    "CommandResult",
    "Handler",
    "HandlerEntry",
    "Shell",
    "ShellConfig",
    "VfsLookup",
    "emit_result",
    "shell_config",
]
