"""Error taxonomy shared by the dispatcher and its entry points."""

from __future__ import annotations

from esh.parse import ShellParseError


class ShellError(RuntimeError):
    """Base class for errors surfaced by a shell invocation.

    ``exit_status`` is the process status an entry point reports for it.
    """

    exit_status = 1


class GrammarError(ShellError):
    """The words did not match the command grammar (bad user input)."""

    exit_status = 2

    def __init__(self, message: str, usage: str = "") -> None:
        super().__init__(message)
        self.usage = usage


class LineParseError(ShellError):
    """A line could not be tokenized."""

    exit_status = 2

    def __init__(self, error: ShellParseError) -> None:
        super().__init__(str(error))
        self.parse_error = error


class CommandNotFoundError(ShellError):
    """No registered handler claimed the command.

    Handlers may also raise it to pass a command on to the next handler.
    """

    exit_status = 127

    def __init__(self, command: str) -> None:
        super().__init__(f"command not found: {command}")
        self.command = command


class ShellInternalError(ShellError):
    """An invariant of the shell itself was violated."""


class ShellFatalError(ShellError):
    """User-level logic asked to terminate the current run."""


class VfsNotConfiguredError(ShellError):
    """A command needs a VFS but the shell has none."""


__all__ = [
    "CommandNotFoundError",
    "GrammarError",
    "LineParseError",
    "ShellError",
    "ShellFatalError",
    "ShellInternalError",
    "VfsNotConfiguredError",
]
