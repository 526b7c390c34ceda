"""argparse adapter used as the command grammar.

argparse normally prints and calls :func:`sys.exit` on bad input, ``--help``
and ``--version``.  :class:`ShellArgumentParser` turns those exits into
exceptions so the shell can hand the outcome back to its caller.
"""

from __future__ import annotations

import argparse
from typing import Any, Callable, List, NoReturn, Optional

from esh.errors import GrammarError

ArgsAugmentor = Callable[[argparse.ArgumentParser], None]
# Receives the action returned by ``ArgumentParser.add_subparsers()``.
CmdsAugmentor = Callable[[Any], None]


class GrammarExit(Exception):
    """Raised instead of exiting after ``--help`` or ``--version``."""

    def __init__(self, status: int, output: str) -> None:
        super().__init__(output)
        self.status = status
        self.output = output


class ShellSubParsersAction(argparse._SubParsersAction):
    """Subparsers action that refuses to register a command name twice.

    Older argparse releases let a duplicate name silently replace the first
    parser.
    """

    def add_parser(self, name: str, **kwargs: Any) -> argparse.ArgumentParser:
        for candidate in (name, *kwargs.get("aliases", ())):
            if candidate in self.choices:
                raise argparse.ArgumentError(self, f"conflicting subparser: {candidate}")
        return super().add_parser(name, **kwargs)


class ShellArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that never writes to the terminal or exits."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.register("action", "parsers", ShellSubParsersAction)
        self.output: List[str] = []

    def _print_message(self, message: str, file: Any = None) -> None:
        if message:
            self.output.append(message)

    def exit(self, status: int = 0, message: Optional[str] = None) -> NoReturn:
        if message:
            self.output.append(message)
        raise GrammarExit(status, "".join(self.output))

    def error(self, message: str) -> NoReturn:
        raise GrammarError(f"{self.prog}: error: {message}", usage=self.format_usage())


# argparse parses a subcommand into a fresh namespace, so a count started
# after the subcommand is kept apart and folded in by merge_global_flags().
SUBCOMMAND_VERBOSE = "subcommand_verbose"


def add_global_flags(parser: argparse.ArgumentParser, *, suppress: bool = False) -> None:
    """Add ``-q``/``-v`` to *parser*.

    Subcommand parsers get ``suppress=True`` so that flags given before the
    subcommand are not reset by the subparser's defaults.
    """

    existing = parser._option_string_actions
    if "-q" not in existing and "--quiet" not in existing:
        parser.add_argument(
            "-q",
            "--quiet",
            action="store_true",
            default=argparse.SUPPRESS if suppress else False,
            help="Suppress all output except for errors. This overrides -v.",
        )
    if "-v" not in existing and "--verbose" not in existing:
        parser.add_argument(
            "-v",
            "--verbose",
            dest=SUBCOMMAND_VERBOSE if suppress else "verbose",
            action="count",
            default=argparse.SUPPRESS if suppress else 0,
            help="Turn on verbose output. Repeat to increase verbosity.",
        )



def merge_global_flags(matches: argparse.Namespace) -> argparse.Namespace:
    """Add any ``-v`` count given after the subcommand to ``matches.verbose``."""

    after = vars(matches).pop(SUBCOMMAND_VERBOSE, 0) or 0
    if after:
        matches.verbose = (getattr(matches, "verbose", 0) or 0) + after
    return matches


__all__ = [
    "ArgsAugmentor",
    "CmdsAugmentor",
    "GrammarExit",
    "SUBCOMMAND_VERBOSE",
    "ShellArgumentParser",
    "ShellSubParsersAction",
    "add_global_flags",
    "merge_global_flags",
]
