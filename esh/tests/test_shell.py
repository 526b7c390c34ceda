from __future__ import annotations

import argparse
import gc
import threading
import weakref
from pathlib import Path
from typing import List, Optional

import pytest

from esh.errors import (
    CommandNotFoundError,
    GrammarError,
    LineParseError,
    ShellFatalError,
    ShellInternalError,
    VfsNotConfiguredError,
)
from esh.parse import UnterminatedQuoteError
from esh.shell import CommandResult, HandlerEntry, Shell, ShellConfig, shell_config
from esh.vfs import Vfs


class _StaticVfs(Vfs):
    def __init__(self, path: Path) -> None:
        self.path = path

    def cwd(self) -> Path:
        return self.path


def _hello_commands(subparsers) -> None:
    hello = subparsers.add_parser("hello", help="Say hello")
    hello.add_argument("name", nargs="?", default="world")
    bye = subparsers.add_parser("bye", help="Say goodbye")
    bye.add_argument("name", nargs="?", default="blackbird")
    bye.add_argument("-b", "--bye", dest="count", action="count", default=0)


def _hello_handler(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
    if matches.command == "hello":
        return CommandResult(stdout=f"Hello, {matches.name}!\n")
    if matches.command == "bye":
        return CommandResult(stdout=f"Bye, {'bye, ' * (matches.count + 1)}{matches.name}!\n")
    return None


def _config() -> ShellConfig:
    return ShellConfig("test", pkg_name="esh-test", version="1.2.3")


def _hello_shell() -> Shell:
    return _config().shared_cmds(_hello_commands).shared_handler(_hello_handler).build()


# -------------------- built-in commands ---------------------------


def test_version_command() -> None:
    shell = _config().build()
    result = shell.run_args(["version"])
    assert result.status == 0
    assert result.stdout == "version esh-test 1.2.3\n"
    assert result.audit["command"] == "version"
    assert shell.run_line("version").stdout == "version esh-test 1.2.3\n"


def test_version_and_help_flags() -> None:
    shell = _config().build()

    version = shell.run_args(["--version"])
    assert version.status == 0
    assert "1.2.3" in version.stdout

    help_result = shell.run_args(["--help"])
    assert help_result.status == 0
    assert "usage:" in help_result.stdout
    assert "COMMAND" in help_result.stdout
    assert "version" in help_result.stdout


def test_global_flags_before_and_after_command() -> None:
    shell = _config().build()
    for argv in (["-q", "version"], ["version", "-q"], ["-vvv", "version"], ["-q", "-v", "version"]):
        result = shell.run_args(argv)
        assert result.status == 0, argv


def test_missing_command_is_a_grammar_error() -> None:
    result = _config().build().run_args([])
    assert result.status == 2
    assert isinstance(result.error, GrammarError)
    assert "usage:" in result.stderr
    assert "COMMAND" in result.stderr


def test_unknown_command_is_a_grammar_error() -> None:
    result = _config().build().run_args(["nosuchcmd"])
    assert result.status == 2
    assert isinstance(result.error, GrammarError)
    assert "invalid choice" in result.stderr


def test_pwd_without_vfs_reports_missing_backend() -> None:
    shell = _config().build()
    assert not shell.has_vfs
    result = shell.run_args(["pwd"])
    assert result.status == 1
    assert isinstance(result.error, VfsNotConfiguredError)
    assert "no VFS configured" in result.stderr
    assert result.stdout == ""


def test_pwd_with_vfs(tmp_path: Path) -> None:
    shell = _config().vfs_lookup(lambda matches: _StaticVfs(tmp_path)).build()
    result = shell.run_args(["pwd"])
    assert result.status == 0
    assert result.stdout == f"{tmp_path}\n"
    assert shell.has_vfs


def test_shell_command_is_fatal() -> None:
    result = _config().build().run_args(["shell"])
    assert result.status == 1
    assert isinstance(result.error, ShellFatalError)
    assert "not implemented" in result.stderr


def test_exit_only_exists_in_line_mode() -> None:
    shell = _config().build()

    result = shell.run_line("exit 3")
    assert result.exit_requested
    assert result.status == 3
    assert shell.run_line("exit").status == 0

    assert isinstance(shell.run_args(["exit"]).error, GrammarError)
    assert isinstance(shell.run_line("exit 300").error, GrammarError)


# -------------------- user handlers -------------------------------


def test_user_commands_in_both_modes() -> None:
    shell = _hello_shell()
    assert shell.run_args(["hello"]).stdout == "Hello, world!\n"
    assert shell.run_args(["hello", "Ada"]).stdout == "Hello, Ada!\n"
    assert shell.run_args(["bye", "-bb"]).stdout == "Bye, bye, bye, bye, blackbird!\n"
    assert shell.run_line("hello 'big world'").stdout == "Hello, big world!\n"
    assert shell.run_line(r"hello \u{48}i").stdout == "Hello, Hi!\n"


def test_cli_scope_does_not_leak_into_line_mode() -> None:
    shell = _config().cli_cmds(_hello_commands).cli_handler(_hello_handler).build()
    assert shell.run_args(["hello"]).status == 0
    assert isinstance(shell.run_line("hello").error, GrammarError)


def test_process_arguments_are_not_unescaped() -> None:
    shell = _hello_shell()
    result = shell.run_args(["hello", r"dir\new"])
    assert result.stdout == "Hello, dir\\new!\n"


def test_handlers_run_in_registration_order() -> None:
    calls: List[str] = []

    def first(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        calls.append("first")
        return None

    def second(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        calls.append("second")
        return CommandResult(stdout="second\n")

    def third(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        calls.append("third")
        return CommandResult(stdout="third\n")

    shell = (
        _config()
        .cli_cmds(lambda sub: sub.add_parser("greet"))
        .cli_handler(first)
        .cli_handler(second)
        .cli_handler(third)
        .build()
    )
    result = shell.run_args(["greet"])
    assert result.stdout == "second\n"
    assert calls == ["first", "second"]


def test_not_found_when_no_handler_claims_command() -> None:
    def decline(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        return None

    def refuse(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        raise CommandNotFoundError(matches.command)

    shell = (
        _config()
        .cli_cmds(lambda sub: sub.add_parser("greet"))
        .cli_handler(decline)
        .cli_handler(refuse)
        .build()
    )
    result = shell.run_args(["greet"])
    assert result.status == 127
    assert isinstance(result.error, CommandNotFoundError)
    assert result.error.command == "greet"
    assert "greet" in result.stderr

    with pytest.raises(CommandNotFoundError):
        shell.execute(["greet"])


def test_handler_receives_the_built_shell() -> None:
    seen: List[Shell] = []

    def capture(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        seen.append(shell)
        return CommandResult()

    shell = _config().cli_cmds(lambda sub: sub.add_parser("who")).cli_handler(capture).build()
    shell.run_args(["who"])
    assert seen == [shell]


def test_handler_entry_reports_released_shell() -> None:
    class _Owner:
        pass

    owner = _Owner()
    entry = HandlerEntry(lambda shell, matches: CommandResult(), weakref.ref(owner))
    del owner
    gc.collect()
    with pytest.raises(ShellInternalError):
        entry.invoke(argparse.Namespace(command="x"))


def test_built_shell_ignores_later_config_changes() -> None:
    config = _config()
    shell = config.build()
    config.cli_cmds(_hello_commands).cli_handler(_hello_handler)
    assert isinstance(shell.run_args(["hello"]).error, GrammarError)
    assert config.build().run_args(["hello"]).status == 0


def test_unknown_scope_is_rejected() -> None:
    with pytest.raises(ValueError):
        _config().command_group(handler=_hello_handler, scope="nowhere")


def test_shell_config_defaults_to_program_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.argv", ["/usr/local/bin/demo-shell", "version"])
    shell = shell_config().build()
    assert shell.name == "demo-shell"
    assert shell.pkg_name == "esh"


def test_run_reads_process_arguments(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    shell = _hello_shell()
    monkeypatch.setattr("sys.argv", ["test", "hello", "Bob"])
    assert shell.run() == 0
    assert capsys.readouterr().out == "Hello, Bob!\n"

    monkeypatch.setattr("sys.argv", ["test", "nosuchcmd"])
    assert shell.run() == 2
    assert "invalid choice" in capsys.readouterr().err


# -------------------- line mode -----------------------------------


def test_line_parse_errors_are_reported_per_line() -> None:
    shell = _hello_shell()
    result = shell.run_line('hello "unterminated')
    assert result.status == 2
    assert isinstance(result.error, LineParseError)
    assert isinstance(result.error.parse_error, UnterminatedQuoteError)
    assert shell.run_line("hello").status == 0


def test_blank_and_comment_lines_do_nothing() -> None:
    shell = _hello_shell()
    for line in ("", "   ", "# just a comment"):
        result = shell.run_line(line)
        assert result.status == 0
        assert result.stdout == ""
        assert result.error is None


# -------------------- VFS lookup and sharing ----------------------


def test_vfs_lookup_runs_once(tmp_path: Path) -> None:
    lookups: List[argparse.Namespace] = []

    def lookup(matches: argparse.Namespace) -> Vfs:
        lookups.append(matches)
        return _StaticVfs(tmp_path)

    shell = _config().vfs_lookup(lookup).build()
    assert shell.run_args(["version"]).status == 0
    assert shell.run_args(["pwd"]).status == 0
    assert len(lookups) == 1


def test_vfs_lookup_errors_are_returned() -> None:
    def lookup(matches: argparse.Namespace) -> Vfs:
        raise OSError("disk on fire")

    result = _config().vfs_lookup(lookup).build().run_args(["version"])
    assert result.status == 1
    assert isinstance(result.error, ShellInternalError)
    assert "disk on fire" in result.stderr


def test_poisoned_vfs_is_reported_as_internal_error(tmp_path: Path) -> None:
    shell = _config().vfs_lookup(lambda matches: _StaticVfs(tmp_path)).build()
    assert shell.run_args(["pwd"]).status == 0

    with pytest.raises(KeyError):
        with shell.vfs():
            raise KeyError("boom")

    result = shell.run_args(["pwd"])
    assert result.status == 1
    assert isinstance(result.error, ShellInternalError)


def test_shell_can_be_shared_between_threads(tmp_path: Path) -> None:
    shell = (
        _config()
        .shared_cmds(_hello_commands)
        .shared_handler(_hello_handler)
        .vfs_lookup(lambda matches: _StaticVfs(tmp_path))
        .build()
    )
    results: List[CommandResult] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        for argv in (["pwd"], ["hello", str(index)]):
            result = shell.run_args(argv)
            with lock:
                results.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 16
    assert all(result.status == 0 for result in results)
    assert sum(result.stdout == f"{tmp_path}\n" for result in results) == 8


def test_handler_may_call_back_into_the_shell_while_holding_the_vfs(tmp_path: Path) -> None:
    seen: List[CommandResult] = []

    def nested(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        with shell.vfs() as vfs:
            assert vfs is not None
            inner = shell.run_args(["pwd"])
            return CommandResult(stdout=f"{shell.has_vfs} {inner.stdout}")

    shell = (
        _config()
        .cli_cmds(lambda sub: sub.add_parser("nested"))
        .cli_handler(nested)
        .vfs_lookup(lambda matches: _StaticVfs(tmp_path))
        .build()
    )
    worker = threading.Thread(target=lambda: seen.append(shell.run_args(["nested"])), daemon=True)
    worker.start()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert len(seen) == 1
    assert seen[0].status == 0
    assert seen[0].stdout == f"True {tmp_path}\n"


def test_line_mode_never_runs_the_vfs_lookup(tmp_path: Path) -> None:
    lookups: List[argparse.Namespace] = []

    def lookup(matches: argparse.Namespace) -> Vfs:
        lookups.append(matches)
        return _StaticVfs(tmp_path)

    shell = _config().vfs_lookup(lookup).build()
    result = shell.run_line("pwd")
    assert isinstance(result.error, VfsNotConfiguredError)
    assert lookups == []

    assert shell.run_args(["version"]).status == 0
    assert shell.run_line("pwd").stdout == f"{tmp_path}\n"
    assert len(lookups) == 1


# -------------------- grammar assembly ----------------------------


def test_verbose_counts_before_and_after_command_add_up() -> None:
    seen: List[int] = []

    def record(shell: Shell, matches: argparse.Namespace) -> Optional[CommandResult]:
        seen.append(matches.verbose)
        assert not hasattr(matches, "subcommand_verbose")
        return CommandResult()

    shell = _config().cli_cmds(lambda sub: sub.add_parser("who")).cli_handler(record).build()
    for argv in (["-vv", "who", "-v"], ["who", "-vvv"], ["-v", "-v", "who", "--verbose"], ["who"]):
        assert shell.run_args(argv).status == 0, argv
    assert seen == [3, 3, 3, 0]
    assert shell.run_args(["-vv", "version", "-v"]).status == 0


@pytest.mark.parametrize("scope", ["shell", "shared"])
def test_user_command_colliding_with_builtin_is_rejected(scope: str) -> None:
    shell = _config().command_group(cmds=lambda sub: sub.add_parser("exit"), scope=scope).build()
    result = shell.run_line("exit")
    assert result.status == 1
    assert isinstance(result.error, ShellInternalError)
    assert "conflicting subparser: exit" in result.stderr
    assert not result.exit_requested


def test_user_command_alias_colliding_with_builtin_is_rejected() -> None:
    shell = _config().cli_cmds(lambda sub: sub.add_parser("ver", aliases=["version"])).build()
    result = shell.run_args(["ver"])
    assert isinstance(result.error, ShellInternalError)
    assert "conflicting subparser: version" in result.stderr
