from __future__ import annotations

import argparse
import dataclasses
import importlib
import json
import logging
import sys
from functools import partial
from typing import Any, Callable, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from subcall import (
    CallOptions,
    DecodeError,
    EncodeError,
    InfraError,
    Outcome,
    OutcomeStatus,
    run_async,
    run_code_async,
    run_command,
)

_CONSOLE = Console(no_color=False)

EXIT_OK = 0
EXIT_APPLICATION_ERROR = 1
EXIT_INFRA_ERROR = 2


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m scl")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {escape(message)}", border_style="red"))
        self.print_help()
        raise SystemExit(EXIT_INFRA_ERROR)


def _parse_literal(text: str) -> Any:
    """Read a CLI value as JSON, falling back to the raw string.

    Example:
        ```python
        assert _parse_literal("[1, 2]") == [1, 2]
        assert _parse_literal("hello") == "hello"
        ```
    """
    try:
        return json.loads(text)
    except ValueError:
        return text


def _parse_inputs(pairs: Sequence[str]) -> dict[str, Any]:
    """Turn repeated KEY=VALUE flags into snippet input data.

    Example:
        ```python
        assert _parse_inputs(["x=2", "name=ada"]) == {"x": 2, "name": "ada"}
        ```
    """
    data: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.isidentifier():
            raise ValueError(f"--input expects KEY=VALUE with a valid name, got {pair!r}")
        data[key] = _parse_literal(value)
    return data


def _resolve_target(spec: str, libpath: Sequence[str]) -> Callable[..., Any]:
    """Import the callable named by MODULE:QUALNAME.

    The libpath is also searched here because the function is pickled by
    reference and must import the same way on both sides.

    Example:
        ```python
        func = _resolve_target("json:dumps", [])
        ```
    """
    module_name, sep, qualname = spec.partition(":")
    if not sep or not module_name or not qualname:
        raise ValueError(f"target must look like MODULE:FUNC, got {spec!r}")
    for entry in reversed(libpath):
        if entry not in sys.path:
            sys.path.insert(0, entry)
    target: Any = importlib.import_module(module_name)
    for part in qualname.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{spec} is not callable")
    return target


def _configure_logging(level: str) -> None:
    """Send library logs to stderr through Rich.

    Example:
        ```python
        _configure_logging("DEBUG")
        ```
    """
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def build_options(args: argparse.Namespace) -> CallOptions:
    """Combine an optional options file with the command-line overrides.

    Example:
        ```python
        options = build_options(build_parser().parse_args(["exec", "result = 1"]))
        ```
    """
    options = CallOptions.from_file(args.options_file) if args.options_file else CallOptions()
    overrides: dict[str, Any] = {"config_path": None}
    if args.timeout_seconds is not None:
        overrides["timeout_seconds"] = args.timeout_seconds
    if args.libpath:
        overrides["libpath"] = [*options.libpath, *args.libpath]
    if args.preload:
        overrides["preload"] = [*options.preload, *args.preload]
    return dataclasses.replace(options, **overrides)


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser for one-shot calls, snippets and tools.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m scl",
        description=(
            "subcall CLI\n"
            "Run a function, a code snippet or an external tool in a child process\n"
            "and print the result together with everything it wrote."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m scl call math:factorial 10\n"
            "  python -m scl --libpath ./jobs call jobs:add 1 2\n"
            "  python -m scl exec 'result = x * 2' --input x=21\n"
            "  python -m scl --timeout-seconds 5 cmd ls -- -l /tmp"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Verbosity of library logs written to stderr (default: WARNING).",
    )
    parser.add_argument(
        "--options-file",
        help=(
            "TOML file with an [options] table.\n"
            "Flags below override the values it sets."
        ),
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        help="Kill the child after this many seconds (0 disables the timeout).",
    )
    parser.add_argument(
        "--libpath",
        action="append",
        default=[],
        metavar="DIR",
        help="Directory prepended to the module search path; repeatable.",
    )
    parser.add_argument(
        "--preload",
        action="append",
        default=[],
        metavar="MODULE",
        help="Module imported in the worker before the call; repeatable.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    call_cmd = sub.add_parser(
        "call",
        help="Call an importable function in a fresh worker.",
        description=(
            "Call MODULE:FUNC in a fresh worker process.\n"
            "Each argument is read as JSON when it parses, otherwise as a string."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scl call math:factorial 10\n"
            "  python -m scl call os.path:join /tmp '\"a b\"'"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    call_cmd.add_argument("target", metavar="MODULE:FUNC")
    call_cmd.add_argument("call_args", nargs="*", metavar="ARG")

    exec_cmd = sub.add_parser(
        "exec",
        help="Execute a code snippet and print its `result` variable.",
        description=(
            "Execute Python source in a fresh worker process.\n"
            "Inputs become variables; the snippet reports back by assigning `result`."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scl exec 'result = sum(range(n))' --input n=100"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    exec_cmd.add_argument("code")
    exec_cmd.add_argument(
        "--input",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Variable made available to the snippet; repeatable.",
    )

    cmd_cmd = sub.add_parser(
        "cmd",
        help="Run an external command and show its streams and exit status.",
        description=(
            "Run an external tool with the same timeout handling as calls.\n"
            "Put `--` before tool arguments that start with a dash."
        ),
        epilog=(
            "Examples:\n"
            "  python -m scl cmd echo hello\n"
            "  python -m scl cmd git -- status --short"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    cmd_cmd.add_argument("tool", metavar="COMMAND")
    cmd_cmd.add_argument("tool_args", nargs="*", metavar="ARG")

    return parser


def _print_streams(stdout: str, stderr: str) -> None:
    """Render captured output streams when they are not empty.

    Example:
        ```python
        _print_streams("hello\\n", "")
        ```
    """
    if stdout:
        _CONSOLE.print(Panel(Text(stdout.rstrip("\n")), title="stdout", border_style="cyan"))
    if stderr:
        _CONSOLE.print(Panel(Text(stderr.rstrip("\n")), title="stderr", border_style="magenta"))


def _print_outcome(outcome: Outcome) -> int:
    """Render an outcome and return the matching exit code.

    Example:
        ```python
        code = _print_outcome(call.outcome())
        ```
    """
    _print_streams(outcome.stdout, outcome.stderr)
    if outcome.status is OutcomeStatus.OK:
        _CONSOLE.print(Panel.fit(Pretty(outcome.value), title="Result", border_style="green"))
        return EXIT_OK
    if outcome.status is OutcomeStatus.APPLICATION_ERROR:
        error = outcome.error
        _CONSOLE.print(
            Panel(
                Text(error.trace.format().rstrip("\n")),
                title=f"[bold red]{escape(str(error))}[/bold red]",
                border_style="red",
            )
        )
        return EXIT_APPLICATION_ERROR
    _print_infra_error(outcome.error)
    return EXIT_INFRA_ERROR


def _print_infra_error(error: BaseException | None) -> None:
    """Render a failure of the worker or the transport around it.

    Example:
        ```python
        _print_infra_error(InfraError("worker was killed", reason="killed"))
        ```
    """
    _CONSOLE.print(
        Panel.fit(f"[bold yellow]Infra error:[/bold yellow] {escape(str(error))}", border_style="yellow")
    )


def _print_command_result(stdout: str, stderr: str, exit_status: int) -> None:
    """Render an external command's streams and exit status.

    Example:
        ```python
        _print_command_result("hi\\n", "", 0)
        ```
    """
    _print_streams(stdout, stderr)
    table = Table(title="Command")
    table.add_column("Exit status", style="cyan")
    table.add_row(str(exit_status))
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `scl` CLI command handler.

    Example:
        ```python
        code = main(["exec", "result = 6 * 7"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.log_level)
    try:
        options = build_options(args)
        if args.command == "call":
            func = _resolve_target(args.target, options.libpath)
            call_args = [_parse_literal(value) for value in args.call_args]
            return _print_outcome(run_async(func, call_args, options=options).outcome())
        if args.command == "exec":
            inputs = _parse_inputs(args.input)
            return _print_outcome(run_code_async(args.code, inputs, options=options).outcome())
        if args.command == "cmd":
            result = run_command(
                args.tool,
                args.tool_args,
                timeout_seconds=options.timeout_seconds,
                cwd=options.cwd,
                env=options.env or None,
            )
            _print_command_result(result.stdout, result.stderr, result.exit_status)
            return EXIT_OK if result.ok else EXIT_APPLICATION_ERROR
    except (ImportError, AttributeError, ValueError) as exc:
        parser.error(str(exc))
    except (InfraError, EncodeError, DecodeError) as exc:
        _print_infra_error(exc)
        return EXIT_INFRA_ERROR

    parser.error("Unhandled command")
    return EXIT_INFRA_ERROR
