from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

import uvicorn
from jupyter_client.kernelspec import KernelSpecManager
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter
from sage_bridge import Bridge, BridgeSettings, SessionStartError, load_settings
from sage_bridge.execution.batch import batch_execution_time_ms
from sage_bridge.models import OutputType
from sage_bridge.server import create_app

_CONSOLE = Console(no_color=False)
_ERR_CONSOLE = Console(stderr=True)


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
        parser = _RichArgumentParser(prog="python -m sbridge")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the sage-bridge service.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m sbridge",
        description=(
            "sage-bridge CLI\n"
            "Serve or query pooled SageMath engine sessions.\n"
            "Sessions keep their interpreter state between expressions."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m sbridge serve --port 8080\n"
            "  python -m sbridge eval 'factor(2^32 + 1)'\n"
            "  python -m sbridge eval 'x^2' --output-type LATEX\n"
            "  python -m sbridge batch expressions.txt\n"
            "  python -m sbridge kernels\n\n"
            "Backend Examples:\n"
            "  python -m sbridge --config bridge.toml serve\n"
            "  python -m sbridge --backend process eval '1+1'"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a TOML settings file.\n"
            "Falls back to $SAGE_BRIDGE_CONFIG, then built-in defaults."
        ),
    )
    parser.add_argument(
        "--backend",
        choices=["kernel", "process"],
        help="Override the session backend (kernel: Jupyter, process: JSON-lines worker).",
    )
    parser.add_argument(
        "--pool-size",
        type=int,
        help="Override the number of pooled engine sessions.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    serve_cmd = sub.add_parser(
        "serve",
        help="Run the HTTP bridge.",
        description=(
            "Start the session pool and serve /health, /execute and /batch.\n"
            "Application errors are returned with HTTP 200 and success=false."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    serve_cmd.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080).")

    eval_cmd = sub.add_parser(
        "eval",
        help="Evaluate one expression and print the response.",
        description="Start a bridge, evaluate one expression, shut the bridge down.",
        epilog=(
            "Examples:\n"
            "  python -m sbridge eval '1+1'\n"
            "  python -m sbridge eval 'matrix([[1,2],[3,4]])' --output-type LATEX"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    eval_cmd.add_argument("code")
    _add_request_options(eval_cmd)

    batch_cmd = sub.add_parser(
        "batch",
        help="Evaluate a file of expressions on one shared session.",
        description=(
            "Read a JSON array of requests, or one expression per line,\n"
            "and evaluate them in order on a single session."
        ),
        epilog=(
            "Examples:\n"
            "  python -m sbridge batch expressions.txt\n"
            "  python -m sbridge batch requests.json --timeout 60"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    batch_cmd.add_argument("path")
    _add_request_options(batch_cmd)

    sub.add_parser(
        "kernels",
        help="List installed Jupyter kernels.",
        description="Show kernelspecs usable as `kernel_name` for the kernel backend.",
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def _add_request_options(command: argparse.ArgumentParser) -> None:
    """Attach the per-request flags shared by `eval` and `batch`.

    Example:
        ```python
        _add_request_options(eval_cmd)
        ```
    """
    command.add_argument(
        "--output-type",
        default=OutputType.RAW.value,
        help="Rendering: RAW, LATEX, JSON or HTML (default: RAW).",
    )
    command.add_argument(
        "--timeout",
        type=float,
        help="Per-expression timeout in seconds (default: from settings).",
    )


def _configure_logging(level: str) -> None:
    """Route library logging through Rich on stderr.

    Example:
        ```python
        _configure_logging("INFO")
        ```
    """
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_ERR_CONSOLE, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def build_settings(args: argparse.Namespace) -> BridgeSettings:
    """Resolve settings from --config/environment plus CLI overrides.

    Example:
        ```python
        settings = build_settings(args)
        ```
    """
    settings = load_settings(args.config)
    overrides: dict[str, Any] = {}
    if args.backend:
        overrides["backend"] = args.backend
    if args.pool_size is not None:
        overrides["pool_size"] = args.pool_size
    return replace(settings, **overrides) if overrides else settings


def _read_batch_file(path: str, output_type: str) -> list[Any]:
    """Load batch requests from a JSON array or a one-expression-per-line file.

    Example:
        ```python
        payload = _read_batch_file("expressions.txt", "RAW")
        ```
    """
    text = Path(path).read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        loaded = json.loads(text)
        if not isinstance(loaded, list):
            raise ValueError("Batch JSON must be an array")
        return loaded
    return [
        {"code": line, "outputType": output_type}
        for line in text.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]


def _print_batch(payload: list[Any], rows: list[dict[str, Any]]) -> None:
    """Render batch responses in a rich table.

    Example:
        ```python
        _print_batch([{"code": "1+1"}], [{"success": True, "value": "2", "error": None, "executionTimeMs": 1}])
        ```
    """
    table = Table(title="Batch Results")
    table.add_column("#", style="cyan")
    table.add_column("Code", style="magenta")
    table.add_column("OK")
    table.add_column("Value / Error")
    table.add_column("ms", justify="right")
    for index, (item, row) in enumerate(zip(payload, rows), start=1):
        code = item.get("code", "") if isinstance(item, dict) else str(item)
        shown = escape(str(row["value"])) if row["success"] else f"[red]{escape(str(row['error']))}[/red]"
        table.add_row(
            str(index),
            escape(str(code)),
            "yes" if row["success"] else "no",
            shown,
            str(row["executionTimeMs"]),
        )
    _CONSOLE.print(table)


def _print_kernels(specs: dict[str, Any]) -> None:
    """Render installed kernelspecs in a rich table.

    Example:
        ```python
        _print_kernels({"sagemath": {"resource_dir": "/usr/share/jupyter/kernels/sagemath", "spec": {}}})
        ```
    """
    table = Table(title="Jupyter Kernels")
    table.add_column("Name", style="cyan")
    table.add_column("Display Name", style="magenta")
    table.add_column("Language")
    table.add_column("Path")
    for name, entry in sorted(specs.items()):
        spec = entry.get("spec", {})
        table.add_row(
            name,
            str(spec.get("display_name", "")),
            str(spec.get("language", "")),
            str(entry.get("resource_dir", "")),
        )
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `sbridge` CLI command handler.

    Example:
        ```python
        code = main(["eval", "1+1"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.log_level)

    if args.command == "kernels":
        specs = KernelSpecManager().get_all_specs()
        if not specs:
            _CONSOLE.print(Panel.fit("No Jupyter kernels installed.", style="bold yellow"))
            return 0
        _print_kernels(specs)
        return 0

    try:
        settings = build_settings(args)
    except ValueError as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Invalid settings:[/bold red] {exc}", border_style="red"))
        return 2

    if args.command == "serve":
        app = create_app(settings=settings)
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)
        return 0

    if args.command == "eval":
        try:
            with Bridge.from_settings(settings) as bridge:
                response = bridge.handle_execute_payload(
                    {"code": args.code, "outputType": args.output_type},
                    timeout=args.timeout,
                )
        except SessionStartError as exc:
            _CONSOLE.print(Panel.fit(f"[bold red]Engine unavailable:[/bold red] {exc}", border_style="red"))
            return 1
        payload = response.to_payload()
        style = "green" if response.success else "red"
        _CONSOLE.print(Panel.fit(Pretty(payload), title="Response", border_style=style))
        return 0 if response.success else 1

    if args.command == "batch":
        try:
            payload = _read_batch_file(args.path, args.output_type)
        except (OSError, ValueError) as exc:
            _CONSOLE.print(Panel.fit(f"[bold red]Cannot read batch:[/bold red] {exc}", border_style="red"))
            return 2
        if not payload:
            _CONSOLE.print(Panel.fit("Batch file contains no expressions.", style="bold yellow"))
            return 0
        try:
            with Bridge.from_settings(settings) as bridge:
                responses = bridge.handle_batch_payload(payload, timeout=args.timeout)
        except SessionStartError as exc:
            _CONSOLE.print(Panel.fit(f"[bold red]Engine unavailable:[/bold red] {exc}", border_style="red"))
            return 1
        _print_batch(payload, [response.to_payload() for response in responses])
        failed = sum(1 for response in responses if not response.success)
        _CONSOLE.print(
            Panel.fit(
                f"{len(responses)} expression(s), {failed} failed, "
                f"{batch_execution_time_ms(responses)} ms total",
                style="bold green" if failed == 0 else "bold yellow",
            )
        )
        return 0 if failed == 0 else 1

    parser.error("Unhandled command")
    return 2
