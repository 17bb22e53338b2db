from __future__ import annotations

import argparse
import ast
import builtins
import contextlib
import io
import json
import sys
import traceback
from typing import Any, TextIO

_NO_VALUE = object()


def _normalize_system_exit(exit_code: Any) -> dict[str, Any] | None:
    """Map a SystemExit raised by user code to an error record, or None for a clean exit.

    Example:
        ```python
        _normalize_system_exit(3)  # {"ename": "SystemExit", "evalue": "3", ...}
        ```
    """
    if exit_code in (None, 0):
        return None
    return {"ename": "SystemExit", "evalue": str(exit_code), "traceback": []}


def _run_cell(code: str, namespace: dict[str, Any]) -> Any:
    """Execute a cell like an interactive prompt and return its last expression value.

    Example:
        ```python
        ns = {}
        _run_cell("x = 5\\nx + 1", ns)  # 6
        ```
    """
    tree = ast.parse(code, filename="<cell>", mode="exec")
    last_expr: ast.Expression | None = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last_expr = ast.Expression(body=tree.body.pop().value)
    exec(compile(tree, "<cell>", "exec"), namespace, namespace)
    if last_expr is None:
        return _NO_VALUE
    return eval(compile(last_expr, "<cell>", "eval"), namespace, namespace)


def _error_record(exc: BaseException) -> dict[str, Any]:
    """Describe an exception raised by user code as a protocol error record.

    Example:
        ```python
        _error_record(ValueError("bad"))  # {"ename": "ValueError", "evalue": "bad", ...}
        ```
    """
    return {
        "ename": type(exc).__name__,
        "evalue": str(exc),
        "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
    }


def _truncate(text: str, max_bytes: int) -> str:
    """Cut text to at most max_bytes of UTF-8 without splitting a character.

    Example:
        ```python
        _truncate("héllo", 2)  # "h"
        ```
    """
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def _latex_of(value: Any, namespace: dict[str, Any]) -> str | None:
    """Return a LaTeX rendering of a value when the engine knows one.

    A hook that raises is treated as no rendering.

    Example:
        ```python
        _latex_of(sage_value, namespace)  # "\\frac{1}{2}"
        ```
    """
    try:
        hook = getattr(value, "_latex_", None)
        if callable(hook):
            return str(hook())
        hook = getattr(value, "_repr_latex_", None)
        if callable(hook):
            rendered = hook()
            return None if rendered is None else str(rendered)
        latex = namespace.get("latex")
        if callable(latex):
            return str(latex(value))
    except Exception:
        return None
    return None


def _html_of(value: Any) -> str | None:
    """Return an HTML rendering of a value when it provides one.

    Example:
        ```python
        _html_of(dataframe)
        ```
    """
    try:
        hook = getattr(value, "_repr_html_", None)
        if callable(hook):
            rendered = hook()
            return None if rendered is None else str(rendered)
    except Exception:
        return None
    return None


def _mime_bundle(value: Any, namespace: dict[str, Any]) -> dict[str, Any]:
    """Build the MIME bundle describing a result value.

    Example:
        ```python
        bundle = _mime_bundle(2, {})  # {"text/plain": "2", "application/json": 2}
        ```
    """
    bundle: dict[str, Any] = {"text/plain": repr(value)}
    latex = _latex_of(value, namespace)
    if latex is not None:
        bundle["text/latex"] = latex
    html = _html_of(value)
    if html is not None:
        bundle["text/html"] = html
    if value is None or isinstance(value, (bool, int, float, str, list, dict)):
        try:
            bundle["application/json"] = json.loads(json.dumps(value))
        except (TypeError, ValueError):
            pass
    return bundle


def _evaluate(
    code: str,
    namespace: dict[str, Any],
    *,
    preparse: bool,
    max_output_bytes: int,
) -> dict[str, Any]:
    """Evaluate one cell and return the reply fields (without the request id).

    Exceptions from the cell or from rendering its value (a raising `__repr__`)
    become the reply's error record; the namespace stays usable.

    Example:
        ```python
        reply = _evaluate("1+1", {}, preparse=False, max_output_bytes=1024)
        ```
    """
    stdout_buffer = io.StringIO()
    stderr_buffer = io.StringIO()
    error: dict[str, Any] | None = None
    bundle: dict[str, Any] | None = None

    try:
        with contextlib.redirect_stdout(stdout_buffer), contextlib.redirect_stderr(stderr_buffer):
            source = code
            preparser = namespace.get("preparse")
            if preparse and callable(preparser):
                source = str(preparser(code))
            value = _run_cell(source, namespace)
            if value is not _NO_VALUE and value is not None:
                namespace["_"] = value
                bundle = _mime_bundle(value, namespace)
    except SyntaxError as exc:
        error = {"ename": "SyntaxError", "evalue": str(exc), "traceback": []}
    except SystemExit as exc:
        error = _normalize_system_exit(exc.code)
    except KeyboardInterrupt:
        error = {"ename": "KeyboardInterrupt", "evalue": "interrupted", "traceback": []}
    except Exception as exc:
        error = _error_record(exc)

    reply: dict[str, Any] = {
        "ok": error is None,
        "text": None,
        "data": {},
        "stdout": _truncate(stdout_buffer.getvalue(), max_output_bytes),
        "stderr": _truncate(stderr_buffer.getvalue(), max_output_bytes),
        "error": error,
    }
    if error is None and bundle is not None:
        reply["text"] = bundle["text/plain"]
        reply["data"] = bundle
    return reply


def _write(stream: TextIO, message: dict[str, Any]) -> None:
    """Write one protocol line.

    Example:
        ```python
        _write(sys.stdout, {"ready": True})
        ```
    """
    stream.write(json.dumps(message, default=str) + "\n")
    stream.flush()


def _build_parser() -> argparse.ArgumentParser:
    """Build the worker's argument parser.

    Example:
        ```python
        args = _build_parser().parse_args(["--preamble", "from sage.all import *"])
        ```
    """
    parser = argparse.ArgumentParser(description="sage-bridge persistent evaluation worker")
    parser.add_argument("--preamble", default="", help="Code executed once before serving requests.")
    parser.add_argument(
        "--preparse",
        action="store_true",
        help="Pass each cell through the namespace's `preparse` (Sage syntax).",
    )
    parser.add_argument("--max-output-kb", type=int, default=1024)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Serve JSON-lines evaluation requests on stdin until EOF.

    Example:
        ```python
        # echo '{"id": 1, "code": "1+1"}' | python worker.py
        ```
    """
    args = _build_parser().parse_args(argv)
    protocol = sys.stdout
    namespace: dict[str, Any] = {"__name__": "__main__", "__builtins__": builtins}
    execution_count = 0

    if args.preamble:
        try:
            with contextlib.redirect_stdout(io.StringIO()):
                exec(compile(args.preamble, "<preamble>", "exec"), namespace, namespace)
        except Exception as exc:
            _write(protocol, {"ready": False, "error": f"{type(exc).__name__}: {exc}"})
            return 1
    _write(protocol, {"ready": True})

    while True:
        try:
            line = sys.stdin.readline()
        except KeyboardInterrupt:
            continue
        if not line:
            return 0
        if not line.strip():
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            _write(protocol, {"id": None, "ok": False, "error": {"ename": "ProtocolError", "evalue": str(exc)}})
            continue
        execution_count += 1
        try:
            reply = _evaluate(
                str(request.get("code", "")),
                namespace,
                preparse=args.preparse,
                max_output_bytes=args.max_output_kb * 1024,
            )
        except KeyboardInterrupt:
            reply = {
                "ok": False,
                "text": None,
                "data": {},
                "stdout": "",
                "stderr": "",
                "error": {"ename": "KeyboardInterrupt", "evalue": "interrupted", "traceback": []},
            }
        reply["id"] = request.get("id")
        reply["execution_count"] = execution_count
        _write(protocol, reply)


if __name__ == "__main__":
    raise SystemExit(main())
