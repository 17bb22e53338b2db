"""Rendering of engine output into the requested OutputType.

Each OutputType maps to one renderer; `register_renderer` swaps or adds a
strategy without touching the evaluator.
"""

from __future__ import annotations

import ast
import json
from typing import Any, Callable

from .errors import RenderError
from .execution.types import EngineOutput
from .models import OutputType

Renderer = Callable[[EngineOutput], str]


def render_raw(output: EngineOutput) -> str:
    """Return the plain-text result, or captured stdout for statements.

    Example:
        ```python
        render_raw(EngineOutput(text="2"))  # "2"
        ```
    """
    if output.text is not None:
        return output.text
    return output.stdout


def _strip_math_delimiters(text: str) -> str:
    """Remove surrounding `$`, `$$`, `\\(`/`\\)` or `\\[`/`\\]` delimiters.

    Example:
        ```python
        _strip_math_delimiters("$\\frac{1}{2}$")  # "\\frac{1}{2}"
        ```
    """
    stripped = text.strip()
    for opener, closer in (("$$", "$$"), ("$", "$"), ("\\(", "\\)"), ("\\[", "\\]")):
        if len(stripped) > len(opener) + len(closer) - 1 and stripped.startswith(opener) and stripped.endswith(closer):
            return stripped[len(opener) : len(stripped) - len(closer)].strip()
    return stripped


def render_latex(output: EngineOutput) -> str:
    """Return the engine's LaTeX representation of the result.

    Example:
        ```python
        render_latex(EngineOutput(data={"text/latex": "$x^{2}$"}))  # "x^{2}"
        ```
    """
    latex = output.data.get("text/latex")
    if latex is None:
        raise RenderError("engine produced no LaTeX representation for this result")
    if isinstance(latex, list):
        latex = "".join(str(part) for part in latex)
    return _strip_math_delimiters(str(latex))


def _parse_literal(text: str) -> Any:
    """Parse plain result text as JSON first, then as a Python literal.

    Example:
        ```python
        _parse_literal("[1, 2, (3, 4)]")  # [1, 2, [3, 4]]
        ```
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return ast.literal_eval(text)
    except (ValueError, SyntaxError, MemoryError, RecursionError) as exc:
        raise RenderError(f"result is not representable as JSON: {text[:80]!r}") from exc


def render_json(output: EngineOutput) -> str:
    """Return the result serialized as a JSON document.

    Example:
        ```python
        render_json(EngineOutput(text="{'a': 1}"))  # '{"a": 1}'
        ```
    """
    if "application/json" in output.data:
        value = output.data["application/json"]
    elif output.text is not None:
        value = _parse_literal(output.text)
    else:
        raise RenderError("engine produced no result to render as JSON")
    try:
        return json.dumps(value, sort_keys=False)
    except (TypeError, ValueError) as exc:
        raise RenderError(f"result is not representable as JSON: {exc}") from exc


def render_html(output: EngineOutput) -> str:
    """Return the engine's HTML representation of the result.

    Example:
        ```python
        render_html(EngineOutput(data={"text/html": "<b>2</b>"}))
        ```
    """
    html = output.data.get("text/html")
    if html is None:
        raise RenderError("engine produced no HTML representation for this result")
    if isinstance(html, list):
        return "".join(str(part) for part in html)
    return str(html)


_RENDERERS: dict[OutputType, Renderer] = {
    OutputType.RAW: render_raw,
    OutputType.LATEX: render_latex,
    OutputType.JSON: render_json,
    OutputType.HTML: render_html,
}


def register_renderer(output_type: OutputType, renderer: Renderer) -> None:
    """Install the rendering strategy for an output type.

    Example:
        ```python
        register_renderer(OutputType.RAW, lambda out: (out.text or "").strip())
        ```
    """
    _RENDERERS[output_type] = renderer


def render(output: EngineOutput, output_type: OutputType) -> str:
    """Render engine output according to the requested type.

    Example:
        ```python
        value = render(EngineOutput(text="2"), OutputType.RAW)
        ```
    """
    renderer = _RENDERERS.get(output_type)
    if renderer is None:
        raise RenderError(f"no renderer registered for output type {output_type.value}")
    return renderer(output)
