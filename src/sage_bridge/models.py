from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ValidationError


class OutputType(str, Enum):
    """Rendering requested for an evaluation result.

    Example:
        ```python
        kind = OutputType.parse("latex")
        ```
    """

    RAW = "RAW"
    LATEX = "LATEX"
    JSON = "JSON"
    HTML = "HTML"

    @classmethod
    def parse(cls, value: Any) -> "OutputType":
        """Convert a wire value into an OutputType, rejecting unknown names.

        Example:
            ```python
            OutputType.parse("RAW") is OutputType.RAW
            ```
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"outputType must be a string, got {type(value).__name__}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            expected = ", ".join(member.value for member in cls)
            raise ValidationError(
                f"unknown outputType '{value}'; expected one of {expected}"
            ) from None


@dataclass(frozen=True, slots=True)
class ExpressionRequest:
    """One expression to evaluate, handed verbatim to the engine.

    Example:
        ```python
        req = ExpressionRequest(code="1+1", output_type=OutputType.RAW)
        ```
    """

    code: str
    output_type: OutputType = OutputType.RAW

    @classmethod
    def from_payload(cls, payload: Any) -> "ExpressionRequest":
        """Build and validate a request from its wire dictionary.

        Example:
            ```python
            req = ExpressionRequest.from_payload({"code": "x + 1", "outputType": "RAW"})
            ```
        """
        if not isinstance(payload, dict):
            raise ValidationError("request must be a JSON object")
        code = payload.get("code")
        if code is None:
            raise ValidationError("code is required")
        if not isinstance(code, str):
            raise ValidationError("code must be a string")
        output_type = OutputType.parse(payload.get("outputType", OutputType.RAW.value))
        request = cls(code=code, output_type=output_type)
        request.validate()
        return request

    def validate(self) -> None:
        """Reject requests that must never reach a session.

        Example:
            ```python
            ExpressionRequest(code="", output_type=OutputType.RAW).validate()  # raises
            ```
        """
        if not self.code.strip():
            raise ValidationError("code must not be empty")
        if not isinstance(self.output_type, OutputType):
            raise ValidationError(f"unknown outputType '{self.output_type}'")


@dataclass(frozen=True, slots=True)
class ExpressionResponse:
    """Outcome of one evaluation, success or failure.

    Example:
        ```python
        resp = ExpressionResponse.ok(OutputType.RAW, "2", execution_time_ms=3)
        ```
    """

    type: OutputType
    value: str
    success: bool
    error: str | None
    execution_time_ms: int

    def __post_init__(self) -> None:
        """Enforce the success/error invariant and a non-negative duration.

        Example:
            ```python
            ExpressionResponse(OutputType.RAW, "", False, None, 0)  # raises ValueError
            ```
        """
        if self.success and self.error is not None:
            raise ValueError("successful response must not carry an error")
        if not self.success and not self.error:
            raise ValueError("failed response must carry an error message")
        if self.execution_time_ms < 0:
            raise ValueError("execution_time_ms must be non-negative")

    @classmethod
    def ok(cls, output_type: OutputType, value: str, *, execution_time_ms: int) -> "ExpressionResponse":
        """Build a successful response.

        Example:
            ```python
            resp = ExpressionResponse.ok(OutputType.LATEX, "\\frac{1}{2}", execution_time_ms=4)
            ```
        """
        return cls(output_type, value, True, None, max(0, int(execution_time_ms)))

    @classmethod
    def failure(
        cls,
        output_type: OutputType,
        error: str,
        *,
        execution_time_ms: int,
        value: str = "",
    ) -> "ExpressionResponse":
        """Build a failed response carrying a human-readable error.

        Example:
            ```python
            resp = ExpressionResponse.failure(OutputType.RAW, "code must not be empty", execution_time_ms=0)
            ```
        """
        return cls(output_type, value, False, error or "unknown error", max(0, int(execution_time_ms)))

    def to_payload(self) -> dict[str, Any]:
        """Return the wire dictionary for this response.

        Example:
            ```python
            body = resp.to_payload()  # {"type": "RAW", "value": "2", ...}
            ```
        """
        return {
            "type": self.type.value,
            "value": self.value,
            "success": self.success,
            "error": self.error,
            "executionTimeMs": self.execution_time_ms,
        }
