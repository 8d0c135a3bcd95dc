"""Structured error types for the stack evaluator."""

from __future__ import annotations

from dataclasses import dataclass


class EvalError(Exception):
    """Base class for structured stack-jax errors."""


class ShapeMismatch(EvalError):
    """Shapes of the operands cannot be reconciled."""


class DomainError(EvalError):
    """An argument is outside the domain of the operation."""


class StackUnderflow(EvalError):
    """An instruction needed more values than the stack holds."""


class ResourceExceeded(EvalError):
    """An evaluation limit was hit."""


@dataclass(eq=False)
class NotInvertible(EvalError):
    """Inverse requested on a function that has none."""

    name: str
    reason: str | None = None

    def __str__(self) -> str:
        detail = f": {self.reason}" if self.reason else ""
        return f"{self.name!r} is not invertible{detail}"


@dataclass(eq=False)
class FormatMismatch(EvalError):
    """A subject string does not fit a template."""

    template: str
    position: int
    literal: str | None = None
    message: str | None = None

    def __str__(self) -> str:
        if self.message is not None:
            return f"{self.message} (template {self.template!r}, position {self.position})"
        return f"Literal {self.literal!r} of template {self.template!r} not found at position {self.position}"


def classify_runtime_exception(err: Exception) -> EvalError:
    """Best-effort classification of stray exceptions raised by jax kernels."""
    message = str(err)
    lowered = message.lower()

    shape_markers = (
        "shape",
        "rank",
        "broadcast",
        "axis",
        "length",
        "reshape",
        "incompatible",
    )
    if any(marker in lowered for marker in shape_markers):
        return ShapeMismatch(message)
    return DomainError(message)
