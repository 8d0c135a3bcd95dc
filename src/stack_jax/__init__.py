"""stack-jax public API."""

from .codec import Template, format_function
from .errors import (
    DomainError,
    EvalError,
    FormatMismatch,
    NotInvertible,
    ResourceExceeded,
    ShapeMismatch,
    StackUnderflow,
)
from .instructions import Call, Instruction, Invoke, Lambda, Modify, Prim, Push, stack_effect
from .machine import EvalLimits, EvalResult, StackMachine, evaluate, evaluate_result
from .modifiers import MODIFIERS, derive, invert, under_pair
from .primitives import PrimitiveTable, default_table
from .values import Array, Char, ElementKind, Function, Shape, Signature, UnderPair, Value, reshape, value_info

__all__ = [
    "evaluate",
    "evaluate_result",
    "EvalResult",
    "EvalLimits",
    "StackMachine",
    "Push",
    "Prim",
    "Invoke",
    "Lambda",
    "Call",
    "Modify",
    "Instruction",
    "stack_effect",
    "MODIFIERS",
    "derive",
    "invert",
    "under_pair",
    "PrimitiveTable",
    "default_table",
    "Template",
    "format_function",
    "Array",
    "Char",
    "ElementKind",
    "Function",
    "Shape",
    "Signature",
    "UnderPair",
    "Value",
    "reshape",
    "value_info",
    "EvalError",
    "ShapeMismatch",
    "DomainError",
    "StackUnderflow",
    "NotInvertible",
    "FormatMismatch",
    "ResourceExceeded",
]
