"""Instruction nodes consumed by the stack machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from .errors import DomainError
from .values import Function, Signature, Value, as_value


@dataclass(frozen=True)
class Push:
    value: Value

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", as_value(self.value))


@dataclass(frozen=True)
class Prim:
    name: str


@dataclass(frozen=True)
class Invoke:
    function: Function


@dataclass(frozen=True)
class Lambda:
    body: tuple["Instruction", ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "body", tuple(self.body))


@dataclass(frozen=True)
class Call:
    pass


Operand = Union[Function, str, tuple["Instruction", ...]]


@dataclass(frozen=True)
class Modify:
    """Modifier application.

    With ``operands`` the derived function runs at once; without, the
    operands are popped from the stack and the derived function is pushed.
    """

    name: str
    operands: tuple[Operand, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "operands",
            tuple(tuple(op) if isinstance(op, list) else op for op in self.operands),
        )


Instruction = Union[Push, Prim, Invoke, Lambda, Call, Modify]


def stack_effect(body: tuple[Instruction, ...], resolve: Callable[[Instruction], Function]) -> Signature:
    """Infer the signature of an instruction sequence.

    ``resolve`` maps a function-valued instruction to its Function.
    """
    effect = Signature(0, 0)
    for instr in body:
        if isinstance(instr, (Push, Lambda)):
            step = Signature(0, 1)
        elif isinstance(instr, (Prim, Invoke, Modify)):
            if isinstance(instr, Modify) and not instr.operands:
                raise DomainError(f"Cannot infer the signature of a stack-operand modifier {instr.name!r}")
            step = resolve(instr).signature
        elif isinstance(instr, Call):
            raise DomainError("Cannot infer the signature of a dynamic call")
        else:
            raise DomainError(f"Unknown instruction {instr!r}")
        effect = effect.then(step)
    return effect
