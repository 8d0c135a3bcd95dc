"""Stack machine executing instruction sequences, and the public evaluate API."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final, Iterable, Sequence

from .errors import DomainError, EvalError, ResourceExceeded, StackUnderflow, classify_runtime_exception
from .instructions import Call, Instruction, Invoke, Lambda, Modify, Prim, Push
from .modifiers import MODIFIERS, derive, lambda_function
from .primitives import PrimitiveTable, default_table
from .values import Array, Function, Value, as_value

logger = logging.getLogger(__name__)

_MAX_ELEMENTS: Final[int] = max(1, int(os.environ.get("STACK_JAX_MAX_ELEMENTS", "10000000")))
_MAX_DEPTH: Final[int] = max(1, int(os.environ.get("STACK_JAX_MAX_DEPTH", "256")))


@dataclass(frozen=True)
class EvalLimits:
    """Resource limits imposed on one evaluation."""

    max_elements: int = _MAX_ELEMENTS
    max_depth: int = _MAX_DEPTH


class StackMachine:
    """Operand stack plus the context stack used by ``under``.

    One machine belongs to one evaluation; values on it are immutable and
    may be shared, the stack itself may not.
    """

    def __init__(self, table: PrimitiveTable | None = None, limits: EvalLimits | None = None, *, depth: int = 0) -> None:
        self.table = default_table() if table is None else table
        self.limits = EvalLimits() if limits is None else limits
        self.stack: list[Value] = []
        self.context: list[object] = []
        self.depth = depth

    # Stack access

    def check_elements(self, count: int, *, where: str) -> None:
        if count > self.limits.max_elements:
            raise ResourceExceeded(f"{where}: array of {count} elements exceeds the limit of {self.limits.max_elements}")

    def push(self, value) -> None:
        value = as_value(value)
        if isinstance(value, Array):
            self.check_elements(value.size, where="push")
        self.stack.append(value)

    def push_n(self, values: Sequence[Value]) -> None:
        """Push ``values`` so that the first ends on top."""
        for value in reversed(values):
            self.push(value)

    def pop(self, *, where: str = "pop") -> Value:
        if not self.stack:
            raise StackUnderflow(f"{where} needs a value but the stack is empty")
        return self.stack.pop()

    def pop_n(self, count: int, *, where: str = "pop") -> list[Value]:
        """Pop ``count`` values, top of stack first."""
        if len(self.stack) < count:
            raise StackUnderflow(f"{where} needs {count} value(s) but the stack has {len(self.stack)}")
        return [self.stack.pop() for _ in range(count)]

    def peek(self, offset: int = 0, *, where: str = "peek") -> Value:
        if len(self.stack) <= offset:
            raise StackUnderflow(f"{where} needs {offset + 1} value(s) but the stack has {len(self.stack)}")
        return self.stack[-1 - offset]

    def peek_n(self, count: int, *, where: str = "peek") -> list[Value]:
        return [self.peek(i, where=where) for i in range(count)]

    def push_results(self, result, outputs: int, *, where: str) -> None:
        if outputs == 0:
            return
        if outputs == 1:
            self.push(result)
            return
        if not isinstance(result, tuple) or len(result) != outputs:
            raise DomainError(f"{where} must produce {outputs} values")
        self.push_n(result)

    def save_context(self, item: object) -> None:
        self.context.append(item)

    def restore_context(self, *, where: str = "under") -> object:
        if not self.context:
            raise DomainError(f"{where} has no saved context to restore")
        return self.context.pop()

    # Execution

    def call(self, function: Function) -> None:
        if self.depth >= self.limits.max_depth:
            raise ResourceExceeded(f"Call depth exceeds the limit of {self.limits.max_depth} in {function.name!r}")
        self.depth += 1
        try:
            if isinstance(function.body, tuple):
                for instr in function.body:
                    self.step(instr)
            else:
                function.body(self)
        finally:
            self.depth -= 1

    def apply(self, function: Function, *args: Value) -> tuple[Value, ...]:
        """Run ``function`` on a fresh stack holding ``args`` (top first)."""
        child = StackMachine(self.table, self.limits, depth=self.depth + 1)
        child.push_n(args)
        child.call(function)
        return tuple(child.pop_n(function.outputs, where=function.name))

    def step(self, instr: Instruction) -> None:
        if isinstance(instr, Push):
            self.push(instr.value)
        elif isinstance(instr, Prim):
            self.call(self.table[instr.name])
        elif isinstance(instr, Invoke):
            self.call(instr.function)
        elif isinstance(instr, Lambda):
            self.push(lambda_function(self.table, instr.body))
        elif isinstance(instr, Call):
            self.call(self._pop_function(where="call"))
        elif isinstance(instr, Modify):
            if instr.operands:
                self.call(derive(self.table, instr.name, instr.operands))
                return
            modifier = MODIFIERS.get(instr.name)
            if modifier is None:
                raise DomainError(f"Unknown modifier {instr.name!r}")
            operands = [self._pop_function(where=instr.name) for _ in range(modifier.arity)]
            self.push(modifier.derive(self.table, *reversed(operands)))
        else:
            raise DomainError(f"Unknown instruction {instr!r}")

    def _pop_function(self, *, where: str) -> Function:
        value = self.pop(where=where)
        if not isinstance(value, Function):
            raise DomainError(f"{where} expects a function on the stack")
        return value

    def run(self, instructions: Iterable[Instruction]) -> list[Value]:
        for instr in instructions:
            try:
                self.step(instr)
            except EvalError:
                logger.debug("evaluation failed at %r", instr)
                raise
            except (ValueError, TypeError, IndexError, ArithmeticError) as err:
                logger.debug("classifying %s raised at %r", type(err).__name__, instr)
                raise classify_runtime_exception(err) from err
        return list(self.stack)


@dataclass(frozen=True)
class EvalResult:
    """Outcome of ``evaluate_result``: the final stack or the error."""

    stack: tuple[Value, ...] = ()
    error: EvalError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> tuple[Value, ...]:
        if self.error is not None:
            raise self.error
        return self.stack


def evaluate(
    instructions: Iterable[Instruction],
    initial_stack: Iterable[object] = (),
    *,
    table: PrimitiveTable | None = None,
    limits: EvalLimits | None = None,
) -> list[Value]:
    """Run ``instructions`` on a stack seeded bottom first from ``initial_stack``."""
    machine = StackMachine(table, limits)
    for value in initial_stack:
        machine.push(value)
    return machine.run(instructions)


def evaluate_result(
    instructions: Iterable[Instruction],
    initial_stack: Iterable[object] = (),
    *,
    table: PrimitiveTable | None = None,
    limits: EvalLimits | None = None,
) -> EvalResult:
    """Like ``evaluate`` but reports evaluation errors as a value."""
    try:
        stack = evaluate(instructions, initial_stack, table=table, limits=limits)
    except EvalError as err:
        return EvalResult(error=err)
    return EvalResult(stack=tuple(stack))
