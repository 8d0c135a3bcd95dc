"""Higher-order transforms over function values, including automatic inversion."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Final, Mapping, Union

from .errors import DomainError, NotInvertible
from .grouping import group_runs, split_runs
from .instructions import Call, Instruction, Invoke, Lambda, Modify, Operand, Prim, Push, stack_effect
from .values import Array, ElementKind, Function, Signature, UnderPair

if TYPE_CHECKING:
    from .primitives import PrimitiveTable

logger = logging.getLogger(__name__)

# Inverses of reductions, by the name of the reduced function.
_REDUCE_INVERSES: Final[dict[str, str]] = {"multiply": "primes"}


def resolve_instruction(table: "PrimitiveTable", instr: Instruction) -> Function:
    if isinstance(instr, Prim):
        return table[instr.name]
    if isinstance(instr, Invoke):
        return instr.function
    if isinstance(instr, Modify) and instr.operands:
        return derive(table, instr.name, instr.operands)
    raise DomainError(f"Instruction {instr!r} does not name a function")


def lambda_function(table: "PrimitiveTable", body, *, name: str = "lambda") -> Function:
    body = tuple(body)
    if any(isinstance(instr, Call) or (isinstance(instr, Modify) and not instr.operands) for instr in body):
        # Stack effect depends on runtime values; callers see |0.0.
        return Function(name=name, signature=Signature(0, 0), body=body, kind="dynamic")
    signature = stack_effect(body, lambda instr: resolve_instruction(table, instr))
    return Function(name=name, signature=signature, body=body, kind="lambda")


def as_function(table: "PrimitiveTable", operand: Operand) -> Function:
    if isinstance(operand, Function):
        return operand
    if isinstance(operand, str):
        return table[operand]
    return lambda_function(table, operand)


def _truthy(value: Array, *, where: str) -> bool:
    if value.kind is not ElementKind.NUMBER or not value.is_scalar:
        raise DomainError(f"{where} predicate must return a scalar number")
    return bool(value.data.item())


# Inversion


@dataclass(frozen=True)
class _Unit:
    """A function together with the literal parameters pushed right before it."""

    params: tuple[Push, ...]
    function: Function


def _units(table: "PrimitiveTable", body: tuple[Instruction, ...]) -> list[_Unit]:
    units: list[_Unit] = []
    pending: list[Push] = []
    for instr in body:
        if isinstance(instr, Push) and isinstance(instr.value, Array):
            pending.append(instr)
            continue
        if isinstance(instr, (Push, Lambda, Call)) or (isinstance(instr, Modify) and not instr.operands):
            raise NotInvertible("call", "dynamic function values cannot be inverted")
        units.append(_Unit(tuple(pending), resolve_instruction(table, instr)))
        pending = []
    if pending:
        raise NotInvertible("literal", "a pushed constant is never consumed")
    return units


def resolve_inverse(table: "PrimitiveTable", function: Function) -> Function | None:
    inverse = function.inverse
    if inverse is None or isinstance(inverse, Function):
        return inverse
    if isinstance(inverse, str):
        return table[inverse]
    return inverse()


def _invert_body(table: "PrimitiveTable", function: Function) -> Function:
    steps: list[Instruction] = []
    for unit in reversed(_units(table, function.body)):
        inverse = invert(table, unit.function)
        wanted = unit.function.parametric
        if len(unit.params) > wanted:
            raise NotInvertible("literal", f"{unit.function.name!r} takes {wanted} literal parameter(s)")
        if len(unit.params) < wanted:
            raise NotInvertible(unit.function.name, "parameters must be literals to invert")
        steps.extend(unit.params)
        steps.append(Invoke(inverse))
    logger.debug("synthesised inverse of %s from %d unit(s)", function.name, len(steps))
    return lambda_function(table, steps, name=f"invert({function.name})")


def invert(table: "PrimitiveTable", function: Function) -> Function:
    """Inverse of ``function``: registered, derived from its modifier, or
    synthesised by inverting each step of its body in reverse order."""
    inverse = resolve_inverse(table, function)
    if inverse is not None:
        return inverse
    if function.derivation:
        kind, *operands = function.derivation
        if kind == "under":
            transform, action = operands
            return under(table, transform, invert(table, action))
        if kind == "each":
            return each(table, invert(table, operands[0]))
    if isinstance(function.body, tuple):
        return _invert_body(table, function)
    raise NotInvertible(function.name)


def _saved_parameter_pair(function: Function, inverse: Function) -> UnderPair:
    count = function.parametric
    if count == 0:
        return UnderPair(before=function, after=inverse)

    def before(machine) -> None:
        machine.save_context(tuple(machine.peek_n(count, where=function.name)))
        machine.call(function)

    def after(machine) -> None:
        machine.push_n(machine.restore_context(where=function.name))
        machine.call(inverse)

    return UnderPair(
        before=Function(f"{function.name} (before)", function.signature, before, kind="under"),
        after=Function(f"{function.name} (after)", Signature(max(0, inverse.args - count), inverse.outputs), after, kind="under"),
    )


def _body_under_pair(table: "PrimitiveTable", function: Function) -> UnderPair:
    befores: list[Instruction] = []
    afters: list[Instruction] = []
    for unit in _units(table, function.body):
        pair = under_pair(table, unit.function)
        befores.extend(unit.params)
        befores.append(Invoke(pair.before))
        afters.insert(0, Invoke(pair.after))
    return UnderPair(
        before=lambda_function(table, befores, name=f"{function.name} (before)"),
        after=lambda_function(table, afters, name=f"{function.name} (after)"),
    )


def under_pair(table: "PrimitiveTable", function: Function) -> UnderPair:
    if function.under is not None:
        return function.under
    if isinstance(function.body, tuple) and function.inverse is None and not function.derivation:
        return _body_under_pair(table, function)
    return _saved_parameter_pair(function, invert(table, function))


# Modifiers


def compose(table: "PrimitiveTable", first: Function, second: Function) -> Function:
    body = (Invoke(first), Invoke(second))
    return Function(
        name=f"compose({first.name}, {second.name})",
        signature=first.signature.then(second.signature),
        body=body,
        kind="derived",
    )


def under(table: "PrimitiveTable", transform: Function, action: Function) -> Function:
    """Run ``transform``, then ``action`` on its result, then undo ``transform``."""
    pair = under_pair(table, transform)
    body = (Invoke(pair.before), Invoke(action), Invoke(pair.after))
    return Function(
        name=f"under({transform.name}, {action.name})",
        signature=pair.before.signature.then(action.signature).then(pair.after.signature),
        body=body,
        kind="derived",
        derivation=("under", transform, action),
    )


def on(table: "PrimitiveTable", function: Function) -> Function:
    """Keep a copy of the top argument above the outputs."""

    def body(machine) -> None:
        kept = machine.peek(where=f"on({function.name})")
        machine.call(function)
        machine.push(kept)

    # A nullary operand leaves its input in place beneath the outputs.
    extra = 1 if function.args else 2
    signature = Signature(max(1, function.args), function.outputs + extra)
    return Function(name=f"on({function.name})", signature=signature, body=body, kind="derived")


def by(table: "PrimitiveTable", function: Function) -> Function:
    """Keep a copy of the deepest argument beneath the outputs."""
    depth = max(1, function.args)

    def body(machine) -> None:
        name = f"by({function.name})"
        kept = machine.peek(depth - 1, where=name)
        machine.call(function)
        outputs = machine.pop_n(function.outputs, where=name)
        machine.push(kept)
        machine.push_n(outputs)

    signature = Signature(depth, function.outputs + (1 if function.args else 2))
    return Function(name=f"by({function.name})", signature=signature, body=body, kind="derived")


def fold_rows(machine, function: Function, value: Array) -> Array:
    if value.is_scalar:
        return value
    rows = value.rows() if value.shape[0] else []
    if not rows:
        if function.identity is not None:
            return function.identity
        raise DomainError(f"Cannot reduce an empty array with {function.name!r}: no identity")
    acc = rows[0]
    for row in rows[1:]:
        (acc,) = machine.apply(function, row, acc)
    return acc


def reduce(table: "PrimitiveTable", function: Function) -> Function:
    """Fold a dyadic function left to right over the rows of an array."""
    if function.signature != Signature(2, 1):
        raise DomainError(f"reduce needs a function of signature |2.1, got {function.signature}")
    name = f"reduce({function.name})"

    def body(machine) -> None:
        value = machine.pop(where=name)
        machine.push(fold_rows(machine, function, value))

    return Function(
        name=name,
        signature=Signature(1, 1),
        body=body,
        inverse=_REDUCE_INVERSES.get(function.name),
        kind="derived",
    )


def each(table: "PrimitiveTable", function: Function) -> Function:
    """Apply a monadic function to every row."""
    if function.signature != Signature(1, 1):
        raise DomainError(f"each needs a function of signature |1.1, got {function.signature}")
    name = f"each({function.name})"

    def body(machine) -> None:
        value = machine.pop(where=name)
        if value.is_scalar:
            machine.push(machine.apply(function, value)[0])
            return
        results = [machine.apply(function, row)[0] for row in value.rows()]
        machine.push(Array.from_rows(results) if results else value)

    return Function(name=name, signature=Signature(1, 1), body=body, kind="derived", derivation=("each", function))


def group_by(table: "PrimitiveTable", predicate: Function) -> Function:
    """Run grouping with ``previous current predicate`` as the adjacency test."""
    if predicate.signature != Signature(2, 1):
        raise DomainError(f"group_by needs a predicate of signature |2.1, got {predicate.signature}")
    name = f"group_by({predicate.name})"

    def body(machine) -> None:
        value = machine.pop(where=name)

        def same(previous: Array, current: Array) -> bool:
            return _truthy(machine.apply(predicate, current, previous)[0], where=name)

        machine.push(group_runs(value, same))

    return Function(name=name, signature=Signature(1, 1), body=body, kind="derived")


def split_by(table: "PrimitiveTable", predicate: Function) -> Function:
    """Split rows into boxed fields wherever the predicate marks a separator."""
    if predicate.signature != Signature(1, 1):
        raise DomainError(f"split_by needs a predicate of signature |1.1, got {predicate.signature}")
    name = f"split_by({predicate.name})"

    def body(machine) -> None:
        value = machine.pop(where=name)
        rows = value.rows()
        mask = [_truthy(machine.apply(predicate, row)[0], where=name) for row in rows]
        machine.push(split_runs(value, mask))

    return Function(name=name, signature=Signature(1, 1), body=body, kind="derived")


@dataclass(frozen=True)
class Modifier:
    name: str
    arity: int
    derive: Callable[..., Function]


MODIFIERS: Final[Mapping[str, Modifier]] = MappingProxyType(
    {
        "compose": Modifier("compose", 2, compose),
        "invert": Modifier("invert", 1, invert),
        "under": Modifier("under", 2, under),
        "on": Modifier("on", 1, on),
        "by": Modifier("by", 1, by),
        "reduce": Modifier("reduce", 1, reduce),
        "each": Modifier("each", 1, each),
        "group_by": Modifier("group_by", 1, group_by),
        "split_by": Modifier("split_by", 1, split_by),
    }
)


def derive(table: "PrimitiveTable", name: str, operands: tuple[Union[Operand, Function], ...]) -> Function:
    modifier = MODIFIERS.get(name)
    if modifier is None:
        raise DomainError(f"Unknown modifier {name!r}")
    if len(operands) != modifier.arity:
        raise DomainError(f"Modifier {name!r} takes {modifier.arity} function(s), got {len(operands)}")
    return modifier.derive(table, *(as_function(table, op) for op in operands))
