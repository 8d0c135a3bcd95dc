"""Primitive table: named built-in functions with their inverses and under pairs."""

from __future__ import annotations

import dataclasses
from functools import lru_cache
from types import MappingProxyType
from typing import Callable, Iterator, Mapping

import jax.numpy as jnp

from . import broadcast, codec, grouping
from .errors import DomainError, NotInvertible, ShapeMismatch
from .modifiers import fold_rows, reduce
from .values import Array, ElementKind, Function, Shape, Signature, UnderPair, reshape


class PrimitiveTable(Mapping[str, Function]):
    """Immutable name -> Function registry; unknown names are a DomainError."""

    def __init__(self, entries: Mapping[str, Function]) -> None:
        self._entries = MappingProxyType(dict(entries))

    def __getitem__(self, name: str) -> Function:
        try:
            return self._entries[name]
        except KeyError:
            raise DomainError(f"Unknown primitive {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def get(self, name: str, default=None):
        return self._entries.get(name, default)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def extend(self, entries: Mapping[str, Function]) -> "PrimitiveTable":
        """New table with ``entries`` added; existing names are replaced."""
        merged = dict(self._entries)
        merged.update(entries)
        return PrimitiveTable(merged)


# Structural helpers


def _as_list(array: Array) -> Array:
    return reshape(array, (1,)) if array.is_scalar else array


def _slice(array: Array, start: int, stop: int) -> Array:
    return broadcast.gather(array, list(range(start, stop)))


def _as_shape(value: Array, *, where: str) -> Shape:
    if value.kind is not ElementKind.NUMBER or value.rank > 1:
        raise DomainError(f"{where} expects a shape as a scalar or a list of numbers")
    if value.is_scalar:
        return Shape((value.as_int(where=where),))
    return Shape(value.data.tolist())


def join(left: Array, right: Array) -> Array:
    """Concatenate along the leading axis; a lower-rank side joins as one row."""
    rank = max(left.rank, right.rank, 1)
    left_rows = left.rows() if left.rank == rank else [left]
    right_rows = right.rows() if right.rank == rank else [right]
    rows = left_rows + right_rows
    if not rows:
        return left if left.rank else right
    if ElementKind.BOX not in (left.kind, right.kind):
        first = rows[0]
        if any(row.kind is not first.kind or row.shape != first.shape for row in rows):
            raise ShapeMismatch(f"Cannot join arrays of shapes {left.shape} and {right.shape}")
    return Array.from_rows(rows)


def _replace_row(array: Array, index: int, new: Array) -> Array:
    count = array.row_count
    if index < 0:
        index += count
    if array.is_scalar:
        return new
    old = array.row(index)
    if array.kind is ElementKind.BOX:
        step = array.shape.row_len
        if new.kind is ElementKind.BOX and new.shape == old.shape:
            contents = new.data
        elif old.is_scalar:
            contents = (new,)
        else:
            raise ShapeMismatch(f"Cannot replace a row of shape {old.shape} with shape {new.shape}")
        data = array.data[: index * step] + tuple(contents) + array.data[(index + 1) * step :]
        return Array(ElementKind.BOX, array.shape, data)
    if new.kind is not array.kind or new.shape != old.shape:
        raise ShapeMismatch(f"Cannot replace a row of shape {old.shape} with {new.kind.value} array of shape {new.shape}")
    return Array(array.kind, array.shape, array.data.at[index].set(new.data.astype(array.data.dtype)))


def rotate(count: Array, array: Array) -> Array:
    """Rotate rows left by ``count``."""
    n = count.as_int(where="rotate")
    if array.is_scalar or array.shape[0] == 0:
        return array
    length = array.shape[0]
    return broadcast.gather(array, [(i + n) % length for i in range(length)])


def _unrotate(count: Array, array: Array) -> Array:
    return rotate(Array.scalar(-count.as_int(where="unrotate")), array)


def _reverse(array: Array) -> Array:
    if array.is_scalar:
        return array
    return broadcast.gather(array, list(range(array.shape[0] - 1, -1, -1)))


def _move_axis(array: Array, source: int, destination: int) -> Array:
    if array.rank < 2:
        return array
    if array.kind is ElementKind.BOX:
        positions = jnp.moveaxis(jnp.reshape(jnp.arange(array.size), tuple(array.shape)), source, destination)
        return Array(ElementKind.BOX, Shape(positions.shape), tuple(array.data[i] for i in jnp.ravel(positions).tolist()))
    moved = jnp.moveaxis(array.data, source, destination)
    return Array(array.kind, Shape(moved.shape), moved)


def _take_range(count: Array, array: Array, *, where: str) -> tuple[int, int]:
    n = count.as_int(where=where)
    length = array.shape[0]
    if abs(n) > length:
        raise DomainError(f"Cannot {where} {n} rows from an array of length {length}")
    return (0, n) if n >= 0 else (length + n, length)


def take(count: Array, array: Array) -> Array:
    array = _as_list(array)
    return _slice(array, *_take_range(count, array, where="take"))


def _drop_range(count: Array, array: Array) -> tuple[int, int]:
    n = count.as_int(where="drop")
    length = array.shape[0]
    if n >= 0:
        return min(n, length), length
    return 0, max(0, length + n)


def drop(count: Array, array: Array) -> Array:
    array = _as_list(array)
    return _slice(array, *_drop_range(count, array))


def _factorize(n: int) -> list[int]:
    factors: list[int] = []
    p = 2
    while p * p <= n:
        while n % p == 0:
            factors.append(p)
            n //= p
        p += 1
    if n > 1:
        factors.append(n)
    return factors


def _prime_vector(value: Array) -> Array:
    if not value.is_integral or value.item() < 1:
        raise DomainError(f"Cannot factor {value.item()!r}: primes needs positive integers")
    factors = _factorize(value.as_int(where="primes"))
    return Array.vector(factors) if factors else Array.empty()


def primes(value: Array) -> Array:
    """Prime factors in ascending order; non-scalar input gives one box per element."""
    if value.kind is not ElementKind.NUMBER:
        raise DomainError("primes expects numbers")
    if value.is_scalar:
        return _prime_vector(value)
    return Array(ElementKind.BOX, value.shape, tuple(_prime_vector(item) for item in value.flat()))


def equal_rows(array: Array) -> Array:
    if array.is_scalar or array.shape[0] <= 1:
        return Array.scalar(1)
    return Array.scalar(int(array.matches(rotate(Array.scalar(1), array))))


def _range(value: Array) -> Array:
    return Array.range(_as_shape(value, where="range"))


# Entry builders


def _pervasive(name: str, **kwargs) -> Function:
    return Function.native(name, 2, 1, lambda top, below: broadcast.apply_pervasive(name, below, top), **kwargs)


def _monadic(name: str, **kwargs) -> Function:
    return Function.native(name, 1, 1, lambda value: broadcast.map_pervasive(name, value), **kwargs)


def _has_zero(value: Array) -> bool:
    if value.kind is ElementKind.BOX:
        return any(_has_zero(item) for item in value.data)
    return value.kind is ElementKind.NUMBER and bool(jnp.any(value.data == 0))


def _nonzero_inverse(forward: str, kernel: str) -> Function:
    """Inverse of scaling by the top operand; a zero factor loses the value."""

    def impl(factor: Array, value: Array) -> Array:
        if _has_zero(factor):
            raise NotInvertible(forward, "a factor of 0 cannot be undone")
        return broadcast.apply_pervasive(kernel, value, factor)

    return Function.native(f"invert({forward})", 2, 1, impl, inverse=forward, parametric=1)


def _context_pair(
    name: str,
    args: int,
    stash: Callable[..., tuple[object, Array]],
    restore: Callable[[object, Array], Array],
) -> UnderPair:
    """Under pair whose forward half saves whatever ``restore`` needs."""

    def before(machine) -> None:
        saved, result = stash(*machine.pop_n(args, where=name))
        machine.save_context(saved)
        machine.push(result)

    def after(machine) -> None:
        new = machine.pop(where=name)
        machine.push(restore(machine.restore_context(where=name), new))

    return UnderPair(
        before=Function(f"{name} (before)", Signature(args, 1), before, kind="under"),
        after=Function(f"{name} (after)", Signature(1, 1), after, kind="under"),
    )


def _index_stash(index: Array, array: Array) -> tuple[object, Array]:
    i = index.as_int(where="index_at")
    return (i, array), array.row(i)


def _index_restore(saved, new: Array) -> Array:
    i, array = saved
    return _replace_row(array, i, new)


def _take_stash(count: Array, array: Array) -> tuple[object, Array]:
    array = _as_list(array)
    start, stop = _take_range(count, array, where="take")
    length = array.shape[0]
    rest = _slice(array, stop, length) if start == 0 else _slice(array, 0, start)
    return (start == 0, rest), _slice(array, start, stop)


def _take_restore(saved, new: Array) -> Array:
    from_front, rest = saved
    return join(new, rest) if from_front else join(rest, new)


def _drop_stash(count: Array, array: Array) -> tuple[object, Array]:
    array = _as_list(array)
    start, stop = _drop_range(count, array)
    length = array.shape[0]
    from_front = start > 0 or stop == length
    dropped = _slice(array, 0, start) if from_front else _slice(array, stop, length)
    return (from_front, dropped), _slice(array, start, stop)


def _drop_restore(saved, new: Array) -> Array:
    from_front, dropped = saved
    return join(dropped, new) if from_front else join(new, dropped)


def _reshape_stash(shape: Array, array: Array) -> tuple[object, Array]:
    return array.shape, reshape(array, _as_shape(shape, where="reshape"))


def _shape_restore(saved, new: Array) -> Array:
    return reshape(new, saved)


def _product(multiply: Function) -> Function:
    def body(machine) -> None:
        value = machine.pop(where="product")
        if value.kind is ElementKind.BOX and not value.is_scalar:
            parts = [fold_rows(machine, multiply, item) for item in value.data]
            machine.push(reshape(Array.from_rows(parts), value.shape))
            return
        machine.push(fold_rows(machine, multiply, value.unbox()))

    return Function("product", Signature(1, 1), body, inverse="primes")


def _build_entries() -> dict[str, Function]:
    native = Function.native
    add = _pervasive("add", inverse="subtract", parametric=1, identity=Array.scalar(0))
    multiply = _pervasive("multiply", inverse=_nonzero_inverse("multiply", "divide"), parametric=1, identity=Array.scalar(1))
    entries = [
        # Stack manipulation
        native("dup", 1, 2, lambda value: (value, value)),
        native("pop", 1, 0, lambda value: None),
        native("swap", 2, 2, lambda top, below: (below, top), inverse="swap"),
        native("over", 2, 3, lambda top, below: (below, top, below)),
        native("identity", 1, 1, lambda value: value, inverse="identity"),
        # Pervasive arithmetic
        add,
        _pervasive("subtract", inverse="add", parametric=1),
        multiply,
        _pervasive("divide", inverse=_nonzero_inverse("divide", "multiply"), parametric=1),
        _pervasive("modulus"),
        _pervasive("power"),
        _pervasive("minimum"),
        _pervasive("maximum"),
        _pervasive("equal"),
        _pervasive("not_equal"),
        _pervasive("less"),
        _pervasive("less_equal"),
        _pervasive("greater"),
        _pervasive("greater_equal"),
        _monadic("negate", inverse="negate"),
        _monadic("not", inverse="not"),
        _monadic("reciprocal", inverse="reciprocal"),
        _monadic("sqrt", inverse="square"),
        _monadic("square", inverse="sqrt"),
        _monadic("abs"),
        _monadic("sign"),
        _monadic("floor"),
        _monadic("ceiling"),
        # Structure
        native("shape", 1, 1, lambda value: Array.from_python(list(value.shape))),
        native("length", 1, 1, lambda value: Array.scalar(value.shape[0] if value.rank else 1)),
        native("range", 1, 1, _range, size=lambda value: _as_shape(value, where="range").elements),
        native("reverse", 1, 1, _reverse, inverse="reverse"),
        native("transpose", 1, 1, lambda value: _move_axis(value, 0, -1), inverse="untranspose"),
        native("untranspose", 1, 1, lambda value: _move_axis(value, -1, 0), inverse="transpose"),
        native(
            "deshape",
            1,
            1,
            lambda value: reshape(value, value.shape.deshape()),
            under=_context_pair("deshape", 1, lambda value: (value.shape, reshape(value, value.shape.deshape())), _shape_restore),
        ),
        native("fix", 1, 1, lambda value: reshape(value, value.shape.fix()), inverse="unfix"),
        native("unfix", 1, 1, lambda value: reshape(value, value.shape.unfix()), inverse="fix"),
        native(
            "reshape",
            2,
            1,
            lambda shape, value: reshape(value, _as_shape(shape, where="reshape")),
            under=_context_pair("reshape", 2, _reshape_stash, _shape_restore),
        ),
        native(
            "cycle_reshape",
            2,
            1,
            lambda shape, value: reshape(value, _as_shape(shape, where="cycle_reshape"), cyclic=True),
            size=lambda shape, value: _as_shape(shape, where="cycle_reshape").elements,
        ),
        native("join", 2, 1, lambda top, below: join(below, top)),
        native("couple", 2, 1, lambda top, below: Array.from_rows([below, top])),
        native("box", 1, 1, Array.box, inverse="unbox"),
        native("unbox", 1, 1, lambda value: value.unbox(), inverse="box"),
        native(
            "first",
            1,
            1,
            lambda value: value.row(0),
            under=_context_pair("first", 1, lambda value: (value, value.row(0)), lambda saved, new: _replace_row(saved, 0, new)),
        ),
        native(
            "index_at",
            2,
            1,
            lambda index, value: value.row(index.as_int(where="index_at")),
            under=_context_pair("index_at", 2, _index_stash, _index_restore),
        ),
        native("take", 2, 1, take, under=_context_pair("take", 2, _take_stash, _take_restore)),
        native("drop", 2, 1, drop, under=_context_pair("drop", 2, _drop_stash, _drop_restore)),
        native("rotate", 2, 1, rotate, inverse="unrotate", parametric=1),
        native("unrotate", 2, 1, _unrotate, inverse="rotate", parametric=1),
        native("keep", 2, 1, broadcast.keep, size=broadcast.keep_size),
        native("scale", 2, 1, broadcast.scale, size=lambda factors, array: broadcast.scale_shape(factors, array).elements),
        native("match", 2, 1, lambda top, below: Array.scalar(int(below.matches(top)))),
        native("equal_rows", 1, 1, equal_rows),
        # Grouping
        native("group_by_change", 1, 1, grouping.group_runs),
        native("split_on", 2, 1, grouping.split_on),
        # Reductions
        dataclasses.replace(reduce(None, add), name="sum"),
        _product(multiply),
        native("primes", 1, 1, primes, inverse="product"),
        # Codec
        native("join_fields", 2, 1, codec.join_fields, inverse="split_fields", parametric=1),
        native("split_fields", 2, 1, codec.split_fields, inverse="join_fields", parametric=1),
        native("format_with", 2, 1, codec.format_with, inverse="parse_with", parametric=1),
        native("parse_with", 2, 1, codec.parse_with, inverse="format_with", parametric=1),
    ]
    table = {function.name: function for function in entries}
    table["flip"] = dataclasses.replace(table["swap"], name="flip", inverse="flip")
    return table


@lru_cache(maxsize=1)
def default_table() -> PrimitiveTable:
    return PrimitiveTable(_build_entries())
