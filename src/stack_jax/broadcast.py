"""Leading-axis broadcasting of pervasive operations, and axis resampling."""

from __future__ import annotations

import math
import os
from typing import Callable, Final

import jax
from jax import lax
import jax.numpy as jnp

from .errors import DomainError, ShapeMismatch
from .values import Array, ElementKind, Shape

_USE_JITTED_KERNELS: Final[bool] = os.environ.get("STACK_JAX_DISABLE_JITTED_KERNELS", "0") != "1"

NUMBER: Final = ElementKind.NUMBER
CHARACTER: Final = ElementKind.CHARACTER
BOX: Final = ElementKind.BOX


def _promote_binary_pair(w: jnp.ndarray, x: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    if w.dtype == x.dtype:
        return w, x
    dtype = jnp.result_type(w, x)
    if w.dtype == dtype:
        return w, lax.convert_element_type(x, dtype)
    if x.dtype == dtype:
        return lax.convert_element_type(w, dtype), x
    return lax.convert_element_type(w, dtype), lax.convert_element_type(x, dtype)


def _lax_add_promoted(w: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
    ww, xx = _promote_binary_pair(w, x)
    return lax.add(ww, xx)


def _lax_sub_promoted(w: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
    ww, xx = _promote_binary_pair(w, x)
    return lax.sub(ww, xx)


def _lax_mul_promoted(w: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
    ww, xx = _promote_binary_pair(w, x)
    return lax.mul(ww, xx)


def _lax_cmp_promoted(cmp_op: Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray], w: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
    ww, xx = _promote_binary_pair(w, x)
    return lax.convert_element_type(cmp_op(ww, xx), jnp.int32)


# Kernels take the deeper stack operand first: `x y subtract` is x - y.
_BINARY_KERNELS: Final[dict[str, Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]]] = {
    "add": _lax_add_promoted,
    "subtract": _lax_sub_promoted,
    "multiply": _lax_mul_promoted,
    "divide": lambda w, x: w / x,
    "modulus": lambda w, x: jnp.mod(w, x),
    "power": lambda w, x: w**x,
    "minimum": lambda w, x: jnp.minimum(w, x),
    "maximum": lambda w, x: jnp.maximum(w, x),
    "equal": lambda w, x: _lax_cmp_promoted(lax.eq, w, x),
    "not_equal": lambda w, x: _lax_cmp_promoted(lax.ne, w, x),
    "less": lambda w, x: _lax_cmp_promoted(lax.lt, w, x),
    "less_equal": lambda w, x: _lax_cmp_promoted(lax.le, w, x),
    "greater": lambda w, x: _lax_cmp_promoted(lax.gt, w, x),
    "greater_equal": lambda w, x: _lax_cmp_promoted(lax.ge, w, x),
}

_UNARY_KERNELS: Final[dict[str, Callable[[jnp.ndarray], jnp.ndarray]]] = {
    "negate": lambda x: -x,
    "abs": lambda x: jnp.abs(x),
    "sign": lambda x: lax.sign(x),
    "floor": lambda x: jnp.floor(x),
    "ceiling": lambda x: jnp.ceil(x),
    "sqrt": lambda x: jnp.sqrt(x),
    "square": lambda x: x * x,
    "reciprocal": lambda x: 1 / x,
    "not": lambda x: 1 - x,
}

_COMPARISONS: Final[frozenset[str]] = frozenset({"equal", "not_equal", "less", "less_equal", "greater", "greater_equal"})

_JITTED_BINARY: dict[str, Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]] = {}
_JITTED_UNARY: dict[str, Callable[[jnp.ndarray], jnp.ndarray]] = {}


def _binary_kernel(op: str) -> Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]:
    try:
        kernel = _BINARY_KERNELS[op]
    except KeyError:
        raise DomainError(f"Unknown pervasive operation {op!r}") from None
    if not _USE_JITTED_KERNELS:
        return kernel
    fn = _JITTED_BINARY.get(op)
    if fn is None:
        fn = jax.jit(kernel)
        _JITTED_BINARY[op] = fn
    return fn


def _unary_kernel(op: str) -> Callable[[jnp.ndarray], jnp.ndarray]:
    try:
        kernel = _UNARY_KERNELS[op]
    except KeyError:
        raise DomainError(f"Unknown pervasive operation {op!r}") from None
    if not _USE_JITTED_KERNELS:
        return kernel
    fn = _JITTED_UNARY.get(op)
    if fn is None:
        fn = jax.jit(kernel)
        _JITTED_UNARY[op] = fn
    return fn


def agree(left: Shape, right: Shape, *, where: str) -> Shape:
    """Result shape of two leading-axis-compatible shapes."""
    short, long = (left, right) if len(left) <= len(right) else (right, left)
    if tuple(long[: len(short)]) != tuple(short):
        raise ShapeMismatch(f"{where}: shapes {left} and {right} do not agree")
    return long


def _result_kind(op: str, left: ElementKind, right: ElementKind) -> ElementKind | None:
    """Element kind of ``left op right``; None when the pairing is meaningless."""
    if op in _COMPARISONS:
        return NUMBER if left is right else None
    if left is NUMBER and right is NUMBER:
        return NUMBER
    if op == "add" and CHARACTER in (left, right) and NUMBER in (left, right):
        return CHARACTER
    if op == "subtract" and left is CHARACTER:
        return NUMBER if right is CHARACTER else CHARACTER
    if op in {"minimum", "maximum"} and left is right:
        return left
    return None


def _pad_rank(data: jnp.ndarray, rank: int) -> jnp.ndarray:
    missing = rank - data.ndim
    if missing <= 0:
        return data
    return jnp.reshape(data, (*data.shape, *(1,) * missing))


def _boxed_elements(array: Array) -> list[Array]:
    if array.kind is BOX:
        return list(array.data)
    return array.flat()


def _apply_boxed(op: str, left: Array, right: Array, shape: Shape) -> Array:
    lefts = _boxed_elements(left)
    rights = _boxed_elements(right)
    size = shape.elements
    l_extra = math.prod(shape[left.rank :])
    r_extra = math.prod(shape[right.rank :])
    out = []
    for i in range(size):
        out.append(apply_pervasive(op, lefts[i // l_extra], rights[i // r_extra]))
    return Array(BOX, shape, tuple(out))


def apply_pervasive(op: str, left: Array, right: Array) -> Array:
    """Apply a named binary kernel elementwise with leading-axis agreement.

    The operand with fewer axes pairs each of its elements with the whole
    corresponding cell of the other; the result takes the longer shape.
    """
    shape = agree(left.shape, right.shape, where=op)
    if left.kind is BOX or right.kind is BOX:
        return _apply_boxed(op, left, right, shape)

    kind = _result_kind(op, left.kind, right.kind)
    if kind is None:
        if op in {"equal", "not_equal"}:
            fill = 0 if op == "equal" else 1
            return Array(NUMBER, shape, jnp.full(tuple(shape), fill, dtype=jnp.int32))
        raise DomainError(f"Cannot {op} {left.kind.value} and {right.kind.value} arrays")
    if kind is CHARACTER and any(side.kind is NUMBER and not side.is_integral for side in (left, right)):
        raise DomainError(f"{op}: character offsets must be integers")

    rank = len(shape)
    out = _binary_kernel(op)(_pad_rank(left.data, rank), _pad_rank(right.data, rank))
    return Array(kind, shape, out)


def map_pervasive(op: str, value: Array) -> Array:
    if value.kind is BOX:
        return Array(BOX, value.shape, tuple(map_pervasive(op, item) for item in value.data))
    if value.kind is not NUMBER:
        raise DomainError(f"Cannot {op} a {value.kind.value} array")
    return Array(NUMBER, value.shape, _unary_kernel(op)(value.data))


def gather(array: Array, indices: list[int], *, axis: int = 0) -> Array:
    """Select positions ``indices`` along ``axis``."""
    if array.rank == 0:
        raise DomainError("Cannot select along an axis of a scalar")
    idx = jnp.asarray(indices, dtype=jnp.int32)
    shape = Shape((*array.shape[:axis], len(indices), *array.shape[axis + 1 :]))
    if array.kind is BOX:
        positions = jnp.reshape(jnp.arange(array.size, dtype=jnp.int32), tuple(array.shape))
        picked = jnp.ravel(jnp.take(positions, idx, axis=axis)).tolist()
        return Array(BOX, shape, tuple(array.data[i] for i in picked))
    return Array(array.kind, shape, jnp.take(array.data, idx, axis=axis))


def _keep_factor(counts: Array) -> float:
    factor = float(counts.data.item())
    if not math.isfinite(factor):
        raise DomainError(f"keep count must be finite, got {factor}")
    if factor < 0:
        raise DomainError("keep count must be non-negative")
    return factor


def _keep_counts(length: int, counts: Array) -> list[int]:
    if counts.rank != 1:
        raise DomainError("keep counts must be a scalar or a vector")
    if counts.shape[0] != length:
        raise ShapeMismatch(f"keep: {counts.shape[0]} counts for {length} rows")
    out: list[int] = []
    for count in counts.data.tolist():
        if count < 0 or not float(count).is_integer():
            raise DomainError("keep vector counts must be non-negative integers")
        out.append(int(count))
    return out


def keep_length(length: int, counts: Array) -> int:
    """Number of rows ``keep`` selects, computed without selecting them."""
    if counts.kind is not NUMBER:
        raise DomainError("keep counts must be numbers")
    if counts.rank == 0:
        return math.floor(length * _keep_factor(counts) + 1e-9)
    return sum(_keep_counts(length, counts))


def keep_indices(length: int, counts: Array) -> list[int]:
    """Row indices selected by ``keep``.

    A scalar count ``c`` resamples: output length ``floor(length * c)`` with
    row ``floor(i / c)`` at position ``i``, so fractional counts downsample.
    """
    new_length = keep_length(length, counts)
    if counts.rank == 0:
        factor = _keep_factor(counts)
        return [min(length - 1, math.floor(i / factor + 1e-9)) for i in range(new_length)]
    out: list[int] = []
    for row, count in enumerate(_keep_counts(length, counts)):
        out.extend([row] * count)
    return out


def _as_rows(array: Array) -> Array:
    if array.rank == 0:
        return Array(array.kind, Shape((1,)), array.data if array.kind is BOX else jnp.reshape(array.data, (1,)))
    return array


def keep_size(counts: Array, array: Array) -> int:
    array_rows = _as_rows(array)
    return keep_length(array_rows.shape[0], counts) * array_rows.shape.row_len


def keep(counts: Array, array: Array) -> Array:
    array = _as_rows(array)
    return gather(array, keep_indices(array.shape[0], counts))


def _scale_factors(factors: Array, array: Array) -> list[Array]:
    if factors.kind is not NUMBER or factors.rank > 1:
        raise DomainError("scale factors must be a scalar or a vector of numbers")
    if factors.rank == 0:
        return [factors] * array.rank
    if factors.shape[0] > array.rank:
        raise ShapeMismatch(f"scale: {factors.shape[0]} factors for rank-{array.rank} array")
    return factors.rows()


def scale_shape(factors: Array, array: Array) -> Shape:
    """Shape ``scale`` produces, computed without resampling."""
    dims = list(array.shape)
    for axis, factor in enumerate(_scale_factors(factors, array)):
        dims[axis] = keep_length(dims[axis], factor)
    return Shape(dims)


def scale(factors: Array, array: Array) -> Array:
    """Resample ``array`` one axis at a time.

    A scalar factor applies to every axis; a vector gives one factor per
    leading axis.
    """
    result = array
    for axis, factor in enumerate(_scale_factors(factors, array)):
        result = gather(result, keep_indices(result.shape[axis], factor), axis=axis)
    return result
