"""Runtime value model: shapes, arrays and function values."""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Union

import jax.numpy as jnp

from .errors import DomainError, ShapeMismatch

if TYPE_CHECKING:
    from .instructions import Instruction


class Shape(tuple):
    """Dimension sizes of an array, leading axis first."""

    def __new__(cls, dims=()):
        if isinstance(dims, numbers.Integral):
            dims = (dims,)
        out: list[int] = []
        for dim in dims:
            if isinstance(dim, numbers.Real) and not isinstance(dim, numbers.Integral):
                if not float(dim).is_integer():
                    raise DomainError("Shape dimensions must be integers")
            dim = int(dim)
            if dim < 0:
                raise DomainError("Shape dimensions must be non-negative")
            out.append(dim)
        return super().__new__(cls, out)

    @property
    def row_count(self) -> int:
        return self[0] if self else 1

    @property
    def row_len(self) -> int:
        return math.prod(self[1:])

    @property
    def elements(self) -> int:
        return math.prod(self)

    def row(self) -> "Shape":
        return Shape(self[1:])

    def deshape(self) -> "Shape":
        return Shape((self.elements,))

    def fix(self) -> "Shape":
        return Shape((1, *self))

    def unfix(self) -> "Shape":
        if self and self[0] == 1:
            return Shape(self[1:])
        if len(self) >= 2:
            raise DomainError(f"Cannot unfix array with length {self[0]}")
        if 0 in self:
            raise DomainError("Cannot unfix empty array")
        if not self:
            raise DomainError("Cannot unfix scalar")
        raise DomainError(f"Cannot unfix array with shape {self}")

    def flat_to_dims(self, flat: int) -> tuple[int, ...]:
        index: list[int] = []
        for dim in reversed(self):
            index.append(flat % dim)
            flat //= dim
        return tuple(reversed(index))

    def dims_to_flat(self, index) -> int | None:
        flat = 0
        for dim, i in zip(self, index):
            if i < 0 or i >= dim:
                return None
            flat = flat * dim + i
        return flat

    def __str__(self) -> str:
        return "[" + " × ".join(str(dim) for dim in self) + "]"


class ElementKind(str, Enum):
    NUMBER = "number"
    CHARACTER = "character"
    BOX = "box"


@dataclass(frozen=True)
class Char:
    """First-class character value."""

    value: str

    def __post_init__(self) -> None:
        if len(self.value) != 1:
            raise ValueError("Char must contain exactly one codepoint")

    @property
    def codepoint(self) -> int:
        return ord(self.value)


def _codepoints(text: str) -> jnp.ndarray:
    return jnp.asarray([ord(ch) for ch in text], dtype=jnp.int32)


@dataclass(frozen=True, eq=False)
class Array:
    """Immutable shaped array.

    NUMBER and CHARACTER arrays keep their elements in a ``jax.numpy`` array
    of exactly ``shape`` (characters as int32 codepoints). BOX arrays keep a
    flat row-major tuple of sub-arrays.
    """

    kind: ElementKind
    shape: Shape
    data: object

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape", Shape(self.shape))
        if self.kind is ElementKind.BOX:
            if not isinstance(self.data, tuple):
                object.__setattr__(self, "data", tuple(self.data))
            if len(self.data) != self.shape.elements:
                raise ShapeMismatch(f"Boxed array of shape {self.shape} needs {self.shape.elements} elements, got {len(self.data)}")
            for item in self.data:
                if not isinstance(item, Array):
                    raise DomainError(f"Box contents must be arrays, got {type(item).__name__}")
            return
        data = jnp.asarray(self.data)
        if tuple(data.shape) != tuple(self.shape):
            if data.size != self.shape.elements:
                raise ShapeMismatch(f"Array data of shape {tuple(data.shape)} does not fit shape {self.shape}")
            data = jnp.reshape(data, tuple(self.shape))
        if self.kind is ElementKind.CHARACTER and data.dtype != jnp.int32:
            data = data.astype(jnp.int32)
        object.__setattr__(self, "data", data)

    # Construction

    @classmethod
    def scalar(cls, value) -> "Array":
        if isinstance(value, Array):
            return cls.box(value)
        if isinstance(value, Char):
            return cls(ElementKind.CHARACTER, Shape(), jnp.asarray(value.codepoint, dtype=jnp.int32))
        if isinstance(value, str):
            return cls.scalar(Char(value))
        if isinstance(value, (bool, numbers.Number)):
            return cls(ElementKind.NUMBER, Shape(), jnp.asarray(value))
        raise DomainError(f"Unsupported scalar type {type(value).__name__}")

    @classmethod
    def box(cls, inner: "Array") -> "Array":
        return cls(ElementKind.BOX, Shape(), (inner,))

    @classmethod
    def boxed(cls, items) -> "Array":
        """Vector whose every element is boxed, whatever the items' shapes."""
        contents = tuple(cls.from_python(item) for item in items)
        return cls(ElementKind.BOX, Shape((len(contents),)), contents)

    @classmethod
    def string(cls, text: str) -> "Array":
        return cls(ElementKind.CHARACTER, Shape((len(text),)), _codepoints(text))

    @classmethod
    def empty(cls) -> "Array":
        return cls(ElementKind.NUMBER, Shape((0,)), jnp.zeros((0,), dtype=jnp.int32))

    @classmethod
    def range(cls, shape) -> "Array":
        """Incrementing array with the given shape."""
        dims = Shape(shape)
        return cls(ElementKind.NUMBER, dims, jnp.reshape(jnp.arange(dims.elements, dtype=jnp.int32), tuple(dims)))

    @classmethod
    def vector(cls, items) -> "Array":
        return cls.from_python(list(items))

    @classmethod
    def from_python(cls, value) -> "Array":
        if isinstance(value, Array):
            return value
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, (Char, bool, numbers.Number)):
            return cls.scalar(value)
        if isinstance(value, jnp.ndarray) or hasattr(value, "__array__"):
            arr = jnp.asarray(value)
            return cls(ElementKind.NUMBER, Shape(arr.shape), arr)
        if isinstance(value, (list, tuple)):
            return cls.from_rows([cls.from_python(item) for item in value])
        raise DomainError(f"Unsupported host value of type {type(value).__name__}")

    @classmethod
    def from_rows(cls, rows: list["Array"]) -> "Array":
        """Stack rows along a new leading axis, boxing them when they disagree."""
        if not rows:
            return cls.empty()
        first = rows[0]
        uniform = all(row.kind is first.kind and row.shape == first.shape for row in rows)
        if uniform and first.kind is not ElementKind.BOX:
            return cls(first.kind, Shape((len(rows), *first.shape)), jnp.stack([row.data for row in rows], axis=0))
        if uniform:
            data = tuple(item for row in rows for item in row.data)
            return cls(ElementKind.BOX, Shape((len(rows), *first.shape)), data)
        contents = tuple(row.data[0] if row.is_box_scalar else row for row in rows)
        return cls(ElementKind.BOX, Shape((len(rows),)), contents)

    # Inspection

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return self.shape.elements

    @property
    def row_count(self) -> int:
        return self.shape.row_count

    @property
    def is_scalar(self) -> bool:
        return self.rank == 0

    @property
    def is_box_scalar(self) -> bool:
        return self.kind is ElementKind.BOX and self.rank == 0

    @property
    def is_integral(self) -> bool:
        if self.kind is not ElementKind.NUMBER:
            return False
        dtype = self.data.dtype
        if jnp.issubdtype(dtype, jnp.integer) or dtype == jnp.bool_:
            return True
        if jnp.issubdtype(dtype, jnp.floating):
            return bool(jnp.all(jnp.floor(self.data) == self.data))
        return False

    def rows(self) -> list["Array"]:
        if self.rank == 0:
            return [self]
        if self.kind is ElementKind.BOX:
            step = self.shape.row_len
            row_shape = self.shape.row()
            return [Array(ElementKind.BOX, row_shape, self.data[i * step : (i + 1) * step]) for i in range(self.shape[0])]
        return [Array(self.kind, self.shape.row(), self.data[i]) for i in range(self.shape[0])]

    def row(self, index: int) -> "Array":
        count = self.row_count
        if index < -count or index >= count:
            raise DomainError(f"Index {index} out of bounds for length {count}")
        if index < 0:
            index += count
        return self.rows()[index]

    def unbox(self) -> "Array":
        if self.is_box_scalar:
            return self.data[0]
        return self

    def flat(self) -> list["Array"]:
        """Element scalars in row-major order."""
        if self.kind is ElementKind.BOX:
            return [Array.box(item) for item in self.data]
        flat = jnp.ravel(self.data)
        return [Array(self.kind, Shape(), flat[i]) for i in range(flat.shape[0])]

    def item(self):
        if not self.is_scalar:
            raise DomainError(f"Expected a scalar, got shape {self.shape}")
        return self.to_python()

    def as_int(self, *, where: str) -> int:
        if self.kind is not ElementKind.NUMBER or not self.is_scalar:
            raise DomainError(f"{where} requires a scalar integer argument")
        scalar = self.data.item()
        if isinstance(scalar, numbers.Real) and float(scalar).is_integer():
            return int(scalar)
        raise DomainError(f"{where} requires an integer argument")

    def text(self) -> str:
        if self.kind is not ElementKind.CHARACTER or self.rank > 1:
            raise DomainError(f"Expected a string, got {self.kind.value} array of shape {self.shape}")
        if self.rank == 0:
            return chr(int(self.data))
        return "".join(chr(cp) for cp in self.data.tolist())

    def to_python(self):
        if self.kind is ElementKind.NUMBER:
            return self.data.tolist()
        if self.kind is ElementKind.CHARACTER:
            if self.rank <= 1:
                return self.text()
            return [row.to_python() for row in self.rows()]
        if self.rank == 0:
            return self.data[0].to_python()
        return [row.to_python() for row in self.rows()]

    def matches(self, other: "Array") -> bool:
        """Structural equality: kind, shape and elements."""
        if not isinstance(other, Array):
            return False
        if self.shape != other.shape:
            return False
        if self.kind is ElementKind.BOX or other.kind is ElementKind.BOX:
            if self.kind is not other.kind:
                return False
            return all(l.matches(r) for l, r in zip(self.data, other.data, strict=True))
        if self.kind is not other.kind:
            return False
        return bool(jnp.array_equal(self.data, other.data))

    def __repr__(self) -> str:
        return f"Array({self.kind.value}, {self.shape}, {self.to_python()!r})"


def reshape(array: Array, shape, *, cyclic: bool = False) -> Array:
    """Reshape ``array``; with ``cyclic`` the elements repeat or truncate to fit."""
    target = Shape(shape)
    count = target.elements
    if count != array.size and not cyclic:
        raise ShapeMismatch(f"Cannot reshape array of shape {array.shape} to {target}")
    if count != array.size and array.size == 0:
        raise DomainError(f"Cannot fill shape {target} from an empty array")
    if array.kind is ElementKind.BOX:
        data = array.data
        if count != len(data):
            data = tuple(data[i % len(data)] for i in range(count))
        return Array(ElementKind.BOX, target, data)
    flat = jnp.ravel(array.data)
    if count != array.size:
        reps = -(-count // array.size)
        flat = jnp.tile(flat, reps)[:count]
    return Array(array.kind, target, jnp.reshape(flat, tuple(target)))


@dataclass(frozen=True)
class Signature:
    """Stack effect: values consumed and values produced."""

    args: int
    outputs: int

    def then(self, other: "Signature") -> "Signature":
        """Signature of running ``self`` and then ``other``."""
        args = self.args + max(0, other.args - self.outputs)
        outputs = other.outputs + max(0, self.outputs - other.args)
        return Signature(args, outputs)

    def __str__(self) -> str:
        return f"|{self.args}.{self.outputs}"


@dataclass(frozen=True)
class UnderPair:
    """Forward half that stashes lost context, and the half that splices it back."""

    before: "Function"
    after: "Function"


@dataclass(frozen=True)
class OperationInfo:
    kind: str
    name: str
    signature: Signature


Body = Union[Callable[..., None], tuple["Instruction", ...]]


@dataclass(frozen=True, eq=False)
class Function:
    """Composable stack function.

    ``body`` is either a native callable taking the running machine or a
    tuple of instructions. ``inverse`` may be a Function, the name of a
    primitive in the table, or a zero-argument callable producing the inverse
    (for mutually inverse pairs). ``parametric`` counts the leading (top of
    stack) arguments that an inverse expects to receive again unchanged.
    """

    name: str
    signature: Signature
    body: Body
    inverse: "Function | str | Callable[[], Function] | None" = None
    under: UnderPair | None = None
    identity: Array | None = None
    parametric: int = 0
    kind: str = "primitive"
    derivation: tuple[object, ...] = field(default=(), repr=False)

    @property
    def args(self) -> int:
        return self.signature.args

    @property
    def outputs(self) -> int:
        return self.signature.outputs

    @property
    def info(self) -> OperationInfo:
        return OperationInfo(kind=self.kind, name=self.name, signature=self.signature)

    @classmethod
    def native(
        cls,
        name: str,
        args: int,
        outputs: int,
        impl: Callable[..., object],
        *,
        size: Callable[..., int] | None = None,
        **kwargs,
    ) -> "Function":
        """Wrap ``impl``, which takes arguments top of stack first and returns
        one value, or a tuple of ``outputs`` values top first.

        ``size`` predicts the element count of the result from the same
        operands; the machine checks it against its limits before ``impl``
        allocates anything.
        """

        def body(machine) -> None:
            operands = machine.pop_n(args, where=name)
            if size is not None:
                machine.check_elements(size(*operands), where=name)
            machine.push_results(impl(*operands), outputs, where=name)

        return cls(name=name, signature=Signature(args, outputs), body=body, **kwargs)

    def __repr__(self) -> str:
        return f"Function({self.name!r}{self.signature})"


Value = Union[Array, Function]


class ValueKind(str, Enum):
    NUMBER = "number"
    CHARACTER = "character"
    BOX = "box"
    FUNCTION = "function"


@dataclass(frozen=True)
class ValueInfo:
    kind: ValueKind
    shape: tuple[int, ...]
    rank: int
    depth: int


def depth_of(value: Value) -> int:
    if isinstance(value, Array) and value.kind is ElementKind.BOX:
        if not value.data:
            return 1
        return 1 + max(depth_of(item) for item in value.data)
    return 0


def value_info(value: Value) -> ValueInfo:
    if isinstance(value, Function):
        return ValueInfo(kind=ValueKind.FUNCTION, shape=(), rank=0, depth=0)
    shape = tuple(value.shape)
    return ValueInfo(kind=ValueKind(value.kind.value), shape=shape, rank=len(shape), depth=depth_of(value))


def as_value(value) -> Value:
    if isinstance(value, Function):
        return value
    return Array.from_python(value)
