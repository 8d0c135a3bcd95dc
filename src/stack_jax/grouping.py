"""Contiguous-run grouping and separator splitting."""

from __future__ import annotations

from typing import Callable

from .errors import DomainError
from .values import Array, ElementKind, Shape

Adjacent = Callable[[Array, Array], bool]


def _pack_runs(runs: list[list[Array]]) -> Array:
    return Array(ElementKind.BOX, Shape((len(runs),)), tuple(Array.from_rows(run) for run in runs))


def _structurally_equal(previous: Array, current: Array) -> bool:
    return previous.matches(current)


def group_runs(array: Array, same: Adjacent | None = None) -> Array:
    """Partition rows into maximal runs where each row is ``same`` as the one before.

    Single left-to-right pass; runs come out boxed in encounter order and an
    empty array gives an empty list of runs.
    """
    if same is None:
        same = _structurally_equal
    rows = array.rows()
    if array.rank > 0 and array.shape[0] == 0:
        rows = []

    runs: list[list[Array]] = []
    current: list[Array] = []
    for row in rows:
        if current and not same(current[-1], row):
            runs.append(current)
            current = []
        current.append(row)
    if current:
        runs.append(current)
    return _pack_runs(runs)


def split_runs(array: Array, is_separator: list[bool]) -> Array:
    """Box the runs of rows between separators; separator rows are dropped."""
    rows = array.rows() if array.rank > 0 else [array]
    if len(rows) != len(is_separator):
        raise DomainError(f"Separator mask of length {len(is_separator)} for {len(rows)} rows")

    runs: list[list[Array]] = []
    current: list[Array] = []
    for row, separator in zip(rows, is_separator, strict=True):
        if separator:
            if current:
                runs.append(current)
            current = []
            continue
        current.append(row)
    if current:
        runs.append(current)
    return _pack_runs(runs)


def window_separators(array: Array, separator: Array) -> list[bool]:
    """Mark rows covered by non-overlapping windows equal to ``separator``.

    A separator one rank below ``array`` is a single row; a separator of the
    same rank is a literal sequence of rows.
    """
    if array.rank == 0:
        raise DomainError("Cannot split a scalar")
    rows = array.rows()
    if separator.rank == array.rank - 1:
        return [row.matches(separator) for row in rows]
    if separator.rank != array.rank:
        raise DomainError(f"Separator of rank {separator.rank} cannot split rank-{array.rank} array")

    window = separator.rows()
    width = len(window)
    if width == 0:
        raise DomainError("Separator must not be empty")
    mask = [False] * len(rows)
    i = 0
    while i + width <= len(rows):
        if all(rows[i + k].matches(window[k]) for k in range(width)):
            for k in range(width):
                mask[i + k] = True
            i += width
        else:
            i += 1
    return mask


def split_on(separator: Array, array: Array) -> Array:
    return split_runs(array, window_separators(array, separator))
