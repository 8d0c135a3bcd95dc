"""Bidirectional templates: join fields into text and split text back into fields."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Sequence

from .errors import DomainError, FormatMismatch
from .values import Array, ElementKind, Function

PLACEHOLDER: Final[str] = "_"


@dataclass(frozen=True)
class Template:
    """Literal text alternating with field placeholders.

    ``literals`` always has one more entry than there are fields: the text
    before the first field, between consecutive fields, and after the last.
    """

    literals: tuple[str, ...]
    source: str

    @classmethod
    def parse(cls, text: str, placeholder: str = PLACEHOLDER) -> "Template":
        literals: list[str] = []
        current: list[str] = []
        i = 0
        while i < len(text):
            ch = text[i]
            if ch == "\\" and text[i + 1 : i + 2] == placeholder:
                current.append(placeholder)
                i += 2
                continue
            if ch == placeholder:
                literals.append("".join(current))
                current = []
            else:
                current.append(ch)
            i += 1
        literals.append("".join(current))
        return cls(literals=tuple(literals), source=text)

    @classmethod
    def from_separators(cls, separators: Sequence[str]) -> "Template":
        literals = ("", *separators, "")
        escaped = (lit.replace(PLACEHOLDER, "\\" + PLACEHOLDER) for lit in literals)
        return cls(literals=literals, source=PLACEHOLDER.join(escaped))

    @property
    def fields(self) -> int:
        return len(self.literals) - 1

    def join(self, fields: Sequence[str]) -> str:
        if len(fields) != self.fields:
            raise FormatMismatch(self.source, 0, message=f"Expected {self.fields} fields, got {len(fields)}")
        parts = [self.literals[0]]
        for field, literal in zip(fields, self.literals[1:], strict=True):
            parts.append(field)
            parts.append(literal)
        return "".join(parts)

    def split(self, subject: str) -> list[str]:
        """Greedily locate each literal left to right; the gaps are the fields."""
        head = self.literals[0]
        if not subject.startswith(head):
            raise FormatMismatch(self.source, 0, head)
        if self.fields == 0:
            if subject != head:
                raise FormatMismatch(self.source, len(head), message="Unexpected trailing text")
            return []

        pos = len(head)
        out: list[str] = []
        for literal in self.literals[1:-1]:
            if not literal:
                raise FormatMismatch(self.source, pos, message="Adjacent fields cannot be split")
            found = subject.find(literal, pos)
            if found < 0:
                raise FormatMismatch(self.source, pos, literal)
            out.append(subject[pos:found])
            pos = found + len(literal)

        tail = self.literals[-1]
        end = len(subject) - len(tail)
        if tail and (end < pos or not subject.endswith(tail)):
            raise FormatMismatch(self.source, pos, tail)
        out.append(subject[pos:end])
        return out


def _format_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_value(value: Array) -> str:
    """Text of a field value: strings verbatim, everything else printed."""
    if value.kind is ElementKind.CHARACTER and value.rank <= 1:
        return value.text()
    if value.is_box_scalar:
        return format_value(value.data[0])
    if value.is_scalar:
        return _format_number(value.to_python())
    return "[" + " ".join(format_value(row) for row in value.rows()) + "]"


def _separator_texts(separator: Array) -> list[str] | str:
    if separator.kind is ElementKind.CHARACTER and separator.rank <= 1:
        text = separator.text()
        if not text:
            raise DomainError("Separator must not be empty")
        return text
    if separator.kind is ElementKind.CHARACTER and separator.rank == 2:
        return [row.text() for row in separator.rows()]
    if separator.kind is ElementKind.BOX and separator.rank == 1:
        return [item.text() for item in separator.data]
    raise DomainError("Separator must be a string or a list of strings")


def _separator_template(separator: Array, fields: int, subject: str | None = None) -> Template:
    texts = _separator_texts(separator)
    if isinstance(texts, str):
        if subject is not None:
            fields = subject.count(texts) + 1
        return Template.from_separators([texts] * max(0, fields - 1))
    return Template.from_separators(texts)


def join_fields(separator: Array, fields: Array) -> Array:
    """Interleave a separator (or a list of separators) between fields.

    Zero fields join to the empty string, which splits back to one empty
    field; any non-empty list of fields round-trips through ``split_fields``.
    """
    texts = [format_value(row) for row in fields.rows()] if fields.rank > 0 else [format_value(fields)]
    if not texts:
        return Array.string("")
    return Array.string(_separator_template(separator, len(texts)).join(texts))


def split_fields(separator: Array, subject: Array) -> Array:
    """Split on a separator, keeping empty fields; ``""`` is one empty field."""
    text = subject.text()
    return Array.boxed(_separator_template(separator, 0, subject=text).split(text))


def format_with(template: Array, fields: Array) -> Array:
    compiled = Template.parse(template.text())
    texts = [format_value(row) for row in fields.rows()] if fields.rank > 0 else [format_value(fields)]
    return Array.string(compiled.join(texts))


def parse_with(template: Array, subject: Array) -> Array:
    return Array.boxed(Template.parse(template.text()).split(subject.text()))


def format_function(template: str) -> Function:
    """Function filling each placeholder from the stack, top of stack first.

    Its inverse parses a string back into one string per placeholder.
    """
    compiled = Template.parse(template)
    count = compiled.fields

    def fill(*fields: Array) -> Array:
        return Array.string(compiled.join([format_value(f) for f in fields]))

    def unfill(subject: Array):
        parts = tuple(Array.string(part) for part in compiled.split(subject.text()))
        return parts[0] if count == 1 else parts

    forward: Function | None = None
    backward = Function.native(f"parse {template!r}", 1, count, unfill, inverse=lambda: forward)
    forward = Function.native(f"format {template!r}", count, 1, fill, inverse=backward, kind="format")
    return forward
