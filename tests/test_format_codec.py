from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _run(program, stack=()):
    from stack_jax import evaluate

    return [value.to_python() for value in evaluate(program, stack)]


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for codec tests")
class TemplateTests(unittest.TestCase):
    def test_parse_literals_and_fields(self) -> None:
        from stack_jax import Template

        template = Template.parse("x=_, y=_")
        self.assertEqual(template.literals, ("x=", ", y=", ""))
        self.assertEqual(template.fields, 2)
        self.assertEqual(Template.parse("plain").fields, 0)

    def test_escaped_placeholder_is_literal(self) -> None:
        from stack_jax import Template

        template = Template.parse("a\\_b_")
        self.assertEqual(template.literals, ("a_b", ""))
        self.assertEqual(template.join(["c"]), "a_bc")

    def test_join_checks_field_count(self) -> None:
        from stack_jax import FormatMismatch, Template

        template = Template.parse("x=_, y=_")
        self.assertEqual(template.join(["1", "2"]), "x=1, y=2")
        with self.assertRaises(FormatMismatch):
            template.join(["1"])

    def test_split_matches_literals_greedily(self) -> None:
        from stack_jax import Template

        self.assertEqual(Template.parse("x=_, y=_").split("x=1, y=2"), ["1", "2"])
        self.assertEqual(Template.parse("<_>").split("<a>"), ["a"])
        self.assertEqual(Template.parse("_:_").split("a:b:c"), ["a", "b:c"])
        self.assertEqual(Template.parse("plain").split("plain"), [])

    def test_split_failures_name_literal_and_position(self) -> None:
        from stack_jax import FormatMismatch, Template

        template = Template.parse("x=_, y=_")
        with self.assertRaises(FormatMismatch) as ctx:
            template.split("z=1, y=2")
        self.assertEqual((ctx.exception.position, ctx.exception.literal), (0, "x="))

        with self.assertRaises(FormatMismatch) as ctx:
            template.split("x=1; y=2")
        self.assertEqual((ctx.exception.position, ctx.exception.literal), (2, ", y="))

        with self.assertRaises(FormatMismatch):
            Template.parse("<_>").split("<a")
        with self.assertRaises(FormatMismatch):
            Template.parse("plain").split("plain!")

    def test_adjacent_fields_cannot_be_split(self) -> None:
        from stack_jax import FormatMismatch, Template

        with self.assertRaisesRegex(FormatMismatch, "Adjacent"):
            Template.parse("__").split("ab")

    def test_from_separators(self) -> None:
        from stack_jax import Template

        template = Template.from_separators([",", ";"])
        self.assertEqual(template.split("a,b;c"), ["a", "b", "c"])
        self.assertEqual(template.join(["a", "b", "c"]), "a,b;c")


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for codec tests")
class FieldCodecTests(unittest.TestCase):
    def test_split_fields_with_scalar_separator(self) -> None:
        from stack_jax import Prim

        self.assertEqual(_run([Prim("split_fields")], ["a,bc,d", ","]), [["a", "bc", "d"]])
        self.assertEqual(_run([Prim("split_fields")], ["a - bc - d", " - "]), [["a", "bc", "d"]])
        self.assertEqual(_run([Prim("split_fields")], ["a,,b", ","]), [["a", "", "b"]])
        self.assertEqual(_run([Prim("split_fields")], ["abc", ","]), [["abc"]])

    def test_join_fields(self) -> None:
        from stack_jax import Prim

        self.assertEqual(_run([Prim("join_fields")], [["a", "bc", "d"], ","]), ["a,bc,d"])
        self.assertEqual(_run([Prim("join_fields")], [[1, 2, 3], " - "]), ["1 - 2 - 3"])
        self.assertEqual(_run([Prim("join_fields")], [["a", "b", "c"], [": ", "; "]]), ["a: b; c"])

    def test_join_split_round_trip(self) -> None:
        from stack_jax import Prim

        for fields, separator in ((["a", "bc", "d"], ","), (["x", "yy"], " - "), (["only"], ";")):
            with self.subTest(fields=fields, separator=separator):
                (text,) = _run([Prim("join_fields")], [fields, separator])
                self.assertEqual(_run([Prim("split_fields")], [text, separator]), [fields])

    def test_empty_text_is_one_empty_field(self) -> None:
        from stack_jax import Prim

        self.assertEqual(_run([Prim("join_fields")], [[], ","]), [""])
        self.assertEqual(_run([Prim("split_fields")], ["", ","]), [[""]])
        self.assertEqual(_run([Prim("join_fields")], [[""], ","]), [""])

    def test_invert_join_fields_splits(self) -> None:
        from stack_jax import Modify, Prim, Push

        program = [Modify("invert", ([Push(","), Prim("join_fields")],))]
        self.assertEqual(_run(program, ["a,bc,d"]), [["a", "bc", "d"]])

    def test_separator_must_be_text(self) -> None:
        from stack_jax import DomainError, Prim, evaluate

        with self.assertRaises(DomainError):
            evaluate([Prim("split_fields")], ["a,b", 1])
        with self.assertRaises(DomainError):
            evaluate([Prim("split_fields")], ["a,b", ""])

    def test_format_with_and_parse_with(self) -> None:
        from stack_jax import Modify, Prim, Push

        self.assertEqual(_run([Prim("format_with")], [[3, 4], "_ + _"]), ["3 + 4"])
        self.assertEqual(_run([Prim("parse_with")], ["3 + 4", "_ + _"]), [["3", "4"]])
        parse = Modify("invert", ([Push("(_, _)"), Prim("format_with")],))
        self.assertEqual(_run([parse], ["(a, b)"]), [["a", "b"]])

    def test_format_value_prints_numbers(self) -> None:
        from stack_jax.codec import format_value
        from stack_jax.values import Array

        self.assertEqual(format_value(Array.scalar(2.0)), "2")
        self.assertEqual(format_value(Array.scalar(2.5)), "2.5")
        self.assertEqual(format_value(Array.string("hi")), "hi")
        self.assertEqual(format_value(Array.from_python([1, 2])), "[1 2]")


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for codec tests")
class FormatFunctionTests(unittest.TestCase):
    def test_fields_fill_from_top_of_stack(self) -> None:
        from stack_jax import Invoke, format_function

        fmt = format_function("_-_")
        self.assertEqual(fmt.signature.args, 2)
        self.assertEqual(_run([Invoke(fmt)], ["b", "a"]), ["a-b"])

    def test_inverse_parses_back(self) -> None:
        from stack_jax import Invoke, default_table, format_function, invert

        fmt = format_function("_-_")
        parse = invert(default_table(), fmt)
        self.assertEqual(parse.signature.outputs, 2)
        self.assertEqual(_run([Invoke(parse)], ["a-b"]), ["b", "a"])
        self.assertEqual(_run([Invoke(fmt), Invoke(parse)], ["b", "a"]), ["b", "a"])

    def test_single_field_template(self) -> None:
        from stack_jax import FormatMismatch, Invoke, default_table, evaluate, format_function, invert

        fmt = format_function("<_>")
        self.assertEqual(_run([Invoke(fmt)], [7]), ["<7>"])
        self.assertEqual(_run([Invoke(invert(default_table(), fmt))], ["<7>"]), ["7"])
        with self.assertRaises(FormatMismatch):
            evaluate([Invoke(invert(default_table(), fmt))], ["[7]"])


if __name__ == "__main__":
    unittest.main()
