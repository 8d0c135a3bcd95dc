from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _values(stack) -> list:
    return [value.to_python() for value in stack]


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for stack machine tests")
class StackMachineTests(unittest.TestCase):
    def test_arguments_arrive_in_push_order(self) -> None:
        from stack_jax import Prim, Push, evaluate

        self.assertEqual(_values(evaluate([Push(3), Push(1), Prim("subtract")])), [2])
        self.assertEqual(_values(evaluate([Push(8), Push(2), Prim("divide")])), [4.0])

    def test_initial_stack_is_bottom_first(self) -> None:
        from stack_jax import Prim, evaluate

        self.assertEqual(_values(evaluate([Prim("subtract")], [10, 4])), [6])
        self.assertEqual(_values(evaluate([], [1, "ab"])), [1, "ab"])

    def test_stack_shuffling_primitives(self) -> None:
        from stack_jax import Prim, evaluate

        self.assertEqual(_values(evaluate([Prim("dup")], [7])), [7, 7])
        self.assertEqual(_values(evaluate([Prim("swap")], [1, 2])), [2, 1])
        self.assertEqual(_values(evaluate([Prim("flip")], [1, 2])), [2, 1])
        self.assertEqual(_values(evaluate([Prim("over")], [1, 2])), [1, 2, 1])
        self.assertEqual(_values(evaluate([Prim("pop")], [1, 2])), [1])

    def test_underflow_names_the_consumer(self) -> None:
        from stack_jax import Prim, StackUnderflow, evaluate

        with self.assertRaisesRegex(StackUnderflow, "add"):
            evaluate([Prim("add")], [1])

    def test_unknown_primitive_is_domain_error(self) -> None:
        from stack_jax import DomainError, Prim, evaluate

        with self.assertRaisesRegex(DomainError, "nope"):
            evaluate([Prim("nope")], [1])

    def test_lambda_and_call(self) -> None:
        from stack_jax import Call, Lambda, Prim, Push, evaluate

        program = [Push(2), Lambda([Push(3), Prim("multiply")]), Call()]
        self.assertEqual(_values(evaluate(program)), [6])

    def test_call_requires_a_function(self) -> None:
        from stack_jax import Call, DomainError, evaluate

        with self.assertRaises(DomainError):
            evaluate([Call()], [1])

    def test_modifier_with_stack_operands_pushes_derived_function(self) -> None:
        from stack_jax import Call, Function, Lambda, Modify, Prim, Push, evaluate

        program = [Push(5), Lambda([Push(1), Prim("add")]), Modify("invert")]
        out = evaluate(program)
        self.assertIsInstance(out[-1], Function)

        self.assertEqual(_values(evaluate([*program, Call()])), [4])

    def test_compose_from_stack_keeps_declaration_order(self) -> None:
        from stack_jax import Call, Lambda, Modify, Prim, Push, evaluate

        program = [
            Push(3),
            Lambda([Push(1), Prim("add")]),
            Lambda([Push(2), Prim("multiply")]),
            Modify("compose"),
            Call(),
        ]
        self.assertEqual(_values(evaluate(program)), [8])

    def test_unknown_modifier_is_domain_error(self) -> None:
        from stack_jax import DomainError, Modify, evaluate

        with self.assertRaises(DomainError):
            evaluate([Modify("nope", ("add",))], [1])

    def test_element_limit(self) -> None:
        from stack_jax import EvalLimits, Push, ResourceExceeded, evaluate

        with self.assertRaises(ResourceExceeded):
            evaluate([Push(list(range(10)))], limits=EvalLimits(max_elements=5))

    def test_element_limit_is_checked_before_allocation(self) -> None:
        from unittest import mock

        from stack_jax import EvalLimits, Prim, ResourceExceeded, evaluate

        limits = EvalLimits(max_elements=10)
        cases = {
            "keep": [[1, 2, 3], 5_000_000],
            "range": [10**9],
            "scale": [[[1, 2], [3, 4]], 10**6],
            "cycle_reshape": [[1, 2], [10**5, 10**5]],
        }
        with mock.patch("stack_jax.broadcast.gather", side_effect=AssertionError("allocated")), mock.patch(
            "stack_jax.values.Array.range", side_effect=AssertionError("allocated")
        ):
            for name, stack in cases.items():
                with self.subTest(name=name):
                    with self.assertRaises(ResourceExceeded) as ctx:
                        evaluate([Prim(name)], stack, limits=limits)
                    self.assertIn(name, str(ctx.exception))

    def test_small_results_stay_within_the_element_limit(self) -> None:
        from stack_jax import EvalLimits, Prim, evaluate

        limits = EvalLimits(max_elements=10)
        self.assertEqual(_values(evaluate([Prim("range")], [4], limits=limits)), [[0, 1, 2, 3]])
        self.assertEqual(_values(evaluate([Prim("keep")], [[1, 2], 2], limits=limits)), [[1, 1, 2, 2]])

    def test_depth_limit(self) -> None:
        from stack_jax import Call, EvalLimits, Lambda, Prim, Push, ResourceExceeded, evaluate

        program = [Push(1), Lambda([Lambda([Prim("identity")]), Call()]), Call()]
        with self.assertRaises(ResourceExceeded):
            evaluate(program, limits=EvalLimits(max_depth=1))
        self.assertEqual(_values(evaluate(program)), [1])

    def test_machine_context_stack(self) -> None:
        from stack_jax import DomainError, StackMachine

        machine = StackMachine()
        machine.save_context(("saved",))
        self.assertEqual(machine.restore_context(), ("saved",))
        with self.assertRaises(DomainError):
            machine.restore_context()

    def test_apply_runs_on_a_fresh_stack(self) -> None:
        from stack_jax import StackMachine, default_table
        from stack_jax.values import Array

        machine = StackMachine()
        machine.push(100)
        (out,) = machine.apply(default_table()["subtract"], Array.scalar(1), Array.scalar(5))
        self.assertEqual(out.to_python(), 4)
        self.assertEqual(len(machine.stack), 1)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for stack machine tests")
class EvalResultTests(unittest.TestCase):
    def test_success(self) -> None:
        from stack_jax import Prim, Push, evaluate_result

        result = evaluate_result([Push(1), Push(2), Prim("add")])
        self.assertTrue(result.ok)
        self.assertIsNone(result.error)
        self.assertEqual(_values(result.unwrap()), [3])

    def test_failure_is_reported_not_raised(self) -> None:
        from stack_jax import Prim, StackUnderflow, evaluate_result

        result = evaluate_result([Prim("pop")])
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, StackUnderflow)
        self.assertEqual(result.stack, ())
        with self.assertRaises(StackUnderflow):
            result.unwrap()


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for stack effect tests")
class StackEffectTests(unittest.TestCase):
    def test_lambda_signature_is_inferred(self) -> None:
        from stack_jax import Prim, Push, Signature, default_table
        from stack_jax.modifiers import lambda_function

        table = default_table()
        self.assertEqual(lambda_function(table, [Push(1), Prim("add")]).signature, Signature(1, 1))
        self.assertEqual(lambda_function(table, [Prim("dup"), Prim("multiply")]).signature, Signature(1, 1))
        self.assertEqual(lambda_function(table, [Push(1), Push(2)]).signature, Signature(0, 2))

    def test_dynamic_call_has_no_static_effect(self) -> None:
        from stack_jax import Call, DomainError, stack_effect

        with self.assertRaises(DomainError):
            stack_effect((Call(),), lambda instr: None)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for error classification tests")
class ErrorClassificationTests(unittest.TestCase):
    def test_runtime_exception_markers(self) -> None:
        from stack_jax.errors import DomainError, ShapeMismatch, classify_runtime_exception

        self.assertIsInstance(classify_runtime_exception(ValueError("Incompatible shapes for broadcasting")), ShapeMismatch)
        self.assertIsInstance(classify_runtime_exception(TypeError("unsupported operand")), DomainError)
        self.assertIsInstance(classify_runtime_exception(OverflowError("cannot convert float infinity to integer")), DomainError)

    def test_arithmetic_errors_become_results(self) -> None:
        from stack_jax import DomainError, Function, Prim, default_table, evaluate_result

        table = default_table().extend({"to_int": Function.native("to_int", 1, 1, lambda value: int(value.data.item()))})
        result = evaluate_result([Prim("to_int")], [float("inf")], table=table)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, DomainError)

    def test_structured_error_messages(self) -> None:
        from stack_jax.errors import FormatMismatch, NotInvertible

        self.assertEqual(str(NotInvertible("drop")), "'drop' is not invertible")
        self.assertIn("dropped", str(NotInvertible("drop", "the dropped rows are lost")))
        err = FormatMismatch("x=_", 0, "x=")
        self.assertEqual((err.template, err.position, err.literal), ("x=_", 0, "x="))


if __name__ == "__main__":
    unittest.main()
