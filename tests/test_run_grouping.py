from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for grouping tests")
class GroupRunsTests(unittest.TestCase):
    def test_structural_runs(self) -> None:
        from stack_jax.grouping import group_runs
        from stack_jax.values import Array, ElementKind

        runs = group_runs(Array.from_python([5, 5, 5]))
        self.assertIs(runs.kind, ElementKind.BOX)
        self.assertEqual(runs.shape, (1,))
        self.assertEqual(group_runs(Array.from_python([1, 2, 3])).shape, (3,))
        self.assertEqual(group_runs(Array.from_python("aabccc")).to_python(), ["aa", "b", "ccc"])

    def test_runs_of_rows(self) -> None:
        from stack_jax.grouping import group_runs
        from stack_jax.values import Array

        runs = group_runs(Array.from_python([[1, 2], [1, 2], [3, 4]]))
        self.assertEqual(runs.to_python(), [[[1, 2], [1, 2]], [[3, 4]]])
        self.assertEqual(runs.data[0].shape, (2, 2))

    def test_empty_input_gives_no_runs(self) -> None:
        from stack_jax.grouping import group_runs
        from stack_jax.values import Array

        runs = group_runs(Array.empty())
        self.assertEqual(runs.shape, (0,))
        self.assertEqual(runs.to_python(), [])

    def test_custom_adjacency_compares_with_previous_row(self) -> None:
        from stack_jax.grouping import group_runs
        from stack_jax.values import Array

        seen: list[tuple[int, int]] = []

        def close(previous: Array, current: Array) -> bool:
            seen.append((previous.to_python(), current.to_python()))
            return abs(current.to_python() - previous.to_python()) <= 1

        runs = group_runs(Array.from_python([1, 2, 3, 7, 8]), close)
        self.assertEqual(runs.to_python(), [[1, 2, 3], [7, 8]])
        self.assertEqual(seen, [(1, 2), (2, 3), (3, 7), (7, 8)])


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for grouping tests")
class SplitRunsTests(unittest.TestCase):
    def test_separators_and_empty_runs_are_dropped(self) -> None:
        from stack_jax.grouping import split_runs
        from stack_jax.values import Array

        out = split_runs(Array.from_python([0, 1, 0, 0, 2, 3, 0]), [True, False, True, True, False, False, True])
        self.assertEqual(out.to_python(), [[1], [2, 3]])

    def test_mask_length_must_match(self) -> None:
        from stack_jax.errors import DomainError
        from stack_jax.grouping import split_runs
        from stack_jax.values import Array

        with self.assertRaises(DomainError):
            split_runs(Array.from_python([1, 2]), [True])

    def test_window_separators(self) -> None:
        from stack_jax.grouping import window_separators
        from stack_jax.values import Array

        text = Array.from_python("a--b---c")
        self.assertEqual(
            window_separators(text, Array.from_python("--")),
            [False, True, True, False, True, True, False, False],
        )
        self.assertEqual(
            window_separators(Array.from_python([1, 0, 2]), Array.scalar(0)),
            [False, True, False],
        )

    def test_window_separator_rank_is_checked(self) -> None:
        from stack_jax.errors import DomainError
        from stack_jax.grouping import split_on
        from stack_jax.values import Array

        with self.assertRaises(DomainError):
            split_on(Array.from_python([[1, 2]]), Array.scalar(1))
        with self.assertRaises(DomainError):
            split_on(Array.from_python([[[1]]]), Array.from_python([1, 2]))
        with self.assertRaises(DomainError):
            split_on(Array.from_python(""), Array.from_python("abc"))


if __name__ == "__main__":
    unittest.main()
