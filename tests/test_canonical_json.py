import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from plank.canonical_json import CanonicalJsonTypeError, canonical_dumps


class TestCanonicalJson(unittest.TestCase):
    def test_board_state_key_order_does_not_matter(self) -> None:
        a = {"columns": {"s1": ["e1", "e2"]}, "entries": {"e1": {"status_id": "s1", "assigned_to": None}}}
        b = {"entries": {"e1": {"assigned_to": None, "status_id": "s1"}}, "columns": {"s1": ["e1", "e2"]}}
        self.assertEqual(canonical_dumps(a), canonical_dumps(b))

    def test_compact_sorted_output(self) -> None:
        row = {"order": 1, "name": "Due", "options": []}
        self.assertEqual(canonical_dumps(row), '{"name":"Due","options":[],"order":1}')

    def test_column_order_is_significant(self) -> None:
        self.assertNotEqual(canonical_dumps({"s1": ["e1", "e2"]}), canonical_dumps({"s1": ["e2", "e1"]}))

    def test_tuples_encode_as_lists(self) -> None:
        self.assertEqual(canonical_dumps({"placement": ("s1", 0)}), '{"placement":["s1",0]}')

    def test_non_ascii_preserved(self) -> None:
        out = canonical_dumps({"name": "Café menu"})
        self.assertIn("Café", out)
        self.assertNotIn("\\u", out)

    def test_unsupported_values(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"ids": {"e1", "e2"}})
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({1: "int key"})

    def test_rejects_non_finite_numbers(self) -> None:
        for value in (float("nan"), float("inf"), float("-inf")):
            with self.assertRaises(ValueError):
                canonical_dumps({"points": value})

    def test_int_and_float_differ(self) -> None:
        self.assertNotEqual(canonical_dumps({"n": 1}), canonical_dumps({"n": 1.0}))


if __name__ == "__main__":
    unittest.main()
