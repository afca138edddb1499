from __future__ import annotations

import unittest
from decimal import Decimal

from cosigner.errors import ValidationError
from cosigner.operations.rebalance import rebalance


class RebalanceTests(unittest.TestCase):
    def test_excess_token_a_is_left_over(self) -> None:
        result = rebalance(Decimal(100), Decimal(40), Decimal("0.5"))

        self.assertEqual((result.balanced_a, result.balanced_b), (Decimal(80), Decimal(40)))
        self.assertEqual((result.leftover_a, result.leftover_b), (Decimal(20), Decimal(0)))
        self.assertTrue(result.has_leftover)

    def test_excess_token_b_is_left_over(self) -> None:
        result = rebalance(Decimal(10), Decimal(40), Decimal(2))

        self.assertEqual((result.balanced_a, result.balanced_b), (Decimal(10), Decimal(20)))
        self.assertEqual((result.leftover_a, result.leftover_b), (Decimal(0), Decimal(20)))

    def test_exact_ratio_has_no_leftover(self) -> None:
        result = rebalance("3", "6", "2")
        self.assertFalse(result.has_leftover)

    def test_pair_matches_price_and_never_exceeds_inputs(self) -> None:
        cases = [
            ("100", "40", "0.5"),
            ("1", "3", "0.333333333"),
            ("7.123456", "0.000001", "151.25"),
            ("0", "5", "2"),
            ("5", "0", "2"),
        ]
        for amount_a, amount_b, price in cases:
            result = rebalance(amount_a, amount_b, price)
            self.assertLessEqual(result.balanced_a, Decimal(amount_a))
            self.assertLessEqual(result.balanced_b, Decimal(amount_b))
            self.assertFalse(result.leftover_a > 0 and result.leftover_b > 0)
            if result.balanced_a > 0:
                ratio = result.balanced_b / result.balanced_a
                self.assertAlmostEqual(float(ratio), float(Decimal(price)), places=6)

    def test_leftover_below_dust_threshold_is_zeroed(self) -> None:
        result = rebalance("100", "50.05", "0.5", dust_b=Decimal("0.1"))
        self.assertEqual(result.leftover_b, Decimal(0))

        kept = rebalance("100", "50.5", "0.5", dust_b=Decimal("0.1"))
        self.assertEqual(kept.leftover_b, Decimal("0.5"))

    def test_non_positive_price_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            rebalance("1", "1", "0")
        with self.assertRaises(ValidationError):
            rebalance("1", "1", "-3")

    def test_negative_amounts_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            rebalance("-1", "1", "1")

    def test_non_numeric_input_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            rebalance("abc", "1", "1")


if __name__ == "__main__":
    unittest.main()
