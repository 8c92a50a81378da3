"""Tests for the dataset-level swapping technique."""

from __future__ import annotations

from collections import Counter

import pytest

from veil.errors import InvalidParameterError
from veil.techniques.swapping import SwappingTechnique


@pytest.fixture
def swapping() -> SwappingTechnique:
    return SwappingTechnique()


class TestSwapping:
    def test_preserves_multiset(self, swapping):
        values = ["a", "b", "c", "d", "e", "a", None]
        result = swapping.apply_dataset(values, {})
        assert Counter(result) == Counter(values)
        assert len(result) == len(values)

    def test_full_swap_moves_every_paired_value(self, swapping):
        values = list(range(10))
        result = swapping.apply_dataset(values, {"swap_fraction": 1.0})
        assert all(result[i] != i for i in range(10))

    def test_odd_count_leaves_one_in_place(self, swapping):
        values = list(range(7))
        result = swapping.apply_dataset(values, {})
        assert sum(1 for i in range(7) if result[i] == i) == 1

    def test_zero_fraction_is_identity(self, swapping):
        values = list(range(10))
        assert swapping.apply_dataset(values, {"swap_fraction": 0}) == values

    def test_partial_fraction_rounds_up(self, swapping):
        values = list(range(10))
        result = swapping.apply_dataset(values, {"swap_fraction": 0.3})
        # 5 pairs, ceil(1.5) = 2 of them swapped
        assert sum(1 for i in range(10) if result[i] != i) == 4

    @pytest.mark.parametrize("values", [[], ["only"]])
    def test_fewer_than_two_values_unchanged(self, swapping, values):
        assert swapping.apply_dataset(values, {}) == values

    def test_input_not_mutated(self, swapping):
        values = list(range(6))
        swapping.apply_dataset(values, {})
        assert values == list(range(6))

    @pytest.mark.parametrize("fraction", [-0.1, 1.5, "lots"])
    def test_invalid_fraction(self, swapping, fraction):
        with pytest.raises(InvalidParameterError):
            swapping.apply_dataset([1, 2], {"swap_fraction": fraction})
