"""
Tests for the bounded top-K selection structure.
"""

import math

import numpy as np
import pytest

from atsne import KMin


class TestKMin:
    @pytest.mark.parametrize("k", [1, 3, 10, 50])
    def test_keeps_k_smallest_ascending(self, k):
        rng = np.random.default_rng(k)
        keys = rng.random(200).tolist()
        kmin = KMin(k)
        for i, key in enumerate(keys):
            kmin.add(key, i)
        drained = [keys[i] for i in kmin.get_min_k_items()]
        assert drained == sorted(keys)[:k]
        assert kmin.size() == k

    def test_fewer_items_than_capacity(self):
        kmin = KMin(5)
        for key in (3.0, 1.0, 2.0):
            kmin.add(key, key)
        assert kmin.get_min_k_items() == [1.0, 2.0, 3.0]
        assert kmin.largest_key() is None

    def test_largest_key_once_full(self):
        kmin = KMin(3)
        for key in (5.0, 1.0, 3.0):
            kmin.add(key, key)
        assert kmin.largest_key() == 5.0
        kmin.add(2.0, 2.0)
        assert kmin.largest_key() == 3.0

    def test_reject_at_capacity_leaves_set_unchanged(self):
        kmin = KMin(3)
        for key in (1.0, 2.0, 3.0):
            kmin.add(key, f"v{key}")
        before = kmin.get_min_k_items()
        kmin.add(3.0, "equal")
        kmin.add(7.5, "larger")
        assert kmin.get_min_k_items() == before
        kmin.add(0.5, "smaller")
        assert kmin.get_min_k_items() == ["smaller", "v1.0", "v2.0"]

    def test_ties_keep_insertion_order(self):
        kmin = KMin(2)
        for v in "abc":
            kmin.add(1.0, v)
        assert kmin.get_min_k_items() == ["a", "b"]

    def test_unorderable_payloads(self):
        kmin = KMin(2)
        kmin.add(1.0, {"x": 1})
        kmin.add(1.0, {"x": 2})
        kmin.add(0.5, {"x": 3})
        assert [d["x"] for d in kmin.get_min_k_items()] == [3, 1]

    def test_zero_capacity(self):
        kmin = KMin(0)
        kmin.add(1.0, "a")
        assert kmin.size() == 0
        assert kmin.largest_key() == -math.inf
        assert kmin.get_min_k_items() == []
