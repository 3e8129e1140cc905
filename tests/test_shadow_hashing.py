from __future__ import annotations

import unittest

from app.shadow.hashing import should_include_in_experiment, traffic_bucket


class TrafficInclusionTestCase(unittest.TestCase):
    def test_inclusion_is_deterministic(self) -> None:
        for i in range(50):
            cid = f"conv-{i}"
            first = should_include_in_experiment(cid, 0.3)
            for _ in range(3):
                self.assertEqual(first, should_include_in_experiment(cid, 0.3))

    def test_zero_and_full_allocation(self) -> None:
        self.assertFalse(should_include_in_experiment("conv-x", 0.0))
        self.assertTrue(should_include_in_experiment("conv-x", 1.0))

    def test_bucket_range(self) -> None:
        for i in range(200):
            b = traffic_bucket(f"c{i}")
            self.assertGreaterEqual(b, 0.0)
            self.assertLess(b, 1.0)

    def test_included_share_tracks_allocation(self) -> None:
        n = 10_000
        included = sum(1 for i in range(n) if should_include_in_experiment(f"conversation-{i}", 0.2))
        self.assertAlmostEqual(included / n, 0.2, delta=0.03)

    def test_larger_allocation_is_superset(self) -> None:
        for i in range(500):
            cid = f"conv-{i}"
            if should_include_in_experiment(cid, 0.1):
                self.assertTrue(should_include_in_experiment(cid, 0.5))


if __name__ == "__main__":
    unittest.main()
