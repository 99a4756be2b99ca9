"""
test_ripley.py - Tests for the marked point pattern and cross-K/L functions

How to run:
    pytest tests/test_ripley.py -v
"""

import numpy as np
import pandas as pd
import pytest

from spicy_s.spatial.point.ripley import (
    MarkedPointPattern,
    _isotropic_edge_fraction,
    cross_k,
    cross_l,
    default_rmax,
)


def make_pattern(points, marks, window=(0.0, 10.0, 0.0, 10.0)):
    return MarkedPointPattern(coords=np.asarray(points, dtype=float), marks=np.asarray(marks), window=window)


# ===========================================================================
# SECTION 1 — Pattern construction
# ===========================================================================


class TestMarkedPointPattern:

    def test_window_from_cells(self):
        """Window spans 0 to the largest observed coordinate."""
        df = pd.DataFrame({"x": [2.0, 8.0], "y": [1.0, 5.0], "cellType": ["A", "B"], "imageID": "i"})
        pattern = MarkedPointPattern.from_cells(df)
        assert pattern.window == (0.0, 8.0, 0.0, 5.0)
        assert pattern.area == 40.0
        assert pattern.short_side == 5.0

    def test_points_and_intensity(self):
        pattern = make_pattern([[1, 1], [2, 2], [3, 3]], ["A", "B", "B"])
        assert pattern.n_points("B") == 2
        assert pattern.points_of("A").shape == (1, 2)
        assert pattern.intensity("B") == pytest.approx(2 / 100)

    def test_default_rmax_quarter_short_side(self):
        """Sparse pattern: rmax is a quarter of the shortest side."""
        pattern = make_pattern([[1, 1], [2, 2]], ["A", "B"], window=(0.0, 100.0, 0.0, 50.0))
        assert default_rmax(pattern, "B") == pytest.approx(12.5)

    def test_default_rmax_dense_limit(self):
        """Dense pattern: rmax limited by sqrt(1000 / (pi * lambda))."""
        rng = np.random.default_rng(0)
        pts = rng.uniform(0, 100, (20000, 2))
        pattern = make_pattern(pts, ["B"] * 20000, window=(0.0, 100.0, 0.0, 100.0))
        expected = np.sqrt(1000 / (np.pi * 2.0))
        assert default_rmax(pattern, "B") == pytest.approx(expected)


# ===========================================================================
# SECTION 2 — Isotropic edge correction
# ===========================================================================


class TestEdgeFraction:

    window = (0.0, 10.0, 0.0, 10.0)

    def test_interior_circle(self):
        frac = _isotropic_edge_fraction(np.array([[5.0, 5.0]]), np.array([1.0]), self.window)
        assert frac[0] == pytest.approx(1.0)

    def test_point_on_edge_keeps_half(self):
        frac = _isotropic_edge_fraction(np.array([[0.0, 5.0]]), np.array([1.0]), self.window)
        assert frac[0] == pytest.approx(0.5)

    def test_point_in_corner_keeps_quarter(self):
        """Arcs of two edges overlap in the corner and are removed once."""
        frac = _isotropic_edge_fraction(np.array([[0.0, 0.0]]), np.array([1.0]), self.window)
        assert frac[0] == pytest.approx(0.25)

    def test_partial_edge_cut(self):
        frac = _isotropic_edge_fraction(np.array([[0.5, 5.0]]), np.array([1.0]), self.window)
        assert frac[0] == pytest.approx(1 - np.arccos(0.5) / np.pi)

    def test_zero_distance(self):
        frac = _isotropic_edge_fraction(np.array([[0.0, 0.0]]), np.array([0.0]), self.window)
        assert frac[0] == 1.0

    def test_floor(self):
        frac = _isotropic_edge_fraction(
            np.array([[0.0, 0.0]]), np.array([100.0]), (0.0, 1.0, 0.0, 1.0), min_fraction=0.05
        )
        assert frac[0] == pytest.approx(0.05)


# ===========================================================================
# SECTION 3 — Cross-K / cross-L
# ===========================================================================


class TestCrossFunctions:

    def test_uncorrected_counts(self):
        """
        One A cell with B cells at distance 1 and 3:
        K(r) = area * #pairs within r / (n_a * n_b).
        """
        pattern = make_pattern([[5, 5], [6, 5], [5, 8], [10, 10]], ["A", "B", "B", "C"])
        res = cross_k(pattern, "A", "B", r=np.array([0.0, 1.0, 2.0, 3.0, 4.0]), correction="none")
        np.testing.assert_allclose(res.statistic, [0, 50, 50, 100, 100])
        np.testing.assert_allclose(res.csr_expected, np.pi * res.r**2)

    def test_same_type_excludes_self_pairs(self):
        pattern = make_pattern([[5, 5], [6, 5], [10, 10]], ["A", "A", "C"])
        res = cross_k(pattern, "A", "A", r=np.array([0.5, 1.0]), correction="none")
        # 2 ordered pairs at distance 1, normalised by n(n-1) = 2
        np.testing.assert_allclose(res.statistic, [0.0, 100.0])

    def test_isotropic_upweights_edge_pairs(self):
        interior = make_pattern([[5, 5], [6, 5], [10, 10]], ["A", "B", "C"])
        edge = make_pattern([[0, 5], [1, 5], [10, 10]], ["A", "B", "C"])
        r = np.array([2.0])
        k_in = cross_k(interior, "A", "B", r=r).statistic[0]
        k_edge = cross_k(edge, "A", "B", r=r).statistic[0]
        assert k_edge > k_in

    def test_default_radii(self):
        pattern = make_pattern([[1, 1], [2, 2], [9, 9]], ["A", "B", "B"])
        res = cross_k(pattern, "A", "B", n_radii=33)
        assert len(res.r) == 33
        assert res.r[0] == 0.0
        assert res.r[-1] == pytest.approx(default_rmax(pattern, "B"))

    def test_missing_type_raises(self):
        pattern = make_pattern([[1, 1], [2, 2]], ["A", "A"])
        with pytest.raises(ValueError, match="No cells"):
            cross_k(pattern, "A", "B")

    def test_single_cell_same_type_raises(self):
        pattern = make_pattern([[1, 1], [2, 2]], ["A", "B"])
        with pytest.raises(ValueError, match="At least 2"):
            cross_k(pattern, "A", "A")

    def test_zero_area_raises(self):
        pattern = make_pattern([[0, 1], [0, 2]], ["A", "B"], window=(0.0, 0.0, 0.0, 2.0))
        with pytest.raises(ValueError, match="zero area"):
            cross_k(pattern, "A", "B")

    def test_unknown_correction_raises(self):
        pattern = make_pattern([[1, 1], [2, 2]], ["A", "B"])
        with pytest.raises(ValueError, match="correction"):
            cross_k(pattern, "A", "B", correction="border")

    def test_cross_l_transform(self):
        pattern = make_pattern([[5, 5], [6, 5], [5, 8], [10, 10]], ["A", "B", "B", "C"])
        r = np.array([0.0, 1.0, 3.0])
        k = cross_k(pattern, "A", "B", r=r)
        l = cross_l(pattern, "A", "B", r=r)
        np.testing.assert_allclose(l.statistic, np.sqrt(k.statistic / np.pi))
        np.testing.assert_allclose(l.csr_expected, r)
        np.testing.assert_allclose(l.deviation, l.statistic - r)
        assert l.function_type == "cross-L"
        assert l.label == "A→B"

    def test_attraction_gives_positive_deviation(self):
        """B cells hugging A cells -> L(r) above r at small radii."""
        rng = np.random.default_rng(3)
        a = rng.uniform(0, 100, (50, 2))
        b = a + rng.normal(0, 0.5, (50, 2))
        pts = np.clip(np.vstack([a, b]), 0, 100)
        pattern = make_pattern(pts, ["A"] * 50 + ["B"] * 50, window=(0.0, 100.0, 0.0, 100.0))
        res = cross_l(pattern, "A", "B")
        assert res.deviation.mean() > 0


class TestPublicApi:

    def test_point_exports(self):
        from spicy_s.spatial import point

        assert {"cross_k", "cross_l", "default_rmax", "statistic_matrix"} <= set(point.__all__)
        assert not any(name.endswith("_function") for name in point.__all__)
