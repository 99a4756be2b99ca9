"""
ripley.py - Cross-type K and L functions for marked point patterns

Builds a rectangular marked point pattern from one image's cells and
evaluates the cross-K / cross-L function between two marks with
Ripley's isotropic edge correction.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.spatial import KDTree

from spicy_s.data.config import SpicyConfig


@dataclass
class RipleyResult:
    """
    Container for Ripley's statistic results.

    Attributes
    ----------
    r : np.ndarray
        Distance values where statistic was evaluated.
    statistic : np.ndarray
        K(r) or L(r) values.
    csr_expected : np.ndarray
        Expected values under independence of the two marks.
    function_type : str
        'cross-K' or 'cross-L'.
    correction : str
        Edge correction method used.
    label : str
        Description (e.g., 'Tumour→Tcell').
    """

    r: np.ndarray
    statistic: np.ndarray
    csr_expected: np.ndarray
    function_type: str
    correction: str
    label: str = ""

    @property
    def deviation(self) -> np.ndarray:
        """Difference from the independence expectation."""
        return self.statistic - self.csr_expected

    def summary(self) -> dict:
        dev = self.deviation
        return {
            "function": self.function_type,
            "label": self.label,
            "correction": self.correction,
            "max_r": self.r.max(),
            "n_distances": len(self.r),
            "max_deviation": dev.max(),
            "min_deviation": dev.min(),
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"RipleyResult({s['function']}, label={s['label']}, "
            f"max_r={s['max_r']:.1f}, "
            f"max_dev={s['max_deviation']:.2f})"
        )


@dataclass(frozen=True)
class MarkedPointPattern:
    """
    Points in a rectangular window, each carrying a cell type mark.

    Attributes
    ----------
    coords : np.ndarray (n, 2)
    marks : np.ndarray (n,)
    window : tuple (xmin, xmax, ymin, ymax)
    """

    coords: np.ndarray
    marks: np.ndarray
    window: tuple[float, float, float, float]

    @classmethod
    def from_cells(cls, cells: pd.DataFrame, config: SpicyConfig | None = None) -> MarkedPointPattern:
        """
        Pattern for one image. Window is [0, max(x)] x [0, max(y)].
        """
        config = config or SpicyConfig()
        x_col, y_col = config.get_coordinate_columns()
        coords = cells[[x_col, y_col]].to_numpy(dtype=float)
        marks = cells[config.cell_type_col].astype(str).to_numpy()
        window = (0.0, float(coords[:, 0].max()), 0.0, float(coords[:, 1].max()))
        return cls(coords=coords, marks=marks, window=window)

    @property
    def area(self) -> float:
        xmin, xmax, ymin, ymax = self.window
        return (xmax - xmin) * (ymax - ymin)

    @property
    def short_side(self) -> float:
        xmin, xmax, ymin, ymax = self.window
        return min(xmax - xmin, ymax - ymin)

    def points_of(self, mark: str) -> np.ndarray:
        return self.coords[self.marks == mark]

    def n_points(self, mark: str) -> int:
        return int(np.sum(self.marks == mark))

    def intensity(self, mark: str) -> float:
        return self.n_points(mark) / self.area


def default_rmax(pattern: MarkedPointPattern, to_type: str) -> float:
    """
    Default largest radius for a K function.

    Quarter of the shortest window side, further limited to
    sqrt(1000 / (pi * lambda)) for dense patterns, where lambda is the
    intensity of the target type.
    """
    rmax = 0.25 * pattern.short_side
    lam = pattern.intensity(to_type)
    if lam > 0:
        rmax = min(rmax, np.sqrt(1000.0 / (np.pi * lam)))
    return float(rmax)


def _isotropic_edge_fraction(
    points: np.ndarray,
    d: np.ndarray,
    window: tuple[float, float, float, float],
    min_fraction: float = 0.01,
) -> np.ndarray:
    """
    Ripley isotropic edge correction for a rectangle.

    Fraction of the circumference of the circle centred at each point
    with radius d that falls inside the window. Arcs cut off by two
    adjacent edges overlap near a corner and are only removed once.

    Parameters
    ----------
    points : np.ndarray (m, 2)
    d : np.ndarray (m,), distances (radii)
    window : (xmin, xmax, ymin, ymax)
    min_fraction : float
        Floor to avoid division by ~0.

    Returns
    -------
    np.ndarray (m,)
        Fractions in (0, 1]. 1.0 = entire circle inside window.
    """
    xmin, xmax, ymin, ymax = window
    px, py = points[:, 0], points[:, 1]
    fraction = np.ones(len(d))
    pos = d > 0
    if not np.any(pos):
        return fraction

    r = d[pos]
    # left, right, bottom, top
    dist_to_edge = [
        px[pos] - xmin,
        xmax - px[pos],
        py[pos] - ymin,
        ymax - py[pos],
    ]
    half_angles = [np.where(e < r, np.arccos(np.clip(e / r, -1, 1)), 0.0) for e in dist_to_edge]
    outside = 2 * np.sum(half_angles, axis=0)

    # corners: (left, bottom), (left, top), (right, bottom), (right, top)
    for i, j in [(0, 2), (0, 3), (1, 2), (1, 3)]:
        in_corner = dist_to_edge[i] ** 2 + dist_to_edge[j] ** 2 < r**2
        overlap = half_angles[i] + half_angles[j] - np.pi / 2
        outside = outside - np.where(in_corner, np.maximum(overlap, 0.0), 0.0)

    fraction[pos] = np.maximum(1.0 - outside / (2 * np.pi), min_fraction)
    return fraction


def cross_k(
    pattern: MarkedPointPattern,
    type_a: str,
    type_b: str,
    r: np.ndarray | None = None,
    correction: str = "isotropic",
    n_radii: int = 513,
    min_edge_fraction: float = 0.01,
    verbose: bool = False,
) -> RipleyResult:
    """
    Compute cross-K function between two cell types.

    Measures whether cells of type_b are found around cells of type_a
    at each distance r. When type_a == type_b this is the ordinary K
    function of that type (self-pairs excluded).

    Parameters
    ----------
    pattern : MarkedPointPattern
        Pattern for a single image.
    type_a : str
        Source cell type.
    type_b : str
        Target cell type.
    r : np.ndarray, optional
        Radii. Defaults to n_radii values from 0 to default_rmax().
    correction : str
        Edge correction: 'isotropic' (Ripley) or 'none'.
    n_radii : int
        Number of radii when r is not given.
    min_edge_fraction : float
        Floor on the isotropic edge fraction.
    verbose : bool
        Print a one-line report.

    Returns
    -------
    RipleyResult
        Cross-K values. Expectation under independence = pi*r^2.

    Raises
    ------
    ValueError
        If a type has no points, the window has zero area or the
        correction is unknown.
    """
    if correction not in ("isotropic", "none"):
        raise ValueError(f"Unknown edge correction: {correction}")
    if pattern.area <= 0:
        raise ValueError("Window has zero area: cells lie on a line")

    coords_a = pattern.points_of(type_a)
    coords_b = pattern.points_of(type_b)
    n_a, n_b = len(coords_a), len(coords_b)
    same = type_a == type_b

    if n_a == 0 or n_b == 0:
        raise ValueError(f"No cells found for type_a='{type_a}' ({n_a}) or type_b='{type_b}' ({n_b})")
    if same and n_a < 2:
        raise ValueError(f"At least 2 cells of type '{type_a}' are needed, found {n_a}")

    if r is None:
        r = np.linspace(0, default_rmax(pattern, type_b), n_radii)
    r = np.asarray(r, dtype=float)
    max_r = r.max()

    # All (a, b) pairs within the largest radius
    tree_a = KDTree(coords_a)
    tree_b = KDTree(coords_b)
    close = tree_a.sparse_distance_matrix(tree_b, max_r, output_type="ndarray")
    i_idx, j_idx, dists = close["i"], close["j"], close["v"]
    if same:
        keep = i_idx != j_idx
        i_idx, dists = i_idx[keep], dists[keep]

    if correction == "isotropic":
        weights = 1.0 / _isotropic_edge_fraction(coords_a[i_idx], dists, pattern.window, min_edge_fraction)
    else:
        weights = np.ones(len(dists))

    order = np.argsort(dists)
    cum_weights = np.concatenate([[0.0], np.cumsum(weights[order])])
    n_within = np.searchsorted(dists[order], r, side="right")

    denom = n_a * (n_a - 1) if same else n_a * n_b
    K_values = pattern.area * cum_weights[n_within] / denom
    csr_expected = np.pi * r**2

    if verbose:
        print(f"  ✓ Cross-K ({type_a}→{type_b}): n_a={n_a}, n_b={n_b}, max_r={max_r:.1f}")

    return RipleyResult(
        r=r,
        statistic=K_values,
        csr_expected=csr_expected,
        function_type="cross-K",
        correction=correction,
        label=f"{type_a}→{type_b}",
    )


def cross_l(
    pattern: MarkedPointPattern,
    type_a: str,
    type_b: str,
    r: np.ndarray | None = None,
    correction: str = "isotropic",
    n_radii: int = 513,
    min_edge_fraction: float = 0.01,
    verbose: bool = False,
) -> RipleyResult:
    """
    Compute cross-L function (variance-stabilized cross-K).

    L_AB(r) = sqrt(K_AB(r)/pi). Under independence, L_AB(r) = r.
    Values above r mean type_b clusters around type_a.

    Parameters are as for cross_k().

    Returns
    -------
    RipleyResult
        Cross-L values with csr_expected = r.
    """
    k_result = cross_k(
        pattern,
        type_a,
        type_b,
        r=r,
        correction=correction,
        n_radii=n_radii,
        min_edge_fraction=min_edge_fraction,
    )

    L_values = np.sqrt(k_result.statistic / np.pi)

    if verbose:
        dev = L_values - k_result.r
        print(f"  ✓ Cross-L ({type_a}→{type_b}): max deviation = {np.max(np.abs(dev)):.4f}")

    return RipleyResult(
        r=k_result.r,
        statistic=L_values,
        csr_expected=k_result.r.copy(),
        function_type="cross-L",
        correction=k_result.correction,
        label=k_result.label,
    )
