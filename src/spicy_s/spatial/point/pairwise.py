"""
pairwise.py - Per-image co-localization statistics for cell type pairs

Drives the cross-L function across every image for each ordered
(from, to) cell type pair and assembles the images x pairs statistic
matrix plus the matching cell count matrices.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spicy_s.data.cells import CellData

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from spicy_s.data.config import SpicyConfig

from .ripley import MarkedPointPattern, cross_l

PAIR_SEP = "__"


def pair_statistic(
    cells: pd.DataFrame,
    from_type: str,
    to_type: str,
    dist: float | None = None,
    integrate: bool = True,
    config: SpicyConfig | None = None,
) -> float:
    """
    Co-localization statistic of one image for one ordered pair.

    Parameters
    ----------
    cells : pd.DataFrame
        Cell rows of a single image.
    from_type, to_type : str
        Source and target cell types.
    dist : float, optional
        Largest radius considered. Full evaluated range if None.
    integrate : bool
        True: mean of L(r) - r over radii <= dist.
        False: L(r) - r at the largest evaluated radius <= dist.

    Returns
    -------
    float
        Statistic, or NaN when the cross-L function is undefined for
        this image (a type absent, degenerate window).
    """
    config = config or SpicyConfig()
    try:
        pattern = MarkedPointPattern.from_cells(cells, config)
        L = cross_l(
            pattern,
            from_type,
            to_type,
            n_radii=config.n_radii,
            min_edge_fraction=config.min_edge_fraction,
        )
    except ValueError:
        return np.nan

    if dist is None:
        dist = L.r.max()

    within = L.r <= dist
    if not np.any(within):
        return np.nan

    deviation = L.deviation[within]
    if integrate:
        return float(np.mean(deviation))
    return float(deviation[-1])


def get_pairwise(
    cells: CellData,
    from_type: str,
    to_type: str,
    dist: float | None = None,
    integrate: bool = True,
    n_jobs: int = 1,
) -> pd.Series:
    """
    Statistic for one ordered pair in every image.

    Parameters
    ----------
    cells : CellData
        Cells across all images.
    from_type, to_type : str
        Source and target cell types.
    dist : float, optional
        Largest radius considered.
    integrate : bool
        See pair_statistic().
    n_jobs : int
        Worker processes over images (joblib semantics).

    Returns
    -------
    pd.Series
        Indexed by image id, NaN where the statistic is undefined.
    """
    per_image = cells.split_by_image()
    values = Parallel(n_jobs=n_jobs)(
        delayed(pair_statistic)(df, from_type, to_type, dist, integrate, cells.config)
        for df in per_image.values()
    )
    return pd.Series(values, index=pd.Index(list(per_image), name=cells.config.image_col), dtype=float)


def pair_labels(from_types: list[str], to_types: list[str]) -> tuple[list[str], list[str], list[str]]:
    """
    Enumerate ordered pairs, 'from' varying fastest.

    Returns
    -------
    m1 : list of str
        'from' type of each pair (from_types repeated len(to_types) times).
    m2 : list of str
        'to' type of each pair (each to_type repeated len(from_types) times).
    labels : list of str
        'from__to' label of each pair.
    """
    m1 = list(from_types) * len(to_types)
    m2 = [t for t in to_types for _ in from_types]
    labels = [f"{a}{PAIR_SEP}{b}" for a, b in zip(m1, m2)]
    return m1, m2, labels


def statistic_matrix(
    cells: CellData,
    from_types: list[str],
    to_types: list[str],
    dist: float | None = None,
    integrate: bool = True,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    Images x pairs matrix of co-localization statistics.

    Columns follow pair_labels() order. Missing values are NaN.
    """
    m1, m2, labels = pair_labels(from_types, to_types)
    columns = [
        get_pairwise(cells, a, b, dist=dist, integrate=integrate, n_jobs=n_jobs)
        for a, b in zip(m1, m2)
    ]
    if not columns:
        return pd.DataFrame(index=pd.Index(cells.image_ids(), name=cells.config.image_col))
    mat = pd.concat(columns, axis=1)
    mat.columns = labels
    return mat


def count_matrices(
    cells: CellData,
    from_types: list[str],
    to_types: list[str],
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Per-image cell counts of the 'from' and 'to' type of every pair.

    Returns
    -------
    count1, count2 : pd.DataFrame
        Same shape and labels as statistic_matrix(). Types missing
        from an image count as 0.
    """
    m1, m2, labels = pair_labels(from_types, to_types)
    counts = cells.cell_counts().reindex(columns=sorted(set(m1) | set(m2)), fill_value=0)
    count1 = pd.DataFrame({lab: counts[a].to_numpy() for lab, a in zip(labels, m1)}, index=counts.index)
    count2 = pd.DataFrame({lab: counts[b].to_numpy() for lab, b in zip(labels, m2)}, index=counts.index)
    return count1, count2
