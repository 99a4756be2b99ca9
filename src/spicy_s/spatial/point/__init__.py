# src/spicy_s/spatial/point/__init__.py

"""
Point pattern statistics from cell centroids.

Each image is treated as a marked point pattern in the window
[0, max(x)] x [0, max(y)], marks being cell types.

Modules
-------
- ripley: Cross-type K/L functions with isotropic edge correction
- pairwise: Per-image statistic, per-pair aggregation, statistic matrix

Quick Start
-----------
>>> import spicy_s as sp
>>>
>>> # One image, one ordered pair
>>> df = cells.cells_in_image('img1')
>>> pattern = sp.spatial.point.MarkedPointPattern.from_cells(df)
>>> L = sp.spatial.point.cross_l(pattern, 'Tumour', 'Tcell')
>>>
>>> # Every image, every pair
>>> mat = sp.spatial.point.statistic_matrix(
...     cells, from_types=['Tumour', 'Tcell'], to_types=['Tumour', 'Tcell']
... )

Point Pattern Analysis
----------------------
cross_k
    Cross-type K function
cross_l
    Cross-type L function
default_rmax
    Default largest radius for K functions

Co-localization Statistics
--------------------------
pair_statistic
    Mean (or end-point) deviation of cross-L from its expectation
get_pairwise
    Statistic of one pair in every image
statistic_matrix
    Images x pairs statistics
count_matrices
    Per-image cell counts matching the statistic matrix
"""

from .ripley import (
    RipleyResult,
    MarkedPointPattern,
    default_rmax,
    cross_k,
    cross_l,
)

from .pairwise import (
    pair_statistic,
    get_pairwise,
    pair_labels,
    statistic_matrix,
    count_matrices,
)

__all__ = [
    # Classes
    'RipleyResult',
    'MarkedPointPattern',

    # Point pattern analysis
    'default_rmax',
    'cross_k',
    'cross_l',

    # Co-localization statistics
    'pair_statistic',
    'get_pairwise',
    'pair_labels',
    'statistic_matrix',
    'count_matrices',
]
