"""
weights.py - Heteroscedasticity weights from cell counts

Images with few cells of either type give noisy statistics. A smooth
surface of (count of 'from' cells, count of 'to' cells) is fit to the
squared deviation of every statistic from its pair mean, pooled over
all pairs. Regression weights shrink as the predicted variance grows.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.linear_model import RidgeCV
from sklearn.preprocessing import SplineTransformer


@dataclass(frozen=True, eq=False)
class WeightModel:
    """
    Fitted tensor-product spline surface of variance over cell counts.

    Attributes
    ----------
    spline1, spline2 : SplineTransformer
        Marginal B-spline bases for the 'from' and 'to' counts.
    regressor : RidgeCV
        Penalized regression on the tensor-product basis.
    n_obs : int
        Number of (image, pair) observations used in the fit.
    """

    spline1: SplineTransformer
    spline2: SplineTransformer
    regressor: RidgeCV
    n_obs: int

    def _basis(self, count1: np.ndarray, count2: np.ndarray) -> np.ndarray:
        B1 = self.spline1.transform(np.asarray(count1, dtype=float).reshape(-1, 1))
        B2 = self.spline2.transform(np.asarray(count2, dtype=float).reshape(-1, 1))
        return np.einsum("ij,ik->ijk", B1, B2).reshape(len(B1), -1)

    def predict(self, count1, count2) -> np.ndarray:
        """Predicted variance proxy for each (count1, count2)."""
        return self.regressor.predict(self._basis(count1, count2))

    def __repr__(self) -> str:
        return f"WeightModel(n_obs={self.n_obs}, alpha={self.regressor.alpha_:.3g})"


def fit_weight_model(
    stat_matrix: pd.DataFrame,
    count1: pd.DataFrame,
    count2: pd.DataFrame,
    n_knots: int = 5,
    degree: int = 3,
    min_observations: int = 10,
) -> WeightModel | None:
    """
    Fit the variance surface on the full statistic matrix.

    The basis is the full tensor product of the two marginal spline
    bases, so it spans the main effects of each count as well as their
    interaction. Pair means are removed before the fit; a basis without
    main effects is not used.

    Parameters
    ----------
    stat_matrix : pd.DataFrame
        Images x pairs statistics (NaN allowed).
    count1, count2 : pd.DataFrame
        Matching per-image counts of the 'from' and 'to' types.
    n_knots : int
        Knots per count axis.
    degree : int
        Spline degree.
    min_observations : int
        Fewer non-missing statistics -> no model.

    Returns
    -------
    WeightModel or None
        None (with a warning) when the surface cannot be fit; callers
        then use uniform weights.
    """
    values = stat_matrix.to_numpy(dtype=float)
    with warnings.catch_warnings():
        # pairs with no defined statistic give an all-NaN column
        warnings.simplefilter("ignore", category=RuntimeWarning)
        pair_means = np.nanmean(values, axis=0, keepdims=True)
    res_sq = ((values - pair_means) ** 2).ravel()
    c1 = count1.reindex_like(stat_matrix).to_numpy(dtype=float).ravel()
    c2 = count2.reindex_like(stat_matrix).to_numpy(dtype=float).ravel()
    ok = np.isfinite(res_sq)
    res_sq, c1, c2 = res_sq[ok], c1[ok], c2[ok]

    n_combos = len(set(zip(c1, c2)))
    if len(res_sq) < min_observations or n_combos < 3:
        warnings.warn(
            f"Weight model not fit ({len(res_sq)} statistics, {n_combos} distinct count pairs); "
            "using uniform weights",
            stacklevel=2,
        )
        return None

    try:
        spline1 = SplineTransformer(n_knots=n_knots, degree=degree, extrapolation="constant").fit(c1.reshape(-1, 1))
        spline2 = SplineTransformer(n_knots=n_knots, degree=degree, extrapolation="constant").fit(c2.reshape(-1, 1))
        model = WeightModel(
            spline1=spline1,
            spline2=spline2,
            regressor=RidgeCV(alphas=np.logspace(-3, 3, 13)),
            n_obs=len(res_sq),
        )
        model.regressor.fit(model._basis(c1, c2), res_sq)
    except (ValueError, np.linalg.LinAlgError) as e:
        warnings.warn(f"Weight model fit failed: {e}; using uniform weights", stacklevel=2)
        return None

    return model


def compute_weights(
    weight_model: WeightModel | None,
    count1,
    count2,
) -> np.ndarray:
    """
    Regression weights for the images of one pair.

    w = 1 / sqrt(z - min(z) + 1) with z the predicted variance, then
    normalized to sum to 1. Uniform when weight_model is None.
    """
    count1 = np.asarray(count1, dtype=float)
    count2 = np.asarray(count2, dtype=float)
    n = len(count1)
    if n == 0:
        return np.zeros(0)

    if weight_model is None:
        w = np.ones(n)
    else:
        z = weight_model.predict(count1, count2)
        w = 1.0 / np.sqrt(z - z.min() + 1.0)

    return w / w.sum()
