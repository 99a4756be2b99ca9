"""
bootstrap.py - Bootstrap inference for mixed model fixed effects

Replaces the asymptotic p-values of a fitted mixed model with
empirical ones from resampled refits.
"""
from __future__ import annotations

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import linalg

from .models import ModelFit, ModelSpec, estimate_mixed


def _simulate_parametric(fit: ModelFit, rng: np.random.Generator) -> ModelSpec:
    """
    New response from the fixed effects with fresh subject intercepts
    and residuals; the fitted random effects are not reused.
    """
    spec = fit.spec
    groups, group_idx = np.unique(spec.groups.to_numpy(), return_inverse=True)
    b = rng.normal(0.0, np.sqrt(fit.tau2), size=len(groups))
    e = rng.normal(0.0, 1.0, size=spec.n_obs) * np.sqrt(fit.sigma2 / spec.weights)
    return spec.with_response(fit.fitted_fixed + b[group_idx] + e)


def _resample_cases(fit: ModelFit, rng: np.random.Generator) -> ModelSpec:
    """Subjects drawn with replacement, each keeping all its images."""
    spec = fit.spec
    labels = spec.groups.to_numpy()
    subjects = np.unique(labels)
    drawn = rng.choice(subjects, size=len(subjects), replace=True)

    positions = []
    new_labels = []
    for k, s in enumerate(drawn):
        rows = np.flatnonzero(labels == s)
        positions.extend(rows)
        new_labels.extend([f"{s}#{k}"] * len(rows))
    return spec.take(positions, group_labels=np.array(new_labels))


def _one_draw(fit: ModelFit, method: str, seed: np.random.SeedSequence) -> np.ndarray | None:
    rng = np.random.default_rng(seed)
    spec = _simulate_parametric(fit, rng) if method == "parametric" else _resample_cases(fit, rng)

    X = spec.design.to_numpy()
    if spec.n_groups < 2 or np.linalg.matrix_rank(X) < X.shape[1]:
        return None
    try:
        fe_params = estimate_mixed(spec)[0]
    except (ValueError, linalg.LinAlgError, np.linalg.LinAlgError):
        return None
    if not np.all(np.isfinite(fe_params)):
        return None
    return fe_params


def bootstrap_coefficients(
    fit: ModelFit,
    nsim: int = 19,
    method: str = "parametric",
    seed: int | np.random.SeedSequence | None = None,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    Fixed effects of nsim resampled refits.

    Parameters
    ----------
    fit : ModelFit
        Fitted mixed model ('lmm').
    nsim : int
        Number of resamples (>= 1).
    method : str
        'parametric': simulate from the fitted model, drawing new
        random intercepts. 'case': resample subjects with replacement.
    seed : int or SeedSequence, optional
        Random seed.
    n_jobs : int
        Worker processes over resamples.

    Returns
    -------
    pd.DataFrame
        One row per successful resample, one column per term.
    """
    if nsim < 1:
        raise ValueError(f"nsim must be at least 1, got {nsim}")
    if method not in ("parametric", "case"):
        raise ValueError(f"Unknown bootstrap method: {method}")
    if fit.kind != "lmm":
        raise ValueError("Bootstrap requires a mixed model fit")

    if not isinstance(seed, np.random.SeedSequence):
        seed = np.random.SeedSequence(seed)
    seeds = seed.spawn(nsim)
    draws = Parallel(n_jobs=n_jobs)(delayed(_one_draw)(fit, method, s) for s in seeds)
    draws = [d for d in draws if d is not None]
    return pd.DataFrame(draws, columns=fit.spec.terms, dtype=float)


def bootstrap_mixed(
    fit: ModelFit,
    nsim: int = 19,
    method: str = "parametric",
    seed: int | np.random.SeedSequence | None = None,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    Bootstrap standard errors and p-values of a mixed model.

    p = 2 * min(fraction of resampled coefficients < 0,
                fraction > 0)

    Parameters are as for bootstrap_coefficients().

    Returns
    -------
    pd.DataFrame
        Indexed by term with columns:
        'coefficient' : estimate from the original fit
        'se'          : standard deviation over resamples
        'p_value'     : empirical two-sided p-value
        NaN se / p_value when every resample failed.
    """
    boot = bootstrap_coefficients(fit, nsim=nsim, method=method, seed=seed, n_jobs=n_jobs)

    if len(boot) == 0:
        se = np.full(len(fit.spec.terms), np.nan)
        p_value = np.full(len(fit.spec.terms), np.nan)
    else:
        se = boot.std(ddof=1).to_numpy() if len(boot) > 1 else np.full(boot.shape[1], np.nan)
        below = (boot < 0).mean().to_numpy()
        above = (boot > 0).mean().to_numpy()
        p_value = np.minimum(2 * np.minimum(below, above), 1.0)

    return pd.DataFrame(
        {"coefficient": fit.params.to_numpy(), "se": se, "p_value": p_value},
        index=fit.spec.terms,
    )
