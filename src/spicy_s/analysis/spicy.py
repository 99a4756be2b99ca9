"""
spicy.py - Spatial co-localization testing across conditions

Entry point spicy(): computes the images x pairs co-localization
matrix, fits the count-based weight model once, then fits one weighted
linear (or mixed) model per cell type pair and collects coefficients,
standard errors, degrees of freedom, test statistics and p-values into
a SpicyResult.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from statsmodels.stats.multitest import multipletests

from spicy_s.data.cells import CellData
from spicy_s.data.config import ValidationError
from spicy_s.spatial.point.pairwise import count_matrices, pair_labels, statistic_matrix
from spicy_s.stats.bootstrap import bootstrap_mixed
from spicy_s.stats.models import ModelFit, fit_lm, fit_mixed
from spicy_s.stats.weights import WeightModel, fit_weight_model

LM_TEST = "Testing for spatial differences across conditions"
LMM_TEST = "Testing for spatial differences across conditions accounting for multiple images per subject"


@dataclass(frozen=True, eq=False)
class SpicyResult:
    """
    Per-pair regression results.

    Every table is indexed by pair label ('from__to') with one column
    per model term. Pairs without a fit are NaN rows.

    Attributes
    ----------
    pairwise_assoc : pd.DataFrame
        Images x pairs co-localization statistics.
    from_types, to_types : tuple of str
        Requested cell types; pairs are their cross-product.
    test : str or None
        Description of the model family, None if no test was run.
    coefficient, se, df, statistic, p_value : pd.DataFrame or None
        Pairs x terms tables. df is only set for mixed models without
        bootstrap; statistic is not set for bootstrap results.
    condition_terms : tuple of str
        Terms coding the condition contrast.
    nsim : int or None
        Number of bootstrap resamples, if bootstrap inference was used.
    weight_model : WeightModel or None
        Variance surface used for the weights.
    alpha : float
        Significance level of the summary counts.
    """

    pairwise_assoc: pd.DataFrame
    from_types: tuple[str, ...]
    to_types: tuple[str, ...]
    test: str | None = None
    coefficient: pd.DataFrame | None = None
    se: pd.DataFrame | None = None
    df: pd.DataFrame | None = None
    statistic: pd.DataFrame | None = None
    p_value: pd.DataFrame | None = None
    condition_terms: tuple[str, ...] = ()
    nsim: int | None = None
    weight_model: WeightModel | None = None
    alpha: float = 0.05

    @property
    def pairs(self) -> pd.DataFrame:
        """'from' and 'to' type of every pair, indexed by pair label."""
        m1, m2, labels = pair_labels(list(self.from_types), list(self.to_types))
        return pd.DataFrame({"from": m1, "to": m2}, index=pd.Index(labels, name="pair"))

    @property
    def n_pairs(self) -> int:
        return len(self.pairwise_assoc.columns)

    @property
    def has_model(self) -> bool:
        return self.p_value is not None

    def to_long(self) -> pd.DataFrame:
        """
        One row per (pair, term).

        Columns: pair, from, to, term and whichever of coefficient, se,
        df, statistic, p_value are available.
        """
        if not self.has_model:
            raise ValueError("No model was fit; use pairwise_assoc")

        parts = {}
        for name in ("coefficient", "se", "df", "statistic", "p_value"):
            table = getattr(self, name)
            if table is not None:
                parts[name] = table.stack(future_stack=True)
        long = pd.DataFrame(parts)
        long.index.names = ["pair", "term"]
        long = long.reset_index()
        pairs = self.pairs
        long.insert(1, "from", pairs.loc[long["pair"], "from"].to_numpy())
        long.insert(2, "to", pairs.loc[long["pair"], "to"].to_numpy())
        return long

    def top_pairs(self, n: int = 10, term: str | None = None, fdr: bool = True) -> pd.DataFrame:
        """
        Pairs ordered by p-value for one condition term.

        Parameters
        ----------
        n : int
            Number of pairs to return.
        term : str, optional
            Term to rank by. First condition term if None.
        fdr : bool
            Add Benjamini-Hochberg adjusted p-values ('adj_p_value').
        """
        if not self.has_model:
            raise ValueError("No model was fit; use pairwise_assoc")
        if term is None and not self.condition_terms:
            raise ValueError("No pair could be fit; no condition term to rank by")
        term = term or self.condition_terms[0]

        table = self.pairs.copy()
        table["coefficient"] = self.coefficient[term]
        table["se"] = self.se[term]
        table["p_value"] = self.p_value[term]
        if fdr:
            table["adj_p_value"] = adjust_pvalues(table["p_value"])
        return table.sort_values("p_value").head(n)

    def summary(self) -> dict:
        s = {
            "test": self.test,
            "n_pairs": self.n_pairs,
            "n_images": len(self.pairwise_assoc),
            "nsim": self.nsim,
        }
        if self.has_model:
            s["n_fitted"] = int(self.p_value.notna().any(axis=1).sum())
            s["n_significant"] = significant_counts(self)
        return s

    def __repr__(self) -> str:
        return format_summary(self)

    __str__ = __repr__


def adjust_pvalues(p_values: pd.Series, method: str = "fdr_bh") -> pd.Series:
    """Multiple testing correction over the non-missing p-values."""
    adjusted = pd.Series(np.nan, index=p_values.index)
    ok = p_values.notna()
    if ok.any():
        adjusted[ok] = multipletests(p_values[ok].to_numpy(), method=method)[1]
    return adjusted


def significant_counts(result: SpicyResult, alpha: float | None = None) -> dict[str, int]:
    """
    Number of pairs significant for each condition term.

    FDR-corrected across pairs, uncorrected when a single pair was
    tested. alpha defaults to result.alpha.
    """
    alpha = result.alpha if alpha is None else alpha
    counts = {}
    for term in result.condition_terms:
        p = result.p_value[term]
        if len(p) > 1:
            p = adjust_pvalues(p)
        counts[term] = int((p < alpha).sum())
    return counts


def format_summary(result: SpicyResult, alpha: float | None = None) -> str:
    """Text summary of a SpicyResult."""
    lines = []
    if result.test:
        lines.append(result.test)
    lines.append(f"Number of cell type pairs: {result.n_pairs}")
    if result.has_model:
        lines.append("Number of differentially localised cell type pairs:")
        for term, count in significant_counts(result, alpha).items():
            lines.append(f"  {term}: {count}")
    return "\n".join(lines)


def signed_log10_pvalue_matrix(
    result: SpicyResult,
    term: str | None = None,
    fdr: bool = False,
) -> pd.DataFrame:
    """
    From x to matrix of signed log10 p-values for heatmap rendering.

    Magnitude is -log10(p); the sign follows the condition coefficient
    (negative = less co-localized). Zero p-values are shifted by the
    largest power of ten not above the smallest positive p-value.

    Parameters
    ----------
    result : SpicyResult
    term : str, optional
        Condition term. First condition term if None.
    fdr : bool
        Benjamini-Hochberg adjust before the transform.
    """
    if not result.has_model:
        raise ValueError("No model was fit; nothing to plot")
    if term is None and not result.condition_terms:
        raise ValueError("No pair could be fit; no condition term to plot")
    term = term or result.condition_terms[0]

    p = result.p_value[term].copy()
    positive = p[p > 0]
    if (p == 0).any() and len(positive) > 0:
        p = p + 10.0 ** np.floor(np.log10(positive.min()))
    if fdr:
        p = adjust_pvalues(p)

    magnitude = -np.log10(p)
    signed = magnitude.where(result.coefficient[term] > 0, -magnitude)
    pairs = result.pairs
    mat = pd.DataFrame(
        {"from": pairs["from"], "to": pairs["to"], "value": signed.to_numpy()},
    ).pivot(index="from", columns="to", values="value")
    return mat.reindex(index=list(result.from_types), columns=list(result.to_types))


def _bootstrap_pair(fit: ModelFit | None, nsim: int, method: str, seed) -> pd.DataFrame | None:
    if fit is None:
        return None
    return bootstrap_mixed(fit, nsim=nsim, method=method, seed=seed)


def _resolve_types(types, cells: CellData, name: str) -> list[str]:
    if types is None:
        return cells.cell_types()
    if isinstance(types, str):
        types = [types]
    types = [str(t) for t in types]
    absent = [t for t in types if t not in set(cells.cell_types())]
    if absent:
        warnings.warn(f"{name} cell types not found in any image: {absent}", stacklevel=3)
    return types


def _collect(tables: list[pd.DataFrame | None], labels: list[str], column: str) -> pd.DataFrame:
    """Pairs x terms table of one output column across per-pair tables."""
    defined = [t for t in tables if t is not None]
    terms = list(dict.fromkeys(term for t in defined for term in t.index))
    table = pd.DataFrame(np.nan, index=pd.Index(labels, name="pair"), columns=terms)
    for label, t in zip(labels, tables):
        if t is not None:
            table.loc[label, t.index] = t[column].to_numpy()
    return table


def spicy(
    cells: CellData,
    condition: str | None = None,
    subject: str | None = None,
    covariates: list[str] | None = None,
    from_: list[str] | str | None = None,
    to: list[str] | str | None = None,
    dist: float | None = None,
    integrate: bool = True,
    nsim: int | None = None,
    bootstrap_method: str = "parametric",
    weights: bool = True,
    seed: int | None = None,
    n_jobs: int | None = None,
    verbose: bool = True,
) -> SpicyResult:
    """
    Test for changes in cell type co-localization between conditions.

    Parameters
    ----------
    cells : CellData
        Cells of all images, with a phenotype table when testing.
    condition : str, optional
        Phenotype column with the condition of each image. Without it
        only the statistic matrix is computed.
    subject : str, optional
        Phenotype column with the subject of each image. Adds a random
        intercept per subject (mixed model).
    covariates : list of str, optional
        Additional phenotype columns entered as fixed effects.
    from_, to : list of str, optional
        Cell types; all observed types if None. All ordered pairs of
        the cross-product are tested, including self-pairs.
    dist : float, optional
        Largest radius of the cross-L curve used. Full range if None.
    integrate : bool
        True: mean of L(r) - r up to dist. False: L(dist) - dist.
    nsim : int, optional
        Bootstrap resamples for the mixed model p-values. Asymptotic
        (Satterthwaite) p-values if None.
    bootstrap_method : str
        'parametric' or 'case'.
    weights : bool
        Weight images by the count-based variance model.
    seed : int, optional
        Random seed for the bootstrap.
    n_jobs : int, optional
        Worker processes (joblib). Defaults to cells.config.n_jobs.
    verbose : bool
        Print progress.

    Returns
    -------
    SpicyResult

    Raises
    ------
    ValidationError
        If cells is not a CellData, subject is given without condition,
        or a phenotype column is missing.
    """
    if not isinstance(cells, CellData):
        raise ValidationError(f"cells needs to be a CellData object, got {type(cells).__name__}")
    if subject is not None and condition is None:
        raise ValidationError("subject requires condition")

    config = cells.config
    n_jobs = config.n_jobs if n_jobs is None else n_jobs
    if isinstance(covariates, str):
        covariates = [covariates]
    covariates = list(covariates or [])
    if nsim is not None:
        if nsim < 1:
            raise ValueError(f"nsim must be at least 1, got {nsim}")
        if subject is None:
            warnings.warn("nsim is only used with subject (mixed models); ignoring it", stacklevel=2)
    if bootstrap_method not in ("parametric", "case"):
        raise ValueError(f"Unknown bootstrap method: {bootstrap_method}")

    if condition is not None:
        cells.get_phenotype([condition, *covariates] + ([subject] if subject else []))

    from_types = _resolve_types(from_, cells, "from_")
    to_types = _resolve_types(to, cells, "to")
    _, _, labels = pair_labels(from_types, to_types)

    if verbose:
        print(f"\n[spicy] Calculating pairwise spatial associations "
              f"({len(labels)} pairs × {cells.n_images} images)...")
    stat = statistic_matrix(cells, from_types, to_types, dist=dist, integrate=integrate, n_jobs=n_jobs)
    if verbose:
        print(f"  ✓ {int(stat.notna().sum().sum())}/{stat.size} statistics defined")

    if condition is None:
        return SpicyResult(
            pairwise_assoc=stat,
            from_types=tuple(from_types),
            to_types=tuple(to_types),
            alpha=config.alpha,
        )

    count1, count2 = count_matrices(cells, from_types, to_types)
    weight_model = fit_weight_model(stat, count1, count2) if weights else None
    if verbose and weights:
        status = "fit" if weight_model is not None else "unavailable, uniform weights"
        print(f"  ✓ Weight model {status}")

    common = dict(weight_model=weight_model, min_images=config.min_images)
    if subject is None:
        test = LM_TEST
        if verbose:
            print(f"  {test}")
        fits: list[ModelFit | None] = Parallel(n_jobs=n_jobs)(
            delayed(fit_lm)(stat[lab], cells, condition, covariates, count1[lab], count2[lab], **common)
            for lab in labels
        )
    else:
        test = LMM_TEST
        if verbose:
            print(f"  {test}")
        fits = Parallel(n_jobs=n_jobs)(
            delayed(fit_mixed)(stat[lab], cells, condition, subject, covariates, count1[lab], count2[lab], **common)
            for lab in labels
        )

    n_fitted = sum(f is not None for f in fits)
    if verbose:
        print(f"  ✓ {n_fitted}/{len(labels)} pairs fitted")
        if n_fitted < len(labels):
            print(f"  ⚠ {len(labels) - n_fitted} pairs had too little data to fit")

    if subject is not None and nsim is not None:
        if verbose:
            print(f"  Bootstrapping {nsim} resamples per pair ({bootstrap_method})...")
        seeds = np.random.SeedSequence(seed).spawn(len(fits))
        tables = Parallel(n_jobs=n_jobs)(
            delayed(_bootstrap_pair)(fit, nsim, bootstrap_method, s) for fit, s in zip(fits, seeds)
        )
        columns = ("coefficient", "se", "p_value")
    else:
        tables = [None if f is None else f.coef_table for f in fits]
        columns = ("coefficient", "se", "statistic", "p_value")
        if subject is not None:
            columns = ("coefficient", "se", "df", "statistic", "p_value")

    condition_terms = tuple(dict.fromkeys(t for f in fits if f is not None for t in f.spec.condition_terms))

    return SpicyResult(
        pairwise_assoc=stat,
        from_types=tuple(from_types),
        to_types=tuple(to_types),
        test=test,
        **{name: _collect(tables, labels, name) for name in columns},
        condition_terms=condition_terms,
        nsim=nsim if subject is not None else None,
        weight_model=weight_model,
        alpha=config.alpha,
    )
