"""
models.py - Weighted linear and linear mixed models per cell type pair

Each pair's per-image statistics are regressed on condition (plus
optional covariates), one image = one observation:

- fit_lm     : weighted least squares, fixed effects only
- fit_mixed  : weighted linear mixed model with a random intercept per
               subject, fit by REML, Satterthwaite degrees of freedom

Models are described by an explicit ModelSpec (response, design matrix,
weights, grouping) rather than a formula string.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spicy_s.data.cells import CellData
    from .weights import WeightModel

import warnings
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import linalg, stats
from statsmodels.regression.mixed_linear_model import MixedLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .weights import compute_weights

RESPONSE = "spatAssoc"
INTERCEPT = "(Intercept)"


@dataclass(frozen=True, eq=False)
class ModelSpec:
    """
    Structural description of one pair's regression.

    Attributes
    ----------
    response : pd.Series
        Statistic per image (no missing values).
    design : pd.DataFrame
        Fixed-effect design matrix, first column the intercept.
    weights : np.ndarray
        Per-image weights, summing to 1.
    groups : pd.Series or None
        Random-intercept grouping (subject) per image.
    condition_terms : tuple of str
        Design columns coding the condition contrast.
    """

    response: pd.Series
    design: pd.DataFrame
    weights: np.ndarray
    groups: pd.Series | None = None
    condition_terms: tuple[str, ...] = ()

    @property
    def terms(self) -> list[str]:
        return list(self.design.columns)

    @property
    def n_obs(self) -> int:
        return len(self.response)

    @property
    def n_groups(self) -> int:
        return 0 if self.groups is None else int(self.groups.nunique())

    def formula(self) -> str:
        """Human-readable formula, for display only."""
        rhs = [t for t in self.terms if t != INTERCEPT] or ["1"]
        text = f"{RESPONSE} ~ {' + '.join(rhs)}"
        if self.groups is not None:
            text += f" + (1 | {self.groups.name})"
        return text

    def with_response(self, values) -> ModelSpec:
        """Same model with a new response vector."""
        return replace(self, response=pd.Series(np.asarray(values, dtype=float), index=self.response.index))

    def take(self, positions, group_labels=None) -> ModelSpec:
        """
        Rows at the given positions (repeats allowed), weights renormalized.
        """
        positions = np.asarray(positions)
        w = self.weights[positions]
        groups = None
        if self.groups is not None:
            labels = self.groups.to_numpy()[positions] if group_labels is None else group_labels
            groups = pd.Series(labels, name=self.groups.name)
        return ModelSpec(
            response=self.response.iloc[positions].reset_index(drop=True),
            design=self.design.iloc[positions].reset_index(drop=True),
            weights=w / w.sum(),
            groups=groups,
            condition_terms=self.condition_terms,
        )


@dataclass(frozen=True, eq=False)
class ModelFit:
    """
    Fitted model for one pair.

    Attributes
    ----------
    kind : str
        'lm' or 'lmm'.
    spec : ModelSpec
        The model that was fit.
    coef_table : pd.DataFrame
        One row per term; columns coefficient, se, [df], statistic, p_value.
    sigma2 : float
        Residual variance (for weight 1).
    tau2 : float or None
        Random-intercept variance (mixed models only).
    converged : bool
        Optimizer convergence flag.
    """

    kind: str
    spec: ModelSpec
    coef_table: pd.DataFrame
    sigma2: float
    tau2: float | None = None
    converged: bool = True

    @property
    def params(self) -> pd.Series:
        return self.coef_table["coefficient"]

    @property
    def fitted_fixed(self) -> np.ndarray:
        """Fixed-effect part of the fitted values, X @ beta."""
        return self.spec.design.to_numpy() @ self.params.to_numpy()

    def __repr__(self) -> str:
        return f"ModelFit({self.kind}, n_obs={self.spec.n_obs}, formula='{self.spec.formula()}')"


# ========== Model frames ==========


def model_frame(
    stat: pd.Series,
    cells: CellData,
    condition: str,
    covariates: list[str] | None = None,
    subject: str | None = None,
) -> pd.DataFrame:
    """
    Response plus phenotype columns, restricted to complete images.

    Raises
    ------
    ColumnNotFoundError
        If condition, subject or a covariate is not a phenotype column.
    """
    cols = [condition, *(covariates or [])]
    if subject is not None:
        cols.append(subject)
    pheno = cells.get_phenotype(list(dict.fromkeys(cols)))
    frame = pheno.reindex(stat.index)
    frame.insert(0, RESPONSE, stat.astype(float))
    return frame.dropna()


def _levels(values: pd.Series) -> list:
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [c for c in values.cat.categories if c in set(values)]
    if _is_numeric(values):
        return sorted(values.unique())
    return sorted(values.unique(), key=str)


def _is_numeric(values: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values)


def _treatment_columns(values: pd.Series, name: str) -> dict[str, np.ndarray]:
    """Dummy columns for every level but the first."""
    levels = _levels(values)
    return {f"{name}{level}": (values == level).to_numpy(dtype=float) for level in levels[1:]}


def _drop_aliased(design: pd.DataFrame) -> pd.DataFrame:
    """Drop columns that are linear combinations of earlier ones."""
    keep = []
    rank = 0
    X = design.to_numpy(dtype=float)
    for j, col in enumerate(design.columns):
        new_rank = np.linalg.matrix_rank(X[:, keep + [j]])
        if new_rank > rank:
            keep.append(j)
            rank = new_rank
    return design.iloc[:, keep]


def build_design(
    frame: pd.DataFrame,
    condition: str,
    covariates: list[str] | None = None,
) -> tuple[pd.DataFrame, tuple[str, ...]]:
    """
    Fixed-effect design matrix.

    Intercept, treatment-coded condition (first level is the
    reference), numeric covariates as-is and treatment-coded
    categorical covariates. Aliased columns are dropped.

    Returns
    -------
    design : pd.DataFrame
    condition_terms : tuple of str
        Surviving condition columns (empty if condition has one level).
    """
    columns = {INTERCEPT: np.ones(len(frame))}
    cond_cols = _treatment_columns(frame[condition], condition)
    columns.update(cond_cols)
    for cov in covariates or []:
        if cov == condition:
            continue
        if _is_numeric(frame[cov]):
            columns[cov] = frame[cov].to_numpy(dtype=float)
        else:
            columns.update(_treatment_columns(frame[cov], cov))

    design = _drop_aliased(pd.DataFrame(columns, index=frame.index))
    condition_terms = tuple(c for c in cond_cols if c in design.columns)
    return design, condition_terms


def make_spec(
    frame: pd.DataFrame,
    condition: str,
    covariates: list[str] | None = None,
    subject: str | None = None,
    count1: pd.Series | None = None,
    count2: pd.Series | None = None,
    weight_model: WeightModel | None = None,
) -> ModelSpec | None:
    """
    ModelSpec for a model frame, or None if condition has a single level.

    Weights are re-predicted on the counts of the images in the frame.
    """
    design, condition_terms = build_design(frame, condition, covariates)
    if not condition_terms:
        return None

    if count1 is None or count2 is None:
        weights = compute_weights(None, np.zeros(len(frame)), np.zeros(len(frame)))
    else:
        weights = compute_weights(
            weight_model,
            count1.reindex(frame.index).to_numpy(),
            count2.reindex(frame.index).to_numpy(),
        )

    groups = None
    if subject is not None:
        groups = frame[subject].astype(str).rename(subject)

    return ModelSpec(
        response=frame[RESPONSE],
        design=design,
        weights=weights,
        groups=groups,
        condition_terms=condition_terms,
    )


# ========== Fixed effects ==========


def fit_spec_lm(spec: ModelSpec) -> ModelFit | None:
    """Weighted least squares fit of a ModelSpec."""
    n, p = spec.design.shape
    if n <= p:
        return None

    res = sm.WLS(spec.response.to_numpy(), spec.design.to_numpy(), weights=spec.weights).fit()
    coef_table = pd.DataFrame(
        {
            "coefficient": res.params,
            "se": res.bse,
            "statistic": res.tvalues,
            "p_value": res.pvalues,
        },
        index=spec.terms,
    )
    return ModelFit(kind="lm", spec=spec, coef_table=coef_table, sigma2=float(res.scale))


def fit_lm(
    stat: pd.Series,
    cells: CellData,
    condition: str,
    covariates: list[str] | None = None,
    count1: pd.Series | None = None,
    count2: pd.Series | None = None,
    weight_model: WeightModel | None = None,
    min_images: int = 3,
) -> ModelFit | None:
    """
    Weighted linear model of one pair's statistic on condition.

    Parameters
    ----------
    stat : pd.Series
        Statistic per image (NaN allowed), indexed by image id.
    cells : CellData
        Source of the phenotype table.
    condition : str
        Phenotype column with the condition.
    covariates : list of str, optional
        Additional phenotype columns.
    count1, count2 : pd.Series, optional
        Per-image 'from' / 'to' cell counts for the weights.
    weight_model : WeightModel, optional
        Variance surface; uniform weights if None.
    min_images : int
        Fewer non-missing images -> None.

    Returns
    -------
    ModelFit or None
        None when the pair has too little data to fit.
    """
    frame = model_frame(stat, cells, condition, covariates)
    if len(frame) < min_images:
        return None
    spec = make_spec(frame, condition, covariates, None, count1, count2, weight_model)
    if spec is None:
        return None
    return fit_spec_lm(spec)


# ========== Mixed effects ==========


def estimate_mixed(spec: ModelSpec) -> tuple[np.ndarray, float, float, bool]:
    """
    REML estimates of a weighted random-intercept model.

    Residual variance of image i is sigma2 / w_i. Rows are scaled by
    sqrt(w) and the random-effect design is sqrt(w), which makes the
    unweighted MixedLM likelihood equal the weighted one.

    Returns
    -------
    fe_params : np.ndarray
    sigma2 : float
    tau2 : float
    converged : bool
    """
    sw = np.sqrt(spec.weights)
    endog = spec.response.to_numpy() * sw
    exog = spec.design.to_numpy() * sw[:, None]
    model = MixedLM(endog, exog, groups=spec.groups.to_numpy(), exog_re=sw[:, None])

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        res = model.fit(reml=True)

    tau2 = float(np.asarray(res.cov_re)[0, 0])
    return np.asarray(res.fe_params), float(res.scale), max(tau2, 0.0), bool(res.converged)


def _marginal_cov(theta, weights: np.ndarray, Z: np.ndarray) -> np.ndarray:
    sigma2, tau2 = theta
    return sigma2 * np.diag(1.0 / weights) + tau2 * (Z @ Z.T)


def _gls_pieces(theta, y, X, weights, Z):
    """Cholesky of V, (X'V^-1 X)^-1 and GLS beta for variance params theta."""
    V = _marginal_cov(theta, weights, Z)
    cho = linalg.cho_factor(V, lower=True)
    XtViX = X.T @ linalg.cho_solve(cho, X)
    C = np.linalg.inv(XtViX)
    beta = C @ (X.T @ linalg.cho_solve(cho, y))
    return cho, XtViX, C, beta


def _reml_loglik(theta, y, X, weights, Z) -> float:
    """Weighted REML log-likelihood (up to a constant)."""
    try:
        cho, XtViX, _, beta = _gls_pieces(theta, y, X, weights, Z)
    except (linalg.LinAlgError, np.linalg.LinAlgError):
        return -np.inf
    r = y - X @ beta
    logdet_V = 2 * np.sum(np.log(np.diag(cho[0])))
    _, logdet_XtViX = np.linalg.slogdet(XtViX)
    return -0.5 * (logdet_V + logdet_XtViX + r @ linalg.cho_solve(cho, r))


def _numeric_hessian(f, x: np.ndarray, h: np.ndarray) -> np.ndarray:
    k = len(x)
    H = np.zeros((k, k))
    for i in range(k):
        for j in range(i, k):
            ei = np.zeros(k)
            ej = np.zeros(k)
            ei[i] = h[i]
            ej[j] = h[j]
            H[i, j] = (f(x + ei + ej) - f(x + ei - ej) - f(x - ei + ej) + f(x - ei - ej)) / (4 * h[i] * h[j])
            H[j, i] = H[i, j]
    return H


def satterthwaite_df(
    spec: ModelSpec,
    sigma2: float,
    tau2: float,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Satterthwaite degrees of freedom for every fixed effect.

    The covariance of the variance parameters comes from the numerical
    Hessian of the REML log-likelihood; the gradient of each coefficient
    variance from central differences. Terms whose approximation is not
    finite and positive fall back to n - p.

    Returns
    -------
    se : np.ndarray
        Standard errors at the estimate.
    df : np.ndarray
        Degrees of freedom.
    """
    y = spec.response.to_numpy(dtype=float)
    X = spec.design.to_numpy(dtype=float)
    w = spec.weights
    Z = pd.get_dummies(spec.groups).to_numpy(dtype=float)
    n, p = X.shape
    theta = np.array([sigma2, tau2])

    _, _, C, _ = _gls_pieces(theta, y, X, w, Z)
    se = np.sqrt(np.diag(C))
    df = np.full(p, float(n - p))

    h = 1e-4 * np.maximum(np.abs(theta), sigma2)
    H = _numeric_hessian(lambda t: _reml_loglik(t, y, X, w, Z), theta, h)
    if not np.all(np.isfinite(H)):
        return se, df
    try:
        A = np.linalg.inv(-H)
    except np.linalg.LinAlgError:
        return se, df
    if np.any(np.linalg.eigvalsh(A) <= 0):
        return se, df

    grads = np.zeros((p, 2))
    for k in range(2):
        step = np.zeros(2)
        step[k] = h[k]
        C_hi = _gls_pieces(theta + step, y, X, w, Z)[2]
        C_lo = _gls_pieces(theta - step, y, X, w, Z)[2]
        grads[:, k] = (np.diag(C_hi) - np.diag(C_lo)) / (2 * h[k])

    denom = np.einsum("ik,kl,il->i", grads, A, grads)
    with np.errstate(divide="ignore", invalid="ignore"):
        approx = 2 * np.diag(C) ** 2 / denom
    ok = np.isfinite(approx) & (approx > 0)
    df[ok] = approx[ok]
    return se, df


def fit_spec_mixed(spec: ModelSpec) -> ModelFit | None:
    """Weighted REML fit of a ModelSpec with a grouping variable."""
    n, p = spec.design.shape
    if n <= p or spec.n_groups < 2:
        return None

    try:
        fe_params, sigma2, tau2, converged = estimate_mixed(spec)
        if not np.all(np.isfinite(fe_params)) or not np.isfinite(sigma2):
            return None
        se, df = satterthwaite_df(spec, sigma2, tau2)
    except (linalg.LinAlgError, np.linalg.LinAlgError) as e:
        warnings.warn(f"Mixed model fit failed ({spec.formula()}): {e}", stacklevel=2)
        return None

    t_values = fe_params / se
    coef_table = pd.DataFrame(
        {
            "coefficient": fe_params,
            "se": se,
            "df": df,
            "statistic": t_values,
            "p_value": 2 * stats.t.sf(np.abs(t_values), df),
        },
        index=spec.terms,
    )
    return ModelFit(
        kind="lmm",
        spec=spec,
        coef_table=coef_table,
        sigma2=sigma2,
        tau2=tau2,
        converged=converged,
    )


def fit_mixed(
    stat: pd.Series,
    cells: CellData,
    condition: str,
    subject: str,
    covariates: list[str] | None = None,
    count1: pd.Series | None = None,
    count2: pd.Series | None = None,
    weight_model: WeightModel | None = None,
    min_images: int = 3,
) -> ModelFit | None:
    """
    Weighted linear mixed model of one pair's statistic.

    Condition (plus covariates) are fixed effects, subject a random
    intercept. Parameters are as for fit_lm() plus:

    subject : str
        Phenotype column identifying the subject of each image.

    Returns
    -------
    ModelFit or None
        None when fewer than min_images images remain, the condition
        has a single level or there is a single subject.
    """
    frame = model_frame(stat, cells, condition, covariates, subject)
    if len(frame) < min_images:
        return None
    spec = make_spec(frame, condition, covariates, subject, count1, count2, weight_model)
    if spec is None:
        return None
    return fit_spec_mixed(spec)
