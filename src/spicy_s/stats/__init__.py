"""
stats - Weighting, regression and bootstrap inference

Modules
-------
- weights: Count-based variance surface and regression weights
- models: Weighted linear and linear mixed models per pair
- bootstrap: Bootstrap p-values for mixed model fixed effects
"""

from .weights import WeightModel, fit_weight_model, compute_weights
from .models import (
    ModelSpec,
    ModelFit,
    model_frame,
    build_design,
    make_spec,
    fit_spec_lm,
    fit_spec_mixed,
    fit_lm,
    fit_mixed,
    satterthwaite_df,
)
from .bootstrap import bootstrap_coefficients, bootstrap_mixed

__all__ = [
    'WeightModel',
    'fit_weight_model',
    'compute_weights',
    'ModelSpec',
    'ModelFit',
    'model_frame',
    'build_design',
    'make_spec',
    'fit_spec_lm',
    'fit_spec_mixed',
    'fit_lm',
    'fit_mixed',
    'satterthwaite_df',
    'bootstrap_coefficients',
    'bootstrap_mixed',
]
