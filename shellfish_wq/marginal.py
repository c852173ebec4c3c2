"""
Estimated marginal means from fitted models.

A reference grid crosses every level of the model's factors, with numeric
covariates held at their means. The marginal mean for a level of the focal
factor is the equal-weighted average of the linear predictor over the grid
rows with that level; its standard error comes from the parameter covariance
(delta method). Estimates are back-transformed through the inverse link, so
for log-scale models the marginal means are geometric means.
"""

from __future__ import annotations

import itertools
from typing import Optional

import numpy as np
import pandas as pd
import patsy
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .models import FittedModel


def _formula_spec(fitted: FittedModel):
    """
    Formula description of the linear (non-smooth) columns of the model.

    statsmodels keeps a patsy ``DesignInfo`` as ``design_info`` up to 0.14 and a
    formulaic ``ModelSpec`` as ``model_spec`` from 0.15 on.
    """
    model = fitted.result.model
    candidates = []
    if fitted.kind == 'gam':
        candidates += [getattr(model, 'design_info_linear', None), getattr(model, 'model_spec_linear', None)]
    candidates += [getattr(model.data, 'model_spec', None), getattr(model.data, 'design_info', None)]
    for spec in candidates:
        if spec is not None:
            return spec
    raise TypeError(f"Model [{fitted.spec.label}] carries no formula design information")


def linear_design(fitted: FittedModel, grid: pd.DataFrame) -> pd.DataFrame:
    """Rebuild the formula part of the model matrix for new rows."""
    spec = _formula_spec(fitted)
    if isinstance(spec, patsy.DesignInfo):
        return patsy.build_design_matrices([spec], grid, return_type='dataframe')[0]
    spec = getattr(spec, 'rhs', spec)
    return pd.DataFrame(spec.get_model_matrix(grid))


def reference_grid(fitted: FittedModel, by: str, df: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Cartesian grid of factor levels, numeric covariates at their means."""
    data = fitted.data if df is None else df
    if by not in fitted.factors:
        raise ValueError(f"{by!r} is not a factor of model [{fitted.spec.label}]")

    factors = [by] + [f for f in fitted.factors if f != by]
    levels = [sorted(fitted.data[f].unique()) for f in factors]
    grid = pd.DataFrame(list(itertools.product(*levels)), columns=factors)

    numerics = [c for c in fitted.spec.fixed_effects + fitted.spec.smooth if c not in fitted.factors]
    for col in dict.fromkeys(numerics):
        grid[col] = float(data[col].mean())
    return grid


def grid_design(fitted: FittedModel, grid: pd.DataFrame) -> np.ndarray:
    """Model matrix for the rows of ``grid``, columns in parameter order."""
    x = linear_design(fitted, grid).to_numpy(dtype=float)
    if fitted.kind == 'gam':
        x_smooth = fitted.result.model.smoother.transform(grid[fitted.spec.smooth].to_numpy(dtype=float))
        x = np.column_stack([x, x_smooth])

    n_params = len(fitted.params)
    if x.shape[1] != n_params:
        raise ValueError(f"Reference grid has {x.shape[1]} columns, model has {n_params} parameters")
    return x


def _level_weights(grid: pd.DataFrame, by: str, levels: list) -> np.ndarray:
    """Averaging matrix: one row per level, equal weights over its grid rows."""
    weights = np.zeros((len(levels), len(grid)))
    for i, level in enumerate(levels):
        mask = (grid[by] == level).to_numpy()
        weights[i, mask] = 1.0 / mask.sum()
    return weights


def marginal_means(fitted: FittedModel, by: str, df: Optional[pd.DataFrame] = None,
                   level: float = 0.95, order: Optional[list] = None) -> pd.DataFrame:
    """
    Marginal means of the response for each level of ``by``.

    Columns ``estimate``/``se``/``ci_low``/``ci_high`` are on the link scale;
    ``response``/``lower``/``upper`` are back-transformed.
    """
    grid = reference_grid(fitted, by, df)
    levels = sorted(grid[by].unique())
    if order is not None:
        levels = [lv for lv in order if lv in levels] + [lv for lv in levels if lv not in order]

    x = grid_design(fitted, grid)
    weights = _level_weights(grid, by, levels)
    contrast = weights @ x

    beta = fitted.params.to_numpy(dtype=float)
    cov = fitted.cov_params().to_numpy(dtype=float)
    estimate = contrast @ beta
    se = np.sqrt(np.einsum('ij,jk,ik->i', contrast, cov, contrast))

    z = stats.norm.ppf(0.5 + level / 2)
    ci_low = estimate - z * se
    ci_high = estimate + z * se

    inverse = fitted.inverse_link()
    bound_a = inverse(ci_low)
    bound_b = inverse(ci_high)

    counts = fitted.data[by].value_counts()
    return pd.DataFrame({
        by: levels,
        'n': [int(counts.get(lv, 0)) for lv in levels],
        'estimate': estimate,
        'se': se,
        'ci_low': ci_low,
        'ci_high': ci_high,
        'response': inverse(estimate),
        'lower': np.minimum(bound_a, bound_b),
        'upper': np.maximum(bound_a, bound_b),
    })


def pairwise_comparisons(fitted: FittedModel, by: str, df: Optional[pd.DataFrame] = None,
                         adjust: str = 'holm', level: float = 0.95) -> pd.DataFrame:
    """
    All pairwise differences of marginal means on the link scale.

    p values are adjusted for multiplicity with ``statsmodels`` ``multipletests``.
    For log links the differences are reported as ratios of geometric means,
    for logit links as odds ratios.
    """
    grid = reference_grid(fitted, by, df)
    levels = sorted(grid[by].unique())
    if len(levels) < 2:
        return pd.DataFrame()

    x = grid_design(fitted, grid)
    contrast = _level_weights(grid, by, levels) @ x
    beta = fitted.params.to_numpy(dtype=float)
    cov = fitted.cov_params().to_numpy(dtype=float)

    z_crit = stats.norm.ppf(0.5 + level / 2)
    rows = []
    for i, j in itertools.combinations(range(len(levels)), 2):
        c = contrast[i] - contrast[j]
        diff = float(c @ beta)
        se = float(np.sqrt(c @ cov @ c))
        z = diff / se if se > 0 else np.nan
        rows.append({
            'level_a': levels[i],
            'level_b': levels[j],
            'difference': diff,
            'se': se,
            'ci_low': diff - z_crit * se,
            'ci_high': diff + z_crit * se,
            'z': z,
            'p_value': 2 * stats.norm.sf(abs(z)) if np.isfinite(z) else np.nan,
        })

    table = pd.DataFrame(rows)
    valid = table['p_value'].notna()
    table['p_adjusted'] = np.nan
    if valid.any():
        table.loc[valid, 'p_adjusted'] = multipletests(table.loc[valid, 'p_value'], method=adjust)[1]

    if fitted.log_scale or fitted.link == 'logit':
        label = 'odds_ratio' if fitted.link == 'logit' else 'ratio'
        table[label] = np.exp(table['difference'])
        table[f'{label}_low'] = np.exp(table['ci_low'])
        table[f'{label}_high'] = np.exp(table['ci_high'])
    return table
