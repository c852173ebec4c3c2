"""
Generalized linear, mixed and additive models of coliform levels.

Models relate coliform counts to station, region, season and rainfall.
Counts are strongly right-skewed, so the default is a Gaussian model of
log counts (a lognormal model); Gamma and binomial (exceedance) models are
also available. Fitting follows a fixed protocol:

* degenerate rows are removed first: missing covariates, non-positive
  responses for log-scale and Gamma models, and factor levels with too few
  samples to estimate;
* candidate links are tried in order, moving on when a fit raises, fails
  to converge or produces non-finite estimates.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.gam.api import BSplines, GLMGam
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError

from .config import AnalysisConfig, ModelFamily
from .exceptions import InsufficientDataError, ModelFitError
from .preprocess import CMEAN_VALUE, LEFT_CENSORED, LOG_PRECIP, RAIN_CLASS, STATION, VALUE

RESPONSE = 'RESPONSE'

_LINK_CLASSES = {
    'identity': sm.families.links.Identity,
    'log': sm.families.links.Log,
    'inverse_power': sm.families.links.InversePower,
    'logit': sm.families.links.Logit,
    'probit': sm.families.links.Probit,
    'cloglog': sm.families.links.CLogLog,
}

# Candidate links in order of preference
_LINK_CANDIDATES = {
    ModelFamily.LOGNORMAL: ['identity'],
    ModelFamily.GAUSSIAN: ['identity'],
    ModelFamily.GAMMA: ['log', 'inverse_power', 'identity'],
    ModelFamily.BINOMIAL: ['logit', 'probit', 'cloglog'],
}

_FIT_ERRORS = (ValueError, np.linalg.LinAlgError, FloatingPointError,
               OverflowError, PerfectSeparationError)


def select_links(family: ModelFamily, requested: Optional[str] = None) -> list[str]:
    """Ordered list of links to try for ``family``, starting with ``requested``."""
    candidates = list(_LINK_CANDIDATES[family])
    if requested is None:
        return candidates
    if requested not in _LINK_CLASSES:
        raise ValueError(f"Unknown link: {requested!r}")
    if family in (ModelFamily.LOGNORMAL, ModelFamily.GAUSSIAN) and requested != 'identity':
        raise ValueError(f"{family.value} models only support the identity link")
    return [requested] + [c for c in candidates if c != requested]


def make_family(family: ModelFamily, link: str) -> sm.families.Family:
    link_obj = _LINK_CLASSES[link]()
    if family is ModelFamily.GAMMA:
        return sm.families.Gamma(link=link_obj)
    if family is ModelFamily.BINOMIAL:
        return sm.families.Binomial(link=link_obj)
    return sm.families.Gaussian(link=link_obj)


@dataclass
class ModelSpec:
    """Description of a model: response, covariates, grouping and family."""
    fixed_effects: list = field(default_factory=list)
    response: str = CMEAN_VALUE
    family: ModelFamily = ModelFamily.LOGNORMAL
    link: Optional[str] = None
    group: Optional[str] = None
    smooth: list = field(default_factory=list)
    threshold: Optional[float] = None
    name: str = ''

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        terms = self.fixed_effects + [f"s({s})" for s in self.smooth]
        if self.group:
            terms.append(f"(1|{self.group})")
        return f"{self.family.value}: " + (' + '.join(terms) or '1')


@dataclass
class FittedModel:
    """A fitted model together with the frame and choices used to fit it."""
    spec: ModelSpec
    result: Any
    kind: str               # "glm", "mixed" or "gam"
    link: str
    formula: str
    data: pd.DataFrame
    factors: list
    n_obs: int
    n_dropped: int

    @property
    def family(self) -> ModelFamily:
        return self.spec.family

    @property
    def aic(self) -> float:
        return float(getattr(self.result, 'aic', np.nan))

    @property
    def aic_response_scale(self) -> float:
        """AIC on the scale of the raw counts, comparable across families."""
        aic = self.aic
        if self.family is ModelFamily.LOGNORMAL:
            # Jacobian of the log transform: log f(y) = log f(log y) - log y
            aic += 2 * float(self.data[RESPONSE].sum())
        return aic

    @property
    def log_scale(self) -> bool:
        """True when effects are multiplicative on the response scale."""
        return self.family is ModelFamily.LOGNORMAL or self.link == 'log'

    @property
    def params(self) -> pd.Series:
        if self.kind == 'mixed':
            return self.result.fe_params
        return self.result.params

    def cov_params(self) -> pd.DataFrame:
        cov = self.result.cov_params()
        names = self.params.index
        return cov.loc[names, names]

    def inverse_link(self) -> Callable[[np.ndarray], np.ndarray]:
        """Transformation from the linear predictor to the response scale."""
        if self.family is ModelFamily.LOGNORMAL:
            return np.exp
        if self.kind == 'mixed':
            return lambda x: x
        return self.result.model.family.link.inverse


class ModelFitter:
    """Fits GLM, mixed and GAM models following the degenerate-value and link protocol."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    # -------------------------------------------------------------------------
    # Model frame preparation
    # -------------------------------------------------------------------------

    def prepare_frame(self, df: pd.DataFrame, spec: ModelSpec) -> tuple[pd.DataFrame, list, list, int]:
        """
        Build the model frame for ``spec``.

        Returns the frame, the categorical and numeric fixed effects kept, and
        the number of rows dropped.
        """
        columns = list(dict.fromkeys(
            [spec.response] + spec.fixed_effects + spec.smooth + ([spec.group] if spec.group else [])
        ))
        if spec.family is ModelFamily.BINOMIAL and LEFT_CENSORED in df.columns:
            columns.append(LEFT_CENSORED)
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise KeyError(f"Model columns not found: {missing}")

        n_initial = len(df)
        data = df[columns].copy()

        factors = [c for c in spec.fixed_effects if self._is_categorical(data[c])]
        numerics = [c for c in spec.fixed_effects if c not in factors]

        data = data.dropna(subset=[c for c in columns if c != LEFT_CENSORED])
        for col in factors + ([spec.group] if spec.group else []):
            # plain strings so that patsy sees the same levels on new data
            data[col] = data[col].astype(str)
        data[RESPONSE] = self._response(data, spec)
        data = data[np.isfinite(data[RESPONSE])]

        n_degenerate = n_initial - len(data)
        if n_degenerate > 0:
            self.logger.warning(f"  Dropped {n_degenerate:,} rows with missing or degenerate values")

        data, factors = self._drop_sparse_levels(data, factors)
        constant = [c for c in numerics if data[c].nunique() < 2]
        for col in constant:
            self.logger.warning(f"  {col} is constant, removed from model")
        numerics = [c for c in numerics if c not in constant]

        if len(data) == 0:
            raise InsufficientDataError(f"No usable rows for model {spec.label}")
        if spec.family is ModelFamily.BINOMIAL and data[RESPONSE].nunique() < 2:
            raise InsufficientDataError(
                f"Exceedance indicator is constant ({int(data[RESPONSE].iloc[0])}) for model {spec.label}"
            )

        return data.reset_index(drop=True), factors, numerics, n_initial - len(data)

    @staticmethod
    def _is_categorical(series: pd.Series) -> bool:
        return not pd.api.types.is_numeric_dtype(series) or isinstance(series.dtype, pd.CategoricalDtype)

    def _response(self, data: pd.DataFrame, spec: ModelSpec) -> pd.Series:
        y = data[spec.response].astype(float)
        if spec.family is ModelFamily.BINOMIAL:
            threshold = spec.threshold if spec.threshold is not None else self.config.single_sample_threshold
            exceed = y > threshold
            if LEFT_CENSORED in data.columns:
                exceed &= ~data[LEFT_CENSORED].fillna(False).astype(bool)
            return exceed.astype(float)
        if spec.family in (ModelFamily.LOGNORMAL, ModelFamily.GAMMA):
            y = y.where(y > 0)
            return np.log(y) if spec.family is ModelFamily.LOGNORMAL else y
        return y

    def _drop_sparse_levels(self, data: pd.DataFrame, factors: list) -> tuple[pd.DataFrame, list]:
        """Remove factor levels with too few samples, and factors left with one level."""
        kept = []
        for col in factors:
            counts = data[col].value_counts()
            sparse = counts[counts < self.config.min_level_count].index
            if len(sparse) > 0:
                self.logger.warning(
                    f"  Dropping {len(sparse)} sparse level(s) of {col}: {', '.join(map(str, sparse[:5]))}"
                    + (" ..." if len(sparse) > 5 else "")
                )
                data = data[~data[col].isin(sparse)]
            if data[col].nunique() < 2:
                self.logger.warning(f"  {col} has a single level, removed from model")
                continue
            kept.append(col)
        return data, kept

    @staticmethod
    def build_formula(factors: list, numerics: list) -> str:
        terms = [f"C({c})" for c in factors] + list(numerics)
        return f"{RESPONSE} ~ " + (' + '.join(terms) if terms else '1')

    # -------------------------------------------------------------------------
    # Fitting
    # -------------------------------------------------------------------------

    def fit_glm(self, df: pd.DataFrame, spec: ModelSpec) -> FittedModel:
        """Fit a GLM, trying candidate links until one converges."""
        self.logger.info(f"Fitting GLM [{spec.label}]")
        data, factors, numerics, n_dropped = self.prepare_frame(df, spec)
        formula = self.build_formula(factors, numerics)

        def fit_one(link: str):
            model = smf.glm(formula, data=data, family=make_family(spec.family, link))
            return model.fit()

        result, link = self._fit_with_links(fit_one, spec)
        self.logger.info(f"  n={len(data):,}, link={link}, AIC={result.aic:.1f}")
        return FittedModel(spec, result, 'glm', link, formula, data, factors, len(data), n_dropped)

    def fit_exceedance(self, df: pd.DataFrame, threshold: float, spec: Optional[ModelSpec] = None) -> FittedModel:
        """Fit a binomial GLM of the probability that a sample exceeds ``threshold``."""
        spec = replace(
            spec or ModelSpec(),
            response=VALUE,
            family=ModelFamily.BINOMIAL,
            threshold=threshold,
            group=None,
            smooth=[],
        )
        if not spec.name:
            spec.name = f"P(> {threshold:g})"
        return self.fit_glm(df, spec)

    def fit_mixed(self, df: pd.DataFrame, spec: ModelSpec, reml: bool = True) -> FittedModel:
        """
        Fit a linear mixed model of log counts with a random intercept per group.

        Stations sampled repeatedly are not independent, so station enters as a
        random effect while region, season and rainfall are fixed effects.
        """
        if spec.family is not ModelFamily.LOGNORMAL:
            raise ValueError("Mixed models are only supported for the lognormal family")
        group = spec.group or STATION
        spec = replace(spec, group=group)

        self.logger.info(f"Fitting mixed model [{spec.label}]")
        data, factors, numerics, n_dropped = self.prepare_frame(df, spec)
        if data[group].nunique() < 2:
            raise InsufficientDataError(f"Mixed model needs at least two levels of {group}")
        formula = self.build_formula(factors, numerics)

        model = smf.mixedlm(formula, data=data, groups=data[group])
        result = None
        for method in self.config.mixed_methods:
            try:
                with warnings.catch_warnings(record=True) as caught:
                    warnings.simplefilter('always')
                    candidate = model.fit(reml=reml, method=method)
            except _FIT_ERRORS as e:
                self.logger.warning(f"  Mixed model fit with {method} failed: {e}")
                continue
            if candidate.converged and np.all(np.isfinite(candidate.fe_params)) and not any(
                    issubclass(w.category, ConvergenceWarning) for w in caught):
                result = candidate
                break
            self.logger.warning(f"  Mixed model did not converge with {method}")

        if result is None:
            raise ModelFitError(f"Mixed model [{spec.label}] failed with every optimizer")

        self.logger.info(
            f"  n={len(data):,}, groups={data[group].nunique()}, "
            f"group variance={float(result.cov_re.iloc[0, 0]):.3f}, residual={result.scale:.3f}"
        )
        return FittedModel(spec, result, 'mixed', 'identity', formula, data, factors, len(data), n_dropped)

    def fit_gam(self, df: pd.DataFrame, spec: ModelSpec) -> FittedModel:
        """Fit a GAM with penalized B-spline smooths of the ``spec.smooth`` covariates."""
        if not spec.smooth:
            raise ValueError("GAM needs at least one smooth covariate")

        self.logger.info(f"Fitting GAM [{spec.label}]")
        data, factors, numerics, n_dropped = self.prepare_frame(df, spec)
        numerics = [c for c in numerics if c not in spec.smooth]
        formula = self.build_formula(factors, numerics)

        k = len(spec.smooth)
        x_smooth = data[spec.smooth].astype(float)
        smoother = BSplines(x_smooth, df=[self.config.gam_df] * k, degree=[self.config.gam_degree] * k)
        alpha = [self.config.gam_alpha] * k

        def fit_one(link: str):
            family = make_family(spec.family, link)
            model = GLMGam.from_formula(formula, data=data, smoother=smoother, alpha=alpha, family=family)
            result = model.fit()
            if not self.config.gam_select_penalty:
                return result

            # select_penweight needs the scale estimated by a first fit
            with warnings.catch_warnings():
                warnings.simplefilter('ignore')
                best_alpha, _, _ = model.select_penweight(criterion='gcv', method='minimize')
            self.logger.debug(f"  Selected penalty weights (GCV): {np.round(best_alpha, 4)}")
            model = GLMGam.from_formula(formula, data=data, smoother=smoother,
                                        alpha=list(best_alpha), family=family)
            return model.fit()

        result, link = self._fit_with_links(fit_one, spec)
        self.logger.info(f"  n={len(data):,}, link={link}, smooths={', '.join(spec.smooth)}")
        return FittedModel(spec, result, 'gam', link, formula, data, factors, len(data), n_dropped)

    def _fit_with_links(self, fit_one: Callable[[str], Any], spec: ModelSpec) -> tuple[Any, str]:
        errors = []
        for link in select_links(spec.family, spec.link):
            try:
                with warnings.catch_warnings(record=True) as caught:
                    warnings.simplefilter('always')
                    result = fit_one(link)
            except _FIT_ERRORS as e:
                errors.append(f"{link}: {e}")
                self.logger.warning(f"  Fit with {link} link failed: {e}")
                continue

            converged = getattr(result, 'converged', True)
            finite = np.all(np.isfinite(np.asarray(result.params)))
            warned = any(issubclass(w.category, ConvergenceWarning) for w in caught)
            if converged and finite and not warned:
                return result, link

            errors.append(f"{link}: did not converge")
            self.logger.warning(f"  Fit with {link} link did not converge, trying next link")

        raise ModelFitError(f"Model [{spec.label}] could not be fitted: " + '; '.join(errors))


# =============================================================================
# MODEL SUMMARIES
# =============================================================================

def compare_models(models: dict[str, FittedModel]) -> pd.DataFrame:
    """AIC table on the response scale, best model first."""
    rows = []
    for name, fitted in models.items():
        rows.append({
            'model': name,
            'kind': fitted.kind,
            'family': fitted.family.value,
            'link': fitted.link,
            'n_obs': fitted.n_obs,
            'n_params': len(fitted.params),
            'aic': fitted.aic_response_scale,
        })
    table = pd.DataFrame(rows)
    if len(table) == 0:
        return table
    table = table.sort_values('aic', na_position='last').reset_index(drop=True)
    table['delta_aic'] = table['aic'] - table['aic'].min()
    return table


def rain_effect(fitted: FittedModel, level: float = 0.95) -> pd.DataFrame:
    """
    Rainfall coefficients with confidence intervals.

    For log-scale models ``multiplier`` is the factor by which coliform levels
    change per unit of the rainfall term (per log1p(mm) for LOG_PRECIP,
    relative to dry days for RAIN_CLASS levels); for logit models it is the
    odds ratio.
    """
    params = fitted.params
    conf = fitted.result.conf_int(alpha=1 - level)
    terms = [name for name in params.index if LOG_PRECIP in name or RAIN_CLASS in name]

    rows = []
    for term in terms:
        low, high = conf.loc[term]
        row = {
            'term': term,
            'estimate': float(params[term]),
            'ci_low': float(low),
            'ci_high': float(high),
            'p_value': float(fitted.result.pvalues[term]),
        }
        if fitted.log_scale or fitted.link == 'logit':
            row.update({
                'multiplier': float(np.exp(params[term])),
                'multiplier_low': float(np.exp(low)),
                'multiplier_high': float(np.exp(high)),
            })
        rows.append(row)
    return pd.DataFrame(rows)
