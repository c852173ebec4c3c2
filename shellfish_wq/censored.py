"""
Estimation for left-censored (below detection limit) coliform counts.

Counts reported as "<L" are replaced with the conditional mean of the
assumed distribution below L, E[X | X < L]. The distribution parameters are
estimated by maximum likelihood from all observations, with censored values
contributing the probability mass below (or above) their reporting limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import pandas as pd
from scipy import optimize, stats

from .config import AnalysisConfig, Distribution
from .exceptions import InsufficientDataError
from .preprocess import CMEAN_VALUE, LEFT_CENSORED, RIGHT_CENSORED, STATION, VALUE


@dataclass
class CensoredFit:
    """Maximum likelihood fit of a distribution to censored data.

    ``mu`` and ``sigma`` are on the log scale for the lognormal distribution.
    """
    mu: float
    sigma: float
    distribution: Distribution
    n: int
    n_left: int
    n_right: int
    converged: bool
    log_likelihood: float

    @property
    def mean(self) -> float:
        """Mean of the fitted distribution on the original scale."""
        if self.distribution is Distribution.LOGNORMAL:
            return float(np.exp(self.mu + self.sigma ** 2 / 2))
        return self.mu

    @property
    def geometric_mean(self) -> float:
        if self.distribution is Distribution.LOGNORMAL:
            return float(np.exp(self.mu))
        return np.nan


def _as_arrays(values, left_censored, right_censored=None):
    values = np.asarray(values, dtype=float)
    left = np.asarray(left_censored, dtype=bool)
    right = np.zeros_like(left) if right_censored is None else np.asarray(right_censored, dtype=bool)
    if values.shape != left.shape or values.shape != right.shape:
        raise ValueError("values and censoring flags must have the same length")
    if np.any(left & right):
        raise ValueError("an observation cannot be both left- and right-censored")
    return values, left, right


def _to_fit_scale(values: np.ndarray, distribution: Distribution) -> np.ndarray:
    if distribution is Distribution.LOGNORMAL:
        if np.any(~np.isfinite(values)) or np.any(values <= 0):
            raise ValueError("lognormal estimation requires finite positive values")
        return np.log(values)
    if np.any(~np.isfinite(values)):
        raise ValueError("values must be finite")
    return values


def fit_censored_distribution(values, left_censored, right_censored=None,
                              distribution: Distribution = Distribution.LOGNORMAL) -> CensoredFit:
    """
    Fit a normal or lognormal distribution to censored data by maximum likelihood.

    Detected values contribute the density, left-censored values the CDF at
    their detection limit and right-censored values the survival function
    at their reporting limit.
    """
    values, left, right = _as_arrays(values, left_censored, right_censored)
    y = _to_fit_scale(values, distribution)

    detected = ~(left | right)
    y_det = y[detected]
    if len(np.unique(y_det)) < 2:
        raise InsufficientDataError(
            f"Need at least two distinct detected values, got {len(np.unique(y_det))} "
            f"({int(left.sum())} left-censored of {len(y)})"
        )

    y_left = y[left]
    y_right = y[right]

    def negloglik(theta: np.ndarray) -> float:
        mu, log_sigma = theta
        sigma = np.exp(log_sigma)
        ll = stats.norm.logpdf(y_det, mu, sigma).sum()
        if len(y_left):
            ll += stats.norm.logcdf(y_left, mu, sigma).sum()
        if len(y_right):
            ll += stats.norm.logsf(y_right, mu, sigma).sum()
        return -ll

    start = np.array([y_det.mean(), np.log(max(y_det.std(ddof=1), 1e-6))])
    res = optimize.minimize(negloglik, start, method='L-BFGS-B')
    if not res.success:
        # L-BFGS-B occasionally stops on precision loss near the optimum
        res = optimize.minimize(negloglik, res.x, method='Nelder-Mead')

    mu, log_sigma = res.x
    return CensoredFit(
        mu=float(mu),
        sigma=float(np.exp(log_sigma)),
        distribution=distribution,
        n=len(y),
        n_left=int(left.sum()),
        n_right=int(right.sum()),
        converged=bool(res.success),
        log_likelihood=float(-res.fun),
    )


def conditional_mean_below(limit, fit: CensoredFit) -> np.ndarray:
    """E[X | X < limit] under the fitted distribution, vectorised over ``limit``."""
    limit = np.asarray(limit, dtype=float)
    mu, s = fit.mu, fit.sigma

    if fit.distribution is Distribution.LOGNORMAL:
        log_limit = np.log(limit)
        num = stats.norm.logcdf((log_limit - mu - s ** 2) / s)
        den = stats.norm.logcdf((log_limit - mu) / s)
        cmean = np.exp(mu + s ** 2 / 2 + num - den)
    else:
        z = (limit - mu) / s
        cmean = mu - s * np.exp(stats.norm.logpdf(z) - stats.norm.logcdf(z))

    cmean = np.where(np.isfinite(cmean), cmean, limit)
    return np.minimum(cmean, limit)


def conditional_mean_above(limit, fit: CensoredFit) -> np.ndarray:
    """E[X | X > limit] under the fitted distribution, vectorised over ``limit``."""
    limit = np.asarray(limit, dtype=float)
    mu, s = fit.mu, fit.sigma

    if fit.distribution is Distribution.LOGNORMAL:
        log_limit = np.log(limit)
        num = stats.norm.logcdf((mu + s ** 2 - log_limit) / s)
        den = stats.norm.logcdf((mu - log_limit) / s)
        cmean = np.exp(mu + s ** 2 / 2 + num - den)
    else:
        z = (limit - mu) / s
        cmean = mu + s * np.exp(stats.norm.logpdf(z) - stats.norm.logsf(z))

    cmean = np.where(np.isfinite(cmean), cmean, limit)
    return np.maximum(cmean, limit)


def substitute_conditional_means(values, left_censored, right_censored=None,
                                 distribution: Distribution = Distribution.LOGNORMAL,
                                 estimate_right: bool = False,
                                 fit: Optional[CensoredFit] = None) -> np.ndarray:
    """
    Replace censored observations with conditional means.

    Left-censored values are replaced with E[X | X < L] at their own
    detection limit L. Right-censored values are only replaced when
    ``estimate_right`` is set; otherwise they stay at the reporting limit.
    A precomputed ``fit`` (e.g. pooled over a larger data set) may be given.
    """
    values, left, right = _as_arrays(values, left_censored, right_censored)
    result = values.copy()

    if not left.any() and not (estimate_right and right.any()):
        return result

    if fit is None:
        fit = fit_censored_distribution(values, left, right, distribution)

    if left.any():
        result[left] = conditional_mean_below(values[left], fit)
    if estimate_right and right.any():
        result[right] = conditional_mean_above(values[right], fit)
    return result


def substitute_simple(values, left_censored, method: str = "half_dl") -> np.ndarray:
    """Substitute left-censored values with half the detection limit or the limit itself."""
    values = np.asarray(values, dtype=float)
    left = np.asarray(left_censored, dtype=bool)
    result = values.copy()
    if method == "half_dl":
        result[left] = values[left] / 2
    elif method != "dl":
        raise ValueError(f"Unknown substitution method: {method!r}")
    return result


def geometric_mean(values) -> float:
    """Geometric mean of the positive values; NaN when there are none."""
    values = np.asarray(values, dtype=float)
    positive = values[np.isfinite(values) & (values > 0)]
    if len(positive) == 0:
        return np.nan
    return float(np.exp(np.mean(np.log(positive))))


# =============================================================================
# GROUP-WISE SUBSTITUTION
# =============================================================================

class CensoredDataHandler:
    """Applies censored-value estimation to a cleaned sample table."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def apply(self, df: pd.DataFrame) -> pd.DataFrame:
        """Add a ``CMEAN_VALUE`` column holding values with censored entries estimated."""
        cfg = self.config
        self.logger.info(f"Estimating censored values using method: {cfg.censor_method}")
        df = df.copy()

        pct_censored = 100 * df[LEFT_CENSORED].mean() if len(df) else 0.0
        self.logger.info(f"  Left-censored: {int(df[LEFT_CENSORED].sum()):,} records ({pct_censored:.1f}%)")

        if cfg.censor_method in ("half_dl", "dl"):
            df[CMEAN_VALUE] = substitute_simple(df[VALUE], df[LEFT_CENSORED], cfg.censor_method)
            return df
        if cfg.censor_method != "conditional_mean":
            raise ValueError(f"Unknown censor method: {cfg.censor_method!r}")

        usable = np.isfinite(df[VALUE]) & (
            (df[VALUE] > 0) | (cfg.censor_distribution is Distribution.NORMAL)
        )
        if not usable.all():
            self.logger.warning(f"  {int((~usable).sum()):,} records unusable for censored estimation")

        df[CMEAN_VALUE] = df[VALUE].astype(float)
        pooled = self._pooled_fit(df.loc[usable])
        if pooled is None:
            return df

        if cfg.censor_by_station:
            for station, idx in df.loc[usable].groupby(STATION, observed=True).groups.items():
                group = df.loc[idx]
                fit = self._group_fit(group, pooled, station)
                df.loc[idx, CMEAN_VALUE] = substitute_conditional_means(
                    group[VALUE], group[LEFT_CENSORED], group[RIGHT_CENSORED],
                    distribution=cfg.censor_distribution,
                    estimate_right=cfg.estimate_right_censored,
                    fit=fit,
                )
        else:
            sub = df.loc[usable]
            df.loc[usable, CMEAN_VALUE] = substitute_conditional_means(
                sub[VALUE], sub[LEFT_CENSORED], sub[RIGHT_CENSORED],
                distribution=cfg.censor_distribution,
                estimate_right=cfg.estimate_right_censored,
                fit=pooled,
            )
        return df

    def _pooled_fit(self, df: pd.DataFrame) -> Optional[CensoredFit]:
        if not df[LEFT_CENSORED].any() and not (
                self.config.estimate_right_censored and df[RIGHT_CENSORED].any()):
            self.logger.info("  No censored values to estimate")
            return None

        try:
            fit = fit_censored_distribution(
                df[VALUE], df[LEFT_CENSORED], df[RIGHT_CENSORED], self.config.censor_distribution
            )
        except InsufficientDataError as e:
            self.logger.warning(f"  Censored values left at their reporting limits: {e}")
            return None
        if not fit.converged:
            self.logger.warning("  Pooled censored-data fit did not converge")
        self.logger.info(f"  Pooled fit: mu={fit.mu:.3f}, sigma={fit.sigma:.3f} ({fit.distribution.value})")
        return fit

    def _group_fit(self, group: pd.DataFrame, pooled: CensoredFit, station) -> CensoredFit:
        """Fit a station-specific distribution, or fall back to the pooled one."""
        n_detected = int((~group[LEFT_CENSORED] & ~group[RIGHT_CENSORED]).sum())
        frac_censored = group[LEFT_CENSORED].mean()

        if frac_censored > self.config.high_censor_threshold:
            self.logger.warning(
                f"  {station}: {frac_censored * 100:.1f}% censored - estimates may be unreliable"
            )
        if n_detected < self.config.min_detected_for_group_fit or not group[LEFT_CENSORED].any():
            return pooled

        try:
            fit = fit_censored_distribution(
                group[VALUE], group[LEFT_CENSORED], group[RIGHT_CENSORED],
                self.config.censor_distribution,
            )
        except InsufficientDataError:
            return pooled
        if not fit.converged:
            self.logger.debug(f"  {station}: station fit did not converge, using pooled fit")
            return pooled
        return fit


def censored_summary(values, left_censored, right_censored=None,
                     distribution: Distribution = Distribution.LOGNORMAL) -> dict[str, Any]:
    """
    Summarize a censored sample: counts, MLE parameters and the geometric
    mean of the conditional-mean-substituted values.
    """
    values, left, right = _as_arrays(values, left_censored, right_censored)
    n = len(values)
    result: dict[str, Any] = {
        'n': n,
        'n_censored': int(left.sum()),
        'pct_censored': 100 * left.sum() / n if n else np.nan,
        'mu': np.nan,
        'sigma': np.nan,
        'geomean': np.nan,
        'method': 'mle',
    }
    if n == 0:
        return result

    if not left.any():
        result['geomean'] = geometric_mean(values)
        result['method'] = 'standard'
        return result

    try:
        fit = fit_censored_distribution(values, left, right, distribution)
    except InsufficientDataError:
        # all or nearly all censored: the detection limit bounds the estimate
        result['geomean'] = geometric_mean(values)
        result['method'] = 'all_censored'
        result['warning'] = 'Too few detected values - geometric mean is an upper bound'
        return result

    substituted = substitute_conditional_means(values, left, right, distribution, fit=fit)
    result.update({
        'mu': fit.mu,
        'sigma': fit.sigma,
        'geomean': geometric_mean(substituted),
        'warning': 'High censoring - estimate depends on distributional assumption'
                   if result['pct_censored'] > 50 else None,
    })
    return result
