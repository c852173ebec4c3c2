"""Long-term trends in station coliform levels."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import pandas as pd
from scipy import stats

from .censored import geometric_mean
from .config import AnalysisConfig
from .preprocess import CMEAN_VALUE, SAMPLE_YEAR, STATION, VALUE


def mann_kendall(x) -> tuple[float, float]:
    """Mann-Kendall trend test with tie correction. Returns (S, two-sided p)."""
    x = np.asarray(x, dtype=float)
    x = x[np.isfinite(x)]
    n = len(x)
    if n < 4:
        return np.nan, np.nan

    diffs = np.sign(x[None, :] - x[:, None])
    s = float(np.triu(diffs, k=1).sum())

    _, tie_counts = np.unique(x, return_counts=True)
    ties = tie_counts[tie_counts > 1]
    var_s = (n * (n - 1) * (2 * n + 5) - np.sum(ties * (ties - 1) * (2 * ties + 5))) / 18

    if var_s <= 0:
        return s, np.nan
    if s > 0:
        z = (s - 1) / np.sqrt(var_s)
    elif s < 0:
        z = (s + 1) / np.sqrt(var_s)
    else:
        z = 0.0

    p_value = 2 * stats.norm.sf(abs(z))
    return s, float(p_value)


def sens_slope(x, y) -> float:
    """Sen's slope (median of all pairwise slopes)."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    i, j = np.triu_indices(len(x), k=1)
    dx = x[j] - x[i]
    keep = dx != 0
    if not keep.any():
        return np.nan
    return float(np.median((y[j] - y[i])[keep] / dx[keep]))


class TrendAnalysis:
    """Tests for monotonic trends in annual geometric means by station."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def station_trends(self, df: pd.DataFrame) -> pd.DataFrame:
        self.logger.info("Performing trend analysis...")
        value_col = CMEAN_VALUE if CMEAN_VALUE in df.columns else VALUE

        rows = []
        for station, group in df.groupby(STATION, observed=True):
            if len(group) < self.config.min_samples_for_trend:
                continue
            result = self._trend(group, value_col)
            if result is None:
                continue
            rows.append({STATION: station, **result})

        trends = pd.DataFrame(rows)
        if len(trends) > 0:
            n_sig = int(trends['significant'].sum())
            self.logger.info(f"  {len(trends)} stations tested, {n_sig} with significant trends")
            for _, row in trends[trends['significant']].iterrows():
                self.logger.debug(
                    f"  {row[STATION]}: {row['trend_direction']} "
                    f"({row['pct_change_per_year']:+.1f}%/yr, p={row['mann_kendall_p_value']:.4f})"
                )
        return trends

    def _trend(self, group: pd.DataFrame, value_col: str) -> dict[str, Any] | None:
        annual = group.groupby(SAMPLE_YEAR)[value_col].agg(['count', geometric_mean])
        annual.columns = ['count', 'geomean']
        annual = annual[annual['geomean'].notna() & (annual['count'] >= self.config.min_samples_per_year)]
        if len(annual) < self.config.min_years_for_trend:
            return None

        years = annual.index.to_numpy(dtype=float)
        log_gm = np.log(annual['geomean'].to_numpy(dtype=float))

        mk_stat, mk_p = mann_kendall(log_gm)
        slope = sens_slope(years, log_gm)

        # Sample-level regression of log value on year
        samples = group[[SAMPLE_YEAR]].copy()
        samples['y'] = np.log(group[value_col].where(group[value_col] > 0))
        samples = samples.dropna()
        if samples['y'].nunique() > 1 and samples[SAMPLE_YEAR].nunique() > 1:
            reg = stats.linregress(samples[SAMPLE_YEAR].astype(float), samples['y'])
            lin_slope, lin_p = reg.slope, reg.pvalue
        else:
            lin_slope, lin_p = np.nan, np.nan

        significant = bool(mk_p < self.config.significance_level) if not np.isnan(mk_p) else False
        return {
            'n_samples': len(group),
            'n_years': len(annual),
            'year_range': f"{int(years.min())}-{int(years.max())}",
            'sens_slope_log': slope,
            'pct_change_per_year': 100 * (np.exp(slope) - 1) if np.isfinite(slope) else np.nan,
            'mann_kendall_stat': mk_stat,
            'mann_kendall_p_value': mk_p,
            'linear_slope_log': lin_slope,
            'linear_p_value': lin_p,
            'trend_direction': 'increasing' if slope > 0 else 'decreasing' if slope < 0 else 'none',
            'significant': significant,
            'early_geomean': float(annual['geomean'].iloc[:3].mean()),
            'late_geomean': float(annual['geomean'].iloc[-3:].mean()),
        }
