"""
Site-level characterization of fecal coliform contamination.

Each station is summarized with the NSSP statistics used to classify
shellfish growing waters: the geometric mean and the estimated 90th
percentile of the (log-normally distributed) counts.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.proportion import proportion_confint

from .censored import geometric_mean
from .config import AnalysisConfig, GrowingAreaStatus
from .preprocess import (CMEAN_VALUE, LEFT_CENSORED, REGION, SAMPLE_DATE,
                         SAMPLE_YEAR, STATION, VALUE)

Z_90 = stats.norm.ppf(0.90)  # 1.2816


def estimated_p90(values) -> float:
    """NSSP estimated 90th percentile, assuming log10 values are normal."""
    values = np.asarray(values, dtype=float)
    positive = values[np.isfinite(values) & (values > 0)]
    if len(positive) < 2:
        return np.nan
    logs = np.log10(positive)
    return float(10 ** (logs.mean() + Z_90 * logs.std(ddof=1)))


def classify_status(geomean: float, p90: float, n: int, config: AnalysisConfig) -> GrowingAreaStatus:
    """Classify a station from its geometric mean and estimated 90th percentile."""
    if n < config.min_samples_for_status or np.isnan(geomean) or np.isnan(p90):
        return GrowingAreaStatus.INSUFFICIENT_DATA
    if geomean <= config.geomean_standard and p90 <= config.p90_standard:
        return GrowingAreaStatus.APPROVED
    if geomean <= config.restricted_geomean_standard and p90 <= config.restricted_p90_standard:
        return GrowingAreaStatus.RESTRICTED
    return GrowingAreaStatus.PROHIBITED


def recent_window(df: pd.DataFrame, n_samples: int, by: str = STATION) -> pd.DataFrame:
    """Restrict each group to its ``n_samples`` most recent samples."""
    ordered = df.sort_values([by, SAMPLE_DATE])
    return ordered.groupby(by, observed=True, group_keys=False).tail(n_samples)


class SiteCharacterizer:
    """Summarizes contamination and exceedance by station or region."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def summarize(self, df: pd.DataFrame, by: str = STATION,
                  recent: Optional[int] = None) -> pd.DataFrame:
        """
        Per-group contamination summary.

        Uses the censored-value estimates in ``CMEAN_VALUE`` when present. With
        ``recent`` set, only the most recent samples of each group are used,
        as for a rolling growing-area assessment.
        """
        if by not in df.columns:
            self.logger.info(f"  No {by} column, skipping summary")
            return pd.DataFrame()

        self.logger.info(f"Summarizing coliform levels by {by.lower()}...")
        if recent is not None:
            df = recent_window(df, recent, by)

        value_col = CMEAN_VALUE if CMEAN_VALUE in df.columns else VALUE
        rows = []
        for key, group in df.groupby(by, observed=True):
            rows.append(self._summarize_group(key, group, by, value_col))

        summary = pd.DataFrame(rows)
        if len(summary) == 0:
            return summary

        summary = summary.sort_values('geomean', ascending=False).reset_index(drop=True)
        counts = summary['status'].value_counts()
        self.logger.info(f"  {len(summary)} groups: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
        return summary

    def _summarize_group(self, key, group: pd.DataFrame, by: str, value_col: str) -> dict[str, Any]:
        values = group[value_col].to_numpy(dtype=float)
        n = len(values)
        censored = group[LEFT_CENSORED].to_numpy(dtype=bool)

        # Censored values never count as exceedances
        exceed_single = (group[VALUE].to_numpy(dtype=float) > self.config.single_sample_threshold) & ~censored

        gm = geometric_mean(values)
        p90 = estimated_p90(values)
        status = classify_status(gm, p90, n, self.config)

        result = {
            by: key,
            'n_samples': n,
            'n_censored': int(censored.sum()),
            'pct_censored': 100 * censored.sum() / n if n else np.nan,
            'year_min': group[SAMPLE_YEAR].min(),
            'year_max': group[SAMPLE_YEAR].max(),
            'geomean': gm,
            'mean': float(np.mean(values)) if n else np.nan,
            'median': float(np.median(values)) if n else np.nan,
            'max': float(np.max(values)) if n else np.nan,
            'p90_empirical': float(np.percentile(values, 90)) if n else np.nan,
            'p90_estimated': p90,
            'pct_exceed_single': 100 * np.mean(exceed_single) if n else np.nan,
            'geomean_exceeds': bool(gm > self.config.geomean_standard) if not np.isnan(gm) else None,
            'p90_exceeds': bool(p90 > self.config.p90_standard) if not np.isnan(p90) else None,
            'status': status.value,
        }
        if by == STATION and REGION in group.columns:
            mode = group[REGION].mode()
            result['region'] = mode.iloc[0] if len(mode) > 0 else None
        if by != STATION:
            result['n_stations'] = group[STATION].nunique()
        return result

    def exceedance_table(self, df: pd.DataFrame, thresholds: Optional[list] = None,
                         by: str = STATION) -> pd.DataFrame:
        """
        Proportion of samples above each threshold, with Wilson confidence intervals.
        Left-censored values never count as exceedances.
        """
        thresholds = thresholds or self.config.exceedance_thresholds
        self.logger.info("Analyzing threshold exceedances...")
        alpha = 1 - self.config.confidence_level

        rows = []
        for key, group in df.groupby(by, observed=True):
            values = group[VALUE].to_numpy(dtype=float)
            censored = group[LEFT_CENSORED].to_numpy(dtype=bool)
            n = len(values)
            for threshold in thresholds:
                n_exceed = int(((values > threshold) & ~censored).sum())
                low, high = proportion_confint(n_exceed, n, alpha=alpha, method='wilson')
                rows.append({
                    by: key,
                    'threshold': threshold,
                    'n_samples': n,
                    'n_exceed': n_exceed,
                    'pct_exceed': 100 * n_exceed / n,
                    'ci_low': 100 * low,
                    'ci_high': 100 * high,
                })

        table = pd.DataFrame(rows)
        if len(table) > 0:
            overall = table.groupby('threshold')[['n_exceed', 'n_samples']].sum()
            for threshold, row in overall.iterrows():
                pct = 100 * row['n_exceed'] / row['n_samples']
                self.logger.info(f"  > {threshold:g}: {int(row['n_exceed']):,} samples ({pct:.1f}%)")
        return table
