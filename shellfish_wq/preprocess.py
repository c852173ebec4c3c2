"""
Preparation of a raw sample table for analysis.

The cleaner works on an in-memory DataFrame and produces a frame with the
canonical column names below, whatever the input names configured in
:class:`~shellfish_wq.config.AnalysisConfig`.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .config import AnalysisConfig
from .exceptions import InsufficientDataError, MissingColumnError

# Canonical column names of a cleaned frame
STATION = 'STATION'
REGION = 'REGION'
SAMPLE_DATE = 'SAMPLE_DATE'
SAMPLE_YEAR = 'SAMPLE_YEAR'
SAMPLE_MONTH = 'SAMPLE_MONTH'
SAMPLE_DOY = 'SAMPLE_DOY'
SEASON = 'SEASON'
VALUE = 'VALUE'
VALUE_ORIGINAL = 'VALUE_ORIGINAL'
LOG_VALUE = 'LOG_VALUE'
LEFT_CENSORED = 'LEFT_CENSORED'
RIGHT_CENSORED = 'RIGHT_CENSORED'
IS_DEGENERATE = 'IS_DEGENERATE'
PRECIP = 'PRECIP'
LOG_PRECIP = 'LOG_PRECIP'
RAIN_CLASS = 'RAIN_CLASS'
CMEAN_VALUE = 'CMEAN_VALUE'

_VALUE_PATTERN = r'^\s*([<>])?\s*=?\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*$'


class SampleDataCleaner:
    """Cleans and derives analysis columns from a coliform sample table."""

    def __init__(self, config: AnalysisConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger

    def clean(self, df: pd.DataFrame) -> pd.DataFrame:
        """Clean and preprocess the data."""
        self.logger.info("Cleaning data...")
        if df is None or len(df) == 0:
            raise InsufficientDataError("No samples to analyze")

        self._check_columns(df)
        initial_rows = len(df)

        df = self._rename_columns(df)
        df = self._parse_values(df)
        df = self._parse_dates(df)
        df = self._drop_incomplete(df)
        df = self._add_rain_covariates(df)
        df = self._add_derived_columns(df)

        if len(df) == 0:
            raise InsufficientDataError("No usable samples remain after cleaning")

        self.logger.info(f"Cleaning complete: {initial_rows:,} → {len(df):,} records")
        return df.reset_index(drop=True)

    def _check_columns(self, df: pd.DataFrame) -> None:
        required = [self.config.station_col, self.config.date_col, self.config.value_col]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise MissingColumnError(missing)

    def _rename_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        cfg = self.config
        mapping = {
            cfg.station_col: STATION,
            cfg.date_col: SAMPLE_DATE,
            cfg.value_col: VALUE,
            cfg.region_col: REGION,
            cfg.precip_col: PRECIP,
        }
        mapping = {k: v for k, v in mapping.items() if k in df.columns}
        df = df.rename(columns=mapping).copy()
        df[STATION] = df[STATION].astype('string').str.strip()
        if REGION in df.columns:
            df[REGION] = df[REGION].astype('string').str.strip()
        return df

    def _parse_values(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Split values into a number and a censoring qualifier.

        Values may arrive as numbers with a separate flag/qualifier column, or
        as text such as "<2" or ">1600".
        """
        self.logger.debug("Parsing values and censoring qualifiers")

        raw = df[VALUE]
        if pd.api.types.is_numeric_dtype(raw):
            numeric = raw.astype(float)
            inline_qualifier = pd.Series('', index=df.index)
        else:
            parts = raw.astype('string').str.extract(_VALUE_PATTERN)
            numeric = pd.to_numeric(parts[1], errors='coerce')
            inline_qualifier = parts[0].fillna('')

        qualifier = inline_qualifier
        if self.config.qualifier_col in df.columns:
            given = df[self.config.qualifier_col].astype('string').str.strip().fillna('')
            qualifier = qualifier.where(qualifier != '', given)

        left = qualifier.eq('<')
        if self.config.flag_col in df.columns:
            flag = df[self.config.flag_col]
            if not pd.api.types.is_bool_dtype(flag):
                flag = flag.astype('string').str.strip().str.upper().isin(['TRUE', 'YES', 'Y', '1', '<'])
            left = left | flag.fillna(False).astype(bool)

        df[VALUE_ORIGINAL] = raw
        df[VALUE] = numeric
        df[LEFT_CENSORED] = left.astype(bool).to_numpy()
        df[RIGHT_CENSORED] = (qualifier.eq('>') & ~left).astype(bool).to_numpy()

        n_left = int(df[LEFT_CENSORED].sum())
        n_right = int(df[RIGHT_CENSORED].sum())
        self.logger.info(f"  Left-censored: {n_left:,}, right-censored: {n_right:,}")
        return df

    def _parse_dates(self, df: pd.DataFrame) -> pd.DataFrame:
        """Parse the sample date and derive calendar columns."""
        self.logger.debug("Parsing sample dates")

        df[SAMPLE_DATE] = pd.to_datetime(df[SAMPLE_DATE], errors='coerce')
        df[SAMPLE_YEAR] = df[SAMPLE_DATE].dt.year
        df[SAMPLE_MONTH] = df[SAMPLE_DATE].dt.month
        df[SAMPLE_DOY] = df[SAMPLE_DATE].dt.dayofyear

        df[SEASON] = pd.Categorical(
            df[SAMPLE_MONTH].map(self.config.season_map),
            categories=self.config.season_order,
            ordered=True,
        )
        return df

    def _drop_incomplete(self, df: pd.DataFrame) -> pd.DataFrame:
        incomplete = df[STATION].isna() | df[SAMPLE_DATE].isna() | df[VALUE].isna()
        n_incomplete = int(incomplete.sum())
        if n_incomplete > 0:
            self.logger.warning(f"Dropping {n_incomplete:,} records with missing station, date or value")
        return df.loc[~incomplete].copy()

    def _add_rain_covariates(self, df: pd.DataFrame) -> pd.DataFrame:
        """Log-transform rainfall and classify it as Dry/Moderate/Heavy."""
        if PRECIP not in df.columns:
            return df
        df[PRECIP] = pd.to_numeric(df[PRECIP], errors='coerce')

        negative = df[PRECIP] < 0
        if negative.any():
            self.logger.warning(f"Found {int(negative.sum()):,} negative rainfall values, set to missing")
            df.loc[negative, PRECIP] = np.nan

        df[LOG_PRECIP] = np.log1p(df[PRECIP])
        low, high = self.config.rain_bins
        df[RAIN_CLASS] = pd.cut(
            df[PRECIP],
            bins=[-np.inf, low, high, np.inf],
            labels=list(self.config.rain_labels),
            right=True,
        )
        return df

    def _add_derived_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        df[IS_DEGENERATE] = ~np.isfinite(df[VALUE]) | (df[VALUE] <= 0)
        n_degenerate = int(df[IS_DEGENERATE].sum())
        if n_degenerate > 0:
            self.logger.warning(f"Found {n_degenerate:,} non-positive values; excluded from log-scale statistics")

        positive = df[VALUE].where(~df[IS_DEGENERATE])
        df[LOG_VALUE] = np.log(positive)
        return df
