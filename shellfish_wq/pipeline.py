"""
End-to-end analysis: clean → estimate censored values → summarize sites →
fit models → extract marginal means.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any, Optional

import pandas as pd

from .censored import CensoredDataHandler
from .config import AnalysisConfig, ModelFamily
from .exceptions import InsufficientDataError, ModelFitError
from .logging_setup import setup_logging
from .marginal import marginal_means, pairwise_comparisons
from .models import FittedModel, ModelFitter, ModelSpec, compare_models, rain_effect
from .preprocess import (LOG_PRECIP, RAIN_CLASS, REGION, SAMPLE_DOY, SEASON,
                         STATION, SampleDataCleaner)
from .site_stats import SiteCharacterizer
from .trends import TrendAnalysis


class ShellfishAnalysis:
    """Runs the full coliform analysis on a sample table."""

    def __init__(self, config: Optional[AnalysisConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or AnalysisConfig()
        self.logger = logger or setup_logging(self.config.output_dir)
        self.fitter = ModelFitter(self.config, self.logger)
        self.results: dict[str, Any] = {}

    def run(self, df: pd.DataFrame) -> dict[str, Any]:
        """Run the complete analysis."""
        self.logger.info("=" * 60)
        self.logger.info("SHELLFISH GROWING AREA COLIFORM ANALYSIS")
        self.logger.info("=" * 60)

        cleaned = SampleDataCleaner(self.config, self.logger).clean(df)
        cleaned = CensoredDataHandler(self.config, self.logger).apply(cleaned)
        self.results['cleaned'] = cleaned

        self._site_characterization(cleaned)
        self._fit_models(cleaned)
        self._marginal_means()

        self.results['trends'] = TrendAnalysis(self.config, self.logger).station_trends(cleaned)

        self.logger.info("=" * 60)
        self.logger.info("ANALYSIS COMPLETE")
        self.logger.info("=" * 60)
        return self.results

    def _site_characterization(self, df: pd.DataFrame) -> None:
        self.logger.info("=" * 60)
        self.logger.info("SITE CHARACTERIZATION")
        self.logger.info("=" * 60)

        characterizer = SiteCharacterizer(self.config, self.logger)
        self.results['site_summary'] = characterizer.summarize(df, STATION)
        self.results['site_summary_recent'] = characterizer.summarize(
            df, STATION, recent=self.config.recent_sample_window
        )
        self.results['region_summary'] = characterizer.summarize(df, REGION)
        self.results['exceedance'] = characterizer.exceedance_table(df)

    def _model_specs(self, df: pd.DataFrame) -> dict[str, tuple[str, ModelSpec]]:
        """Model set for the covariates present in the data."""
        covariates = [c for c in (REGION, SEASON, LOG_PRECIP) if c in df.columns]
        rain_class = [c for c in (REGION, SEASON, RAIN_CLASS) if c in df.columns]
        gam_linear = [c for c in (REGION, LOG_PRECIP) if c in df.columns]

        specs = {
            'site': ('glm', ModelSpec([STATION])),
            'covariates': ('glm', ModelSpec(covariates)),
            'covariates_gamma': ('glm', ModelSpec(covariates, family=ModelFamily.GAMMA)),
            'covariates_mixed': ('mixed', ModelSpec(covariates, group=STATION)),
            'seasonal_gam': ('gam', ModelSpec(gam_linear, smooth=[SAMPLE_DOY])),
            'exceedance': ('exceedance', ModelSpec(covariates)),
        }
        if RAIN_CLASS in df.columns:
            specs['rain_class'] = ('glm', ModelSpec(rain_class))
        return specs

    def _fit_models(self, df: pd.DataFrame) -> None:
        self.logger.info("=" * 60)
        self.logger.info("MODEL FITTING")
        self.logger.info("=" * 60)

        models: dict[str, FittedModel] = {}
        for name, (kind, spec) in self._model_specs(df).items():
            spec.name = spec.name or name
            try:
                if kind == 'glm':
                    models[name] = self.fitter.fit_glm(df, spec)
                elif kind == 'mixed':
                    models[name] = self.fitter.fit_mixed(df, spec)
                elif kind == 'gam':
                    models[name] = self.fitter.fit_gam(df, spec)
                else:
                    models[name] = self.fitter.fit_exceedance(df, self.config.single_sample_threshold, spec)
            except (InsufficientDataError, ModelFitError) as e:
                self.logger.warning(f"  Skipping model {name}: {e}")

        self.results['models'] = models
        comparable = {k: v for k, v in models.items() if k in ('covariates', 'covariates_gamma')}
        self.results['model_comparison'] = compare_models(comparable)

        effects = []
        for name in ('covariates', 'covariates_mixed', 'exceedance', 'rain_class'):
            if name in models:
                table = rain_effect(models[name], level=self.config.confidence_level)
                if len(table) > 0:
                    effects.append(table.assign(model=name))
        self.results['rain_effects'] = pd.concat(effects, ignore_index=True) if effects else pd.DataFrame()

    def _marginal_means(self) -> None:
        self.logger.info("=" * 60)
        self.logger.info("MARGINAL MEANS")
        self.logger.info("=" * 60)

        models = self.results['models']
        level = self.config.confidence_level
        covariate_model = models.get('covariates_mixed') or models.get('covariates')

        emmeans: dict[str, pd.DataFrame] = {}
        pairwise: dict[str, pd.DataFrame] = {}

        if 'site' in models:
            emmeans[STATION] = marginal_means(models['site'], STATION, level=level)
        if covariate_model is not None:
            for factor in covariate_model.factors:
                order = self.config.season_order if factor == SEASON else None
                emmeans[factor] = marginal_means(covariate_model, factor, level=level, order=order)
                pairwise[factor] = pairwise_comparisons(
                    covariate_model, factor, adjust=self.config.pairwise_adjust, level=level
                )
        if 'rain_class' in models and RAIN_CLASS in models['rain_class'].factors:
            emmeans[RAIN_CLASS] = marginal_means(
                models['rain_class'], RAIN_CLASS, level=level, order=list(self.config.rain_labels)
            )
        if 'exceedance' in models and REGION in models['exceedance'].factors:
            emmeans['exceedance_' + REGION] = marginal_means(models['exceedance'], REGION, level=level)

        for factor, table in emmeans.items():
            self.logger.info(f"  {factor}: " + ", ".join(
                f"{row[table.columns[0]]}={row['response']:.2f}" for _, row in table.head(8).iterrows()
            ))

        self.results['marginal_means'] = emmeans
        self.results['pairwise'] = pairwise


def run_analysis(df: pd.DataFrame, config: Optional[AnalysisConfig] = None) -> dict[str, Any]:
    """Run the analysis on ``df``, logging any failure before re-raising it."""
    config = config or AnalysisConfig()
    logger = setup_logging(config.output_dir)

    warnings.filterwarnings('ignore', category=FutureWarning)

    try:
        return ShellfishAnalysis(config, logger).run(df)
    except Exception as e:
        logger.exception(f"Analysis failed: {e}")
        raise
