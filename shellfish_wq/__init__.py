"""
Fecal coliform analysis for shellfish growing-area monitoring data.

Characterizes station-level contamination against NSSP standards, estimates
below-detection-limit counts, and models the influence of rainfall, season
and region on bacteria levels.
"""

from .censored import (CensoredDataHandler, CensoredFit, conditional_mean_above,
                       conditional_mean_below, fit_censored_distribution, geometric_mean,
                       substitute_conditional_means)
from .config import AnalysisConfig, Distribution, GrowingAreaStatus, ModelFamily
from .exceptions import (InsufficientDataError, MissingColumnError, ModelFitError,
                         ShellfishAnalysisError)
from .logging_setup import setup_logging
from .marginal import marginal_means, pairwise_comparisons, reference_grid
from .models import FittedModel, ModelFitter, ModelSpec, compare_models, rain_effect
from .pipeline import ShellfishAnalysis, run_analysis

__version__ = "0.1.0"
