"""
Configuration for the shellfish growing-area coliform analysis.

Thresholds follow the National Shellfish Sanitation Program (NSSP) criteria
for fecal coliform in growing waters sampled under the systematic random
sampling strategy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Distribution(Enum):
    """Distribution assumed for censored-value estimation."""
    LOGNORMAL = "lognormal"
    NORMAL = "normal"


class ModelFamily(Enum):
    """Response families supported by the model fitter."""
    LOGNORMAL = "lognormal"   # Gaussian on log(value)
    GAMMA = "gamma"
    BINOMIAL = "binomial"
    GAUSSIAN = "gaussian"


class GrowingAreaStatus(Enum):
    """NSSP classification of a sampling station."""
    APPROVED = "approved"
    RESTRICTED = "restricted"
    PROHIBITED = "prohibited"
    INSUFFICIENT_DATA = "insufficient_data"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class AnalysisConfig:
    """Configuration settings for the coliform analysis."""

    output_dir: Optional[Path] = None

    # Input column names
    station_col: str = "station"
    date_col: str = "sample_date"
    value_col: str = "coliform"
    flag_col: str = "censor_flag"        # bool, True for left-censored
    qualifier_col: str = "qualifier"     # "<", ">" or blank
    region_col: str = "region"
    precip_col: str = "precip"           # rainfall (mm), same day or prior 24 h

    # Censored data handling
    censor_distribution: Distribution = Distribution.LOGNORMAL
    censor_method: str = "conditional_mean"  # "conditional_mean", "half_dl", "dl"
    censor_by_station: bool = True
    min_detected_for_group_fit: int = 10
    estimate_right_censored: bool = False
    high_censor_threshold: float = 0.50  # Warn if >50% censored

    # NSSP standards (MPN / 100 mL)
    geomean_standard: float = 14.0
    p90_standard: float = 31.0
    restricted_geomean_standard: float = 88.0
    restricted_p90_standard: float = 163.0
    single_sample_threshold: float = 43.0
    exceedance_thresholds: list = field(default_factory=lambda: [14.0, 31.0, 43.0, 88.0])

    # Sample size requirements
    min_samples_for_status: int = 15
    recent_sample_window: int = 30
    min_samples_for_trend: int = 10
    min_years_for_trend: int = 5
    min_samples_per_year: int = 5
    min_level_count: int = 5

    significance_level: float = 0.05
    confidence_level: float = 0.95

    season_map: dict = field(default_factory=lambda: {
        12: 'Winter', 1: 'Winter', 2: 'Winter',
        3: 'Spring', 4: 'Spring', 5: 'Spring',
        6: 'Summer', 7: 'Summer', 8: 'Summer',
        9: 'Fall', 10: 'Fall', 11: 'Fall',
    })
    season_order: list = field(default_factory=lambda: ['Winter', 'Spring', 'Summer', 'Fall'])

    # Rainfall classes: upper bounds (mm) for Dry and Moderate, anything above is Heavy
    rain_bins: tuple = (2.5, 25.0)
    rain_labels: tuple = ('Dry', 'Moderate', 'Heavy')

    # Model settings
    model_family: ModelFamily = ModelFamily.LOGNORMAL
    gam_df: int = 6
    gam_degree: int = 3
    gam_alpha: float = 1.0
    gam_select_penalty: bool = False
    mixed_methods: list = field(default_factory=lambda: ['lbfgs', 'cg', 'powell'])
    pairwise_adjust: str = "holm"
