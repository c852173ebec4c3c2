import logging

import numpy as np
import pandas as pd
import pytest

from shellfish_wq.config import AnalysisConfig

REGION_EFFECTS = {'WH': 0.0, 'WI': 0.8, 'WK': -0.7}
SEASON_EFFECTS = {12: 0.0, 1: 0.0, 2: 0.0, 3: 0.4, 4: 0.4, 5: 0.4,
                  6: 0.8, 7: 0.8, 8: 0.8, 9: 1.2, 10: 1.2, 11: 1.2}
RAIN_EFFECT = 0.5
DETECTION_LIMIT = 2.0
UPPER_LIMIT = 1600.0


def make_samples(seed: int = 42, n_years: int = 6, samples_per_year: int = 10,
                 stations_per_region: int = 4, trend: float = 0.0) -> pd.DataFrame:
    """Synthetic growing-area samples with known region, season and rain effects."""
    rng = np.random.default_rng(seed)
    rows = []
    for region, region_effect in REGION_EFFECTS.items():
        for k in range(stations_per_region):
            station = f"{region}{k + 1:03d}"
            station_effect = rng.normal(0, 0.3)
            for year in range(2015, 2015 + n_years):
                days = np.sort(rng.choice(np.arange(1, 365), samples_per_year, replace=False))
                for day in days:
                    date = pd.Timestamp(year, 1, 1) + pd.Timedelta(days=int(day) - 1)
                    precip = float(rng.exponential(6.0)) if rng.random() < 0.5 else 0.0
                    log_value = (1.8 + region_effect + station_effect
                                 + SEASON_EFFECTS[date.month]
                                 + RAIN_EFFECT * np.log1p(precip)
                                 + trend * (year - 2015)
                                 + rng.normal(0, 1.0))
                    value = float(np.exp(log_value))
                    qualifier = ''
                    if value < DETECTION_LIMIT:
                        value, qualifier = DETECTION_LIMIT, '<'
                    elif value > UPPER_LIMIT:
                        value, qualifier = UPPER_LIMIT, '>'
                    rows.append({
                        'station': station,
                        'sample_date': date,
                        'coliform': value,
                        'qualifier': qualifier,
                        'region': region,
                        'precip': precip,
                    })
    return pd.DataFrame(rows)


@pytest.fixture
def config():
    return AnalysisConfig()


@pytest.fixture
def logger():
    return logging.getLogger("shellfish_wq.tests")


@pytest.fixture
def samples():
    return make_samples()
