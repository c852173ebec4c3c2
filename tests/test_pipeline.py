import logging

import pandas as pd
import pytest

from shellfish_wq.config import AnalysisConfig
from shellfish_wq.exceptions import MissingColumnError
from shellfish_wq.pipeline import ShellfishAnalysis, run_analysis
from shellfish_wq.preprocess import CMEAN_VALUE, RAIN_CLASS, REGION, SEASON, STATION, VALUE

from .conftest import make_samples


@pytest.fixture(scope='module')
def results():
    return ShellfishAnalysis(AnalysisConfig(), logging.getLogger("shellfish_wq.tests")).run(make_samples())


def test_result_sections(results):
    for key in ('cleaned', 'site_summary', 'site_summary_recent', 'region_summary', 'exceedance',
                'models', 'model_comparison', 'marginal_means', 'pairwise', 'rain_effects', 'trends'):
        assert key in results
    assert CMEAN_VALUE in results['cleaned'].columns


def test_models_fitted(results):
    assert {'site', 'covariates', 'covariates_gamma', 'covariates_mixed',
            'exceedance', 'rain_class'} <= set(results['models'])
    assert len(results['model_comparison']) == 2


def test_marginal_means(results):
    emmeans = results['marginal_means']
    assert len(emmeans[STATION]) == 12
    assert emmeans[SEASON][SEASON].tolist() == ['Winter', 'Spring', 'Summer', 'Fall']
    assert set(emmeans[REGION][REGION]) == {'WH', 'WI', 'WK'}
    assert emmeans[RAIN_CLASS][RAIN_CLASS].tolist()[0] == 'Dry'
    assert len(results['pairwise'][REGION]) == 3


def test_rain_effects(results):
    effects = results['rain_effects']
    assert set(effects['model']) >= {'covariates', 'covariates_mixed'}
    assert (effects.loc[effects['model'] == 'covariates', 'multiplier'] > 1).all()


def test_run_analysis_reraises(tmp_path):
    bad = pd.DataFrame({'station': ['A'], 'coliform': [3.0]})
    with pytest.raises(MissingColumnError):
        run_analysis(bad, AnalysisConfig(output_dir=tmp_path))
    assert 'Analysis failed' in (tmp_path / 'analysis.log').read_text()


def test_mostly_censored_data_still_summarized():
    samples = make_samples(stations_per_region=1)
    samples['coliform'] = 2.0
    samples['qualifier'] = '<'
    samples.loc[samples.index[:3], ['coliform', 'qualifier']] = [5.0, '']

    results = ShellfishAnalysis(AnalysisConfig(), logging.getLogger("shellfish_wq.tests")).run(samples)

    cleaned = results['cleaned']
    assert (cleaned[CMEAN_VALUE] == cleaned[VALUE]).all()
    assert len(results['site_summary']) == 3
    assert len(results['exceedance']) > 0
