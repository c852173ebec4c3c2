import numpy as np
import pandas as pd
import pytest

from shellfish_wq.censored import CensoredDataHandler, geometric_mean
from shellfish_wq.config import ModelFamily
from shellfish_wq.marginal import (grid_design, linear_design, marginal_means, pairwise_comparisons,
                                   reference_grid)
from shellfish_wq.models import ModelFitter, ModelSpec
from shellfish_wq.preprocess import (CMEAN_VALUE, LOG_PRECIP, REGION, SAMPLE_DOY, SEASON,
                                     STATION, SampleDataCleaner)


@pytest.fixture
def fitter(config, logger):
    return ModelFitter(config, logger)


@pytest.fixture
def prepared(samples, config, logger):
    cleaned = SampleDataCleaner(config, logger).clean(samples)
    return CensoredDataHandler(config, logger).apply(cleaned)


@pytest.fixture
def balanced():
    rng = np.random.default_rng(11)
    stations = np.repeat(['A', 'B', 'C'], 12)
    values = np.exp(rng.normal(np.repeat([1.0, 2.0, 3.0], 12), 0.5))
    return pd.DataFrame({STATION: stations, CMEAN_VALUE: values})


def test_one_factor_means_are_group_geometric_means(fitter, balanced):
    fitted = fitter.fit_glm(balanced, ModelSpec([STATION]))
    emm = marginal_means(fitted, STATION)

    expected = balanced.groupby(STATION)[CMEAN_VALUE].apply(geometric_mean)
    assert emm[STATION].tolist() == ['A', 'B', 'C']
    np.testing.assert_allclose(emm['response'], expected.loc[['A', 'B', 'C']], rtol=1e-6)
    assert (emm['lower'] < emm['response']).all()
    assert (emm['response'] < emm['upper']).all()
    assert (emm['n'] == 12).all()


def test_reference_grid_crosses_factors(fitter, prepared):
    fitted = fitter.fit_glm(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))
    grid = reference_grid(fitted, SEASON)

    assert len(grid) == 4 * 3
    assert grid[LOG_PRECIP].nunique() == 1
    assert grid[LOG_PRECIP].iloc[0] == pytest.approx(fitted.data[LOG_PRECIP].mean())
    assert grid_design(fitted, grid).shape == (12, len(fitted.params))


def test_reference_grid_rejects_numeric(fitter, prepared):
    fitted = fitter.fit_glm(prepared, ModelSpec([REGION, LOG_PRECIP]))
    with pytest.raises(ValueError):
        reference_grid(fitted, LOG_PRECIP)


def test_season_order_and_effects(fitter, prepared, config):
    fitted = fitter.fit_glm(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))
    emm = marginal_means(fitted, SEASON, order=config.season_order)

    assert emm[SEASON].tolist() == config.season_order
    # synthetic data: Fall highest, Winter lowest
    assert emm['response'].idxmax() == 3
    assert emm['response'].idxmin() == 0


def test_region_means_from_mixed_model(fitter, prepared):
    fitted = fitter.fit_mixed(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))
    emm = marginal_means(fitted, REGION)

    assert emm[REGION].tolist() == ['WH', 'WI', 'WK']
    ordered = emm.set_index(REGION)['response']
    assert ordered['WI'] > ordered['WH'] > ordered['WK']


def test_pairwise_comparisons(fitter, prepared):
    fitted = fitter.fit_glm(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))
    pairs = pairwise_comparisons(fitted, REGION)

    assert len(pairs) == 3
    np.testing.assert_allclose(pairs['ratio'], np.exp(pairs['difference']))
    assert (pairs['p_adjusted'] >= pairs['p_value']).all()

    emm = marginal_means(fitted, REGION).set_index(REGION)
    wh_wi = pairs[(pairs['level_a'] == 'WH') & (pairs['level_b'] == 'WI')].iloc[0]
    assert wh_wi['difference'] == pytest.approx(emm.loc['WH', 'estimate'] - emm.loc['WI', 'estimate'])
    assert wh_wi['p_adjusted'] < 0.05


def test_exceedance_means_are_probabilities(fitter, prepared):
    fitted = fitter.fit_exceedance(prepared, 43.0, ModelSpec([REGION, LOG_PRECIP]))
    emm = marginal_means(fitted, REGION)
    assert ((emm['response'] > 0) & (emm['response'] < 1)).all()

    pairs = pairwise_comparisons(fitted, REGION)
    assert 'odds_ratio' in pairs.columns


def test_gamma_and_gam_means(fitter, prepared):
    gamma = fitter.fit_glm(prepared, ModelSpec([REGION, LOG_PRECIP], family=ModelFamily.GAMMA))
    emm = marginal_means(gamma, REGION)
    assert (emm['response'] > 0).all()

    gam = fitter.fit_gam(prepared, ModelSpec([REGION, LOG_PRECIP], smooth=[SAMPLE_DOY]))
    emm = marginal_means(gam, REGION)
    assert emm.set_index(REGION)['response'].idxmax() == 'WI'


@pytest.mark.parametrize("kind", ['glm', 'gam'])
def test_linear_design_rebuilds_model_rows(fitter, prepared, kind):
    if kind == 'glm':
        fitted = fitter.fit_glm(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))
    else:
        fitted = fitter.fit_gam(prepared, ModelSpec([REGION, LOG_PRECIP], smooth=[SAMPLE_DOY]))

    rows = fitted.data.iloc[:25]
    x = linear_design(fitted, rows).to_numpy(dtype=float)
    np.testing.assert_allclose(x, fitted.result.model.exog[:25, :x.shape[1]])
    np.testing.assert_allclose(grid_design(fitted, rows), fitted.result.model.exog[:25])
