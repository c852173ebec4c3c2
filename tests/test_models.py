from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from shellfish_wq.censored import CensoredDataHandler
from shellfish_wq.config import ModelFamily
from shellfish_wq.exceptions import InsufficientDataError, ModelFitError
from shellfish_wq.models import (RESPONSE, ModelFitter, ModelSpec, compare_models,
                                 rain_effect, select_links)
from shellfish_wq.preprocess import (CMEAN_VALUE, LOG_PRECIP, REGION, SAMPLE_DOY, SEASON,
                                     STATION, SampleDataCleaner)

from .conftest import RAIN_EFFECT


@pytest.fixture
def prepared(samples, config, logger):
    cleaned = SampleDataCleaner(config, logger).clean(samples)
    return CensoredDataHandler(config, logger).apply(cleaned)


@pytest.fixture
def fitter(config, logger):
    return ModelFitter(config, logger)


class TestLinkSelection:

    def test_default_orders(self):
        assert select_links(ModelFamily.GAMMA) == ['log', 'inverse_power', 'identity']
        assert select_links(ModelFamily.BINOMIAL)[0] == 'logit'
        assert select_links(ModelFamily.LOGNORMAL) == ['identity']

    def test_requested_link_first(self):
        assert select_links(ModelFamily.GAMMA, 'identity') == ['identity', 'log', 'inverse_power']

    def test_invalid_links(self):
        with pytest.raises(ValueError):
            select_links(ModelFamily.LOGNORMAL, 'log')
        with pytest.raises(ValueError):
            select_links(ModelFamily.GAMMA, 'sqrt')

    def test_falls_back_to_next_link(self, fitter):
        tried = []

        def fit_one(link):
            tried.append(link)
            if link == 'log':
                raise ValueError("NaN in linear predictor")
            return SimpleNamespace(params=np.array([1.0, 2.0]), converged=True)

        _, link = fitter._fit_with_links(fit_one, ModelSpec(family=ModelFamily.GAMMA))
        assert link == 'inverse_power'
        assert tried == ['log', 'inverse_power']

    def test_unconverged_fit_is_skipped(self, fitter):
        def fit_one(link):
            return SimpleNamespace(params=np.array([np.nan]) if link == 'logit' else np.array([0.1]),
                                   converged=True)

        _, link = fitter._fit_with_links(fit_one, ModelSpec(family=ModelFamily.BINOMIAL))
        assert link == 'probit'

    def test_all_links_fail(self, fitter):
        def fit_one(link):
            return SimpleNamespace(params=np.array([0.0]), converged=False)

        with pytest.raises(ModelFitError):
            fitter._fit_with_links(fit_one, ModelSpec(family=ModelFamily.GAMMA))


class TestPrepareFrame:

    def test_drops_nonpositive_and_sparse_levels(self, fitter):
        df = pd.DataFrame({
            CMEAN_VALUE: [0.0, -1.0] + [5.0] * 12 + [7.0] * 2,
            REGION: ['A', 'A'] + ['A'] * 6 + ['B'] * 6 + ['C'] * 2,
            LOG_PRECIP: np.linspace(0, 3, 16),
        })
        data, factors, numerics, n_dropped = fitter.prepare_frame(df, ModelSpec([REGION, LOG_PRECIP]))

        assert n_dropped == 4
        assert set(data[REGION]) == {'A', 'B'}
        assert factors == [REGION]
        assert numerics == [LOG_PRECIP]
        assert np.allclose(data[RESPONSE], np.log(data[CMEAN_VALUE]))

    def test_single_level_factor_removed(self, fitter):
        df = pd.DataFrame({CMEAN_VALUE: np.arange(1.0, 11.0), REGION: ['A'] * 10})
        _, factors, _, _ = fitter.prepare_frame(df, ModelSpec([REGION]))
        assert factors == []

    def test_constant_exceedance_raises(self, fitter):
        df = pd.DataFrame({'VALUE': [1.0] * 10, REGION: ['A'] * 5 + ['B'] * 5})
        with pytest.raises(InsufficientDataError):
            fitter.fit_exceedance(df, 43.0, ModelSpec([REGION]))

    def test_missing_column(self, fitter):
        with pytest.raises(KeyError):
            fitter.prepare_frame(pd.DataFrame({CMEAN_VALUE: [1.0]}), ModelSpec([REGION]))


class TestFitting:

    def test_lognormal_glm_recovers_rain_effect(self, fitter, prepared):
        fitted = fitter.fit_glm(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))

        assert fitted.kind == 'glm'
        assert fitted.link == 'identity'
        assert fitted.params[LOG_PRECIP] == pytest.approx(RAIN_EFFECT, abs=0.15)
        assert fitted.log_scale

        effects = rain_effect(fitted)
        assert effects['term'].tolist() == [LOG_PRECIP]
        assert effects['multiplier'].iloc[0] > 1
        assert effects['multiplier_low'].iloc[0] < effects['multiplier'].iloc[0]

    def test_gamma_glm_uses_log_link(self, fitter, prepared):
        fitted = fitter.fit_glm(prepared, ModelSpec([REGION, LOG_PRECIP], family=ModelFamily.GAMMA))
        assert fitted.link == 'log'
        assert fitted.params[LOG_PRECIP] > 0

    def test_exceedance_model(self, fitter, prepared):
        fitted = fitter.fit_exceedance(prepared, 43.0, ModelSpec([REGION, LOG_PRECIP]))
        assert fitted.family is ModelFamily.BINOMIAL
        assert fitted.link == 'logit'
        assert set(fitted.data[RESPONSE].unique()) == {0.0, 1.0}
        assert fitted.params[LOG_PRECIP] > 0

    def test_mixed_model(self, fitter, prepared):
        fitted = fitter.fit_mixed(prepared, ModelSpec([REGION, SEASON, LOG_PRECIP]))
        assert fitted.kind == 'mixed'
        assert fitted.spec.group == STATION
        assert 'Group Var' not in fitted.params.index
        assert fitted.params[LOG_PRECIP] == pytest.approx(RAIN_EFFECT, abs=0.15)

    def test_mixed_requires_lognormal(self, fitter, prepared):
        with pytest.raises(ValueError):
            fitter.fit_mixed(prepared, ModelSpec([REGION], family=ModelFamily.GAMMA))

    def test_gam(self, fitter, prepared):
        fitted = fitter.fit_gam(prepared, ModelSpec([REGION], smooth=[SAMPLE_DOY]))
        assert fitted.kind == 'gam'
        assert len(fitted.params) > 3
        with pytest.raises(ValueError):
            fitter.fit_gam(prepared, ModelSpec([REGION]))

    def test_gam_penalty_selection(self, prepared, config, logger):
        config.gam_select_penalty = True
        fitted = ModelFitter(config, logger).fit_gam(prepared, ModelSpec([REGION], smooth=[SAMPLE_DOY]))
        assert fitted.kind == 'gam'
        assert np.all(np.isfinite(fitted.params))

    def test_compare_models(self, fitter, prepared):
        models = {
            'lognormal': fitter.fit_glm(prepared, ModelSpec([REGION, LOG_PRECIP])),
            'gamma': fitter.fit_glm(prepared, ModelSpec([REGION, LOG_PRECIP], family=ModelFamily.GAMMA)),
        }
        table = compare_models(models)
        assert set(table['model']) == {'lognormal', 'gamma'}
        assert table['delta_aic'].iloc[0] == 0
        assert (table['delta_aic'] >= 0).all()
