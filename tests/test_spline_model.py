"""Tests for fitting flexible spline models."""

import numpy as np
import pandas as pd
import pytest
from statsmodels.tools.numdiff import approx_fprime

from flexible_survival import (
    FlexibleSplineModel,
    SolverControl,
    coefficient_table,
    fit_flexible_spline,
    predict_flexible_spline,
    solver_control,
)
from flexible_survival.spline_model import model_frame


def test_solver_control_defaults():
    control = solver_control()
    assert isinstance(control, SolverControl)
    kwargs = control.fit_kwargs()
    assert kwargs['maxiter'] == 30
    assert kwargs['disp'] is False
    # relative log-likelihood tolerance in L-BFGS-B units
    assert kwargs['factr'] * np.finfo(float).eps == pytest.approx(1e-9)
    assert control.toler_chol == 1e-10
    assert control.outer_max == 10


def test_solver_control_debug_prints():
    assert solver_control(debug=1).fit_kwargs()['disp'] is True


def test_solver_control_validation():
    with pytest.raises(ValueError):
        solver_control(rel_tolerance=0)
    with pytest.raises(ValueError):
        solver_control(maxiter=-1)


@pytest.mark.parametrize('scale', ['hazard', 'odds', 'normal'])
def test_default_fit_converges(survival_df, scale):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1, scale=scale)
    assert results.mle_retvals['converged']
    assert np.all(np.isfinite(np.asarray(results.bse)))


def test_default_fit_converges_on_identity_timescale(survival_df):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1, timescale='identity')
    assert results.mle_retvals['converged']


def test_short_starting_fit_still_converges(survival_df):
    control = solver_control(maxiter=1)
    results = fit_flexible_spline('x1 + x2', survival_df, k=2, sr_control=control)
    assert results.mle_retvals['converged']


@pytest.mark.parametrize('scale', ['hazard', 'odds', 'normal'])
def test_score_matches_numeric_gradient(survival_df, scale):
    results = fit_flexible_spline('x1 + x2', survival_df, k=2, scale=scale)
    model = results.model
    params = np.asarray(results.params) + 0.05
    numeric = approx_fprime(params, model.loglike, centered=True)
    np.testing.assert_allclose(model.score(params), numeric, rtol=1e-4, atol=1e-4)
    assert model.score_obs(params).shape == (len(survival_df), len(params))


def test_score_with_background_hazard_and_fixed_spline(survival_df):
    bhazard = np.full(len(survival_df), 0.01)
    results = fit_flexible_spline(
        'x1', survival_df, k=2, bhazard=bhazard,
        inits={'gamma2': 0.01}, fixedpars=['gamma2'],
    )
    model = results.model
    params = np.asarray(results.params) + 0.05
    numeric = approx_fprime(params, model.loglike, centered=True)
    np.testing.assert_allclose(model.score(params), numeric, rtol=1e-4, atol=1e-4)


def test_fit_parameter_names(survival_df):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1)
    model = results.model
    assert isinstance(model, FlexibleSplineModel)
    assert list(model.exog_names) == ['gamma0', 'x1', 'x2', 'gamma1', 'gamma2']
    assert len(model.knots) == 1
    assert model.bknots[0] < model.knots[0] < model.bknots[1]
    assert np.all(np.isfinite(np.asarray(results.params)))


def test_fit_recovers_covariate_direction(large_survival_df):
    results = fit_flexible_spline('x1 + x2', large_survival_df, k=1)
    params = pd.Series(np.asarray(results.params), index=results.model.exog_names)
    # data generated with log hazard ratios 0.5 and -0.3
    assert params['x1'] > 0
    assert params['x2'] < 0


def test_fitted_survival_is_monotone(survival_df):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1)
    distr, _ = predict_flexible_spline(results, survival_df[['x1', 'x2']].head(3))
    grid = np.linspace(0.1, 30, 60)
    for d in distr:
        s = d.survival(grid)
        assert np.all((s >= 0) & (s <= 1))
        assert np.all(np.diff(s) <= 1e-12)


def test_knots_imply_k(survival_df):
    log_times = np.log(survival_df.loc[survival_df['status'] == 1, 'time'])
    knots = np.quantile(log_times, [0.3, 0.6])
    results = fit_flexible_spline('x1', survival_df, k=0, knots=knots)
    np.testing.assert_allclose(results.model.knots, knots)
    assert results.model.spline_names == ['gamma1', 'gamma2', 'gamma3']


@pytest.mark.parametrize('scale', ['odds', 'normal'])
def test_other_scales(survival_df, scale):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1, scale=scale)
    assert results.model.scale == scale
    assert np.isfinite(results.llf)


def test_identity_timescale(survival_df):
    results = fit_flexible_spline('x1', survival_df, k=1, timescale='identity')
    assert results.model.timescale == 'identity'
    assert results.model.bknots[1] == pytest.approx(
        survival_df.loc[survival_df['status'] == 1, 'time'].max()
    )


def test_fixed_parameters_are_held(survival_df):
    results = fit_flexible_spline(
        'x1 + x2', survival_df, k=1,
        inits={'gamma1': 1.5}, fixedpars=['gamma1'],
    )
    model = results.model
    assert 'gamma1' not in model.exog_names
    _, gamma = model.split_params(results.params)
    assert gamma[0] == 1.5

    table = coefficient_table(results)
    assert table.loc['gamma1', 'coef'] == 1.5
    assert np.isnan(table.loc['gamma1', 'std err'])


def test_only_spline_parameters_can_be_fixed(survival_df):
    with pytest.raises(ValueError, match='Only spline parameters'):
        fit_flexible_spline('x1', survival_df, fixedpars=['x1'])


def test_inits_validation(survival_df):
    with pytest.raises(ValueError, match='Unknown parameters'):
        fit_flexible_spline('x1', survival_df, inits={'beta': 0.0})
    with pytest.raises(ValueError, match='inits must have 3 values'):
        fit_flexible_spline('x1', survival_df, k=0, inits=[0.0, 1.0])


def test_inits_as_full_vector(survival_df):
    results = fit_flexible_spline(
        'x1', survival_df, k=0, inits=[-3.0, 0.0, 1.5]
    )
    assert np.isfinite(results.llf)


def test_weights_must_match_rows(survival_df):
    with pytest.raises(ValueError, match='weights must have one value per row'):
        fit_flexible_spline('x1', survival_df, weights=np.ones(3))


def test_weights_change_the_fit(survival_df):
    unweighted = fit_flexible_spline('x1', survival_df, k=1)
    w = np.where(survival_df['x1'] > 0, 5.0, 1.0)
    weighted = fit_flexible_spline('x1', survival_df, k=1, weights=w)
    assert not np.allclose(np.asarray(unweighted.params), np.asarray(weighted.params))


def test_background_hazard(survival_df):
    bhazard = np.full(len(survival_df), 0.001)
    results = fit_flexible_spline('x1', survival_df, k=1, bhazard=bhazard)
    assert np.isfinite(results.llf)


def test_invalid_options(survival_df):
    with pytest.raises(ValueError, match='Unknown scale'):
        fit_flexible_spline('x1', survival_df, scale='weibull')
    with pytest.raises(ValueError, match='Unknown timescale'):
        fit_flexible_spline('x1', survival_df, timescale='sqrt')
    with pytest.raises(ValueError, match='cl must lie'):
        fit_flexible_spline('x1', survival_df, cl=1.5)


def test_non_positive_times_on_log_scale(survival_df):
    df = survival_df.copy()
    df.loc[0, 'time'] = 0.0
    with pytest.raises(ValueError, match='positive'):
        fit_flexible_spline('x1', df)


def test_rows_with_missing_covariates_are_dropped(survival_df):
    df = survival_df.copy()
    df.loc[[3, 7], 'x1'] = np.nan
    results = fit_flexible_spline('x1 + x2', df, k=1)
    assert results.model.endog.shape[0] == len(df) - 2


def test_categorical_and_logical_covariates(survival_df):
    df = survival_df.copy()
    df['arm'] = np.where(np.arange(len(df)) % 3 == 0, 'treated', 'control')
    df['flag'] = df['x2'] > 0
    results = fit_flexible_spline('x1 + arm + flag', df, k=1)
    assert results.model.levels == {'arm': ['control', 'treated']}

    distr, lp = predict_flexible_spline(results, df[['x1', 'arm', 'flag']].tail(4))
    assert len(distr) == len(lp) == 4


def test_model_frame_rejects_unseen_levels():
    df = pd.DataFrame({'arm': ['a', 'z']})
    with pytest.raises(ValueError, match='not seen during training'):
        model_frame(df, levels={'arm': ['a', 'b']})


def test_coefficient_table(survival_df):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1, cl=0.9)
    table = coefficient_table(results)
    assert list(table.index) == ['gamma0', 'x1', 'x2', 'gamma1', 'gamma2']
    assert list(table.columns) == ['coef', 'std err', 'z', 'P>|z|', 'lower 90%', 'upper 90%']
    assert np.all(table['lower 90%'] <= table['coef'])
    assert np.all(table['coef'] <= table['upper 90%'])


def test_linear_predictor_includes_intercept(survival_df):
    results = fit_flexible_spline('x1 + x2', survival_df, k=1)
    params = pd.Series(np.asarray(results.params), index=results.model.exog_names)
    new = pd.DataFrame({'x1': [0.0, 1.0], 'x2': [0.0, 0.0]})
    _, lp = predict_flexible_spline(results, new)
    assert lp[0] == pytest.approx(params['gamma0'])
    assert lp[1] - lp[0] == pytest.approx(params['x1'])
