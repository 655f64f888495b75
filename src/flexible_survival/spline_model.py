"""
Maximum likelihood fitting of flexible parametric spline survival models.

The model is expressed as a statsmodels ``GenericLikelihoodModel`` so that
optimisation, standard errors, confidence intervals and
summaries come from statsmodels. Covariates enter through a patsy formula;
the formula's intercept is the spline's ``gamma0`` and the remaining spline
coefficients (``gamma1``, ``gamma2``, ...) are extra parameters.

For right-censored data with event indicator d, case weight w and an
optional background hazard b, each row contributes

    w * (d * log(h(t) + b) - H(t))

to the log-likelihood. The score is computed analytically and the Hessian
by central differences of the score.

Fitting runs in two stages, as in the usual flexible parametric workflow:
the model without internal knots is fitted first under ``SolverControl``
and supplies the starting values of the full spline model.
"""

import logging
import warnings
import pandas as pd
import numpy as np
import patsy
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union
from statsmodels.base.model import GenericLikelihoodModel
from statsmodels.tools.numdiff import approx_fprime
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .spline import (
    SCALES,
    TIMESCALES,
    cumulative_hazard,
    d_log_dH_ds,
    default_knots,
    log_dH_ds,
    log_dx_dt,
    spline_design,
    transform_time,
)


logger = logging.getLogger(__name__)

_TINY = np.finfo(float).tiny
_EPS = np.finfo(float).eps


class SolverControl:
    """
    Settings of the starting-value fit.

    The starting values come from the same model without internal knots
    (Weibull, log-logistic or log-normal on the log timescale). These
    settings govern that fit only; the full spline model is then fitted
    with the optimiser's own defaults.

    Parameters
    ----------
    maxiter : int
        Maximum number of L-BFGS iterations
    rel_tolerance : float
        Relative change in the log-likelihood at which L-BFGS stops
    toler_chol : float
        Tolerance for detecting singularity in the information matrix
    debug : int
        1 to print optimiser progress
    outer_max : int
        Maximum number of outer iterations
    """

    def __init__(
        self,
        maxiter: int = 30,
        rel_tolerance: float = 1e-9,
        toler_chol: float = 1e-10,
        debug: int = 0,
        outer_max: int = 10,
    ):
        self.maxiter = maxiter
        self.rel_tolerance = rel_tolerance
        self.toler_chol = toler_chol
        self.debug = debug
        self.outer_max = outer_max

    def fit_kwargs(self) -> Dict[str, object]:
        """Keyword arguments for ``GenericLikelihoodModel.fit(method='lbfgs')``."""
        # L-BFGS-B stops when the relative reduction of the objective is
        # below factr * machine epsilon
        return {
            'maxiter': self.maxiter,
            'factr': self.rel_tolerance / _EPS,
            'disp': bool(self.debug),
        }

    def __repr__(self) -> str:
        return (f"SolverControl(maxiter={self.maxiter}, rel_tolerance={self.rel_tolerance}, "
                f"toler_chol={self.toler_chol}, debug={self.debug}, outer_max={self.outer_max})")


def solver_control(
    maxiter: int = 30,
    rel_tolerance: float = 1e-9,
    toler_chol: float = 1e-10,
    debug: int = 0,
    outer_max: int = 10,
) -> SolverControl:
    """Build a ``SolverControl`` after checking its values."""
    if maxiter < 0:
        raise ValueError(f"maxiter must be non-negative, got {maxiter}")
    if rel_tolerance <= 0:
        raise ValueError(f"rel_tolerance must be positive, got {rel_tolerance}")
    if toler_chol <= 0:
        raise ValueError(f"toler_chol must be positive, got {toler_chol}")
    if outer_max < 0:
        raise ValueError(f"outer_max must be non-negative, got {outer_max}")
    return SolverControl(maxiter, rel_tolerance, toler_chol, debug, outer_max)


def model_frame(
    data: pd.DataFrame,
    levels: Optional[Mapping[str, List]] = None,
) -> Tuple[pd.DataFrame, Dict[str, List]]:
    """
    Prepare covariates for patsy.

    Logical columns become 0/1 integers and every other non-numeric column
    becomes a pandas Categorical. When ``levels`` from a previous call are
    given, categorical columns are encoded with exactly those levels so the
    design built at training time can be replayed.

    Returns
    -------
    Tuple[pd.DataFrame, Dict[str, List]]
        (prepared frame, levels of each categorical column)
    """
    frame = data.copy()
    found = {}

    for col in frame.columns:
        series = frame[col]
        if pd.api.types.is_bool_dtype(series):
            frame[col] = series.astype(int)
        elif not pd.api.types.is_numeric_dtype(series):
            if levels is not None and col in levels:
                categories = list(levels[col])
                unseen = set(series.dropna().unique()) - set(categories)
                if unseen:
                    raise ValueError(
                        f"Column {col} has levels not seen during training: {sorted(map(str, unseen))}"
                    )
            elif isinstance(series.dtype, pd.CategoricalDtype):
                categories = list(series.cat.categories)
            else:
                categories = sorted(series.dropna().unique())
            frame[col] = pd.Categorical(series, categories=categories)
            found[col] = categories

    return frame, found


class FlexibleSplineModel(GenericLikelihoodModel):
    """
    Royston-Parmar spline model for right-censored data.

    Parameters
    ----------
    endog : array-like
        Observed times
    exog : pd.DataFrame
        Covariate design with the intercept column ``gamma0``
    event : array-like
        Event indicator (1 = event, 0 = censored)
    knots : array-like
        Internal knots on the spline axis
    bknots : array-like
        Boundary knots on the spline axis
    scale : str
        'hazard', 'odds' or 'normal'
    timescale : str
        'log' or 'identity'
    weights : array-like, optional
        Case weights
    bhazard : array-like, optional
        Background hazard added to the model hazard at event times
    fixed_params : Dict[str, float], optional
        Spline coefficients held at a fixed value
    """

    def __init__(
        self,
        endog,
        exog,
        event,
        knots,
        bknots,
        scale: str = 'hazard',
        timescale: str = 'log',
        weights=None,
        bhazard=None,
        fixed_params: Optional[Dict[str, float]] = None,
        **kwds,
    ):
        self.event = np.asarray(event, dtype=float)
        self.knots = np.atleast_1d(np.asarray(knots, dtype=float))
        self.bknots = np.asarray(bknots, dtype=float)
        self.scale = scale
        self.timescale = timescale
        self.case_weights = (
            np.ones_like(self.event) if weights is None else np.asarray(weights, dtype=float)
        )
        self.bhazard = None if bhazard is None else np.asarray(bhazard, dtype=float)
        self.spline_names = [f"gamma{i}" for i in range(1, len(self.knots) + 2)]
        self.fixed_params = dict(fixed_params or {})
        self.free_spline_names = [n for n in self.spline_names if n not in self.fixed_params]
        self._free_index = [self.spline_names.index(n) for n in self.free_spline_names]

        super().__init__(endog, exog, extra_params_names=self.free_spline_names, **kwds)

        t = np.asarray(self.endog, dtype=float)
        self._spline_values, self._spline_derivatives = spline_design(
            transform_time(t, timescale), self.knots, self.bknots
        )
        self._log_dx_dt = log_dx_dt(t, timescale)

    def split_params(self, params) -> Tuple[np.ndarray, np.ndarray]:
        """
        Split a free parameter vector into covariate and spline coefficients.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            (coefficients of the exog columns, all spline shape coefficients
            gamma1, gamma2, ... including fixed ones)
        """
        params = np.asarray(params, dtype=float)
        n_exog = self.exog.shape[1]
        free = dict(zip(self.free_spline_names, params[n_exog:]))
        gamma = np.array([
            free[name] if name in free else self.fixed_params[name]
            for name in self.spline_names
        ])
        return params[:n_exog], gamma

    def loglikeobs(self, params):
        beta, gamma = self.split_params(params)
        s = self.exog @ beta + self._spline_values @ gamma
        ds_dx = self._spline_derivatives @ gamma

        log_h = log_dH_ds(s, self.scale) + np.log(np.maximum(ds_dx, _TINY)) + self._log_dx_dt
        if self.bhazard is not None:
            log_h = np.log(np.exp(log_h) + self.bhazard)

        ll = np.where(self.event > 0, log_h, 0.0) - cumulative_hazard(s, self.scale)
        return self.case_weights * ll

    def score_obs(self, params):
        """Analytic gradient of ``loglikeobs``, one row per observation."""
        beta, gamma = self.split_params(params)
        s = self.exog @ beta + self._spline_values @ gamma
        ds_dx = self._spline_derivatives @ gamma
        is_event = self.event > 0

        # share of the total hazard coming from the model
        share = np.ones_like(s)
        if self.bhazard is not None:
            log_h = log_dH_ds(s, self.scale) + np.log(np.maximum(ds_dx, _TINY)) + self._log_dx_dt
            h = np.exp(log_h)
            share = h / (h + self.bhazard)

        ll_s = np.where(is_event, share * d_log_dH_ds(s, self.scale), 0.0) - np.exp(log_dH_ds(s, self.scale))
        ll_ds = np.where(is_event & (ds_dx > _TINY), share / np.maximum(ds_dx, _TINY), 0.0)

        grad_beta = ll_s[:, None] * self.exog
        grad_gamma = ll_s[:, None] * self._spline_values + ll_ds[:, None] * self._spline_derivatives
        grad = np.column_stack([grad_beta, grad_gamma[:, self._free_index]])
        return self.case_weights[:, None] * grad

    def score(self, params):
        return self.score_obs(params).sum(0)

    def hessian(self, params):
        """Central differences of the analytic score."""
        hess = approx_fprime(np.asarray(params, dtype=float), self.score, centered=True)
        return (hess + hess.T) / 2


def _initial_values(
    design: pd.DataFrame,
    times: np.ndarray,
    events: np.ndarray,
    weights: Optional[np.ndarray],
    timescale: str,
    spline_names: List[str],
) -> pd.Series:
    # Exponential fit: log H(t) = log(rate) + log(t)
    w = np.ones_like(times) if weights is None else weights
    start = pd.Series(0.0, index=list(design.columns) + spline_names)
    if timescale == 'log':
        rate = np.sum(w * events) / np.sum(w * times)
        start['gamma0'] = np.log(max(rate, 1e-10))
        start['gamma1'] = 1.0
    else:
        start['gamma0'] = np.log(max(np.average(events, weights=w), 1e-10)) - 1.0
        start['gamma1'] = 1.0 / np.average(times, weights=w)
    return start


def _starting_fit(
    endog: pd.Series,
    design: pd.DataFrame,
    events: np.ndarray,
    bknots: np.ndarray,
    scale: str,
    timescale: str,
    weights: Optional[np.ndarray],
    bhazard: Optional[np.ndarray],
    control: SolverControl,
    spline_names: List[str],
) -> pd.Series:
    """
    Starting values from the model without internal knots.

    Covariate effects, ``gamma0`` and ``gamma1`` come from that fit and the
    remaining spline coefficients start at zero. Falls back to the
    exponential starting values when the fit gives non-finite estimates.
    """
    times = np.asarray(endog, dtype=float)
    start = _initial_values(design, times, events, weights, timescale, spline_names)

    model = FlexibleSplineModel(
        endog, design, events, [], bknots,
        scale=scale, timescale=timescale, weights=weights, bhazard=bhazard,
    )
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', ConvergenceWarning)
        results = model.fit(
            start_params=start[model.exog_names].to_numpy(),
            method='lbfgs',
            skip_hessian=True,
            **control.fit_kwargs(),
        )

    params = np.asarray(results.params, dtype=float)
    if not np.all(np.isfinite(params)):
        logger.warning("Starting-value fit gave non-finite estimates, using exponential starting values")
        return start
    if not results.mle_retvals['converged']:
        logger.debug(f"Starting-value fit stopped after {control.maxiter} iterations")

    start[model.exog_names] = params
    return start


def _apply_inits(start: pd.Series, inits) -> pd.Series:
    if inits is None:
        return start
    start = start.copy()
    if isinstance(inits, Mapping):
        unknown = [name for name in inits if name not in start.index]
        if unknown:
            raise ValueError(f"Unknown parameters in inits: {unknown}")
        for name, value in inits.items():
            start[name] = float(value)
    else:
        values = np.asarray(inits, dtype=float).ravel()
        if values.size != start.size:
            raise ValueError(
                f"inits must have {start.size} values ({list(start.index)}), got {values.size}"
            )
        start[:] = values
    return start


def _fixed_params(
    start: pd.Series,
    fixedpars: Union[None, bool, str, Sequence[str]],
    spline_names: List[str],
) -> Dict[str, float]:
    if fixedpars is None or fixedpars is False:
        return {}
    if fixedpars is True:
        names = list(spline_names)
    elif isinstance(fixedpars, str):
        names = [fixedpars]
    else:
        names = list(fixedpars)

    unknown = [name for name in names if name not in spline_names]
    if unknown:
        raise ValueError(
            f"Only spline parameters {spline_names} can be fixed, got {unknown}"
        )
    return {name: float(start[name]) for name in names}


def fit_flexible_spline(
    formula: str,
    data: pd.DataFrame,
    duration_col: str = 'time',
    event_col: str = 'status',
    weights: Optional[Sequence[float]] = None,
    bhazard: Optional[Sequence[float]] = None,
    k: int = 0,
    knots: Optional[Sequence[float]] = None,
    bknots: Optional[Sequence[float]] = None,
    scale: str = 'hazard',
    timescale: str = 'log',
    inits: Union[None, Mapping[str, float], Sequence[float]] = None,
    fixedpars: Union[None, bool, str, Sequence[str]] = None,
    cl: float = 0.95,
    sr_control: Optional[SolverControl] = None,
):
    """
    Fit a flexible parametric spline survival model.

    Parameters
    ----------
    formula : str
        patsy right-hand side over the covariates, e.g. ``"age + C(stage)"``
    data : pd.DataFrame
        Covariates plus duration and event columns
    duration_col : str
        Column with observed times
    event_col : str
        Column with event indicator
    weights : array-like, optional
        Case weights, one per row of ``data``
    bhazard : array-like, optional
        Background hazard at each row's observed time (relative survival)
    k : int
        Number of internal knots; ignored when ``knots`` is given
    knots : array-like, optional
        Internal knots on the spline axis (log time for ``timescale='log'``)
    bknots : array-like, optional
        Boundary knots on the spline axis
    scale : str
        'hazard', 'odds' or 'normal'
    timescale : str
        'log' or 'identity'
    inits : mapping or array-like, optional
        Starting values by parameter name, or a full vector in parameter order
        (design columns, then gamma1, gamma2, ...)
    fixedpars : bool, str or list of str, optional
        Spline parameters held at their starting value; True fixes all
    cl : float
        Confidence level for intervals reported by the fitted model
    sr_control : SolverControl, optional
        Settings of the starting-value fit (default: ``solver_control()``)

    Returns
    -------
    GenericLikelihoodModelResults
        statsmodels results; ``results.model`` is the ``FlexibleSplineModel``
        with knots, design and level information needed for prediction
    """
    if scale not in SCALES:
        raise ValueError(f"Unknown scale: {scale}. Expected one of {SCALES}")
    if timescale not in TIMESCALES:
        raise ValueError(f"Unknown timescale: {timescale}. Expected one of {TIMESCALES}")
    if not 0 <= cl <= 1:
        raise ValueError(f"cl must lie in [0, 1], got {cl}")

    data = data.reset_index(drop=True)
    covariates = data.drop(columns=[duration_col, event_col])
    frame, levels = model_frame(covariates)

    design = patsy.dmatrix(formula, frame, NA_action='drop', return_type='dataframe')
    design_info = design.design_info
    design = design.rename(columns={'Intercept': 'gamma0'})
    if 'gamma0' not in design.columns:
        raise ValueError("The formula must keep the intercept, which is the spline's gamma0")

    rows = design.index.to_numpy()
    if len(rows) < len(data):
        logger.warning(f"Dropped {len(data) - len(rows)} rows with missing covariates")

    times = data[duration_col].to_numpy(dtype=float)[rows]
    events = data[event_col].to_numpy(dtype=float)[rows]

    def _per_row(values, name):
        if values is None:
            return None
        values = np.asarray(values, dtype=float).ravel()
        if values.size != len(data):
            raise ValueError(f"{name} must have one value per row ({len(data)}), got {values.size}")
        return values[rows]

    w = _per_row(weights, 'weights')
    b = _per_row(bhazard, 'bhazard')

    if timescale == 'log' and np.any(times <= 0):
        raise ValueError("Observed times must be positive on the log timescale")

    if knots is not None:
        k = np.atleast_1d(knots).size
    knots_, bknots_ = default_knots(times, events, k, timescale, knots=knots, bknots=bknots)
    spline_names = [f"gamma{i}" for i in range(1, len(knots_) + 2)]

    endog = pd.Series(times, index=design.index, name=duration_col)
    control = sr_control if sr_control is not None else solver_control()
    logger.info(
        f"Fitting spline model: {len(times):,} rows, {int(events.sum()):,} events, "
        f"{len(knots_)} internal knots, scale={scale}, timescale={timescale}"
    )
    logger.debug(f"Knots {knots_}, boundary knots {bknots_}, {control}")

    # a full vector of inits replaces every starting value
    if inits is not None and not isinstance(inits, Mapping):
        start = _initial_values(design, times, events, w, timescale, spline_names)
    else:
        start = _starting_fit(endog, design, events, bknots_, scale, timescale, w, b, control, spline_names)
    start = _apply_inits(start, inits)
    fixed = _fixed_params(start, fixedpars, spline_names)

    model = FlexibleSplineModel(
        endog,
        design,
        events,
        knots_,
        bknots_,
        scale=scale,
        timescale=timescale,
        weights=w,
        bhazard=b,
        fixed_params=fixed,
    )
    model.formula = formula
    model.design_info = design_info
    model.levels = levels
    model.cl = cl

    results = model.fit(
        start_params=start.drop(list(fixed)).to_numpy(),
        method='lbfgs',
        disp=bool(control.debug),
    )
    if not results.mle_retvals['converged']:
        logger.warning(f"Spline model did not converge: {results.mle_retvals.get('warnflag')}")
    logger.info(f"Log-likelihood at optimum: {results.llf:.4f}")
    return results


def coefficient_table(results, cl: Optional[float] = None) -> pd.DataFrame:
    """
    Coefficient summary of a fitted spline model.

    Fixed spline parameters are listed with their value and no standard error.
    """
    model = results.model
    if cl is None:
        cl = model.cl
    names = list(model.exog_names)
    ci = np.asarray(results.conf_int(alpha=1 - cl))
    table = pd.DataFrame({
        'coef': np.asarray(results.params, dtype=float),
        'std err': np.asarray(results.bse, dtype=float),
        'z': np.asarray(results.tvalues, dtype=float),
        'P>|z|': np.asarray(results.pvalues, dtype=float),
        f'lower {cl:.0%}': ci[:, 0],
        f'upper {cl:.0%}': ci[:, 1],
    }, index=names)

    if model.fixed_params:
        fixed = pd.DataFrame(
            {'coef': list(model.fixed_params.values())},
            index=list(model.fixed_params),
        ).reindex(columns=table.columns)
        table = pd.concat([table, fixed])
    return table
