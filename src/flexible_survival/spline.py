"""
Restricted cubic spline on the log cumulative hazard scale.

Royston and Parmar (2002) model a transformation of the survival function
as a natural cubic spline in (log) time:

    g(S(t | z)) = s(x; gamma) + z'beta,    x = log(t) or t

with the link ``g`` selected by ``scale``:

- hazard : g(S) = log(-log S)        -> H = exp(s)
- odds   : g(S) = log(1/S - 1)       -> H = log(1 + exp(s))
- normal : g(S) = -Phi^{-1}(S)       -> H = -log Phi(-s)

These helpers are shared by the likelihood and by the prediction path.

References:
-----------
Royston, P. and Parmar, M.K.B. (2002). "Flexible parametric
proportional-hazards and proportional-odds models for censored survival
data, with application to prognostic modelling and estimation of
treatment effects." Statistics in Medicine, 21(15), 2175-2197.
"""

import numpy as np
from typing import Optional, Sequence, Tuple
from scipy import stats
from scipy.special import expit, logit


SCALES = ('hazard', 'odds', 'normal')
TIMESCALES = ('log', 'identity')


def transform_time(t: np.ndarray, timescale: str) -> np.ndarray:
    """Map times onto the spline axis."""
    t = np.asarray(t, dtype=float)
    if timescale == 'log':
        return np.log(t)
    if timescale == 'identity':
        return t
    raise ValueError(f"Unknown timescale: {timescale}")


def log_dx_dt(t: np.ndarray, timescale: str) -> np.ndarray:
    """Log derivative of the spline axis with respect to time."""
    t = np.asarray(t, dtype=float)
    if timescale == 'log':
        return -np.log(t)
    return np.zeros_like(t)


def _relu(x):
    return np.maximum(x, 0.0)


def basis(x: np.ndarray, knots: Sequence[float], bknots: Sequence[float]) -> np.ndarray:
    """
    Restricted cubic basis functions v_j(x), one column per internal knot.

    v_j(x) = (x - k_j)^3_+ - lam_j (x - k_min)^3_+ - (1 - lam_j) (x - k_max)^3_+
    with lam_j = (k_max - k_j) / (k_max - k_min).
    """
    x = np.asarray(x, dtype=float)
    kmin, kmax = bknots
    cols = []
    for kj in knots:
        lam = (kmax - kj) / (kmax - kmin)
        cols.append(
            _relu(x - kj) ** 3
            - lam * _relu(x - kmin) ** 3
            - (1 - lam) * _relu(x - kmax) ** 3
        )
    if not cols:
        return np.empty((x.shape[0], 0))
    return np.column_stack(cols)


def basis_derivative(x: np.ndarray, knots: Sequence[float], bknots: Sequence[float]) -> np.ndarray:
    """Derivative of ``basis`` with respect to x."""
    x = np.asarray(x, dtype=float)
    kmin, kmax = bknots
    cols = []
    for kj in knots:
        lam = (kmax - kj) / (kmax - kmin)
        cols.append(
            3 * _relu(x - kj) ** 2
            - 3 * lam * _relu(x - kmin) ** 2
            - 3 * (1 - lam) * _relu(x - kmax) ** 2
        )
    if not cols:
        return np.empty((x.shape[0], 0))
    return np.column_stack(cols)


def spline_design(
    x: np.ndarray,
    knots: Sequence[float],
    bknots: Sequence[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Design matrices for the spline shape coefficients (gamma1, gamma2, ...).

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (values, derivatives) each of shape (n, len(knots) + 1); multiplying
        by the shape coefficients gives s(x) - gamma0 and ds/dx.
    """
    x = np.asarray(x, dtype=float)
    values = np.column_stack([x, basis(x, knots, bknots)])
    derivatives = np.column_stack([np.ones_like(x), basis_derivative(x, knots, bknots)])
    return values, derivatives


def cumulative_hazard(s: np.ndarray, scale: str) -> np.ndarray:
    """Cumulative hazard implied by spline value ``s``."""
    if scale == 'hazard':
        return np.exp(s)
    if scale == 'odds':
        return np.logaddexp(0.0, s)
    if scale == 'normal':
        return -stats.norm.logcdf(-s)
    raise ValueError(f"Unknown scale: {scale}")


def log_dH_ds(s: np.ndarray, scale: str) -> np.ndarray:
    """Log derivative of the cumulative hazard with respect to ``s``."""
    if scale == 'hazard':
        return s
    if scale == 'odds':
        return -np.logaddexp(0.0, -s)
    if scale == 'normal':
        return stats.norm.logpdf(s) - stats.norm.logcdf(-s)
    raise ValueError(f"Unknown scale: {scale}")


def d_log_dH_ds(s: np.ndarray, scale: str) -> np.ndarray:
    """Derivative of ``log_dH_ds`` with respect to ``s``."""
    if scale == 'hazard':
        return np.ones_like(s)
    if scale == 'odds':
        return expit(-s)
    if scale == 'normal':
        return np.exp(log_dH_ds(s, scale)) - s
    raise ValueError(f"Unknown scale: {scale}")


def spline_at_probability(p: np.ndarray, scale: str) -> np.ndarray:
    """Spline value at which the event probability F(t) equals ``p``."""
    p = np.asarray(p, dtype=float)
    if scale == 'hazard':
        return np.log(-np.log1p(-p))
    if scale == 'odds':
        return logit(p)
    if scale == 'normal':
        return stats.norm.ppf(p)
    raise ValueError(f"Unknown scale: {scale}")


def survival_from_spline(s: np.ndarray, scale: str) -> np.ndarray:
    """Survival probability implied by spline value ``s``."""
    if scale == 'odds':
        return expit(-s)
    if scale == 'normal':
        return stats.norm.cdf(-s)
    return np.exp(-cumulative_hazard(s, scale))


def default_knots(
    times: np.ndarray,
    events: np.ndarray,
    k: int,
    timescale: str = 'log',
    knots: Optional[Sequence[float]] = None,
    bknots: Optional[Sequence[float]] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Knot locations on the spline axis.

    Boundary knots default to the extremes of the transformed uncensored
    times. Internal knots default to their quantiles at j / (k + 1),
    j = 1..k. Knots given explicitly are used as they are.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (internal knots, boundary knots)
    """
    x = transform_time(np.asarray(times)[np.asarray(events) > 0], timescale)

    if bknots is None:
        if np.unique(x).size < 2:
            raise ValueError(
                "At least two distinct uncensored times are needed to place boundary knots"
            )
        bknots = (x.min(), x.max())
    bknots = np.asarray(bknots, dtype=float)
    if bknots.shape != (2,) or not bknots[0] < bknots[1]:
        raise ValueError(f"bknots must be two increasing values, got {bknots}")

    if knots is None:
        probs = np.arange(1, k + 1) / (k + 1)
        knots = np.quantile(x, probs) if k > 0 else []
    knots = np.atleast_1d(np.asarray(knots, dtype=float))

    return knots, bknots
