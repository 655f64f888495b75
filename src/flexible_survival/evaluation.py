"""
Evaluation metrics and plots for survival predictions.

- Harrell's concordance index for ranking scores
- Brier score at a fixed horizon with inverse probability of censoring
  weights (Graf et al., 1999)

Both metrics come from scikit-survival.
"""

import pandas as pd
import numpy as np
from typing import List, Optional, Tuple
import matplotlib.pyplot as plt
from sksurv.metrics import brier_score, concordance_index_censored
from sksurv.util import Surv


def concordance_index(
    times: np.ndarray,
    events: np.ndarray,
    risk_scores: np.ndarray,
) -> float:
    """
    Harrell's concordance index.

    Uses scikit-survival's implementation; tied risk scores count one half.

    Parameters
    ----------
    times : np.ndarray
        Observed times
    events : np.ndarray
        Event indicator (1 = event, 0 = censored)
    risk_scores : np.ndarray
        Predicted risk scores (higher = more risk)

    Returns
    -------
    float
        Concordance index, NaN when every observation is censored
    """
    event_indicator = np.asarray(events) > 0
    if not event_indicator.any():
        return np.nan

    c_index, _, _, _, _ = concordance_index_censored(
        event_indicator,
        np.asarray(times, dtype=float),
        np.asarray(risk_scores, dtype=float),
    )
    return float(c_index)


def brier_score_at_time(
    times: np.ndarray,
    events: np.ndarray,
    survival_at_t: np.ndarray,
    eval_time: float,
    train_times: Optional[np.ndarray] = None,
    train_events: Optional[np.ndarray] = None,
) -> float:
    """
    IPCW Brier score at ``eval_time``.

    The censoring distribution is estimated by Kaplan-Meier on the training
    outcomes, or on the evaluated outcomes when none are given.

    Parameters
    ----------
    times : np.ndarray
        Observed times
    events : np.ndarray
        Event indicator (1 = event, 0 = censored)
    survival_at_t : np.ndarray
        Predicted survival probability at ``eval_time``
    eval_time : float
        Horizon; must lie within the observed follow-up
    train_times, train_events : np.ndarray, optional
        Outcomes used to estimate the censoring distribution

    Returns
    -------
    float
        Brier score (lower is better)
    """
    y_test = Surv.from_arrays(
        event=np.asarray(events) > 0,
        time=np.asarray(times, dtype=float),
    )
    if train_times is None:
        y_train = y_test
    else:
        y_train = Surv.from_arrays(
            event=np.asarray(train_events) > 0,
            time=np.asarray(train_times, dtype=float),
        )

    # scikit-survival's brier_score expects survival probabilities
    estimate = np.asarray(survival_at_t, dtype=float).reshape(-1, 1)
    _, scores = brier_score(y_train, y_test, estimate, [eval_time])
    return float(scores[0])


def plot_survival_curves(
    curves: pd.DataFrame,
    title: str = 'Predicted Survival',
    xlabel: str = 'Time',
    ylabel: str = 'Survival Probability',
    figsize: Tuple[int, int] = (10, 6),
    colors: Optional[List[str]] = None,
    ax: Optional[plt.Axes] = None,
) -> plt.Axes:
    """
    Plot survival curves, one line per column.

    Parameters
    ----------
    curves : pd.DataFrame
        Survival probabilities indexed by time
    title : str
        Plot title
    xlabel : str
        X-axis label
    ylabel : str
        Y-axis label
    figsize : Tuple[int, int]
        Figure size
    colors : List[str], optional
        Colors for each curve
    ax : plt.Axes, optional
        Existing axes to plot on

    Returns
    -------
    plt.Axes
        Plot axes
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)

    if colors is None:
        colors = plt.cm.tab10.colors

    for i, name in enumerate(curves.columns):
        ax.plot(curves.index, curves[name], label=str(name), color=colors[i % len(colors)])

    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    if len(curves.columns) <= 10:
        ax.legend()
    ax.grid(True, alpha=0.3)
    ax.set_ylim(0, 1.05)

    return ax
