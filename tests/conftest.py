"""
Shared fixtures: small synthetic right-censored datasets.
"""

import matplotlib

matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

from flexible_survival import TaskSurv


RANDOM_SEED = 42


def make_survival_data(n: int = 50, seed: int = RANDOM_SEED) -> pd.DataFrame:
    """Weibull event times (shape 1.5) with uniform censoring and two numeric features."""
    rng = np.random.default_rng(seed)
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    lp = 0.5 * x1 - 0.3 * x2

    u = rng.uniform(size=n)
    event_time = 10 * (-np.log(u) / np.exp(lp)) ** (1 / 1.5)
    censor_time = rng.uniform(5, 30, size=n)

    return pd.DataFrame({
        'time': np.minimum(event_time, censor_time),
        'status': (event_time <= censor_time).astype(int),
        'x1': x1,
        'x2': x2,
    })


@pytest.fixture
def survival_df() -> pd.DataFrame:
    return make_survival_data()


@pytest.fixture
def task(survival_df) -> TaskSurv:
    return TaskSurv('synthetic', survival_df)


@pytest.fixture
def weighted_task(survival_df) -> TaskSurv:
    df = survival_df.copy()
    df['w'] = np.where(np.arange(len(df)) % 2 == 0, 1.0, 2.0)
    return TaskSurv('synthetic_weighted', df, weights='w')


@pytest.fixture
def large_survival_df() -> pd.DataFrame:
    return make_survival_data(n=300, seed=7)
