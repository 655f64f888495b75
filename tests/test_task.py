"""Tests for survival tasks."""

import numpy as np
import pandas as pd
import pytest

from flexible_survival import TaskSurv


@pytest.fixture
def mixed_df() -> pd.DataFrame:
    return pd.DataFrame({
        'time': [5.0, 3.0, 8.0, 1.0],
        'status': [1, 0, 1, 1],
        'flag': [True, False, True, False],
        'count': [1, 2, 3, 4],
        'group': pd.Categorical(['a', 'b', 'a', 'c']),
        'dose': [0.5, np.nan, 1.5, 2.0],
    }, index=[10, 11, 12, 13])


def test_feature_roles(mixed_df):
    task = TaskSurv('mixed', mixed_df)
    assert task.feature_names == ['flag', 'count', 'group', 'dose']
    assert task.target_names == ['time', 'status']
    assert task.has_target
    assert task.nrow == 4
    assert task.properties == set()
    assert task.weights is None


def test_feature_types(mixed_df):
    task = TaskSurv('mixed', mixed_df)
    assert task.feature_types == {
        'flag': 'logical',
        'count': 'integer',
        'group': 'factor',
        'dose': 'numeric',
    }


def test_weights_property(mixed_df):
    mixed_df['w'] = [1.0, 2.0, 1.0, 0.5]
    task = TaskSurv('weighted', mixed_df, weights='w')
    assert 'weights' in task.properties
    assert 'w' not in task.feature_names
    np.testing.assert_array_equal(task.weights.to_numpy(), [1.0, 2.0, 1.0, 0.5])


def test_unknown_columns_rejected(mixed_df):
    with pytest.raises(KeyError):
        TaskSurv('bad', mixed_df, weights='missing')
    with pytest.raises(KeyError):
        TaskSurv('bad', mixed_df, features=['dose', 'nope'])


def test_index_is_reset(mixed_df):
    task = TaskSurv('mixed', mixed_df)
    assert list(task.data().index) == [0, 1, 2, 3]
    np.testing.assert_array_equal(task.times(), [5.0, 3.0, 8.0, 1.0])
    np.testing.assert_array_equal(task.events(), [1, 0, 1, 1])


def test_data_columns(mixed_df):
    task = TaskSurv('mixed', mixed_df)
    assert list(task.data().columns) == ['time', 'status', 'flag', 'count', 'group', 'dose']
    assert list(task.data(cols=['dose']).columns) == ['dose']


def test_formula():
    df = pd.DataFrame({'time': [1.0], 'status': [1], 'age': [50], 'tumour size': [2.0]})
    task = TaskSurv('formula', df)
    assert task.formula() == "age + Q('tumour size')"
    assert task.formula(['age']) == 'age'
    assert task.formula([]) == '1'


def test_missing_rows_are_one_based(mixed_df):
    task = TaskSurv('mixed', mixed_df)
    assert task.missing_rows() == [2]
    assert task.missing_rows(['count']) == []


def test_filter(mixed_df):
    task = TaskSurv('mixed', mixed_df).filter([1, 3])
    assert task.nrow == 2
    np.testing.assert_array_equal(task.times(), [3.0, 1.0])
    assert task.feature_names == ['flag', 'count', 'group', 'dose']


def test_prediction_task_without_target():
    task = TaskSurv('newdata', pd.DataFrame({'x1': [0.1, 0.2]}))
    assert not task.has_target
    assert task.feature_names == ['x1']
    assert list(task.data().columns) == ['x1']
