"""
Right-censored survival tasks.

A task bundles a DataFrame with the roles of its columns: the observed
time, the event indicator, optional case weights and the features. Rows
are addressed by position; positions reported to users are 1-based.
"""

import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Sequence


FEATURE_TYPES = ('logical', 'integer', 'factor', 'numeric')


def _feature_type(series: pd.Series) -> str:
    if pd.api.types.is_bool_dtype(series):
        return 'logical'
    if pd.api.types.is_integer_dtype(series):
        return 'integer'
    if pd.api.types.is_numeric_dtype(series):
        return 'numeric'
    return 'factor'


def _formula_term(name: str) -> str:
    if name.isidentifier():
        return name
    return f"Q({name!r})"


class TaskSurv:
    """
    Survival task over a pandas DataFrame.

    Parameters
    ----------
    id : str
        Task identifier, used in error messages
    backend : pd.DataFrame
        Data with one row per subject
    time : str
        Column with observed (event or censoring) time
    event : str
        Column with the event indicator (1 = event, 0 = censored)
    weights : str, optional
        Column with case weights
    features : List[str], optional
        Feature columns (default: every other column)

    Notes
    -----
    The target columns may be absent, which is the case for data that is
    only used for prediction.
    """

    def __init__(
        self,
        id: str,
        backend: pd.DataFrame,
        time: str = 'time',
        event: str = 'status',
        weights: Optional[str] = None,
        features: Optional[List[str]] = None,
    ):
        self.id = id
        self.backend = backend.reset_index(drop=True)
        self.time_col = time
        self.event_col = event
        self.weights_col = weights

        if weights is not None and weights not in self.backend.columns:
            raise KeyError(f"Weights column not found in task {id}: {weights}")

        reserved = {time, event, weights}
        if features is None:
            features = [c for c in self.backend.columns if c not in reserved]
        else:
            missing = [c for c in features if c not in self.backend.columns]
            if missing:
                raise KeyError(f"Feature columns not found in task {id}: {missing}")
        self.feature_names: List[str] = list(features)

    @property
    def target_names(self) -> List[str]:
        return [self.time_col, self.event_col]

    @property
    def has_target(self) -> bool:
        return all(c in self.backend.columns for c in self.target_names)

    @property
    def nrow(self) -> int:
        return len(self.backend)

    @property
    def properties(self) -> set:
        return {'weights'} if self.weights_col is not None else set()

    @property
    def feature_types(self) -> Dict[str, str]:
        return {c: _feature_type(self.backend[c]) for c in self.feature_names}

    @property
    def weights(self) -> Optional[pd.Series]:
        if self.weights_col is None:
            return None
        return self.backend[self.weights_col].astype(float)

    def data(self, cols: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """Copy of the requested columns (default: targets, weights and features)."""
        if cols is None:
            cols = [c for c in self.target_names if c in self.backend.columns]
            if self.weights_col is not None:
                cols.append(self.weights_col)
            cols += self.feature_names
        return self.backend[list(cols)].copy()

    def times(self) -> np.ndarray:
        return self.backend[self.time_col].to_numpy(dtype=float)

    def events(self) -> np.ndarray:
        return self.backend[self.event_col].to_numpy(dtype=float)

    def formula(self, rhs: Optional[Sequence[str]] = None) -> str:
        """
        Right-hand side of a model formula over the given feature names.

        Names that are not valid identifiers are quoted with ``Q()``.
        An empty feature list yields the intercept-only formula ``"1"``.
        """
        if rhs is None:
            rhs = self.feature_names
        terms = [_formula_term(name) for name in rhs]
        return ' + '.join(terms) if terms else '1'

    def missing_rows(self, cols: Optional[Sequence[str]] = None) -> List[int]:
        """1-based positions of rows with a missing value in ``cols``."""
        if cols is None:
            cols = self.feature_names
        mask = self.backend[list(cols)].isna().any(axis=1).to_numpy()
        return (np.flatnonzero(mask) + 1).tolist()

    def filter(self, rows: Sequence[int]) -> 'TaskSurv':
        """New task restricted to the given 0-based row positions."""
        return TaskSurv(
            self.id,
            self.backend.iloc[list(rows)],
            time=self.time_col,
            event=self.event_col,
            weights=self.weights_col,
            features=self.feature_names,
        )

    def __repr__(self) -> str:
        return (f"TaskSurv(id={self.id!r}, nrow={self.nrow}, "
                f"features={self.feature_names})")
