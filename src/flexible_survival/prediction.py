"""
Container for survival predictions.
"""

from collections import namedtuple

import pandas as pd
import numpy as np
from typing import Iterator, List, Optional, Sequence

from .evaluation import brier_score_at_time, concordance_index, plot_survival_curves


PredictionRecord = namedtuple('PredictionRecord', ['row_id', 'distr', 'lp', 'crank'])

MEASURES = ('cindex', 'brier')


class PredictionSurv:
    """
    Predictions for the rows of a survival task.

    Parameters
    ----------
    row_ids : Sequence[int]
        1-based positions of the predicted rows in the task
    distr : List
        Predicted survival distribution per row
    lp : array-like
        Linear predictor per row
    crank : array-like, optional
        Ranking score per row (higher = more risk); defaults to ``lp``
    truth : pd.DataFrame, optional
        Observed 'time' and 'event' per row, when the task has a target
    task_id, learner_id : str, optional
        Identifiers of the task and learner that produced the predictions
    """

    def __init__(
        self,
        row_ids: Sequence[int],
        distr: List,
        lp,
        crank=None,
        truth: Optional[pd.DataFrame] = None,
        task_id: Optional[str] = None,
        learner_id: Optional[str] = None,
    ):
        self.row_ids = list(row_ids)
        self.distr = list(distr)
        self.lp = np.asarray(lp, dtype=float)
        self.crank = self.lp.copy() if crank is None else np.asarray(crank, dtype=float)
        self.truth = truth
        self.task_id = task_id
        self.learner_id = learner_id

        n = len(self.row_ids)
        if not (len(self.distr) == len(self.lp) == len(self.crank) == n):
            raise ValueError(
                f"Prediction components differ in length: row_ids={n}, distr={len(self.distr)}, "
                f"lp={len(self.lp)}, crank={len(self.crank)}"
            )
        if truth is not None and len(truth) != n:
            raise ValueError(f"truth has {len(truth)} rows, expected {n}")

    def __len__(self) -> int:
        return len(self.row_ids)

    def __iter__(self) -> Iterator[PredictionRecord]:
        for row_id, distr, lp, crank in zip(self.row_ids, self.distr, self.lp, self.crank):
            yield PredictionRecord(row_id, distr, float(lp), float(crank))

    def __getitem__(self, i: int) -> PredictionRecord:
        return PredictionRecord(self.row_ids[i], self.distr[i], float(self.lp[i]), float(self.crank[i]))

    def survival_matrix(self, times: Sequence[float]) -> pd.DataFrame:
        """Survival probabilities indexed by time, one column per row id."""
        times = np.asarray(times, dtype=float)
        return pd.DataFrame(
            {row_id: d.survival(times) for row_id, d in zip(self.row_ids, self.distr)},
            index=pd.Index(times, name='time'),
        )

    def as_data_frame(self) -> pd.DataFrame:
        df = pd.DataFrame({
            'row_id': self.row_ids,
            'crank': self.crank,
            'lp': self.lp,
            'distr': self.distr,
        })
        if self.truth is not None:
            df = pd.concat([df, self.truth.reset_index(drop=True)], axis=1)
        return df

    def score(self, measure: str = 'cindex', eval_time: Optional[float] = None) -> float:
        """
        Score the predictions against the observed outcome.

        Parameters
        ----------
        measure : str
            'cindex' (Harrell's C of ``crank``) or 'brier' (IPCW Brier score at
            ``eval_time``, censoring estimated from the observed outcomes)
        eval_time : float, optional
            Horizon for the Brier score

        Returns
        -------
        float
        """
        if self.truth is None:
            raise ValueError("Cannot score predictions without observed outcomes")
        if measure not in MEASURES:
            raise ValueError(f"Unknown measure: {measure}. Expected one of {MEASURES}")

        times = self.truth['time'].to_numpy(dtype=float)
        events = self.truth['event'].to_numpy(dtype=float)

        if measure == 'cindex':
            return concordance_index(times, events, self.crank)

        if eval_time is None:
            raise ValueError("The Brier score needs an eval_time")
        survival_at_t = np.array([float(d.survival(eval_time)) for d in self.distr])
        return brier_score_at_time(times, events, survival_at_t, eval_time)

    def plot_survival(self, times: Sequence[float], rows: Optional[Sequence[int]] = None, ax=None, **kwargs):
        """Plot predicted survival curves for the given row ids (default: all)."""
        curves = self.survival_matrix(times)
        if rows is not None:
            curves = curves[list(rows)]
        return plot_survival_curves(curves, ax=ax, **kwargs)

    def __repr__(self) -> str:
        return (f"PredictionSurv(task={self.task_id!r}, learner={self.learner_id!r}, "
                f"n={len(self)})")
