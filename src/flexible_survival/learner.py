"""
Survival learners.

``LearnerSurv`` is the train/predict contract; ``LearnerSurvFlexible``
implements it for the Royston-Parmar flexible parametric spline model.

Custom defaults of ``surv.flexible``
------------------------------------
- ``k``: the fitting routine's default is 0, the learner sets 1. With no
  internal knots the model reduces to a Weibull (hazard scale) or
  log-logistic (odds scale) model, which simpler parametric learners fit
  more efficiently.
"""

import copy
import logging
import pandas as pd
from typing import Iterable, Optional

from .distribution import predict_flexible_spline
from .params import ParamDbl, ParamFct, ParamInt, ParamSet, ParamUty
from .prediction import PredictionSurv
from .spline_model import coefficient_table, fit_flexible_spline, solver_control
from .task import TaskSurv


logger = logging.getLogger(__name__)


class LearnerError(Exception):
    """Base class for learner failures raised by this package."""


class MissingDataError(LearnerError):
    """Raised when data passed to predict contains missing feature values."""


class NotTrainedError(LearnerError, RuntimeError):
    """Raised when predicting with a learner that has no fitted model."""


class LearnerSurv:
    """
    Base survival learner.

    Subclasses implement ``_train(task)`` returning a fitted model and
    ``_predict(task)`` returning a ``PredictionSurv``.

    Parameters
    ----------
    id : str
        Learner identifier
    param_set : ParamSet
        Options accepted by the learner
    feature_types : Iterable[str]
        Supported feature types
    predict_types : Iterable[str]
        Prediction components produced
    properties : Iterable[str]
        Capabilities, e.g. 'weights'
    packages : Iterable[str]
        Libraries the learner delegates to
    man : str, optional
        Reference to the learner's documentation
    """

    def __init__(
        self,
        id: str,
        param_set: ParamSet,
        feature_types: Iterable[str] = (),
        predict_types: Iterable[str] = ('crank',),
        properties: Iterable[str] = (),
        packages: Iterable[str] = (),
        man: Optional[str] = None,
    ):
        self.id = id
        self.param_set = param_set
        self.feature_types = tuple(feature_types)
        self.predict_types = tuple(predict_types)
        self.properties = frozenset(properties)
        self.packages = tuple(packages)
        self.man = man
        self.model = None

    def train(self, task: TaskSurv) -> 'LearnerSurv':
        """Fit the model on ``task``, replacing any previous model."""
        if not task.has_target:
            raise LearnerError(
                f"Learner {self.id} cannot train on task {task.id}: "
                f"target columns {task.target_names} not found"
            )
        logger.info(f"Training {self.id} on task {task.id} ({task.nrow:,} rows)")
        self.model = self._train(task)
        return self

    def predict(self, task: TaskSurv) -> PredictionSurv:
        """Predict every row of ``task``."""
        if self.model is None:
            raise NotTrainedError(
                f"Cannot predict, Learner '{self.id}' has not been trained yet"
            )
        logger.info(f"Predicting {self.id} on task {task.id} ({task.nrow:,} rows)")
        return self._predict(task)

    def predict_newdata(self, newdata: pd.DataFrame, task: Optional[TaskSurv] = None) -> PredictionSurv:
        """
        Predict rows of a DataFrame.

        Column roles are taken from ``task`` when given, otherwise the
        default target column names are assumed.
        """
        if task is None:
            new_task = TaskSurv('newdata', newdata)
        else:
            new_task = TaskSurv(
                task.id,
                newdata,
                time=task.time_col,
                event=task.event_col,
                features=task.feature_names,
            )
        return self.predict(new_task)

    def reset(self) -> 'LearnerSurv':
        self.model = None
        return self

    def clone(self) -> 'LearnerSurv':
        """
        Deep copy with independent options.

        The fitted model is shared with the copy: it is never modified after
        training, and patsy design information cannot be copied.
        """
        memo = {} if self.model is None else {id(self.model): self.model}
        return copy.deepcopy(self, memo)

    def _train(self, task: TaskSurv):
        raise NotImplementedError

    def _predict(self, task: TaskSurv) -> PredictionSurv:
        raise NotImplementedError

    def __repr__(self) -> str:
        state = 'trained' if self.model is not None else 'untrained'
        return f"<{type(self).__name__}:{self.id} ({state})>"


def _truth(task: TaskSurv) -> Optional[pd.DataFrame]:
    if not task.has_target:
        return None
    return pd.DataFrame({'time': task.times(), 'event': task.events()})


class LearnerSurvFlexible(LearnerSurv):
    """
    Flexible parametric spline survival learner (``surv.flexible``).

    Fits the Royston-Parmar model with ``fit_flexible_spline``. Predicted
    distributions are built from the fitted coefficients by this package
    instead of the fitting library's predict machinery.

    The spline's intercept ``gamma0`` is part of the linear predictor:
    lp = gamma0 + z'beta. The ranking score ``crank`` is ``lp``.

    References
    ----------
    Royston P, Parmar MKB (2002). "Flexible parametric proportional-hazards
    and proportional-odds models for censored survival data, with
    application to prognostic modelling and estimation of treatment
    effects." Statistics in Medicine, 21(15), 2175-2197.
    doi: 10.1002/sim.1203.
    """

    def __init__(self):
        ps = ParamSet([
            ParamUty('bhazard', tags='train'),
            ParamInt('k', default=0, lower=0, tags='train'),
            ParamUty('knots', tags='train'),
            ParamUty('bknots', tags='train'),
            ParamFct('scale', levels=['hazard', 'odds', 'normal'], default='hazard', tags='train'),
            ParamFct('timescale', levels=['log', 'identity'], default='log', tags='train'),
            ParamUty('inits', tags='train'),
            ParamUty('fixedpars', tags='train'),
            ParamDbl('cl', default=0.95, lower=0, upper=1, tags='train'),
            ParamInt('maxiter', default=30, tags=['train', 'control']),
            ParamDbl('rel.tolerance', default=1e-09, tags=['train', 'control']),
            ParamDbl('toler.chol', default=1e-10, tags=['train', 'control']),
            ParamInt('debug', default=0, lower=0, upper=1, tags=['train', 'control']),
            ParamInt('outer.max', default=10, tags=['train', 'control']),
        ])
        # k = 0 is a Weibull-type model; see the module notes
        ps.values = {'k': 1}

        super().__init__(
            id='surv.flexible',
            param_set=ps,
            feature_types=['logical', 'integer', 'factor', 'numeric'],
            predict_types=['distr', 'crank', 'lp'],
            properties=['weights'],
            packages=['statsmodels', 'patsy', 'scipy'],
            man='flexible_survival.learner.LearnerSurvFlexible',
        )

    def _train(self, task: TaskSurv):
        pars_ctrl = self.param_set.get_values(tags=['control'])
        pars_train = self.param_set.get_values(tags=['train'])
        pars_train = {k: v for k, v in pars_train.items() if k not in pars_ctrl}
        pars_train['sr_control'] = solver_control(
            **{k.replace('.', '_'): v for k, v in pars_ctrl.items()}
        )

        if 'weights' in task.properties:
            pars_train['weights'] = task.weights.to_numpy()

        logger.debug(f"{self.id} options: {pars_train}")

        return fit_flexible_spline(
            task.formula(task.feature_names),
            task.data(),
            duration_col=task.time_col,
            event_col=task.event_col,
            **pars_train,
        )

    def _predict(self, task: TaskSurv) -> PredictionSurv:
        # The custom prediction path skips generic output checks, so missing
        # values are caught here
        missing = task.missing_rows(task.feature_names)
        if missing:
            raise MissingDataError(
                f"Learner {self.id} on task {task.id} failed to predict: "
                f"Missing values in new data (line(s) {', '.join(map(str, missing))})"
            )

        distr, lp = predict_flexible_spline(self.model, task.data(cols=task.feature_names))

        return PredictionSurv(
            row_ids=range(1, task.nrow + 1),
            distr=distr,
            lp=lp,
            crank=lp,
            truth=_truth(task),
            task_id=task.id,
            learner_id=self.id,
        )

    def summary(self) -> pd.DataFrame:
        """
        Coefficient table of the fitted model.

        Returns
        -------
        pd.DataFrame
            Coefficients, standard errors, z statistics, p-values and
            confidence bounds at level ``cl``
        """
        if self.model is None:
            raise NotTrainedError(f"Learner '{self.id}' has not been trained yet")
        return coefficient_table(self.model)
