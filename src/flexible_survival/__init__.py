"""
Flexible Parametric Survival Learner.

Royston-Parmar spline models for right-censored survival data, exposed
through a train/predict learner contract (``surv.flexible``).

Modules:
--------
params : Typed, tagged parameter sets validated at set time
task : Right-censored survival tasks over pandas DataFrames
spline : Restricted cubic spline basis and link scales
spline_model : Likelihood model and fitting routine (statsmodels)
distribution : Per-row predicted survival distributions
prediction : Prediction container, scoring and plotting
evaluation : Concordance, Brier score and survival curve plots
learner : Learner contract and the flexible spline learner
"""

from .params import (
    ParamSet,
    ParamInt,
    ParamDbl,
    ParamFct,
    ParamUty,
    ParamError,
)

from .task import TaskSurv

from .spline_model import (
    FlexibleSplineModel,
    SolverControl,
    solver_control,
    fit_flexible_spline,
    coefficient_table,
)

from .distribution import (
    SplineSurvivalDistribution,
    predict_flexible_spline,
)

from .prediction import (
    PredictionSurv,
    PredictionRecord,
)

from .evaluation import (
    concordance_index,
    brier_score_at_time,
    plot_survival_curves,
)

from .learner import (
    LearnerSurv,
    LearnerSurvFlexible,
    LearnerError,
    MissingDataError,
    NotTrainedError,
)

__all__ = [
    # Parameters
    'ParamSet',
    'ParamInt',
    'ParamDbl',
    'ParamFct',
    'ParamUty',
    'ParamError',
    # Tasks
    'TaskSurv',
    # Fitting
    'FlexibleSplineModel',
    'SolverControl',
    'solver_control',
    'fit_flexible_spline',
    'coefficient_table',
    # Prediction
    'SplineSurvivalDistribution',
    'predict_flexible_spline',
    'PredictionSurv',
    'PredictionRecord',
    # Evaluation
    'concordance_index',
    'brier_score_at_time',
    'plot_survival_curves',
    # Learners
    'LearnerSurv',
    'LearnerSurvFlexible',
    'LearnerError',
    'MissingDataError',
    'NotTrainedError',
]

__version__ = '0.1.0'
