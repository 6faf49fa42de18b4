"""
FILE: core/weighting_engine.py
-------------------------------
Pure logic for the Variance Weighter.

Weights for a weighted refit: regress |residual| on fitted value,
square the prediction to get a predicted variance, weight = 1 / variance.
With groups, each observation gets its group's predicted variance
(prediction at the group's mean fitted value).
"""

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression

from regression_remedy.constants.remediation import VARIANCE_FLOOR
from regression_remedy.errors import InsufficientData, UnstableWeights
from regression_remedy.schemas.recommendation import WeightingResult

logger = logging.getLogger(__name__)


def group_residual_variances(
    residuals: np.ndarray,
    groups: Sequence,
) -> dict[str, float]:
    """{group → residual variance}, groups with a single observation omitted."""
    frame = pd.DataFrame({"resid": residuals, "group": pd.Series(list(groups)).astype(str).values})
    variances = frame.groupby("group")["resid"].var(ddof=1).dropna()
    return {str(k): float(v) for k, v in variances.items()}


def compute_variance_weights(
    residuals: Sequence[float],
    fitted_values: Sequence[float],
    groups: Sequence | None = None,
    variance_floor: float = VARIANCE_FLOOR,
    clip: bool = False,
) -> WeightingResult:
    """
    Per-observation weights = 1 / predicted variance.

    Raises:
        InsufficientData: mismatched lengths or fewer than 2 observations.
        UnstableWeights:  a predicted |residual| <= 0 or predicted variance
                          <= variance_floor, unless clip=True (then the
                          variance is clipped to the floor).
    """
    resid = np.asarray(residuals, dtype=float)
    fitted = np.asarray(fitted_values, dtype=float)
    if resid.shape != fitted.shape or resid.ndim != 1:
        raise InsufficientData("residuals and fitted_values must be 1-D and the same length.")
    if len(resid) < 2:
        raise InsufficientData("At least 2 observations are needed to model |residual| ~ fitted.")

    # ── |residual| ~ fitted ──
    reg = LinearRegression().fit(fitted.reshape(-1, 1), np.abs(resid))
    slope, intercept = float(reg.coef_[0]), float(reg.intercept_)

    if groups is not None:
        labels = pd.Series(list(groups)).astype(str)
        if len(labels) != len(resid):
            raise InsufficientData("groups must have one label per residual.")
        group_means = pd.Series(fitted).groupby(labels.values).mean()
        group_sd = pd.Series(
            reg.predict(group_means.to_numpy().reshape(-1, 1)),
            index=group_means.index,
        )
        obs_sd = labels.map(group_sd).to_numpy(dtype=float)
        group_variances = group_residual_variances(resid, labels)
    else:
        group_sd = pd.Series(dtype=float)
        obs_sd = reg.predict(fitted.reshape(-1, 1))
        group_variances = {}

    predicted_var = obs_sd ** 2
    unstable = (obs_sd <= 0) | (predicted_var <= variance_floor)

    if unstable.any():
        if not clip:
            raise UnstableWeights(
                f"{int(unstable.sum())} observation(s) have predicted variance at or below "
                f"{variance_floor:g} — weights would be unbounded.",
                unstable=int(unstable.sum()), variance_floor=variance_floor,
                slope=slope, intercept=intercept,
            )
        predicted_var = np.where(unstable, variance_floor, predicted_var)
        logger.warning("Clipped %d predicted variance(s) to %g", int(unstable.sum()), variance_floor)

    predicted_by_group = {}
    for key, sd in group_sd.items():
        var = float(sd ** 2)
        predicted_by_group[str(key)] = var if sd > 0 and var > variance_floor else variance_floor

    weights = 1.0 / predicted_var
    return WeightingResult(
        weights=[float(w) for w in weights],
        group_variances=group_variances,
        predicted_variances=predicted_by_group,
        slope=slope,
        intercept=intercept,
        clipped=bool(unstable.any()),
    )
