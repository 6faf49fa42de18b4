"""
FILE: core/transform_engine.py
-------------------------------
Pure logic for the Transform Advisor.

Responsibilities:
  1. Map a residual shape tag to a response transformation, respecting the
     transform's domain (sign / zero content of the response)
  2. Apply a chosen transformation to a response column
  3. Provide the rank transform the pipeline falls back to on domain errors

Dispersion-shaped residuals get no transform — the pipeline escalates
them to the family and clustering advisors.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats

from regression_remedy.configs.remediations import precedence_of
from regression_remedy.errors import TransformDomainError
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.diagnosis import Assumption, LinearityStatus
from regression_remedy.schemas.model import TransformKind
from regression_remedy.schemas.recommendation import TransformRecommendation

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# TRANSFORM FUNCTIONS
# ─────────────────────────────────────────────

def log_shift_epsilon(values: np.ndarray) -> float:
    """Half the smallest positive value — keeps zeros finite under log."""
    positive = values[values > 0]
    if positive.size == 0:
        raise TransformDomainError("log(x + eps) needs at least one positive value to size eps.")
    return float(positive.min() / 2)


def transform_values(
    values: np.ndarray,
    transform: TransformKind,
    param: float | None = None,
) -> np.ndarray:
    """Applies a transform to raw values, refusing inputs outside its domain."""
    values = np.asarray(values, dtype=float)

    if transform == TransformKind.NONE:
        return values.copy()

    if transform == TransformKind.LOG:
        if (values <= 0).any():
            raise TransformDomainError(
                "log requested on data containing zero or negative values.",
                transform=transform.value, minimum=float(values.min()),
            )
        return np.log(values)

    if transform == TransformKind.LOG_SHIFT:
        if (values < 0).any():
            raise TransformDomainError(
                "log(x + eps) requested on data containing negative values.",
                transform=transform.value, minimum=float(values.min()),
            )
        eps = param if param is not None else log_shift_epsilon(values)
        return np.log(values + eps)

    if transform == TransformKind.SQRT:
        if (values < 0).any():
            raise TransformDomainError(
                "sqrt requested on data containing negative values.",
                transform=transform.value, minimum=float(values.min()),
            )
        return np.sqrt(values)

    if transform == TransformKind.POWER:
        k = int(param) if param is not None else 2
        if k % 2 == 0 and (values < 0).any():
            raise TransformDomainError(
                f"Even power {k} is not monotone on data containing negative values.",
                transform=transform.value, power=k,
            )
        return np.power(values, k)

    if transform == TransformKind.RANK:
        return stats.rankdata(values, method="average").astype(float)

    raise ValueError(f"Unknown transform: {transform}")


def apply_transform(
    series: pd.Series,
    recommendation: TransformRecommendation,
) -> pd.Series:
    """Returns a transformed copy of a response column."""
    out = transform_values(series.to_numpy(dtype=float), recommendation.transform, recommendation.param)
    return pd.Series(out, index=series.index, name=series.name)


def _skew(values: np.ndarray) -> float:
    if np.ptp(values) == 0:
        return 0.0
    return float(stats.skew(values))


# ─────────────────────────────────────────────
# MAIN — RECOMMEND A TRANSFORM
# ─────────────────────────────────────────────

def recommend_transform(
    linearity: LinearityStatus,
    response: pd.Series | np.ndarray,
    config: RemediationConfig | None = None,
) -> TransformRecommendation | None:
    """
    First matching rule wins:
      right-skew, all > 0        → log
      right-skew, >= 0 w/ zeros  → log(x + eps) or sqrt, whichever leaves less skew
      right-skew, any negative   → TransformDomainError
      left-skew                  → power(k), k minimising |skewness|
      dispersion / ok            → None
    """
    config = config or RemediationConfig()
    values = np.asarray(response, dtype=float)
    values = values[np.isfinite(values)]
    before = _skew(values)

    if linearity == LinearityStatus.RIGHT_SKEW:
        if (values < 0).any():
            raise TransformDomainError(
                "Right-skewed response contains negative values — no log/sqrt transform is valid.",
                minimum=float(values.min()),
            )

        if (values > 0).all():
            after = _skew(np.log(values))
            return _recommendation(
                TransformKind.LOG, None, before, after,
                "Right-skewed residuals and a strictly positive response — log transform.",
            )

        eps = log_shift_epsilon(values)
        candidates = [
            (TransformKind.LOG_SHIFT, eps, _skew(np.log(values + eps))),
            (TransformKind.SQRT, None, _skew(np.sqrt(values))),
        ]
        # stable sort keeps log_shift ahead on ties
        kind, param, after = min(candidates, key=lambda c: abs(c[2]))
        if kind == TransformKind.LOG_SHIFT:
            reason = f"Right-skewed residuals with zeros in the response — log(x + {eps:.4g})."
        else:
            reason = "Right-skewed residuals with zeros in the response — square root leaves less skew than log(x + eps)."
        return _recommendation(kind, param, before, after, reason)

    if linearity == LinearityStatus.LEFT_SKEW:
        powers = list(config.power_candidates)
        if (values < 0).any():
            powers = [k for k in powers if k % 2 == 1]
            if not powers:
                raise TransformDomainError(
                    "Left-skewed response contains negative values and no odd power is configured.",
                    power_candidates=list(config.power_candidates),
                )
        scored = [(k, _skew(np.power(values, k))) for k in powers]
        k, after = min(scored, key=lambda s: abs(s[1]))
        return _recommendation(
            TransformKind.POWER, float(k), before, after,
            f"Left-skewed residuals — power {k} transform minimises remaining skewness.",
        )

    # over-/under-dispersed and ok: transformation does not reliably fix tail shape
    return None


def rank_fallback(reason: str, response: pd.Series | np.ndarray) -> TransformRecommendation:
    """Next-best remedy when the tagged transform is outside the data's domain."""
    values = np.asarray(response, dtype=float)
    values = values[np.isfinite(values)]
    ranked = stats.rankdata(values, method="average")
    return _recommendation(
        TransformKind.RANK, None, _skew(values), _skew(ranked),
        f"Rank transform fallback — {reason}",
    )


def _recommendation(
    kind: TransformKind,
    param: float | None,
    before: float,
    after: float,
    justification: str,
) -> TransformRecommendation:
    logger.debug("Transform %s (param=%s): skew %.3f → %.3f", kind.value, param, before, after)
    return TransformRecommendation(
        assumption=Assumption.LINEARITY,
        precedence=precedence_of(Assumption.LINEARITY),
        transform=kind,
        param=param,
        skewness_before=round(before, 6),
        skewness_after=round(after, 6),
        justification=justification,
    )
