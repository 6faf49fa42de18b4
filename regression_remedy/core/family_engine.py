"""
FILE: core/family_engine.py
----------------------------
Pure logic for the Family Advisor.
Looks up FAMILY_REGISTRY by the caller-declared support kind; the data
are only used to check that the declaration is plausible.
"""

import logging

import numpy as np
import pandas as pd

from regression_remedy.configs.families import FAMILY_REGISTRY
from regression_remedy.configs.remediations import precedence_of
from regression_remedy.errors import FamilyDomainError
from regression_remedy.schemas.diagnosis import Assumption, LinearityStatus
from regression_remedy.schemas.model import FamilyKind, SupportKind
from regression_remedy.schemas.recommendation import FamilyChangeRecommendation

logger = logging.getLogger(__name__)


def validate_support(support: SupportKind, response: pd.Series | np.ndarray) -> None:
    """Raises FamilyDomainError when the data contradict the declared support."""
    values = np.asarray(response, dtype=float)
    values = values[np.isfinite(values)]

    if support == SupportKind.BINARY:
        bad = ~np.isin(values, (0.0, 1.0))
        if bad.any():
            raise FamilyDomainError(
                f"Response declared binary but {int(bad.sum())} value(s) are not 0/1.",
                support=support.value,
            )
    elif support == SupportKind.COUNT:
        bad = (values < 0) | (values != np.round(values))
        if bad.any():
            raise FamilyDomainError(
                f"Response declared count but {int(bad.sum())} value(s) are negative or non-integer.",
                support=support.value,
            )
    elif support == SupportKind.PROPORTION:
        bad = (values <= 0) | (values >= 1)
        if bad.any():
            raise FamilyDomainError(
                f"Response declared proportion but {int(bad.sum())} value(s) lie outside (0, 1).",
                support=support.value,
            )


def recommend_family(
    support: SupportKind,
    current_family: FamilyKind,
    linearity: LinearityStatus,
    response: pd.Series | np.ndarray | None = None,
    possible_missing_factor: bool = False,
) -> FamilyChangeRecommendation | None:
    """
    Returns a family change when the declared support calls for a
    different family than the one currently fitted.

    Continuous support with dispersion-shaped residuals yields an
    advisory-only recommendation — there is no discrete-family analogue.
    """
    entry = FAMILY_REGISTRY[support]

    if response is not None:
        validate_support(support, response)

    if support == SupportKind.CONTINUOUS:
        if not linearity.is_dispersion:
            return None
        note = (
            f"Residuals are {linearity.value} on a continuous response; no family change "
            "applies. Consider a missing predictor or the clustering structure."
        )
        if possible_missing_factor:
            note += " The residuals look bimodal — a categorical predictor is likely missing."
        return FamilyChangeRecommendation(
            assumption=Assumption.LINEARITY,
            precedence=precedence_of(Assumption.LINEARITY),
            family=entry["family"],
            link=entry["link"],
            advisory_only=True,
            justification=note,
        )

    if current_family == entry["family"]:
        return None

    logger.debug("Family change %s → %s for %s support", current_family.value, entry["family"].value, support.value)
    return FamilyChangeRecommendation(
        assumption=Assumption.LINEARITY,
        precedence=precedence_of(Assumption.LINEARITY),
        family=entry["family"],
        link=entry["link"],
        justification=entry["description"],
    )
