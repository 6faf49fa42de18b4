"""
FILE: configs/remediations.py
------------------------------
Central registry mapping each checkable assumption to the remedies the
pipeline may apply for it, and the order in which they are applied.

Precedence (lower first): independence fixes change which residuals exist
at all, reweighting changes how they are pooled, and only then is the
response scale or family touched.

Each entry has:
  precedence:   Order of application when several recommendations coexist
  remedies:     Recommendation kinds that resolve this assumption
  description:  Plain English statement of the violation
"""

from regression_remedy.schemas.diagnosis import Assumption
from regression_remedy.schemas.recommendation import RecommendationKind

REMEDIATION_REGISTRY: dict[Assumption, dict] = {

    Assumption.INDEPENDENCE: {
        "precedence":  0,
        "remedies":    [RecommendationKind.CLUSTERING],
        "description": "Observations within a unit are not independent (pseudoreplication).",
    },

    Assumption.HOMOSCEDASTICITY: {
        "precedence":  1,
        "remedies":    [RecommendationKind.REWEIGHT],
        "description": "Residual variance differs across groups and group sizes are unequal.",
    },

    Assumption.LINEARITY: {
        "precedence":  2,
        "remedies":    [RecommendationKind.FAMILY_CHANGE, RecommendationKind.TRANSFORM],
        "description": "Residual distribution is skewed or has the wrong tail weight.",
    },
}


def precedence_of(assumption: Assumption) -> int:
    return REMEDIATION_REGISTRY[assumption]["precedence"]
