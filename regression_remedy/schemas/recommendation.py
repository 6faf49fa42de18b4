"""
FILE: schemas/recommendation.py
--------------------------------
Pydantic schemas for advisor outputs.

Recommendation is a tagged union (discriminator: `kind`) over
  TransformRecommendation     — change the response scale
  FamilyChangeRecommendation  — switch distributional family + link
  ClusteringRecommendation    — model non-independence
  ReweightRecommendation      — weighted refit for heteroscedasticity

Every variant carries the assumption it addresses, its precedence
(lower is applied first) and a plain English justification.
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from regression_remedy.schemas.diagnosis import Assumption
from regression_remedy.schemas.model import (
    ClusteringStrategy,
    FamilyKind,
    LinkKind,
    TransformKind,
)


class RecommendationKind(str, Enum):
    TRANSFORM     = "transform"
    FAMILY_CHANGE = "family_change"
    CLUSTERING    = "clustering"
    REWEIGHT      = "reweight"


# ─────────────────────────────────────────────
# SHARED FIELDS
# ─────────────────────────────────────────────

class _RecommendationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    assumption: Assumption
    precedence: int
    justification: str = ""

    # Advisory recommendations are reported but never trigger a refit.
    advisory_only: bool = False


# ─────────────────────────────────────────────
# VARIANTS
# ─────────────────────────────────────────────

class TransformRecommendation(_RecommendationBase):
    kind: Literal["transform"] = "transform"
    transform: TransformKind
    param: float | None = None              # eps for log_shift, k for power
    skewness_before: float | None = None
    skewness_after: float | None = None


class FamilyChangeRecommendation(_RecommendationBase):
    kind: Literal["family_change"] = "family_change"
    family: FamilyKind
    link: LinkKind


class StrategyOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: ClusteringStrategy
    feasible: bool
    reason: str = ""


class ClusteringDecision(BaseModel):
    """Full output of the clustering strategy selector."""
    model_config = ConfigDict(frozen=True)

    strategy: ClusteringStrategy
    options: list[StrategyOption] = Field(default_factory=list)
    unit_count: int
    parameter_count: int
    confounded: bool
    residual_df: int | None = None          # df left after the chosen strategy, when known
    warning: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.residual_df is None or self.residual_df > 0

    def option(self, strategy: ClusteringStrategy) -> StrategyOption | None:
        return next((o for o in self.options if o.strategy == strategy), None)


class ClusteringRecommendation(_RecommendationBase):
    kind: Literal["clustering"] = "clustering"
    strategy: ClusteringStrategy
    grouping_key: str
    decision: ClusteringDecision


class WeightingResult(BaseModel):
    """Full output of the variance weighter."""
    model_config = ConfigDict(frozen=True)

    weights: list[float]
    group_variances: dict[str, float] = Field(default_factory=dict)
    predicted_variances: dict[str, float] = Field(default_factory=dict)
    slope: float
    intercept: float
    clipped: bool = False


class ReweightRecommendation(_RecommendationBase):
    kind: Literal["reweight"] = "reweight"
    weighting: WeightingResult

    @property
    def weights(self) -> list[float]:
        return self.weighting.weights


Recommendation = Annotated[
    Union[
        TransformRecommendation,
        FamilyChangeRecommendation,
        ClusteringRecommendation,
        ReweightRecommendation,
    ],
    Field(discriminator="kind"),
]
