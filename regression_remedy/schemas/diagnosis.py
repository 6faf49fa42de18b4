"""
FILE: schemas/diagnosis.py
---------------------------
Pydantic output schema for the residual diagnostics engine.
A Diagnosis is created fresh on every diagnostic pass and is frozen —
nothing downstream may patch individual assumption results.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────

class LinearityStatus(str, Enum):
    OK              = "ok"
    RIGHT_SKEW      = "right-skew"
    LEFT_SKEW       = "left-skew"
    OVER_DISPERSED  = "over-dispersed"    # fat tails (leptokurtic)
    UNDER_DISPERSED = "under-dispersed"   # thin tails: uniform-like or bimodal

    @property
    def is_skew(self) -> bool:
        return self in (LinearityStatus.RIGHT_SKEW, LinearityStatus.LEFT_SKEW)

    @property
    def is_dispersion(self) -> bool:
        return self in (LinearityStatus.OVER_DISPERSED, LinearityStatus.UNDER_DISPERSED)


class AssumptionStatus(str, Enum):
    OK       = "ok"
    VIOLATED = "violated"


class Assumption(str, Enum):
    INDEPENDENCE     = "independence"
    HOMOSCEDASTICITY = "homoscedasticity"
    LINEARITY        = "linearity"
    NORMALITY        = "normality"


# ─────────────────────────────────────────────
# PER-ASSUMPTION RESULTS
# ─────────────────────────────────────────────

class LinearityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: LinearityStatus
    skewness: float
    excess_kurtosis: float
    qq_correlation: float | None = None          # normal Q-Q plot correlation
    bimodality_coefficient: float | None = None  # Sarle's b, only when n > 3
    possible_missing_factor: bool = False        # under-dispersed + bimodal
    plain_reason: str = ""


class HomoscedasticityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: AssumptionStatus
    assessed: bool = False                       # False when no groups were supplied
    ratio: float | None = None                   # max / min group variance
    group_variances: dict[str, float] = Field(default_factory=dict)
    group_sizes: dict[str, int] = Field(default_factory=dict)
    sizes_unequal: bool = False
    plain_reason: str = ""


class IndependenceResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: AssumptionStatus
    unit_count: int | None = None
    replicates_per_unit: dict[str, int] = Field(default_factory=dict)
    plain_reason: str = ""

    @property
    def replicate_counts(self) -> list[int]:
        return list(self.replicates_per_unit.values())


class NormalityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: AssumptionStatus
    test_used: str | None = None                 # "Shapiro-Wilk" / "D'Agostino-Pearson"
    statistic: float | None = None
    p_value: float | None = None
    plain_reason: str = ""


# ─────────────────────────────────────────────
# MAIN OUTPUT SCHEMA
# ─────────────────────────────────────────────

class Diagnosis(BaseModel):
    model_config = ConfigDict(frozen=True)

    n_residuals: int
    linearity: LinearityResult
    homoscedasticity: HomoscedasticityResult
    independence: IndependenceResult
    normality: NormalityResult

    summary_message: str = ""

    @property
    def violated(self) -> list[Assumption]:
        found = []
        if self.independence.status == AssumptionStatus.VIOLATED:
            found.append(Assumption.INDEPENDENCE)
        if self.homoscedasticity.status == AssumptionStatus.VIOLATED:
            found.append(Assumption.HOMOSCEDASTICITY)
        if self.linearity.status != LinearityStatus.OK:
            found.append(Assumption.LINEARITY)
        if self.normality.status == AssumptionStatus.VIOLATED:
            found.append(Assumption.NORMALITY)
        return found

    @property
    def all_assumptions_met(self) -> bool:
        return not self.violated
