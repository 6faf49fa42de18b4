"""
FILE: schemas/config.py
------------------------
Caller-set configuration surface for a remediation run.
Defaults live in constants/remediation.py.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from regression_remedy.constants.remediation import (
    BIMODALITY_THRESHOLD,
    DEFAULT_FIT_TIMEOUT,
    GROUP_SIZE_TOLERANCE,
    HETEROSCEDASTICITY_RATIO_THRESHOLD,
    KURTOSIS_THRESHOLD,
    MAX_ITERATIONS,
    MIN_RANDOM_EFFECT_LEVELS,
    NORMALITY_ALPHA,
    POWER_CANDIDATES,
    SKEWNESS_THRESHOLD,
    VARIANCE_FLOOR,
)


class RemediationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # ── Loop control ──
    max_iterations: int = Field(default=MAX_ITERATIONS, ge=1)
    fit_timeout: float | None = Field(default=DEFAULT_FIT_TIMEOUT, gt=0)   # seconds, None → no limit

    # ── Shape classification ──
    skewness_threshold: float = Field(default=SKEWNESS_THRESHOLD, gt=0)
    kurtosis_threshold: float = Field(default=KURTOSIS_THRESHOLD, gt=0)
    bimodality_threshold: float = Field(default=BIMODALITY_THRESHOLD, gt=0, lt=1)
    normality_alpha: float = Field(default=NORMALITY_ALPHA, gt=0, lt=1)

    # ── Heteroscedasticity ──
    heteroscedasticity_ratio_threshold: float = Field(default=HETEROSCEDASTICITY_RATIO_THRESHOLD, gt=1)
    group_size_tolerance: float = Field(default=GROUP_SIZE_TOLERANCE, ge=0, lt=1)

    # ── Remedies ──
    min_random_effect_levels: int = Field(default=MIN_RANDOM_EFFECT_LEVELS, ge=2)
    power_candidates: tuple[int, ...] = POWER_CANDIDATES
    variance_floor: float = Field(default=VARIANCE_FLOOR, gt=0)
    clip_unstable_weights: bool = True     # False → UnstableWeights fails the run
    allow_rank_fallback: bool = True       # False → TransformDomainError fails the run

    @field_validator("power_candidates")
    @classmethod
    def _powers_above_one(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value or any(k < 2 for k in value):
            raise ValueError("power_candidates must be a non-empty set of integers >= 2")
        return tuple(sorted(set(value)))
