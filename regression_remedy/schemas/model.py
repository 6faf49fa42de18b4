"""
FILE: schemas/model.py
-----------------------
Pydantic schemas describing what gets fitted and what comes back.

ModelDesign  — column roles in the observation DataFrame (supplied by the caller).
FitRequest   — one concrete "fit model of kind K with config C" request,
               built and rebuilt by the remediation engine.
FittedModel  — the external fitting capability's output. Frozen: the core
               only reads it and asks for a new one.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────

class SupportKind(str, Enum):
    BINARY     = "binary"       # 0/1 outcomes
    COUNT      = "count"        # non-negative integers
    PROPORTION = "proportion"   # strictly inside (0, 1)
    CONTINUOUS = "continuous"


class FamilyKind(str, Enum):
    GAUSSIAN = "gaussian"
    BINOMIAL = "binomial"
    POISSON  = "poisson"
    BETA     = "beta"


class LinkKind(str, Enum):
    IDENTITY = "identity"
    LOGIT    = "logit"
    LOG      = "log"


class TransformKind(str, Enum):
    NONE      = "none"
    LOG       = "log"         # log(x), x > 0
    LOG_SHIFT = "log_shift"   # log(x + eps), x >= 0 with zeros
    SQRT      = "sqrt"        # sqrt(x), x >= 0
    POWER     = "power"       # x ** k, k in POWER_CANDIDATES
    RANK      = "rank"        # average ranks, fallback on domain errors


class ClusteringStrategy(str, Enum):
    IGNORE        = "ignore"               # pseudoreplication, never valid
    AGGREGATE     = "aggregate-by-unit"    # one mean per unit
    FIXED_BLOCK   = "fixed-effect-block"   # unit as a categorical predictor
    RANDOM_EFFECT = "random-effect"        # random intercept per unit


# ─────────────────────────────────────────────
# DESIGN — column roles
# ─────────────────────────────────────────────

class ModelDesign(BaseModel):
    model_config = ConfigDict(frozen=True)

    response: str
    predictors: list[str] = Field(default_factory=list)

    # Categorical predictors a unit could be confounded with.
    # None → every categorical predictor.
    treatment_factors: list[str] | None = None

    unit_key: str | None = None             # e.g. tank / container / subject id
    replicate_key: str | None = None        # replicate index within a unit (informational)
    variance_group: str | None = None       # groups for variance comparison; None → unit_key

    support: SupportKind = SupportKind.CONTINUOUS


# ─────────────────────────────────────────────
# UNIT — one level of the grouping key, derived on request
# ─────────────────────────────────────────────

class Unit(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    replicate_count: int
    mean: float
    variance: float | None = None           # None for single-replicate units


# ─────────────────────────────────────────────
# FIT REQUEST
# ─────────────────────────────────────────────

class FitRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    design: ModelDesign
    family: FamilyKind = FamilyKind.GAUSSIAN
    link: LinkKind = LinkKind.IDENTITY

    # ── Bookkeeping for transforms already applied to the response column ──
    transform: TransformKind = TransformKind.NONE
    transform_param: float | None = None

    weights: list[float] | None = None
    clustering_strategy: ClusteringStrategy | None = None
    grouping_key: str | None = None         # set for random-effect / fixed-effect-block fits


# ─────────────────────────────────────────────
# FITTED MODEL
# ─────────────────────────────────────────────

class FittedModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    residuals: list[float]
    fitted_values: list[float]
    degrees_of_freedom: int
    family: FamilyKind = FamilyKind.GAUSSIAN
    link: LinkKind = LinkKind.IDENTITY
    grouping_key: str | None = None

    # ── Adapter bookkeeping ──
    transform: TransformKind = TransformKind.NONE
    weighted: bool = False
    clustering_strategy: ClusteringStrategy | None = None
    n_obs: int = 0
    converged: bool = True
    aic: float | None = None


class ModelSummary(BaseModel):
    """Compact description of a FittedModel for the diagnostic report."""
    family: FamilyKind
    link: LinkKind
    transform: TransformKind
    weighted: bool
    clustering_strategy: ClusteringStrategy | None = None
    grouping_key: str | None = None
    degrees_of_freedom: int
    n_obs: int
    aic: float | None = None


def summarize_model(model: FittedModel) -> ModelSummary:
    return ModelSummary(
        family=model.family,
        link=model.link,
        transform=model.transform,
        weighted=model.weighted,
        clustering_strategy=model.clustering_strategy,
        grouping_key=model.grouping_key,
        degrees_of_freedom=model.degrees_of_freedom,
        n_obs=model.n_obs or len(model.residuals),
        aic=model.aic,
    )
