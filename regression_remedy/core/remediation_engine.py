"""
FILE: core/remediation_engine.py
---------------------------------
Pure logic behind the remediation pipeline's Recommending and Refitting
states. No LangGraph dependencies.

Responsibilities:
  1. Turn a Diagnosis into per-assumption recommendations by consulting the
     clustering, weighting, family and transform advisors
  2. Order them by REMEDIATION_REGISTRY precedence and pick the next one
  3. Apply a chosen recommendation to the data and the fit request
  4. Propose a simplified request when the external fit fails
"""

import logging

import pandas as pd

from regression_remedy.configs.remediations import precedence_of
from regression_remedy.core.clustering_engine import aggregate_by_unit, decide_for_design
from regression_remedy.core.family_engine import recommend_family
from regression_remedy.core.transform_engine import apply_transform, rank_fallback, recommend_transform
from regression_remedy.core.weighting_engine import compute_variance_weights
from regression_remedy.errors import NoValidStrategy, TransformDomainError, UnstableWeights
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.diagnosis import Assumption, AssumptionStatus, Diagnosis, LinearityStatus
from regression_remedy.schemas.model import (
    ClusteringStrategy,
    FamilyKind,
    FitRequest,
    FittedModel,
    SupportKind,
)
from regression_remedy.schemas.recommendation import (
    ClusteringRecommendation,
    FamilyChangeRecommendation,
    Recommendation,
    ReweightRecommendation,
    TransformRecommendation,
)

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# PER-ASSUMPTION PROPOSALS
# ─────────────────────────────────────────────

def _propose_clustering(
    data: pd.DataFrame,
    request: FitRequest,
    config: RemediationConfig,
) -> ClusteringRecommendation:
    design = request.design
    decision = decide_for_design(data, design, config.min_random_effect_levels)

    if not decision.is_valid:
        raise NoValidStrategy(
            decision.warning or "No clustering strategy leaves positive residual degrees of freedom.",
            unit_count=decision.unit_count,
            parameter_count=decision.parameter_count,
            residual_df=decision.residual_df,
            options=[o.model_dump(mode="json") for o in decision.options],
        )

    rejected = [o.reason for o in decision.options if not o.feasible and o.strategy != ClusteringStrategy.IGNORE]
    justification = f"Replicates within '{design.unit_key}' are not independent — use {decision.strategy.value}."
    if rejected:
        justification += " Rejected: " + " ".join(rejected)
    if decision.warning:
        justification += f" Warning: {decision.warning}"

    return ClusteringRecommendation(
        assumption=Assumption.INDEPENDENCE,
        precedence=precedence_of(Assumption.INDEPENDENCE),
        strategy=decision.strategy,
        grouping_key=design.unit_key,
        decision=decision,
        justification=justification,
    )


def _propose_reweight(
    model: FittedModel,
    variance_groups: pd.Series | None,
    config: RemediationConfig,
    notes: list[str],
) -> ReweightRecommendation:
    groups = None if variance_groups is None else list(variance_groups)
    try:
        weighting = compute_variance_weights(
            model.residuals, model.fitted_values, groups,
            variance_floor=config.variance_floor, clip=False,
        )
    except UnstableWeights as exc:
        if not config.clip_unstable_weights:
            raise
        notes.append(f"{exc.message} Predicted variances clipped to {config.variance_floor:g}.")
        weighting = compute_variance_weights(
            model.residuals, model.fitted_values, groups,
            variance_floor=config.variance_floor, clip=True,
        )

    return ReweightRecommendation(
        assumption=Assumption.HOMOSCEDASTICITY,
        precedence=precedence_of(Assumption.HOMOSCEDASTICITY),
        weighting=weighting,
        justification=(
            f"Group variances differ with unequal group sizes — weighted refit with "
            f"weight = 1 / ({weighting.intercept:.4g} + {weighting.slope:.4g} × fitted)²."
        ),
    )


def _propose_linearity(
    diagnosis: Diagnosis,
    data: pd.DataFrame,
    request: FitRequest,
    config: RemediationConfig,
    notes: list[str],
) -> list[Recommendation]:
    design = request.design
    tag = diagnosis.linearity.status
    response = data[design.response]

    family = recommend_family(
        design.support, request.family, tag, response,
        possible_missing_factor=diagnosis.linearity.possible_missing_factor,
    )
    if family is not None:
        return [family]

    if not tag.is_skew:
        return []

    if design.support != SupportKind.CONTINUOUS or request.family != FamilyKind.GAUSSIAN:
        notes.append(
            f"Residuals remain {tag.value} under the {request.family.value} family; "
            "response transforms are not applied to GLM fits."
        )
        return []

    try:
        transform = recommend_transform(tag, response, config)
    except TransformDomainError as exc:
        if not config.allow_rank_fallback:
            raise
        notes.append(f"{exc.message} Falling back to a rank transform.")
        logger.warning("Transform domain error, rank fallback: %s", exc.message)
        transform = rank_fallback(exc.message, response)

    return [transform] if transform is not None else []


# ─────────────────────────────────────────────
# MAIN — BUILD RECOMMENDATIONS
# ─────────────────────────────────────────────

def build_recommendations(
    diagnosis: Diagnosis,
    data: pd.DataFrame,
    request: FitRequest,
    model: FittedModel,
    config: RemediationConfig,
    resolved: set[Assumption] | None = None,
    variance_groups: pd.Series | None = None,
) -> tuple[list[Recommendation], list[str]]:
    """
    One recommendation per violated assumption, ordered by precedence.
    Assumptions in `resolved` already had their remedy applied; a repeat
    violation is noted instead of remedied again.

    Raises:
        NoValidStrategy:      independence violated with no feasible strategy
        NoGroupingPossible:   independence violated with fewer than 2 units
        TransformDomainError: when allow_rank_fallback is False
        UnstableWeights:      when clip_unstable_weights is False
        FamilyDomainError:    declared support contradicted by the data
    """
    resolved = resolved or set()
    recommendations: list[Recommendation] = []
    notes: list[str] = []

    # ── Independence ──
    if diagnosis.independence.status == AssumptionStatus.VIOLATED:
        if Assumption.INDEPENDENCE in resolved:
            notes.append("Independence violation persists after a clustering strategy was applied.")
        else:
            recommendations.append(_propose_clustering(data, request, config))

    # ── Homoscedasticity ──
    if diagnosis.homoscedasticity.status == AssumptionStatus.VIOLATED:
        if Assumption.HOMOSCEDASTICITY in resolved:
            notes.append(
                f"Group variance ratio {diagnosis.homoscedasticity.ratio} still exceeds the "
                "threshold after reweighting."
            )
        elif request.family != FamilyKind.GAUSSIAN:
            notes.append("Heteroscedasticity under a GLM family is handled by its variance function; no reweighting.")
        elif request.clustering_strategy == ClusteringStrategy.RANDOM_EFFECT:
            notes.append("Observation weights are not supported alongside a random effect; no reweighting.")
        else:
            recommendations.append(_propose_reweight(model, variance_groups, config, notes))

    # ── Linearity / shape ──
    if diagnosis.linearity.status != LinearityStatus.OK:
        if Assumption.LINEARITY in resolved:
            notes.append(
                f"Residual shape is still {diagnosis.linearity.status.value} after a "
                "transform or family change."
            )
        else:
            recommendations.extend(_propose_linearity(diagnosis, data, request, config, notes))

    recommendations.sort(key=lambda r: r.precedence)
    return recommendations, notes


def select_next(recommendations: list[Recommendation]) -> Recommendation | None:
    """Highest-precedence actionable recommendation."""
    return next((r for r in recommendations if not r.advisory_only), None)


# ─────────────────────────────────────────────
# MAIN — APPLY A RECOMMENDATION
# ─────────────────────────────────────────────

def apply_recommendation(
    recommendation: Recommendation,
    data: pd.DataFrame,
    request: FitRequest,
) -> tuple[pd.DataFrame, FitRequest]:
    """
    Returns the (data, request) pair for the refit. Neither input is
    modified; transforms and aggregation produce new DataFrames.
    """
    design = request.design

    if isinstance(recommendation, ClusteringRecommendation):
        if recommendation.strategy == ClusteringStrategy.AGGREGATE:
            aggregated = aggregate_by_unit(data, design)
            return aggregated, request.model_copy(update={
                "clustering_strategy": ClusteringStrategy.AGGREGATE,
                "grouping_key": None,
                "weights": None,
            })
        return data, request.model_copy(update={
            "clustering_strategy": recommendation.strategy,
            "grouping_key": recommendation.grouping_key,
        })

    if isinstance(recommendation, ReweightRecommendation):
        return data, request.model_copy(update={"weights": list(recommendation.weights)})

    if isinstance(recommendation, FamilyChangeRecommendation):
        return data, request.model_copy(update={
            "family": recommendation.family,
            "link": recommendation.link,
            "weights": None,
        })

    if isinstance(recommendation, TransformRecommendation):
        transformed = data.copy()
        transformed[design.response] = apply_transform(data[design.response], recommendation)
        return transformed, request.model_copy(update={
            "transform": recommendation.transform,
            "transform_param": recommendation.param,
        })

    raise ValueError(f"Unknown recommendation type: {type(recommendation).__name__}")


# ─────────────────────────────────────────────
# RETRY — SIMPLIFY AFTER A FAILED FIT
# ─────────────────────────────────────────────

def simplify_request(
    recommendation: Recommendation,
    data: pd.DataFrame,
    request: FitRequest,
) -> tuple[pd.DataFrame, FitRequest, str] | None:
    """
    One simpler alternative to a request whose fit failed:
    random effect → fixed-effect block → aggregate-by-unit.
    Returns None when nothing simpler exists.
    """
    if not isinstance(recommendation, ClusteringRecommendation):
        return None
    if request.clustering_strategy != ClusteringStrategy.RANDOM_EFFECT:
        return None

    decision = recommendation.decision
    for fallback in (ClusteringStrategy.FIXED_BLOCK, ClusteringStrategy.AGGREGATE):
        option = decision.option(fallback)
        if option is None or not option.feasible:
            continue
        simpler = recommendation.model_copy(update={"strategy": fallback})
        # `data` is still the unaggregated frame for a random-effect request
        new_data, new_request = apply_recommendation(simpler, data, request.model_copy(update={
            "clustering_strategy": None, "grouping_key": None,
        }))
        return new_data, new_request, f"random-effect fit failed; retried as {fallback.value}"
    return None
