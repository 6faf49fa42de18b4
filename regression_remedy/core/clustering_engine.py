"""
FILE: core/clustering_engine.py
--------------------------------
Pure logic for the Clustering Strategy Selector.

Decides how to handle replicated observations within units:
  ignore            — never valid (pseudoreplication)
  aggregate-by-unit — one mean per unit; needs more units than parameters
  fixed-effect block— unit as a factor; impossible when unit is confounded
                      with the treatment combination
  random-effect     — random intercept per unit; needs enough levels

Confounding is a structural property of the design (every unit sits in
exactly one treatment combination, or a unit-level numeric predictor leaves
the blocked design matrix short of full rank) and is detected without fitting.
"""

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from patsy import dmatrix

from regression_remedy.constants.remediation import MIN_RANDOM_EFFECT_LEVELS
from regression_remedy.core.fitting_engine import build_formula
from regression_remedy.errors import InsufficientData, NoGroupingPossible
from regression_remedy.schemas.model import ClusteringStrategy, FitRequest, ModelDesign, Unit
from regression_remedy.schemas.recommendation import ClusteringDecision, StrategyOption
from regression_remedy.utils.design import count_fixed_parameters, is_categorical, treatment_factors

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# STRUCTURAL HELPERS
# ─────────────────────────────────────────────

def detect_block_confounding(
    data: pd.DataFrame,
    unit_key: str,
    factors: list[str],
) -> bool:
    """
    True when every unit maps to exactly one combination of the factor
    levels — adding the unit as a block would duplicate the treatment columns.
    """
    if not factors:
        return False
    combos = data[[unit_key, *factors]].drop_duplicates()
    per_unit = combos.groupby(unit_key).size()
    return bool((per_unit == 1).all())


def block_design_rank_deficient(data: pd.DataFrame, design: ModelDesign) -> bool:
    """
    True when the fixed-effect-block design matrix (predictors plus the unit
    as a factor) has fewer independent columns than terms. Catches numeric
    unit-level predictors that detect_block_confounding cannot see.
    """
    if design.unit_key is None:
        return False
    request = FitRequest(
        design=design,
        clustering_strategy=ClusteringStrategy.FIXED_BLOCK,
        grouping_key=design.unit_key,
    )
    rhs = build_formula(data, request).split("~", 1)[1]
    matrix = np.asarray(dmatrix(rhs, data), dtype=float)
    return int(np.linalg.matrix_rank(matrix)) < matrix.shape[1]


def summarize_units(data: pd.DataFrame, response: str, unit_key: str) -> list[Unit]:
    """Per-unit replicate count, response mean and variance."""
    if data[unit_key].isna().any():
        raise InsufficientData(f"Unit key '{unit_key}' has missing values.")
    grouped = data.groupby(unit_key, sort=True)[response]
    units = []
    for key, values in grouped:
        count = int(values.count())
        units.append(Unit(
            key=str(key),
            replicate_count=count,
            mean=float(values.mean()),
            variance=float(values.var(ddof=1)) if count > 1 else None,
        ))
    return units


def aggregate_by_unit(data: pd.DataFrame, design: ModelDesign) -> pd.DataFrame:
    """
    Collapses replicates to one row per unit: numeric columns are averaged,
    categorical columns and the variance-group label take the unit's first value.
    """
    unit_key = design.unit_key
    if unit_key is None:
        raise InsufficientData("Cannot aggregate without a unit key.")

    keep = [design.response, *design.predictors]
    if design.variance_group and design.variance_group != unit_key:
        keep.append(design.variance_group)

    agg: dict[str, str] = {}
    for col in dict.fromkeys(keep):
        if col == unit_key:
            continue
        label = is_categorical(data[col]) or col == design.variance_group
        agg[col] = "first" if label else "mean"

    return data.groupby(unit_key, sort=True).agg(agg).reset_index()


# ─────────────────────────────────────────────
# MAIN — SELECT STRATEGY
# ─────────────────────────────────────────────

def select_clustering_strategy(
    unit_count: int,
    parameter_count: int,
    confounded: bool,
    replicates_per_unit: Sequence[int] | int | None = None,
    min_random_effect_levels: int = MIN_RANDOM_EFFECT_LEVELS,
) -> ClusteringDecision:
    """
    Decision, in precedence order:
      1. U < 2                       → NoGroupingPossible
      2. U <= P                      → aggregate-by-unit infeasible
      3. unit confounded / no df     → fixed-effect block infeasible
      4. U >= min levels             → random-effect
      5. otherwise                   → block, else aggregate; if both are
                                       infeasible, aggregate with a warning
                                       and non-positive residual_df

    `replicates_per_unit` is a per-unit list (unbalanced) or a single count
    (balanced). When omitted, block residual df is not checked.
    """
    U, P = unit_count, parameter_count
    if U < 2:
        raise NoGroupingPossible(
            f"Need at least 2 units to model grouping structure; got {U}.",
            unit_count=U,
        )

    if isinstance(replicates_per_unit, int):
        n_obs = U * replicates_per_unit
    elif replicates_per_unit is not None:
        n_obs = int(sum(replicates_per_unit))
    else:
        n_obs = None

    # ── 2. aggregate-by-unit ──
    aggregate_df = U - P
    aggregate_ok = aggregate_df > 0
    aggregate_reason = (
        f"One mean per unit leaves {aggregate_df} residual degree(s) of freedom."
        if aggregate_ok else
        f"Insufficient units for parameter count: {U} unit(s) for {P} parameter(s) "
        f"leaves non-positive residual degrees of freedom ({aggregate_df})."
    )

    # ── 3. fixed-effect block ──
    block_df = None if n_obs is None else n_obs - P - (U - 1)
    if confounded:
        block_ok = False
        block_reason = "Block perfectly confounded with treatment: each unit sits in exactly one treatment combination."
    elif block_df is not None and block_df <= 0:
        block_ok = False
        block_reason = f"Adding {U - 1} block parameter(s) leaves non-positive residual degrees of freedom ({block_df})."
    else:
        block_ok = True
        block_reason = "Unit can be added as a fixed-effect block."

    # ── 4. random-effect ──
    random_ok = U >= min_random_effect_levels
    random_df = None if n_obs is None else n_obs - P - 1
    random_reason = (
        f"{U} unit(s) >= {min_random_effect_levels} levels — between-unit variance can be estimated."
        if random_ok else
        f"Only {U} unit(s); at least {min_random_effect_levels} are needed to estimate a random effect."
    )

    options = [
        StrategyOption(strategy=ClusteringStrategy.IGNORE, feasible=False,
                       reason="Ignoring the grouping treats replicates as independent (pseudoreplication)."),
        StrategyOption(strategy=ClusteringStrategy.AGGREGATE, feasible=aggregate_ok, reason=aggregate_reason),
        StrategyOption(strategy=ClusteringStrategy.FIXED_BLOCK, feasible=block_ok, reason=block_reason),
        StrategyOption(strategy=ClusteringStrategy.RANDOM_EFFECT, feasible=random_ok, reason=random_reason),
    ]

    warning = None
    if random_ok:
        strategy, residual_df = ClusteringStrategy.RANDOM_EFFECT, random_df
    elif block_ok:
        strategy, residual_df = ClusteringStrategy.FIXED_BLOCK, block_df
    elif aggregate_ok:
        strategy, residual_df = ClusteringStrategy.AGGREGATE, aggregate_df
    else:
        strategy, residual_df = ClusteringStrategy.AGGREGATE, aggregate_df
        warning = (
            f"No strategy is feasible: aggregating {U} unit(s) against {P} parameter(s) leaves "
            f"{aggregate_df} residual degree(s) of freedom. Report NoValidStrategy rather than proceed."
        )

    logger.debug("Clustering U=%d P=%d confounded=%s → %s", U, P, confounded, strategy.value)
    return ClusteringDecision(
        strategy=strategy,
        options=options,
        unit_count=U,
        parameter_count=P,
        confounded=confounded,
        residual_df=residual_df,
        warning=warning,
    )


def decide_for_design(
    data: pd.DataFrame,
    design: ModelDesign,
    min_random_effect_levels: int = MIN_RANDOM_EFFECT_LEVELS,
) -> ClusteringDecision:
    """Derives U, replicates, P and confounding from the data, then selects."""
    if design.unit_key is None:
        raise NoGroupingPossible("No unit key declared in the design.", unit_count=0)

    units = summarize_units(data, design.response, design.unit_key)
    factors = [f for f in treatment_factors(data, design) if f != design.unit_key]
    confounded = (
        detect_block_confounding(data, design.unit_key, factors)
        or block_design_rank_deficient(data, design)
    )
    return select_clustering_strategy(
        unit_count=len(units),
        parameter_count=count_fixed_parameters(data, design),
        confounded=confounded,
        replicates_per_unit=[u.replicate_count for u in units],
        min_random_effect_levels=min_random_effect_levels,
    )
