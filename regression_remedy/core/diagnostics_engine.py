"""
FILE: core/diagnostics_engine.py
---------------------------------
Pure statistical functions for diagnosing a fitted model's residuals.
No pipeline or fitting dependencies.

Each check function returns one per-assumption result; run_diagnostics()
assembles them into a frozen Diagnosis. Visual Q-Q judgement is replaced
by thresholds on skewness, excess kurtosis and Sarle's bimodality
coefficient — all exposed through RemediationConfig.
"""

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats

from regression_remedy.constants.remediation import MIN_RESIDUALS, SHAPIRO_MAX_N
from regression_remedy.errors import DegenerateGrouping, InsufficientData
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.diagnosis import (
    AssumptionStatus,
    Diagnosis,
    HomoscedasticityResult,
    IndependenceResult,
    LinearityResult,
    LinearityStatus,
    NormalityResult,
)
from regression_remedy.schemas.model import FittedModel

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

def _labels(values: Sequence | None, n: int, name: str) -> pd.Series | None:
    """Validates a per-observation label vector and returns it as strings."""
    if values is None:
        return None
    labels = pd.Series(list(values))
    if len(labels) != n:
        raise InsufficientData(
            f"{name} has {len(labels)} entries but there are {n} residuals.",
            expected=n, received=len(labels),
        )
    if labels.isna().any():
        raise InsufficientData(f"{name} contains missing labels.", missing=int(labels.isna().sum()))
    return labels.astype(str)


def bimodality_coefficient(skewness: float, excess_kurtosis: float, n: int) -> float | None:
    """
    Sarle's bimodality coefficient with the finite-sample correction.
    5/9 is the value for a uniform distribution; larger suggests two modes.
    """
    if n <= 3:
        return None
    correction = 3 * (n - 1) ** 2 / ((n - 2) * (n - 3))
    denominator = excess_kurtosis + correction
    if denominator <= 0:
        return None
    return (skewness ** 2 + 1) / denominator


# ─────────────────────────────────────────────
# INDIVIDUAL CHECK FUNCTIONS
# ─────────────────────────────────────────────

def classify_shape(residuals: np.ndarray, config: RemediationConfig) -> LinearityResult:
    """Skewness first, then tail weight via excess kurtosis."""
    n = len(residuals)

    if np.ptp(residuals) == 0:
        return LinearityResult(
            status=LinearityStatus.OK,
            skewness=0.0,
            excess_kurtosis=0.0,
            plain_reason="Residuals are constant — there is no shape to assess.",
        )

    skewness = float(stats.skew(residuals))
    kurtosis = float(stats.kurtosis(residuals, fisher=True))
    _, (_, _, qq_r) = stats.probplot(residuals, dist="norm")
    bc = bimodality_coefficient(skewness, kurtosis, n)

    missing_factor = False
    if skewness > config.skewness_threshold:
        status = LinearityStatus.RIGHT_SKEW
        reason = f"Skewness {skewness:.3f} > {config.skewness_threshold} — long right tail."
    elif skewness < -config.skewness_threshold:
        status = LinearityStatus.LEFT_SKEW
        reason = f"Skewness {skewness:.3f} < -{config.skewness_threshold} — long left tail."
    elif kurtosis > config.kurtosis_threshold:
        status = LinearityStatus.OVER_DISPERSED
        reason = (
            f"Excess kurtosis {kurtosis:.3f} > {config.kurtosis_threshold} "
            f"(Q-Q r={qq_r:.3f}) — tails heavier than normal."
        )
    elif kurtosis < -config.kurtosis_threshold:
        status = LinearityStatus.UNDER_DISPERSED
        missing_factor = bc is not None and bc > config.bimodality_threshold
        reason = (
            f"Excess kurtosis {kurtosis:.3f} < -{config.kurtosis_threshold} "
            f"(Q-Q r={qq_r:.3f}) — tails lighter than normal."
        )
        if missing_factor:
            reason += (
                f" Bimodality coefficient {bc:.3f} > {config.bimodality_threshold:.3f} — "
                "a categorical predictor may be missing from the model."
            )
    else:
        status = LinearityStatus.OK
        reason = f"Skewness {skewness:.3f}, excess kurtosis {kurtosis:.3f} — consistent with normal residuals."

    return LinearityResult(
        status=status,
        skewness=round(skewness, 6),
        excess_kurtosis=round(kurtosis, 6),
        qq_correlation=round(float(qq_r), 6),
        bimodality_coefficient=None if bc is None else round(bc, 6),
        possible_missing_factor=missing_factor,
        plain_reason=reason,
    )


def check_homoscedasticity(
    residuals: np.ndarray,
    groups: pd.Series | None,
    config: RemediationConfig,
) -> HomoscedasticityResult:
    """
    Max/min group variance ratio. Only a violation when group sizes are
    also unequal — with near-equal n the linear model tolerates it.
    """
    if groups is None:
        return HomoscedasticityResult(
            status=AssumptionStatus.OK,
            plain_reason="No variance groups supplied — homoscedasticity not assessed.",
        )

    frame = pd.DataFrame({"resid": residuals, "group": groups.values})
    sizes = frame.groupby("group")["resid"].size()
    variances = frame.groupby("group")["resid"].var(ddof=1).dropna()

    if len(variances) < 2:
        return HomoscedasticityResult(
            status=AssumptionStatus.OK,
            group_sizes={str(k): int(v) for k, v in sizes.items()},
            plain_reason="Fewer than two groups with 2+ observations — homoscedasticity not assessed.",
        )

    v_max, v_min = float(variances.max()), float(variances.min())
    if v_min > 0:
        ratio = v_max / v_min
    else:
        ratio = float("inf") if v_max > 0 else 1.0

    spread = float((sizes.max() - sizes.min()) / sizes.max())
    sizes_unequal = spread > config.group_size_tolerance
    violated = ratio > config.heteroscedasticity_ratio_threshold and sizes_unequal

    if violated:
        reason = (
            f"Group variance ratio {ratio:.2f} > {config.heteroscedasticity_ratio_threshold} "
            f"with unequal group sizes (spread {spread:.0%}) — heteroscedasticity."
        )
    elif ratio > config.heteroscedasticity_ratio_threshold:
        reason = (
            f"Group variance ratio {ratio:.2f} is high but group sizes are near-equal "
            f"(spread {spread:.0%}) — the linear model is robust to this."
        )
    else:
        reason = f"Group variance ratio {ratio:.2f} — within tolerance."

    return HomoscedasticityResult(
        status=AssumptionStatus.VIOLATED if violated else AssumptionStatus.OK,
        assessed=True,
        ratio=round(ratio, 6) if np.isfinite(ratio) else ratio,
        group_variances={str(k): round(float(v), 10) for k, v in variances.items()},
        group_sizes={str(k): int(v) for k, v in sizes.items()},
        sizes_unequal=sizes_unequal,
        plain_reason=reason,
    )


def check_independence(grouping: pd.Series | None) -> IndependenceResult:
    """Replicates within a unit are not independent observations."""
    if grouping is None:
        return IndependenceResult(
            status=AssumptionStatus.OK,
            plain_reason="No grouping key — observations treated as independent.",
        )

    counts = grouping.value_counts().sort_index()
    if (counts == 1).all():
        raise DegenerateGrouping(
            "Every unit has exactly one replicate — the grouping carries no information.",
            unit_count=int(len(counts)),
        )

    replicated = counts[counts > 1]
    return IndependenceResult(
        status=AssumptionStatus.VIOLATED,
        unit_count=int(len(counts)),
        replicates_per_unit={str(k): int(v) for k, v in counts.items()},
        plain_reason=(
            f"{len(replicated)} of {len(counts)} unit(s) contribute more than one "
            f"observation (max {int(counts.max())}) — replicates are not independent."
        ),
    )


def check_normality(
    residuals: np.ndarray,
    shape: LinearityResult,
    config: RemediationConfig,
) -> NormalityResult:
    """
    Verdict follows the shape classification; the Shapiro-Wilk
    (D'Agostino-Pearson for large n) result is reported alongside it.
    """
    violated = shape.status != LinearityStatus.OK

    if np.ptp(residuals) == 0:
        return NormalityResult(
            status=AssumptionStatus.OK,
            plain_reason="Residuals are constant — normality test skipped.",
        )

    if len(residuals) > SHAPIRO_MAX_N:
        stat, p = stats.normaltest(residuals)
        test_name = "D'Agostino-Pearson"
    else:
        stat, p = stats.shapiro(residuals)
        test_name = "Shapiro-Wilk"

    reason = f"{test_name}: statistic={float(stat):.4f}, p={float(p):.4f}. "
    if violated:
        reason += f"Residual shape is {shape.status.value}."
    elif p < config.normality_alpha:
        reason += f"p < {config.normality_alpha} but skewness and kurtosis are within thresholds."
    else:
        reason += "Residuals are approximately normal."

    return NormalityResult(
        status=AssumptionStatus.VIOLATED if violated else AssumptionStatus.OK,
        test_used=test_name,
        statistic=round(float(stat), 6),
        p_value=round(float(p), 6),
        plain_reason=reason,
    )


# ─────────────────────────────────────────────
# MAIN — RUN ALL DIAGNOSTICS
# ─────────────────────────────────────────────

def run_diagnostics(
    residuals: Sequence[float],
    fitted_values: Sequence[float] | None = None,
    grouping: Sequence | None = None,
    variance_groups: Sequence | None = None,
    config: RemediationConfig | None = None,
) -> Diagnosis:
    """
    Runs every residual check and returns a fresh Diagnosis.

    Args:
        residuals:       Residual vector, length >= 3.
        fitted_values:   Optional fitted values (same length).
        grouping:        Optional unit label per observation — drives the
                         independence check and, by default, variance groups.
        variance_groups: Optional group label per observation for the
                         homoscedasticity check; defaults to `grouping`.

    Raises:
        InsufficientData:   Too few / non-finite residuals or mismatched lengths.
        DegenerateGrouping: Every unit has exactly one replicate.
    """
    config = config or RemediationConfig()
    resid = np.asarray(residuals, dtype=float)

    if resid.ndim != 1 or len(resid) < MIN_RESIDUALS:
        raise InsufficientData(
            f"At least {MIN_RESIDUALS} residuals are needed to assess shape; got {resid.size}.",
            n_residuals=int(resid.size),
        )
    if not np.all(np.isfinite(resid)):
        raise InsufficientData("Residuals contain NaN or infinite values.")

    n = len(resid)
    if fitted_values is not None and len(fitted_values) != n:
        raise InsufficientData(
            f"fitted_values has {len(fitted_values)} entries but there are {n} residuals.",
            expected=n, received=len(fitted_values),
        )

    units = _labels(grouping, n, "grouping")
    var_groups = _labels(variance_groups, n, "variance_groups")
    if var_groups is None:
        var_groups = units

    shape            = classify_shape(resid, config)
    homoscedasticity = check_homoscedasticity(resid, var_groups, config)
    independence     = check_independence(units)
    normality        = check_normality(resid, shape, config)

    diagnosis = Diagnosis(
        n_residuals=n,
        linearity=shape,
        homoscedasticity=homoscedasticity,
        independence=independence,
        normality=normality,
        summary_message=_build_summary_message(shape, homoscedasticity, independence, normality),
    )
    logger.debug("Diagnosis on %d residuals: violated=%s", n, [a.value for a in diagnosis.violated])
    return diagnosis


def diagnose_model(
    model: FittedModel,
    grouping: Sequence | None = None,
    variance_groups: Sequence | None = None,
    config: RemediationConfig | None = None,
) -> Diagnosis:
    """Convenience wrapper — reads residuals and fitted values off a FittedModel."""
    return run_diagnostics(
        residuals=model.residuals,
        fitted_values=model.fitted_values,
        grouping=grouping,
        variance_groups=variance_groups,
        config=config,
    )


# ─────────────────────────────────────────────
# PRIVATE — BUILD SUMMARY MESSAGE
# ─────────────────────────────────────────────

def _build_summary_message(
    shape: LinearityResult,
    homoscedasticity: HomoscedasticityResult,
    independence: IndependenceResult,
    normality: NormalityResult,
) -> str:
    rows = [
        ("linearity",        shape.status == LinearityStatus.OK,                 shape.plain_reason),
        ("homoscedasticity", homoscedasticity.status == AssumptionStatus.OK,     homoscedasticity.plain_reason),
        ("independence",     independence.status == AssumptionStatus.OK,         independence.plain_reason),
        ("normality",        normality.status == AssumptionStatus.OK,            normality.plain_reason),
    ]
    lines = ["Residual diagnostics:"]
    for name, ok, reason in rows:
        icon = "✅" if ok else "❌"
        lines.append(f"{icon} **{name}**: {reason}")
    return "\n".join(lines)
