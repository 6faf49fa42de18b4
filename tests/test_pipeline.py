import numpy as np
import pandas as pd
import pytest

from conftest import ScriptedFitter, make_model, normal_scores, right_skewed
from regression_remedy.core.fitting_engine import StatsmodelsFitter
from regression_remedy.errors import FitNonConvergence
from regression_remedy.pipeline import build_graph, run_remediation
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.diagnosis import AssumptionStatus
from regression_remedy.schemas.model import (
    ClusteringStrategy,
    FamilyKind,
    FitRequest,
    LinkKind,
    ModelDesign,
    SupportKind,
    TransformKind,
)
from regression_remedy.schemas.report import TerminalState


def test_graph_compiles():
    assert build_graph() is not None


def test_right_skew_is_log_transformed_then_done(plain_data):
    fitter = ScriptedFitter([make_model(right_skewed(60)), make_model(normal_scores(60))])
    design = ModelDesign(response="y", predictors=["x"])

    report = run_remediation(plain_data, design, fitter)

    assert report.terminal_state == TerminalState.DONE
    assert report.succeeded
    assert report.iterations_used == 1
    assert len(report.attempted) == 1
    assert report.attempted[0].recommendation.transform == TransformKind.LOG
    assert report.attempted[0].outcome == "refitted"
    assert report.final_model_summary.transform == TransformKind.LOG

    refit_data, refit_request = fitter.calls[1]
    assert refit_request.transform == TransformKind.LOG
    assert refit_data["y"].tolist() == pytest.approx(np.log(plain_data["y"]).tolist())
    assert len(report.history) == 2


def test_satisfied_model_is_done_without_refit(plain_data):
    model = make_model(normal_scores(60))
    fitter = ScriptedFitter([])
    report = run_remediation(plain_data, ModelDesign(response="y", predictors=["x"]), fitter, initial_model=model)

    assert report.terminal_state == TerminalState.DONE
    assert report.iterations_used == 0
    assert report.diagnosis.all_assumptions_met
    assert fitter.calls == []


def test_iteration_limit_fails_with_attempts_listed(replicated_data):
    fitter = ScriptedFitter([make_model(right_skewed(24)), make_model(right_skewed(24))])
    design = ModelDesign(response="y", predictors=["x"], unit_key="tank")

    report = run_remediation(replicated_data, design, fitter, config=RemediationConfig(max_iterations=1))

    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.error_type == "IterationLimitExceeded"
    assert report.failure.category == "iteration_limit"
    assert report.iterations_used == 1
    assert [a.recommendation.kind for a in report.attempted] == ["clustering", "transform"]
    assert [a.outcome for a in report.attempted] == ["refitted", "skipped"]
    assert report.diagnosis is not None
    assert len(fitter.calls) == 2


def test_loop_terminates_within_max_iterations(replicated_data):
    outcomes = [make_model(right_skewed(24)) for _ in range(6)]
    fitter = ScriptedFitter(outcomes)
    design = ModelDesign(response="y", predictors=["x"], unit_key="tank")

    report = run_remediation(replicated_data, design, fitter, config=RemediationConfig(max_iterations=5))

    assert report.iterations_used <= 5
    assert report.terminal_state == TerminalState.DONE
    assert report.notes


def test_cancellation_keeps_last_diagnosis(plain_data):
    fitter = ScriptedFitter([make_model(right_skewed(60))])
    report = run_remediation(
        plain_data, ModelDesign(response="y", predictors=["x"]), fitter,
        cancel_check=lambda: True,
    )

    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.category == "cancelled"
    assert report.diagnosis is not None
    assert report.final_model_summary.transform == TransformKind.NONE
    assert len(fitter.calls) == 1


def test_reweighting_round_trip_clears_heteroscedasticity(two_site_data):
    before = np.concatenate([np.tile([3.0, -3.0], 8), np.tile([1.0, -1.0], 4)])
    after = np.concatenate([normal_scores(16), normal_scores(8)])
    fitter = ScriptedFitter([
        make_model(before, fitted=two_site_data["x"]),
        make_model(after, fitted=two_site_data["x"]),
    ])
    design = ModelDesign(response="y", predictors=["x"], variance_group="site")

    report = run_remediation(two_site_data, design, fitter)

    assert report.history[0].diagnosis.homoscedasticity.status == AssumptionStatus.VIOLATED
    assert report.diagnosis.homoscedasticity.status == AssumptionStatus.OK
    assert report.diagnosis.homoscedasticity.ratio <= 4.0
    assert report.terminal_state == TerminalState.DONE

    _, weighted_request = fitter.calls[1]
    assert weighted_request.weights[0] == pytest.approx(1 / 9)
    assert weighted_request.weights[-1] == pytest.approx(1.0)


def test_failed_random_effect_is_retried_as_block(replicated_data):
    fitter = ScriptedFitter([
        make_model(normal_scores(24)),
        FitNonConvergence("mixed model did not converge"),
        make_model(normal_scores(24)),
    ])
    design = ModelDesign(response="y", predictors=["x"], unit_key="tank")

    report = run_remediation(replicated_data, design, fitter)

    assert report.terminal_state == TerminalState.DONE
    assert report.attempted[0].outcome == "retried_simplified"
    assert fitter.calls[1][1].clustering_strategy == ClusteringStrategy.RANDOM_EFFECT
    assert fitter.calls[2][1].clustering_strategy == ClusteringStrategy.FIXED_BLOCK
    assert report.final_model_summary.clustering_strategy == ClusteringStrategy.FIXED_BLOCK


def test_refit_failure_without_simpler_model_fails(plain_data):
    fitter = ScriptedFitter([make_model(right_skewed(60)), FitNonConvergence("singular design")])
    report = run_remediation(plain_data, ModelDesign(response="y", predictors=["x"]), fitter)

    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.category == "external_fit"
    assert report.attempted[0].outcome == "failed"
    assert report.diagnosis.linearity.status.is_skew


def test_missing_column_is_reported_not_raised(plain_data):
    report = run_remediation(plain_data, ModelDesign(response="growth"), ScriptedFitter([]))
    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.error_type == "InsufficientData"


def test_too_few_residuals_fail_the_run():
    fitter = ScriptedFitter([])
    design = ModelDesign(response="y", predictors=["x"])
    data = pd.DataFrame({"x": [1.0, 2.0], "y": [1.0, 3.0]})
    report = run_remediation(data, design, fitter, initial_model=make_model([0.1, -0.1]))

    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.category == "input"


def test_report_serialises_to_json(plain_data):
    fitter = ScriptedFitter([make_model(right_skewed(60)), make_model(normal_scores(60))])
    report = run_remediation(plain_data, ModelDesign(response="y", predictors=["x"]), fitter)
    payload = report.model_dump_json()
    assert '"terminal_state":"done"' in payload
    assert '"kind":"transform"' in payload


def test_residual_count_must_match_rows(replicated_data):
    fitter = ScriptedFitter([])
    design = ModelDesign(response="y", predictors=["x"], unit_key="tank")

    report = run_remediation(replicated_data, design, fitter, initial_model=make_model(normal_scores(20)))

    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.error_type == "InsufficientData"
    assert report.failure.details == {"rows": 24, "residuals": 20}
    assert fitter.calls == []


def test_misaligned_refit_fails_instead_of_skipping_checks(replicated_data):
    fitter = ScriptedFitter([make_model(normal_scores(24)), make_model(normal_scores(20))])
    design = ModelDesign(response="y", predictors=["x"], unit_key="tank")

    report = run_remediation(replicated_data, design, fitter)

    assert report.terminal_state == TerminalState.FAILED
    assert report.failure.error_type == "InsufficientData"
    assert len(report.history) == 1


def test_failed_binomial_random_effect_is_retried_as_block(replicated_data):
    data = replicated_data.assign(alive=np.tile([0.0, 1.0, 0.0, 1.0], 6))
    design = ModelDesign(response="alive", predictors=["x"], unit_key="tank", support=SupportKind.BINARY)
    fitter = ScriptedFitter([
        make_model(normal_scores(24)),
        FitNonConvergence("GEE did not converge"),
        make_model(normal_scores(24)),
    ])

    report = run_remediation(
        data, design, fitter,
        initial_request=FitRequest(design=design, family=FamilyKind.BINOMIAL, link=LinkKind.LOGIT),
    )

    assert report.terminal_state == TerminalState.DONE
    assert report.attempted[0].outcome == "retried_simplified"
    _, retry_request = fitter.calls[2]
    assert retry_request.family == FamilyKind.BINOMIAL
    assert retry_request.clustering_strategy == ClusteringStrategy.FIXED_BLOCK
    assert report.final_model_summary.family == FamilyKind.BINOMIAL


def test_family_change_notes_dropped_weights(two_site_data):
    before = np.concatenate([np.tile([3.0, -3.0], 8), np.tile([1.0, -1.0], 4)])
    after = np.concatenate([normal_scores(16), normal_scores(8)])
    fitter = ScriptedFitter([
        make_model(before, fitted=two_site_data["x"]),
        make_model(right_skewed(24), fitted=two_site_data["x"]),
        make_model(after, fitted=two_site_data["x"]),
    ])
    design = ModelDesign(response="y", predictors=["x"], variance_group="site", support=SupportKind.COUNT)

    report = run_remediation(two_site_data, design, fitter)

    assert [a.recommendation.kind for a in report.attempted] == ["reweight", "family_change"]
    assert fitter.calls[1][1].weights is not None
    assert fitter.calls[2][1].weights is None
    assert any("weights" in note and "dropped" in note for note in report.notes)
    assert not report.final_model_summary.weighted


def _oyster_tanks(rng) -> pd.DataFrame:
    # 9 tanks x 3 oysters; each tank held at one temperature, dose varies within tank
    tank = np.repeat([f"T{i}" for i in range(9)], 3)
    temperature = np.repeat(["cold", "mid", "hot"], 9)
    dose = np.tile([0.5, 1.0, 2.0], 9)
    tank_effect = np.repeat(rng.permutation(normal_scores(9, scale=2.0)), 3)
    noise = rng.permutation(normal_scores(27, scale=0.5))
    base = pd.Series(temperature).map({"cold": 10.0, "mid": 12.0, "hot": 15.0}).to_numpy()
    growth = base + 1.5 * dose + tank_effect + noise
    return pd.DataFrame({"tank": tank, "temperature": temperature, "dose": dose, "growth": growth})


def test_oyster_design_is_refitted_with_tank_random_effect(rng):
    data = _oyster_tanks(rng)
    design = ModelDesign(response="growth", predictors=["temperature", "dose"], unit_key="tank")

    report = run_remediation(data, design, StatsmodelsFitter())

    assert report.terminal_state == TerminalState.DONE
    first = report.attempted[0]
    assert first.recommendation.kind == "clustering"
    assert first.recommendation.strategy == ClusteringStrategy.RANDOM_EFFECT
    assert first.recommendation.decision.confounded
    assert first.outcome in ("refitted", "retried_simplified")
    assert report.history[0].diagnosis.independence.status == AssumptionStatus.VIOLATED


def test_numeric_tank_treatment_is_never_fitted_as_block():
    data = pd.DataFrame({
        "tank": np.repeat(["T1", "T2", "T3"], 4),
        "temp": np.repeat([10.0, 15.0, 20.0], 4),
        "growth": [1.0, 1.2, 0.9, 1.1, 2.4, 2.7, 2.2, 2.5, 3.1, 2.9, 3.0, 3.2],
    })
    design = ModelDesign(response="growth", predictors=["temp"], unit_key="tank")

    report = run_remediation(data, design, StatsmodelsFitter())

    first = report.attempted[0]
    assert first.recommendation.strategy == ClusteringStrategy.AGGREGATE
    assert first.outcome == "refitted"
    assert not first.recommendation.decision.option(ClusteringStrategy.FIXED_BLOCK).feasible
    assert all(p.model_summary.clustering_strategy != ClusteringStrategy.FIXED_BLOCK for p in report.history)
    assert report.history[1].model_summary.n_obs == 3
