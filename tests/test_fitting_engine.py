import time
import warnings

import numpy as np
import pandas as pd
import pytest

from regression_remedy.core.fitting_engine import (
    ModelFitter,
    StatsmodelsFitter,
    build_formula,
    fit_with_timeout,
)
from regression_remedy.errors import FitNonConvergence, FitTimeout
from regression_remedy.schemas.model import (
    ClusteringStrategy,
    FamilyKind,
    FitRequest,
    LinkKind,
    ModelDesign,
)


@pytest.fixture()
def linear_data(rng):
    x = np.linspace(0.0, 10.0, 80)
    group = np.repeat([f"g{i}" for i in range(8)], 10)
    offsets = np.repeat(rng.normal(0.0, 2.0, size=8), 10)
    y = 2.0 + 3.0 * x + offsets + rng.normal(0.0, 1.0, size=80)
    return pd.DataFrame({"x": x, "y": y, "group": group})


def test_statsmodels_fitter_satisfies_protocol():
    assert isinstance(StatsmodelsFitter(), ModelFitter)


def test_build_formula_quotes_and_factors(linear_data):
    design = ModelDesign(response="y", predictors=["x", "group"])
    formula = build_formula(linear_data, FitRequest(design=design))
    assert formula == 'Q("y") ~ Q("x") + C(Q("group"))'

    block = FitRequest(
        design=ModelDesign(response="y", predictors=["x"]),
        clustering_strategy=ClusteringStrategy.FIXED_BLOCK,
        grouping_key="group",
    )
    assert build_formula(linear_data, block).endswith('+ C(Q("group"))')
    assert build_formula(linear_data, FitRequest(design=ModelDesign(response="y"))) == 'Q("y") ~ 1'


def test_ols_fit(linear_data):
    request = FitRequest(design=ModelDesign(response="y", predictors=["x"]))
    model = StatsmodelsFitter().fit(linear_data, request)
    assert len(model.residuals) == 80
    assert model.degrees_of_freedom == 78
    assert model.family == FamilyKind.GAUSSIAN
    assert not model.weighted
    assert abs(np.mean(model.residuals)) < 1e-8


def test_weighted_fit_reports_weighted_residuals(linear_data):
    weights = np.where(linear_data["x"] > 5, 0.25, 1.0)
    request = FitRequest(design=ModelDesign(response="y", predictors=["x"]), weights=weights.tolist())
    model = StatsmodelsFitter().fit(linear_data, request)
    assert model.weighted
    assert len(model.residuals) == 80


def test_random_intercept_fit(linear_data):
    request = FitRequest(
        design=ModelDesign(response="y", predictors=["x"], unit_key="group"),
        clustering_strategy=ClusteringStrategy.RANDOM_EFFECT,
        grouping_key="group",
    )
    model = StatsmodelsFitter().fit(linear_data, request)
    assert model.clustering_strategy == ClusteringStrategy.RANDOM_EFFECT
    assert model.grouping_key == "group"
    assert len(model.fitted_values) == 80


def test_poisson_glm_fit(rng):
    x = np.linspace(0.0, 2.0, 100)
    data = pd.DataFrame({"x": x, "count": rng.poisson(np.exp(0.5 + x))})
    request = FitRequest(
        design=ModelDesign(response="count", predictors=["x"]),
        family=FamilyKind.POISSON,
        link=LinkKind.LOG,
    )
    model = StatsmodelsFitter().fit(data, request)
    assert model.family == FamilyKind.POISSON
    assert model.aic is not None


def test_perfect_separation_is_non_convergence():
    x = np.arange(1.0, 21.0)
    data = pd.DataFrame({"x": x, "y": (x > 10).astype(float)})
    request = FitRequest(
        design=ModelDesign(response="y", predictors=["x"]),
        family=FamilyKind.BINOMIAL,
        link=LinkKind.LOGIT,
    )
    with pytest.raises(FitNonConvergence):
        StatsmodelsFitter().fit(data, request)


class _SlowFitter:
    def fit(self, data, request):
        time.sleep(1.0)
        raise AssertionError("should have timed out")


def test_fit_with_timeout_raises(linear_data):
    request = FitRequest(design=ModelDesign(response="y", predictors=["x"]))
    with pytest.raises(FitTimeout):
        fit_with_timeout(_SlowFitter(), linear_data, request, timeout=0.05)


def test_fit_without_timeout_runs_inline(linear_data):
    request = FitRequest(design=ModelDesign(response="y", predictors=["x"]))
    model = fit_with_timeout(StatsmodelsFitter(), linear_data, request, timeout=None)
    assert model.n_obs == 80


def _tank_temperature_frame(temp) -> pd.DataFrame:
    return pd.DataFrame({
        "tank": np.repeat(["T1", "T2", "T3"], 4),
        "temp": temp,
        "growth": [1.0, 1.2, 0.9, 1.1, 2.0, 2.3, 1.8, 2.1, 3.1, 2.9, 3.0, 3.2],
    })


def _block_request() -> FitRequest:
    return FitRequest(
        design=ModelDesign(response="growth", predictors=["temp"], unit_key="tank"),
        clustering_strategy=ClusteringStrategy.FIXED_BLOCK,
        grouping_key="tank",
    )


def test_block_on_unit_level_numeric_treatment_is_rejected():
    data = _tank_temperature_frame(np.repeat([10.0, 15.0, 20.0], 4))
    with pytest.raises(FitNonConvergence, match="rank-deficient"):
        StatsmodelsFitter().fit(data, _block_request())


def test_block_degrees_of_freedom_follow_rank():
    data = _tank_temperature_frame(np.tile([10.0, 15.0, 20.0, 25.0], 3))
    model = StatsmodelsFitter().fit(data, _block_request())
    # intercept + temp + 2 tank columns
    assert model.degrees_of_freedom == 12 - 4


def test_beta_fit(rng):
    x = np.linspace(-1.0, 1.0, 100)
    mu = 1.0 / (1.0 + np.exp(-(-0.5 + x)))
    data = pd.DataFrame({"x": x, "share": rng.beta(mu * 20.0, (1.0 - mu) * 20.0)})
    request = FitRequest(
        design=ModelDesign(response="share", predictors=["x"]),
        family=FamilyKind.BETA,
        link=LinkKind.LOGIT,
    )
    model = StatsmodelsFitter().fit(data, request)
    assert model.family == FamilyKind.BETA
    assert len(model.residuals) == 100
    # precision parameter counts against the residual df
    assert model.degrees_of_freedom == 100 - 2 - 1


def test_binomial_random_effect_uses_gee(rng):
    group = np.repeat([f"g{i}" for i in range(10)], 8)
    x = np.tile(np.linspace(-2.0, 2.0, 8), 10)
    effect = np.repeat(rng.normal(0.0, 0.5, size=10), 8)
    p = 1.0 / (1.0 + np.exp(-(0.3 + 1.2 * x + effect)))
    data = pd.DataFrame({"group": group, "x": x, "alive": rng.binomial(1, p).astype(float)})
    request = FitRequest(
        design=ModelDesign(response="alive", predictors=["x"], unit_key="group"),
        family=FamilyKind.BINOMIAL,
        link=LinkKind.LOGIT,
        clustering_strategy=ClusteringStrategy.RANDOM_EFFECT,
        grouping_key="group",
    )
    model = StatsmodelsFitter().fit(data, request)
    assert model.clustering_strategy == ClusteringStrategy.RANDOM_EFFECT
    assert model.family == FamilyKind.BINOMIAL
    assert len(model.residuals) == 80


def test_worker_thread_fit_leaves_warning_filters_alone():
    x = np.arange(1.0, 21.0)
    data = pd.DataFrame({"x": x, "y": (x > 10).astype(float)})
    request = FitRequest(
        design=ModelDesign(response="y", predictors=["x"]),
        family=FamilyKind.BINOMIAL,
        link=LinkKind.LOGIT,
    )
    before = list(warnings.filters)
    with pytest.raises(FitNonConvergence):
        fit_with_timeout(StatsmodelsFitter(), data, request, timeout=30.0)
    assert list(warnings.filters) == before
