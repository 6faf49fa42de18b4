import numpy as np
import pandas as pd
import pytest
from scipy import stats

from regression_remedy.schemas.model import FitRequest, FittedModel


def normal_scores(n: int, scale: float = 1.0) -> np.ndarray:
    """Exact normal quantiles: symmetric, no sampling noise in skew/kurtosis."""
    return scale * stats.norm.ppf((np.arange(1, n + 1) - 0.5) / n)


def right_skewed(n: int) -> np.ndarray:
    """Two-point residuals, 1/6 of them large and positive (skewness ~1.79)."""
    k = n // 6
    return np.concatenate([np.full(n - k, -0.2), np.full(k, 1.0)])


def make_model(residuals, fitted=None, **kwargs) -> FittedModel:
    residuals = np.asarray(residuals, dtype=float)
    if fitted is None:
        fitted = np.full(len(residuals), 10.0)
    return FittedModel(
        residuals=residuals.tolist(),
        fitted_values=np.asarray(fitted, dtype=float).tolist(),
        degrees_of_freedom=len(residuals) - 2,
        n_obs=len(residuals),
        **kwargs,
    )


class ScriptedFitter:
    """
    ModelFitter returning pre-built models (or raising pre-built errors)
    in order, and recording every (data, request) it was asked to fit.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[pd.DataFrame, FitRequest]] = []

    def fit(self, data: pd.DataFrame, request: FitRequest) -> FittedModel:
        self.calls.append((data.copy(), request))
        if not self.outcomes:
            raise AssertionError("ScriptedFitter ran out of outcomes")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome.model_copy(update={
            "family": request.family,
            "link": request.link,
            "transform": request.transform,
            "weighted": request.weights is not None,
            "clustering_strategy": request.clustering_strategy,
            "grouping_key": request.grouping_key,
        })


@pytest.fixture()
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture()
def plain_data() -> pd.DataFrame:
    """60 independent rows with a strictly positive response."""
    x = np.arange(1, 61, dtype=float)
    return pd.DataFrame({"x": x, "y": 5.0 + 0.5 * x})


@pytest.fixture()
def replicated_data() -> pd.DataFrame:
    """6 tanks x 4 replicates, numeric predictor, positive response."""
    tank = np.repeat([f"T{i}" for i in range(6)], 4)
    x = np.tile([1.0, 2.0, 3.0, 4.0], 6)
    y = 3.0 + x + np.repeat(np.arange(6, dtype=float), 4)
    return pd.DataFrame({"tank": tank, "x": x, "y": y})


@pytest.fixture()
def two_site_data() -> pd.DataFrame:
    """Site A (16 rows, fitted ~10) and site B (8 rows, fitted ~2)."""
    site = ["A"] * 16 + ["B"] * 8
    x = np.concatenate([np.full(16, 10.0), np.full(8, 2.0)])
    return pd.DataFrame({"site": site, "x": x, "y": x + 1.0})
