"""
FILE: core/fitting_engine.py
-----------------------------
The external model-fitting capability, as seen by the pipeline.

ModelFitter is the only interface the remediation pipeline talks to:
    fit(data, request) -> FittedModel    (raises ExternalFitError)

StatsmodelsFitter is the shipped implementation:
    gaussian, no weights     → OLS
    gaussian, weights        → WLS (weighted residuals reported)
    gaussian, random effect  → MixedLM random intercept
    binomial / poisson       → GLM (deviance residuals reported)
    binomial / poisson + RE  → GEE, exchangeable working correlation
    beta                     → BetaModel (Pearson residuals reported)
    fixed-effect block       → unit added as a categorical term

fit_with_timeout() enforces the caller's time limit on any fitter.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.othermod.betareg import BetaModel
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from regression_remedy.errors import FitNonConvergence, FitTimeout
from regression_remedy.schemas.model import (
    ClusteringStrategy,
    FamilyKind,
    FitRequest,
    FittedModel,
    LinkKind,
)
from regression_remedy.utils.design import is_categorical

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# PROTOCOL
# ─────────────────────────────────────────────

@runtime_checkable
class ModelFitter(Protocol):
    """Fit model of kind K with config C on data D."""

    def fit(self, data: pd.DataFrame, request: FitRequest) -> FittedModel:
        ...


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

def _quoted(col: str) -> str:
    return f'Q("{col}")'


def build_formula(data: pd.DataFrame, request: FitRequest) -> str:
    """Patsy formula for the request; unit joins as a factor for fixed-effect blocks."""
    design = request.design
    terms = []
    for col in design.predictors:
        term = _quoted(col)
        terms.append(f"C({term})" if is_categorical(data[col]) else term)

    if request.clustering_strategy == ClusteringStrategy.FIXED_BLOCK and request.grouping_key:
        terms.append(f"C({_quoted(request.grouping_key)})")

    rhs = " + ".join(terms) if terms else "1"
    return f"{_quoted(design.response)} ~ {rhs}"


def _glm_family(family: FamilyKind, link: LinkKind) -> sm.families.Family:
    links = {
        LinkKind.IDENTITY: sm.families.links.Identity,
        LinkKind.LOGIT:    sm.families.links.Logit,
        LinkKind.LOG:      sm.families.links.Log,
    }
    if family == FamilyKind.BINOMIAL:
        return sm.families.Binomial(link=links[link]())
    if family == FamilyKind.POISSON:
        return sm.families.Poisson(link=links[link]())
    return sm.families.Gaussian(link=links[link]())


def _perfectly_separated(result) -> bool:
    """Fitted probabilities reproduce the 0/1 response: coefficients are unbounded."""
    endog = np.asarray(result.model.endog, dtype=float).squeeze()
    if endog.ndim != 1:
        return False
    mu = np.asarray(result.fittedvalues, dtype=float)
    return bool(np.allclose(mu, endog, atol=1e-6))


def _finite_or_none(value) -> float | None:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if np.isfinite(value) else None


# ─────────────────────────────────────────────
# STATSMODELS ADAPTER
# ─────────────────────────────────────────────

class StatsmodelsFitter:
    """ModelFitter backed by statsmodels' formula API."""

    def __init__(self, reml: bool = True, maxiter: int = 200) -> None:
        self.reml = reml
        self.maxiter = maxiter

    def fit(self, data: pd.DataFrame, request: FitRequest) -> FittedModel:
        formula = build_formula(data, request)
        logger.debug("Fitting %s/%s: %s", request.family.value, request.link.value, formula)

        try:
            result, residuals, converged = self._dispatch_fit(data, request, formula)
        except (np.linalg.LinAlgError, PerfectSeparationError, ValueError) as exc:
            raise FitNonConvergence(
                f"{request.family.value} fit failed: {exc}",
                formula=formula,
            ) from exc

        if request.family == FamilyKind.BINOMIAL and _perfectly_separated(result):
            converged = False

        if not converged:
            raise FitNonConvergence(
                f"{request.family.value} fit did not converge.",
                formula=formula,
                clustering_strategy=request.clustering_strategy,
            )

        exog = np.asarray(result.model.exog, dtype=float)
        rank = int(np.linalg.matrix_rank(exog))
        if rank < exog.shape[1]:
            raise FitNonConvergence(
                f"Design matrix is rank-deficient ({rank} of {exog.shape[1]} columns); "
                "some coefficients are not identified.",
                formula=formula,
                rank=rank,
                columns=exog.shape[1],
            )

        residuals = np.asarray(residuals, dtype=float)
        fitted = np.asarray(result.fittedvalues, dtype=float)
        n = len(residuals)
        # precision or random-effect variance parameters
        extra = len(result.params) - exog.shape[1]
        return FittedModel(
            residuals=residuals.tolist(),
            fitted_values=fitted.tolist(),
            degrees_of_freedom=int(n - rank - extra),
            family=request.family,
            link=request.link,
            grouping_key=request.grouping_key,
            transform=request.transform,
            weighted=request.weights is not None,
            clustering_strategy=request.clustering_strategy,
            n_obs=n,
            converged=True,
            aic=_finite_or_none(getattr(result, "aic", None)),
        )

    def _dispatch_fit(self, data: pd.DataFrame, request: FitRequest, formula: str):
        """Returns (result, residuals, converged)."""
        random_effect = request.clustering_strategy == ClusteringStrategy.RANDOM_EFFECT
        weights = None if request.weights is None else np.asarray(request.weights, dtype=float)

        if random_effect and request.grouping_key is None:
            raise ValueError("random-effect fit requested without a grouping key")

        if request.family == FamilyKind.GAUSSIAN:
            if random_effect:
                if weights is not None:
                    raise ValueError("weights are not supported with a random effect")
                result = smf.mixedlm(formula, data, groups=data[request.grouping_key]).fit(
                    reml=self.reml, maxiter=self.maxiter,
                )
                return result, result.resid, bool(result.converged)
            if weights is not None:
                result = smf.wls(formula, data, weights=weights).fit()
                return result, result.wresid, True
            result = smf.ols(formula, data).fit()
            return result, result.resid, True

        if request.family in (FamilyKind.BINOMIAL, FamilyKind.POISSON):
            family = _glm_family(request.family, request.link)
            if random_effect:
                result = smf.gee(
                    formula, groups=request.grouping_key, data=data, family=family,
                    cov_struct=sm.cov_struct.Exchangeable(),
                ).fit(maxiter=self.maxiter)
                return result, result.resid_pearson, bool(getattr(result, "converged", True))
            result = smf.glm(formula, data, family=family, var_weights=weights).fit(maxiter=self.maxiter)
            return result, result.resid_deviance, bool(getattr(result, "converged", True))

        if request.family == FamilyKind.BETA:
            if weights is not None:
                logger.warning("Beta regression ignores observation weights")
            result = BetaModel.from_formula(formula, data).fit(disp=0, maxiter=self.maxiter)
            converged = bool(result.mle_retvals.get("converged", True))
            return result, result.resid_pearson, converged

        raise ValueError(f"Unsupported family: {request.family}")


# ─────────────────────────────────────────────
# TIMEOUT WRAPPER
# ─────────────────────────────────────────────

def fit_with_timeout(
    fitter: ModelFitter,
    data: pd.DataFrame,
    request: FitRequest,
    timeout: float | None,
) -> FittedModel:
    """
    Runs fitter.fit() on a single worker thread and raises FitTimeout once
    `timeout` seconds pass. The abandoned fit is left to finish in the
    background; its result is discarded.
    """
    if timeout is None:
        return fitter.fit(data, request)

    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fitter.fit, data, request)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        raise FitTimeout(
            f"Model fit exceeded {timeout:g}s.",
            timeout=timeout,
            family=request.family,
        ) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
