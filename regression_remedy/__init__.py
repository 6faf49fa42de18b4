"""
regression_remedy
------------------
Diagnose which linear-model assumption a fitted regression violates and
choose, apply and re-check the matching remedy.

    from regression_remedy import ModelDesign, StatsmodelsFitter, run_remediation
    report = run_remediation(df, ModelDesign(response="y", predictors=["x"]), StatsmodelsFitter())
"""

import logging

from regression_remedy.core.clustering_engine import select_clustering_strategy
from regression_remedy.core.diagnostics_engine import run_diagnostics
from regression_remedy.core.family_engine import recommend_family
from regression_remedy.core.fitting_engine import ModelFitter, StatsmodelsFitter
from regression_remedy.core.transform_engine import recommend_transform
from regression_remedy.core.weighting_engine import compute_variance_weights
from regression_remedy.errors import RemediationError
from regression_remedy.pipeline import run_remediation
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.model import FitRequest, FittedModel, ModelDesign, SupportKind
from regression_remedy.schemas.report import DiagnosticReport, TerminalState

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "DiagnosticReport",
    "FitRequest",
    "FittedModel",
    "ModelDesign",
    "ModelFitter",
    "RemediationConfig",
    "RemediationError",
    "StatsmodelsFitter",
    "SupportKind",
    "TerminalState",
    "compute_variance_weights",
    "recommend_family",
    "recommend_transform",
    "run_diagnostics",
    "run_remediation",
    "select_clustering_strategy",
]
