"""
FILE: errors.py
----------------
Structured error taxonomy shared by every engine.

Each error carries a category (input / domain / strategy / external_fit /
cancelled / iteration_limit) so the pipeline can decide whether to fall back,
retry or stop, and so the final report can say what went wrong without
parsing messages.

  RemediationError
    ├── InputError            — bad or degenerate data, caller must supply better data
    │     ├── InsufficientData
    │     ├── DegenerateGrouping
    │     └── NoGroupingPossible
    ├── DomainError           — transform/family/weights invalid for the data's support
    │     ├── TransformDomainError
    │     ├── FamilyDomainError
    │     └── UnstableWeights
    ├── StrategyInfeasible    — no valid remedy for non-independence
    │     └── NoValidStrategy
    ├── ExternalFitError      — solver failed
    │     ├── FitNonConvergence
    │     └── FitTimeout
    ├── Cancelled
    └── IterationLimitExceeded
"""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    INPUT           = "input"
    DOMAIN          = "domain"
    STRATEGY        = "strategy"
    EXTERNAL_FIT    = "external_fit"
    CANCELLED       = "cancelled"
    ITERATION_LIMIT = "iteration_limit"


class RemediationError(Exception):
    category: ErrorCategory = ErrorCategory.INPUT

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_record(self) -> dict[str, Any]:
        return {
            "category":   self.category.value,
            "error_type": type(self).__name__,
            "message":    self.message,
            "details":    {k: _jsonable(v) for k, v in self.details.items()},
        }


# ── Input errors ──

class InputError(RemediationError):
    category = ErrorCategory.INPUT


class InsufficientData(InputError):
    pass


class DegenerateGrouping(InputError):
    pass


class NoGroupingPossible(InputError):
    pass


# ── Domain errors ──

class DomainError(RemediationError):
    category = ErrorCategory.DOMAIN


class TransformDomainError(DomainError):
    pass


class FamilyDomainError(DomainError):
    pass


class UnstableWeights(DomainError):
    pass


# ── Strategy errors ──

class StrategyInfeasible(RemediationError):
    category = ErrorCategory.STRATEGY


class NoValidStrategy(StrategyInfeasible):
    pass


# ── External fit errors ──

class ExternalFitError(RemediationError):
    category = ErrorCategory.EXTERNAL_FIT


class FitNonConvergence(ExternalFitError):
    pass


class FitTimeout(ExternalFitError):
    pass


# ── Control flow ──

class Cancelled(RemediationError):
    category = ErrorCategory.CANCELLED


class IterationLimitExceeded(RemediationError):
    category = ErrorCategory.ITERATION_LIMIT


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)
