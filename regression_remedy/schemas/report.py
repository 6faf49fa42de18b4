"""
FILE: schemas/report.py
------------------------
Serializable diagnostic report produced by the remediation pipeline.
Intended for a reporting/plotting collaborator — numbers and tags only.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from regression_remedy.schemas.diagnosis import Diagnosis
from regression_remedy.schemas.model import ModelSummary
from regression_remedy.schemas.recommendation import Recommendation


class TerminalState(str, Enum):
    DONE   = "done"     # assumptions satisfied or nothing further applicable
    FAILED = "failed"   # irrecoverable, see `failure`


class FailureRecord(BaseModel):
    category: str
    error_type: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class AttemptRecord(BaseModel):
    iteration: int                          # iteration the refit was requested in
    recommendation: Recommendation
    outcome: str = "pending"                # "refitted" | "retried_simplified" | "failed" | "skipped"
    note: str = ""


class PassRecord(BaseModel):
    iteration: int
    diagnosis: Diagnosis
    model_summary: ModelSummary


class DiagnosticReport(BaseModel):
    terminal_state: TerminalState

    # ── Last successful diagnostic pass ──
    diagnosis: Diagnosis | None = None
    recommendations: list[Recommendation] = Field(default_factory=list)
    final_model_summary: ModelSummary | None = None

    # ── Loop bookkeeping ──
    iterations_used: int = 0
    attempted: list[AttemptRecord] = Field(default_factory=list)
    history: list[PassRecord] = Field(default_factory=list)

    failure: FailureRecord | None = None
    notes: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.terminal_state == TerminalState.DONE
