"""
FILE: pipeline.py
------------------
LangGraph orchestrator for the remediation loop.
Wires the diagnostics engine, the advisors and the external fitter into
a StateGraph with conditional edges.

Pipeline flow:
  diagnosing
      ↓ (always)
  recommending
      ↓ if no actionable recommendation → done
      ↓ if cancel_check() is set         → failed (Cancelled)
      ↓ otherwise                         → refitting
  refitting
      ↓ on successful refit               → diagnosing   (iteration + 1)
      ↓ on fit failure after one retry,
        iteration bound, or domain error  → failed

State:
  RemediationState TypedDict — the current data, fit request and
  FittedModel (superseded on every refit, never mutated), the iteration
  counter, and the running history used to build the DiagnosticReport.
"""

import logging
from typing import Any, Callable, TypedDict

import pandas as pd
from langgraph.graph import END, StateGraph

from regression_remedy.core.diagnostics_engine import diagnose_model
from regression_remedy.core.fitting_engine import ModelFitter, fit_with_timeout
from regression_remedy.core.remediation_engine import (
    apply_recommendation,
    build_recommendations,
    select_next,
    simplify_request,
)
from regression_remedy.errors import (
    Cancelled,
    DomainError,
    ExternalFitError,
    InputError,
    InsufficientData,
    IterationLimitExceeded,
    RemediationError,
    StrategyInfeasible,
)
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.diagnosis import Assumption, Diagnosis
from regression_remedy.schemas.model import ClusteringStrategy, FitRequest, FittedModel, ModelDesign, summarize_model
from regression_remedy.schemas.report import (
    AttemptRecord,
    DiagnosticReport,
    FailureRecord,
    PassRecord,
    TerminalState,
)
from regression_remedy.utils.design import missing_columns

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# STATE SCHEMA
# ─────────────────────────────────────────────

class RemediationState(TypedDict, total=False):
    # ── Collaborators (set once) ──
    fitter:          Any                # ModelFitter
    config:          RemediationConfig
    cancel_check:    Any                # Callable[[], bool] | None

    # ── Current iteration's owned artifacts ──
    data:            Any                # pd.DataFrame the current model was fitted on
    request:         FitRequest
    model:           FittedModel
    iteration:       int

    # ── Pass outputs ──
    diagnosis:       Diagnosis | None
    recommendations: list
    pending:         Any                # Recommendation selected for the next refit
    resolved:        list[str]          # Assumption values whose remedy was applied

    # ── Report bookkeeping ──
    attempted:       list[AttemptRecord]
    history:         list[PassRecord]
    notes:           list[str]
    failure:         dict | None
    terminal_state:  str | None


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

def _fail(state: RemediationState, error: RemediationError) -> RemediationState:
    logger.warning("Remediation failed at iteration %d: %s", state.get("iteration", 0), error.message)
    return {**state, "failure": error.to_record()}


def _check_alignment(data: pd.DataFrame, model: FittedModel) -> None:
    """Residuals must line up one-to-one with the rows they were fitted on."""
    if len(data) != len(model.residuals):
        raise InsufficientData(
            f"Model has {len(model.residuals)} residual(s) for {len(data)} data row(s).",
            rows=len(data),
            residuals=len(model.residuals),
        )


def _diagnostic_labels(
    data: pd.DataFrame,
    request: FitRequest,
    model: FittedModel,
) -> tuple[pd.Series | None, pd.Series | None]:
    """
    Unit labels for the independence check (only while the unit structure
    is not yet modeled) and labels for variance groups.
    """
    _check_alignment(data, model)

    design = request.design
    units = None
    if design.unit_key and request.clustering_strategy is None:
        units = data[design.unit_key].reset_index(drop=True)

    var_col = design.variance_group or design.unit_key
    variance_groups = None
    if var_col and var_col in data.columns:
        variance_groups = data[var_col].reset_index(drop=True)

    return units, variance_groups


# ─────────────────────────────────────────────
# NODE FUNCTIONS
# ─────────────────────────────────────────────

def node_diagnosing(state: RemediationState) -> RemediationState:
    """Runs residual diagnostics on the current model."""
    try:
        units, variance_groups = _diagnostic_labels(state["data"], state["request"], state["model"])
        diagnosis = diagnose_model(state["model"], units, variance_groups, state["config"])
    except InputError as exc:
        return _fail(state, exc)

    iteration = state.get("iteration", 0)
    logger.info(
        "Iteration %d diagnosis: violated=%s", iteration,
        [a.value for a in diagnosis.violated] or "none",
    )
    history = [*state.get("history", []), PassRecord(
        iteration=iteration,
        diagnosis=diagnosis,
        model_summary=summarize_model(state["model"]),
    )]
    return {**state, "diagnosis": diagnosis, "history": history}


def node_recommending(state: RemediationState) -> RemediationState:
    """Builds recommendations and selects the next one to apply."""
    diagnosis = state["diagnosis"]
    config = state["config"]

    try:
        _, variance_groups = _diagnostic_labels(state["data"], state["request"], state["model"])
        recommendations, notes = build_recommendations(
            diagnosis=diagnosis,
            data=state["data"],
            request=state["request"],
            model=state["model"],
            config=config,
            resolved={Assumption(a) for a in state.get("resolved", [])},
            variance_groups=variance_groups,
        )
    except (DomainError, StrategyInfeasible, InputError) as exc:
        return _fail({**state, "recommendations": []}, exc)

    state = {
        **state,
        "recommendations": recommendations,
        "notes": [*state.get("notes", []), *notes],
        "pending": select_next(recommendations),
    }

    if state["pending"] is not None:
        cancel_check = state.get("cancel_check")
        if cancel_check is not None and cancel_check():
            return _fail(state, Cancelled("Cancelled before refitting.", iteration=state.get("iteration", 0)))
        logger.info("Next remedy: %s (%s)", state["pending"].kind, state["pending"].assumption.value)

    return state


def node_refitting(state: RemediationState) -> RemediationState:
    """Applies the pending recommendation and asks the external fitter for a new model."""
    config = state["config"]
    iteration = state.get("iteration", 0)
    recommendation = state["pending"]
    attempted = list(state.get("attempted", []))

    if iteration >= config.max_iterations:
        attempted.append(AttemptRecord(
            iteration=iteration + 1,
            recommendation=recommendation,
            outcome="skipped",
            note="iteration limit reached",
        ))
        return _fail({**state, "attempted": attempted}, IterationLimitExceeded(
            f"Iteration limit of {config.max_iterations} reached with unresolved recommendations.",
            max_iterations=config.max_iterations,
        ))

    try:
        data, request = apply_recommendation(recommendation, state["data"], state["request"])
    except DomainError as exc:
        attempted.append(AttemptRecord(iteration=iteration + 1, recommendation=recommendation, outcome="failed"))
        return _fail({**state, "attempted": attempted}, exc)

    record = AttemptRecord(iteration=iteration + 1, recommendation=recommendation, outcome="refitted")
    try:
        model = fit_with_timeout(state["fitter"], data, request, config.fit_timeout)
    except ExternalFitError as exc:
        simplified = simplify_request(recommendation, state["data"], request)
        if simplified is None:
            attempted.append(record.model_copy(update={"outcome": "failed", "note": exc.message}))
            return _fail({**state, "attempted": attempted}, exc)

        data, request, note = simplified
        logger.warning("%s (%s)", note, exc.message)
        try:
            model = fit_with_timeout(state["fitter"], data, request, config.fit_timeout)
        except ExternalFitError as retry_exc:
            attempted.append(record.model_copy(update={"outcome": "failed", "note": note}))
            return _fail({**state, "attempted": attempted}, retry_exc)
        record = record.model_copy(update={"outcome": "retried_simplified", "note": note})

    attempted.append(record)
    resolved = [*state.get("resolved", []), recommendation.assumption.value]
    notes = list(state.get("notes", []))
    if state["request"].weights is not None and request.weights is None:
        notes.append(
            "Observation weights from the earlier reweighting were dropped by the "
            f"{recommendation.kind} refit."
        )
    return {
        **state,
        "data":      data,
        "request":   request,
        "model":     model,
        "iteration": iteration + 1,
        "attempted": attempted,
        "resolved":  resolved,
        "notes":     notes,
        "pending":   None,
    }


def node_done(state: RemediationState) -> RemediationState:
    logger.info("Remediation done after %d iteration(s)", state.get("iteration", 0))
    return {**state, "terminal_state": TerminalState.DONE.value}


def node_failed(state: RemediationState) -> RemediationState:
    return {**state, "terminal_state": TerminalState.FAILED.value}


# ─────────────────────────────────────────────
# CONDITIONAL EDGE FUNCTIONS
# ─────────────────────────────────────────────

def route_after_diagnosing(state: RemediationState) -> str:
    if state.get("failure"):
        return "failed"
    return "recommending"


def route_after_recommending(state: RemediationState) -> str:
    """
    Routes after recommending:
      - Advisor raised / cancelled  → failed
      - Nothing actionable          → done
      - Otherwise                   → refitting
    """
    if state.get("failure"):
        return "failed"
    if state.get("pending") is None:
        return "done"
    return "refitting"


def route_after_refitting(state: RemediationState) -> str:
    if state.get("failure"):
        return "failed"
    return "diagnosing"


# ─────────────────────────────────────────────
# GRAPH CONSTRUCTION
# ─────────────────────────────────────────────

def build_graph():
    """Builds and compiles the remediation StateGraph."""
    builder = StateGraph(RemediationState)

    # ── Register nodes ──
    builder.add_node("diagnosing",   node_diagnosing)
    builder.add_node("recommending", node_recommending)
    builder.add_node("refitting",    node_refitting)
    builder.add_node("done",         node_done)
    builder.add_node("failed",       node_failed)

    # ── Entry point ──
    builder.set_entry_point("diagnosing")

    # ── Conditional edges ──
    builder.add_conditional_edges("diagnosing",   route_after_diagnosing)
    builder.add_conditional_edges("recommending", route_after_recommending)
    builder.add_conditional_edges("refitting",    route_after_refitting)

    # ── Terminal edges ──
    builder.add_edge("done",   END)
    builder.add_edge("failed", END)

    return builder.compile()


# Compiled once at import
graph = build_graph()


# ─────────────────────────────────────────────
# PUBLIC ENTRY POINT
# ─────────────────────────────────────────────

def run_remediation(
    data: pd.DataFrame,
    design: ModelDesign,
    fitter: ModelFitter,
    initial_model: FittedModel | None = None,
    config: RemediationConfig | None = None,
    cancel_check: Callable[[], bool] | None = None,
    initial_request: FitRequest | None = None,
) -> DiagnosticReport:
    """
    Main entry point for running the diagnose → recommend → refit loop.

    Args:
        data:            Observation set, one row per observation.
        design:          Column roles and declared response support.
        fitter:          External fitting capability (see ModelFitter).
        initial_model:   Caller's already-fitted model. When None the base
                         request is fitted first.
        config:          Thresholds and loop limits.
        cancel_check:    Evaluated before every refit; True → Cancelled.
        initial_request: Request describing initial_model, when it is not
                         the plain Gaussian fit of `design`.

    Returns:
        DiagnosticReport — terminal_state is "done" or "failed"; failures
        carry the last successful diagnosis and every attempted remedy.
    """
    config = config or RemediationConfig()
    request = initial_request or _request_for(design, initial_model)

    missing = missing_columns(data, design)
    if missing:
        return _failed_report(InsufficientData(f"Columns not found in data: {missing}", missing=missing))

    used = [c for c in dict.fromkeys([design.response, *design.predictors, design.unit_key, design.variance_group]) if c]
    if data[used].isna().any().any():
        return _failed_report(InsufficientData(
            "Data contain missing values in model columns; drop or impute them first.",
            columns=[c for c in used if data[c].isna().any()],
        ))

    data = data.reset_index(drop=True)
    if initial_model is None:
        try:
            initial_model = fit_with_timeout(fitter, data, request, config.fit_timeout)
        except ExternalFitError as exc:
            return _failed_report(exc)

    try:
        _check_alignment(data, initial_model)
    except InsufficientData as exc:
        return _failed_report(exc)

    initial_state: RemediationState = {
        "fitter":          fitter,
        "config":          config,
        "cancel_check":    cancel_check,
        "data":            data,
        "request":         request,
        "model":           initial_model,
        "iteration":       0,
        "diagnosis":       None,
        "recommendations": [],
        "pending":         None,
        "resolved":        [],
        "attempted":       [],
        "history":         [],
        "notes":           [],
        "failure":         None,
        "terminal_state":  None,
    }

    # 3 nodes per iteration plus the closing diagnose/recommend/terminal steps
    recursion_limit = 3 * (config.max_iterations + 2) + 10
    final_state = graph.invoke(initial_state, config={"recursion_limit": recursion_limit})
    return build_report(final_state)


def build_report(state: RemediationState) -> DiagnosticReport:
    failure = state.get("failure")
    model = state.get("model")
    return DiagnosticReport(
        terminal_state=TerminalState(state.get("terminal_state") or TerminalState.FAILED.value),
        diagnosis=state.get("diagnosis"),
        recommendations=state.get("recommendations", []),
        final_model_summary=summarize_model(model) if model is not None else None,
        iterations_used=state.get("iteration", 0),
        attempted=state.get("attempted", []),
        history=state.get("history", []),
        failure=FailureRecord(**failure) if failure else None,
        notes=state.get("notes", []),
    )


# ─────────────────────────────────────────────
# PRIVATE
# ─────────────────────────────────────────────

def _request_for(design: ModelDesign, model: FittedModel | None) -> FitRequest:
    if model is None:
        return FitRequest(design=design)
    strategy = model.clustering_strategy
    return FitRequest(
        design=design,
        family=model.family,
        link=model.link,
        transform=model.transform,
        clustering_strategy=strategy,
        grouping_key=model.grouping_key if strategy != ClusteringStrategy.AGGREGATE else None,
    )


def _failed_report(error: RemediationError) -> DiagnosticReport:
    logger.warning("Remediation could not start: %s", error.message)
    return DiagnosticReport(
        terminal_state=TerminalState.FAILED,
        failure=FailureRecord(**error.to_record()),
    )
