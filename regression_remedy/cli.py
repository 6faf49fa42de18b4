"""
FILE: cli.py
-------------
Command-line runner.

Usage:
  regression-remedy data.csv --response y --predictors dose sex --unit-key tank

Loads the CSV, fits the initial Gaussian model with StatsmodelsFitter, runs
the remediation pipeline and prints the DiagnosticReport as JSON.

Exit codes:
  0 — terminal state "done"
  1 — terminal state "failed"
  2 — usage error (bad arguments, unreadable CSV)
"""

import argparse
import logging
import sys

import pandas as pd
from pydantic import ValidationError

from regression_remedy.core.fitting_engine import StatsmodelsFitter
from regression_remedy.pipeline import run_remediation
from regression_remedy.schemas.config import RemediationConfig
from regression_remedy.schemas.model import ModelDesign, SupportKind
from regression_remedy.schemas.report import TerminalState

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="regression-remedy",
        description="Diagnose regression assumption violations and apply the matching remedy.",
    )
    parser.add_argument("csv_path", help="observation set, one row per observation")
    parser.add_argument("--response", required=True, help="response column")
    parser.add_argument("--predictors", nargs="*", default=[], help="predictor columns")
    parser.add_argument("--treatment-factors", nargs="*", default=None,
                        help="categorical predictors a unit may be confounded with (default: all categorical)")
    parser.add_argument("--unit-key", default=None, help="column identifying the experimental unit")
    parser.add_argument("--variance-group", default=None, help="column defining variance groups (default: unit key)")
    parser.add_argument("--support", default=SupportKind.CONTINUOUS.value,
                        choices=[s.value for s in SupportKind], help="declared response support")
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument("--fit-timeout", type=float, default=None, help="seconds per fit")
    parser.add_argument("--no-rank-fallback", action="store_true",
                        help="fail instead of falling back to a rank transform")
    parser.add_argument("--no-clip-weights", action="store_true",
                        help="fail instead of clipping unstable variance weights")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        data = pd.read_csv(args.csv_path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        print(f"Could not read {args.csv_path}: {exc}", file=sys.stderr)
        return 2

    overrides = {"allow_rank_fallback": not args.no_rank_fallback,
                 "clip_unstable_weights": not args.no_clip_weights}
    if args.max_iterations is not None:
        overrides["max_iterations"] = args.max_iterations
    if args.fit_timeout is not None:
        overrides["fit_timeout"] = args.fit_timeout

    try:
        config = RemediationConfig(**overrides)
        design = ModelDesign(
            response=args.response,
            predictors=args.predictors,
            treatment_factors=args.treatment_factors,
            unit_key=args.unit_key,
            variance_group=args.variance_group,
            support=SupportKind(args.support),
        )
    except ValidationError as exc:
        print(f"Invalid arguments:\n{exc}", file=sys.stderr)
        return 2

    logger.info("Running remediation on %s (%d rows)", args.csv_path, len(data))
    report = run_remediation(data, design, StatsmodelsFitter(), config=config)
    print(report.model_dump_json(indent=2))
    return 0 if report.terminal_state == TerminalState.DONE else 1
