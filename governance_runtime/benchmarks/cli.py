#!/usr/bin/env python3
"""
governance-reliability-gates

Replays the reliability corpus through the repair loop, writes the JSON
report and prints a short summary. With --enforce-thresholds the exit code
is 1 when any gate metric falls below its threshold.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

from governance_runtime.benchmarks.reliability_corpus import (
    ReliabilityCorpusError,
    load_reliability_fixture_corpus,
    resolve_cli_path,
)
from governance_runtime.benchmarks.reliability_gates import (
    ReliabilityThresholdsError,
    build_reliability_report,
    load_threshold_config,
)
from governance_runtime.core.config import settings
from governance_runtime.core.logging import setup_logging

DEFAULT_REPORT_PATH = Path("reports") / "reliability-gates-report.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="governance-reliability-gates",
        description="Evaluate repair-loop reliability gates against a fixture corpus",
    )
    parser.add_argument("--config", default=None, help="Path to the failure corpus JSON")
    parser.add_argument("--thresholds", default=None, help="Path to the gate thresholds JSON")
    parser.add_argument(
        "--out",
        default=None,
        help=f"Path to write the JSON report (default: {DEFAULT_REPORT_PATH})",
    )
    parser.add_argument("--feedback-tensor-out", default=None, help="Append repair FeedbackTensor records (NDJSON)")
    parser.add_argument("--trace-inspection-out", default=None, help="Append repair trace inspection records (NDJSON)")
    parser.add_argument(
        "--trace-inspection-report-out",
        default=None,
        help="Append human-readable repair trace inspection reports",
    )
    parser.add_argument(
        "--enforce-thresholds",
        action="store_true",
        help="Exit with status 1 when a gate metric is below threshold",
    )
    return parser


def _sink_paths(args: argparse.Namespace) -> Dict[str, Optional[str]]:
    """Explicit flags win over GOVERNANCE_* settings."""
    return {
        "feedback_tensor_path": args.feedback_tensor_out or settings.feedback_tensor_path,
        "trace_inspection_path": args.trace_inspection_out or settings.trace_inspection_path,
        "trace_inspection_report_path": args.trace_inspection_report_out or settings.trace_inspection_report_path,
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    try:
        _, corpus = load_reliability_fixture_corpus(args.config)
        thresholds = load_threshold_config(args.thresholds)
        report = build_reliability_report(corpus, thresholds, sink_paths=_sink_paths(args))
    except (ReliabilityCorpusError, ReliabilityThresholdsError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    output_path = resolve_cli_path(args.out, DEFAULT_REPORT_PATH.resolve())
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
        f.write("\n")

    gate_pass = report["aggregate"]["gates"]["pass"]
    ok = gate_pass if args.enforce_thresholds else True
    summary = {
        "ok": ok,
        "report_path": str(output_path),
        "fixture_count": report["fixture_count"],
        "gate_pass": gate_pass,
        "failed_metrics": report["aggregate"]["gates"]["failed_metrics"],
    }
    print(json.dumps(summary, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
