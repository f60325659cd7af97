"""
NVDRS IPV Detection Orchestrator

Command-line entry point for running classification experiments and
inspecting their results.

Usage:
    python -m nvdrs_ipv.orchestrator run --input narratives.csv      # New experiment
    python -m nvdrs_ipv.orchestrator run --input narratives.csv --experiment-id <id>  # Resume
    python -m nvdrs_ipv.orchestrator status                          # List experiments
    python -m nvdrs_ipv.orchestrator status --experiment-id <id>     # One experiment
    python -m nvdrs_ipv.orchestrator verdicts --experiment-id <id>   # Case-level verdicts
    python -m nvdrs_ipv.orchestrator register-prompt                 # Register configured prompt
    python -m nvdrs_ipv.orchestrator disagreements --experiment-id <id>  # Verdicts vs manual flags
    python -m nvdrs_ipv.orchestrator compare --experiment-id <a> <b>   # Metrics side by side
    python -m nvdrs_ipv.orchestrator errors                            # Failed results by message
    python -m nvdrs_ipv.orchestrator unlock --experiment-id <id>     # Clear a stale resume lock
"""

import argparse
import json
import logging
import os
import signal
import sys

from pydantic import ValidationError

from nvdrs_ipv import pipeline
from nvdrs_ipv.config import Config, load_config
from nvdrs_ipv.experiments import (
    ExperimentLockedError,
    ExperimentNotFoundError,
    ExperimentStateError,
    ExperimentTracker,
)
from nvdrs_ipv.narratives import load_narratives_csv
from nvdrs_ipv.reconciliation import calculate_agreement, reconcile_experiment
from nvdrs_ipv.storage import IPVStorage, SchemaVersionError

logger = logging.getLogger(__name__)


def _configure_logging(config: Config):
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=config.logging.format,
    )


def _fmt(value, digits: int = 3) -> str:
    if value is None:
        return "NA"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def cmd_run(args, config: Config):
    """Run (or resume) an experiment over a CSV of narratives."""
    if args.max_items is not None:
        config.pipeline.max_items = args.max_items

    stop_requested = {"flag": False}

    def _on_sigint(signum, frame):
        if stop_requested["flag"]:
            raise KeyboardInterrupt
        stop_requested["flag"] = True
        print("\n  Stop requested; finishing the current batch (Ctrl-C again to abort).")

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        summary = pipeline.run(
            config,
            load_narratives_csv(args.input),
            experiment_id=args.experiment_id,
            should_stop=lambda: stop_requested["flag"],
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    print(f"\nExperiment: {summary.experiment_id}")
    print(f"  Status:            {summary.status}")
    print(f"  Narratives:        {summary.n_total}")
    print(f"  Processed:         {summary.processed}")
    print(f"  Skipped (stored):  {summary.skipped_duplicate}")
    print(f"  Skipped (empty):   {summary.skipped_empty}")
    print(f"  Storage errors:    {summary.errored}")
    print(f"  LLM failures:      {summary.llm_failures}")
    print(f"  Parse failures:    {summary.parse_failures}")
    if summary.stopped_early:
        print("\n  Run stopped early. Resume with:")
        print(f"    python -m nvdrs_ipv.orchestrator run --input {args.input} "
              f"--experiment-id {summary.experiment_id}")


def cmd_status(args, config: Config):
    """Show experiments, or the details of one."""
    with IPVStorage(config.storage.database_url) as storage:
        if not args.experiment_id:
            experiments = storage.list_experiments()
            if not experiments:
                print("No experiments found. Start one with:")
                print("  python -m nvdrs_ipv.orchestrator run --input narratives.csv")
                return
            print("\n  Experiments:")
            for exp in experiments:
                icon = {"completed": "✅", "running": "🔄", "failed": "❌"}.get(exp.status, "⬜")
                print(f"    {icon} {exp.id}  {exp.name}  {exp.model}  "
                      f"{exp.n_processed}/{_fmt(exp.n_total)}  {exp.started_at}")
            return

        exp = ExperimentTracker(storage).get(args.experiment_id)
        prompt = storage.get_prompt_version(exp.prompt_version_id)
        print(f"Experiment: {exp.id}")
        print(f"  Name:        {exp.name}")
        print(f"  Model:       {exp.model}")
        print(f"  Prompt:      {exp.prompt_version_id}"
              + (f" ({prompt.version_tag})" if prompt and prompt.version_tag else ""))
        print(f"  Dataset:     {_fmt(exp.dataset_name)}")
        print(f"  Status:      {exp.status}")
        print(f"  Progress:    {exp.n_processed}/{_fmt(exp.n_total)}")
        print(f"  Started:     {exp.started_at}")
        print(f"  Finished:    {_fmt(exp.completed_at)}")
        if exp.error_message:
            print(f"  Error:       {exp.error_message}")
        if exp.metrics:
            print("\n  Metrics:")
            for key, value in exp.metrics.items():
                print(f"    {key:<22} {_fmt(value)}")


def cmd_verdicts(args, config: Config):
    """Reconcile the two sources of every case and print the verdicts."""
    with IPVStorage(config.storage.database_url) as storage:
        ExperimentTracker(storage).get(args.experiment_id)
        verdicts = reconcile_experiment(storage, args.experiment_id, config.reconciliation)

    if args.format == "json":
        print(json.dumps({
            "verdicts": [v.model_dump() for v in verdicts],
            "agreement": calculate_agreement(verdicts),
        }, indent=2))
        return

    print(f"\n  {'case_id':<16} {'final':<7} {'conf':<6} {'conflict':<9} primary / secondary")
    for v in verdicts:
        print(
            f"  {v.case_id:<16} {_fmt(v.final_detected):<7} {_fmt(v.final_confidence, 2):<6} "
            f"{'yes' if v.conflict_flag else 'no':<9} "
            f"{_fmt(v.primary_detected)}({_fmt(v.primary_confidence, 2)}) / "
            f"{_fmt(v.secondary_detected)}({_fmt(v.secondary_confidence, 2)})"
        )

    agreement = calculate_agreement(verdicts)
    print("\n  Source agreement:")
    print(f"    Cases with both sources: {agreement['n']}")
    print(f"    Agreement rate:          {_fmt(agreement['agreement_rate'])}")
    print(f"    Both positive:           {agreement['both_positive']}")
    print(f"    Both negative:           {agreement['both_negative']}")
    print(f"    Primary only:            {agreement['primary_only']}")
    print(f"    Secondary only:          {agreement['secondary_only']}")


def cmd_register_prompt(args, config: Config):
    """Register the configured prompt and print its version id."""
    with IPVStorage(config.storage.database_url) as storage:
        prompt_id = ExperimentTracker(storage).register_prompt(
            config.prompt.system_prompt,
            config.prompt.user_template,
            version_tag=config.prompt.version_tag,
            notes=args.notes,
        )
    print(f"Prompt version: {prompt_id}")


def cmd_disagreements(args, config: Config):
    """List results whose verdict contradicts the manual flag."""
    with IPVStorage(config.storage.database_url) as storage:
        ExperimentTracker(storage).get(args.experiment_id)
        results = storage.find_disagreements(args.experiment_id, args.type, args.narrative_type)

    if not results:
        print("No disagreements with manual flags.")
        return
    print(f"\n  {len(results)} disagreements:")
    for r in results:
        kind = "FP" if r.detected else "FN"
        preview = (r.narrative_text or "")[:80].replace("\n", " ")
        print(f"    {kind}  {r.case_id:<16} {r.narrative_type:<9} conf {_fmt(r.confidence, 2):<5} {preview}")
        if r.rationale:
            print(f"        {r.rationale}")


def cmd_compare(args, config: Config):
    """Show metrics of several experiments side by side."""
    with IPVStorage(config.storage.database_url) as storage:
        rows = ExperimentTracker(storage).compare(args.experiment_id)

    print(f"\n  {'experiment':<38} {'model':<24} {'acc':<6} {'prec':<6} {'rec':<6} {'f1':<6} errors")
    for row in rows:
        print(
            f"  {row['id']:<38} {row['model'][:24]:<24} {_fmt(row['accuracy']):<6} "
            f"{_fmt(row['precision']):<6} {_fmt(row['recall']):<6} {_fmt(row['f1']):<6} "
            f"{_fmt(row['n_errors'])}"
        )


def cmd_errors(args, config: Config):
    """Count failed results by error message."""
    with IPVStorage(config.storage.database_url) as storage:
        rows = storage.error_summary(args.experiment_id)

    if not rows:
        print("No failed results.")
        return
    print("\n  Failed results:")
    for row in rows:
        print(f"    {row['experiment_id']}  {row['n']:>5}  {_fmt(row['error_message'])}")


def cmd_unlock(args, config: Config):
    """Clear a resume lock left behind by a process that is gone."""
    with IPVStorage(config.storage.database_url) as storage:
        held = storage.get_resume_lock(args.experiment_id)
        if held is None:
            print(f"Experiment {args.experiment_id} is not locked.")
            return
        ExperimentTracker(storage).release_lock(args.experiment_id)
    print(f"Released lock on {args.experiment_id} (was held by {held['owner']}).")


def main():
    parser = argparse.ArgumentParser(description="NVDRS IPV Detection Orchestrator")
    subparsers = parser.add_subparsers(dest="command")

    # Run
    run_parser = subparsers.add_parser("run", help="Run or resume an experiment")
    run_parser.add_argument("--input", required=True, help="CSV file of narratives")
    run_parser.add_argument("--experiment-id", default=None, help="Resume this experiment")
    run_parser.add_argument("--max-items", type=int, default=None, help="Process at most N narratives")
    run_parser.add_argument("--config", default="config.yaml")

    # Status
    status_parser = subparsers.add_parser("status", help="View experiments")
    status_parser.add_argument("--experiment-id", default=None)
    status_parser.add_argument("--config", default="config.yaml")

    # Verdicts
    verdicts_parser = subparsers.add_parser("verdicts", help="Reconciled case verdicts")
    verdicts_parser.add_argument("--experiment-id", required=True)
    verdicts_parser.add_argument("--format", default="table", choices=["table", "json"])
    verdicts_parser.add_argument("--config", default="config.yaml")

    # Register prompt
    prompt_parser = subparsers.add_parser("register-prompt", help="Register the configured prompt")
    prompt_parser.add_argument("--notes", default=None)
    prompt_parser.add_argument("--config", default="config.yaml")

    # Disagreements
    dis_parser = subparsers.add_parser("disagreements", help="Results contradicting manual flags")
    dis_parser.add_argument("--experiment-id", required=True)
    dis_parser.add_argument("--type", default="both", choices=["false_positive", "false_negative", "both"])
    dis_parser.add_argument("--narrative-type", default=None, choices=["primary", "secondary"])
    dis_parser.add_argument("--config", default="config.yaml")

    # Compare
    compare_parser = subparsers.add_parser("compare", help="Compare experiment metrics")
    compare_parser.add_argument("--experiment-id", required=True, nargs="+")
    compare_parser.add_argument("--config", default="config.yaml")

    # Errors
    errors_parser = subparsers.add_parser("errors", help="Failed results by error message")
    errors_parser.add_argument("--experiment-id", default=None)
    errors_parser.add_argument("--config", default="config.yaml")

    # Unlock
    unlock_parser = subparsers.add_parser("unlock", help="Clear a stale resume lock")
    unlock_parser.add_argument("--experiment-id", required=True)
    unlock_parser.add_argument("--config", default="config.yaml")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    config_path = getattr(args, "config", "config.yaml")
    if not os.path.exists(config_path):
        print(f"Config file not found: {config_path}")
        print("Copy config.yaml.example to config.yaml and edit it.")
        return

    try:
        config = load_config(config_path)
    except (ValidationError, ValueError) as e:
        print(f"Invalid config {config_path}:\n{e}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(config)

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "verdicts": cmd_verdicts,
        "register-prompt": cmd_register_prompt,
        "disagreements": cmd_disagreements,
        "compare": cmd_compare,
        "errors": cmd_errors,
        "unlock": cmd_unlock,
    }

    try:
        commands[args.command](args, config)
    except SchemaVersionError as e:
        logger.error("%s", e)
        sys.exit(1)
    except (ExperimentNotFoundError, ExperimentStateError, ExperimentLockedError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
