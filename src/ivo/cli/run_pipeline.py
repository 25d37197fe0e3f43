"""CLI for driving a unit through the generation pipeline.

Usage:
    python -m ivo.cli.run_pipeline run --unit-id UNIT_ID
    python -m ivo.cli.run_pipeline run-from --unit-id UNIT_ID --stage assessments
    python -m ivo.cli.run_pipeline regenerate --unit-id UNIT_ID --stage sentences
    python -m ivo.cli.run_pipeline restart --unit-id UNIT_ID
    python -m ivo.cli.run_pipeline status --unit-id UNIT_ID
    python -m ivo.cli.run_pipeline clear --unit-id UNIT_ID
    python -m ivo.cli.run_pipeline solve --unit-id UNIT_ID --assessment-type gap_fill

Features:
- Run state checkpointed to a JSON file after every stage transition
- Resume after interruption (re-running the same command picks up pending stages)
- Ctrl-C stops cooperatively once the in-flight stage has finished
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from ivo.constants import RUN_STATE_FILE
from ivo.models.pipeline_run import PipelineRun
from ivo.models.unit import TARGET_COUNT_RANGES, Assessment
from ivo.pipeline.catalog import UnknownStageError
from ivo.pipeline.fan_out import FanOutAggregator
from ivo.pipeline.orchestrator import Orchestrator, RunInProgressError
from ivo.pipeline.run_store import JsonFileKeyValueStore, PersistentRunStore
from ivo.utils.generation_client import GenerationClient, GenerationServiceError
from ivo.utils.logging_config import configure_logging
from ivo.utils.logging_helper import setup_logging

logger = logging.getLogger(__name__)

load_dotenv()

STAGE_COMMANDS = {"run-from", "regenerate"}

COUNT_FLAGS = {
    "--vocabulary-count": "vocabulary_target_count",
    "--sentences-count": "sentences_target_count",
    "--qa-count": "qa_target_count",
    "--assessment-count": "assessment_count",
}


def bounded_int(low: int, high: int):
    """argparse type accepting integers in [low, high]."""

    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"{value!r} is not an integer")
        if not low <= number <= high:
            raise argparse.ArgumentTypeError(f"{number} is outside {low}-{high}")
        return number

    return parse


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the IVO unit content-generation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate everything still missing for a unit
  python -m ivo.cli.run_pipeline run --unit-id 3f1c...

  # Re-run assessments and everything after them
  python -m ivo.cli.run_pipeline regenerate --unit-id 3f1c... --stage assessments

  # Smaller vocabulary set, JSON logs to a file
  python -m ivo.cli.run_pipeline run --unit-id 3f1c... \\
      --vocabulary-count 10 --log-file logs/pipeline.log --json-logs
        """,
    )

    parser.add_argument(
        "command",
        choices=["run", "run-from", "regenerate", "restart", "status", "clear", "solve"],
        help="Pipeline operation",
    )

    parser.add_argument(
        "--unit-id",
        required=True,
        help="Unit to generate content for",
    )

    parser.add_argument(
        "--stage",
        default=None,
        help="Stage id for run-from/regenerate (e.g. vocabulary, assessments, solve)",
    )

    parser.add_argument(
        "--assessment-type",
        default=None,
        help="Assessment type to re-solve with the solve command",
    )

    parser.add_argument(
        "--state-file",
        type=Path,
        default=Path(RUN_STATE_FILE),
        help=f"Run checkpoint file (default: {RUN_STATE_FILE})",
    )

    parser.add_argument(
        "--base-url",
        default=None,
        help="Generation service base URL (default: IVO_API_BASE_URL)",
    )

    parser.add_argument(
        "--token",
        default=None,
        help="Bearer token (default: IVO_API_TOKEN)",
    )

    for flag, field in COUNT_FLAGS.items():
        low, high = TARGET_COUNT_RANGES[field]
        parser.add_argument(
            flag,
            type=bounded_int(low, high),
            default=None,
            help=f"Override {field} ({low}-{high})",
        )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file (stdlib handlers instead of loguru)",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log records",
    )

    args = parser.parse_args(argv)

    if args.command in STAGE_COMMANDS and not args.stage:
        parser.error(f"{args.command} requires --stage")
    if args.command == "solve" and not args.assessment_type:
        parser.error("solve requires --assessment-type")

    return args


def config_overrides(args: argparse.Namespace) -> dict:
    return {
        "vocabulary_target_count": args.vocabulary_count,
        "sentences_target_count": args.sentences_count,
        "qa_target_count": args.qa_count,
        "assessment_count": args.assessment_count,
    }


def print_run(run: PipelineRun, log_tail: int = 10) -> None:
    """Print a run summary and the last log entries."""
    summary = run.get_summary()
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    if run.log:
        print("\nRecent log:")
        for entry in run.log[-log_tail:]:
            print(f"  {entry}")


def wait_with_interrupt(orchestrator: Orchestrator, operation, *args) -> None:
    """Run an operation on a worker thread; Ctrl-C asks it to stop."""
    thread = orchestrator.start_in_background(operation, *args)
    while thread.is_alive():
        try:
            thread.join(timeout=0.5)
        except KeyboardInterrupt:
            logger.warning("Interrupted, stopping after the current stage...")
            orchestrator.stop()


def main(argv=None) -> int:
    """Main CLI entry point."""
    args = parse_args(argv)

    if args.log_file:
        configure_logging(
            level=getattr(logging, args.log_level),
            log_file=args.log_file,
            json_format=args.json_logs,
            console_output=True,
        )
    else:
        setup_logging(level=args.log_level, json_format=args.json_logs or None)

    store = PersistentRunStore(JsonFileKeyValueStore(args.state_file))

    if args.command == "status":
        run = store.load(args.unit_id)
        if run is None:
            logger.error(f"No saved run for unit {args.unit_id} in {args.state_file}")
            saved = store.unit_ids()
            if saved:
                logger.info(f"Saved runs: {', '.join(saved)}")
            return 1
        print_run(run)
        return 0

    client = GenerationClient(base_url=args.base_url, api_token=args.token)

    if args.command == "solve":
        result = FanOutAggregator(client).solve_one(
            args.unit_id, Assessment(type=args.assessment_type)
        )
        print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))
        return 0 if result.success else 1

    logger.info("=" * 80)
    logger.info("Unit Generation Pipeline")
    logger.info("=" * 80)
    logger.info(f"Unit: {args.unit_id}")
    logger.info(f"Command: {args.command}")
    if args.stage:
        logger.info(f"Stage: {args.stage}")
    logger.info(f"State file: {args.state_file}")
    logger.info("=" * 80)

    try:
        orchestrator = Orchestrator.attach(
            args.unit_id,
            client,
            store,
            config_overrides=config_overrides(args),
            on_step_complete=lambda stage_id: logger.info(f"Stage finished: {stage_id}"),
            on_pipeline_complete=lambda: logger.info("Pipeline completed"),
        )
    except GenerationServiceError as e:
        logger.error(f"Could not load unit {args.unit_id}: {e}")
        return 1

    try:
        if args.command == "run":
            wait_with_interrupt(orchestrator, orchestrator.run_all)
        elif args.command == "run-from":
            orchestrator.catalog.get(args.stage)
            wait_with_interrupt(orchestrator, orchestrator.run_from, args.stage)
        elif args.command == "regenerate":
            orchestrator.catalog.get(args.stage)
            wait_with_interrupt(orchestrator, orchestrator.regenerate_from, args.stage)
        elif args.command == "restart":
            wait_with_interrupt(orchestrator, orchestrator.restart_all)
        elif args.command == "clear":
            orchestrator.clear()
    except UnknownStageError as e:
        logger.error(str(e))
        return 1
    except RunInProgressError as e:
        logger.error(str(e))
        return 1

    run = orchestrator.snapshot()
    print_run(run)
    return 1 if run.has_errors else 0


if __name__ == "__main__":
    sys.exit(main())
