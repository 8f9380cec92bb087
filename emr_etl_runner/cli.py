#!/usr/bin/env python3
"""EMR ETL runner: plan a Snowplow batch run and supervise it on EMR.

Usage:
    emr-etl-runner --config config/config.yml --resolver config/iglu_resolver.json \
        --enrichments config/enrichments --targets config/targets
    emr-etl-runner --config config/config.yml --resolver config/iglu_resolver.json \
        --skip enrich,shred --archive-enriched recover
    emr-etl-runner ... --dry-run --plan-manifest data/plan.json

Exit codes:
    0  jobflow succeeded (or dry run planned)
    1  jobflow failed
    2  cluster failed to bootstrap
    3  configuration or planning error, nothing submitted
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from emr_etl_runner.builder import ArchiveEnrichedMode, PipelineBuilder, PipelineFlags
from emr_etl_runner.config import LoaderStepFilters, load_config, load_enrichments, load_resolver, load_targets
from emr_etl_runner.emr_client import EmrControlPlane, new_emr_client
from emr_etl_runner.errors import (
    BootstrapFailureError,
    ConfigurationError,
    DirectoryNotEmptyError,
    EmrExecutionError,
    UnexpectedStateError,
)
from emr_etl_runner.loader_logs import LoaderLogCollector
from emr_etl_runner.monitor import RunMonitor
from emr_etl_runner.plan import PipelinePlan
from emr_etl_runner.run_manifest import write_plan_manifest
from emr_etl_runner.storage import S3ObjectStore, new_s3_client
from emr_etl_runner.telemetry import CollectorTelemetry

logger = logging.getLogger(__name__)

console = Console()

EXIT_SUCCESS = 0
EXIT_EXECUTION_FAILURE = 1
EXIT_BOOTSTRAP_FAILURE = 2
EXIT_PLANNING_FAILURE = 3

SKIPPABLE_STAGES = ("enrich", "shred", "elasticsearch", "s3distcp", "archive_raw", "rdb_load", "archive_enriched")


def _configure_logging(level: str = "INFO", log_path: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_path), encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def _comma_list(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _skip_list(value: str) -> list[str]:
    stages = _comma_list(value)
    unknown = [s for s in stages if s not in SKIPPABLE_STAGES]
    if unknown:
        raise argparse.ArgumentTypeError(f"unknown stage(s) {unknown}; choose from {', '.join(SKIPPABLE_STAGES)}")
    return stages


def flags_from_args(args: argparse.Namespace) -> PipelineFlags:
    skip = set(args.skip)
    archive_enriched = ArchiveEnrichedMode.SKIP if "archive_enriched" in skip else ArchiveEnrichedMode(args.archive_enriched)
    return PipelineFlags(
        enrich="enrich" not in skip,
        shred="shred" not in skip,
        elasticsearch="elasticsearch" not in skip,
        s3distcp="s3distcp" not in skip,
        archive_raw="archive_raw" not in skip,
        rdb_load="rdb_load" not in skip,
        archive_enriched=archive_enriched,
        debug=bool(args.debug),
    )


def print_plan(plan: PipelinePlan) -> None:
    table = Table(title=f"Jobflow {plan.topology.name} (run {plan.run_id})")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Step", style="magenta")
    table.add_column("Kind")

    for i, step in enumerate(plan.all_steps(), 1):
        table.add_row(str(i), step.name, step.kind.value)

    console.print(table)
    if plan.loader_logs:
        console.print(f"[yellow]{len(plan.loader_logs)} loader log(s) will be collected after the run[/yellow]")


def run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
        resolver = load_resolver(args.resolver)
        enrichments = load_enrichments(args.enrichments)
        targets = load_targets(args.targets)
    except (ConfigurationError, FileNotFoundError) as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_PLANNING_FAILURE

    _configure_logging(config.monitoring.log_level, args.log_file)

    aws = config.aws
    object_store = S3ObjectStore(new_s3_client(aws.s3.region, aws.access_key_id, aws.secret_access_key))

    builder = PipelineBuilder(
        config,
        flags_from_args(args),
        object_store=object_store,
        resolver=resolver,
        enrichments=enrichments,
        targets=targets,
        loader_filters=LoaderStepFilters(skip=tuple(args.loader_skip), include=tuple(args.loader_include)),
    )
    try:
        plan = builder.build()
    except (ConfigurationError, DirectoryNotEmptyError, UnexpectedStateError) as exc:
        logger.error("Cannot plan run: %s", exc)
        return EXIT_PLANNING_FAILURE

    if args.plan_manifest is not None:
        out = write_plan_manifest(plan, args.plan_manifest, command=" ".join(sys.argv), repo_root=Path().resolve())
        logger.info("Wrote plan manifest: %s", out)

    if args.dry_run:
        print_plan(plan)
        return EXIT_SUCCESS

    telemetry = CollectorTelemetry(config.monitoring.snowplow) if config.monitoring.snowplow else None
    monitor = RunMonitor(
        EmrControlPlane(new_emr_client(aws.emr.region, aws.access_key_id, aws.secret_access_key)),
        telemetry=telemetry,
        log_collector=LoaderLogCollector(object_store),
    )

    try:
        monitor.run(plan)
    except BootstrapFailureError as exc:
        logger.error("Cluster failed to bootstrap:\n%s", exc)
        return EXIT_BOOTSTRAP_FAILURE
    except EmrExecutionError as exc:
        logger.error("%s", exc)
        return EXIT_EXECUTION_FAILURE

    logger.info("Run %s completed successfully.", plan.run_id)
    return EXIT_SUCCESS


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Plan and run the Snowplow batch pipeline on Amazon EMR",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("-c", "--config", type=Path, default=None, help="Configuration YAML (default: config/config.yml)")
    p.add_argument("-r", "--resolver", type=Path, required=True, help="Iglu resolver JSON")
    p.add_argument("-n", "--enrichments", type=Path, default=None, help="Directory of enrichment JSONs")
    p.add_argument("-t", "--targets", type=Path, default=None, help="Directory of storage target JSONs")
    p.add_argument("-d", "--debug", action="store_true", help="Enable EMR Hadoop debugging")
    p.add_argument(
        "--skip",
        type=_skip_list,
        default=[],
        help=f"Comma-separated stages to skip ({', '.join(SKIPPABLE_STAGES)})",
    )
    p.add_argument(
        "--archive-enriched",
        choices=[m.value for m in ArchiveEnrichedMode],
        default=ArchiveEnrichedMode.PIPELINE.value,
        help="Archive enriched/shredded data of this run (pipeline), of the latest run found in S3 (recover), or not at all",
    )
    p.add_argument("--loader-skip", type=_comma_list, default=[], help="RDB Loader steps to skip")
    p.add_argument("--loader-include", type=_comma_list, default=[], help="Optional RDB Loader steps to include")
    p.add_argument("--dry-run", action="store_true", help="Plan and print the steps without submitting")
    p.add_argument("--plan-manifest", type=Path, default=None, help="Write the planned jobflow as JSON")
    p.add_argument("--log-file", type=Path, default=None, help="Also log to this file")
    return p


def main(argv: list[str] | None = None) -> int:
    _configure_logging()
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
