# emr_etl_runner/builder.py
"""Assemble the ordered EMR steps for one run.

Steps are appended strictly in pipeline order:

1. Raw S3 -> HDFS compaction (s3distcp staging of supported collector formats)
2. Enrich, then enriched HDFS -> S3 copy-back
3. Enriched S3 -> HDFS (shred without enrich), shred, shredded HDFS -> S3
4. Bad rows -> Elasticsearch
5. Raw processing -> raw archive
6. RDB Loader, one step per storage target
7. Enriched/shredded good -> archive (stages that ran this run, or the latest run in recover mode)

EMR runs the steps sequentially, so a step may only read a location that an
earlier emitted step (or a previous run) has populated. Output locations of
enrich and shred are checked for emptiness before their steps are added.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from emr_etl_runner.config import ENRICHMENTS_SCHEMA, EtlConfig, LoaderStepFilters, StorageTargets
from emr_etl_runner.errors import DirectoryNotEmptyError, UnexpectedStateError
from emr_etl_runner.paths import (
    HDFS_ENRICHED_EVENTS,
    HDFS_RAW_EVENTS,
    HDFS_SHREDDED_EVENTS,
    etl_timestamp,
    get_hosted_assets_bucket,
    get_s3_endpoint,
    is_cloudfront_log,
    is_ua_ndjson,
    mint_run_id,
    output_codec_from_compression_format,
    partition_by_run,
    run_id_from_folder,
)
from emr_etl_runner.plan import ClusterTopology, LoaderLogRef, PipelinePlan, build_topology
from emr_etl_runner.steps import (
    DistributedJobStep,
    Engine,
    Step,
    StepFolders,
    build_binary_step,
    build_copy_step,
    build_custom_binary_step,
)
from emr_etl_runner.versions import Assets, get_assets, is_rdb_shredder, is_spark_enrich

logger = logging.getLogger(__name__)

PARTFILE_REGEXP = ".*part-.*"
SUCCESS_FILE_REGEXP = ".*_SUCCESS"

CLOUDFRONT_GROUP_BY = ".*\\.([0-9]+-[0-9]+-[0-9]+)-[0-9]+\\..*"
UA_NDJSON_GROUP_BY = ".*(urbanairship).*"
COMPACTION_TARGET_SIZE = "128"
COMPACTION_CODEC = "lzo"

ELASTICSEARCH_MAIN_CLASS = "storage.hadoop.ElasticsearchJob"
# Seconds the first Elasticsearch step waits so S3 can become consistent
ELASTICSEARCH_START_DELAY = "60"

ERR_NOT_EMPTY = "Cannot safely add {} step to jobflow, {} is not empty"
ERR_NO_RUN_FOLDERS = "No run folders in [{}] found"


class ArchiveEnrichedMode(str, Enum):
    PIPELINE = "pipeline"
    RECOVER = "recover"
    SKIP = "skip"


@dataclass(frozen=True)
class PipelineFlags:
    """Which optional stages run in this invocation."""

    enrich: bool = True
    shred: bool = True
    elasticsearch: bool = True
    s3distcp: bool = True
    archive_raw: bool = True
    rdb_load: bool = True
    archive_enriched: ArchiveEnrichedMode = ArchiveEnrichedMode.PIPELINE
    debug: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "archive_enriched", ArchiveEnrichedMode(self.archive_enriched))


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def build_enrichments_json(enrichments: list[str]) -> str:
    """Base64 bundle of all enrichment JSONs under the enrichments schema."""
    bundle = {"schema": ENRICHMENTS_SCHEMA, "data": [json.loads(e) for e in enrichments]}
    return b64(json.dumps(bundle))


def build_duplicate_storage_json(target: dict[str, Any] | None, *, snake_case: bool = True) -> dict[str, str]:
    if target is None:
        return {}
    key = "duplicate_storage_config" if snake_case else "duplicate-storage-config"
    return {key: b64(json.dumps(target))}


def latest_run_id(object_store: Any, location: str) -> str:
    """Most recent ``run=`` folder under ``location``.

    Run ids are timestamps formatted most-significant first, so the
    lexicographic maximum is the latest run.
    """
    run_ids = [run_id_from_folder(f) for f in object_store.list_run_folders(location)]
    if not run_ids:
        logger.error(ERR_NO_RUN_FOLDERS.format(location))
        raise UnexpectedStateError(ERR_NO_RUN_FOLDERS.format(location))
    return max(run_ids)


class PipelineBuilder:
    """Plan one EMR run from configuration and stage flags."""

    def __init__(
        self,
        config: EtlConfig,
        flags: PipelineFlags,
        *,
        object_store: Any,
        resolver: str,
        enrichments: list[str] | None = None,
        targets: StorageTargets | None = None,
        loader_filters: LoaderStepFilters | None = None,
        run_timestamp: datetime | None = None,
        log_key_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.config = config
        self.flags = flags
        self.object_store = object_store
        self.resolver = resolver
        self.enrichments = list(enrichments or [])
        self.targets = targets or StorageTargets()
        self.loader_filters = loader_filters or LoaderStepFilters()
        self.run_timestamp = run_timestamp or datetime.now()
        self.run_id = mint_run_id(self.run_timestamp)
        self.log_key_factory = log_key_factory

        self.s3_endpoint = get_s3_endpoint(config.aws.s3.region)
        self.assets = self._resolve_assets()

        output_codec = output_codec_from_compression_format(config.enrich.output_compression)
        self.output_codec = None if output_codec == "none" else output_codec

    def _resolve_assets(self) -> Assets:
        assets_bucket = get_hosted_assets_bucket(self.config.buckets.assets, self.config.aws.emr.region)
        return get_assets(
            assets_bucket,
            self.config.enrich.spark_enrich_version,
            self.config.storage.rdb_shredder,
            self.config.storage.hadoop_elasticsearch,
            self.config.storage.rdb_loader,
        )

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    def build(self) -> PipelinePlan:
        flags = self.flags
        buckets = self.config.buckets
        topology = build_topology(self.config, debug=flags.debug)
        steps: list[Step] = []
        loader_logs: list[LoaderLogRef] = []

        logger.info("Planning run %s (flags: %s)", self.run_id, flags)

        # Enrich output is only partitioned when this run produces it
        if flags.enrich:
            enrich_final_output = partition_by_run(buckets.enriched.good, self.run_id)
        else:
            enrich_final_output = buckets.enriched.good
        enrich_step_output = HDFS_ENRICHED_EVENTS if flags.s3distcp else enrich_final_output

        if flags.enrich:
            enrich_steps, topology = self._enrich_steps(topology, enrich_final_output, enrich_step_output)
            steps += enrich_steps

        if flags.shred:
            shred_steps, topology = self._shred_steps(topology, enrich_final_output, enrich_step_output)
            steps += shred_steps

        if flags.elasticsearch:
            steps += self._elasticsearch_steps()

        if flags.archive_raw:
            steps.append(
                build_copy_step(
                    "Raw S3 Staging -> S3 Archive",
                    buckets.raw.processing,
                    partition_by_run(buckets.raw.archive, self.run_id),
                    s3_endpoint=self.s3_endpoint,
                    delete_on_success=True,
                ),
            )

        if flags.rdb_load:
            loader_steps, loader_logs = self._rdb_loader_steps()
            steps += loader_steps

        steps += self._archive_enriched_steps()

        logger.info("Planned %d steps for run %s", len(steps), self.run_id)
        for i, step in enumerate(steps, 1):
            logger.debug(" - %d. %s", i, step.name)

        return PipelinePlan(
            run_id=self.run_id,
            topology=topology,
            steps=tuple(steps),
            loader_logs=tuple(loader_logs),
        )

    def _check_empty(self, location: str, stage: str) -> None:
        if not self.object_store.is_empty(location):
            raise DirectoryNotEmptyError(ERR_NOT_EMPTY.format(stage, location))

    # -------------------------------------------------------------------------
    # Enrich
    # -------------------------------------------------------------------------

    def _compaction_step(self, raw_input: str) -> Step:
        collector_format = self.config.collector_format
        groups = is_cloudfront_log(collector_format) or is_ua_ndjson(collector_format)
        group_by = UA_NDJSON_GROUP_BY if is_ua_ndjson(collector_format) else CLOUDFRONT_GROUP_BY
        return build_copy_step(
            "Raw S3 -> HDFS",
            raw_input,
            HDFS_RAW_EVENTS,
            s3_endpoint=self.s3_endpoint,
            group_by=group_by if groups else None,
            target_size=COMPACTION_TARGET_SIZE if groups else None,
            output_codec=COMPACTION_CODEC if groups else None,
        )

    def _enrich_steps(
        self,
        topology: ClusterTopology,
        enrich_final_output: str,
        enrich_step_output: str,
    ) -> tuple[list[Step], ClusterTopology]:
        config = self.config
        buckets = config.buckets
        collector_format = config.collector_format
        steps: list[Step] = []

        raw_input = buckets.raw.processing
        supported_format = (
            is_cloudfront_log(collector_format) or collector_format == "thrift" or is_ua_ndjson(collector_format)
        )
        to_hdfs = supported_format and self.flags.s3distcp
        enrich_step_input = HDFS_RAW_EVENTS if to_hdfs else raw_input

        if to_hdfs:
            steps.append(self._compaction_step(raw_input))

        resolver = b64(self.resolver)
        enrichments = build_enrichments_json(self.enrichments)
        bad = partition_by_run(buckets.enriched.bad, self.run_id)

        if is_spark_enrich(config.enrich.spark_enrich_version):
            topology = topology.with_application("Spark")
            enrich_step = build_binary_step(
                "Enrich Raw Events",
                self.assets.enrich,
                "enrich.spark.EnrichJob",
                StepFolders(input=enrich_step_input, good=enrich_step_output, bad=bad),
                {
                    "input-format": collector_format,
                    "etl-timestamp": etl_timestamp(self.run_timestamp),
                    "iglu-config": resolver,
                    "enrichments": enrichments,
                },
                Engine.MODERN,
            )
        else:
            enrich_step = build_binary_step(
                "Enrich Raw Events",
                self.assets.enrich,
                "enrich.hadoop.EtlJob",
                StepFolders(
                    input=enrich_step_input,
                    good=enrich_step_output,
                    bad=bad,
                    errors=partition_by_run(
                        buckets.enriched.errors,
                        self.run_id,
                        config.enrich.continue_on_unexpected_error,
                    ),
                ),
                {
                    "input_format": collector_format,
                    "etl_tstamp": etl_timestamp(self.run_timestamp),
                    "iglu_config": resolver,
                    "enrichments": enrichments,
                },
                Engine.LEGACY,
            )

        self._check_empty(buckets.enriched.good, "enrichment")
        steps.append(enrich_step)

        if self.flags.s3distcp:
            steps.append(
                build_copy_step(
                    "Enriched HDFS -> S3",
                    enrich_step_output,
                    enrich_final_output,
                    s3_endpoint=self.s3_endpoint,
                    src_pattern=PARTFILE_REGEXP,
                    output_codec=self.output_codec,
                ),
            )
            steps.append(
                build_copy_step(
                    "Enriched HDFS _SUCCESS -> S3",
                    enrich_step_output,
                    enrich_final_output,
                    s3_endpoint=self.s3_endpoint,
                    src_pattern=SUCCESS_FILE_REGEXP,
                ),
            )
        return steps, topology

    # -------------------------------------------------------------------------
    # Shred
    # -------------------------------------------------------------------------

    def _shred_steps(
        self,
        topology: ClusterTopology,
        enrich_final_output: str,
        enrich_step_output: str,
    ) -> tuple[list[Step], ClusterTopology]:
        config = self.config
        buckets = config.buckets
        steps: list[Step] = []

        shred_final_output = partition_by_run(buckets.shredded.good, self.run_id)
        shred_step_output = HDFS_SHREDDED_EVENTS if self.flags.s3distcp else shred_final_output

        # Shredding reads from HDFS, so stage the durable enriched output first
        if self.flags.s3distcp and not self.flags.enrich:
            steps.append(
                build_copy_step(
                    "Enriched S3 -> HDFS",
                    enrich_final_output,
                    enrich_step_output,
                    s3_endpoint=self.s3_endpoint,
                    src_pattern=PARTFILE_REGEXP,
                ),
            )

        resolver = b64(self.resolver)
        bad = partition_by_run(buckets.shredded.bad, self.run_id)
        duplicate_target = self.targets.duplicate_tracking

        if is_rdb_shredder(config.storage.rdb_shredder):
            topology = topology.with_application("Spark")
            shred_step = build_binary_step(
                "Shred Enriched Events",
                self.assets.shred,
                "storage.spark.ShredJob",
                StepFolders(input=enrich_step_output, good=shred_step_output, bad=bad),
                {"iglu-config": resolver, **build_duplicate_storage_json(duplicate_target, snake_case=False)},
                Engine.MODERN,
            )
        else:
            shred_step = build_binary_step(
                "Shred Enriched Events",
                self.assets.shred,
                "enrich.hadoop.ShredJob",
                StepFolders(
                    input=enrich_step_output,
                    good=shred_step_output,
                    bad=bad,
                    errors=partition_by_run(
                        buckets.shredded.errors,
                        self.run_id,
                        config.enrich.continue_on_unexpected_error,
                    ),
                ),
                {"iglu_config": resolver, **build_duplicate_storage_json(duplicate_target)},
                Engine.LEGACY,
            )

        self._check_empty(buckets.shredded.good, "shredding")
        steps.append(shred_step)

        if self.flags.s3distcp:
            steps.append(
                build_copy_step(
                    "Shredded HDFS -> S3",
                    shred_step_output,
                    shred_final_output,
                    s3_endpoint=self.s3_endpoint,
                    src_pattern=PARTFILE_REGEXP,
                    output_codec=self.output_codec,
                ),
            )
        return steps, topology

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _elasticsearch_steps(self) -> list[Step]:
        """One step per (failed-events target, bad rows source) pair."""
        buckets = self.config.buckets
        sources: list[str] = []
        if self.flags.enrich:
            sources.append(partition_by_run(buckets.enriched.bad, self.run_id))
        if self.flags.shred:
            sources.append(partition_by_run(buckets.shredded.bad, self.run_id))

        steps: list[DistributedJobStep] = []
        for target in self.targets.failed_events:
            data = target.get("data", {})
            for source in sources:
                nodes_wan_only = data.get("nodesWanOnly")
                arguments = {
                    "input": source,
                    "host": data.get("host"),
                    "port": "" if data.get("port") is None else str(data["port"]),
                    "index": data.get("index"),
                    "type": data.get("type"),
                    "es_nodes_wan_only": "true" if nodes_wan_only else "false",
                }
                steps.append(
                    build_binary_step(
                        f"Errors in {source} -> Elasticsearch: {data.get('name')}",
                        self.assets.elasticsearch,
                        ELASTICSEARCH_MAIN_CLASS,
                        StepFolders(input=None, good=None, bad=None),
                        {k: v for k, v in arguments.items() if v is not None},
                        Engine.LEGACY,
                    ),
                )

        if steps:
            first = steps[0]
            steps[0] = replace(first, job_arguments={**first.job_arguments, "delay": ELASTICSEARCH_START_DELAY})
        return list(steps)

    def _rdb_loader_steps(self) -> tuple[list[Step], list[LoaderLogRef]]:
        log_base = f"{self.config.buckets.log}rdb-loader/{self.run_id}/"
        encoded_config = b64(self.config.to_yaml(redact=True))
        encoded_resolver = b64(self.resolver)
        skip = self.loader_filters.skip
        include = self.loader_filters.include

        steps: list[Step] = []
        logs: list[LoaderLogRef] = []
        for target in self.targets.enriched_events:
            name = str(target.get("data", {}).get("name"))
            log_key = log_base + self.log_key_factory()
            logs.append(LoaderLogRef(target_name=name, log_key=log_key))

            arguments = [
                "--config",
                encoded_config,
                "--resolver",
                encoded_resolver,
                "--logkey",
                log_key,
                "--target",
                b64(json.dumps(target)),
            ]
            if skip:
                arguments += ["--skip", ",".join(skip)]
            if include:
                arguments += ["--include", ",".join(include)]

            steps.append(build_custom_binary_step(f"Load {name} Storage Target", self.assets.loader, arguments))
        return steps, logs

    def _archive_enriched_steps(self) -> list[Step]:
        mode = self.flags.archive_enriched
        if mode is ArchiveEnrichedMode.SKIP:
            return []

        buckets = self.config.buckets
        if mode is ArchiveEnrichedMode.RECOVER:
            run_id = latest_run_id(self.object_store, buckets.enriched.good)
            logger.info("Recovering archive of run %s", run_id)
            archive_enriched = archive_shredded = True
        else:
            # Only archive what this run wrote
            run_id = self.run_id
            archive_enriched = self.flags.enrich
            archive_shredded = self.flags.shred

        steps: list[Step] = []
        if archive_enriched:
            steps.append(
                self._archive_step(buckets.enriched.good, buckets.enriched.archive, run_id, "Enriched S3 -> S3 Enriched Archive"),
            )
        if archive_shredded:
            steps.append(
                self._archive_step(buckets.shredded.good, buckets.shredded.archive, run_id, "Shredded S3 -> S3 Shredded Archive"),
            )
        return steps

    def _archive_step(self, good_path: str, archive_path: str, run_id: str, name: str) -> Step:
        return build_copy_step(
            name,
            partition_by_run(good_path, run_id),
            partition_by_run(archive_path, run_id),
            s3_endpoint=self.s3_endpoint,
            delete_on_success=True,
        )
