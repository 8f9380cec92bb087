"""
Configuration loader for EMR ETL runs.

The YAML file is read with ``${VAR}`` environment substitution and projected
into a typed, frozen schema. The schema also owns its serializer so the
credential-free copy embedded in the loader step is built explicitly rather
than by cloning and blanking the loaded document.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, cast

import yaml

from emr_etl_runner.errors import ConfigurationError

logger = logging.getLogger(__name__)

ERR_MISSING_KEY = "Missing required configuration key: {}"
ERR_NOT_MAPPING = "Configuration section {} must be a mapping, got {}"

ENRICHMENTS_SCHEMA = "iglu:com.snowplowanalytics.snowplow/enrichments/jsonschema/1-0-0"

FAILED_EVENTS_SCHEMAS = ("elastic_config",)
DUPLICATE_TRACKING_SCHEMAS = ("amazon_dynamodb_config",)
ENRICHED_EVENTS_SCHEMAS = ("redshift_config", "postgresql_config")


# =============================================================================
# Schema
# =============================================================================


@dataclass(frozen=True)
class RawBuckets:
    in_: tuple[str, ...]
    processing: str
    archive: str


@dataclass(frozen=True)
class StageBuckets:
    """good/bad/errors/archive locations for the enriched or shredded stage."""

    good: str
    bad: str
    errors: str | None
    archive: str


@dataclass(frozen=True)
class S3Buckets:
    assets: str
    log: str
    raw: RawBuckets
    enriched: StageBuckets
    shredded: StageBuckets
    jsonpath_assets: str | None = None


@dataclass(frozen=True)
class S3Config:
    region: str
    buckets: S3Buckets


@dataclass(frozen=True)
class EbsConfig:
    volume_type: str
    volume_size: int
    volume_iops: int | None = None
    ebs_optimized: bool | None = None


@dataclass(frozen=True)
class JobflowConfig:
    job_name: str
    master_instance_type: str
    core_instance_count: int
    core_instance_type: str
    core_instance_ebs: EbsConfig | None = None
    task_instance_count: int = 0
    task_instance_type: str | None = None
    task_instance_bid: float | None = None


@dataclass(frozen=True)
class SoftwareConfig:
    hbase: str | None = None
    lingual: str | None = None


@dataclass(frozen=True)
class EmrConfig:
    ami_version: str
    region: str
    jobflow_role: str
    service_role: str
    jobflow: JobflowConfig
    ec2_key_name: str | None = None
    placement: str | None = None
    ec2_subnet_id: str | None = None
    bootstrap: tuple[str, ...] = ()
    software: SoftwareConfig = field(default_factory=SoftwareConfig)
    additional_info: str | None = None
    configuration: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass(frozen=True)
class AwsConfig:
    access_key_id: str
    secret_access_key: str
    s3: S3Config
    emr: EmrConfig


@dataclass(frozen=True)
class EnrichConfig:
    spark_enrich_version: str
    continue_on_unexpected_error: bool = False
    output_compression: str | None = None


@dataclass(frozen=True)
class StorageVersions:
    rdb_shredder: str
    hadoop_elasticsearch: str
    rdb_loader: str


@dataclass(frozen=True)
class TrackerConfig:
    """Collector endpoint that receives run lifecycle events."""

    collector: str
    app_id: str = "emr-etl-runner"
    method: str = "post"


@dataclass(frozen=True)
class MonitoringConfig:
    tags: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"
    snowplow: TrackerConfig | None = None


@dataclass(frozen=True)
class EtlConfig:
    aws: AwsConfig
    collector_format: str
    enrich: EnrichConfig
    storage: StorageVersions
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @property
    def buckets(self) -> S3Buckets:
        return self.aws.s3.buckets

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        """Serialize back to the YAML layout.

        With ``redact`` the AWS credential fields are left out entirely.
        """
        aws: dict[str, Any] = {}
        if not redact:
            aws["access_key_id"] = self.aws.access_key_id
            aws["secret_access_key"] = self.aws.secret_access_key

        buckets = self.buckets
        aws["s3"] = {
            "region": self.aws.s3.region,
            "buckets": {
                "assets": buckets.assets,
                "jsonpath_assets": buckets.jsonpath_assets,
                "log": buckets.log,
                "raw": {
                    "in": list(buckets.raw.in_),
                    "processing": buckets.raw.processing,
                    "archive": buckets.raw.archive,
                },
                "enriched": asdict(buckets.enriched),
                "shredded": asdict(buckets.shredded),
            },
        }
        emr = asdict(self.aws.emr)
        emr["bootstrap"] = list(self.aws.emr.bootstrap)
        aws["emr"] = emr

        monitoring: dict[str, Any] = {
            "tags": dict(self.monitoring.tags),
            "logging": {"level": self.monitoring.log_level},
            "snowplow": asdict(self.monitoring.snowplow) if self.monitoring.snowplow else None,
        }
        return {
            "aws": aws,
            "collectors": {"format": self.collector_format},
            "enrich": {
                "versions": {"spark_enrich": self.enrich.spark_enrich_version},
                "continue_on_unexpected_error": self.enrich.continue_on_unexpected_error,
                "output_compression": self.enrich.output_compression,
            },
            "storage": {"versions": asdict(self.storage)},
            "monitoring": monitoring,
        }

    def to_yaml(self, *, redact: bool = True) -> str:
        return cast(str, yaml.safe_dump(self.to_dict(redact=redact), sort_keys=True, default_flow_style=False))


@dataclass(frozen=True)
class StorageTargets:
    """Storage target documents, split by the role they play in the pipeline."""

    enriched_events: tuple[dict[str, Any], ...] = ()
    failed_events: tuple[dict[str, Any], ...] = ()
    duplicate_tracking: dict[str, Any] | None = None


@dataclass(frozen=True)
class LoaderStepFilters:
    """RDB Loader stage filters passed through as ``--skip`` / ``--include``."""

    skip: tuple[str, ...] = ()
    include: tuple[str, ...] = ()


# =============================================================================
# Loading
# =============================================================================


def _section(data: Any, path: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError(ERR_NOT_MAPPING.format(path, type(data).__name__))
    return cast(dict[str, Any], data)


def _require(data: dict[str, Any], key: str, path: str) -> Any:
    value = data.get(key)
    if value is None:
        raise ConfigurationError(ERR_MISSING_KEY.format(f"{path}.{key}"))
    return value


def _stage_buckets(data: Any, path: str) -> StageBuckets:
    d = _section(data, path)
    return StageBuckets(
        good=_require(d, "good", path),
        bad=_require(d, "bad", path),
        errors=d.get("errors"),
        archive=_require(d, "archive", path),
    )


def _jobflow(data: Any) -> JobflowConfig:
    path = "aws.emr.jobflow"
    d = _section(data, path)
    ebs = d.get("core_instance_ebs")
    ebs_config = None
    if ebs is not None:
        e = _section(ebs, f"{path}.core_instance_ebs")
        ebs_config = EbsConfig(
            volume_type=_require(e, "volume_type", f"{path}.core_instance_ebs"),
            volume_size=int(_require(e, "volume_size", f"{path}.core_instance_ebs")),
            volume_iops=int(e["volume_iops"]) if e.get("volume_iops") is not None else None,
            ebs_optimized=e.get("ebs_optimized"),
        )
    bid = d.get("task_instance_bid")
    return JobflowConfig(
        job_name=_require(d, "job_name", path),
        master_instance_type=_require(d, "master_instance_type", path),
        core_instance_count=int(_require(d, "core_instance_count", path)),
        core_instance_type=_require(d, "core_instance_type", path),
        core_instance_ebs=ebs_config,
        task_instance_count=int(d.get("task_instance_count") or 0),
        task_instance_type=d.get("task_instance_type"),
        task_instance_bid=float(bid) if bid is not None else None,
    )


def _emr(data: Any) -> EmrConfig:
    d = _section(data, "aws.emr")
    software = _section(d.get("software") or {}, "aws.emr.software")
    configuration = {
        classification: {k: str(v) for k, v in _section(props, f"aws.emr.configuration.{classification}").items()}
        for classification, props in _section(d.get("configuration") or {}, "aws.emr.configuration").items()
    }
    return EmrConfig(
        ami_version=str(_require(d, "ami_version", "aws.emr")),
        region=_require(d, "region", "aws.emr"),
        jobflow_role=_require(d, "jobflow_role", "aws.emr"),
        service_role=_require(d, "service_role", "aws.emr"),
        jobflow=_jobflow(_require(d, "jobflow", "aws.emr")),
        ec2_key_name=d.get("ec2_key_name"),
        placement=d.get("placement"),
        ec2_subnet_id=d.get("ec2_subnet_id"),
        bootstrap=tuple(d.get("bootstrap") or ()),
        software=SoftwareConfig(
            hbase=str(software["hbase"]) if software.get("hbase") else None,
            lingual=str(software["lingual"]) if software.get("lingual") else None,
        ),
        additional_info=d.get("additional_info"),
        configuration=configuration,
    )


def parse_config(data: dict[str, Any]) -> EtlConfig:
    """Project a loaded YAML document onto the typed schema."""
    root = _section(data, "root")
    aws = _section(_require(root, "aws", "root"), "aws")
    s3 = _section(_require(aws, "s3", "aws"), "aws.s3")
    buckets = _section(_require(s3, "buckets", "aws.s3"), "aws.s3.buckets")
    raw = _section(_require(buckets, "raw", "aws.s3.buckets"), "aws.s3.buckets.raw")
    raw_in = _require(raw, "in", "aws.s3.buckets.raw")

    enrich = _section(_require(root, "enrich", "root"), "enrich")
    enrich_versions = _section(_require(enrich, "versions", "enrich"), "enrich.versions")
    storage = _section(_require(root, "storage", "root"), "storage")
    storage_versions = _section(_require(storage, "versions", "storage"), "storage.versions")
    collectors = _section(_require(root, "collectors", "root"), "collectors")

    monitoring = _section(root.get("monitoring") or {}, "monitoring")
    tracker = monitoring.get("snowplow")
    tracker_config = None
    if tracker:
        t = _section(tracker, "monitoring.snowplow")
        tracker_config = TrackerConfig(
            collector=_require(t, "collector", "monitoring.snowplow"),
            app_id=t.get("app_id") or "emr-etl-runner",
            method=t.get("method") or "post",
        )
    logging_section = _section(monitoring.get("logging") or {}, "monitoring.logging")

    return EtlConfig(
        aws=AwsConfig(
            access_key_id=str(_require(aws, "access_key_id", "aws")),
            secret_access_key=str(_require(aws, "secret_access_key", "aws")),
            s3=S3Config(
                region=_require(s3, "region", "aws.s3"),
                buckets=S3Buckets(
                    assets=_require(buckets, "assets", "aws.s3.buckets"),
                    jsonpath_assets=buckets.get("jsonpath_assets"),
                    log=_require(buckets, "log", "aws.s3.buckets"),
                    raw=RawBuckets(
                        in_=tuple(raw_in) if isinstance(raw_in, list) else (raw_in,),
                        processing=_require(raw, "processing", "aws.s3.buckets.raw"),
                        archive=_require(raw, "archive", "aws.s3.buckets.raw"),
                    ),
                    enriched=_stage_buckets(_require(buckets, "enriched", "aws.s3.buckets"), "aws.s3.buckets.enriched"),
                    shredded=_stage_buckets(_require(buckets, "shredded", "aws.s3.buckets"), "aws.s3.buckets.shredded"),
                ),
            ),
            emr=_emr(_require(aws, "emr", "aws")),
        ),
        collector_format=_require(collectors, "format", "collectors"),
        enrich=EnrichConfig(
            spark_enrich_version=str(_require(enrich_versions, "spark_enrich", "enrich.versions")),
            continue_on_unexpected_error=bool(enrich.get("continue_on_unexpected_error", False)),
            output_compression=enrich.get("output_compression"),
        ),
        storage=StorageVersions(
            rdb_shredder=str(_require(storage_versions, "rdb_shredder", "storage.versions")),
            hadoop_elasticsearch=str(_require(storage_versions, "hadoop_elasticsearch", "storage.versions")),
            rdb_loader=str(_require(storage_versions, "rdb_loader", "storage.versions")),
        ),
        monitoring=MonitoringConfig(
            tags={str(k): str(v) for k, v in (monitoring.get("tags") or {}).items()},
            log_level=str(logging_section.get("level") or "INFO").upper(),
            snowplow=tracker_config,
        ),
    )


def load_config(config_path: Path | str | None = None) -> EtlConfig:
    """
    Load the runner configuration from a YAML file.

    Args:
        config_path: Path to config file. If None, uses config/config.yml

    Returns:
        Typed configuration

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigurationError: If the YAML root is not a mapping or keys are missing
    """
    if config_path is None:
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config" / "config.yml"

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file {config_path} is not valid YAML: {exc}") from exc

    if data is None:
        data = {}
    elif not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping, got {type(data).__name__}")

    return parse_config(cast(dict[str, Any], _substitute_env_vars(data)))


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment variables."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        return os.getenv(var_name, obj)  # fall back to original if unset
    return obj


def load_resolver(resolver_path: Path | str) -> str:
    """Read the Iglu resolver file and return its JSON text unchanged."""
    text = Path(resolver_path).read_text(encoding="utf-8")
    try:
        json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Resolver {resolver_path} is not valid JSON: {exc}") from exc
    return text


def load_enrichments(enrichments_dir: Path | str | None) -> list[str]:
    """Return the JSON text of every ``*.json`` enrichment, sorted by file name."""
    if enrichments_dir is None:
        return []
    directory = Path(enrichments_dir)
    if not directory.is_dir():
        raise ConfigurationError(f"Enrichments directory not found: {directory}")
    enrichments = []
    for p in sorted(directory.glob("*.json")):
        text = p.read_text(encoding="utf-8")
        try:
            json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Enrichment {p} is not valid JSON: {exc}") from exc
        enrichments.append(text)
    return enrichments


def classify_targets(documents: list[dict[str, Any]]) -> StorageTargets:
    enriched: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []
    duplicate: dict[str, Any] | None = None

    for doc in documents:
        schema = str(doc.get("schema", ""))
        if any(s in schema for s in FAILED_EVENTS_SCHEMAS):
            failed.append(doc)
        elif any(s in schema for s in DUPLICATE_TRACKING_SCHEMAS):
            duplicate = doc
        elif any(s in schema for s in ENRICHED_EVENTS_SCHEMAS):
            enriched.append(doc)
        else:
            logger.warning("Ignoring storage target with unrecognised schema %s", schema)

    return StorageTargets(enriched_events=tuple(enriched), failed_events=tuple(failed), duplicate_tracking=duplicate)


def load_targets(targets_dir: Path | str | None) -> StorageTargets:
    """Load self-describing storage target JSONs from a directory."""
    if targets_dir is None:
        return StorageTargets()
    directory = Path(targets_dir)
    if not directory.is_dir():
        raise ConfigurationError(f"Targets directory not found: {directory}")

    documents = []
    for p in sorted(directory.glob("*.json")):
        try:
            doc = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Storage target {p} is not valid JSON: {exc}") from exc
        if not isinstance(doc, dict) or "data" not in doc:
            raise ConfigurationError(f"Storage target {p} is not a self-describing JSON")
        documents.append(doc)
    return classify_targets(documents)
