# emr_etl_runner/versions.py
"""Version policy: which engine generation runs each stage, and where its binary lives.

The enrich and shred stages switched from Scalding (Hadoop MapReduce) jobs to
Spark jobs at different releases, so each stage has its own threshold. The
thresholds are module constants and keyword arguments so that they can be
tuned and tested independently.
"""

from __future__ import annotations

from dataclasses import dataclass

from emr_etl_runner.errors import ConfigurationError

ERR_BAD_VERSION = "The {} job version could not be parsed: {!r} (expected MAJOR.MINOR.PATCH)"

# Spark enrich from 1.9.0 onwards
SPARK_ENRICH_MIN_MAJOR = 1
SPARK_ENRICH_MIN_MINOR = 9

# RDB shredder from 0.12.0 onwards
RDB_SHREDDER_MIN_MINOR = 12

# commons-codec shim installed by the AMI bootstrap script
COMMONS_CODEC_THRESHOLD = (1, 8, 0)
COMMONS_CODEC_NEW = "1.10"
COMMONS_CODEC_OLD = "1.5"

Version = tuple[int, int, int]


def parse_version(version: str, job: str = "") -> Version:
    """Parse ``"1.9.0"`` into ``(1, 9, 0)``.

    Raises:
        ConfigurationError: if the string is not exactly three numeric components
    """
    parts = version.strip().split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ConfigurationError(ERR_BAD_VERSION.format(job or "stage", version))
    major, minor, patch = (int(p) for p in parts)
    return major, minor, patch


def is_spark_enrich(
    enrich_version: str,
    *,
    min_major: int = SPARK_ENRICH_MIN_MAJOR,
    min_minor: int = SPARK_ENRICH_MIN_MINOR,
) -> bool:
    major, minor, _ = parse_version(enrich_version, "enrich")
    return major >= min_major and minor >= min_minor


def is_rdb_shredder(shred_version: str, *, min_minor: int = RDB_SHREDDER_MIN_MINOR) -> bool:
    _, minor, _ = parse_version(shred_version, "shred")
    return minor >= min_minor


def get_cc_version(
    enrich_version: str,
    *,
    threshold: Version = COMMONS_CODEC_THRESHOLD,
    newer: str = COMMONS_CODEC_NEW,
    older: str = COMMONS_CODEC_OLD,
) -> str:
    """commons-codec version to swap in for the given enrich version."""
    return newer if parse_version(enrich_version, "enrich") > threshold else older


@dataclass(frozen=True)
class Assets:
    """Fully qualified locations of the job binaries for one run."""

    enrich: str
    shred: str
    loader: str
    elasticsearch: str


def get_assets(
    assets_bucket: str,
    enrich_version: str,
    shredder_version: str,
    elasticsearch_version: str,
    loader_version: str,
) -> Assets:
    if is_spark_enrich(enrich_version):
        enrich_middle = "spark-enrich/snowplow-spark-enrich"
    elif enrich_version.startswith("0"):
        enrich_middle = "hadoop-etl/snowplow-hadoop-etl"
    else:
        enrich_middle = "scala-hadoop-enrich/snowplow-hadoop-enrich"

    if is_rdb_shredder(shredder_version):
        shred_path = "4-storage/rdb-shredder/snowplow-rdb-shredder-"
    else:
        shred_path = "3-enrich/scala-hadoop-shred/snowplow-hadoop-shred-"

    return Assets(
        enrich=f"{assets_bucket}3-enrich/{enrich_middle}-{enrich_version}.jar",
        shred=f"{assets_bucket}{shred_path}{shredder_version}.jar",
        loader=f"{assets_bucket}4-storage/rdb-loader/snowplow-rdb-loader-{loader_version}.jar",
        elasticsearch=(
            f"{assets_bucket}4-storage/hadoop-elasticsearch-sink/hadoop-elasticsearch-sink-{elasticsearch_version}.jar"
        ),
    )
