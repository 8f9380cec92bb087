"""Run-scoped storage locations and S3/collector naming rules."""

from __future__ import annotations

import re
from datetime import datetime

RUN_ID_FORMAT = "%Y-%m-%d-%H-%M-%S"
RUN_FOLDER_MARKER = "run="

STANDARD_HOSTED_ASSETS = "s3://snowplow-hosted-assets"
STANDARD_ASSETS_REGION = "eu-west-1"

# HDFS staging locations used when s3distcp is enabled
HDFS_RAW_EVENTS = "hdfs:///local/snowplow/raw-events/"
HDFS_ENRICHED_EVENTS = "hdfs:///local/snowplow/enriched-events/"
HDFS_SHREDDED_EVENTS = "hdfs:///local/snowplow/shredded-events/"

_UA_NDJSON = re.compile(r"^ndjson/com\.urbanairship\.connect/.+$")


def mint_run_id(now: datetime | None = None) -> str:
    """Return the run identifier (YYYY-MM-DD-HH-MM-SS) for ``now``."""
    return (now or datetime.now()).strftime(RUN_ID_FORMAT)


def etl_timestamp(now: datetime) -> str:
    """Milliseconds since the epoch, as passed to the enrich job."""
    return str(int(now.timestamp() * 1000))


def partition_by_run(folder: str | None, run_id: str, retain: bool = True) -> str | None:
    """Append a ``run=<id>/`` folder to ``folder``.

    Folders already carry a trailing slash. Returns None when ``retain`` is
    false, meaning the stage should not get an output path at all.
    """
    if not retain:
        return None
    return f"{folder}{RUN_FOLDER_MARKER}{run_id}/"


def run_id_from_folder(folder: str) -> str:
    """Extract the run id from a listed prefix like ``enriched/good/run=2017-06-01-00-00-00/``."""
    name = folder.rstrip("/").split("/")[-1]
    return name[len(RUN_FOLDER_MARKER) :] if name.startswith(RUN_FOLDER_MARKER) else name


def get_hosted_assets_bucket(bucket: str, region: str) -> str:
    """Region-appropriate hosted assets bucket, always with a trailing slash.

    Only the standard hosted assets bucket is replicated per region; custom
    buckets are used as given.
    """
    bucket = bucket.rstrip("/")
    if bucket != STANDARD_HOSTED_ASSETS or region == STANDARD_ASSETS_REGION:
        suffix = ""
    else:
        suffix = f"-{region}"
    return f"{bucket}{suffix}/"


def get_s3_endpoint(s3_region: str) -> str:
    if s3_region == "us-east-1":
        return "s3.amazonaws.com"
    return f"s3-{s3_region}.amazonaws.com"


def split_s3_uri(uri: str) -> tuple[str, str]:
    """Split ``s3://bucket/key/path`` into ``(bucket, "key/path")``."""
    if not uri.startswith(("s3://", "s3n://", "s3a://")):
        raise ValueError(f"Not an S3 URI: {uri}")
    rest = uri.split("://", 1)[1]
    bucket, _, key = rest.partition("/")
    return bucket, key


def is_cloudfront_log(collector_format: str) -> bool:
    return collector_format == "cloudfront" or collector_format.startswith("tsv/com.amazon.aws.cloudfront/")


def is_ua_ndjson(collector_format: str) -> bool:
    return bool(_UA_NDJSON.match(collector_format))


def output_codec_from_compression_format(compression_format: str | None) -> str:
    """Map ``enrich.output_compression`` to an s3distcp codec name ("none" when unset)."""
    if compression_format is None:
        return "none"
    codec = compression_format.lower()
    return "gz" if codec == "gzip" else codec
