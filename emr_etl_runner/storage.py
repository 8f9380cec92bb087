# emr_etl_runner/storage.py
"""S3 object store used for preflight checks, run-folder discovery and log download.

Locations are ``s3://bucket/prefix/`` URIs with a trailing slash, the same
form used in the configuration.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from emr_etl_runner.paths import RUN_FOLDER_MARKER, split_s3_uri

logger = logging.getLogger(__name__)

# Zero-byte markers written by Hadoop/S3 tooling for "directories"
FOLDER_MARKER_SUFFIXES = ("_$folder$",)


def new_s3_client(region: str, access_key_id: str | None = None, secret_access_key: str | None = None) -> Any:
    kwargs: dict[str, Any] = {"region_name": region}
    if access_key_id and secret_access_key:
        kwargs["aws_access_key_id"] = access_key_id
        kwargs["aws_secret_access_key"] = secret_access_key
    return boto3.client("s3", **kwargs)


class S3ObjectStore:
    """Narrow S3 facade over a boto3 client."""

    def __init__(self, client: Any, *, retries: int = 3, backoff_factor: float = 2.0) -> None:
        self.client = client
        self.retries = retries
        self.backoff_factor = backoff_factor

    def is_empty(self, location: str) -> bool:
        """True when no object other than folder markers lives under ``location``."""
        bucket, prefix = split_s3_uri(location)
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                key = obj.get("Key", "")
                if key == prefix or key.endswith(FOLDER_MARKER_SUFFIXES):
                    continue
                logger.debug("%s is not empty (found s3://%s/%s)", location, bucket, key)
                return False
        return True

    def list_run_folders(self, location: str) -> list[str]:
        """Immediate sub-folders of ``location`` whose name carries the ``run=`` marker.

        Returns the listed prefixes (e.g. ``"enriched/good/run=2017-06-01-00-00-00/"``),
        sorted.
        """
        bucket, prefix = split_s3_uri(location)
        paginator = self.client.get_paginator("list_objects_v2")
        folders: list[str] = []
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix, Delimiter="/"):
            for common in page.get("CommonPrefixes", []):
                folder = common.get("Prefix")
                if folder and RUN_FOLDER_MARKER in folder:
                    folders.append(folder)
        return sorted(folders)

    def download_object(self, location: str, local_path: Path) -> Path:
        """Download one object, retrying with exponential backoff.

        Raises the last botocore/OS error once retries are exhausted.
        """
        bucket, key = split_s3_uri(location)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        attempt = 0
        while True:
            attempt += 1
            try:
                self.client.download_file(bucket, key, str(local_path))
                return local_path
            except (ClientError, BotoCoreError, OSError) as exc:
                if attempt > self.retries:
                    raise
                sleep_s = float(self.backoff_factor) ** float(attempt - 1)
                logger.warning(
                    "Download failed (attempt %d/%d) for %s: %s; backing off %.1fs",
                    attempt,
                    self.retries + 1,
                    location,
                    type(exc).__name__,
                    sleep_s,
                )
                time.sleep(sleep_s)
