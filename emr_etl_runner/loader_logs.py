# emr_etl_runner/loader_logs.py
"""Surface the logs RDB Loader steps leave in S3 once the run is over."""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from emr_etl_runner.plan import LoaderLogRef

logger = logging.getLogger(__name__)


class LoaderLogCollector:
    """Best-effort: a log that cannot be fetched is reported and skipped."""

    def __init__(self, object_store: Any) -> None:
        self.object_store = object_store

    def collect(self, log_refs: Iterable[LoaderLogRef]) -> int:
        """Download and log every loader log. Returns how many were retrieved."""
        refs = list(log_refs)
        if not refs:
            logger.info("No RDB Loader logs")
            return 0

        logger.info("RDB Loader logs")
        retrieved = 0
        with tempfile.TemporaryDirectory(prefix="rdbloader") as tmp:
            for i, ref in enumerate(refs):
                local_path = Path(tmp) / f"{i}.log"
                logger.debug("Downloading %s to %s", ref.log_key, local_path)
                try:
                    self.object_store.download_object(ref.log_key, local_path)
                    contents = local_path.read_text(encoding="utf-8", errors="replace")
                except Exception as exc:
                    logger.error("Error while downloading RDB log %s", ref.log_key)
                    logger.error("%s: %s", type(exc).__name__, exc)
                    continue
                logger.info(ref.target_name)
                logger.info(contents)
                retrieved += 1
        return retrieved
