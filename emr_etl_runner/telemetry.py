# emr_etl_runner/telemetry.py
"""Run lifecycle events posted to a collector endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import requests

from emr_etl_runner.config import TrackerConfig
from emr_etl_runner.plan import ClusterTopology

logger = logging.getLogger(__name__)

EVENT_PATH = "/emr-etl-runner/v1/events"

# Upper bound on how long one event can hold up the monitor
TIMEOUT_SECONDS = 2.0


class CollectorTelemetry:
    """Sends ``job_started`` / ``job_succeeded`` / ``job_failed`` events.

    Callers treat this as fire-and-forget; HTTP errors are raised here and
    swallowed by the monitor.
    """

    def __init__(
        self,
        tracker: TrackerConfig,
        *,
        session: requests.Session | None = None,
        timeout: float = TIMEOUT_SECONDS,
    ):
        self.tracker = tracker
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        collector = self.tracker.collector.rstrip("/")
        if not collector.startswith(("http://", "https://")):
            collector = f"https://{collector}"
        return f"{collector}{EVENT_PATH}"

    def _payload(self, event: str, topology: ClusterTopology) -> dict[str, Any]:
        return {
            "app_id": self.tracker.app_id,
            "event": event,
            "jobflow": topology.name,
            "region": topology.region,
            "tags": dict(topology.tags),
            "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }

    def _track(self, event: str, topology: ClusterTopology) -> None:
        payload = self._payload(event, topology)
        if self.tracker.method.lower() == "get":
            response = self.session.get(
                self.endpoint,
                params={k: v for k, v in payload.items() if k != "tags"},
                timeout=self.timeout,
            )
        else:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug("Tracked %s for %s", event, topology.name)

    def job_started(self, topology: ClusterTopology) -> None:
        self._track("job_started", topology)

    def job_succeeded(self, topology: ClusterTopology) -> None:
        self._track("job_succeeded", topology)

    def job_failed(self, topology: ClusterTopology) -> None:
        self._track("job_failed", topology)
