# emr_etl_runner/monitor.py
"""Submit a plan and supervise the jobflow until it reaches a terminal state.

Every ``poll_interval_seconds`` the step states are read; once no step
is running-like the run is over. Network hiccups, throttling and EMR 5xx
responses are logged and retried after ``backoff_seconds`` without ever
counting towards the outcome.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ParamValidationError,
    ReadTimeoutError,
)

from emr_etl_runner.diagnostics import describe
from emr_etl_runner.errors import BootstrapFailureError, EmrExecutionError
from emr_etl_runner.plan import PipelinePlan

logger = logging.getLogger(__name__)

T = TypeVar("T")

RUNNING_STATES = frozenset({"WAITING", "RUNNING", "PENDING", "SHUTTING_DOWN"})
FAILED_STATES = frozenset({"FAILED", "CANCELLED"})
CANCELLED_STATE = "CANCELLED"

BOOTSTRAP_FAILURE_INDICATOR = re.compile(r"BOOTSTRAP_FAILURE|bootstrap action|Master instance startup failed")

POLL_INTERVAL_SECONDS = 120
BACKOFF_SECONDS = 300

TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ParamValidationError,
)
THROTTLING_CODES = frozenset(
    {"Throttling", "ThrottlingException", "ThrottledException", "RequestLimitExceeded", "TooManyRequestsException"},
)
SERVER_ERROR_CODES = frozenset({"InternalServerError", "InternalFailure", "ServiceUnavailable"})


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    BOOTSTRAP_FAILURE = "bootstrap_failure"
    EXECUTION_FAILURE = "execution_failure"


@dataclass(frozen=True)
class ClusterOutcome:
    handle: str
    status: OutcomeStatus
    diagnostics: str | None = None

    @property
    def successful(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS


def is_transient_error(exc: BaseException) -> bool:
    """Errors worth waiting out: socket/IO errors, timeouts, throttling, 5xx."""
    if isinstance(exc, (OSError, *TRANSIENT_BOTOCORE_ERRORS)):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        http_status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        return code in THROTTLING_CODES or code in SERVER_ERROR_CODES or int(http_status) >= 500
    return False


def is_bootstrap_failure(step_states: list[str], last_state_change_reason: str) -> bool:
    """Bootstrap failures surface as every step cancelled plus a telltale reason."""
    return all(s == CANCELLED_STATE for s in step_states) and bool(
        BOOTSTRAP_FAILURE_INDICATOR.search(last_state_change_reason or ""),
    )


class RunMonitor:
    """Run one plan on EMR: submit, wait, classify, collect loader logs."""

    def __init__(
        self,
        control_plane: Any,
        *,
        telemetry: Any | None = None,
        log_collector: Any | None = None,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        backoff_seconds: float = BACKOFF_SECONDS,
    ) -> None:
        self.control_plane = control_plane
        self.telemetry = telemetry
        self.log_collector = log_collector
        self.sleep = sleep
        self.poll_interval_seconds = poll_interval_seconds
        self.backoff_seconds = backoff_seconds
        self._plan: PipelinePlan | None = None

    def _notify(self, event: str) -> None:
        if self.telemetry is None or self._plan is None:
            return
        try:
            getattr(self.telemetry, event)(self._plan.topology)
        except Exception as exc:
            logger.warning("Telemetry %s failed (ignored): %s: %s", event, type(exc).__name__, exc)

    def _retrying(self, fn: Callable[[], T]) -> T:
        while True:
            try:
                return fn()
            except (OSError, BotoCoreError, ClientError) as exc:
                if not is_transient_error(exc):
                    raise
                logger.warning(
                    "Got %s (%s), waiting %d seconds before checking jobflow again",
                    type(exc).__name__,
                    exc,
                    self.backoff_seconds,
                )
                self.sleep(self.backoff_seconds)

    def submit(self, plan: PipelinePlan) -> str:
        self._plan = plan
        handle = self.control_plane.submit_plan(plan)
        logger.info("EMR jobflow %s started, waiting for jobflow to complete...", handle)
        self._notify("job_started")
        return handle

    def _check(self, handle: str) -> OutcomeStatus | None:
        """One poll. None while any step is still running-like."""
        steps = self.control_plane.query_step_states(handle)
        states = [s.state for s in steps]
        running = sum(1 for s in states if s in RUNNING_STATES)
        failed = sum(1 for s in states if s in FAILED_STATES)
        logger.debug("Jobflow %s: %d steps, %d running, %d failed", handle, len(states), running, failed)

        if running > 0:
            return None
        if failed == 0:
            return OutcomeStatus.SUCCESS

        cluster = self.control_plane.query_cluster_status(handle)
        if is_bootstrap_failure(states, cluster.last_state_change_reason):
            return OutcomeStatus.BOOTSTRAP_FAILURE
        return OutcomeStatus.EXECUTION_FAILURE

    def await_completion(self, handle: str) -> ClusterOutcome:
        """Block until the jobflow is terminal and classify how it ended."""
        while True:
            status = self._retrying(lambda: self._check(handle))
            if status is not None:
                break
            self.sleep(self.poll_interval_seconds)

        if status is OutcomeStatus.SUCCESS:
            logger.info("EMR jobflow %s completed successfully.", handle)
            self._notify("job_succeeded")
            return ClusterOutcome(handle=handle, status=status)

        diagnostics = self._retrying(lambda: describe(self.control_plane, handle))
        self._notify("job_failed")
        return ClusterOutcome(handle=handle, status=status, diagnostics=diagnostics)

    def run(self, plan: PipelinePlan) -> ClusterOutcome:
        """Submit ``plan`` and wait for it.

        Raises:
            BootstrapFailureError: the cluster failed to bootstrap
            EmrExecutionError: the jobflow failed for any other reason
        """
        handle = self.submit(plan)
        outcome = self.await_completion(handle)

        if self.log_collector is not None:
            self.log_collector.collect(plan.loader_logs)

        if outcome.status is OutcomeStatus.BOOTSTRAP_FAILURE:
            raise BootstrapFailureError(outcome.diagnostics)
        if outcome.status is OutcomeStatus.EXECUTION_FAILURE:
            raise EmrExecutionError(outcome.diagnostics)
        return outcome
