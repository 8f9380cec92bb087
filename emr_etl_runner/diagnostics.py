# emr_etl_runner/diagnostics.py
"""Human-readable failure report for a finished jobflow."""

from __future__ import annotations

from datetime import datetime
from functools import cmp_to_key
from typing import Any

from emr_etl_runner.emr_client import ClusterStatus, StepStatus

ELAPSED_NA = "elapsed time n/a"


def nilable_compare(a: datetime | None, b: datetime | None) -> int:
    """Three-way comparison where a missing value sorts after any present one."""
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    return (a > b) - (a < b)


def get_elapsed_time(start: datetime | None, end: datetime | None) -> str:
    """``HH:MM:SS`` between two instants, or ``"elapsed time n/a"``."""
    if start is None or end is None:
        return ELAPSED_NA
    seconds = int(abs((start - end).total_seconds()))
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def get_timespan(start: datetime | None, end: datetime | None) -> str:
    return f"[{start} - {end}]"


def format_failure_report(handle: str, cluster: ClusterStatus, steps: list[StepStatus]) -> str:
    lines = [
        f"EMR jobflow {handle} failed, check Amazon EMR console and Hadoop logs for details. Data files not archived.",
        (
            f"{cluster.name}: {cluster.state} [{cluster.last_state_change_reason}] ~ "
            f"{get_elapsed_time(cluster.ready_at, cluster.ended_at)} {get_timespan(cluster.ready_at, cluster.ended_at)}"
        ),
    ]
    ordered = sorted(steps, key=cmp_to_key(lambda a, b: nilable_compare(a.started_at, b.started_at)))
    for i, step in enumerate(ordered, 1):
        lines.append(
            f" - {i}. {step.name}: {step.state} ~ "
            f"{get_elapsed_time(step.started_at, step.ended_at)} {get_timespan(step.started_at, step.ended_at)}",
        )
    return "\n".join(lines)


def describe(control_plane: Any, handle: str) -> str:
    """Query the control plane and format the failure report for ``handle``."""
    steps = control_plane.query_step_states(handle)
    cluster = control_plane.query_cluster_status(handle)
    return format_failure_report(handle, cluster, steps)
