# emr_etl_runner/emr_client.py
"""EMR control plane: submit a plan, read back cluster and step state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import boto3

from emr_etl_runner.plan import PipelinePlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepStatus:
    name: str
    state: str
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass(frozen=True)
class ClusterStatus:
    name: str
    state: str
    last_state_change_reason: str = ""
    ready_at: datetime | None = None
    ended_at: datetime | None = None


def new_emr_client(region: str, access_key_id: str | None = None, secret_access_key: str | None = None) -> Any:
    kwargs: dict[str, Any] = {"region_name": region}
    if access_key_id and secret_access_key:
        kwargs["aws_access_key_id"] = access_key_id
        kwargs["aws_secret_access_key"] = secret_access_key
    return boto3.client("emr", **kwargs)


class EmrControlPlane:
    """Thin adapter over a boto3 EMR client. Stateless apart from the client."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def submit_plan(self, plan: PipelinePlan) -> str:
        kwargs = plan.to_run_job_flow_kwargs()
        logger.info("Submitting jobflow %s with %d steps", kwargs["Name"], len(kwargs["Steps"]))
        response = self.client.run_job_flow(**kwargs)
        return str(response["JobFlowId"])

    def query_step_states(self, handle: str) -> list[StepStatus]:
        paginator = self.client.get_paginator("list_steps")
        statuses: list[StepStatus] = []
        for page in paginator.paginate(ClusterId=handle):
            for step in page.get("Steps", []):
                status = step.get("Status", {})
                timeline = status.get("Timeline", {})
                statuses.append(
                    StepStatus(
                        name=step.get("Name", ""),
                        state=status.get("State", ""),
                        started_at=timeline.get("StartDateTime"),
                        ended_at=timeline.get("EndDateTime"),
                    ),
                )
        return statuses

    def query_cluster_status(self, handle: str) -> ClusterStatus:
        cluster = self.client.describe_cluster(ClusterId=handle)["Cluster"]
        status = cluster.get("Status", {})
        reason = status.get("StateChangeReason", {})
        timeline = status.get("Timeline", {})
        code, message = reason.get("Code"), reason.get("Message")
        return ClusterStatus(
            name=cluster.get("Name", ""),
            state=status.get("State", ""),
            last_state_change_reason=": ".join(p for p in (code, message) if p),
            ready_at=timeline.get("ReadyDateTime"),
            ended_at=timeline.get("EndDateTime"),
        )
