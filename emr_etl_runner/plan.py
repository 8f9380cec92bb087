# emr_etl_runner/plan.py
"""Cluster topology and the immutable plan handed to EMR in one call."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any

from emr_etl_runner.config import EtlConfig
from emr_etl_runner.paths import STANDARD_HOSTED_ASSETS, get_hosted_assets_bucket
from emr_etl_runner.steps import (
    COMMAND_RUNNER_JAR,
    CustomBinaryStep,
    Step,
    build_custom_binary_step,
    to_emr_step,
)
from emr_etl_runner.versions import get_cc_version

logger = logging.getLogger(__name__)

_LEGACY_AMI = re.compile(r"^[1-3].*")

CONFIGURE_HADOOP_ACTION = "s3://elasticmapreduce/bootstrap-actions/configure-hadoop"
LEGACY_DEBUGGING_JAR = "s3://elasticmapreduce/libs/script-runner/script-runner.jar"
LEGACY_DEBUGGING_ARGS = ("s3://elasticmapreduce/libs/state-pusher/0.1/fetch",)
DEBUGGING_STEP_NAME = "Setup Hadoop Debugging"


@dataclass(frozen=True)
class BootstrapAction:
    path: str
    args: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.path.rstrip("/").split("/")[-1]

    def to_emr(self) -> dict[str, Any]:
        return {"Name": self.name, "ScriptBootstrapAction": {"Path": self.path, "Args": list(self.args)}}


@dataclass(frozen=True)
class ClusterTopology:
    """Everything about the cluster except the pipeline steps."""

    name: str
    region: str
    log_uri: str
    legacy: bool
    ami_version: str
    master_instance_type: str
    core_instance_count: int
    core_instance_type: str
    job_flow_role: str
    service_role: str
    enable_debugging: bool = False
    ec2_key_name: str | None = None
    placement: str | None = None
    ec2_subnet_id: str | None = None
    additional_info: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    core_ebs: dict[str, Any] | None = None
    task_instance_count: int = 0
    task_instance_type: str | None = None
    task_instance_bid: float | None = None
    applications: tuple[str, ...] = ("Hadoop",)
    bootstrap_actions: tuple[BootstrapAction, ...] = ()
    configurations: tuple[dict[str, Any], ...] = ()
    # Steps that run before the pipeline (HBase start)
    setup_steps: tuple[CustomBinaryStep, ...] = ()

    @property
    def release_label(self) -> str | None:
        return None if self.legacy else f"emr-{self.ami_version}"

    def with_application(self, application: str) -> ClusterTopology:
        if application in self.applications:
            return self
        return replace(self, applications=(*self.applications, application))

    def instance_groups(self) -> list[dict[str, Any]]:
        groups: list[dict[str, Any]] = [
            {
                "Name": "Master",
                "InstanceRole": "MASTER",
                "Market": "ON_DEMAND",
                "InstanceType": self.master_instance_type,
                "InstanceCount": 1,
            },
        ]
        core: dict[str, Any] = {
            "Name": "Core",
            "InstanceRole": "CORE",
            "Market": "ON_DEMAND",
            "InstanceType": self.core_instance_type,
            "InstanceCount": self.core_instance_count,
        }
        if self.core_ebs is not None:
            core["EbsConfiguration"] = self.core_ebs
        groups.append(core)

        if self.task_instance_count > 0:
            task: dict[str, Any] = {
                "Name": "Task",
                "InstanceRole": "TASK",
                "InstanceType": self.task_instance_type,
                "InstanceCount": self.task_instance_count,
            }
            if self.task_instance_bid is None:
                task["Market"] = "ON_DEMAND"
            else:
                task["Market"] = "SPOT"
                task["BidPrice"] = str(self.task_instance_bid)
            groups.append(task)
        return groups

    def debugging_step(self) -> dict[str, Any]:
        if self.legacy:
            jar_step = {"Jar": LEGACY_DEBUGGING_JAR, "Args": list(LEGACY_DEBUGGING_ARGS)}
        else:
            jar_step = {"Jar": COMMAND_RUNNER_JAR, "Args": ["state-pusher-script"]}
        return {"Name": DEBUGGING_STEP_NAME, "ActionOnFailure": "TERMINATE_JOB_FLOW", "HadoopJarStep": jar_step}


@dataclass(frozen=True)
class LoaderLogRef:
    """Where a warehouse loader step will write its log."""

    target_name: str
    log_key: str


@dataclass(frozen=True)
class PipelinePlan:
    run_id: str
    topology: ClusterTopology
    steps: tuple[Step, ...]
    loader_logs: tuple[LoaderLogRef, ...] = ()

    def all_steps(self) -> tuple[Step, ...]:
        return (*self.topology.setup_steps, *self.steps)

    def emr_steps(self) -> list[dict[str, Any]]:
        steps = [to_emr_step(s, legacy_ami=self.topology.legacy) for s in self.all_steps()]
        if self.topology.enable_debugging:
            steps.insert(0, self.topology.debugging_step())
        return steps

    def to_run_job_flow_kwargs(self) -> dict[str, Any]:
        """Arguments for ``boto3.client("emr").run_job_flow``."""
        t = self.topology
        instances: dict[str, Any] = {
            "InstanceGroups": t.instance_groups(),
            "KeepJobFlowAliveWhenNoSteps": False,
            "TerminationProtected": False,
        }
        if t.ec2_key_name:
            instances["Ec2KeyName"] = t.ec2_key_name
        # A subnet and an availability zone are mutually exclusive
        if t.ec2_subnet_id:
            instances["Ec2SubnetId"] = t.ec2_subnet_id
        elif t.placement:
            instances["Placement"] = {"AvailabilityZone": t.placement}

        kwargs: dict[str, Any] = {
            "Name": t.name,
            "LogUri": t.log_uri,
            "Instances": instances,
            "Steps": self.emr_steps(),
            "BootstrapActions": [a.to_emr() for a in t.bootstrap_actions],
            "VisibleToAllUsers": True,
            "JobFlowRole": t.job_flow_role,
            "ServiceRole": t.service_role,
            "Tags": [{"Key": k, "Value": v} for k, v in t.tags.items()],
        }
        if t.legacy:
            kwargs["AmiVersion"] = t.ami_version
        else:
            kwargs["ReleaseLabel"] = t.release_label
            kwargs["Applications"] = [{"Name": a} for a in t.applications]
            if t.configurations:
                kwargs["Configurations"] = list(t.configurations)
        if t.additional_info:
            kwargs["AdditionalInfo"] = t.additional_info
        return kwargs


def is_legacy_ami(ami_version: str) -> bool:
    return bool(_LEGACY_AMI.match(ami_version))


def _ebs_configuration(config: EtlConfig) -> dict[str, Any] | None:
    ebs = config.aws.emr.jobflow.core_instance_ebs
    if ebs is None:
        return None
    volume: dict[str, Any] = {"VolumeType": ebs.volume_type, "SizeInGB": ebs.volume_size}
    if ebs.volume_type == "io1":
        volume["Iops"] = ebs.volume_iops
    return {
        "EbsBlockDeviceConfigs": [{"VolumeSpecification": volume, "VolumesPerInstance": 1}],
        "EbsOptimized": True if ebs.ebs_optimized is None else ebs.ebs_optimized,
    }


def build_topology(config: EtlConfig, *, debug: bool = False) -> ClusterTopology:
    """Cluster directives derived from configuration alone."""
    emr = config.aws.emr
    jobflow = emr.jobflow
    legacy = is_legacy_ami(emr.ami_version)

    bootstrap: list[BootstrapAction] = []
    configurations: list[dict[str, Any]] = []

    if config.collector_format == "thrift":
        if legacy:
            bootstrap += [
                BootstrapAction(CONFIGURE_HADOOP_ACTION, ("-c", "io.file.buffer.size=65536")),
                BootstrapAction(CONFIGURE_HADOOP_ACTION, ("-m", "mapreduce.user.classpath.first=true")),
            ]
        else:
            configurations += [
                {"Classification": "core-site", "Properties": {"io.file.buffer.size": "65536"}},
                {"Classification": "mapred-site", "Properties": {"mapreduce.user.classpath.first": "true"}},
            ]

    bootstrap += [BootstrapAction(path) for path in emr.bootstrap]

    standard_assets = get_hosted_assets_bucket(STANDARD_HOSTED_ASSETS, emr.region)
    if legacy:
        ami_bootstrap = f"{standard_assets}common/emr/snowplow-ami3-bootstrap-0.1.0.sh"
    else:
        ami_bootstrap = f"{standard_assets}common/emr/snowplow-ami4-bootstrap-0.2.0.sh"
    bootstrap.append(BootstrapAction(ami_bootstrap, (get_cc_version(config.enrich.spark_enrich_version),)))

    setup_steps: list[CustomBinaryStep] = []
    hbase = emr.software.hbase
    if hbase:
        bootstrap.append(BootstrapAction(f"s3://{emr.region}.elasticmapreduce/bootstrap-actions/setup-hbase"))
        setup_steps.append(
            build_custom_binary_step(
                f"Start HBase {hbase}",
                f"/home/hadoop/lib/hbase-{hbase}.jar",
                ["emr.hbase.backup.Main", "--start-master"],
            ),
        )

    lingual = emr.software.lingual
    if lingual:
        bootstrap.append(
            BootstrapAction(f"s3://files.concurrentinc.com/lingual/{lingual}/lingual-client/install-lingual-client.sh"),
        )

    configurations += [{"Classification": k, "Properties": dict(v)} for k, v in emr.configuration.items()]

    logger.debug(
        "Topology: %s %s, %d core + %d task instances, %d bootstrap actions",
        "AMI" if legacy else "release",
        emr.ami_version,
        jobflow.core_instance_count,
        jobflow.task_instance_count,
        len(bootstrap),
    )

    return ClusterTopology(
        name=jobflow.job_name,
        region=emr.region,
        log_uri=config.buckets.log,
        legacy=legacy,
        ami_version=emr.ami_version,
        master_instance_type=jobflow.master_instance_type,
        core_instance_count=jobflow.core_instance_count,
        core_instance_type=jobflow.core_instance_type,
        job_flow_role=emr.jobflow_role,
        service_role=emr.service_role,
        enable_debugging=debug,
        ec2_key_name=emr.ec2_key_name,
        placement=emr.placement,
        ec2_subnet_id=emr.ec2_subnet_id,
        additional_info=emr.additional_info,
        tags=dict(config.monitoring.tags),
        core_ebs=_ebs_configuration(config),
        task_instance_count=jobflow.task_instance_count,
        task_instance_type=jobflow.task_instance_type,
        task_instance_bid=jobflow.task_instance_bid,
        bootstrap_actions=tuple(bootstrap),
        configurations=tuple(configurations),
        setup_steps=tuple(setup_steps),
    )
