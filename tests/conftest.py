"""Shared fixtures: a realistic configuration and in-memory collaborators."""

from __future__ import annotations

import copy
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from emr_etl_runner.config import EtlConfig, parse_config
from emr_etl_runner.emr_client import ClusterStatus, StepStatus

RUN_TIMESTAMP = datetime(2020, 1, 1, 0, 0, 0)
RUN_ID = "2020-01-01-00-00-00"

RESOLVER = '{"schema":"iglu:com.snowplowanalytics.iglu/resolver-config/jsonschema/1-0-1","data":{"cacheSize":500,"repositories":[]}}'

BASE_CONFIG: dict[str, Any] = {
    "aws": {
        "access_key_id": "AKIAEXAMPLE",
        "secret_access_key": "super-secret",
        "s3": {
            "region": "eu-west-1",
            "buckets": {
                "assets": "s3://snowplow-hosted-assets",
                "jsonpath_assets": None,
                "log": "s3://etl/logs/",
                "raw": {
                    "in": ["s3://collector-logs/"],
                    "processing": "s3://etl/processing/",
                    "archive": "s3://archive/raw/",
                },
                "enriched": {
                    "good": "s3://data/enriched/good/",
                    "bad": "s3://data/enriched/bad/",
                    "errors": "s3://data/enriched/errors/",
                    "archive": "s3://archive/enriched/",
                },
                "shredded": {
                    "good": "s3://data/shredded/good/",
                    "bad": "s3://data/shredded/bad/",
                    "errors": "s3://data/shredded/errors/",
                    "archive": "s3://archive/shredded/",
                },
            },
        },
        "emr": {
            "ami_version": "5.9.0",
            "region": "eu-west-1",
            "jobflow_role": "EMR_EC2_DefaultRole",
            "service_role": "EMR_DefaultRole",
            "placement": "eu-west-1a",
            "ec2_subnet_id": None,
            "ec2_key_name": "etl-key",
            "bootstrap": [],
            "software": {"hbase": None, "lingual": None},
            "jobflow": {
                "job_name": "Snowplow ETL",
                "master_instance_type": "m4.large",
                "core_instance_count": 2,
                "core_instance_type": "r4.xlarge",
                "core_instance_ebs": None,
                "task_instance_count": 0,
                "task_instance_type": "m4.large",
                "task_instance_bid": None,
            },
            "additional_info": None,
            "configuration": {},
        },
    },
    "collectors": {"format": "thrift"},
    "enrich": {
        "versions": {"spark_enrich": "1.9.0"},
        "continue_on_unexpected_error": False,
        "output_compression": "GZIP",
    },
    "storage": {
        "versions": {"rdb_shredder": "0.12.0", "hadoop_elasticsearch": "0.1.0", "rdb_loader": "0.13.0"},
    },
    "monitoring": {"tags": {"team": "data"}, "logging": {"level": "DEBUG"}, "snowplow": None},
}


def make_config(**overrides: Any) -> EtlConfig:
    """Build a config from BASE_CONFIG. Overrides use dotted paths: ``{"collectors.format": "cloudfront"}``."""
    data = copy.deepcopy(BASE_CONFIG)
    for dotted, value in overrides.items():
        node = data
        *parents, leaf = dotted.split(".")
        for p in parents:
            node = node[p]
        node[leaf] = value
    return parse_config(data)


class FakeObjectStore:
    def __init__(
        self,
        non_empty: set[str] | None = None,
        run_folders: dict[str, list[str]] | None = None,
        objects: dict[str, str] | None = None,
    ) -> None:
        self.non_empty = non_empty or set()
        self.run_folders = run_folders or {}
        self.objects = objects or {}
        self.checked: list[str] = []
        self.downloads: list[str] = []

    def is_empty(self, location: str) -> bool:
        self.checked.append(location)
        return location not in self.non_empty

    def list_run_folders(self, location: str) -> list[str]:
        return list(self.run_folders.get(location, []))

    def download_object(self, location: str, local_path: Path) -> Path:
        self.downloads.append(location)
        if location not in self.objects:
            raise FileNotFoundError(location)
        local_path.write_text(self.objects[location], encoding="utf-8")
        return local_path


class FakeControlPlane:
    """Replays scripted step-state polls; an Exception entry is raised instead."""

    def __init__(
        self,
        polls: list[Any],
        cluster: ClusterStatus | None = None,
        handle: str = "j-TESTCLUSTER",
    ) -> None:
        self.polls = list(polls)
        self.cluster = cluster or ClusterStatus(name="Snowplow ETL", state="TERMINATED")
        self.handle = handle
        self.submitted: list[Any] = []
        self.step_queries = 0
        self.cluster_queries = 0
        self._last: list[StepStatus] = []

    def submit_plan(self, plan: Any) -> str:
        self.submitted.append(plan)
        return self.handle

    def query_step_states(self, handle: str) -> list[StepStatus]:
        self.step_queries += 1
        if self.polls:
            result = self.polls.pop(0)
            if isinstance(result, BaseException):
                raise result
            self._last = result
        return list(self._last)

    def query_cluster_status(self, handle: str) -> ClusterStatus:
        self.cluster_queries += 1
        return self.cluster


def steps_in(*states: str) -> list[StepStatus]:
    return [StepStatus(name=f"step {i}", state=s) for i, s in enumerate(states, 1)]


@pytest.fixture
def config() -> EtlConfig:
    return make_config()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()
