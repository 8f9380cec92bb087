"""Tests for the plan manifest."""

import json

from emr_etl_runner.builder import PipelineBuilder, PipelineFlags
from emr_etl_runner.run_manifest import write_plan_manifest

from conftest import RESOLVER, RUN_TIMESTAMP, FakeObjectStore, make_config


def test_write_plan_manifest(tmp_path):
    plan = PipelineBuilder(
        make_config(),
        PipelineFlags(archive_enriched="skip"),
        object_store=FakeObjectStore(),
        resolver=RESOLVER,
        run_timestamp=RUN_TIMESTAMP,
    ).build()

    out = write_plan_manifest(plan, tmp_path / "nested" / "plan.json", command="emr-etl-runner --dry-run")
    manifest = json.loads(out.read_text(encoding="utf-8"))

    assert manifest["run_id"] == "2020-01-01-00-00-00"
    assert manifest["release"] == "emr-5.9.0"
    assert manifest["applications"] == ["Hadoop", "Spark"]
    assert manifest["git_commit"] is None
    assert [s["name"] for s in manifest["steps"]] == [s.name for s in plan.steps]
    assert manifest["steps"][1]["engine"] == "spark"
