"""Tests for cluster topology and the run_job_flow request."""

from emr_etl_runner.builder import PipelineBuilder, PipelineFlags
from emr_etl_runner.plan import build_topology, is_legacy_ami

from conftest import RESOLVER, RUN_TIMESTAMP, FakeObjectStore, make_config


def _plan(config, **flags):
    return PipelineBuilder(
        config,
        PipelineFlags(**flags),
        object_store=FakeObjectStore(),
        resolver=RESOLVER,
        run_timestamp=RUN_TIMESTAMP,
    ).build()


def test_is_legacy_ami():
    assert is_legacy_ami("3.11.0")
    assert is_legacy_ami("1.0")
    assert not is_legacy_ami("4.5.0")
    assert not is_legacy_ami("5.9.0")


def test_release_label_cluster(config):
    """Release-label clusters carry applications and configurations."""
    plan = _plan(config, archive_enriched="skip")
    kwargs = plan.to_run_job_flow_kwargs()

    assert kwargs["ReleaseLabel"] == "emr-5.9.0"
    assert "AmiVersion" not in kwargs
    assert kwargs["Applications"] == [{"Name": "Hadoop"}, {"Name": "Spark"}]
    assert {"Classification": "core-site", "Properties": {"io.file.buffer.size": "65536"}} in kwargs["Configurations"]
    assert kwargs["Instances"]["Placement"] == {"AvailabilityZone": "eu-west-1a"}
    assert kwargs["Instances"]["Ec2KeyName"] == "etl-key"
    assert kwargs["Tags"] == [{"Key": "team", "Value": "data"}]
    assert kwargs["LogUri"] == "s3://etl/logs/"
    assert len(kwargs["Steps"]) == len(plan.steps)

    ami_bootstrap = kwargs["BootstrapActions"][-1]["ScriptBootstrapAction"]
    assert ami_bootstrap["Path"] == "s3://snowplow-hosted-assets/common/emr/snowplow-ami4-bootstrap-0.2.0.sh"
    assert ami_bootstrap["Args"] == ["1.10"]


def test_legacy_ami_cluster():
    config = make_config(**{
        "aws.emr.ami_version": "3.11.0",
        "enrich.versions": {"spark_enrich": "1.8.0"},
        "storage.versions": {"rdb_shredder": "0.11.0", "hadoop_elasticsearch": "0.1.0", "rdb_loader": "0.13.0"},
    })
    plan = _plan(config, archive_enriched="skip")
    kwargs = plan.to_run_job_flow_kwargs()

    assert kwargs["AmiVersion"] == "3.11.0"
    assert "ReleaseLabel" not in kwargs
    assert "Applications" not in kwargs

    paths = [a["ScriptBootstrapAction"]["Path"] for a in kwargs["BootstrapActions"]]
    assert paths[0] == "s3://elasticmapreduce/bootstrap-actions/configure-hadoop"
    assert paths[-1] == "s3://snowplow-hosted-assets/common/emr/snowplow-ami3-bootstrap-0.1.0.sh"
    assert kwargs["BootstrapActions"][-1]["ScriptBootstrapAction"]["Args"] == ["1.5"]

    # Copy steps use the jar shipped on legacy AMIs
    assert kwargs["Steps"][0]["HadoopJarStep"]["Jar"] == "/home/hadoop/lib/emr-s3distcp-1.0.jar"


def test_subnet_replaces_placement():
    config = make_config(**{"aws.emr.ec2_subnet_id": "subnet-123"})
    kwargs = _plan(config, enrich=False, shred=False, archive_enriched="skip").to_run_job_flow_kwargs()
    assert kwargs["Instances"]["Ec2SubnetId"] == "subnet-123"
    assert "Placement" not in kwargs["Instances"]
    assert build_topology(config).ec2_subnet_id == "subnet-123"


def test_instance_groups_with_ebs_and_spot_tasks():
    config = make_config(**{
        "aws.emr.jobflow.core_instance_ebs": {"volume_size": 200, "volume_type": "io1", "volume_iops": 400},
        "aws.emr.jobflow.task_instance_count": 3,
        "aws.emr.jobflow.task_instance_bid": 0.25,
    })
    master, core, task = build_topology(config).instance_groups()

    assert master["InstanceType"] == "m4.large"
    assert core["InstanceCount"] == 2
    volume = core["EbsConfiguration"]["EbsBlockDeviceConfigs"][0]["VolumeSpecification"]
    assert volume == {"VolumeType": "io1", "SizeInGB": 200, "Iops": 400}
    assert core["EbsConfiguration"]["EbsOptimized"] is True
    assert task["Market"] == "SPOT"
    assert task["BidPrice"] == "0.25"
    assert task["InstanceCount"] == 3


def test_no_task_group_by_default(config):
    assert len(build_topology(config).instance_groups()) == 2


def test_hbase_and_lingual():
    """HBase adds a bootstrap action and a start step ahead of the pipeline."""
    config = make_config(**{"aws.emr.software": {"hbase": "0.92.0", "lingual": "1.1"}})
    plan = _plan(config, enrich=False, shred=False, archive_enriched="skip")

    all_steps = plan.all_steps()
    assert all_steps[0].name == "Custom Jar Step: Start HBase 0.92.0"
    assert all_steps[0].arguments == ["emr.hbase.backup.Main", "--start-master"]

    paths = [a.path for a in plan.topology.bootstrap_actions]
    assert "s3://eu-west-1.elasticmapreduce/bootstrap-actions/setup-hbase" in paths
    assert "s3://files.concurrentinc.com/lingual/1.1/lingual-client/install-lingual-client.sh" in paths


def test_debugging_step_goes_first(config):
    plan = _plan(config, enrich=False, shred=False, archive_enriched="skip", debug=True)
    steps = plan.emr_steps()
    assert steps[0]["Name"] == "Setup Hadoop Debugging"
    assert steps[0]["HadoopJarStep"] == {"Jar": "command-runner.jar", "Args": ["state-pusher-script"]}


def test_user_configuration_classifications():
    config = make_config(**{"aws.emr.configuration": {"yarn-site": {"yarn.resourcemanager.am.max-attempts": 1}}})
    topology = build_topology(config)
    assert {"Classification": "yarn-site", "Properties": {"yarn.resourcemanager.am.max-attempts": "1"}} in (
        topology.configurations
    )
