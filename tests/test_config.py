"""Tests for configuration loading and the redacted serializer."""

import copy
import json
from pathlib import Path

import pytest
import yaml

from emr_etl_runner.config import (
    classify_targets,
    load_config,
    load_enrichments,
    load_resolver,
    load_targets,
    parse_config,
)
from emr_etl_runner.errors import ConfigurationError

from conftest import BASE_CONFIG


def _write_config(tmp_path, data):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_load_config_substitutes_env_vars(tmp_path, monkeypatch):
    """${VAR} values are resolved from the environment."""
    data = copy.deepcopy(BASE_CONFIG)
    data["aws"]["access_key_id"] = "${TEST_AWS_KEY}"
    data["aws"]["secret_access_key"] = "${TEST_AWS_SECRET}"
    monkeypatch.setenv("TEST_AWS_KEY", "AKIAFROMENV")
    monkeypatch.setenv("TEST_AWS_SECRET", "secret-from-env")

    config = load_config(_write_config(tmp_path, data))

    assert config.aws.access_key_id == "AKIAFROMENV"
    assert config.aws.secret_access_key == "secret-from-env"
    assert config.collector_format == "thrift"
    assert config.buckets.raw.in_ == ("s3://collector-logs/",)
    assert config.monitoring.log_level == "DEBUG"


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yml")


def test_missing_required_key_names_the_path():
    data = copy.deepcopy(BASE_CONFIG)
    del data["aws"]["s3"]["buckets"]["enriched"]["good"]
    with pytest.raises(ConfigurationError, match="aws.s3.buckets.enriched.good"):
        parse_config(data)


def test_single_raw_in_bucket_becomes_tuple():
    data = copy.deepcopy(BASE_CONFIG)
    data["aws"]["s3"]["buckets"]["raw"]["in"] = "s3://single/"
    assert parse_config(data).buckets.raw.in_ == ("s3://single/",)


def test_redacted_yaml_has_no_credentials(config):
    """The loader copy of the configuration omits AWS credentials."""
    text = config.to_yaml(redact=True)
    assert "AKIAEXAMPLE" not in text
    assert "super-secret" not in text

    reloaded = yaml.safe_load(text)
    assert "access_key_id" not in reloaded["aws"]
    assert "secret_access_key" not in reloaded["aws"]
    assert reloaded["aws"]["s3"]["buckets"]["enriched"]["good"] == "s3://data/enriched/good/"
    assert reloaded["aws"]["emr"]["jobflow"]["core_instance_count"] == 2
    assert reloaded["storage"]["versions"]["rdb_loader"] == "0.13.0"


def test_unredacted_yaml_round_trips(config):
    reloaded = yaml.safe_load(config.to_yaml(redact=False))
    assert parse_config(reloaded) == config


def test_load_resolver(tmp_path):
    path = tmp_path / "resolver.json"
    path.write_text('{"schema": "x", "data": {}}', encoding="utf-8")
    assert json.loads(load_resolver(path))["schema"] == "x"

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_resolver(path)


def test_load_enrichments_sorted(tmp_path):
    (tmp_path / "b.json").write_text('{"name": "b"}', encoding="utf-8")
    (tmp_path / "a.json").write_text('{"name": "a"}', encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    assert load_enrichments(tmp_path) == ['{"name": "a"}', '{"name": "b"}']
    assert load_enrichments(None) == []


def test_classify_targets():
    docs = [
        {"schema": "iglu:com.snowplowanalytics.snowplow.storage/redshift_config/jsonschema/2-1-0", "data": {"name": "rs"}},
        {"schema": "iglu:com.snowplowanalytics.snowplow.storage/elastic_config/jsonschema/1-0-0", "data": {"name": "es"}},
        {"schema": "iglu:com.snowplowanalytics.snowplow.storage/amazon_dynamodb_config/jsonschema/2-0-0", "data": {}},
        {"schema": "iglu:com.snowplowanalytics.snowplow.storage/postgresql_config/jsonschema/1-1-0", "data": {"name": "pg"}},
        {"schema": "iglu:com.acme/unknown/jsonschema/1-0-0", "data": {}},
    ]
    targets = classify_targets(docs)
    assert [t["data"]["name"] for t in targets.enriched_events] == ["rs", "pg"]
    assert [t["data"]["name"] for t in targets.failed_events] == ["es"]
    assert targets.duplicate_tracking is docs[2]


def test_load_targets_rejects_non_self_describing(tmp_path):
    (tmp_path / "bad.json").write_text('{"host": "x"}', encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_targets(tmp_path)


def test_sample_config_files_load():
    """The shipped sample configuration is valid."""
    config_dir = Path(__file__).parent.parent / "config"
    config = load_config(config_dir / "config.yml")
    targets = load_targets(config_dir / "targets")
    assert config.collector_format == "thrift"
    assert len(targets.enriched_events) == 1
    assert len(targets.failed_events) == 1
    load_resolver(config_dir / "iglu_resolver.json")
    assert len(load_enrichments(config_dir / "enrichments")) == 1


def test_malformed_yaml_is_a_configuration_error(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("aws: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid YAML"):
        load_config(path)


def test_malformed_target_json_is_a_configuration_error(tmp_path):
    (tmp_path / "redshift.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="redshift.json"):
        load_targets(tmp_path)


def test_malformed_enrichment_json_is_a_configuration_error(tmp_path):
    (tmp_path / "anon_ip.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="anon_ip.json"):
        load_enrichments(tmp_path)
