"""Tests for run lifecycle events."""

from unittest.mock import Mock

import pytest
import requests

from emr_etl_runner.config import TrackerConfig
from emr_etl_runner.plan import build_topology
from emr_etl_runner.telemetry import TIMEOUT_SECONDS, CollectorTelemetry

from conftest import make_config


def test_posts_event_to_collector():
    session = Mock()
    telemetry = CollectorTelemetry(TrackerConfig(collector="collector.acme.com"), session=session)

    telemetry.job_started(build_topology(make_config()))

    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs["json"]
    assert url == "https://collector.acme.com/emr-etl-runner/v1/events"
    assert payload["event"] == "job_started"
    assert payload["app_id"] == "emr-etl-runner"
    assert payload["jobflow"] == "Snowplow ETL"
    assert payload["tags"] == {"team": "data"}
    session.post.return_value.raise_for_status.assert_called_once()


def test_get_method_sends_params():
    session = Mock()
    tracker = TrackerConfig(collector="http://localhost:8080/", method="get")
    CollectorTelemetry(tracker, session=session).job_failed(build_topology(make_config()))

    assert session.get.call_args.args[0] == "http://localhost:8080/emr-etl-runner/v1/events"
    assert session.get.call_args.kwargs["params"]["event"] == "job_failed"


def test_http_errors_are_raised():
    session = Mock()
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("503")
    telemetry = CollectorTelemetry(TrackerConfig(collector="collector.acme.com"), session=session)
    with pytest.raises(requests.HTTPError):
        telemetry.job_succeeded(build_topology(make_config()))


def test_events_use_a_short_timeout():
    """A slow collector holds the monitor up for at most a couple of seconds."""
    session = Mock()
    CollectorTelemetry(TrackerConfig(collector="collector.acme.com"), session=session).job_started(
        build_topology(make_config()),
    )
    assert session.post.call_args.kwargs["timeout"] == TIMEOUT_SECONDS
    assert TIMEOUT_SECONDS <= 2.0
