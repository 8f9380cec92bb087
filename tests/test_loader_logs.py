"""Tests for collecting RDB Loader logs after a run."""

import logging

from emr_etl_runner.loader_logs import LoaderLogCollector
from emr_etl_runner.plan import LoaderLogRef

from conftest import FakeObjectStore


def test_collect_continues_past_failures(caplog):
    """A missing log is reported and the remaining logs are still fetched."""
    store = FakeObjectStore(objects={
        "s3://logs/rdb-loader/run/a": "loaded 10 rows",
        "s3://logs/rdb-loader/run/c": "loaded 3 rows",
    })
    refs = [
        LoaderLogRef("Redshift A", "s3://logs/rdb-loader/run/a"),
        LoaderLogRef("Redshift B", "s3://logs/rdb-loader/run/b"),
        LoaderLogRef("Postgres C", "s3://logs/rdb-loader/run/c"),
    ]

    with caplog.at_level(logging.INFO):
        retrieved = LoaderLogCollector(store).collect(refs)

    assert retrieved == 2
    assert store.downloads == [r.log_key for r in refs]
    assert "Error while downloading RDB log s3://logs/rdb-loader/run/b" in caplog.text
    assert "loaded 10 rows" in caplog.text
    assert "loaded 3 rows" in caplog.text


def test_collect_without_logs(caplog):
    with caplog.at_level(logging.INFO):
        assert LoaderLogCollector(FakeObjectStore()).collect([]) == 0
    assert "No RDB Loader logs" in caplog.text
