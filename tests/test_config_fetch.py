"""Tests for the configuration lookups used by the connection manager."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from syncloop.activities.config_api import CatalogConfigApi
from syncloop.activities.config_fetch import ConfigFetchActivity
from syncloop.activities.jobs import InMemoryJobTracker
from syncloop.activities.models import ConnectionStatus, ScheduleRetrieverInput
from syncloop.config import SyncloopConfig
from syncloop.error_handling import TransientActivityFailure


@pytest.fixture
def config():
    return SyncloopConfig(
        max_attempt=4,
        connections=[
            {
                "connection_id": "orders",
                "source_id": "orders-db",
                "source_config": {"host": "db", "port": 5432},
            },
            {"connection_id": "legacy", "status": "deprecated"},
        ],
    )


@pytest.fixture
def activity(config):
    return ConfigFetchActivity(config, CatalogConfigApi(config, InMemoryJobTracker()))


def test_source_lookups(activity):
    assert activity.get_source_id("orders") == "orders-db"
    assert activity.get_source_id("legacy") is None
    assert activity.get_source_config("orders-db") == {"host": "db", "port": 5432}


def test_unknown_source_raises(activity):
    with pytest.raises(KeyError):
        activity.get_source_config("nope")


def test_status(activity):
    assert activity.get_status("orders") is ConnectionStatus.ACTIVE
    assert activity.get_status("legacy") is ConnectionStatus.DEPRECATED
    assert activity.get_status("missing") is None


def test_max_attempt_comes_from_config(activity):
    assert activity.get_max_attempt().max_attempt == 4


def test_time_to_wait_delegates_to_scheduler(config):
    scheduler = Mock()
    scheduler.compute_wait_time.return_value = timedelta(minutes=5)
    activity = ConfigFetchActivity(
        config,
        CatalogConfigApi(config, InMemoryJobTracker()),
        scheduler=scheduler,
    )

    output = activity.get_time_to_wait(ScheduleRetrieverInput("orders"))

    assert output.time_to_wait == timedelta(minutes=5)
    scheduler.compute_wait_time.assert_called_once_with("orders", skipped_run_at=None)


def test_first_run_is_due_immediately(activity):
    output = activity.get_time_to_wait(ScheduleRetrieverInput("orders"))

    assert output.time_to_wait == timedelta(0)


def test_workspace_tombstone(activity):
    assert activity.is_workspace_tombstone("orders") is False
    assert activity.is_workspace_tombstone("missing") is False


def test_refresh_without_config_file(activity):
    assert activity.refresh_catalog() is False


def test_refresh_of_missing_file_is_transient(config, activity, tmp_path):
    config.config_path = tmp_path / "gone.toml"

    with pytest.raises(TransientActivityFailure) as exc_info:
        activity.refresh_catalog()

    assert exc_info.value.recoverable
    assert isinstance(exc_info.value.original_error, FileNotFoundError)
