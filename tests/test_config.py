"""
Tests for configuration loading and checkpoint state.
"""

import json
import os
import stat
import pytest
from datetime import datetime, timezone

from pydantic import ValidationError

from linnworks_sync.config import SyncSettings, load_config, save_config
from linnworks_sync.state import StateManager, SyncCheckpoint


class TestLoadConfig:
    """Tests for file + environment configuration."""

    def test_defaults(self, tmp_path):
        settings = load_config(tmp_path / "missing.json", environ={})

        assert settings.batch_size == 50
        assert settings.backoff_schedule == [1.0, 3.0, 10.0]
        assert settings.rate_limit_max_requests == 150
        assert settings.has_credentials is False
        assert settings.credentials() is None

    def test_file_then_environment(self, tmp_path):
        """Test environment variables override the config file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"batch_size": 25, "page_size": 100, "application_id": "from-file"}))

        settings = load_config(path, environ={
            "LINNWORKS_BATCH_SIZE": "10",
            "LINNWORKS_APPLICATION_SECRET": "s3cret",
            "UNRELATED": "x",
        })

        assert settings.batch_size == 10
        assert settings.page_size == 100
        assert settings.application_id == "from-file"
        assert settings.application_secret.get_secret_value() == "s3cret"

    def test_list_values_from_environment(self, tmp_path):
        settings = load_config(tmp_path / "none.json", environ={
            "LINNWORKS_BACKOFF_SCHEDULE": "2, 4, 8",
            "LINNWORKS_WARMING_PERIODS": "[1, 7]",
            "LINNWORKS_TRACKED_FIELDS": "total_charge,is_paid",
        })

        assert settings.backoff_schedule == [2.0, 4.0, 8.0]
        assert settings.warming_periods == [1, 7]
        assert settings.tracked_fields == ["total_charge", "is_paid"]

    def test_invalid_value(self, tmp_path):
        with pytest.raises(ValidationError):
            load_config(tmp_path / "none.json", environ={"LINNWORKS_BATCH_SIZE": "0"})

    def test_credentials(self):
        settings = SyncSettings(application_id="app", application_secret="s", installation_token="t")

        credentials = settings.credentials()

        assert credentials.application_id == "app"
        assert credentials.installation_token.get_secret_value() == "t"

    def test_secrets_hidden_in_repr(self):
        settings = SyncSettings(application_id="app", application_secret="topsecret", installation_token="t")
        assert "topsecret" not in repr(settings)


class TestSaveConfig:
    """Tests for writing the config file."""

    def test_round_trip_with_owner_only_mode(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        settings = SyncSettings(application_id="app", application_secret="s", installation_token="t", batch_size=20)

        save_config(settings, path)

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        loaded = load_config(path, environ={})
        assert loaded.batch_size == 20
        assert loaded.application_secret.get_secret_value() == "s"


class TestStateManager:
    """Tests for checkpoint persistence."""

    def test_fresh_state(self, tmp_path):
        checkpoint = StateManager(tmp_path / "state.json").load()

        assert checkpoint.last_run_id is None
        assert checkpoint.interrupted is False

    def test_save_and_load(self, tmp_path):
        manager = StateManager(tmp_path / "state.json")
        started = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
        finished = datetime(2024, 3, 10, 12, 5, tzinfo=timezone.utc)
        checkpoint = SyncCheckpoint()
        checkpoint.begin_run("run-1", now=started)
        checkpoint.finish_run(True, {"processed": 3, "created": 3}, range_end=finished, now=finished)

        manager.save(checkpoint)
        loaded = manager.load()

        assert loaded.last_run_id == "run-1"
        assert loaded.run_started_at == started
        assert loaded.last_successful_sync == finished
        assert loaded.last_summary == {"processed": 3, "created": 3}
        assert loaded.interrupted is False
        assert not (tmp_path / "state.tmp").exists()

    def test_failed_run_keeps_last_success(self, tmp_path):
        earlier = datetime(2024, 3, 9, tzinfo=timezone.utc)
        checkpoint = SyncCheckpoint(last_successful_sync=earlier)
        checkpoint.begin_run("run-2")
        checkpoint.finish_run(False, {"failed": 1}, errors=["boom"])

        assert checkpoint.last_successful_sync == earlier
        assert checkpoint.last_success is False
        assert checkpoint.errors == ["boom"]

    def test_interrupted_run_detected(self, tmp_path):
        manager = StateManager(tmp_path / "state.json")
        checkpoint = SyncCheckpoint()
        checkpoint.begin_run("run-3")
        manager.save(checkpoint)

        assert manager.load().interrupted is True

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")

        assert StateManager(path).load().last_run_id is None

    def test_clear(self, tmp_path):
        manager = StateManager(tmp_path / "state.json")
        manager.save(SyncCheckpoint())

        manager.clear()

        assert not (tmp_path / "state.json").exists()
