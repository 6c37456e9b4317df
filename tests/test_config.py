"""Tests for engine settings."""

from datetime import timezone

import pytest
from pydantic import ValidationError

from pallet_delta.config import EngineSettings


class TestEngineSettings:
    """Tests for defaults and validation."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.anomaly_threshold_seconds == 300
        assert settings.overlap_policy == "merge"
        assert settings.summary_timezone == "UTC"
        assert settings.max_retries == 3
        assert settings.tz is timezone.utc

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings(overlap_policy="max")

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError, match="unknown timezone"):
            EngineSettings(summary_timezone="Mars/Olympus_Mons")

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings(anomaly_threshold_seconds=-1)

    def test_zero_retries_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings(max_retries=0)


class TestFromEnv:
    """Tests for reading PALLET_DELTA_* variables."""

    def test_empty_environment_gives_defaults(self):
        assert EngineSettings.from_env({}) == EngineSettings()

    def test_overrides_are_coerced(self):
        settings = EngineSettings.from_env(
            {
                "PALLET_DELTA_ANOMALY_THRESHOLD_SECONDS": "120",
                "PALLET_DELTA_OVERLAP_POLICY": "sum",
                "PALLET_DELTA_LOCK_TIMEOUT_SECONDS": "0.5",
            }
        )
        assert settings.anomaly_threshold_seconds == 120
        assert settings.overlap_policy == "sum"
        assert settings.lock_timeout_seconds == 0.5

    def test_unrelated_variables_ignored(self):
        settings = EngineSettings.from_env({"ANOMALY_THRESHOLD_SECONDS": "1", "PALLET_DELTA_OTHER": "x"})
        assert settings.anomaly_threshold_seconds == 300

    def test_invalid_value_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings.from_env({"PALLET_DELTA_MAX_RETRIES": "many"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("PALLET_DELTA_SUMMARY_TIMEZONE", "UTC")
        monkeypatch.setenv("PALLET_DELTA_MAX_RETRIES", "7")
        assert EngineSettings.from_env().max_retries == 7
