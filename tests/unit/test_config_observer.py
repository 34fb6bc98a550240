"""
Unit tests for Settings and RequestObserver.
"""

import logging

import pytest

from taskmode.config import Settings
from taskmode.observer import RequestObserver, ensure_observer


class TestSettings:
    """Tests for Settings.from_env."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("TASKMODE_API_URL", "TASKMODE_TIMEOUT", "TASKMODE_THROTTLE_MS",
                     "TASKMODE_PROGRESS_CEILING", "TASKMODE_NUMBER_GROUPING",
                     "TASKMODE_STRICT_REPAIR", "TASKMODE_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        settings = Settings.from_env()
        assert settings.api_url == "http://localhost:3000/api/task"
        assert settings.throttle_seconds == pytest.approx(0.1)
        assert settings.progress_ceiling == 95.0
        assert settings.number_grouping == "international"
        assert settings.strict_repair is False

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TASKMODE_API_URL", "https://ca.example/api/task")
        monkeypatch.setenv("TASKMODE_THROTTLE_MS", "250")
        monkeypatch.setenv("TASKMODE_NUMBER_GROUPING", "Indian")
        monkeypatch.setenv("TASKMODE_STRICT_REPAIR", "yes")
        monkeypatch.setenv("TASKMODE_LOG_LEVEL", "debug")

        settings = Settings.from_env()
        assert settings.api_url == "https://ca.example/api/task"
        assert settings.throttle_seconds == pytest.approx(0.25)
        assert settings.number_grouping == "indian"
        assert settings.strict_repair is True
        assert settings.log_level == "DEBUG"

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("TASKMODE_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="TASKMODE_TIMEOUT"):
            Settings.from_env()

    def test_bad_grouping(self):
        with pytest.raises(ValueError, match="number_grouping"):
            Settings(number_grouping="chinese")

    def test_ceiling_must_leave_room(self):
        with pytest.raises(ValueError, match="progress_ceiling"):
            Settings(progress_ceiling=100)


class TestRequestObserver:
    """Tests for RequestObserver."""

    def test_records_checkpoints(self):
        ticks = iter([10.0, 10.5, 11.0])
        observer = RequestObserver(name="req", clock=lambda: next(ticks))
        observer.log("START", "Started")
        observer.warn("SLOW", "Took a while", {"seconds": 1})

        assert [c.checkpoint for c in observer.checkpoints] == ["START", "SLOW"]
        assert observer.checkpoints[0].elapsed == 0.5
        assert [c.checkpoint for c in observer.warnings] == ["SLOW"]
        assert observer.find("SLOW")[0].data == {"seconds": 1}

    def test_mirrors_to_logging(self, caplog):
        observer = RequestObserver(name="req")
        with caplog.at_level(logging.DEBUG, logger="taskmode.observer"):
            observer.error("BROKEN", "Failed", "x" * 1000)
        assert "BROKEN: Failed" in caplog.text
        assert "x" * 501 not in caplog.text

    def test_ensure_observer(self):
        observer = RequestObserver(name="mine")
        assert ensure_observer(observer) is observer
        assert ensure_observer(None, "fresh").name == "fresh"
