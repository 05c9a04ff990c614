"""Tests for structlog configuration."""

import logging

import pytest
import structlog
from structlog.testing import capture_logs

from app.utils import logging as app_logging
from app.utils.logging import configure_logging, get_logger


@pytest.fixture
def unconfigured(monkeypatch, mocker):
    """Run configure_logging against mocks, as if the process just started."""
    monkeypatch.setattr(app_logging, "_configured", False)
    return (
        mocker.patch("app.utils.logging.logging.basicConfig"),
        mocker.patch("app.utils.logging.structlog.configure"),
    )


class TestConfigureLogging:
    def test_level_from_environment(self, unconfigured, monkeypatch) -> None:
        """[P1] LOG_LEVEL drives both stdlib and structlog filtering."""
        basic_config, _ = unconfigured
        monkeypatch.setenv("LOG_LEVEL", "warning")

        configure_logging()

        assert basic_config.call_args.kwargs["level"] == logging.WARNING

    def test_json_renderer_by_default(self, unconfigured) -> None:
        _, configure = unconfigured

        configure_logging(level="DEBUG")

        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert structlog.contextvars.merge_contextvars in processors

    def test_console_renderer_for_local_dev(self, unconfigured) -> None:
        _, configure = unconfigured

        configure_logging(level="INFO", json_output=False)

        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_unknown_level_falls_back_to_info(self, unconfigured) -> None:
        basic_config, _ = unconfigured
        configure_logging(level="chatty")
        assert basic_config.call_args.kwargs["level"] == logging.INFO

    def test_second_call_is_noop(self, unconfigured) -> None:
        """[P2] Repeated startup calls keep the first configuration."""
        _, configure = unconfigured

        configure_logging()
        configure_logging()

        assert configure.call_count == 1


class TestGetLogger:
    def test_binds_module_name(self) -> None:
        with capture_logs() as logs:
            get_logger("app.orchestrator.test").info("step_completed", job_id="j1")

        assert logs == [
            {
                "event": "step_completed",
                "job_id": "j1",
                "logger": "app.orchestrator.test",
                "log_level": "info",
            }
        ]
