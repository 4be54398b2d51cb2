"""Tests for the structlog configurator module."""

import json
import logging
from unittest.mock import Mock, patch

import pytest
import structlog

from fieldsensor.config import FieldSensorConfig
from fieldsensor.config.models import LoggingConfig
from fieldsensor.system.structlog_configurator import (
    LoggingEnvironment,
    _add_static_context,
    _build_handlers,
    _use_json,
    configure_structlog,
    detect_environment,
)

DOCKER = LoggingEnvironment(is_docker=True, has_systemd=False, is_development=False)
DEVICE = LoggingEnvironment(is_docker=False, has_systemd=True, is_development=False)
DEVELOPMENT = LoggingEnvironment(is_docker=False, has_systemd=False, is_development=True)


@pytest.fixture(autouse=True)
def restore_logging():
    """Restore root logger handlers and structlog defaults after each test."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
    structlog.reset_defaults()


class TestAddStaticContext:
    """Test the _add_static_context processor."""

    def test_adds_static_fields(self):
        """Should add static fields to all log events."""
        processor = _add_static_context({"service": "fieldsensor", "device_id": "sensor_1"})

        result = processor(Mock(spec=structlog.BoundLogger), "info", {"event": "test"})

        assert result == {"event": "test", "service": "fieldsensor", "device_id": "sensor_1"}

    def test_event_fields_take_precedence(self):
        """Should not overwrite a field supplied with the event."""
        processor = _add_static_context({"service": "fieldsensor"})

        result = processor(Mock(spec=structlog.BoundLogger), "info", {"service": "override"})

        assert result["service"] == "override"


class TestEnvironment:
    """Test environment detection and output selection."""

    def test_environment_names(self):
        """Should name each deployment target."""
        assert DOCKER.name == "docker"
        assert DEVICE.name == "device"
        assert DEVELOPMENT.name == "development"
        assert LoggingEnvironment(False, False, False).name == "unknown"

    def test_detect_development(self, monkeypatch):
        """Should detect development mode from FIELDSENSOR_ENV."""
        monkeypatch.setenv("FIELDSENSOR_ENV", "development")
        with (
            patch(
                "fieldsensor.system.structlog_configurator.is_docker_environment",
                return_value=False,
            ),
            patch(
                "fieldsensor.system.structlog_configurator.is_systemd_available",
                return_value=False,
            ),
        ):
            env = detect_environment()

        assert env == DEVELOPMENT

    @pytest.mark.parametrize(
        "env,json_logs,expected",
        [
            (DOCKER, None, True),
            (DEVICE, None, True),
            (DEVELOPMENT, None, False),
            (DEVICE, False, False),
            (DEVELOPMENT, True, True),
        ],
    )
    def test_use_json(self, env, json_logs, expected):
        """Should auto-detect JSON output unless configured explicitly."""
        config = FieldSensorConfig(logging=LoggingConfig(json_logs=json_logs))

        assert _use_json(config, env) is expected

    def test_development_json_override(self, monkeypatch):
        """Should honour FIELDSENSOR_JSON_LOGS in development."""
        monkeypatch.setenv("FIELDSENSOR_JSON_LOGS", "true")

        assert _use_json(FieldSensorConfig(), DEVELOPMENT)

    def test_console_handler_outside_systemd(self):
        """Should log to stdout in Docker and development."""
        (handler,) = _build_handlers(DOCKER)

        assert isinstance(handler, logging.StreamHandler)

    def test_stderr_fallback_without_systemd_python(self):
        """Should fall back to stderr when systemd-python is missing."""
        with patch.dict("sys.modules", {"systemd": None}):
            (handler,) = _build_handlers(DEVICE)

        assert isinstance(handler, logging.StreamHandler)


class TestConfigureStructlog:
    """Test the configured logging pipeline end to end."""

    def test_stdlib_extra_fields_rendered_as_json(self, capsys):
        """Should render stdlib records with extra fields and device identity."""
        config = FieldSensorConfig(
            device_id="sensor_1700000000000_abc123xyz",
            logging=LoggingConfig(level="INFO", json_logs=True),
        )
        with patch(
            "fieldsensor.system.structlog_configurator.detect_environment", return_value=DOCKER
        ):
            configure_structlog(config)

        logging.getLogger("fieldsensor.test").info(
            "Segment classified", extra={"confidence": 0.93, "positive": True}
        )

        lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
        entry = json.loads(lines[-1])
        assert entry["event"] == "Segment classified"
        assert entry["confidence"] == 0.93
        assert entry["positive"] is True
        assert entry["device_id"] == "sensor_1700000000000_abc123xyz"
        assert entry["level"] == "info"
        assert entry["logger"] == "fieldsensor.test"

    def test_level_applied_to_root_logger(self):
        """Should set the configured level on the root logger."""
        config = FieldSensorConfig(logging=LoggingConfig(level="WARNING", json_logs=False))
        with patch(
            "fieldsensor.system.structlog_configurator.detect_environment",
            return_value=DEVELOPMENT,
        ):
            configure_structlog(config)

        root_logger = logging.getLogger()
        assert root_logger.level == logging.WARNING
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_unknown_level_defaults_to_info(self):
        """Should fall back to INFO for unrecognised level names."""
        config = FieldSensorConfig(logging=LoggingConfig(level="CHATTY", json_logs=False))
        with patch(
            "fieldsensor.system.structlog_configurator.detect_environment",
            return_value=DEVELOPMENT,
        ):
            configure_structlog(config)

        assert logging.getLogger().level == logging.INFO
