"""Structlog-based logging configuration for the field sensor.

Modules log through the standard library (``logging.getLogger(__name__)`` with
``extra={...}``); records are rendered by structlog so ``extra`` fields become
structured keys. Output depends on where the sensor runs:

- Field device with systemd: JSON lines to journald
- Docker: JSON lines to stdout
- Development: human-readable console output
"""

import logging
import os
import subprocess
import sys
from collections.abc import Callable
from importlib.metadata import PackageNotFoundError, version
from typing import Any, NamedTuple

import structlog

from fieldsensor.config.models import FieldSensorConfig


class LoggingEnvironment(NamedTuple):
    """Where the process is running, as far as logging is concerned."""

    is_docker: bool
    has_systemd: bool
    is_development: bool

    @property
    def name(self) -> str:
        if self.is_docker:
            return "docker"
        if self.is_development:
            return "development"
        if self.has_systemd:
            return "device"
        return "unknown"


def is_docker_environment() -> bool:
    """Whether the process runs inside a container."""
    return os.path.exists("/.dockerenv") or os.environ.get("DOCKER_CONTAINER") == "true"


def is_systemd_available() -> bool:
    """Whether systemctl answers, meaning journald is likely present."""
    try:
        result = subprocess.run(["systemctl", "--version"], capture_output=True, timeout=2)
    except (subprocess.SubprocessError, FileNotFoundError):
        return False
    return result.returncode == 0


def get_package_version() -> str:
    """Installed fieldsensor version, or "unknown" when running from a source tree."""
    try:
        return version("fieldsensor")
    except PackageNotFoundError:
        return "unknown"


def detect_environment() -> LoggingEnvironment:
    """Detect the deployment environment."""
    return LoggingEnvironment(
        is_docker=is_docker_environment(),
        has_systemd=is_systemd_available(),
        is_development=os.environ.get("FIELDSENSOR_ENV", "production") == "development",
    )


def _add_static_context(extra_fields: dict[str, str]) -> Callable:
    """Processor adding fixed identity fields to every log entry."""

    def processor(
        logger: structlog.BoundLogger, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        for key, value in extra_fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def _use_json(config: FieldSensorConfig, env: LoggingEnvironment) -> bool:
    if env.is_development and os.environ.get("FIELDSENSOR_JSON_LOGS", "").lower() == "true":
        return True
    if config.logging.json_logs is not None:
        return config.logging.json_logs
    return env.is_docker or (env.has_systemd and not env.is_development)


def _shared_processors(config: FieldSensorConfig, env: LoggingEnvironment) -> list:
    """Processors applied to both structlog and stdlib log records."""
    static_fields = {
        "service": "fieldsensor",
        "version": get_package_version(),
        "deployment": env.name,
        "device_id": config.device_id or "unassigned",
        "site_name": config.site_name,
        **config.logging.extra_fields,
    }

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.stdlib.ExtraAdder(),
        _add_static_context(static_fields),
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
    ]
    if config.logging.include_caller:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                {
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                }
            )
        )
    return processors


def _build_handlers(env: LoggingEnvironment) -> list[logging.Handler]:
    """Pick output handlers for the environment."""
    if env.is_docker or env.is_development or not env.has_systemd:
        return [logging.StreamHandler(sys.stdout)]

    try:
        from systemd import journal  # type: ignore[import-untyped]
    except ImportError:
        # systemd-python is optional; systemd still captures stderr of the unit
        return [logging.StreamHandler(sys.stderr)]
    return [journal.JournalHandler(SYSLOG_IDENTIFIER="fieldsensor")]


def configure_structlog(config: FieldSensorConfig) -> None:
    """Configure structlog and route standard library logging through it.

    Args:
        config: The FieldSensorConfig instance containing logging settings.
    """
    env = detect_environment()
    log_level = logging.getLevelNamesMapping().get(config.logging.level.upper(), logging.INFO)
    shared = _shared_processors(config, env)
    renderer = (
        structlog.processors.JSONRenderer()
        if _use_json(config, env)
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in _build_handlers(env):
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # httpx logs every request at INFO; one line per segment upload is noise on a device
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    structlog.get_logger(__name__).info(
        "Structured logging configured",
        log_level=config.logging.level,
        environment=env.name,
        json_output=isinstance(renderer, structlog.processors.JSONRenderer),
    )
