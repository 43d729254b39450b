import json
import logging

from copilotbridge.config import LoggingConfig
from copilotbridge.logging_utils import JsonLogFormatter, setup_logging


def test_setup_logging_forces_noisy_third_party_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpcore.http11")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="INFO", json=False))

    assert logging.getLogger().level == logging.INFO
    assert noisy.level == logging.INFO
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_forces_httpx_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpx")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="WARNING", json=False))

    assert noisy.level == logging.WARNING
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_json_mode_installs_json_formatter() -> None:
    setup_logging(LoggingConfig(level="DEBUG", json=True))

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, JsonLogFormatter)


def test_json_formatter_renders_one_object_per_record() -> None:
    record = logging.LogRecord("copilotbridge.test", logging.INFO, __file__, 1, "hello %s", ("wörld",), None)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "copilotbridge.test"
    assert payload["message"] == "hello wörld"
    assert "timestamp" in payload


def test_setup_logging_aligns_bridge_logger_tree() -> None:
    child = logging.getLogger("copilotbridge.upstream")
    child.setLevel(logging.CRITICAL)
    child.addHandler(logging.StreamHandler())

    setup_logging(LoggingConfig(level="DEBUG", json=False))

    assert logging.getLogger("copilotbridge").level == logging.DEBUG
    assert child.level == logging.DEBUG
    assert child.handlers == []
