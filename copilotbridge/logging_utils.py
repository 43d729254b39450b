"""Process-wide logging for the bridge service and CLI.

One root handler writes either plain lines or JSON objects. The bridge's own
`copilotbridge.*` loggers and the HTTP stack it drives (httpx/httpcore for the
Copilot API, uvicorn for the Ollama-facing server) are pinned to the configured
level so a DEBUG run shows upstream traffic and an INFO run does not.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .config import LoggingConfig

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Logger trees whose level follows `LoggingConfig.level`.
BRIDGE_LOGGER_TREES = (
    "copilotbridge",
    "httpx",
    "httpcore",
    "uvicorn",
)


class JsonLogFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _align_logger_tree(root_name: str, level: int) -> None:
    """Route a logger and its existing children through the root handler at `level`."""
    names = [root_name]
    names.extend(name for name in logging.root.manager.loggerDict if str(name).startswith(f"{root_name}."))
    for name in names:
        logger = logging.getLogger(str(name))
        logger.setLevel(level)
        logger.handlers.clear()
        logger.propagate = True


def setup_logging(cfg: LoggingConfig) -> None:
    """Install the single root handler and align the bridge logger trees."""
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for tree in BRIDGE_LOGGER_TREES:
        _align_logger_tree(tree, level)
