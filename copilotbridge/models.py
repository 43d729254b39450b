"""Copilot model catalog lookup."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .credentials import CredentialManager
from .errors import UnknownModelError
from .json_helpers import read_json_object
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

MODEL_CONFIG_FILE = "model-config.json"


@dataclass(frozen=True)
class ModelInfo:
    """One chat model offered by the Copilot API."""

    id: str
    name: str
    vendor: str | None = None
    version: str | None = None
    capabilities: dict[str, Any] = field(default_factory=dict)


def latest_versions(models: list[Any]) -> list[ModelInfo]:
    """Keep only the highest version per model name, in first-seen order."""
    latest: dict[str, dict[str, Any]] = {}
    for model in models:
        if not isinstance(model, dict) or not model.get("id"):
            continue
        name = str(model.get("name") or model["id"])
        current = latest.get(name)
        if current is None or str(model.get("version") or "") > str(current.get("version") or ""):
            latest[name] = model
    return [
        ModelInfo(
            id=str(model["id"]),
            name=name,
            vendor=model.get("vendor"),
            version=model.get("version"),
            capabilities=model.get("capabilities") if isinstance(model.get("capabilities"), dict) else {},
        )
        for name, model in latest.items()
    ]


class ModelCatalog:
    """List models available to the signed-in account."""

    def __init__(self, credentials: CredentialManager, upstream: UpstreamClient) -> None:
        self.credentials = credentials
        self.upstream = upstream

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the catalog, reduced to the latest version of each model."""
        credential = await self.credentials.ensure_valid()
        payload = await self.upstream.list_models(credential)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            LOG.warning("model catalog response has no data list")
            return []
        return latest_versions(data)

    async def find_model(self, model_id: str) -> ModelInfo | None:
        """Return the catalog entry with the given id, if any."""
        for model in await self.list_models():
            if model.id == model_id:
                return model
        return None

    async def select_model(self, model_id: str, config_dir: Path) -> ModelInfo:
        """Validate `model_id` against the catalog and persist it as the default."""
        model = await self.find_model(model_id)
        if model is None:
            raise UnknownModelError(f"model {model_id!r} is not available; run `copilotbridge models`")
        write_selected_model(config_dir, model.id)
        LOG.info("default model set to %s", model.id)
        return model


def read_selected_model(config_dir: Path) -> str | None:
    """Return the model id saved by `select_model`, if any."""
    path = config_dir / MODEL_CONFIG_FILE
    try:
        data = read_json_object(path)
    except (OSError, ValueError) as exc:
        LOG.warning("ignoring unreadable model config path=%s error=%s", path, exc)
        return None
    model_id = data.get("id") if data else None
    return str(model_id) if model_id else None


def write_selected_model(config_dir: Path, model_id: str) -> Path:
    """Write `{"id": model_id}` to the model config file."""
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / MODEL_CONFIG_FILE
    path.write_text(json.dumps({"id": model_id}, indent=2) + "\n", encoding="utf-8")
    return path
