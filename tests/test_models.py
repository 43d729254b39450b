import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from copilotbridge.credentials import Credential
from copilotbridge.errors import UnknownModelError
from copilotbridge.models import ModelCatalog, latest_versions, read_selected_model


def test_latest_versions_keeps_newest_per_name() -> None:
    models = latest_versions(
        [
            {"id": "gpt-4o-2024-05-13", "name": "GPT 4o", "version": "gpt-4o-2024-05-13"},
            {"id": "o1", "name": "o1", "vendor": "Azure OpenAI"},
            {"id": "gpt-4o-2024-11-20", "name": "GPT 4o", "version": "gpt-4o-2024-11-20"},
            {"name": "no id"},
            "junk",
        ]
    )

    assert [m.id for m in models] == ["gpt-4o-2024-11-20", "o1"]
    assert models[1].vendor == "Azure OpenAI"


class _Credentials:
    async def ensure_valid(self, min_remaining: float = 0.0) -> Credential:
        return Credential(token="t", endpoint="https://api.test")


class _Upstream:
    def __init__(self, payload: Any) -> None:
        self.payload = payload

    async def list_models(self, credential: Credential) -> Any:
        return self.payload


def test_catalog_lookup() -> None:
    catalog = ModelCatalog(_Credentials(), _Upstream({"data": [{"id": "claude-3.5-sonnet", "name": "Claude"}]}))

    assert asyncio.run(catalog.find_model("claude-3.5-sonnet")).name == "Claude"
    assert asyncio.run(catalog.find_model("missing")) is None


def test_catalog_without_data_list_is_empty() -> None:
    catalog = ModelCatalog(_Credentials(), _Upstream({"error": "nope"}))

    assert asyncio.run(catalog.list_models()) == []


def test_select_model_persists_catalog_entry(tmp_path: Path) -> None:
    config_dir = tmp_path / "github-copilot"
    catalog = ModelCatalog(_Credentials(), _Upstream({"data": [{"id": "claude-3.5-sonnet", "name": "Claude"}]}))

    model = asyncio.run(catalog.select_model("claude-3.5-sonnet", config_dir))

    assert model.id == "claude-3.5-sonnet"
    assert json.loads((config_dir / "model-config.json").read_text(encoding="utf-8")) == {"id": "claude-3.5-sonnet"}
    assert read_selected_model(config_dir) == "claude-3.5-sonnet"


def test_select_unknown_model_writes_nothing(tmp_path: Path) -> None:
    catalog = ModelCatalog(_Credentials(), _Upstream({"data": [{"id": "gpt-4o", "name": "GPT 4o"}]}))

    with pytest.raises(UnknownModelError):
        asyncio.run(catalog.select_model("gpt-9", tmp_path))
    assert not (tmp_path / "model-config.json").exists()
    assert read_selected_model(tmp_path) is None


def test_unreadable_model_config_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "model-config.json").write_text("{broken", encoding="utf-8")
    assert read_selected_model(tmp_path) is None

    (tmp_path / "model-config.json").write_text('["gpt-4o"]', encoding="utf-8")
    assert read_selected_model(tmp_path) is None
