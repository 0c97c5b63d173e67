"""Tests for the provider registry."""

import json
from pathlib import Path

import pytest

from tsk.config import Config
from tsk.sync import registry
from tsk.sync.linear import LinearProvider
from tsk.sync.registry import (
    _resolve_provider_class,
    create_provider,
    get_connected_providers,
    get_provider,
    registered_providers,
)
from tsk.sync.todoist import TodoistProvider


def _config(tmp_path: Path, integrations: dict) -> Config:
    (tmp_path / "config.json").write_text(json.dumps({"integrations": integrations}))
    return Config.load(tmp_path)


@pytest.fixture
def restore_registry():
    providers = dict(registry._provider_registry)
    settings = dict(registry._SETTINGS)
    yield
    registry._provider_registry.clear()
    registry._provider_registry.update(providers)
    registry._SETTINGS.clear()
    registry._SETTINGS.update(settings)


class TestRegistry:
    def test_builtin_providers(self):
        assert registered_providers() == ["todoist", "linear"]

    def test_lazy_reference_resolves(self):
        assert _resolve_provider_class("tsk.sync.todoist:TodoistProvider") is TodoistProvider
        assert _resolve_provider_class(LinearProvider) is LinearProvider

    def test_unknown_provider(self, tmp_path: Path):
        config = _config(tmp_path, {})
        with pytest.raises(KeyError):
            create_provider("jira", config)
        assert get_provider("jira", config) is None

    def test_settings_passed_to_constructor(self, tmp_path: Path):
        config = _config(tmp_path, {"todoist": {"api_key": "tok", "project_filter": "P1"}})
        provider = create_provider("todoist", config)
        assert isinstance(provider, TodoistProvider)
        assert provider._project_id == "P1"
        assert provider.is_connected()

    def test_unconfigured_provider_is_not_connected(self, tmp_path: Path):
        config = _config(tmp_path, {})
        assert get_provider("linear", config) is None

    def test_connected_providers(self, tmp_path: Path):
        config = _config(tmp_path, {"linear": {"api_key": "lin", "team_id": "T"}})
        providers = get_connected_providers(config)
        assert [p.name for p in providers] == ["linear"]

    def test_register_custom_provider(self, tmp_path: Path, restore_registry):
        class Custom:
            name = "custom"

            def __init__(self, api_key, workspace=None):
                self.api_key = api_key
                self.workspace = workspace

            def is_connected(self):
                return bool(self.api_key)

        registry.register_provider("custom", Custom, {"api_key": "api_key", "workspace": "workspace"})
        config = _config(tmp_path, {"custom": {"api_key": "k", "workspace": "w"}})
        provider = get_provider("custom", config)
        assert provider.workspace == "w"
        assert "custom" in registered_providers()

    def test_broken_provider_returns_none(self, tmp_path: Path, restore_registry):
        registry.register_provider("broken", "tsk.sync.missing_module:Nope")
        config = _config(tmp_path, {"broken": {"api_key": "k"}})
        assert get_provider("broken", config) is None
