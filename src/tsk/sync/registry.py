"""Provider registry.

Providers are registered as "module:Class" strings and only imported when
first used. Each factory builds a provider from its integration settings in
the config file (integrations.<name>).
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tsk.config import Config
    from tsk.sync.base import SyncProvider

logger = logging.getLogger("tsk.sync")

# Maps provider name -> provider class (or string reference for lazy loading)
_provider_registry: dict[str, type | str] = {
    "todoist": "tsk.sync.todoist:TodoistProvider",
    "linear": "tsk.sync.linear:LinearProvider",
}

# Integration setting -> constructor argument, per provider
_SETTINGS: dict[str, dict[str, str]] = {
    "todoist": {"api_key": "api_key", "project_filter": "project_id"},
    "linear": {"api_key": "api_key", "team_id": "team_id"},
}


def register_provider(name: str, provider: type | str, settings: dict[str, str] | None = None) -> None:
    """Register an additional provider class (or "module:Class" reference)."""
    _provider_registry[name] = provider
    _SETTINGS[name] = settings or {"api_key": "api_key"}


def registered_providers() -> list[str]:
    return list(_provider_registry)


def _resolve_provider_class(ref: str | type) -> type:
    """Resolve provider reference to actual class (lazy import)."""
    if isinstance(ref, type):
        return ref
    # String format: "module.path:ClassName"
    module_path, class_name = ref.rsplit(":", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


def create_provider(name: str, config: Config, **kwargs: Any) -> SyncProvider:
    """Instantiate a provider from its integration settings.

    Raises KeyError for unknown provider names.
    """
    if name not in _provider_registry:
        raise KeyError(f"Unknown provider: {name}. Known: {', '.join(_provider_registry)}")
    cls = _resolve_provider_class(_provider_registry[name])
    settings = config.get_integration(name)
    args = {arg: settings.get(key) for key, arg in _SETTINGS.get(name, {}).items()}
    args["api_key"] = args.get("api_key") or ""
    return cls(**args, **kwargs)


def get_provider(name: str, config: Config) -> SyncProvider | None:
    """A connected provider for name, or None if unknown or not configured."""
    if name not in _provider_registry:
        return None
    try:
        provider = create_provider(name, config)
    except (ImportError, TypeError, ValueError) as e:
        logger.warning("Could not load provider %s: %s", name, e)
        return None
    return provider if provider.is_connected() else None


def get_connected_providers(config: Config) -> list[SyncProvider]:
    """All providers that currently have credentials configured."""
    providers = []
    for name in _provider_registry:
        provider = get_provider(name, config)
        if provider is not None:
            providers.append(provider)
    return providers
