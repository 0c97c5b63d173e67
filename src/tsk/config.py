"""Configuration with env overrides and per-integration settings."""

import json
import os
from pathlib import Path
from typing import Any

# Module-level cache for singleton pattern
_config_cache: "Config | None" = None

CONFLICT_STRATEGIES = ("remote-wins", "local-wins", "newest-wins")

SECRET_MARKERS = ("token", "apikey", "api_key", "secret")


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing or config reload."""
    global _config_cache
    _config_cache = None


def get_default_config_dir() -> Path:
    """Get default config directory, respecting TSK_CONFIG_DIR env var.

    This is the single source of truth for config directory resolution.
    """
    config_dir = os.environ.get("TSK_CONFIG_DIR")
    if config_dir:
        return Path(config_dir)
    return Path.home() / ".tsk"


class ConfigMeta:
    """Schema definition - separate from runtime state."""

    SETTINGS: dict[str, str] = {
        "conflict_strategy": "Conflict strategy (remote-wins|local-wins|newest-wins)",
        "save_debounce_ms": "Delay before writing tasks to disk (default: 300)",
        "date_format": "Date display (relative|absolute|iso)",
        "data_dir": "Directory for tasks.json (empty = config directory)",
    }


class Config:
    """Runtime configuration with env override support."""

    DEFAULTS: dict[str, Any] = {
        "conflict_strategy": "newest-wins",
        "save_debounce_ms": 300,
        "date_format": "relative",
        "data_dir": "",  # Empty = config dir
    }

    def __init__(self, config_dir: Path | None = None):
        self._config_dir = config_dir or get_default_config_dir()
        self._config_file = self._config_dir / "config.json"
        self._data: dict[str, Any] = {}

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def path(self) -> Path:
        return self._config_file

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "Config":
        """Factory method - explicit loading with caching.

        Raises NotADirectoryError if the config directory path is a file.
        """
        global _config_cache

        # Return cached instance if available and no custom dir specified
        if _config_cache is not None and config_dir is None:
            return _config_cache

        config = cls(config_dir)
        if config._config_dir.exists() and not config._config_dir.is_dir():
            raise NotADirectoryError(f"Config directory is not a directory: {config._config_dir}")
        config._load_from_file()
        config._apply_env_overrides()

        # Cache if using default directory
        if config_dir is None:
            _config_cache = config

        return config

    def __getattr__(self, name: str) -> Any:
        """Access config values as attributes."""
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._data:
            return self._data[name]
        if name in self.DEFAULTS:
            return self.DEFAULTS[name]
        raise AttributeError(f"Config has no attribute '{name}'")

    def get_integration_config(self, provider: str, key: str, default: Any = None) -> Any:
        """Get config value for an integration from nested integrations.<name>.

        Dash and underscore variants of the name (my-tracker, my_tracker) are
        treated as equivalent.
        """
        return self.get_integration(provider).get(key, default)

    def get_integration(self, provider: str) -> dict[str, Any]:
        integrations = self._data.get("integrations", {})
        settings = integrations.get(provider)

        # Fallback: try alternate naming (dash <-> underscore)
        if settings is None:
            alt_name = (
                provider.replace("-", "_") if "-" in provider else provider.replace("_", "-")
            )
            settings = integrations.get(alt_name)

        return settings or {}

    def set_integration_config(self, provider: str, key: str, value: Any) -> None:
        """Set config value for an integration in nested integrations.<name>."""
        integrations = self._data.setdefault("integrations", {})
        integrations.setdefault(provider, {})[key] = value
        self._save()

    def remove_integration(self, provider: str) -> bool:
        """Remove an integration's settings. Returns True if it existed."""
        integrations = self._data.get("integrations", {})
        if provider in integrations:
            del integrations[provider]
            self._save()
            return True
        return False

    def set(self, key: str, value: Any) -> None:
        """Set value and persist. String values are coerced to the default's type."""
        if isinstance(value, str) and key in self.DEFAULTS:
            value = self._coerce(value, type(self.DEFAULTS[key]))
        if key == "conflict_strategy" and value not in CONFLICT_STRATEGIES:
            raise ValueError(
                f"Invalid conflict strategy: {value!r}. Valid: {', '.join(CONFLICT_STRATEGIES)}"
            )
        self._data[key] = value
        self._save()

    def as_dict(self) -> dict[str, Any]:
        """Effective settings (defaults overlaid with file and env values)."""
        return {**self.DEFAULTS, **self._data}

    def _load_from_file(self) -> None:
        if self._config_file.exists():
            try:
                content = self._config_file.read_text()
                if content.strip():
                    data = json.loads(content)
                    self._data = data if isinstance(data, dict) else {}
            except json.JSONDecodeError:
                # Corrupted config - use defaults, will be fixed on next save
                self._data = {}

    def _save(self) -> None:
        from tsk.persistence import atomic_write_json

        atomic_write_json(self._config_file, self._data)

    def _apply_env_overrides(self) -> None:
        """Apply TSK_* env vars (highest priority)."""
        for key, default in self.DEFAULTS.items():
            env_key = f"TSK_{key.upper()}"
            if env_key in os.environ:
                self._data[key] = self._coerce(os.environ[env_key], type(default))

    @staticmethod
    def _coerce(value: str, target_type: type) -> Any:
        """Coerce a string value to target type."""
        if target_type is int:
            return int(value)
        return value


def mask_secrets(value: Any) -> Any:
    """Replace token/key/secret values with **** for display."""
    if isinstance(value, list):
        return [mask_secrets(v) for v in value]
    if isinstance(value, dict):
        masked = {}
        for k, v in value.items():
            lowered = str(k).lower()
            if v is not None and any(marker in lowered for marker in SECRET_MARKERS):
                masked[k] = "****"
            else:
                masked[k] = mask_secrets(v)
        return masked
    return value
