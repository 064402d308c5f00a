"""Configuration loading utilities for the NexusMSP back office."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "NEXUS_CONFIG"
ENV_PREFIX = "NEXUS_"
_ENV_RESERVED = {ENV_CONFIG_PATH, "NEXUS_WEB_HOST", "NEXUS_WEB_PORT", "NEXUS_WEB_DEBUG"}


@dataclass
class M365Config:
    """Settings for the Microsoft 365 / Graph integration."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    currency: str = "USD"
    request_timeout: int = 30

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    data_file: Path = Path("data/store.json")
    seed_file: Optional[Path] = None


@dataclass
class WebConfig:
    secret_key: str = "nexus-msp-secret"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    m365: M365Config = field(default_factory=M365Config)
    storage: StorageConfig = field(default_factory=StorageConfig)
    web: WebConfig = field(default_factory=WebConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with ``NEXUS_<SECTION>__<KEY>`` variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key in _ENV_RESERVED:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        if len(path) < 2:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    section = config_dict.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return section


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)

    m365_section = _section(config_dict, "m365")
    default_m365 = M365Config()
    try:
        timeout = _to_int(m365_section.get("request_timeout", default_m365.request_timeout))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid m365.request_timeout: {exc}.") from exc
    m365_config = M365Config(
        tenant_id=_optional_str(m365_section.get("tenant_id")),
        client_id=_optional_str(m365_section.get("client_id")),
        client_secret=_optional_str(m365_section.get("client_secret")),
        currency=_optional_str(m365_section.get("currency")) or default_m365.currency,
        request_timeout=max(1, timeout),
    )

    storage_section = _section(config_dict, "storage")
    storage_config = StorageConfig(
        data_file=_optional_path(storage_section.get("data_file")) or StorageConfig().data_file,
        seed_file=_optional_path(storage_section.get("seed_file")),
    )

    web_section = _section(config_dict, "web")
    web_config = WebConfig(
        secret_key=_optional_str(web_section.get("secret_key")) or WebConfig().secret_key,
    )

    return AppConfig(m365=m365_config, storage=storage_config, web=web_config)


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for persistence."""

    return {
        "m365": {
            "tenant_id": config.m365.tenant_id or "",
            "client_id": config.m365.client_id or "",
            "client_secret": config.m365.client_secret or "",
            "currency": config.m365.currency,
            "request_timeout": config.m365.request_timeout,
        },
        "storage": {
            "data_file": str(config.storage.data_file),
            **({"seed_file": str(config.storage.seed_file)} if config.storage.seed_file else {}),
        },
        "web": {
            "secret_key": config.web.secret_key,
        },
    }


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Persist the configuration to disk, returning the path that was written."""

    target = _resolve_config_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = config_to_dict(config)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, indent=2)
    return target


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "M365Config",
    "StorageConfig",
    "WebConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
    "save_config",
]
