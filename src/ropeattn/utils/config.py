"""Configuration file utilities."""

from __future__ import annotations

import json
from dataclasses import fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file.

    Parameters
    ----------
    path
        Path to the YAML file.

    Returns
    -------
    dict
        Parsed configuration dictionary (empty if the file is empty).
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def save_yaml(config: dict[str, Any], path: str | Path) -> None:
    """Save a configuration dictionary to YAML.

    Parameters
    ----------
    config
        Configuration dictionary.
    path
        Output path. Parent directories are created as needed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def load_config(path: str | Path) -> dict[str, Any]:
    """Load a model configuration from ``.yaml``, ``.yml`` or ``.json``.

    Parameters
    ----------
    path
        Path to the configuration file.

    Returns
    -------
    dict
        Parsed configuration dictionary.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        return load_yaml(path)
    if suffix == ".json":
        with open(path) as f:
            return json.load(f)
    raise ValueError(f"Unsupported config file type: '{path.suffix}' ({path})")


def dataclass_to_dict(obj: Any) -> dict[str, Any]:
    """Convert a dataclass to a plain dictionary recursively.

    Enum members are replaced by their values and tuples by lists, so the
    result can be written to YAML or JSON directly.

    Parameters
    ----------
    obj
        Dataclass instance.

    Returns
    -------
    dict
        Dictionary representation.
    """
    if not is_dataclass(obj):
        raise ValueError(f"Expected dataclass, got {type(obj)}")

    return {field.name: _to_plain(getattr(obj, field.name)) for field in fields(obj)}


def _to_plain(value: Any) -> Any:
    if is_dataclass(value):
        return dataclass_to_dict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    return value


def merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge two configuration dictionaries recursively.

    Parameters
    ----------
    base
        Base configuration.
    override
        Override configuration (takes precedence).

    Returns
    -------
    dict
        Merged configuration.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result
