"""Utility functions for ropeattn."""

from .config import (
    dataclass_to_dict,
    load_config,
    load_yaml,
    merge_configs,
    save_yaml,
)

__all__ = [
    "load_yaml",
    "save_yaml",
    "load_config",
    "dataclass_to_dict",
    "merge_configs",
]
