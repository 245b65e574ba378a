"""
Process configuration: YAML file + environment.

config/default.yaml is loaded with PyYAML; a .env file is loaded with
python-dotenv, and any string value of the form ``${VAR}`` or
``${VAR:default}`` is replaced by the environment variable (or default).
LEDGER_CONFIG points at an alternative YAML file.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config" / "default.yaml"

SECTIONS = ("database", "chain", "oracle", "funding", "jobs", "push",
            "archive", "logging")


def _resolve_env_vars(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: _resolve_env_vars(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_resolve_env_vars(item) for item in node]
    if isinstance(node, str) and node.startswith("${") and node.endswith("}"):
        env_key, _, default = node[2:-1].partition(":")
        value = os.getenv(env_key)
        if value is not None:
            return value
        return default if default != "" else None
    return node


class Settings(Mapping):
    """Read-only view over the resolved configuration; sections are dicts."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Settings":
        load_dotenv()
        path = Path(config_path or os.getenv("LEDGER_CONFIG") or DEFAULT_CONFIG_PATH)
        if not path.exists():
            raise RuntimeError(f"Configuration file not found at {path}")
        with path.open("r") as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        data = _resolve_env_vars(raw)
        for name in SECTIONS:
            data.setdefault(name, {})
        return cls(data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key)
        return default if value is None else value

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def setup_logging(cfg: Optional[Mapping] = None) -> None:
    """
    Configure process-wide logging from the ``logging`` section.

    Intended to be called once from the entry point. The root handler is
    only installed if the root logger has none; per-logger levels are
    always applied.
    """
    cfg = cfg or {}
    if not logging.getLogger().handlers:
        level = cfg.get("level", "INFO")
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
        fmt = cfg.get("format") or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        logging.basicConfig(level=level, format=fmt)
    for name, lvl in (cfg.get("loggers") or {}).items():
        logging.getLogger(name).setLevel(str(lvl).upper())
