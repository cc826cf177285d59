# === NAVMAP v1 ===
# {
#   "module": "ArchiveLedger.config.loader",
#   "purpose": "Compose ArchiveLedgerConfig from file, ALEDGER_ environment and CLI.",
#   "sections": [
#     {
#       "id": "env-field-path",
#       "name": "_env_field_path",
#       "anchor": "function-env-field-path",
#       "kind": "function"
#     },
#     {
#       "id": "load-config",
#       "name": "load_config",
#       "anchor": "function-load-config",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Load the worker configuration: file < ``ALEDGER_`` environment < CLI.

``ALEDGER_<SECTION>__<FIELD>`` sets one field of one section, for example
``ALEDGER_PATHS__DATA_ROOT=/srv/takeout`` or
``ALEDGER_PIPELINE__MEDIA_EXTENSIONS='[".mp4"]'``. Values are parsed as JSON
when they parse and kept as strings otherwise. Variables that do not name a
known section and field (``ALEDGER_CONFIG`` among them) are ignored.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml

from .models import ArchiveLedgerConfig

_LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "ALEDGER_"


def _read_file(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ValueError(f"Config file not found: {path}")
    suffix = p.suffix.lower()
    if suffix not in (".yaml", ".yml", ".json"):
        raise ValueError(f"Unsupported file format: {suffix}. Use .yaml or .json")
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e
    try:
        loaded = json.loads(text) if suffix == ".json" else (yaml.safe_load(text) or {})
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Invalid {suffix[1:].upper()} in {path}: {e}") from e
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return loaded


def _env_field_path(key: str) -> Optional[Tuple[str, str]]:
    """Map ``PATHS__DATA_ROOT`` to ``("paths", "data_root")`` when both names exist."""
    section, sep, field = key.lower().partition("__")
    section_field = ArchiveLedgerConfig.model_fields.get(section)
    if not sep or section_field is None:
        return None
    if field not in section_field.annotation.model_fields:
        return None
    return section, field


def _env_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _merge_env_overrides(data: dict[str, Any], env_prefix: str) -> dict[str, Any]:
    for env_key, raw in sorted(os.environ.items()):
        if not env_key.startswith(env_prefix):
            continue
        target = _env_field_path(env_key[len(env_prefix) :])
        if target is None:
            _LOGGER.debug(f"Ignoring {env_key}: not a configuration field")
            continue
        section, field = target
        if not isinstance(data.get(section), dict):
            data[section] = {}
        data[section][field] = _env_value(raw)
        _LOGGER.debug(f"Environment override: {env_key} -> {section}.{field}")
    return data


def _merge_cli_overrides(data: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    for section, values in overrides.items():
        if isinstance(values, Mapping) and isinstance(data.get(section), dict):
            data[section].update(values)
        else:
            data[section] = dict(values) if isinstance(values, Mapping) else values
    return data


def load_config(
    path: str | Path | None = None,
    env_prefix: str = ENV_PREFIX,
    cli_overrides: Mapping[str, Any] | None = None,
) -> ArchiveLedgerConfig:
    """
    Load ArchiveLedgerConfig with file < environment < CLI precedence.

    Args:
        path: YAML or JSON config file (optional)
        env_prefix: Environment variable prefix
        cli_overrides: ``{section: {field: value}}`` from command-line options

    Raises:
        ValueError: If the file cannot be read or the result does not validate
    """
    data: dict[str, Any] = {}
    if path:
        try:
            data = _read_file(path)
        except ValueError as e:
            _LOGGER.error(f"Failed to load config: {e}")
            raise
        _LOGGER.info(f"Loaded config from {path}")

    data = _merge_env_overrides(data, env_prefix)
    data = _merge_cli_overrides(data, cli_overrides or {})

    try:
        config = ArchiveLedgerConfig.model_validate(data)
    except ValueError as e:
        _LOGGER.error(f"Configuration validation failed: {e}")
        raise
    _LOGGER.info(f"Configuration validated. Config hash: {config.config_hash()[:8]}...")
    return config


def validate_config_file(path: str | Path) -> bool:
    """Raise ValueError unless ``path`` loads into a valid configuration."""
    load_config(path=path)
    return True


def export_config_schema() -> dict[str, Any]:
    return ArchiveLedgerConfig.model_json_schema()
