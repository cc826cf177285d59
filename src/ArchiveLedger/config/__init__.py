"""
ArchiveLedger Configuration Package

Public API for loading, validating, and introspecting configuration.

Example:
    from ArchiveLedger.config import load_config

    config = load_config(
        path="archive-ledger.yaml",
        cli_overrides={"pipeline": {"poll_interval_s": 1.0}},
    )
    config_id = config.config_hash()
"""

from .loader import (
    ENV_PREFIX,
    export_config_schema,
    load_config,
    validate_config_file,
)
from .models import (
    DEFAULT_MEDIA_EXTENSIONS,
    ArchiveLedgerConfig,
    LedgerConfig,
    PathsConfig,
    PipelineConfig,
    TimestampConfig,
)

__all__ = [
    # Models
    "ArchiveLedgerConfig",
    "PathsConfig",
    "LedgerConfig",
    "PipelineConfig",
    "TimestampConfig",
    "DEFAULT_MEDIA_EXTENSIONS",
    # Loading/validation
    "ENV_PREFIX",
    "load_config",
    "validate_config_file",
    "export_config_schema",
]
