"""
Pydantic v2 Configuration Models for ArchiveLedger

Provides strict, typed configuration for every subsystem:
- Working-area paths (downloads, scratch, payload store, ledger file)
- Ledger persistence settings (WAL, busy timeout, age-based promotion)
- Pipeline behaviour (polling, deletion retry, recognised media types)
- Auxiliary timestamp reader (ffprobe)
- Top-level ArchiveLedgerConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence.
"""

from __future__ import annotations

import hashlib
import json
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LOCK_DIR_NAME = "locks"

DEFAULT_MEDIA_EXTENSIONS = [".mp4", ".mov", ".m4v", ".avi", ".3gp", ".mts"]


class PathsConfig(BaseModel):
    """Location of the four-part working area."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    data_root: str = Field(
        default="~/Downloads/ArchiveLedger",
        description="Root directory holding every other path (~ is expanded)",
    )
    downloads_dir: str = Field(default="downloads", description="Incoming archives")
    scratch_dir: str = Field(default="scratch", description="Single-archive extraction area")
    store_dir: str = Field(default="store", description="Flat deduplicated payload store")
    ledger_file: str = Field(default="ledger.sqlite3", description="SQLite ledger file")

    @field_validator("downloads_dir", "scratch_dir", "store_dir", "ledger_file")
    @classmethod
    def validate_relative(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Path component must not be empty")
        raw_parts = v.replace("\\", "/").split("/")
        if any(part in {".", ".."} for part in raw_parts):
            raise ValueError(f"Path {v!r} must not contain '.' or '..' components")
        relative = PurePosixPath(*raw_parts)
        if v.startswith(("/", "\\")) or raw_parts[0].endswith(":"):
            raise ValueError(f"Path {v!r} must be relative to data_root")
        return relative.as_posix()

    @model_validator(mode="after")
    def validate_disjoint(self) -> "PathsConfig":
        """The working-area entries must not coincide or nest inside each other.

        The scratch directory is wiped before every archive; overlapping it with
        any other entry would delete archives, payloads or the ledger.
        """
        entries = {
            "downloads_dir": self.downloads_dir,
            "scratch_dir": self.scratch_dir,
            "store_dir": self.store_dir,
            "ledger_file": self.ledger_file,
            "lock directory": LOCK_DIR_NAME,
        }
        items = [(label, PurePosixPath(value).parts) for label, value in entries.items()]
        for i, (label_a, parts_a) in enumerate(items):
            for label_b, parts_b in items[i + 1 :]:
                shorter = min(len(parts_a), len(parts_b))
                if parts_a[:shorter] == parts_b[:shorter]:
                    raise ValueError(f"{label_a} and {label_b} overlap; they must be disjoint")
        return self

    def root(self) -> Path:
        return Path(self.data_root).expanduser()


class LedgerConfig(BaseModel):
    """SQLite ledger settings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    wal_mode: bool = Field(default=True, description="Enable WAL mode for SQLite")
    busy_timeout_ms: int = Field(
        default=5000, ge=0, description="Wait this long on a locked database before failing"
    )
    promote_after_s: Optional[float] = Field(
        default=None,
        description=(
            "Attempted archives whose last attempt is older than this are ordered "
            "with untried ones; unset keeps attempted archives behind fresh work"
        ),
    )

    @field_validator("promote_after_s")
    @classmethod
    def validate_promote_after(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("promote_after_s must be > 0 when set")
        return v

    def promote_after(self) -> Optional[timedelta]:
        if self.promote_after_s is None:
            return None
        return timedelta(seconds=self.promote_after_s)


class PipelineConfig(BaseModel):
    """Pipeline worker behaviour."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    poll_interval_s: float = Field(default=5.0, description="Idle wait between polls")
    delete_attempts: int = Field(default=3, description="Archive deletion attempts")
    delete_backoff_s: float = Field(default=2.0, description="Initial deletion backoff")
    archive_glob: str = Field(default="*.zip", description="Archive filename pattern")
    media_extensions: List[str] = Field(
        default_factory=lambda: list(DEFAULT_MEDIA_EXTENSIONS),
        description="Recognised payload extensions (case-insensitive)",
    )
    hash_chunk_bytes: int = Field(default=1 << 20, description="Content hash read size")

    @field_validator("poll_interval_s", "delete_backoff_s")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Must be > 0")
        return v

    @field_validator("delete_attempts", "hash_chunk_bytes")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be >= 1")
        return v

    @field_validator("media_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        normalized: List[str] = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext.startswith(".") or len(ext) < 2:
                raise ValueError(f"Invalid extension {ext!r}: must start with '.'")
            if ext not in normalized:
                normalized.append(ext)
        if not normalized:
            raise ValueError("media_extensions must not be empty")
        return normalized


class TimestampConfig(BaseModel):
    """Auxiliary embedded-timestamp reader."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True, description="Read embedded creation times")
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe executable")
    timeout_s: float = Field(default=10.0, gt=0, description="Per-file ffprobe timeout")


class ArchiveLedgerConfig(BaseModel):
    """
    Single source of truth for ArchiveLedger configuration.

    Loaded from file (YAML/JSON), overlaid with environment variables,
    and finally overridden by CLI arguments. Precedence: file < env < CLI.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid", validate_assignment=True)

    paths: PathsConfig = Field(default_factory=PathsConfig, description="Working area")
    ledger: LedgerConfig = Field(default_factory=LedgerConfig, description="Ledger store")
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig, description="Worker")
    timestamps: TimestampConfig = Field(
        default_factory=TimestampConfig, description="Timestamp hints"
    )

    def config_hash(self) -> str:
        """
        Compute deterministic SHA256 hash of config for reproducibility.

        Returns:
            Hex-encoded SHA256 hash of normalized config JSON.
        """
        normalized = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()
