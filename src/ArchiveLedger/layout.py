"""Four-part working area: downloads, scratch, payload store and ledger file.

Every path hangs off a single data root so one environment variable (or one
config key) relocates the whole installation::

    <data_root>/
        downloads/        incoming archives (written by the acquisition agent)
        scratch/          extracted contents of exactly one archive
        store/            flat deduplicated payloads, ``name-<hash8>.ext``
        ledger.sqlite3    persistent ledger
        locks/            single-worker guard
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from ArchiveLedger.config.models import LOCK_DIR_NAME, ArchiveLedgerConfig
from ArchiveLedger.storage import paths_overlap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PathLayout:
    data_root: Path
    downloads: Path
    scratch: Path
    store: Path
    ledger_path: Path

    def __post_init__(self) -> None:
        scratch = self.scratch.resolve(strict=False)
        root = self.data_root.resolve(strict=False)
        if scratch == root or scratch in root.parents:
            raise ValueError(f"Scratch directory {self.scratch} contains data root {self.data_root}")
        for other in self.protected_paths():
            if paths_overlap(self.scratch, other):
                raise ValueError(f"Scratch directory {self.scratch} overlaps {other}")

    @property
    def lock_dir(self) -> Path:
        return self.data_root / LOCK_DIR_NAME

    def protected_paths(self) -> Tuple[Path, ...]:
        """Entries the scratch wipe must never reach."""
        return (self.downloads, self.store, self.ledger_path, self.lock_dir)

    @classmethod
    def from_root(cls, data_root: Path | str) -> "PathLayout":
        """Layout with the default directory names under ``data_root``."""
        root = Path(data_root).expanduser().resolve(strict=False)
        return cls(
            data_root=root,
            downloads=root / "downloads",
            scratch=root / "scratch",
            store=root / "store",
            ledger_path=root / "ledger.sqlite3",
        )

    @classmethod
    def from_config(cls, config: ArchiveLedgerConfig) -> "PathLayout":
        paths = config.paths
        root = paths.root().resolve(strict=False)
        return cls(
            data_root=root,
            downloads=root / paths.downloads_dir,
            scratch=root / paths.scratch_dir,
            store=root / paths.store_dir,
            ledger_path=root / paths.ledger_file,
        )

    def ensure_directories(self) -> List[Path]:
        """Create every directory of the layout that is missing.

        Returns:
            Directories that did not exist before the call
        """
        created: List[Path] = []
        for directory in (
            self.data_root,
            self.downloads,
            self.scratch,
            self.store,
            self.ledger_path.parent,
            self.lock_dir,
        ):
            if not directory.is_dir():
                directory.mkdir(parents=True, exist_ok=True)
                created.append(directory)
        if created:
            logger.info(f"Created {len(created)} working director(ies) under {self.data_root}")
        return created

    def archives_on_disk(self, pattern: str = "*.zip") -> List[Path]:
        """Archive files currently in the downloads directory, sorted by name."""
        if not self.downloads.is_dir():
            return []
        return sorted(p for p in self.downloads.glob(pattern) if p.is_file())
