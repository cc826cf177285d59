"""
ArchiveLedger

Ingests multi-part archive exports into a flat, content-deduplicated payload
store. A SQLite ledger records every archive's lifecycle and every stored
payload's content hash, so interrupted or repeated runs never duplicate output
or lose track of partially completed work.

Example:
    from ArchiveLedger import ArchivePipeline, PathLayout, load_config, open_ledger

    config = load_config("archive-ledger.yaml")
    layout = PathLayout.from_config(config)
    with open_ledger(config, layout) as ledger:
        ArchivePipeline.from_config(config, ledger, layout).run(once=True)
"""

from ArchiveLedger.config import ArchiveLedgerConfig, load_config
from ArchiveLedger.fingerprint import content_hash, structural_fingerprint
from ArchiveLedger.intake import register_acquired, should_acquire
from ArchiveLedger.layout import PathLayout
from ArchiveLedger.ledger import ArchiveRecord, ArchiveStatus, PayloadRecord, SQLiteLedger
from ArchiveLedger.pipeline import ArchivePipeline, PipelineSummary, open_ledger
from ArchiveLedger.reconcile import reconcile_existing_downloads, retry_failed

__version__ = "0.1.0"

__all__ = [
    "ArchiveLedgerConfig",
    "ArchivePipeline",
    "ArchiveRecord",
    "ArchiveStatus",
    "PathLayout",
    "PayloadRecord",
    "PipelineSummary",
    "SQLiteLedger",
    "content_hash",
    "load_config",
    "open_ledger",
    "reconcile_existing_downloads",
    "register_acquired",
    "retry_failed",
    "should_acquire",
    "structural_fingerprint",
]
