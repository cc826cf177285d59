"""Shared fixtures for ArchiveLedger tests."""

from __future__ import annotations

import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from ArchiveLedger.layout import PathLayout
from ArchiveLedger.ledger.store import SQLiteLedger
from ArchiveLedger.pipeline import ArchivePipeline


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Stand-in for ``time.sleep`` that records requested waits."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeTimestampSource:
    """Timestamp collaborator returning canned candidates per filename."""

    def __init__(self, by_name: Optional[Dict[str, Iterable[datetime]]] = None, fail: bool = False):
        self.by_name = {k: list(v) for k, v in (by_name or {}).items()}
        self.fail = fail
        self.seen: List[str] = []

    def candidates(self, path: Path) -> List[datetime]:
        self.seen.append(path.name)
        if self.fail:
            raise RuntimeError("metadata reader exploded")
        return self.by_name.get(path.name, [])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def layout(tmp_path: Path) -> PathLayout:
    layout = PathLayout.from_root(tmp_path / "data")
    layout.ensure_directories()
    return layout


@pytest.fixture
def ledger(layout: PathLayout, clock: FakeClock):
    store = SQLiteLedger(layout.ledger_path, downloads_dir=layout.downloads, now_fn=clock)
    yield store
    store.close()


@pytest.fixture
def make_zip() -> Callable[..., Path]:
    """Build a ZIP from ``{member_name: bytes}``; members get a fixed date."""

    def _make(
        path: Path,
        members: Dict[str, bytes],
        date_time: tuple = (2021, 5, 1, 10, 30, 0),
    ) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name, payload in members.items():
                info = zipfile.ZipInfo(name, date_time=date_time)
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, payload)
        return path

    return _make


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def timestamp_source() -> FakeTimestampSource:
    return FakeTimestampSource()


@pytest.fixture
def pipeline(ledger, layout, sleep, timestamp_source) -> ArchivePipeline:
    return ArchivePipeline(
        ledger,
        layout,
        poll_interval_s=0.01,
        sleep=sleep,
        timestamp_source=timestamp_source,
    )


@pytest.fixture
def make_timestamp_source() -> Callable[..., FakeTimestampSource]:
    return FakeTimestampSource
