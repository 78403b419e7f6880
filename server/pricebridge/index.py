from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Protocol

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisplayRecord:
    key: str
    name: str
    price: str
    image_ref: Optional[str] = None


class ProductSource(Protocol):
    def get_display_record(self, key: str) -> Optional[DisplayRecord]: ...

    def list_all(self) -> list[DisplayRecord]: ...


_EMPTY: Mapping[str, DisplayRecord] = MappingProxyType({})


class ProductIndex:
    """In-memory barcode -> record map.

    Readers go through a single attribute read of an immutable mapping;
    ``reload`` builds the replacement off to the side and swaps the
    reference, so a lookup sees either the old or the new content.
    """

    def __init__(self, records: Iterable[DisplayRecord] | None = None) -> None:
        self._map: Mapping[str, DisplayRecord] = _EMPTY
        self._loaded_at: datetime | None = None
        self._reload_lock = threading.Lock()
        if records is not None:
            self.reload(records)

    def lookup(self, key: str) -> Optional[DisplayRecord]:
        return self._map.get(key)

    def reload(self, snapshot: Iterable[DisplayRecord]) -> int:
        fresh: dict[str, DisplayRecord] = {}
        dropped = 0
        for rec in snapshot:
            if not rec.key:
                dropped += 1
                continue
            fresh[rec.key] = rec
        with self._reload_lock:
            self._map = MappingProxyType(fresh)
            self._loaded_at = datetime.now()
        if dropped:
            log.warning("dropped %d record(s) without key", dropped)
        log.info("index reloaded size=%d", len(fresh))
        return len(fresh)

    def size(self) -> int:
        return len(self._map)

    def last_reload_time(self) -> datetime | None:
        return self._loaded_at


def parse_line(line: str) -> Optional[DisplayRecord]:
    # GTIN|NAME|PRICE[|IMAGE]
    parts = line.rstrip("\r\n").split("|")
    if len(parts) < 3:
        return None
    key = parts[0].strip()
    if not key:
        return None
    image = parts[3].strip() if len(parts) > 3 else ""
    return DisplayRecord(
        key=key,
        name=parts[1].strip(),
        price=parts[2].strip(),
        image_ref=image or None,
    )


class FileProductSource:
    """Product source backed by the flat snapshot file the catalog sync writes."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._mtime: float | None = None

    def list_all(self) -> list[DisplayRecord]:
        records: list[DisplayRecord] = []
        skipped = 0
        with self.path.open("r", encoding="utf-8", errors="replace") as fh:
            for line in fh:
                if not line.strip():
                    continue
                rec = parse_line(line)
                if rec is None:
                    skipped += 1
                    continue
                records.append(rec)
        if skipped:
            log.warning("skipped %d malformed line(s) in %s", skipped, self.path)
        return records

    def get_display_record(self, key: str) -> Optional[DisplayRecord]:
        for rec in self.list_all():
            if rec.key == key:
                return rec
        return None

    def refresh_if_modified(self, index: ProductIndex) -> bool:
        """Reload ``index`` when the file changed since the last load."""
        try:
            mtime = os.stat(self.path).st_mtime
        except FileNotFoundError:
            log.warning("products file not found: %s", self.path)
            return False
        if self._mtime is not None and mtime <= self._mtime:
            return False
        try:
            records = self.list_all()
        except OSError as e:
            log.error("failed to read products file %s: %s", self.path, e)
            return False
        index.reload(records)
        self._mtime = mtime
        return True
