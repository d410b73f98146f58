"""Generic record store used for application records.

The hosting core only needs insert / find / update / delete / count over
named collections. ``JsonRecordStore`` keeps everything in one JSON file
(or in memory when no path is given).
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union

logger = logging.getLogger("hostcore.store")

APPLICATIONS = "applications"

Record = Dict[str, Any]
Where = Union[Mapping[str, Any], Callable[[Record], bool], None]


def _matcher(where: Where) -> Callable[[Record], bool]:
    if where is None:
        return lambda record: True
    if callable(where):
        return where
    criteria = dict(where)
    return lambda record: all(record.get(k) == v for k, v in criteria.items())


class RecordStore(Protocol):
    def insert(self, collection: str, record: Record) -> Record: ...

    def find_one(self, collection: str, where: Where) -> Optional[Record]: ...

    def find_many(self, collection: str, where: Where = None) -> List[Record]: ...

    def update(self, collection: str, where: Where, changes: Mapping[str, Any]) -> int: ...

    def delete(self, collection: str, where: Where) -> int: ...

    def count(self, collection: str, where: Where = None) -> int: ...


class JsonRecordStore:
    """Thread-safe record store persisted as a single JSON document.

    In ``update``, a ``None`` value removes the field from matching records.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._collections: Dict[str, List[Record]] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
            self._collections = {
                name: list(records) for name, records in data.get("collections", {}).items()
            }
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.warning(f"Could not read record store {self.path}: {e}")
            self._collections = {}

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump({"collections": self._collections}, f, indent=2, default=str)
        tmp.replace(self.path)

    def insert(self, collection: str, record: Record) -> Record:
        with self._lock:
            stored = copy.deepcopy(dict(record))
            self._collections.setdefault(collection, []).append(stored)
            self._save()
            return copy.deepcopy(stored)

    def find_one(self, collection: str, where: Where) -> Optional[Record]:
        match = _matcher(where)
        with self._lock:
            for record in self._collections.get(collection, []):
                if match(record):
                    return copy.deepcopy(record)
        return None

    def find_many(self, collection: str, where: Where = None) -> List[Record]:
        match = _matcher(where)
        with self._lock:
            return [copy.deepcopy(r) for r in self._collections.get(collection, []) if match(r)]

    def update(self, collection: str, where: Where, changes: Mapping[str, Any]) -> int:
        match = _matcher(where)
        updated = 0
        with self._lock:
            for record in self._collections.get(collection, []):
                if match(record):
                    for key, value in changes.items():
                        if value is None:
                            record.pop(key, None)
                        else:
                            record[key] = copy.deepcopy(value)
                    updated += 1
            if updated:
                self._save()
        return updated

    def delete(self, collection: str, where: Where) -> int:
        match = _matcher(where)
        with self._lock:
            records = self._collections.get(collection, [])
            kept = [r for r in records if not match(r)]
            removed = len(records) - len(kept)
            if removed:
                self._collections[collection] = kept
                self._save()
        return removed

    def count(self, collection: str, where: Where = None) -> int:
        match = _matcher(where)
        with self._lock:
            return sum(1 for r in self._collections.get(collection, []) if match(r))
