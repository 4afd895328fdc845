"""
Local Repository

JSON-file persistence for the records this device owns and for the small
key-value settings used by the sync state store.

Data Structure:
    <data_dir>/records/{entity_type}.json   - {record_id: record} snapshot per entity type
    <data_dir>/settings.json                - key-value pairs (deviceId, syncState, ...)

Each file is rewritten through a temporary file and os.replace, so a snapshot
is either fully written or not written at all.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import date
from pathlib import Path
from typing import Any, Iterable

from mabourse.core.exceptions import RecordStoreError
from mabourse.core.logging import get_logger
from mabourse.core.utils import parse_timestamp

logger = get_logger("mabourse.repositories.local")


class LocalRepository:
    SETTINGS_FILE = "settings.json"

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path(__file__).resolve().parents[2] / "data"
        self.record_dir = self.data_dir / "records"
        self.settings_path = self.data_dir / self.SETTINGS_FILE
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.record_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # =========================================================================
    # File helpers
    # =========================================================================

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RecordStoreError(f"Could not read {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise RecordStoreError(f"{path.name} does not contain an object")
        return data

    def _write_json(self, path: Path, data: dict[str, Any]) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise RecordStoreError(f"Could not write {path.name}: {e}") from e

    def _entity_path(self, entity_type: str) -> Path:
        return self.record_dir / f"{entity_type}.json"

    # =========================================================================
    # Record Methods
    # =========================================================================

    def get_snapshot(self, entity_type: str) -> dict[str, dict[str, Any]]:
        """Return every record of an entity type keyed by id."""
        with self._lock:
            return self._read_json(self._entity_path(entity_type))

    def replace_snapshot(self, entity_type: str, records: dict[str, dict[str, Any]]) -> None:
        """Overwrite an entity type with the given snapshot in one write."""
        with self._lock:
            self._write_json(self._entity_path(entity_type), dict(records))
        logger.debug(f"Replaced {entity_type} snapshot with {len(records)} records")

    def get_all(self, entity_type: str) -> list[dict[str, Any]]:
        return list(self.get_snapshot(entity_type).values())

    def get_by_id(self, entity_type: str, record_id: str) -> dict[str, Any] | None:
        return self.get_snapshot(entity_type).get(str(record_id))

    def get_by_date_range(
        self,
        entity_type: str,
        start: date,
        end: date,
        field: str = "date",
    ) -> list[dict[str, Any]]:
        """Records whose ``field`` falls within [start, end], ordered by that field."""
        matches: list[tuple[date, dict[str, Any]]] = []
        for record in self.get_all(entity_type):
            when = parse_timestamp(record.get(field))
            if when is None:
                continue
            if start <= when.date() <= end:
                matches.append((when.date(), record))
        matches.sort(key=lambda item: item[0])
        return [record for _, record in matches]

    def put(self, entity_type: str, record: dict[str, Any]) -> dict[str, Any]:
        record_id = record.get("id")
        if not record_id:
            raise ValueError("Record requires an id.")
        with self._lock:
            snapshot = self.get_snapshot(entity_type)
            snapshot[str(record_id)] = record
            self._write_json(self._entity_path(entity_type), snapshot)
        return record

    def put_many(self, entity_type: str, records: Iterable[dict[str, Any]]) -> None:
        with self._lock:
            snapshot = self.get_snapshot(entity_type)
            for record in records:
                record_id = record.get("id")
                if not record_id:
                    raise ValueError("Record requires an id.")
                snapshot[str(record_id)] = record
            self._write_json(self._entity_path(entity_type), snapshot)

    def delete(self, entity_type: str, record_id: str) -> bool:
        with self._lock:
            snapshot = self.get_snapshot(entity_type)
            if snapshot.pop(str(record_id), None) is None:
                return False
            self._write_json(self._entity_path(entity_type), snapshot)
            return True

    # =========================================================================
    # Key-Value Methods
    # =========================================================================

    def get_value(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read_json(self.settings_path).get(key, default)

    def set_value(self, key: str, value: Any) -> None:
        with self._lock:
            settings = self._read_json(self.settings_path)
            settings[key] = value
            self._write_json(self.settings_path, settings)

    def delete_value(self, key: str) -> None:
        with self._lock:
            settings = self._read_json(self.settings_path)
            if settings.pop(key, None) is not None:
                self._write_json(self.settings_path, settings)
