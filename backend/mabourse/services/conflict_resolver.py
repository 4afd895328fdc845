"""
Last-write-wins conflict resolution.

Records are compared on their ``updated_at`` field only. Whole records win or
lose: when two devices edit different fields of the same record offline, the
older edit is lost entirely. There is no field-level merge.

Nothing here raises on bad data. A missing or unparseable timestamp makes a
record older than every timestamped one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from mabourse.core.logging import get_logger
from mabourse.core.utils import parse_timestamp

logger = get_logger("mabourse.services.conflict")

Record = Mapping[str, Any]
Snapshot = Mapping[str, Record]

TIMESTAMP_FIELD = "updated_at"


def record_timestamp(record: Record) -> datetime | None:
    raw = record.get(TIMESTAMP_FIELD)
    parsed = parse_timestamp(raw)
    if parsed is None and raw is not None:
        logger.warning(f"Unparseable {TIMESTAMP_FIELD} {raw!r} on record {record.get('id')!r}; treating as oldest")
    return parsed


def most_recent(local: Record | None, remote: Record | None) -> Record | None:
    """Return the more recently modified of two records.

    Presence beats absence, a timestamp beats no timestamp, a later timestamp
    beats an earlier one. Exact ties (including two untimestamped records) go
    to ``local`` so repeated syncs settle on the same answer.
    """
    if local is None:
        return remote
    if remote is None:
        return local

    local_ts = record_timestamp(local)
    remote_ts = record_timestamp(remote)

    if remote_ts is None:
        return local
    if local_ts is None:
        return remote
    return remote if remote_ts > local_ts else local


@dataclass
class MergeResult:
    merged: dict[str, dict[str, Any]]
    local_wins: int = 0
    remote_wins: int = 0
    local_only: int = 0
    remote_only: int = 0


def merge_snapshots(local: Snapshot, remote: Snapshot) -> MergeResult:
    """Merge two id-keyed snapshots record by record with most_recent.

    Ids present on one side only pass through. The result is ordered by id so
    merging the same pair twice gives identical output.
    """
    result = MergeResult(merged={})
    for record_id in sorted(set(local) | set(remote), key=str):
        local_record = local.get(record_id)
        remote_record = remote.get(record_id)

        if remote_record is None:
            result.local_only += 1
        elif local_record is None:
            result.remote_only += 1

        winner = most_recent(local_record, remote_record)
        if winner is None:
            continue

        if local_record is not None and remote_record is not None:
            if winner is local_record:
                result.local_wins += 1
            else:
                result.remote_wins += 1

        result.merged[record_id] = dict(winner)
    return result
