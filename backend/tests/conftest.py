"""Pytest fixtures and configuration."""

from __future__ import annotations

import copy
import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

# Set environment variables before importing app modules
os.environ["DEMO_MODE"] = "true"
os.environ["ENVIRONMENT"] = "development"

from mabourse.core.exceptions import TransportError  # noqa: E402
from mabourse.repositories.local_repo import LocalRepository  # noqa: E402
from mabourse.repositories.sync_state_repo import SyncStateRepository  # noqa: E402
from mabourse.schemas.models import ScheduleRule, SyncState  # noqa: E402


class InMemoryTransport:
    """Remote snapshot store double with the FirestoreTransport interface."""

    def __init__(self, snapshots: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self.snapshots = copy.deepcopy(snapshots or {})
        self.metadata: dict[str, Any] | None = None
        self.fail_on: set[tuple[str, str]] = set()
        self.pushes: list[str] = []

    def _check(self, action: str, entity_type: str) -> None:
        if (action, entity_type) in self.fail_on or (action, "*") in self.fail_on:
            raise TransportError(f"remote unreachable during {action} of {entity_type}", entity_type=entity_type)

    def pull_snapshot(self, entity_type: str) -> dict[str, dict[str, Any]]:
        self._check("pull", entity_type)
        return copy.deepcopy(self.snapshots.get(entity_type, {}))

    def push_snapshot(self, entity_type: str, records: dict[str, dict[str, Any]]) -> None:
        self._check("push", entity_type)
        self.pushes.append(entity_type)
        self.snapshots[entity_type] = copy.deepcopy(dict(records))

    def pull_sync_metadata(self) -> dict[str, Any] | None:
        self._check("pull", "metadata")
        return copy.deepcopy(self.metadata)

    def push_sync_metadata(self, state: SyncState) -> None:
        self._check("push", "metadata")
        self.metadata = {"sync_id": state.sync_id, "device_id": state.device_id}


@pytest.fixture
def temp_data_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for local store data."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def local_repo(temp_data_dir: Path) -> LocalRepository:
    return LocalRepository(temp_data_dir)


@pytest.fixture
def state_repo(local_repo: LocalRepository) -> SyncStateRepository:
    return SyncStateRepository(local_repo)


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def sample_accounts() -> dict[str, dict[str, Any]]:
    return {
        "acc-checking": {
            "id": "acc-checking",
            "name": "Checking",
            "type": "checking",
            "initial_balance": 1200,
            "currency": "EUR",
            "updated_at": "2024-01-01T09:00:00+00:00",
        },
        "acc-savings": {
            "id": "acc-savings",
            "name": "Savings",
            "type": "savings",
            "initial_balance": 5000,
            "currency": "EUR",
            "updated_at": "2024-01-01T09:00:00+00:00",
        },
    }


@pytest.fixture
def make_rule() -> Callable[..., ScheduleRule]:
    """Factory for schedule rules with sensible defaults."""

    def _make(**overrides: Any) -> ScheduleRule:
        fields: dict[str, Any] = {
            "id": "rule-rent",
            "account_id": "acc-checking",
            "type": "expense",
            "amount": "50",
            "category": "Housing",
            "description": "Rent",
            "frequency": "monthly",
            "next_execution": date(2024, 1, 31),
        }
        fields.update(overrides)
        return ScheduleRule.model_validate(fields)

    return _make
