"""
Sync State Repository

Persists this device's synchronization state in the local key-value store.

Keys:
    deviceId         - stable per-device identifier, generated once
    syncState        - {sync_id, last_sync_time, device_id, force_local_data}
    forceServerSync  - "true" while a remote-priority pass is pending

The two force flags live under different keys and are not exclusive here;
SyncService decides what happens when both are set.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from mabourse.core.logging import get_logger
from mabourse.core.utils import generate_device_id, generate_sync_id, utc_now
from mabourse.repositories.local_repo import LocalRepository
from mabourse.schemas.models import SyncState

logger = get_logger("mabourse.repositories.sync_state")

DEVICE_ID_KEY = "deviceId"
SYNC_STATE_KEY = "syncState"
FORCE_SERVER_SYNC_KEY = "forceServerSync"


class SyncStateRepository:
    def __init__(self, store: LocalRepository) -> None:
        self.store = store

    def get_or_create_device_id(self) -> str:
        device_id = self.store.get_value(DEVICE_ID_KEY)
        if device_id:
            return device_id

        device_id = generate_device_id()
        self.store.set_value(DEVICE_ID_KEY, device_id)
        logger.info(f"Generated device id {device_id}")
        return device_id

    def load(self) -> SyncState | None:
        """Return the persisted state, or None if none was ever saved (or it is unreadable)."""
        raw: Any = self.store.get_value(SYNC_STATE_KEY)
        if raw is None:
            return None

        try:
            state = SyncState.model_validate(raw)
        except PydanticValidationError as e:
            logger.error(f"Stored sync state is unreadable, ignoring it: {e}")
            return None

        return state.model_copy(update={"force_server_sync": self.needs_server_sync()})

    def save(self, state: SyncState) -> None:
        payload = state.model_dump(mode="json", exclude={"force_server_sync"})
        self.store.set_value(SYNC_STATE_KEY, payload)
        if state.force_server_sync:
            self.force_server_sync()
        else:
            self.reset_server_sync()

    def needs_full_sync(self) -> bool:
        return self.load() is None

    def current_state(self) -> SyncState:
        """Persisted state, or a fresh never-synced one for this device."""
        state = self.load()
        if state is not None:
            return state
        return SyncState(
            sync_id=generate_sync_id(),
            device_id=self.get_or_create_device_id(),
            force_server_sync=self.needs_server_sync(),
        )

    def force_full_sync(self) -> SyncState:
        """Make the next pass push this device's data over the remote copy."""
        state = SyncState(
            sync_id=generate_sync_id(),
            last_sync_time=utc_now(),
            device_id=self.get_or_create_device_id(),
            force_local_data=True,
            force_server_sync=self.needs_server_sync(),
        )
        self.save(state)
        logger.info("Local-priority sync requested: local data will replace remote data on the next pass")
        return state

    def force_server_sync(self) -> None:
        self.store.set_value(FORCE_SERVER_SYNC_KEY, "true")

    def needs_server_sync(self) -> bool:
        return self.store.get_value(FORCE_SERVER_SYNC_KEY) == "true"

    def reset_server_sync(self) -> None:
        self.store.delete_value(FORCE_SERVER_SYNC_KEY)

    def reset(self) -> None:
        """Full session reset. The device id survives."""
        self.store.delete_value(SYNC_STATE_KEY)
        self.reset_server_sync()
        logger.info("Sync state cleared")
