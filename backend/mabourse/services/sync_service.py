"""
Sync Service

Runs one synchronization pass between this device's local store and the
remote snapshot store shared by the account's devices.

A pass works entity type by entity type. For each type it takes the local
and remote snapshots, decides the resulting snapshot, writes it locally in a
single write and pushes it to the remote. Entity types are independent:
a failure on one type stops the pass but does not roll back types already
written.

The force flags travel on the SyncState value given to run_sync_pass and are
cleared on the state it returns. Only sync() touches the SyncState store.

Every service built over one local store must share one in-flight lock:
passes for different accounts still read and write the same files.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable

from mabourse.core.exceptions import RecordStoreError, TransportError, ValidationError
from mabourse.core.logging import LogContext, get_logger
from mabourse.core.utils import utc_now
from mabourse.repositories.firestore_repo import FirestoreTransport
from mabourse.repositories.local_repo import LocalRepository
from mabourse.repositories.sync_state_repo import SyncStateRepository
from mabourse.schemas.models import (
    EntitySyncResult,
    EntityType,
    SyncMode,
    SyncOutcome,
    SyncState,
    SyncStatus,
)
from mabourse.services.conflict_resolver import merge_snapshots
from mabourse.services.recurring_service import RecurringService

logger = get_logger("mabourse.services.sync")

DEFAULT_ENTITY_TYPES = tuple(entity.value for entity in EntityType)


class SyncService:
    def __init__(
        self,
        repository: LocalRepository,
        transport: FirestoreTransport,
        state_repo: SyncStateRepository,
        recurring: RecurringService | None = None,
        entity_types: Iterable[str] = DEFAULT_ENTITY_TYPES,
        in_flight: threading.Lock | None = None,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.state_repo = state_repo
        self.recurring = recurring
        self.entity_types = tuple(entity_types)
        self._in_flight = in_flight or threading.Lock()
        self._cancel_requested = threading.Event()

    @property
    def is_syncing(self) -> bool:
        return self._in_flight.locked()

    def cancel(self) -> None:
        """Ask the running pass to stop before it writes the next entity type."""
        self._cancel_requested.set()

    @staticmethod
    def resolve_mode(state: SyncState) -> SyncMode:
        if state.force_local_data and state.force_server_sync:
            logger.warning(
                "Both local-priority and server-priority sync requested; local priority wins"
            )
        if state.force_local_data:
            return SyncMode.LOCAL_PRIORITY
        if state.force_server_sync:
            return SyncMode.SERVER_PRIORITY
        return SyncMode.MERGE

    def sync(self) -> SyncOutcome:
        """Load the stored state, run a pass, and persist the new state if it was applied.

        Loading, the pass and saving all happen under the in-flight guard.
        Force requests stored while the pass ran survive the save.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.info("Sync requested while another pass is running; skipping")
            return self._skipped("Sync already in progress")

        try:
            try:
                state = self.state_repo.current_state()
            except RecordStoreError as e:
                logger.error(f"Could not load sync state: {e.message}")
                return SyncOutcome(status=SyncStatus.ERROR, error=e.message)

            outcome = self._run_locked(state)
            if outcome.status == SyncStatus.APPLIED and outcome.state is not None:
                try:
                    outcome.state = self._keep_pending_requests(state, outcome.state)
                    self.state_repo.save(outcome.state)
                except RecordStoreError as e:
                    logger.error(f"Could not save sync state: {e.message}")
                    outcome.status = SyncStatus.ERROR
                    outcome.error = e.message
                    outcome.state = state
            return outcome
        finally:
            self._in_flight.release()

    def run_sync_pass(self, state: SyncState) -> SyncOutcome:
        """Run one pass for ``state`` and return the outcome with the next state.

        A pass requested while another is running is coalesced into a
        skipped outcome. On error the returned state is the input state, so
        force flags and last_sync_time are untouched and a retry repeats the
        same intended action.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.info("Sync pass requested while another is running; skipping")
            return self._skipped("Sync already in progress")

        try:
            return self._run_locked(state)
        finally:
            self._in_flight.release()

    def _run_locked(self, state: SyncState) -> SyncOutcome:
        self._cancel_requested.clear()
        mode = self.resolve_mode(state)
        outcome = SyncOutcome(status=SyncStatus.APPLIED, mode=mode, state=state)
        with LogContext(logger, "sync pass", device_id=state.device_id, mode=mode.value):
            if mode != SyncMode.SERVER_PRIORITY and self.recurring is not None:
                try:
                    outcome.confirmed_occurrences = len(self.recurring.apply_due_rules())
                except (RecordStoreError, ValidationError) as e:
                    outcome.status = SyncStatus.ERROR
                    outcome.error = e.message
                    logger.error(f"Applying due recurring rules failed: {e.message}")
                    return outcome

            for entity_type in self.entity_types:
                if self._cancel_requested.is_set():
                    logger.info(f"Sync pass cancelled before {entity_type}")
                    outcome.status = SyncStatus.SKIPPED
                    outcome.error = "Sync cancelled"
                    return outcome

                result = EntitySyncResult(entity_type=entity_type)
                outcome.entities.append(result)
                try:
                    self._sync_entity(entity_type, mode, result)
                except (TransportError, RecordStoreError) as e:
                    result.error = e.message
                    outcome.status = SyncStatus.ERROR
                    outcome.error = e.message
                    logger.error(f"Sync of {entity_type} failed: {e.message}")
                    return outcome

            try:
                next_state = self._next_state(state)
                self.transport.push_sync_metadata(next_state)
            except TransportError as e:
                outcome.status = SyncStatus.ERROR
                outcome.error = e.message
                logger.error(f"Could not publish sync metadata: {e.message}")
                return outcome

            outcome.state = next_state
            return outcome

    def _keep_pending_requests(self, loaded: SyncState, finished: SyncState) -> SyncState:
        """Carry over force requests stored after ``loaded`` was read."""
        update: dict[str, Any] = {}
        stored = self.state_repo.load()
        if stored is not None and stored.force_local_data and not loaded.force_local_data:
            logger.info("Local-priority sync requested during the pass; keeping it for the next one")
            update["sync_id"] = stored.sync_id
            update["force_local_data"] = True
        if self.state_repo.needs_server_sync() and not loaded.force_server_sync:
            logger.info("Server-priority sync requested during the pass; keeping it for the next one")
            update["force_server_sync"] = True
        return finished.model_copy(update=update) if update else finished

    def _sync_entity(self, entity_type: str, mode: SyncMode, result: EntitySyncResult) -> None:
        local = self.repository.get_snapshot(entity_type)

        if mode == SyncMode.LOCAL_PRIORITY:
            self.transport.push_snapshot(entity_type, local)
            result.records = len(local)
            result.local_wins = len(local)
            result.pushed = True
            return

        remote = self.transport.pull_snapshot(entity_type)

        if mode == SyncMode.SERVER_PRIORITY:
            self.repository.replace_snapshot(entity_type, remote)
            result.records = len(remote)
            result.remote_wins = len(remote)
            return

        merge = merge_snapshots(local, remote)
        result.records = len(merge.merged)
        result.local_wins = merge.local_wins + merge.local_only
        result.remote_wins = merge.remote_wins + merge.remote_only

        if merge.merged != local:
            self.repository.replace_snapshot(entity_type, merge.merged)
        if merge.merged != remote:
            self.transport.push_snapshot(entity_type, merge.merged)
            result.pushed = True

        logger.info(
            f"Merged {entity_type}: {result.records} records "
            f"({merge.local_wins} local wins, {merge.remote_wins} remote wins, "
            f"{merge.local_only} local only, {merge.remote_only} remote only)"
        )

    def _next_state(self, state: SyncState) -> SyncState:
        sync_id = state.sync_id
        if not state.force_local_data:
            remote_meta: dict[str, Any] | None = self.transport.pull_sync_metadata()
            if remote_meta and remote_meta.get("sync_id"):
                sync_id = remote_meta["sync_id"]
        return state.model_copy(
            update={
                "sync_id": sync_id,
                "last_sync_time": utc_now(),
                "force_local_data": False,
                "force_server_sync": False,
            }
        )

    @staticmethod
    def _skipped(reason: str) -> SyncOutcome:
        return SyncOutcome(status=SyncStatus.SKIPPED, error=reason)
