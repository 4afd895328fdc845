"""Unit tests for the sync pass."""

from __future__ import annotations

import logging
import threading
from datetime import date

import pytest

from mabourse.schemas.models import SyncMode, SyncState, SyncStatus
from mabourse.services.recurring_service import RecurringService
from mabourse.services.sync_service import SyncService

T = "2024-03-01T12:00:00+00:00"
T_MINUS_1S = "2024-03-01T11:59:59+00:00"


def _state(**overrides) -> SyncState:
    fields = {"sync_id": "sync_local", "device_id": "device_a"}
    fields.update(overrides)
    return SyncState(**fields)


@pytest.fixture
def service(local_repo, transport, state_repo) -> SyncService:
    return SyncService(local_repo, transport, state_repo, entity_types=("accounts", "transactions"))


class TestModeResolution:
    def test_default_is_merge(self):
        assert SyncService.resolve_mode(_state()) == SyncMode.MERGE

    def test_local_flag(self):
        assert SyncService.resolve_mode(_state(force_local_data=True)) == SyncMode.LOCAL_PRIORITY

    def test_server_flag(self):
        assert SyncService.resolve_mode(_state(force_server_sync=True)) == SyncMode.SERVER_PRIORITY

    def test_both_flags_local_wins_with_warning(self, caplog):
        logger = logging.getLogger("mabourse")
        logger.propagate = True
        try:
            with caplog.at_level(logging.WARNING, logger="mabourse.services.sync"):
                mode = SyncService.resolve_mode(_state(force_local_data=True, force_server_sync=True))
        finally:
            logger.propagate = False
        assert mode == SyncMode.LOCAL_PRIORITY
        assert "local priority wins" in caplog.text


class TestMergePass:
    def test_newest_wins_both_directions(self, service, local_repo, transport):
        local_repo.put("accounts", {"id": "1", "updated_at": T, "name": "local"})
        local_repo.put("accounts", {"id": "2", "updated_at": T_MINUS_1S, "name": "stale local"})
        transport.snapshots["accounts"] = {
            "1": {"id": "1", "updated_at": T_MINUS_1S, "name": "remote"},
            "2": {"id": "2", "updated_at": T, "name": "fresh remote"},
        }

        outcome = service.run_sync_pass(_state())

        assert outcome.status == SyncStatus.APPLIED
        assert outcome.mode == SyncMode.MERGE
        expected = {"1": "local", "2": "fresh remote"}
        assert {k: v["name"] for k, v in local_repo.get_snapshot("accounts").items()} == expected
        assert {k: v["name"] for k, v in transport.snapshots["accounts"].items()} == expected

    def test_one_sided_records_reach_both_sides(self, service, local_repo, transport, sample_accounts):
        local_repo.replace_snapshot("accounts", {"acc-checking": sample_accounts["acc-checking"]})
        transport.snapshots["accounts"] = {"acc-savings": sample_accounts["acc-savings"]}

        service.run_sync_pass(_state())

        assert set(local_repo.get_snapshot("accounts")) == {"acc-checking", "acc-savings"}
        assert set(transport.snapshots["accounts"]) == {"acc-checking", "acc-savings"}

    def test_second_pass_changes_nothing(self, service, local_repo, transport):
        local_repo.put("accounts", {"id": "1", "updated_at": T})
        transport.snapshots["accounts"] = {"2": {"id": "2", "updated_at": T}}

        service.run_sync_pass(_state())
        local_after_first = local_repo.get_snapshot("accounts")
        remote_after_first = dict(transport.snapshots["accounts"])
        transport.pushes.clear()

        outcome = service.run_sync_pass(_state())

        assert outcome.status == SyncStatus.APPLIED
        assert local_repo.get_snapshot("accounts") == local_after_first
        assert transport.snapshots["accounts"] == remote_after_first
        assert transport.pushes == []

    def test_state_adopts_remote_sync_id_and_clears_flags(self, service, transport):
        transport.metadata = {"sync_id": "sync_remote", "device_id": "device_b"}

        outcome = service.run_sync_pass(_state())

        assert outcome.state.sync_id == "sync_remote"
        assert outcome.state.device_id == "device_a"
        assert outcome.state.last_sync_time is not None
        assert transport.metadata["device_id"] == "device_a"


class TestForcedPasses:
    def test_force_local_overrides_newer_remote(self, service, local_repo, transport):
        local_repo.put("accounts", {"id": "1", "updated_at": T_MINUS_1S, "name": "local"})
        transport.snapshots["accounts"] = {
            "1": {"id": "1", "updated_at": T, "name": "remote"},
            "9": {"id": "9", "updated_at": T},
        }

        outcome = service.run_sync_pass(_state(force_local_data=True))

        assert outcome.mode == SyncMode.LOCAL_PRIORITY
        assert transport.snapshots["accounts"] == {"1": {"id": "1", "updated_at": T_MINUS_1S, "name": "local"}}
        assert outcome.state.force_local_data is False
        assert outcome.state.sync_id == "sync_local"

    def test_force_server_overrides_newer_local(self, service, local_repo, transport):
        # Local holds the newer record; remote priority still adopts the remote copy.
        local_repo.put("accounts", {"id": "1", "updated_at": T, "name": "local"})
        transport.snapshots["accounts"] = {"1": {"id": "1", "updated_at": T_MINUS_1S, "name": "remote"}}

        outcome = service.run_sync_pass(_state(force_server_sync=True))

        assert outcome.mode == SyncMode.SERVER_PRIORITY
        assert local_repo.get_snapshot("accounts")["1"]["name"] == "remote"
        assert outcome.state.force_server_sync is False
        assert transport.pushes == []

    def test_both_flags_push_local_and_clear_both(self, service, local_repo, transport):
        local_repo.put("accounts", {"id": "1", "updated_at": T_MINUS_1S, "name": "local"})
        transport.snapshots["accounts"] = {"1": {"id": "1", "updated_at": T, "name": "remote"}}

        outcome = service.run_sync_pass(_state(force_local_data=True, force_server_sync=True))

        assert transport.snapshots["accounts"]["1"]["name"] == "local"
        assert outcome.state.force_local_data is False
        assert outcome.state.force_server_sync is False


class TestFailures:
    def test_transport_failure_leaves_state_unchanged(self, service, transport):
        transport.fail_on.add(("pull", "*"))
        state = _state(force_server_sync=True)

        outcome = service.run_sync_pass(state)

        assert outcome.status == SyncStatus.ERROR
        assert outcome.state == state
        assert outcome.state.force_server_sync is True
        assert outcome.state.last_sync_time is None
        assert "remote unreachable" in outcome.error

    def test_partial_failure_keeps_earlier_entity_types(self, service, local_repo, transport):
        transport.snapshots["accounts"] = {"1": {"id": "1", "updated_at": T}}
        transport.fail_on.add(("pull", "transactions"))

        outcome = service.run_sync_pass(_state())

        assert outcome.status == SyncStatus.ERROR
        assert [(r.entity_type, r.error is None) for r in outcome.entities] == [
            ("accounts", True),
            ("transactions", False),
        ]
        assert "1" in local_repo.get_snapshot("accounts")

    def test_metadata_failure_is_an_error(self, service, transport):
        transport.fail_on.add(("push", "metadata"))
        state = _state()

        outcome = service.run_sync_pass(state)

        assert outcome.status == SyncStatus.ERROR
        assert outcome.state == state

    def test_unreadable_transactions_during_due_rules_is_an_error(
        self, local_repo, transport, state_repo, sample_accounts, make_rule
    ):
        local_repo.replace_snapshot("accounts", sample_accounts)
        local_repo.put("recurring_transactions", make_rule(next_execution=date(2000, 1, 1)).to_record())
        (local_repo.record_dir / "transactions.json").write_text("{broken", encoding="utf-8")
        service = SyncService(local_repo, transport, state_repo, recurring=RecurringService(local_repo))
        state = _state()

        outcome = service.run_sync_pass(state)

        assert outcome.status == SyncStatus.ERROR
        assert "transactions.json" in outcome.error
        assert outcome.state == state
        assert outcome.entities == []
        assert transport.pushes == []
        assert service.is_syncing is False

    def test_unreadable_settings_is_an_error(self, service, local_repo, transport):
        local_repo.settings_path.write_text("{broken", encoding="utf-8")

        outcome = service.sync()

        assert outcome.status == SyncStatus.ERROR
        assert "settings.json" in outcome.error
        assert transport.pushes == []
        assert service.is_syncing is False


class TestConcurrency:
    def test_accounts_sharing_a_store_never_overlap(self, local_repo, state_repo, transport):
        entered = threading.Event()
        release = threading.Event()

        class BlockingTransport(type(transport)):
            def pull_snapshot(self, entity_type):
                entered.set()
                assert release.wait(timeout=5)
                return super().pull_snapshot(entity_type)

        device_lock = threading.Lock()
        first = SyncService(
            local_repo, BlockingTransport(), state_repo, entity_types=("accounts",), in_flight=device_lock
        )
        second = SyncService(
            local_repo, type(transport)(), state_repo, entity_types=("accounts",), in_flight=device_lock
        )

        outcomes = {}
        worker = threading.Thread(target=lambda: outcomes.setdefault("first", first.sync()))
        worker.start()
        try:
            assert entered.wait(timeout=5)
            outcomes["second"] = second.sync()
        finally:
            release.set()
            worker.join(timeout=5)

        assert outcomes["second"].status == SyncStatus.SKIPPED
        assert outcomes["first"].status == SyncStatus.APPLIED
        assert second.sync().status == SyncStatus.APPLIED

    def test_overlapping_pass_is_skipped(self, service):
        assert service._in_flight.acquire(blocking=False)
        try:
            assert service.is_syncing is True
            outcome = service.run_sync_pass(_state())
        finally:
            service._in_flight.release()
        assert outcome.status == SyncStatus.SKIPPED
        assert service.is_syncing is False

    def test_cancel_stops_before_next_entity_type(self, service, transport):
        class CancellingTransport(type(transport)):
            def pull_snapshot(self, entity_type):
                service.cancel()
                return super().pull_snapshot(entity_type)

        cancelling = CancellingTransport({"transactions": {"t1": {"id": "t1", "updated_at": T}}})
        service.transport = cancelling
        state = _state()

        outcome = service.run_sync_pass(state)

        assert outcome.status == SyncStatus.SKIPPED
        assert outcome.error == "Sync cancelled"
        assert [r.entity_type for r in outcome.entities] == ["accounts"]
        assert outcome.state == state
        assert service.repository.get_snapshot("transactions") == {}

    def test_cancel_request_does_not_leak_into_next_pass(self, service):
        service.cancel()
        outcome = service.run_sync_pass(_state())
        assert outcome.status == SyncStatus.APPLIED


class TestSyncWrapper:
    def test_persists_state_when_applied(self, service, state_repo):
        state_repo.force_full_sync()

        outcome = service.sync()

        assert outcome.status == SyncStatus.APPLIED
        stored = state_repo.load()
        assert stored.force_local_data is False
        assert stored.last_sync_time is not None

    def test_does_not_persist_on_error(self, service, state_repo, transport):
        state_repo.force_server_sync()
        transport.fail_on.add(("pull", "*"))

        outcome = service.sync()

        assert outcome.status == SyncStatus.ERROR
        assert state_repo.needs_server_sync() is True
        assert state_repo.needs_full_sync() is True

    def test_server_request_made_during_pass_survives(self, service, state_repo, transport):
        class RequestingTransport(type(transport)):
            def pull_snapshot(self, entity_type):
                state_repo.force_server_sync()
                return super().pull_snapshot(entity_type)

        service.transport = RequestingTransport()

        outcome = service.sync()

        assert outcome.status == SyncStatus.APPLIED
        assert outcome.mode == SyncMode.MERGE
        assert state_repo.needs_server_sync() is True
        assert state_repo.load().last_sync_time is not None

    def test_local_request_made_during_pass_survives(self, service, state_repo, transport):
        requested = {}

        class RequestingTransport(type(transport)):
            def pull_snapshot(self, entity_type):
                if "state" not in requested:
                    requested["state"] = state_repo.force_full_sync()
                return super().pull_snapshot(entity_type)

        service.transport = RequestingTransport()

        outcome = service.sync()

        assert outcome.mode == SyncMode.MERGE
        stored = state_repo.load()
        assert stored.force_local_data is True
        assert stored.sync_id == requested["state"].sync_id

    def test_flags_of_the_loaded_state_are_cleared(self, service, state_repo):
        state_repo.force_full_sync()
        state_repo.force_server_sync()

        service.sync()

        assert state_repo.load().force_local_data is False
        assert state_repo.needs_server_sync() is False

    def test_first_run_applies_due_rules(self, local_repo, transport, state_repo, sample_accounts, make_rule):
        recurring = RecurringService(local_repo)
        local_repo.replace_snapshot("accounts", sample_accounts)
        local_repo.put("recurring_transactions", make_rule(next_execution=date(2000, 1, 1)).to_record())
        service = SyncService(local_repo, transport, state_repo, recurring=recurring)

        outcome = service.sync()

        assert outcome.confirmed_occurrences > 0
        assert "rule-rent:2000-01-01" in transport.snapshots["transactions"]
