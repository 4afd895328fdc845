import threading
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mabourse.auth.firebase_auth import FirebaseUser, get_current_user
from mabourse.core.config import get_settings
from mabourse.core.exceptions import EntityNotFoundError, ValidationError
from mabourse.core.logging import get_logger
from mabourse.repositories.firestore_repo import FirestoreTransport
from mabourse.repositories.local_repo import LocalRepository
from mabourse.repositories.sync_state_repo import SyncStateRepository
from mabourse.schemas.models import (
    ApplyDueResponse,
    ForecastResponse,
    OccurrencesResponse,
    ScheduleRule,
    ScheduleRuleInput,
    SyncOutcome,
    SyncState,
)
from mabourse.services.forecast_service import ForecastService
from mabourse.services.recurring_service import RecurringService
from mabourse.services.sync_service import SyncService

router = APIRouter()
logger = get_logger("mabourse.api")

# Lazy initialization to avoid touching disk or Firebase at import time (breaks tests)
_repo: LocalRepository | None = None
_recurring: RecurringService | None = None
_forecast: ForecastService | None = None
_sync_services: dict[str, SyncService] = {}
# One local store per device, so one sync pass at a time whatever the account
_device_sync_lock = threading.Lock()


def get_repo() -> LocalRepository:
    global _repo
    if _repo is None:
        _repo = LocalRepository(get_settings().data_dir)
    return _repo


def get_state_repo() -> SyncStateRepository:
    return SyncStateRepository(get_repo())


def get_recurring_service() -> RecurringService:
    global _recurring
    if _recurring is None:
        _recurring = RecurringService(get_repo())
    return _recurring


def get_forecast_service() -> ForecastService:
    global _forecast
    if _forecast is None:
        _forecast = ForecastService(get_recurring_service())
    return _forecast


def get_sync_service(user_id: str) -> SyncService:
    """One SyncService per account; all of them share the device-wide in-flight guard."""
    service = _sync_services.get(user_id)
    if service is None:
        transport = FirestoreTransport(user_id, timeout=get_settings().sync_timeout_seconds)
        service = SyncService(
            get_repo(),
            transport,
            get_state_repo(),
            recurring=get_recurring_service(),
            in_flight=_device_sync_lock,
        )
        _sync_services[user_id] = service
    return service


def _not_found(error: EntityNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=error.message)


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# =============================================================================
# Recurring rules
# =============================================================================


@router.get("/recurring", response_model=list[ScheduleRule])
def list_recurring(user: FirebaseUser = Depends(get_current_user)) -> list[ScheduleRule]:
    return get_recurring_service().list_rules()


@router.post("/recurring", response_model=ScheduleRule, status_code=201)
def create_recurring(
    payload: ScheduleRuleInput,
    user: FirebaseUser = Depends(get_current_user),
) -> ScheduleRule:
    try:
        return get_recurring_service().create_rule(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.put("/recurring/{rule_id}", response_model=ScheduleRule)
def update_recurring(
    rule_id: str,
    payload: ScheduleRuleInput,
    user: FirebaseUser = Depends(get_current_user),
) -> ScheduleRule:
    try:
        return get_recurring_service().update_rule(rule_id, payload)
    except EntityNotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.delete("/recurring/{rule_id}")
def delete_recurring(
    rule_id: str,
    user: FirebaseUser = Depends(get_current_user),
) -> dict[str, str]:
    try:
        get_recurring_service().delete_rule(rule_id)
    except EntityNotFoundError as e:
        raise _not_found(e)
    return {"status": "deleted", "id": rule_id}


@router.post("/recurring/{rule_id}/disable", response_model=ScheduleRule)
def disable_recurring(rule_id: str, user: FirebaseUser = Depends(get_current_user)) -> ScheduleRule:
    try:
        return get_recurring_service().set_disabled(rule_id, True)
    except EntityNotFoundError as e:
        raise _not_found(e)


@router.post("/recurring/{rule_id}/enable", response_model=ScheduleRule)
def enable_recurring(rule_id: str, user: FirebaseUser = Depends(get_current_user)) -> ScheduleRule:
    try:
        return get_recurring_service().set_disabled(rule_id, False)
    except EntityNotFoundError as e:
        raise _not_found(e)


@router.post("/recurring/apply", response_model=ApplyDueResponse)
def apply_due_recurring(user: FirebaseUser = Depends(get_current_user)) -> ApplyDueResponse:
    created = get_recurring_service().apply_due_rules()
    return ApplyDueResponse(created=len(created), transactions=created)


# =============================================================================
# Projections
# =============================================================================


@router.get("/occurrences", response_model=OccurrencesResponse)
def list_occurrences(
    start: date,
    end: date,
    account_id: Optional[str] = None,
    user: FirebaseUser = Depends(get_current_user),
) -> OccurrencesResponse:
    """Virtual occurrences of every rule between start and end (inclusive)."""
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end.")
    occurrences = get_forecast_service().project_occurrences(start, end, account_id=account_id)
    return OccurrencesResponse(start=start, end=end, occurrences=occurrences)


@router.get("/forecast", response_model=ForecastResponse)
def get_forecast(
    start: Optional[date] = None,
    months: Optional[int] = Query(None, ge=1, le=120),
    account_id: Optional[str] = None,
    user: FirebaseUser = Depends(get_current_user),
) -> ForecastResponse:
    result = get_forecast_service().forecast(
        start or date.today(),
        months=months or get_settings().forecast_months,
        account_id=account_id,
    )
    return ForecastResponse(**result)


# =============================================================================
# Sync
# =============================================================================


@router.get("/sync/state")
def get_sync_state(user: FirebaseUser = Depends(get_current_user)) -> dict:
    state_repo = get_state_repo()
    state: SyncState | None = state_repo.load()
    return {
        "device_id": state_repo.get_or_create_device_id(),
        "needs_full_sync": state is None,
        "needs_server_sync": state_repo.needs_server_sync(),
        "state": state.model_dump(mode="json") if state else None,
    }


@router.post("/sync", response_model=SyncOutcome)
def run_sync(user: FirebaseUser = Depends(get_current_user)) -> SyncOutcome:
    outcome = get_sync_service(user.uid).sync()
    logger.info(f"Sync for {user.uid}: {outcome.status.value}")
    return outcome


@router.post("/sync/force-local", response_model=SyncState)
def force_local_sync(user: FirebaseUser = Depends(get_current_user)) -> SyncState:
    """Next pass pushes this device's data over the remote copy."""
    return get_state_repo().force_full_sync()


@router.post("/sync/force-server")
def force_server_sync(user: FirebaseUser = Depends(get_current_user)) -> dict[str, bool]:
    """Next pass replaces this device's data with the remote copy."""
    get_state_repo().force_server_sync()
    logger.info("Server-priority sync requested: remote data will replace local data on the next pass")
    return {"force_server_sync": True}


@router.delete("/sync/state")
def reset_sync_state(user: FirebaseUser = Depends(get_current_user)) -> dict[str, str]:
    get_state_repo().reset()
    _sync_services.pop(user.uid, None)
    return {"status": "reset"}
