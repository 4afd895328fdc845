from __future__ import annotations

import calendar
import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class EntityType(str, Enum):
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    RECURRING_TRANSACTIONS = "recurring_transactions"
    PREFERENCES = "preferences"
    BALANCE_ADJUSTMENTS = "balance_adjustments"


class ScheduleRule(BaseModel):
    """Template for a repeating transaction.

    ``frequency`` is kept as a plain string so records written by other
    clients with an unknown cadence still load; the projector falls back to
    monthly for those.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str
    account_id: str
    to_account_id: str | None = None
    type: TransactionType
    amount: Decimal = Field(..., ge=0, description="Magnitude; sign comes from type.")
    category: str | None = None
    description: str = ""
    frequency: str = Frequency.MONTHLY.value
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    next_execution: dt.date
    last_executed: dt.date | None = None
    is_disabled: bool = False
    updated_at: dt.datetime | None = None

    @property
    def anchor_day(self) -> int:
        """Day of month that month-based cadences aim for.

        The original day from ``start_date`` is used while ``next_execution``
        still agrees with it (exactly, or as its end-of-month clamp), so a
        rule started on the 31st returns to the 31st after a short month.
        """
        ne = self.next_execution
        if self.start_date is not None:
            wanted = self.start_date.day
            last_day = calendar.monthrange(ne.year, ne.month)[1]
            if ne.day == min(wanted, last_day):
                return wanted
        return ne.day

    @property
    def signed_amount(self) -> Decimal:
        if self.type == TransactionType.EXPENSE.value:
            return -self.amount
        return self.amount

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ScheduleRule":
        return cls.model_validate(record)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Occurrence(BaseModel):
    """One dated instance of a ScheduleRule. Virtual unless confirmed."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    rule_id: str
    date: dt.date
    account_id: str
    to_account_id: str | None = None
    type: TransactionType
    amount: Decimal
    signed_amount: Decimal
    category: str | None = None
    description: str = ""
    frequency: str

    @property
    def key(self) -> tuple[str, dt.date]:
        return (self.rule_id, self.date)

    @property
    def transaction_id(self) -> str:
        return f"{self.rule_id}:{self.date.isoformat()}"


class SyncState(BaseModel):
    sync_id: str
    last_sync_time: dt.datetime | None = None
    device_id: str
    force_local_data: bool = False
    force_server_sync: bool = False


class SyncStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    ERROR = "error"


class SyncMode(str, Enum):
    MERGE = "merge"
    LOCAL_PRIORITY = "local_priority"
    SERVER_PRIORITY = "server_priority"


class EntitySyncResult(BaseModel):
    entity_type: str
    records: int = 0
    local_wins: int = 0
    remote_wins: int = 0
    pushed: bool = False
    error: str | None = None


class SyncOutcome(BaseModel):
    status: SyncStatus
    mode: SyncMode | None = None
    state: SyncState | None = None
    entities: list[EntitySyncResult] = []
    confirmed_occurrences: int = 0
    error: str | None = None


class ScheduleRuleInput(BaseModel):
    account_id: str
    to_account_id: str | None = None
    type: TransactionType
    amount: Decimal = Field(..., ge=0)
    category: str | None = None
    description: str = ""
    frequency: Frequency = Frequency.MONTHLY
    start_date: dt.date
    end_date: dt.date | None = None


class OccurrencesResponse(BaseModel):
    start: dt.date
    end: dt.date
    occurrences: list[Occurrence]


class ForecastMonth(BaseModel):
    month: str
    income: float
    expenses: float
    net: float
    cumulative_net: float


class ForecastResponse(BaseModel):
    start: dt.date
    end: dt.date
    months: list[ForecastMonth]
    occurrences: list[Occurrence]


class ApplyDueResponse(BaseModel):
    created: int
    transactions: list[dict[str, Any]]
