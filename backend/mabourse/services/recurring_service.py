from __future__ import annotations

from datetime import date
from typing import Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from mabourse.core.exceptions import EntityNotFoundError, ValidationError
from mabourse.core.logging import get_logger
from mabourse.core.utils import utc_now, utc_now_iso
from mabourse.repositories.local_repo import LocalRepository
from mabourse.schemas.models import EntityType, Occurrence, ScheduleRule, ScheduleRuleInput, TransactionType
from mabourse.services.occurrence_projector import occurrence_date, project

logger = get_logger("mabourse.services.recurring")

RULES = EntityType.RECURRING_TRANSACTIONS.value
TRANSACTIONS = EntityType.TRANSACTIONS.value
ACCOUNTS = EntityType.ACCOUNTS.value


class RecurringService:
    def __init__(self, repository: LocalRepository) -> None:
        self.repository = repository

    def list_rules(self) -> list[ScheduleRule]:
        """All rules that parse; malformed records are logged and skipped."""
        rules: list[ScheduleRule] = []
        for record in self.repository.get_all(RULES):
            try:
                rules.append(ScheduleRule.from_record(record))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed recurring rule {record.get('id')!r}: {e.error_count()} errors")
        rules.sort(key=lambda rule: (rule.next_execution, rule.id))
        return rules

    def get_rule(self, rule_id: str) -> ScheduleRule:
        record = self.repository.get_by_id(RULES, rule_id)
        if record is None:
            raise EntityNotFoundError(f"Recurring rule {rule_id} not found.")
        return ScheduleRule.from_record(record)

    def save_rule(self, rule: ScheduleRule) -> ScheduleRule:
        stamped = rule.model_copy(update={"updated_at": utc_now()})
        self.repository.put(RULES, stamped.to_record())
        return stamped

    def create_rule(self, payload: ScheduleRuleInput) -> ScheduleRule:
        self._validate(payload)
        rule = ScheduleRule.model_validate(
            {**payload.model_dump(mode="json"), "id": str(uuid4()), "next_execution": payload.start_date}
        )
        logger.info(f"Created recurring rule {rule.id} ({rule.frequency}, {rule.type} {rule.amount})")
        return self.save_rule(rule)

    def update_rule(self, rule_id: str, payload: ScheduleRuleInput) -> ScheduleRule:
        self._validate(payload)
        current = self.get_rule(rule_id)
        record = {**current.to_record(), **payload.model_dump(mode="json")}
        if payload.start_date != current.start_date:
            record["next_execution"] = payload.start_date
        return self.save_rule(ScheduleRule.from_record(record))

    def set_disabled(self, rule_id: str, disabled: bool) -> ScheduleRule:
        rule = self.get_rule(rule_id)
        logger.info(f"{'Disabling' if disabled else 'Enabling'} recurring rule {rule_id}")
        return self.save_rule(rule.model_copy(update={"is_disabled": disabled}))

    def delete_rule(self, rule_id: str) -> None:
        if not self.repository.delete(RULES, rule_id):
            raise EntityNotFoundError(f"Recurring rule {rule_id} not found.")

    def apply_due_rules(self, today: date | None = None) -> list[dict[str, Any]]:
        """Confirm every occurrence that is due on or before ``today``.

        Each occurrence becomes a transaction with id ``<rule_id>:<date>``, so a
        second device confirming the same occurrence writes the same record.
        The rule's next_execution moves past the last confirmed occurrence.
        """
        ref = today or date.today()
        existing = self.repository.get_snapshot(TRANSACTIONS)
        accounts = self.repository.get_snapshot(ACCOUNTS)
        created: list[dict[str, Any]] = []

        for rule in self.list_rules():
            if rule.is_disabled or rule.next_execution > ref:
                continue
            if rule.end_date and rule.next_execution > rule.end_date:
                continue

            if not self._accounts_exist(rule, accounts):
                logger.warning(f"Account for recurring rule {rule.id} no longer exists; disabling it")
                self.save_rule(rule.model_copy(update={"is_disabled": True}))
                continue

            due = project(rule, rule.next_execution, ref)
            if not due:
                continue

            new_records = []
            for occurrence in due:
                if occurrence.transaction_id in existing:
                    continue
                record = self._transaction_record(occurrence)
                new_records.append(record)
                existing[record["id"]] = record

            if new_records:
                self.repository.put_many(TRANSACTIONS, new_records)
                created.extend(new_records)

            next_execution = occurrence_date(rule, len(due))
            self.save_rule(
                rule.model_copy(update={"next_execution": next_execution, "last_executed": due[-1].date})
            )
            logger.info(
                f"Recurring rule {rule.id}: {len(new_records)} transaction(s) confirmed, "
                f"next execution {next_execution.isoformat()}"
            )

        if created:
            logger.info(f"Confirmed {len(created)} recurring transaction(s)")
        return created

    @staticmethod
    def _accounts_exist(rule: ScheduleRule, accounts: dict[str, dict[str, Any]]) -> bool:
        if rule.account_id not in accounts:
            return False
        if rule.type == TransactionType.TRANSFER.value and rule.to_account_id:
            return rule.to_account_id in accounts
        return True

    @staticmethod
    def _transaction_record(occurrence: Occurrence) -> dict[str, Any]:
        now = utc_now_iso()
        return {
            "id": occurrence.transaction_id,
            "account_id": occurrence.account_id,
            "to_account_id": occurrence.to_account_id,
            "amount": str(occurrence.amount),
            "type": occurrence.type,
            "category": occurrence.category,
            "description": occurrence.description,
            "date": occurrence.date.isoformat(),
            "is_recurring": True,
            "recurring_id": occurrence.rule_id,
            "note": f"Automatic transaction: {occurrence.description}" if occurrence.description else "Automatic transaction",
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _validate(payload: ScheduleRuleInput) -> None:
        if payload.end_date and payload.end_date < payload.start_date:
            raise ValidationError("End date must not be before start date.")
        if payload.type == TransactionType.TRANSFER and not payload.to_account_id:
            raise ValidationError("Transfers require a destination account.")
        if payload.to_account_id and payload.to_account_id == payload.account_id:
            raise ValidationError("Source and destination accounts must differ.")
