from __future__ import annotations

from datetime import date, timedelta
from typing import Any

import pandas as pd

from mabourse.core.logging import get_logger
from mabourse.schemas.models import Occurrence, TransactionType
from mabourse.services.occurrence_projector import add_months, project_many
from mabourse.services.recurring_service import RecurringService

logger = get_logger("mabourse.services.forecast")


class ForecastService:
    """Forward-looking views built from virtual occurrences. Nothing here is persisted."""

    def __init__(self, recurring: RecurringService) -> None:
        self.recurring = recurring

    def project_occurrences(
        self,
        start: date,
        end: date,
        account_id: str | None = None,
    ) -> list[Occurrence]:
        rules = self.recurring.list_rules()
        if account_id:
            rules = [r for r in rules if account_id in (r.account_id, r.to_account_id)]
        return project_many(rules, start, end)

    def forecast(
        self,
        start: date,
        months: int = 6,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        """Occurrences for ``months`` whole months from start's month, plus a monthly summary."""
        first = start.replace(day=1)
        end = add_months(first, months) - timedelta(days=1)
        occurrences = self.project_occurrences(start, end, account_id=account_id)
        logger.debug(f"Forecast {start} -> {end}: {len(occurrences)} occurrences")
        return {
            "start": start,
            "end": end,
            "months": self._build_monthly_summary(occurrences, first, months, account_id),
            "occurrences": occurrences,
        }

    @staticmethod
    def _build_monthly_summary(
        occurrences: list[Occurrence],
        first: date,
        months: int,
        account_id: str | None = None,
    ) -> list[dict[str, Any]]:
        labels = [add_months(first, i).strftime("%Y-%m") for i in range(months)]
        rows = []
        for occ in occurrences:
            income, expense = 0.0, 0.0
            amount = float(occ.amount)
            if occ.type == TransactionType.INCOME.value:
                income = amount
            elif occ.type == TransactionType.EXPENSE.value:
                expense = amount
            elif account_id:
                # Transfers only move money for the account being looked at.
                if occ.to_account_id == account_id:
                    income = amount
                elif occ.account_id == account_id:
                    expense = amount
            rows.append({"month": occ.date.strftime("%Y-%m"), "income": income, "expenses": expense})

        df = pd.DataFrame(rows, columns=["month", "income", "expenses"])
        df = df.astype({"income": float, "expenses": float})
        grouped = df.groupby("month")[["income", "expenses"]].sum().reindex(labels, fill_value=0.0)
        grouped["net"] = grouped["income"] - grouped["expenses"]
        grouped["cumulative_net"] = grouped["net"].cumsum()

        return [
            {
                "month": month,
                "income": round(float(row["income"]), 2),
                "expenses": round(float(row["expenses"]), 2),
                "net": round(float(row["net"]), 2),
                "cumulative_net": round(float(row["cumulative_net"]), 2),
            }
            for month, row in grouped.iterrows()
        ]
