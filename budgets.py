from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    SPENT_STATUSES,
    AlertLevel,
    Budget,
    Expense,
    NotificationType,
)
from notifications import NotificationService, format_cents
from store import DataStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetUtilization:
    budget_id: int
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    utilization_pct: float
    alert_triggered: bool
    is_over_budget: bool
    days_remaining: int

    @property
    def alert_level(self) -> AlertLevel:
        if self.is_over_budget:
            return AlertLevel.exceeded
        if self.alert_triggered:
            return AlertLevel.warning
        return AlertLevel.none

    def as_dict(self) -> dict[str, object]:
        return {
            "budget_id": self.budget_id,
            "amount_cents": self.amount_cents,
            "spent_cents": self.spent_cents,
            "remaining_cents": self.remaining_cents,
            "utilization_pct": self.utilization_pct,
            "alert_triggered": self.alert_triggered,
            "is_over_budget": self.is_over_budget,
            "days_remaining": self.days_remaining,
        }


def utilization_percentage(spent_cents: int, amount_cents: int) -> float:
    if amount_cents == 0:
        return 0.0
    return spent_cents / amount_cents * 100


class BudgetEvaluator:
    """Projects a budget's spend from the expenses currently in the store.

    Always a full ``SUM`` over approved/paid expenses; never incremental, so a
    retroactive approval or rejection is reflected on the next call.
    """

    def __init__(self, store: DataStore) -> None:
        self.store = store

    def spent_cents(self, budget: Budget, as_of: date) -> int:
        window_end = min(budget.end_date, as_of)
        if window_end < budget.start_date:
            return 0
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            Expense.owner_id == budget.owner_id,
            Expense.deleted_at.is_(None),
            Expense.status.in_(list(SPENT_STATUSES)),
            Expense.date.between(budget.start_date, window_end),
        )
        if budget.category_id is not None:
            stmt = stmt.where(Expense.category_id == budget.category_id)
        return int(self.store.session.execute(stmt).scalar_one() or 0)

    def evaluate(self, budget: Budget, as_of: date) -> BudgetUtilization:
        spent = self.spent_cents(budget, as_of)
        pct = utilization_percentage(spent, budget.amount_cents)
        days_remaining = max(0, (budget.end_date - as_of).days)
        return BudgetUtilization(
            budget_id=budget.id,
            amount_cents=budget.amount_cents,
            spent_cents=spent,
            remaining_cents=budget.amount_cents - spent,
            utilization_pct=pct,
            alert_triggered=pct >= budget.alert_threshold,
            is_over_budget=spent > budget.amount_cents,
            days_remaining=days_remaining,
        )


def budget_label(budget: Budget) -> str:
    return budget.category.name if budget.category else "Overall"


def alert_message(budget: Budget, utilization: BudgetUtilization) -> str:
    label = budget_label(budget)
    if utilization.is_over_budget:
        over = utilization.spent_cents - utilization.amount_cents
        return (
            f"{label} budget exceeded by {format_cents(over)} "
            f"({utilization.utilization_pct:.1f}% of {format_cents(budget.amount_cents)})"
        )
    return (
        f"{label} budget is at {utilization.utilization_pct:.1f}% "
        f"of {format_cents(budget.amount_cents)} "
        f"(alert threshold {budget.alert_threshold}%)"
    )


class BudgetAlerts:
    """Raises a ``budget_alert`` once per crossing of each alert level.

    ``Budget.last_alert_level`` remembers the last level notified; it follows
    the current level down so that a later re-crossing alerts again.
    """

    def __init__(self, session: Session, notifier: Optional[NotificationService] = None) -> None:
        self.session = session
        self.store = DataStore(session)
        self.evaluator = BudgetEvaluator(self.store)
        self.notifier = notifier or NotificationService(session)

    def check(self, budget: Budget, as_of: date) -> BudgetUtilization:
        utilization = self.evaluator.evaluate(budget, as_of)
        if not budget.is_active:
            return utilization
        level = utilization.alert_level
        previous = AlertLevel(budget.last_alert_level)
        if level > previous:
            self.notifier.enqueue(
                [budget.owner_id],
                NotificationType.budget_alert,
                "Budget exceeded" if level == AlertLevel.exceeded else "Budget alert",
                alert_message(budget, utilization),
                {
                    "budget_id": budget.id,
                    "category_id": budget.category_id,
                    "alert_type": level.name,
                    "utilization_percentage": round(utilization.utilization_pct, 2),
                    "spent_cents": utilization.spent_cents,
                    "amount_cents": budget.amount_cents,
                },
            )
            logger.info(
                f"budget_alert: budget_id={budget.id} level={level.name} "
                f"utilization={utilization.utilization_pct:.2f}"
            )
        if level != previous:
            budget.last_alert_level = level.value
            self.session.flush()
        return utilization

    def recheck_for_expense(self, expense: Expense, as_of: date) -> list[BudgetUtilization]:
        budgets = self.store.active_budgets_for_scope(
            expense.owner_id, expense.category_id
        )
        return [self.check(budget, as_of) for budget in budgets]

    def check_all(self, as_of: date) -> int:
        budgets = self.session.scalars(
            select(Budget).where(
                Budget.is_active.is_(True), Budget.start_date <= as_of
            )
        ).all()
        raised = 0
        for budget in budgets:
            before = budget.last_alert_level
            self.check(budget, as_of)
            if budget.last_alert_level > before:
                raised += 1
        self.session.commit()
        logger.info(f"budget_alert_sweep: as_of={as_of} budgets={len(budgets)} raised={raised}")
        return raised


def alert_report(
    evaluator: BudgetEvaluator, budgets: Iterable[Budget], as_of: date
) -> list[dict[str, object]]:
    report = []
    for budget in budgets:
        utilization = evaluator.evaluate(budget, as_of)
        level = utilization.alert_level
        if level == AlertLevel.none:
            continue
        report.append(
            {
                "budget_id": budget.id,
                "category_name": budget.category.name if budget.category else None,
                "utilization_percentage": utilization.utilization_pct,
                "alert_type": level.name,
                "message": alert_message(budget, utilization),
            }
        )
    return report
