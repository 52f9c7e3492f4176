from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from budgets import BudgetEvaluator
from errors import NotFound, Unauthorized
from models import Budget, Expense, ExpenseStatus
from periods import Period, month_end, month_key, month_start
from store import DataStore
from visibility import Actor, ScopePredicate, VisibilityResolver


def percent_of(part: float, whole: float) -> float:
    # Every empty denominator in analytics resolves to 0, never NaN or an error.
    if not whole:
        return 0.0
    return part / whole * 100


@dataclass(frozen=True)
class CategoryShare:
    category_id: int
    category_name: str
    amount_cents: int
    percentage: float


@dataclass(frozen=True)
class MonthTotal:
    month: str
    amount_cents: int


@dataclass(frozen=True)
class BudgetVsActual:
    budget_amount_cents: int
    actual_amount_cents: int
    variance_cents: int
    variance_percentage: float


@dataclass(frozen=True)
class ExpenseAnalytics:
    period: Period
    total_amount_cents: int
    expense_count: int
    avg_expense_cents: float
    category_breakdown: list[CategoryShare] = field(default_factory=list)
    monthly_trend: list[MonthTotal] = field(default_factory=list)
    budget_vs_actual: Optional[BudgetVsActual] = None


def monthly_trend(expenses: Iterable[Expense]) -> list[MonthTotal]:
    totals: dict[str, int] = defaultdict(int)
    for expense in expenses:
        totals[month_key(expense.date)] += expense.amount_cents
    return [MonthTotal(month=key, amount_cents=totals[key]) for key in sorted(totals)]


class AnalyticsService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)

    def _category_breakdown(
        self, expenses: list[Expense], total_cents: int
    ) -> list[CategoryShare]:
        by_category: dict[int, int] = defaultdict(int)
        for expense in expenses:
            by_category[expense.category_id] += expense.amount_cents
        categories = self.store.categories_by_ids(by_category)
        breakdown = [
            CategoryShare(
                category_id=category_id,
                category_name=categories[category_id].name
                if category_id in categories
                else f"Category {category_id}",
                amount_cents=amount,
                percentage=percent_of(amount, total_cents),
            )
            for category_id, amount in by_category.items()
        ]
        breakdown.sort(key=lambda share: (-share.amount_cents, share.category_id))
        return breakdown

    def _budget_total(self, scope: ScopePredicate, period: Period) -> int:
        stmt = select(func.coalesce(func.sum(Budget.amount_cents), 0)).where(
            scope.budget_owner_clause(Budget),
            Budget.is_active.is_(True),
            Budget.start_date <= period.end,
            Budget.end_date >= period.start,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def aggregate(
        self,
        actor: Actor,
        period: Period,
        statuses: Optional[Iterable[ExpenseStatus]] = None,
    ) -> ExpenseAnalytics:
        scope = self.resolver.resolve_scope(actor)
        expenses = self.store.expenses_in_range(
            period.start,
            period.end,
            scope=scope.expense_clause(Expense),
            statuses=statuses,
        )
        total = sum(e.amount_cents for e in expenses)
        count = len(expenses)
        budget_amount = self._budget_total(scope, period)
        variance = total - budget_amount
        return ExpenseAnalytics(
            period=period,
            total_amount_cents=total,
            expense_count=count,
            avg_expense_cents=total / count if count else 0.0,
            category_breakdown=self._category_breakdown(expenses, total),
            monthly_trend=monthly_trend(expenses),
            budget_vs_actual=BudgetVsActual(
                budget_amount_cents=budget_amount,
                actual_amount_cents=total,
                variance_cents=variance,
                variance_percentage=percent_of(variance, budget_amount),
            ),
        )

    def dashboard(self, actor: Actor, today: date) -> dict[str, object]:
        scope = self.resolver.resolve_scope(actor)
        clause = scope.expense_clause(Expense)

        def total_between(start: Optional[date], end: Optional[date]) -> int:
            stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.deleted_at.is_(None), clause
            )
            if start is not None:
                stmt = stmt.where(Expense.date >= start)
            if end is not None:
                stmt = stmt.where(Expense.date <= end)
            return int(self.session.execute(stmt).scalar_one() or 0)

        pending = 0
        if scope.actor.can_approve:
            pending = int(
                self.session.execute(
                    select(func.count(Expense.id)).where(
                        Expense.deleted_at.is_(None),
                        Expense.status == ExpenseStatus.pending,
                        Expense.owner_id != scope.actor.id,
                        clause,
                    )
                ).scalar_one()
                or 0
            )

        evaluator = BudgetEvaluator(self.store)
        current_budgets = self.session.scalars(
            select(Budget).where(
                Budget.owner_id == scope.actor.id,
                Budget.is_active.is_(True),
                Budget.start_date <= today,
                Budget.end_date >= today,
            )
        ).all()
        budgeted = sum(b.amount_cents for b in current_budgets)
        spent = sum(evaluator.spent_cents(b, today) for b in current_budgets)

        year = self.aggregate(
            scope.actor, Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
        )
        return {
            "total_expenses_cents": total_between(None, None),
            "monthly_total_cents": total_between(month_start(today), month_end(today)),
            "budget_utilization": percent_of(spent, budgeted),
            "pending_approvals": pending,
            "category_breakdown": year.category_breakdown,
            "monthly_trend": year.monthly_trend,
        }

    def team_summary(self, actor: Actor, team_id: int, period: Period) -> dict[str, object]:
        actor = self.resolver.resolve_actor(actor.id)
        team = self.store.get_team(team_id)
        if not team.is_active:
            raise NotFound("team", team_id)
        if not self.resolver.can_manage_team(actor, team):
            raise Unauthorized(actor.id, actor.role, "view team summary", "team", team_id)

        member_ids = self.store.member_ids_of_teams([team.id])
        team_clause = Expense.team_id == team.id
        if member_ids:
            team_clause = or_(team_clause, Expense.owner_id.in_(sorted(member_ids)))
        expenses = self.store.expenses_in_range(period.start, period.end, scope=team_clause)

        per_member: dict[int, list[int]] = defaultdict(lambda: [0, 0])
        for expense in expenses:
            per_member[expense.owner_id][0] += expense.amount_cents
            per_member[expense.owner_id][1] += 1
        users = self.store.users_by_ids(per_member)
        member_breakdown = [
            {
                "user_id": user_id,
                "user_name": users[user_id].full_name if user_id in users else str(user_id),
                "amount_cents": amount,
                "expense_count": count,
            }
            for user_id, (amount, count) in per_member.items()
        ]
        member_breakdown.sort(key=lambda row: (-int(row["amount_cents"]), int(row["user_id"])))
        return {
            "team_id": team.id,
            "total_expenses_cents": sum(e.amount_cents for e in expenses),
            "pending_approvals": sum(
                1 for e in expenses if e.status == ExpenseStatus.pending
            ),
            "monthly_trend": monthly_trend(expenses),
            "member_breakdown": member_breakdown,
        }
