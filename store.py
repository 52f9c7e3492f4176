from __future__ import annotations

from datetime import date
from typing import Any, Iterable, Optional, TypeVar

from sqlalchemy import ColumnElement, select, true, update
from sqlalchemy.orm import Session

from errors import NotFound
from models import (
    Budget,
    Category,
    Expense,
    ExpenseStatus,
    Role,
    Team,
    TeamMember,
    User,
)

T = TypeVar("T")


class DataStore:
    """Record access used by the visibility, lifecycle, budget and analytics code.

    Every lookup goes to the session; nothing is cached between calls.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _get(self, model: type[T], entity: str, entity_id: int) -> T:
        record = self.session.get(model, entity_id)
        if record is None:
            raise NotFound(entity, entity_id)
        return record

    def get_user(self, user_id: int) -> User:
        return self._get(User, "user", user_id)

    def get_team(self, team_id: int) -> Team:
        return self._get(Team, "team", team_id)

    def get_category(self, category_id: int) -> Category:
        return self._get(Category, "category", category_id)

    def get_budget(self, budget_id: int) -> Budget:
        return self._get(Budget, "budget", budget_id)

    def get_expense(self, expense_id: int) -> Expense:
        expense = self._get(Expense, "expense", expense_id)
        if expense.deleted_at is not None:
            raise NotFound("expense", expense_id)
        return expense

    def users_by_ids(self, user_ids: Iterable[int]) -> dict[int, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        rows = self.session.scalars(select(User).where(User.id.in_(sorted(ids)))).all()
        return {u.id: u for u in rows}

    def categories_by_ids(self, category_ids: Iterable[int]) -> dict[int, Category]:
        ids = set(category_ids)
        if not ids:
            return {}
        rows = self.session.scalars(select(Category).where(Category.id.in_(sorted(ids)))).all()
        return {c.id: c for c in rows}

    def managed_team_ids(self, manager_id: int) -> frozenset[int]:
        rows = self.session.scalars(
            select(Team.id).where(Team.manager_id == manager_id, Team.is_active.is_(True))
        ).all()
        return frozenset(rows)

    def member_ids_of_teams(self, team_ids: Iterable[int]) -> frozenset[int]:
        ids = set(team_ids)
        if not ids:
            return frozenset()
        rows = self.session.scalars(
            select(TeamMember.user_id).where(
                TeamMember.team_id.in_(sorted(ids)), TeamMember.is_active.is_(True)
            )
        ).all()
        return frozenset(rows)

    def team_ids_of_member(self, user_id: int) -> frozenset[int]:
        rows = self.session.scalars(
            select(TeamMember.team_id)
            .join(Team, Team.id == TeamMember.team_id)
            .where(
                TeamMember.user_id == user_id,
                TeamMember.is_active.is_(True),
                Team.is_active.is_(True),
            )
        ).all()
        return frozenset(rows)

    def managers_of_member(self, user_id: int) -> frozenset[int]:
        rows = self.session.scalars(
            select(Team.manager_id)
            .join(TeamMember, TeamMember.team_id == Team.id)
            .where(
                TeamMember.user_id == user_id,
                TeamMember.is_active.is_(True),
                Team.is_active.is_(True),
            )
        ).all()
        return frozenset(rows)

    def active_admin_ids(self) -> frozenset[int]:
        rows = self.session.scalars(
            select(User.id).where(User.role == Role.admin, User.is_active.is_(True))
        ).all()
        return frozenset(rows)

    def expenses_by_owner(self, owner_id: int) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.owner_id == owner_id, Expense.deleted_at.is_(None))
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def expenses_by_team(self, team_id: int) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.team_id == team_id, Expense.deleted_at.is_(None))
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def expenses_in_range(
        self,
        start: date,
        end: date,
        *,
        scope: Optional[ColumnElement[bool]] = None,
        statuses: Optional[Iterable[ExpenseStatus]] = None,
    ) -> list[Expense]:
        stmt = select(Expense).where(
            Expense.deleted_at.is_(None),
            Expense.date.between(start, end),
            scope if scope is not None else true(),
        )
        if statuses is not None:
            stmt = stmt.where(Expense.status.in_(list(statuses)))
        stmt = stmt.order_by(Expense.date.asc(), Expense.id.asc())
        return list(self.session.scalars(stmt).all())

    def active_budgets_for_scope(
        self, owner_id: int, category_id: int
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.owner_id == owner_id,
                Budget.is_active.is_(True),
                (Budget.category_id.is_(None)) | (Budget.category_id == category_id),
            )
            .order_by(Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def compare_and_swap_status(
        self,
        expense_id: int,
        expected: ExpenseStatus,
        new: ExpenseStatus,
        **fields: Any,
    ) -> bool:
        """Move ``expense_id`` from ``expected`` to ``new`` in one statement.

        Returns False when the row was no longer in ``expected``.
        """
        stmt = (
            update(Expense)
            .where(
                Expense.id == expense_id,
                Expense.status == expected,
                Expense.deleted_at.is_(None),
            )
            .values(status=new, **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def add(self, entity: T) -> T:
        self.session.add(entity)
        self.session.flush()
        return entity
