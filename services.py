from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from budgets import BudgetAlerts, BudgetEvaluator, BudgetUtilization, alert_report
from config import get_settings
from errors import Conflict, InvalidInput, InvalidTransition, NotFound, Unauthorized
from lifecycle import EDITABLE_STATUSES
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
from notifications import NotificationService
from periods import default_budget_end, local_today
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    CategoryUpdateIn,
    ExpenseFilters,
    ExpenseIn,
    ExpenseUpdateIn,
    TeamIn,
    UserIn,
)
from store import DataStore
from visibility import Actor, VisibilityResolver

logger = logging.getLogger(__name__)


def _require_admin(actor: Actor, action: str, entity: Optional[str] = None, entity_id: Any = None) -> None:
    if actor.role != Role.admin:
        raise Unauthorized(actor.id, actor.role, action, entity, entity_id)


def encode_tags(tags: list[str]) -> Optional[str]:
    """Strip and de-duplicate case-insensitively; the first spelling wins."""
    seen: set[str] = set()
    clean: list[str] = []
    for name in tags:
        name = name.strip()
        if name and name.lower() not in seen:
            seen.add(name.lower())
            clean.append(name)
    return json.dumps(clean) if clean else None


def bootstrap_admin(session: Session, data: UserIn) -> User:
    """Create the first administrator of an empty installation."""
    existing = session.execute(select(func.count(User.id))).scalar_one()
    if existing:
        raise InvalidInput("email", "Users already exist; create users as an admin")
    user = User(
        email=data.email.strip().lower(),
        first_name=data.first_name,
        last_name=data.last_name,
        role=Role.admin,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"admin_bootstrapped: user_id={user.id}")
    return user


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)

    def create(self, actor: Actor, data: UserIn) -> User:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "create users")
        email = data.email.strip().lower()
        taken = self.session.scalar(select(User.id).where(User.email == email))
        if taken:
            raise InvalidInput("email", "Email already registered")
        user = User(
            email=email,
            first_name=data.first_name,
            last_name=data.last_name,
            role=data.role,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        return self.store.get_user(user_id)

    def list_all(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())

    def change_role(self, actor: Actor, user_id: int, role: Role) -> User:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "change roles", "user", user_id)
        user = self.store.get_user(user_id)
        user.role = role
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_role_changed: user_id={user.id} role={role.value} by={actor.id}")
        return user

    def deactivate(self, actor: Actor, user_id: int) -> None:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "deactivate users", "user", user_id)
        user = self.store.get_user(user_id)
        user.is_active = False
        self.session.commit()


class TeamService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)

    def create(self, actor: Actor, data: TeamIn) -> Team:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "create teams")
        manager = self.store.get_user(data.manager_id)
        if manager.role not in (Role.manager, Role.admin):
            raise InvalidInput("manager_id", "Team manager must have the manager or admin role")
        team = Team(
            name=data.name.strip(),
            description=data.description,
            manager_id=manager.id,
        )
        self.session.add(team)
        self.session.commit()
        self.session.refresh(team)
        return team

    def _managed_team(self, actor: Actor, team_id: int, action: str) -> Team:
        team = self.store.get_team(team_id)
        if not team.is_active:
            raise NotFound("team", team_id)
        if not self.resolver.can_manage_team(actor, team):
            raise Unauthorized(actor.id, actor.role, action, "team", team_id)
        return team

    def add_member(self, actor: Actor, team_id: int, user_id: int) -> TeamMember:
        actor = self.resolver.resolve_actor(actor.id)
        team = self._managed_team(actor, team_id, "add members")
        user = self.store.get_user(user_id)
        membership = self.session.scalar(
            select(TeamMember).where(
                TeamMember.team_id == team.id, TeamMember.user_id == user.id
            )
        )
        if membership:
            membership.is_active = True
        else:
            membership = TeamMember(team_id=team.id, user_id=user.id)
            self.session.add(membership)
        self.session.commit()
        self.session.refresh(membership)
        logger.info(f"team_member_added: team_id={team.id} user_id={user.id} by={actor.id}")
        return membership

    def remove_member(self, actor: Actor, team_id: int, user_id: int) -> None:
        actor = self.resolver.resolve_actor(actor.id)
        team = self._managed_team(actor, team_id, "remove members")
        membership = self.session.scalar(
            select(TeamMember).where(
                TeamMember.team_id == team.id,
                TeamMember.user_id == user_id,
                TeamMember.is_active.is_(True),
            )
        )
        if not membership:
            raise NotFound("team member", user_id)
        membership.is_active = False
        self.session.commit()
        logger.info(f"team_member_removed: team_id={team.id} user_id={user_id} by={actor.id}")

    def list_for(self, actor: Actor) -> list[Team]:
        actor = self.resolver.resolve_actor(actor.id)
        return self.resolver.visible_teams(actor)

    def members(self, actor: Actor, team_id: int) -> list[User]:
        actor = self.resolver.resolve_actor(actor.id)
        team = self.store.get_team(team_id)
        member_ids = self.store.member_ids_of_teams([team.id])
        if not (self.resolver.can_manage_team(actor, team) or actor.id in member_ids):
            raise Unauthorized(actor.id, actor.role, "view members", "team", team_id)
        users = self.store.users_by_ids(member_ids)
        return sorted(users.values(), key=lambda u: (u.last_name, u.first_name, u.id))


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)

    def _active_parent(self, parent_id: int) -> Category:
        parent = self.store.get_category(parent_id)
        if not parent.is_active:
            raise InvalidInput("parent_id", "Cannot nest a category under an inactive parent")
        return parent

    def list_all(self, include_inactive: bool = False) -> list[Category]:
        stmt = select(Category).order_by(Category.name, Category.id)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        return self.store.get_category(category_id)

    def create(self, actor: Actor, data: CategoryIn) -> Category:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "create categories")
        if data.parent_id is not None:
            self._active_parent(data.parent_id)
        category = Category(
            name=data.name.strip(),
            description=data.description,
            color=data.color,
            parent_id=data.parent_id,
            created_by=actor.id,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def ancestor_ids(self, category_id: int) -> list[int]:
        chain: list[int] = []
        seen = {category_id}
        current = self.store.get_category(category_id).parent_id
        while current is not None:
            if current in seen:
                raise InvalidInput("parent_id", f"Category hierarchy has a cycle at {current}")
            chain.append(current)
            seen.add(current)
            current = self.store.get_category(current).parent_id
        return chain

    def update(self, actor: Actor, category_id: int, data: CategoryUpdateIn) -> Category:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "update categories", "category", category_id)
        category = self.store.get_category(category_id)
        changes = data.model_dump(exclude_unset=True)
        if "parent_id" in changes and changes["parent_id"] is not None:
            parent_id = changes["parent_id"]
            if parent_id == category.id:
                raise InvalidInput("parent_id", "A category cannot be its own parent")
            self._active_parent(parent_id)
            if category.id in self.ancestor_ids(parent_id):
                raise InvalidInput(
                    "parent_id",
                    f"Moving category {category.id} under {parent_id} would create a cycle",
                )
        if "name" in changes and changes["name"] is not None:
            changes["name"] = changes["name"].strip()
        for key, value in changes.items():
            setattr(category, key, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def deactivate(self, actor: Actor, category_id: int) -> None:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "deactivate categories", "category", category_id)
        category = self.store.get_category(category_id)
        category.is_active = False
        self.session.commit()

    def restore(self, actor: Actor, category_id: int) -> None:
        actor = self.resolver.resolve_actor(actor.id)
        _require_admin(actor, "restore categories", "category", category_id)
        category = self.store.get_category(category_id)
        if category.parent_id is not None:
            self._active_parent(category.parent_id)
        category.is_active = True
        self.session.commit()

    def tree(self, include_inactive: bool = False) -> list[dict[str, object]]:
        categories = self.list_all(include_inactive=include_inactive)
        nodes: dict[int, dict[str, object]] = {
            c.id: {
                "id": c.id,
                "name": c.name,
                "color": c.color,
                "is_active": c.is_active,
                "children": [],
            }
            for c in categories
        }
        roots: list[dict[str, object]] = []
        for c in categories:
            node = nodes[c.id]
            parent = nodes.get(c.parent_id) if c.parent_id is not None else None
            if parent is None:
                roots.append(node)
            else:
                parent["children"].append(node)  # type: ignore[union-attr]
        return roots


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)

    def _validate_category(self, category_id: int) -> Category:
        category = self.store.get_category(category_id)
        if not category.is_active:
            raise InvalidInput("category_id", f"Category {category_id} is inactive")
        return category

    def create(self, actor: Actor, data: ExpenseIn) -> Expense:
        actor = self.resolver.resolve_actor(actor.id)
        if data.amount_cents <= 0:
            raise InvalidInput("amount_cents", "Amount must be greater than zero")
        self._validate_category(data.category_id)
        if data.team_id is not None:
            team = self.store.get_team(data.team_id)
            if not team.is_active:
                raise NotFound("team", data.team_id)
            if (
                team.manager_id != actor.id
                and team.id not in self.store.team_ids_of_member(actor.id)
            ):
                raise InvalidInput("team_id", f"Not a member of team {team.id}")
        expense = Expense(
            owner_id=actor.id,
            category_id=data.category_id,
            team_id=data.team_id,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            receipt_url=(data.receipt_url or "").strip() or None,
            tags_json=encode_tags(data.tags),
            status=ExpenseStatus.draft,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def get(self, actor: Actor, expense_id: int) -> Expense:
        scope = self.resolver.resolve_scope(actor)
        expense = self.store.get_expense(expense_id)
        self.resolver.require_visible(scope, expense, "expense")
        return expense

    def _owned_in_status(
        self, actor: Actor, expense_id: int, statuses: frozenset[ExpenseStatus], action: str
    ) -> Expense:
        actor = self.resolver.resolve_actor(actor.id)
        expense = self.store.get_expense(expense_id)
        if expense.owner_id != actor.id:
            raise Unauthorized(actor.id, actor.role, action, "expense", expense.id)
        if expense.status not in statuses:
            raise InvalidTransition(expense.id, expense.status, action=action)
        return expense

    def update(self, actor: Actor, expense_id: int, data: ExpenseUpdateIn) -> Expense:
        expense = self._owned_in_status(actor, expense_id, EDITABLE_STATUSES, "edit")
        changes = data.model_dump(exclude_unset=True)
        if changes.get("amount_cents") is not None and changes["amount_cents"] <= 0:
            raise InvalidInput("amount_cents", "Amount must be greater than zero")
        if changes.get("category_id") is not None:
            self._validate_category(changes["category_id"])
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return expense
        if "receipt_url" in changes:
            changes["receipt_url"] = changes["receipt_url"].strip() or None
        if "tags" in changes:
            changes["tags_json"] = encode_tags(changes.pop("tags"))
        current = ExpenseStatus(expense.status)
        if not self.store.compare_and_swap_status(expense.id, current, current, **changes):
            self.session.rollback()
            raise Conflict(expense.id, current, current)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, actor: Actor, expense_id: int) -> None:
        expense = self._owned_in_status(
            actor, expense_id, frozenset({ExpenseStatus.draft}), "delete"
        )
        if not self.store.compare_and_swap_status(
            expense.id, ExpenseStatus.draft, ExpenseStatus.draft, deleted_at=datetime.utcnow()
        ):
            self.session.rollback()
            raise Conflict(expense.id, ExpenseStatus.draft, ExpenseStatus.draft)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(f"expense_deleted: id={expense.id} by={expense.owner_id}")

    def list(self, actor: Actor, filters: Optional[ExpenseFilters] = None) -> list[Expense]:
        filters = filters or ExpenseFilters()
        scope = self.resolver.resolve_scope(actor)
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.deleted_at.is_(None), scope.expense_clause(Expense))
        )
        if filters.status is not None:
            stmt = stmt.where(Expense.status == filters.status)
        if filters.category_id is not None:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.owner_id is not None:
            stmt = stmt.where(Expense.owner_id == filters.owner_id)
        if filters.team_id is not None:
            stmt = stmt.where(Expense.team_id == filters.team_id)
        if filters.start is not None:
            stmt = stmt.where(Expense.date >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(Expense.date <= filters.end)
        stmt = (
            stmt.order_by(Expense.date.desc(), Expense.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        return list(self.session.scalars(stmt).all())

    def pending_approvals(self, actor: Actor) -> list[Expense]:
        scope = self.resolver.resolve_scope(actor)
        if not scope.actor.can_approve:
            raise Unauthorized(scope.actor.id, scope.actor.role, "review approvals")
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.deleted_at.is_(None),
                Expense.status == ExpenseStatus.pending,
                Expense.owner_id != scope.actor.id,
                scope.expense_clause(Expense),
            )
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        return list(self.session.scalars(stmt).all())


class BudgetService:
    def __init__(self, session: Session, *, today: Optional[date] = None) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)
        self.evaluator = BudgetEvaluator(self.store)
        self.today = today

    def _as_of(self, as_of: Optional[date]) -> date:
        return as_of or self.today or local_today()

    @staticmethod
    def _validate(amount_cents: int, start: date, end: date, threshold: int) -> None:
        if amount_cents <= 0:
            raise InvalidInput("amount_cents", "Budget amount must be greater than zero")
        if start > end:
            raise InvalidInput("start_date", "Start date must not be after end date")
        if not 0 <= threshold <= 100:
            raise InvalidInput("alert_threshold", "Alert threshold must be between 0 and 100")

    def create(self, actor: Actor, data: BudgetIn) -> Budget:
        actor = self.resolver.resolve_actor(actor.id)
        if data.category_id is not None:
            category = self.store.get_category(data.category_id)
            if not category.is_active:
                raise InvalidInput("category_id", f"Category {category.id} is inactive")
        end_date = data.end_date or default_budget_end(data.period, data.start_date)
        threshold = (
            data.alert_threshold
            if data.alert_threshold is not None
            else get_settings().default_alert_threshold
        )
        self._validate(data.amount_cents, data.start_date, end_date, threshold)
        budget = Budget(
            owner_id=actor.id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=end_date,
            alert_threshold=threshold,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def _owned(self, actor: Actor, budget_id: int, action: str) -> Budget:
        budget = self.store.get_budget(budget_id)
        if budget.owner_id != actor.id:
            raise Unauthorized(actor.id, actor.role, action, "budget", budget.id)
        return budget

    def update(
        self,
        actor: Actor,
        budget_id: int,
        data: BudgetUpdateIn,
        notifier: Optional[NotificationService] = None,
    ) -> Budget:
        actor = self.resolver.resolve_actor(actor.id)
        budget = self._owned(actor, budget_id, "update")
        if not budget.is_active:
            raise InvalidInput("budget_id", f"Budget {budget.id} is inactive")
        changes = {
            k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None
        }
        self._validate(
            changes.get("amount_cents", budget.amount_cents),
            changes.get("start_date", budget.start_date),
            changes.get("end_date", budget.end_date),
            changes.get("alert_threshold", budget.alert_threshold),
        )
        for key, value in changes.items():
            setattr(budget, key, value)
        self.session.flush()
        BudgetAlerts(self.session, notifier).check(budget, self._as_of(None))
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def deactivate(self, actor: Actor, budget_id: int) -> None:
        actor = self.resolver.resolve_actor(actor.id)
        budget = self.store.get_budget(budget_id)
        if budget.owner_id != actor.id and actor.role != Role.admin:
            raise Unauthorized(actor.id, actor.role, "deactivate", "budget", budget.id)
        budget.is_active = False
        self.session.commit()
        logger.info(f"budget_deactivated: budget_id={budget.id} by={actor.id}")

    def get(self, actor: Actor, budget_id: int) -> Budget:
        scope = self.resolver.resolve_scope(actor)
        budget = self.store.get_budget(budget_id)
        self.resolver.require_visible(scope, budget, "budget")
        return budget

    def list_active(self, actor: Actor) -> list[Budget]:
        actor = self.resolver.resolve_actor(actor.id)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.owner_id == actor.id, Budget.is_active.is_(True))
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def evaluate(
        self, actor: Actor, budget_id: int, as_of: Optional[date] = None
    ) -> BudgetUtilization:
        budget = self.get(actor, budget_id)
        return self.evaluator.evaluate(budget, self._as_of(as_of))

    def utilization(
        self, actor: Actor, as_of: Optional[date] = None
    ) -> list[tuple[Budget, BudgetUtilization]]:
        target = self._as_of(as_of)
        return [
            (budget, self.evaluator.evaluate(budget, target))
            for budget in self.list_active(actor)
        ]

    def alerts(self, actor: Actor, as_of: Optional[date] = None) -> list[dict[str, object]]:
        return alert_report(self.evaluator, self.list_active(actor), self._as_of(as_of))
