from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from budgets import BudgetAlerts
from errors import Conflict, InvalidInput, InvalidTransition, Unauthorized
from models import (
    SPENT_STATUSES,
    Expense,
    ExpenseStatus,
    NotificationType,
)
from notifications import NotificationService, format_cents
from periods import local_today
from store import DataStore
from visibility import Actor, ScopePredicate, VisibilityResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionRule:
    # "owner", "approver" (manager/admin with the expense in scope, not its owner) or "admin"
    actor: str
    action: str


TRANSITIONS: dict[tuple[ExpenseStatus, ExpenseStatus], TransitionRule] = {
    (ExpenseStatus.draft, ExpenseStatus.pending): TransitionRule("owner", "submit"),
    (ExpenseStatus.pending, ExpenseStatus.approved): TransitionRule("approver", "approve"),
    (ExpenseStatus.pending, ExpenseStatus.rejected): TransitionRule("approver", "reject"),
    (ExpenseStatus.approved, ExpenseStatus.paid): TransitionRule("admin", "mark_paid"),
    (ExpenseStatus.rejected, ExpenseStatus.draft): TransitionRule("owner", "reopen"),
}

# Only the owner may change amount, category or description, and only here.
EDITABLE_STATUSES = frozenset({ExpenseStatus.draft, ExpenseStatus.rejected})


def allowed_targets(status: ExpenseStatus) -> list[ExpenseStatus]:
    return [to for (frm, to) in TRANSITIONS if frm == status]


class ExpenseLifecycle:
    def __init__(
        self,
        session: Session,
        notifier: Optional[NotificationService] = None,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.store = DataStore(session)
        self.resolver = VisibilityResolver(self.store)
        self.notifier = notifier or NotificationService(session)
        self.today = today

    def submit(self, actor: Actor, expense_id: int) -> Expense:
        return self.transition(actor, expense_id, ExpenseStatus.pending)

    def approve(self, actor: Actor, expense_id: int, note: Optional[str] = None) -> Expense:
        return self.transition(actor, expense_id, ExpenseStatus.approved, note=note)

    def reject(self, actor: Actor, expense_id: int, note: Optional[str] = None) -> Expense:
        return self.transition(actor, expense_id, ExpenseStatus.rejected, note=note)

    def mark_paid(self, actor: Actor, expense_id: int) -> Expense:
        return self.transition(actor, expense_id, ExpenseStatus.paid)

    def reopen(self, actor: Actor, expense_id: int) -> Expense:
        return self.transition(actor, expense_id, ExpenseStatus.draft)

    def transition(
        self,
        actor: Actor,
        expense_id: int,
        target: ExpenseStatus,
        *,
        note: Optional[str] = None,
    ) -> Expense:
        scope = self.resolver.resolve_scope(actor)
        expense = self.store.get_expense(expense_id)
        current = ExpenseStatus(expense.status)
        target = ExpenseStatus(target)

        rule = TRANSITIONS.get((current, target))
        if rule is None:
            raise InvalidTransition(expense.id, current, target)
        self._check_actor(rule, scope, expense)
        if target == ExpenseStatus.pending:
            self._check_submittable(expense)

        fields = self._transition_fields(scope.actor, expense, target, note)
        if not self.store.compare_and_swap_status(expense.id, current, target, **fields):
            logger.warning(
                f"expense_transition_conflict: id={expense.id} "
                f"expected={current.value} requested={target.value} actor={scope.actor.id}"
            )
            self.session.rollback()
            raise Conflict(expense.id, current, target)
        self.session.refresh(expense)
        logger.info(
            f"expense_transition: id={expense.id} from={current.value} "
            f"to={target.value} actor={scope.actor.id} role={scope.actor.role.value}"
        )

        self._schedule_side_effects(scope.actor, expense, current, target)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def _check_actor(
        self, rule: TransitionRule, scope: ScopePredicate, expense: Expense
    ) -> None:
        actor = scope.actor
        if rule.actor == "owner":
            permitted = expense.owner_id == actor.id
        elif rule.actor == "approver":
            permitted = (
                actor.can_approve
                and expense.owner_id != actor.id
                and scope.allows_record(expense)
            )
        else:
            permitted = actor.is_admin
        if not permitted:
            raise Unauthorized(actor.id, actor.role, rule.action, "expense", expense.id)

    def _check_submittable(self, expense: Expense) -> None:
        if expense.amount_cents <= 0:
            raise InvalidInput("amount_cents", "Amount must be greater than zero")
        category = self.store.get_category(expense.category_id)
        if not category.is_active:
            raise InvalidInput("category_id", f"Category {category.id} is inactive")

    def _transition_fields(
        self,
        actor: Actor,
        expense: Expense,
        target: ExpenseStatus,
        note: Optional[str],
    ) -> dict[str, Any]:
        if target in (ExpenseStatus.approved, ExpenseStatus.rejected):
            return {
                "approver_id": actor.id,
                "approved_at": datetime.utcnow(),
                "decision_note": note,
            }
        if target == ExpenseStatus.draft:
            return {"approver_id": None, "approved_at": None}
        if target == ExpenseStatus.pending:
            return {"submission_count": Expense.submission_count + 1}
        return {}

    def _schedule_side_effects(
        self,
        actor: Actor,
        expense: Expense,
        current: ExpenseStatus,
        target: ExpenseStatus,
    ) -> None:
        if target == ExpenseStatus.pending:
            self._request_approval(expense)
        elif target in (ExpenseStatus.approved, ExpenseStatus.rejected):
            self._announce_decision(actor, expense, target)

        if (current in SPENT_STATUSES) != (target in SPENT_STATUSES):
            alerts = BudgetAlerts(self.session, self.notifier)
            alerts.recheck_for_expense(expense, self.today or local_today())

    def approvers_for(self, expense: Expense) -> set[int]:
        approvers = set(self.store.managers_of_member(expense.owner_id))
        if expense.team_id is not None:
            team = self.store.get_team(expense.team_id)
            if team.is_active:
                approvers.add(team.manager_id)
        approvers.discard(expense.owner_id)
        if not approvers:
            approvers = set(self.store.active_admin_ids())
            approvers.discard(expense.owner_id)
        return approvers

    def _request_approval(self, expense: Expense) -> None:
        approvers = self.approvers_for(expense)
        if not approvers:
            logger.warning(f"approval_request_unrouted: expense_id={expense.id}")
            return
        owner = self.store.get_user(expense.owner_id)
        category = self.store.get_category(expense.category_id)
        resubmission = expense.submission_count > 1
        verb = "resubmitted" if resubmission else "submitted"
        self.notifier.enqueue(
            approvers,
            NotificationType.approval_request,
            "Expense approval requested",
            f"{owner.full_name} {verb} {format_cents(expense.amount_cents)} "
            f"for {category.name} on {expense.date.isoformat()}",
            {
                "expense_id": expense.id,
                "owner_id": expense.owner_id,
                "amount_cents": expense.amount_cents,
                "resubmission": resubmission,
            },
        )

    def _announce_decision(
        self, actor: Actor, expense: Expense, target: ExpenseStatus
    ) -> None:
        approved = target == ExpenseStatus.approved
        message = (
            f"Your expense of {format_cents(expense.amount_cents)} on "
            f"{expense.date.isoformat()} was {target.value}"
        )
        if expense.decision_note:
            message += f": {expense.decision_note}"
        self.notifier.enqueue(
            [expense.owner_id],
            NotificationType.expense_approved if approved else NotificationType.expense_rejected,
            "Expense approved" if approved else "Expense rejected",
            message,
            {"expense_id": expense.id, "approver_id": actor.id, "status": target.value},
        )
