import threading
from datetime import date
from itertools import product

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from conftest import add_budget, add_expense, make_session, seed_org
from database import Base, build_engine
from errors import Conflict, InvalidInput, InvalidTransition, NotFound, Unauthorized
from lifecycle import TRANSITIONS, ExpenseLifecycle, allowed_targets
from models import (
    Budget,
    Expense,
    ExpenseStatus,
    Notification,
    NotificationType,
)
from notifications import decode_metadata

TODAY = date(2025, 3, 20)


def notifications_for(session, user_id: int, type: NotificationType) -> list[Notification]:
    return list(
        session.scalars(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.type == type)
            .order_by(Notification.id)
        ).all()
    )


def test_transition_table_is_the_only_reachable_graph() -> None:
    session = make_session()
    org = seed_org(session)
    lifecycle = ExpenseLifecycle(session, today=TODAY)
    statuses = list(ExpenseStatus)
    for current, target in product(statuses, statuses):
        if (current, target) in TRANSITIONS:
            continue
        expense = add_expense(
            session, org.alice, org.travel, 1000, date(2025, 3, 1), status=current,
            approver=org.manager,
        )
        with pytest.raises(InvalidTransition) as excinfo:
            lifecycle.transition(org.actor(org.admin), expense.id, target)
        assert excinfo.value.current == current
        assert excinfo.value.requested == target

    assert allowed_targets(ExpenseStatus.pending) == [
        ExpenseStatus.approved,
        ExpenseStatus.rejected,
    ]
    assert allowed_targets(ExpenseStatus.paid) == []


def test_submit_routes_approval_request_to_team_manager() -> None:
    session = make_session()
    org = seed_org(session)
    expense = add_expense(session, org.alice, org.travel, 4500, date(2025, 3, 5))

    submitted = ExpenseLifecycle(session, today=TODAY).submit(org.actor(org.alice), expense.id)

    assert submitted.status == ExpenseStatus.pending
    assert submitted.submission_count == 1
    requests = notifications_for(session, org.manager.id, NotificationType.approval_request)
    assert len(requests) == 1
    metadata = decode_metadata(requests[0])
    assert metadata["expense_id"] == expense.id
    assert metadata["resubmission"] is False
    assert notifications_for(session, org.admin.id, NotificationType.approval_request) == []


def test_submit_without_team_falls_back_to_admins() -> None:
    session = make_session()
    org = seed_org(session)
    expense = add_expense(session, org.outsider, org.office, 1200, date(2025, 3, 5))

    ExpenseLifecycle(session, today=TODAY).submit(org.actor(org.outsider), expense.id)

    requests = notifications_for(session, org.admin.id, NotificationType.approval_request)
    assert len(requests) == 1
    assert "Olga" in requests[0].message


def test_only_owner_may_submit() -> None:
    session = make_session()
    org = seed_org(session)
    expense = add_expense(session, org.alice, org.travel, 4500, date(2025, 3, 5))

    with pytest.raises(Unauthorized):
        ExpenseLifecycle(session, today=TODAY).submit(org.actor(org.manager), expense.id)

    session.refresh(expense)
    assert expense.status == ExpenseStatus.draft


def test_submit_requires_positive_amount_and_active_category() -> None:
    session = make_session()
    org = seed_org(session)
    lifecycle = ExpenseLifecycle(session, today=TODAY)
    free = add_expense(session, org.alice, org.travel, 0, date(2025, 3, 5))
    with pytest.raises(InvalidInput) as excinfo:
        lifecycle.submit(org.actor(org.alice), free.id)
    assert excinfo.value.field == "amount_cents"

    archived = add_expense(session, org.alice, org.meals, 800, date(2025, 3, 5))
    org.meals.is_active = False
    session.commit()
    with pytest.raises(InvalidInput) as excinfo:
        lifecycle.submit(org.actor(org.alice), archived.id)
    assert excinfo.value.field == "category_id"


def test_approve_sets_approval_fields_and_notifies_owner() -> None:
    session = make_session()
    org = seed_org(session)
    expense = add_expense(
        session, org.alice, org.travel, 4500, date(2025, 3, 5), status=ExpenseStatus.pending
    )

    approved = ExpenseLifecycle(session, today=TODAY).approve(
        org.actor(org.manager), expense.id, note="Looks fine"
    )

    assert approved.status == ExpenseStatus.approved
    assert approved.approver_id == org.manager.id
    assert approved.approved_at is not None
    assert approved.decision_note == "Looks fine"
    results = notifications_for(session, org.alice.id, NotificationType.expense_approved)
    assert len(results) == 1
    assert results[0].message.endswith("approved: Looks fine")


def test_approval_requires_scope() -> None:
    session = make_session()
    org = seed_org(session)
    lifecycle = ExpenseLifecycle(session, today=TODAY)
    foreign = add_expense(
        session, org.outsider, org.office, 900, date(2025, 3, 5), status=ExpenseStatus.pending
    )
    with pytest.raises(Unauthorized):
        lifecycle.approve(org.actor(org.manager), foreign.id)

    peer = add_expense(
        session, org.bob, org.travel, 900, date(2025, 3, 5), status=ExpenseStatus.pending
    )
    with pytest.raises(Unauthorized):
        lifecycle.reject(org.actor(org.alice), peer.id)

    assert lifecycle.approve(org.actor(org.admin), foreign.id).status == ExpenseStatus.approved


def test_reject_then_reopen_clears_approval_and_resubmits() -> None:
    session = make_session()
    org = seed_org(session)
    lifecycle = ExpenseLifecycle(session, today=TODAY)
    expense = add_expense(session, org.alice, org.travel, 4500, date(2025, 3, 5))
    lifecycle.submit(org.actor(org.alice), expense.id)

    rejected = lifecycle.reject(org.actor(org.manager), expense.id, note="Missing receipt")
    assert rejected.status == ExpenseStatus.rejected
    assert rejected.approver_id == org.manager.id
    assert len(notifications_for(session, org.alice.id, NotificationType.expense_rejected)) == 1

    reopened = lifecycle.reopen(org.actor(org.alice), expense.id)
    assert reopened.status == ExpenseStatus.draft
    assert reopened.approver_id is None
    assert reopened.approved_at is None

    resubmitted = lifecycle.submit(org.actor(org.alice), expense.id)
    assert resubmitted.submission_count == 2
    requests = notifications_for(session, org.manager.id, NotificationType.approval_request)
    assert [decode_metadata(n)["resubmission"] for n in requests] == [False, True]
    assert "resubmitted" in requests[-1].message


def test_only_admin_marks_paid() -> None:
    session = make_session()
    org = seed_org(session)
    lifecycle = ExpenseLifecycle(session, today=TODAY)
    expense = add_expense(
        session, org.alice, org.travel, 4500, date(2025, 3, 5),
        status=ExpenseStatus.approved, approver=org.manager,
    )
    with pytest.raises(Unauthorized):
        lifecycle.mark_paid(org.actor(org.manager), expense.id)

    paid = lifecycle.mark_paid(org.actor(org.admin), expense.id)

    assert paid.status == ExpenseStatus.paid
    assert paid.approver_id == org.manager.id


def test_missing_expense_is_not_found() -> None:
    session = make_session()
    org = seed_org(session)
    with pytest.raises(NotFound):
        ExpenseLifecycle(session, today=TODAY).submit(org.actor(org.alice), 4242)


def test_approval_rechecks_matching_budgets() -> None:
    session = make_session()
    org = seed_org(session)
    overall = add_budget(session, org.alice, 10000, date(2025, 3, 1), date(2025, 3, 31))
    travel = add_budget(
        session, org.alice, 5000, date(2025, 3, 1), date(2025, 3, 31), category=org.travel
    )
    other = add_budget(
        session, org.alice, 1000, date(2025, 3, 1), date(2025, 3, 31), category=org.meals
    )
    expense = add_expense(
        session, org.alice, org.travel, 6000, date(2025, 3, 5), status=ExpenseStatus.pending
    )

    ExpenseLifecycle(session, today=TODAY).approve(org.actor(org.manager), expense.id)

    alerts = notifications_for(session, org.alice.id, NotificationType.budget_alert)
    assert [decode_metadata(n)["budget_id"] for n in alerts] == [travel.id]
    assert decode_metadata(alerts[0])["alert_type"] == "exceeded"
    levels = {
        b.id: b.last_alert_level
        for b in session.scalars(select(Budget).order_by(Budget.id)).all()
    }
    assert levels == {overall.id: 0, travel.id: 2, other.id: 0}


def test_manager_cannot_decide_own_expense() -> None:
    session = make_session()
    org = seed_org(session)
    lifecycle = ExpenseLifecycle(session, today=TODAY)
    own = add_expense(session, org.manager, org.office, 3000, date(2025, 3, 2))
    lifecycle.submit(org.actor(org.manager), own.id)

    with pytest.raises(Unauthorized):
        lifecycle.approve(org.actor(org.manager), own.id)
    with pytest.raises(Unauthorized):
        lifecycle.reject(org.actor(org.manager), own.id)
    session.refresh(own)
    assert own.status == ExpenseStatus.pending
    assert own.approver_id is None

    assert lifecycle.approve(org.actor(org.admin), own.id).approver_id == org.admin.id


def test_admin_cannot_approve_own_expense() -> None:
    session = make_session()
    org = seed_org(session)
    own = add_expense(
        session, org.admin, org.office, 3000, date(2025, 3, 2), status=ExpenseStatus.pending
    )

    with pytest.raises(Unauthorized) as excinfo:
        ExpenseLifecycle(session, today=TODAY).approve(org.actor(org.admin), own.id)
    assert excinfo.value.action == "approve"


def test_concurrent_decisions_yield_one_conflict(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        org = seed_org(session)
        expense_id = add_expense(
            session, org.alice, org.travel, 4500, date(2025, 3, 5),
            status=ExpenseStatus.pending,
        ).id

    barrier = threading.Barrier(2)
    loaded: dict[str, ExpenseStatus] = {}
    outcomes: dict[str, str] = {}

    def decide(name: str, actor, target: ExpenseStatus) -> None:
        with SessionLocal() as session:
            held = session.get(Expense, expense_id)
            loaded[name] = held.status
            barrier.wait(timeout=10)
            try:
                ExpenseLifecycle(session, today=TODAY).transition(actor, expense_id, target)
                outcomes[name] = "ok"
            except Conflict as exc:
                outcomes[name] = "conflict" if exc.retryable else "error"

    workers = [
        threading.Thread(
            target=decide, args=("approve", org.actor(org.manager), ExpenseStatus.approved)
        ),
        threading.Thread(
            target=decide, args=("reject", org.actor(org.admin), ExpenseStatus.rejected)
        ),
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert loaded == {"approve": ExpenseStatus.pending, "reject": ExpenseStatus.pending}
    assert sorted(outcomes.values()) == ["conflict", "ok"]
    winner = next(name for name, result in outcomes.items() if result == "ok")
    with SessionLocal() as session:
        stored = session.get(Expense, expense_id)
        decisions = session.scalars(
            select(Notification).where(
                Notification.user_id == org.alice.id,
                Notification.type.in_(
                    [NotificationType.expense_approved, NotificationType.expense_rejected]
                ),
            )
        ).all()
    if winner == "approve":
        assert stored.status == ExpenseStatus.approved
        assert stored.approver_id == org.manager.id
    else:
        assert stored.status == ExpenseStatus.rejected
        assert stored.approver_id == org.admin.id
    assert len(decisions) == 1
