import logging
from dataclasses import asdict
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from analytics import AnalyticsService, ExpenseAnalytics
from budgets import BudgetUtilization
from config import get_settings
from database import SessionLocal
from errors import (
    Conflict,
    ExpenseControlError,
    InvalidInput,
    InvalidTransition,
    NotFound,
    Unauthorized,
)
from lifecycle import ExpenseLifecycle, allowed_targets
from models import Budget, Category, Expense, ExpenseStatus, Notification, Team, User
from notifications import NotificationService, decode_metadata
from periods import Period, local_today, resolve_period
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    CategoryUpdateIn,
    ExpenseDecisionIn,
    ExpenseFilters,
    ExpenseIn,
    ExpenseUpdateIn,
    RoleChangeIn,
    TeamIn,
    TeamMemberIn,
    UserIn,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    TeamService,
    UserService,
    bootstrap_admin,
)
from store import DataStore
from visibility import Actor, VisibilityResolver

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Control")

ERROR_STATUS: list[tuple[type[ExpenseControlError], int]] = [
    (NotFound, 404),
    (Unauthorized, 403),
    (InvalidTransition, 409),
    (Conflict, 409),
    (InvalidInput, 422),
]


@app.exception_handler(ExpenseControlError)
async def expense_control_error_handler(request: Request, exc: ExpenseControlError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)), 400
    )
    if status_code >= 409:
        logger.info(f"request_rejected: path={request.url.path} error={exc.code}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_actor(
    x_actor_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> Actor:
    # The gateway in front of this service authenticates and sets the header.
    if x_actor_id is None:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return VisibilityResolver(DataStore(db)).resolve_actor(x_actor_id)


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def period_from_request(request: Request) -> Period:
    return resolve_period(
        request.query_params.get("period"),
        request.query_params.get("start"),
        request.query_params.get("end"),
    )


def user_json(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "full_name": user.full_name,
        "role": user.role.value,
        "is_active": user.is_active,
    }


def team_json(team: Team) -> dict[str, object]:
    return {
        "id": team.id,
        "name": team.name,
        "description": team.description,
        "manager_id": team.manager_id,
        "is_active": team.is_active,
    }


def category_json(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "color": category.color,
        "parent_id": category.parent_id,
        "is_active": category.is_active,
    }


def expense_json(expense: Expense) -> dict[str, object]:
    status = ExpenseStatus(expense.status)
    return {
        "id": expense.id,
        "owner_id": expense.owner_id,
        "team_id": expense.team_id,
        "category_id": expense.category_id,
        "category": expense.category.name if expense.category else None,
        "amount_cents": expense.amount_cents,
        "description": expense.description,
        "date": expense.date.isoformat(),
        "receipt_url": expense.receipt_url,
        "tags": expense.tags,
        "status": status.value,
        "approver_id": expense.approver_id,
        "approved_at": expense.approved_at.isoformat() if expense.approved_at else None,
        "decision_note": expense.decision_note,
        "submission_count": expense.submission_count,
        "next_statuses": [s.value for s in allowed_targets(status)],
    }


def budget_json(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "owner_id": budget.owner_id,
        "category_id": budget.category_id,
        "category": budget.category.name if budget.category else None,
        "amount_cents": budget.amount_cents,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "alert_threshold": budget.alert_threshold,
        "is_active": budget.is_active,
    }


def utilization_json(utilization: BudgetUtilization) -> dict[str, object]:
    data = utilization.as_dict()
    data["alert_level"] = utilization.alert_level.name
    return data


def notification_json(notification: Notification) -> dict[str, object]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "metadata": decode_metadata(notification),
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
    }


def analytics_json(result: ExpenseAnalytics) -> dict[str, object]:
    return {
        "period": {
            "slug": result.period.slug,
            "start": result.period.start.isoformat(),
            "end": result.period.end.isoformat(),
        },
        "total_amount_cents": result.total_amount_cents,
        "expense_count": result.expense_count,
        "avg_expense_cents": result.avg_expense_cents,
        "category_breakdown": [asdict(share) for share in result.category_breakdown],
        "monthly_trend": [asdict(month) for month in result.monthly_trend],
        "budget_vs_actual": asdict(result.budget_vs_actual)
        if result.budget_vs_actual
        else None,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# Users


@app.post("/users/bootstrap", status_code=201)
def bootstrap_user(data: UserIn, db: Session = Depends(get_db)):
    return user_json(bootstrap_admin(db, data))


@app.get("/users/me")
def read_me(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return user_json(UserService(db).get(actor.id))


@app.get("/users")
def list_users(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    if not actor.can_approve:
        raise Unauthorized(actor.id, actor.role, "list users")
    return [user_json(u) for u in UserService(db).list_all()]


@app.post("/users", status_code=201)
def create_user(
    data: UserIn, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return user_json(UserService(db).create(actor, data))


@app.put("/users/{user_id}/role")
def change_user_role(
    user_id: int,
    data: RoleChangeIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return user_json(UserService(db).change_role(actor, user_id, data.role))


@app.delete("/users/{user_id}", status_code=204)
def deactivate_user(
    user_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    UserService(db).deactivate(actor, user_id)
    return Response(status_code=204)


# Teams


@app.get("/teams")
def list_teams(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return [team_json(t) for t in TeamService(db).list_for(actor)]


@app.post("/teams", status_code=201)
def create_team(
    data: TeamIn, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return team_json(TeamService(db).create(actor, data))


@app.get("/teams/{team_id}/members")
def list_team_members(
    team_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return [user_json(u) for u in TeamService(db).members(actor, team_id)]


@app.post("/teams/{team_id}/members", status_code=201)
def add_team_member(
    team_id: int,
    data: TeamMemberIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    membership = TeamService(db).add_member(actor, team_id, data.user_id)
    return {"team_id": membership.team_id, "user_id": membership.user_id}


@app.delete("/teams/{team_id}/members/{user_id}", status_code=204)
def remove_team_member(
    team_id: int,
    user_id: int,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    TeamService(db).remove_member(actor, team_id, user_id)
    return Response(status_code=204)


@app.get("/teams/{team_id}/summary")
def team_summary(
    team_id: int,
    request: Request,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    summary = AnalyticsService(db).team_summary(actor, team_id, period)
    summary["monthly_trend"] = [asdict(m) for m in summary["monthly_trend"]]
    return summary


# Categories


@app.get("/categories")
def list_categories(
    include_inactive: bool = False,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return [
        category_json(c)
        for c in CategoryService(db).list_all(include_inactive=include_inactive)
    ]


@app.get("/categories/tree")
def category_tree(
    include_inactive: bool = False,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return CategoryService(db).tree(include_inactive=include_inactive)


@app.post("/categories", status_code=201)
def create_category(
    data: CategoryIn, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return category_json(CategoryService(db).create(actor, data))


@app.patch("/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryUpdateIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return category_json(CategoryService(db).update(actor, category_id, data))


@app.post("/categories/{category_id}/archive", status_code=204)
def archive_category(
    category_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    CategoryService(db).deactivate(actor, category_id)
    return Response(status_code=204)


@app.post("/categories/{category_id}/restore", status_code=204)
def restore_category(
    category_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    CategoryService(db).restore(actor, category_id)
    return Response(status_code=204)


# Expenses


@app.get("/expenses")
def list_expenses(
    filters: ExpenseFilters = Depends(),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    items = ExpenseService(db).list(actor, filters)
    return {
        "items": [expense_json(e) for e in items],
        "limit": filters.limit,
        "offset": filters.offset,
    }


@app.post("/expenses", status_code=201)
def create_expense(
    data: ExpenseIn, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return expense_json(ExpenseService(db).create(actor, data))


@app.get("/expenses/{expense_id}")
def read_expense(
    expense_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return expense_json(ExpenseService(db).get(actor, expense_id))


@app.patch("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    data: ExpenseUpdateIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return expense_json(ExpenseService(db).update(actor, expense_id, data))


@app.delete("/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    ExpenseService(db).delete(actor, expense_id)
    return Response(status_code=204)


@app.post("/expenses/{expense_id}/submit")
def submit_expense(
    expense_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return expense_json(ExpenseLifecycle(db).submit(actor, expense_id))


@app.post("/expenses/{expense_id}/approve")
def approve_expense(
    expense_id: int,
    data: Optional[ExpenseDecisionIn] = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    note = data.note if data else None
    return expense_json(ExpenseLifecycle(db).approve(actor, expense_id, note))


@app.post("/expenses/{expense_id}/reject")
def reject_expense(
    expense_id: int,
    data: Optional[ExpenseDecisionIn] = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    note = data.note if data else None
    return expense_json(ExpenseLifecycle(db).reject(actor, expense_id, note))


@app.post("/expenses/{expense_id}/pay")
def pay_expense(
    expense_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return expense_json(ExpenseLifecycle(db).mark_paid(actor, expense_id))


@app.post("/expenses/{expense_id}/reopen")
def reopen_expense(
    expense_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return expense_json(ExpenseLifecycle(db).reopen(actor, expense_id))


@app.get("/approvals")
def approval_queue(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return [expense_json(e) for e in ExpenseService(db).pending_approvals(actor)]


# Budgets


@app.get("/budgets")
def list_budgets(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return [budget_json(b) for b in BudgetService(db).list_active(actor)]


@app.post("/budgets", status_code=201)
def create_budget(
    data: BudgetIn, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return budget_json(BudgetService(db).create(actor, data))


@app.get("/budgets/utilization")
def budgets_utilization(
    as_of: Optional[date] = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return [
        {"budget": budget_json(budget), "utilization": utilization_json(utilization)}
        for budget, utilization in BudgetService(db).utilization(actor, as_of)
    ]


@app.get("/budgets/alerts")
def budget_alerts(
    as_of: Optional[date] = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return BudgetService(db).alerts(actor, as_of)


@app.get("/budgets/{budget_id}")
def read_budget(
    budget_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return budget_json(BudgetService(db).get(actor, budget_id))


@app.patch("/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return budget_json(BudgetService(db).update(actor, budget_id, data))


@app.delete("/budgets/{budget_id}", status_code=204)
def deactivate_budget(
    budget_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    BudgetService(db).deactivate(actor, budget_id)
    return Response(status_code=204)


@app.get("/budgets/{budget_id}/utilization")
def budget_utilization(
    budget_id: int,
    as_of: Optional[date] = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return utilization_json(BudgetService(db).evaluate(actor, budget_id, as_of))


# Analytics


@app.get("/analytics")
def expense_analytics(
    request: Request,
    status: Optional[List[ExpenseStatus]] = Query(default=None),
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    return analytics_json(AnalyticsService(db).aggregate(actor, period, status))


@app.get("/dashboard")
def dashboard(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    data = AnalyticsService(db).dashboard(actor, local_today())
    data["category_breakdown"] = [asdict(s) for s in data["category_breakdown"]]
    data["monthly_trend"] = [asdict(m) for m in data["monthly_trend"]]
    return data


# Notifications


@app.get("/notifications")
def list_notifications(
    unread_only: bool = False,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    items = NotificationService(db).list_for_user(actor.id, unread_only=unread_only)
    return [notification_json(n) for n in items]


@app.get("/notifications/unread-count")
def unread_notification_count(
    actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return {"count": NotificationService(db).unread_count(actor.id)}


@app.post("/notifications/{notification_id}/read", status_code=204)
def read_notification(
    notification_id: int,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    if not NotificationService(db).mark_read(actor.id, notification_id):
        raise NotFound("notification", notification_id)
    return Response(status_code=204)


@app.post("/notifications/read-all")
def read_all_notifications(
    actor: Actor = Depends(current_actor), db: Session = Depends(get_db)
):
    return {"updated": NotificationService(db).mark_all_read(actor.id)}


@app.delete("/notifications/{notification_id}", status_code=204)
def delete_notification(
    notification_id: int,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    if not NotificationService(db).delete(actor.id, notification_id):
        raise NotFound("notification", notification_id)
    return Response(status_code=204)
