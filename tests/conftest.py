import os
from datetime import date, datetime
from types import SimpleNamespace
from typing import Optional

os.environ.setdefault("EXPENSE_CONTROL_DATABASE_URL", "sqlite://")
os.environ.setdefault("EXPENSE_CONTROL_SCHEDULER_ENABLED", "false")

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from models import (
    Budget,
    BudgetPeriod,
    Category,
    Expense,
    ExpenseStatus,
    Role,
    Team,
    TeamMember,
    User,
)
from visibility import Actor


def make_session() -> Session:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()


def add_user(session: Session, email: str, role: Role = Role.user) -> User:
    first, _, last = email.split("@")[0].partition(".")
    user = User(
        email=email,
        first_name=first.capitalize(),
        last_name=(last or "Test").capitalize(),
        role=role,
    )
    session.add(user)
    session.flush()
    return user


def seed_org(session: Session) -> SimpleNamespace:
    """Admin, a manager with a two-person team, and an unaffiliated user."""
    admin = add_user(session, "ada.admin@example.com", Role.admin)
    manager = add_user(session, "mia.manager@example.com", Role.manager)
    alice = add_user(session, "alice.field@example.com")
    bob = add_user(session, "bob.field@example.com")
    outsider = add_user(session, "olga.outside@example.com")

    team = Team(name="Field Sales", manager_id=manager.id)
    session.add(team)
    session.flush()
    session.add_all(
        [
            TeamMember(team_id=team.id, user_id=alice.id),
            TeamMember(team_id=team.id, user_id=bob.id),
        ]
    )

    travel = Category(name="Travel", color="#336699")
    office = Category(name="Office")
    meals = Category(name="Meals")
    session.add_all([travel, office, meals])
    session.commit()

    def actor(user: User) -> Actor:
        return Actor(id=user.id, role=user.role)

    return SimpleNamespace(
        admin=admin,
        manager=manager,
        alice=alice,
        bob=bob,
        outsider=outsider,
        team=team,
        travel=travel,
        office=office,
        meals=meals,
        actor=actor,
    )


def add_expense(
    session: Session,
    owner: User,
    category: Category,
    amount_cents: int,
    day: date,
    status: ExpenseStatus = ExpenseStatus.draft,
    team: Optional[Team] = None,
    approver: Optional[User] = None,
) -> Expense:
    expense = Expense(
        owner_id=owner.id,
        category_id=category.id,
        team_id=team.id if team else None,
        amount_cents=amount_cents,
        description=f"{category.name} {day.isoformat()}",
        date=day,
        status=status,
        submission_count=0 if status == ExpenseStatus.draft else 1,
    )
    if status in (ExpenseStatus.approved, ExpenseStatus.rejected, ExpenseStatus.paid):
        expense.approver_id = (approver or owner).id
        expense.approved_at = datetime(day.year, day.month, day.day, 12, 0)
    session.add(expense)
    session.commit()
    return expense


def add_budget(
    session: Session,
    owner: User,
    amount_cents: int,
    start: date,
    end: date,
    category: Optional[Category] = None,
    alert_threshold: int = 80,
) -> Budget:
    budget = Budget(
        owner_id=owner.id,
        category_id=category.id if category else None,
        amount_cents=amount_cents,
        period=BudgetPeriod.monthly,
        start_date=start,
        end_date=end,
        alert_threshold=alert_threshold,
    )
    session.add(budget)
    session.commit()
    return budget

