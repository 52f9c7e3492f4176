from datetime import date

import pytest

from analytics import AnalyticsService, monthly_trend, percent_of
from conftest import add_budget, add_expense, make_session, seed_org
from errors import Unauthorized
from models import ExpenseStatus
from periods import Period, resolve_period

MARCH = Period("this_month", date(2025, 3, 1), date(2025, 3, 31))


def test_admin_scenario_totals_and_variance() -> None:
    session = make_session()
    org = seed_org(session)
    add_expense(session, org.admin, org.travel, 15000, date(2025, 3, 3))
    add_expense(session, org.admin, org.office, 7550, date(2025, 3, 9))
    add_expense(session, org.admin, org.meals, 4525, date(2025, 3, 14))
    add_budget(session, org.admin, 30000, date(2025, 3, 1), date(2025, 3, 31), category=org.travel)
    add_budget(session, org.admin, 10000, date(2025, 3, 1), date(2025, 3, 31), category=org.office)

    result = AnalyticsService(session).aggregate(org.actor(org.admin), MARCH)

    assert result.total_amount_cents == 27075
    assert result.expense_count == 3
    assert result.avg_expense_cents == pytest.approx(9025.0)
    assert [s.category_name for s in result.category_breakdown] == ["Travel", "Office", "Meals"]
    assert sum(s.percentage for s in result.category_breakdown) == pytest.approx(100.0)
    assert result.monthly_trend[0].month == "2025-03"
    vs = result.budget_vs_actual
    assert vs.budget_amount_cents == 40000
    assert vs.actual_amount_cents == 27075
    assert vs.variance_cents == -12925
    assert vs.variance_percentage == pytest.approx(-32.3125)


def test_empty_period_is_all_zeros() -> None:
    session = make_session()
    org = seed_org(session)
    result = AnalyticsService(session).aggregate(org.actor(org.alice), MARCH)

    assert result.total_amount_cents == 0
    assert result.expense_count == 0
    assert result.avg_expense_cents == 0.0
    assert result.category_breakdown == []
    assert result.monthly_trend == []
    assert result.budget_vs_actual.variance_percentage == 0.0


def test_monthly_trend_is_sorted_and_sparse() -> None:
    session = make_session()
    org = seed_org(session)
    add_expense(session, org.alice, org.travel, 300, date(2025, 5, 2))
    add_expense(session, org.alice, org.travel, 100, date(2025, 1, 20))
    add_expense(session, org.alice, org.office, 200, date(2025, 1, 5))

    year = Period("this_year", date(2025, 1, 1), date(2025, 12, 31))
    trend = AnalyticsService(session).aggregate(org.actor(org.alice), year).monthly_trend

    assert [(m.month, m.amount_cents) for m in trend] == [("2025-01", 300), ("2025-05", 300)]


def test_statuses_narrow_the_aggregate() -> None:
    session = make_session()
    org = seed_org(session)
    add_expense(session, org.alice, org.travel, 1000, date(2025, 3, 2))
    add_expense(session, org.alice, org.travel, 2000, date(2025, 3, 3),
                status=ExpenseStatus.approved, approver=org.manager)
    service = AnalyticsService(session)

    assert service.aggregate(org.actor(org.alice), MARCH).total_amount_cents == 3000
    narrowed = service.aggregate(org.actor(org.alice), MARCH, [ExpenseStatus.approved])
    assert narrowed.total_amount_cents == 2000


def test_manager_aggregate_covers_roster_but_budgets_stay_own() -> None:
    session = make_session()
    org = seed_org(session)
    add_expense(session, org.alice, org.travel, 1000, date(2025, 3, 2))
    add_expense(session, org.bob, org.office, 2000, date(2025, 3, 3))
    add_expense(session, org.outsider, org.office, 5000, date(2025, 3, 3))
    add_budget(session, org.manager, 4000, date(2025, 3, 1), date(2025, 3, 31))
    add_budget(session, org.alice, 9000, date(2025, 3, 1), date(2025, 3, 31))

    result = AnalyticsService(session).aggregate(org.actor(org.manager), MARCH)

    assert result.total_amount_cents == 3000
    assert result.budget_vs_actual.budget_amount_cents == 4000
    assert result.budget_vs_actual.variance_cents == -1000


def test_budget_total_uses_overlap() -> None:
    session = make_session()
    org = seed_org(session)
    add_budget(session, org.alice, 1000, date(2025, 2, 15), date(2025, 3, 14))
    add_budget(session, org.alice, 2000, date(2025, 4, 1), date(2025, 4, 30))

    result = AnalyticsService(session).aggregate(org.actor(org.alice), MARCH)

    assert result.budget_vs_actual.budget_amount_cents == 1000


def test_dashboard() -> None:
    session = make_session()
    org = seed_org(session)
    add_expense(session, org.alice, org.travel, 1000, date(2024, 12, 30))
    add_expense(session, org.alice, org.travel, 2000, date(2025, 2, 3))
    add_expense(session, org.alice, org.travel, 3000, date(2025, 3, 3),
                status=ExpenseStatus.pending)
    add_expense(session, org.alice, org.office, 4000, date(2025, 3, 4),
                status=ExpenseStatus.approved, approver=org.manager)
    add_budget(session, org.alice, 8000, date(2025, 3, 1), date(2025, 3, 31))
    service = AnalyticsService(session)

    data = service.dashboard(org.actor(org.alice), date(2025, 3, 20))

    assert data["total_expenses_cents"] == 10000
    assert data["monthly_total_cents"] == 7000
    assert data["budget_utilization"] == pytest.approx(50.0)
    assert data["pending_approvals"] == 0
    assert [m.month for m in data["monthly_trend"]] == ["2025-02", "2025-03"]

    manager_view = service.dashboard(org.actor(org.manager), date(2025, 3, 20))
    assert manager_view["pending_approvals"] == 1
    assert manager_view["budget_utilization"] == 0.0


def test_team_summary_requires_team_manager() -> None:
    session = make_session()
    org = seed_org(session)
    add_expense(session, org.alice, org.travel, 1000, date(2025, 3, 2))
    add_expense(session, org.bob, org.travel, 2500, date(2025, 3, 3),
                status=ExpenseStatus.pending)
    add_expense(session, org.outsider, org.office, 700, date(2025, 3, 4), team=org.team)
    add_expense(session, org.outsider, org.office, 9000, date(2025, 3, 4))
    service = AnalyticsService(session)

    summary = service.team_summary(org.actor(org.manager), org.team.id, MARCH)

    assert summary["total_expenses_cents"] == 4200
    assert summary["pending_approvals"] == 1
    assert [row["user_id"] for row in summary["member_breakdown"]] == [
        org.bob.id,
        org.alice.id,
        org.outsider.id,
    ]
    assert summary["member_breakdown"][0]["user_name"] == "Bob Field"

    with pytest.raises(Unauthorized):
        service.team_summary(org.actor(org.alice), org.team.id, MARCH)
    assert service.team_summary(org.actor(org.admin), org.team.id, MARCH)[
        "total_expenses_cents"
    ] == 4200


def test_helpers() -> None:
    assert percent_of(5, 0) == 0.0
    assert percent_of(1, 4) == 25.0
    assert monthly_trend([]) == []
    assert resolve_period("custom", "2025-03-01", "2025-03-31", today=date(2025, 6, 1)) == Period(
        "custom", date(2025, 3, 1), date(2025, 3, 31)
    )
