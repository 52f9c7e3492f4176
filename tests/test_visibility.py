from datetime import date

import pytest
from sqlalchemy import select

from conftest import add_budget, add_expense, make_session, seed_org
from errors import NotFound, Unauthorized
from models import Budget, Expense, Role, TeamMember
from store import DataStore
from visibility import Actor, ScopePredicate, VisibilityResolver


def _visible_ids(session, scope: ScopePredicate) -> set[int]:
    rows = session.scalars(select(Expense.id).where(scope.expense_clause(Expense)))
    return set(rows)


def test_user_sees_only_own_expenses() -> None:
    session = make_session()
    org = seed_org(session)
    mine = add_expense(session, org.alice, org.travel, 1000, date(2025, 3, 1))
    add_expense(session, org.bob, org.travel, 2000, date(2025, 3, 2))
    add_expense(session, org.outsider, org.office, 3000, date(2025, 3, 3))

    scope = VisibilityResolver(DataStore(session)).resolve_scope(org.actor(org.alice))

    assert _visible_ids(session, scope) == {mine.id}
    assert scope.allows(org.alice.id)
    assert not scope.allows(org.bob.id, org.team.id)


def test_manager_sees_team_members_without_team_tag() -> None:
    session = make_session()
    org = seed_org(session)
    own = add_expense(session, org.manager, org.office, 500, date(2025, 3, 1))
    untagged = add_expense(session, org.alice, org.travel, 1000, date(2025, 3, 1))
    tagged = add_expense(
        session, org.bob, org.travel, 2000, date(2025, 3, 2), team=org.team
    )
    foreign = add_expense(session, org.outsider, org.office, 3000, date(2025, 3, 3))

    scope = VisibilityResolver(DataStore(session)).resolve_scope(org.actor(org.manager))

    assert scope.managed_team_ids == frozenset({org.team.id})
    assert scope.member_ids == frozenset({org.alice.id, org.bob.id})
    assert _visible_ids(session, scope) == {own.id, untagged.id, tagged.id}
    assert foreign.id not in _visible_ids(session, scope)


def test_manager_sees_expense_tagged_to_managed_team() -> None:
    session = make_session()
    org = seed_org(session)
    # The outsider is not on the roster but filed against the manager's team.
    tagged = add_expense(
        session, org.outsider, org.travel, 900, date(2025, 3, 4), team=org.team
    )
    scope = VisibilityResolver(DataStore(session)).resolve_scope(org.actor(org.manager))

    assert scope.allows_record(tagged)
    assert tagged.id in _visible_ids(session, scope)


def test_admin_sees_everything() -> None:
    session = make_session()
    org = seed_org(session)
    ids = {
        add_expense(session, user, org.travel, 100, date(2025, 3, 1)).id
        for user in (org.alice, org.bob, org.outsider, org.manager)
    }
    scope = VisibilityResolver(DataStore(session)).resolve_scope(org.actor(org.admin))

    assert _visible_ids(session, scope) == ids
    assert scope.allows(org.outsider.id)


def test_removed_member_drops_out_of_manager_scope() -> None:
    session = make_session()
    org = seed_org(session)
    expense = add_expense(session, org.alice, org.travel, 1000, date(2025, 3, 1))
    membership = session.query(TeamMember).filter_by(user_id=org.alice.id).one()
    membership.is_active = False
    session.commit()

    scope = VisibilityResolver(DataStore(session)).resolve_scope(org.actor(org.manager))

    assert not scope.allows_record(expense)


def test_role_is_reread_from_store() -> None:
    session = make_session()
    org = seed_org(session)
    resolver = VisibilityResolver(DataStore(session))
    stale = Actor(id=org.alice.id, role=Role.admin)

    scope = resolver.resolve_scope(stale)

    assert scope.actor.role == Role.user
    assert not scope.allows(org.bob.id)


def test_unknown_or_inactive_actor_is_not_found() -> None:
    session = make_session()
    org = seed_org(session)
    resolver = VisibilityResolver(DataStore(session))
    with pytest.raises(NotFound):
        resolver.resolve_actor(9999)

    org.bob.is_active = False
    session.commit()
    with pytest.raises(NotFound):
        resolver.resolve_scope(org.bob.id)


def test_require_visible_raises_unauthorized() -> None:
    session = make_session()
    org = seed_org(session)
    expense = add_expense(session, org.bob, org.travel, 1000, date(2025, 3, 1))
    resolver = VisibilityResolver(DataStore(session))
    scope = resolver.resolve_scope(org.actor(org.alice))

    with pytest.raises(Unauthorized) as excinfo:
        resolver.require_visible(scope, expense, "expense")

    assert excinfo.value.context["entity_id"] == expense.id
    assert excinfo.value.context["role"] == "user"


def test_budget_owner_clause_limits_managers_to_own() -> None:
    session = make_session()
    org = seed_org(session)
    mine = add_budget(session, org.manager, 10000, date(2025, 3, 1), date(2025, 3, 31))
    add_budget(session, org.alice, 10000, date(2025, 3, 1), date(2025, 3, 31))
    resolver = VisibilityResolver(DataStore(session))

    manager_scope = resolver.resolve_scope(org.actor(org.manager))
    admin_scope = resolver.resolve_scope(org.actor(org.admin))

    assert list(
        session.scalars(select(Budget.id).where(manager_scope.budget_owner_clause(Budget)))
    ) == [mine.id]
    assert len(
        list(session.scalars(select(Budget.id).where(admin_scope.budget_owner_clause(Budget))))
    ) == 2


def test_visible_teams_by_role() -> None:
    session = make_session()
    org = seed_org(session)
    resolver = VisibilityResolver(DataStore(session))

    assert [t.id for t in resolver.visible_teams(org.actor(org.admin))] == [org.team.id]
    assert [t.id for t in resolver.visible_teams(org.actor(org.manager))] == [org.team.id]
    assert [t.id for t in resolver.visible_teams(org.actor(org.alice))] == [org.team.id]
    assert resolver.visible_teams(org.actor(org.outsider)) == []
