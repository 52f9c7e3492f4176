from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, TypeVar

from sqlalchemy import ColumnElement, or_, select, true

from errors import NotFound, Unauthorized
from models import Role, Team, TeamMember
from store import DataStore

R = TypeVar("R")


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin

    @property
    def can_approve(self) -> bool:
        return self.role in (Role.admin, Role.manager)


@dataclass(frozen=True)
class ScopePredicate:
    """Which ``(owner_id, team_id)`` pairs an actor may read or act upon.

    Built once per request; ``managed_team_ids`` and ``member_ids`` are the
    manager's teams and everyone on their rosters.
    """

    actor: Actor
    managed_team_ids: frozenset[int] = field(default_factory=frozenset)
    member_ids: frozenset[int] = field(default_factory=frozenset)

    def allows(self, owner_id: int, team_id: Optional[int] = None) -> bool:
        role = self.actor.role
        if role == Role.admin:
            return True
        if owner_id == self.actor.id:
            return True
        if role == Role.manager:
            if team_id is not None and team_id in self.managed_team_ids:
                return True
            return owner_id in self.member_ids
        return False

    def allows_record(self, record: Any) -> bool:
        return self.allows(record.owner_id, getattr(record, "team_id", None))

    def filter(self, records: Iterable[R]) -> list[R]:
        return [r for r in records if self.allows_record(r)]

    def expense_clause(self, model: Any) -> ColumnElement[bool]:
        role = self.actor.role
        if role == Role.admin:
            return true()
        clauses = [model.owner_id == self.actor.id]
        if role == Role.manager:
            if self.managed_team_ids:
                clauses.append(model.team_id.in_(sorted(self.managed_team_ids)))
            if self.member_ids:
                clauses.append(model.owner_id.in_(sorted(self.member_ids)))
        return or_(*clauses)

    def budget_owner_clause(self, model: Any) -> ColumnElement[bool]:
        if self.actor.role == Role.admin:
            return true()
        return model.owner_id == self.actor.id


class VisibilityResolver:
    def __init__(self, store: DataStore) -> None:
        self.store = store

    def resolve_actor(self, actor_id: int) -> Actor:
        user = self.store.get_user(actor_id)
        if not user.is_active:
            raise NotFound("user", actor_id)
        return Actor(id=user.id, role=Role(user.role))

    def resolve_scope(self, actor: Actor | int) -> ScopePredicate:
        if isinstance(actor, int):
            actor = self.resolve_actor(actor)
        else:
            # The role on a passed-in Actor may be stale.
            actor = self.resolve_actor(actor.id)
        if actor.role != Role.manager:
            return ScopePredicate(actor=actor)
        team_ids = self.store.managed_team_ids(actor.id)
        member_ids = self.store.member_ids_of_teams(team_ids)
        return ScopePredicate(
            actor=actor, managed_team_ids=team_ids, member_ids=member_ids
        )

    def require_visible(
        self,
        scope: ScopePredicate,
        record: Any,
        entity: str,
        action: str = "view",
    ) -> None:
        if not scope.allows_record(record):
            raise Unauthorized(
                scope.actor.id, scope.actor.role, action, entity, record.id
            )

    def visible_teams(self, actor: Actor) -> list[Team]:
        stmt = select(Team).where(Team.is_active.is_(True))
        if actor.role == Role.manager:
            stmt = stmt.where(Team.manager_id == actor.id)
        elif actor.role == Role.user:
            stmt = stmt.where(
                Team.id.in_(
                    select(TeamMember.team_id).where(
                        TeamMember.user_id == actor.id, TeamMember.is_active.is_(True)
                    )
                )
            )
        return list(self.store.session.scalars(stmt.order_by(Team.name)).all())

    def can_manage_team(self, actor: Actor, team: Team) -> bool:
        if actor.role == Role.admin:
            return True
        return actor.role == Role.manager and team.manager_id == actor.id
