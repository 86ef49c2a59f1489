"""Hierarchy store - the three-level ownership tree.

top_admin -> admin -> member. Every non-top principal is owned by a
principal exactly one level above it. An admin additionally "reaches" the
members of the teams it administers.

Traversals are bounded: the tree is three levels deep, so ancestors() walks
at most two owner edges and descendants() expands exactly two hops.
"""

from __future__ import annotations

import uuid

from wharchive.domain.errors import (
    AuthorizationError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from wharchive.domain.models import Principal, Role, Team
from wharchive.infra.store import ArchiveStore
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context

logger = get_logger(__name__)

_MAX_DEPTH = 2


class HierarchyStore:
    def __init__(self, store: ArchiveStore) -> None:
        self._store = store

    # ── Lookups ───────────────────────────────────────────

    def get(self, principal_id: str) -> Principal:
        """Return the principal or raise NotFoundError."""
        principal = self._store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError(f"principal {principal_id} not found")
        return principal

    def ancestors(self, principal_id: str) -> list[Principal]:
        """Owner chain from the principal's owner up to the top_admin.

        The principal itself is not included; a top_admin has no ancestors.

        Raises:
            NotFoundError: If the principal or an owner is missing.
            DataIntegrityError: On a self-referential or non-downward edge.
        """
        current = self.get(principal_id)
        chain: list[Principal] = []
        seen = {current.id}

        while current.owner_id is not None:
            if current.owner_id in seen:
                raise DataIntegrityError(
                    f"ownership cycle at principal {current.id}"
                )
            owner = self.get(current.owner_id)
            self._check_edge(current, owner)
            chain.append(owner)
            seen.add(owner.id)
            current = owner
            if len(chain) > _MAX_DEPTH:
                raise DataIntegrityError("ownership chain deeper than the hierarchy")

        if current.role != Role.TOP_ADMIN:
            raise DataIntegrityError(
                f"principal {current.id} has no owner but is not a top_admin"
            )
        return chain

    def descendants(self, principal_id: str) -> set[Principal]:
        """Principals reachable downward from principal_id.

        Hop 1: principals it created, plus, for an admin, members of its teams.
        Hop 2: the same expansion applied to every admin found in hop 1.
        """
        root = self.get(principal_id)
        found: dict[str, Principal] = {}

        first_hop = self._reach(root)
        for principal in first_hop:
            found[principal.id] = principal

        for principal in first_hop:
            if principal.role == Role.ADMIN:
                for reached in self._reach(principal):
                    found.setdefault(reached.id, reached)

        found.pop(root.id, None)
        return set(found.values())

    def _reach(self, principal: Principal) -> list[Principal]:
        reached = []
        for child in self._store.list_principals_by_owner(principal.id):
            if child.id == principal.id:
                raise DataIntegrityError(f"principal {principal.id} owns itself")
            self._check_edge(child, principal)
            reached.append(child)
        if principal.role == Role.ADMIN:
            for team in self._store.list_teams_by_admin(principal.id):
                for member_id in team.member_ids:
                    member = self._store.get_principal(member_id)
                    if member is not None:
                        reached.append(member)
        return reached

    @staticmethod
    def _check_edge(child: Principal, owner: Principal) -> None:
        if child.id == owner.id:
            raise DataIntegrityError(f"principal {child.id} owns itself")
        if owner.role.level != child.role.level - 1:
            raise DataIntegrityError(
                f"invalid owner edge: {owner.role.value} cannot own {child.role.value}"
            )

    def teams_of(self, principal_id: str) -> list[Team]:
        """Teams administered by an admin, or joined by a member."""
        principal = self.get(principal_id)
        if principal.role == Role.ADMIN:
            return self._store.list_teams_by_admin(principal.id)
        if principal.role == Role.MEMBER:
            return self._store.list_teams_for_member(principal.id)
        return []

    # ── Mutations ─────────────────────────────────────────

    def bootstrap_top_admin(
        self, username: str, full_name: str | None = None
    ) -> Principal:
        """Create a root principal. The only way a top_admin comes to exist."""
        principal = self._store.add_principal(
            Principal(
                id=str(uuid.uuid4()),
                role=Role.TOP_ADMIN,
                owner_id=None,
                username=_clean_username(username),
                full_name=full_name,
            )
        )
        logger.info(
            "top_admin bootstrapped",
            extra={"extra_fields": safe_log_context(principal_id=principal.id)},
        )
        return principal

    def create_principal(
        self,
        creator: Principal,
        role: Role,
        username: str,
        full_name: str | None = None,
    ) -> Principal:
        """Create a principal exactly one level below its creator.

        Raises:
            AuthorizationError: If creator is inactive or role is not one
                level below the creator's role.
            ConflictError: If the username is taken.
        """
        if not creator.is_active:
            raise AuthorizationError("inactive principal cannot create principals")
        if role == Role.TOP_ADMIN or role.level != creator.role.level + 1:
            raise AuthorizationError(
                f"{creator.role.value} cannot create {role.value}"
            )

        principal = self._store.add_principal(
            Principal(
                id=str(uuid.uuid4()),
                role=role,
                owner_id=creator.id,
                username=_clean_username(username),
                full_name=full_name,
            )
        )
        logger.info(
            "principal created",
            extra={
                "extra_fields": safe_log_context(
                    principal_id=principal.id,
                    role=role.value,
                    owner_id=creator.id,
                )
            },
        )
        return principal

    def deactivate_principal(self, actor: Principal, principal_id: str) -> Principal:
        """Soft-deactivate a principal. Principals are never hard-deleted.

        Allowed for a top_admin or any ancestor of the target.
        """
        target = self.get(principal_id)
        if not actor.is_active:
            raise AuthorizationError("inactive principal cannot deactivate others")
        if target.role == Role.TOP_ADMIN:
            raise AuthorizationError("top_admin cannot be deactivated")
        if actor.role != Role.TOP_ADMIN:
            ancestor_ids = {p.id for p in self.ancestors(target.id)}
            if actor.id not in ancestor_ids:
                raise AuthorizationError("only an ancestor may deactivate a principal")

        self._store.set_principal_active(target.id, False)
        logger.info(
            "principal deactivated",
            extra={
                "extra_fields": safe_log_context(
                    principal_id=target.id, actor_id=actor.id
                )
            },
        )
        return self.get(target.id)

    def create_team(self, admin: Principal, name: str) -> Team:
        if admin.role != Role.ADMIN or not admin.is_active:
            raise AuthorizationError("only an active admin can create teams")
        name = (name or "").strip()
        if not name:
            raise ValidationError("team name is required")
        return self._store.add_team(
            Team(id=str(uuid.uuid4()), admin_id=admin.id, name=name)
        )

    def add_team_member(self, admin: Principal, team_id: str, member_id: str) -> bool:
        """Add a member to one of the admin's teams.

        Returns False if the member was already on the team.

        Raises:
            AuthorizationError: If the team is not the admin's, or the member
                is not one of the admin's descendants.
        """
        team = self._store.get_team(team_id)
        if team is None:
            raise NotFoundError(f"team {team_id} not found")
        if team.admin_id != admin.id or not admin.is_active:
            raise AuthorizationError("team belongs to another admin")

        member = self.get(member_id)
        if member.role != Role.MEMBER:
            raise ValidationError("only members can join teams")
        if member.id not in {p.id for p in self.descendants(admin.id)}:
            raise AuthorizationError("member is outside the admin's hierarchy")

        added = self._store.add_team_member(team.id, member.id)
        if added:
            logger.info(
                "team member added",
                extra={
                    "extra_fields": safe_log_context(
                        team_id=team.id, member_id=member.id
                    )
                },
            )
        return added


def _clean_username(username: str) -> str:
    cleaned = (username or "").strip()
    if not cleaned:
        raise ValidationError("username is required")
    return cleaned
