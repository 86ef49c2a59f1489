"""Tests for the ownership hierarchy."""

from dataclasses import replace

import pytest

from wharchive.domain.errors import (
    AuthorizationError,
    ConflictError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from wharchive.domain.models import Principal, Role


class TestCreatePrincipal:
    def test_each_level_creates_the_next(self, org):
        assert org.admin_a.role == Role.ADMIN
        assert org.admin_a.owner_id == org.top.id
        assert org.member_1.role == Role.MEMBER
        assert org.member_1.owner_id == org.admin_a.id

    def test_top_admin_cannot_create_member_directly(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.create_principal(org.top, Role.MEMBER, "skip-level")

    def test_admin_cannot_create_admin(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.create_principal(org.admin_a, Role.ADMIN, "peer")

    def test_member_cannot_create(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.create_principal(org.member_1, Role.MEMBER, "sub")

    def test_nobody_creates_top_admin(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.create_principal(org.top, Role.TOP_ADMIN, "root-2")

    def test_duplicate_username_conflicts(self, engine, org):
        with pytest.raises(ConflictError):
            engine.hierarchy.create_principal(org.admin_a, Role.MEMBER, "member-1")

    def test_blank_username_rejected(self, engine, org):
        with pytest.raises(ValidationError):
            engine.hierarchy.create_principal(org.admin_a, Role.MEMBER, "   ")

    def test_inactive_creator_rejected(self, engine, org):
        engine.hierarchy.deactivate_principal(org.top, org.admin_b.id)
        inactive = engine.hierarchy.get(org.admin_b.id)
        with pytest.raises(AuthorizationError):
            engine.hierarchy.create_principal(inactive, Role.MEMBER, "late")


class TestTraversal:
    def test_ancestors_of_member(self, engine, org):
        chain = engine.hierarchy.ancestors(org.member_1.id)
        assert [p.id for p in chain] == [org.admin_a.id, org.top.id]

    def test_top_admin_has_no_ancestors(self, engine, org):
        assert engine.hierarchy.ancestors(org.top.id) == []

    def test_descendants_of_top_admin_cover_two_levels(self, engine, org):
        ids = {p.id for p in engine.hierarchy.descendants(org.top.id)}
        assert ids == {
            org.admin_a.id,
            org.admin_b.id,
            org.member_1.id,
            org.member_2.id,
            org.member_b.id,
        }

    def test_descendants_of_admin_stay_in_subtree(self, engine, org):
        ids = {p.id for p in engine.hierarchy.descendants(org.admin_a.id)}
        assert ids == {org.member_1.id, org.member_2.id}

    def test_member_has_no_descendants(self, engine, org):
        assert engine.hierarchy.descendants(org.member_1.id) == set()

    def test_unknown_principal(self, engine):
        with pytest.raises(NotFoundError):
            engine.hierarchy.ancestors("missing")

    def test_teams_of(self, engine, org):
        assert [t.id for t in engine.hierarchy.teams_of(org.admin_a.id)] == [org.team.id]
        assert [t.id for t in engine.hierarchy.teams_of(org.member_2.id)] == [org.team.id]
        assert engine.hierarchy.teams_of(org.member_1.id) == []
        assert engine.hierarchy.teams_of(org.top.id) == []


class TestIntegrity:
    def test_owner_cycle_detected(self, engine, store):
        a = Principal(id="a", role=Role.ADMIN, owner_id="b", username="a")
        b = Principal(id="b", role=Role.ADMIN, owner_id="a", username="b")
        store.add_principal(a)
        store.add_principal(b)
        with pytest.raises(DataIntegrityError):
            engine.hierarchy.ancestors("a")

    def test_self_owner_detected(self, engine, store):
        store.add_principal(Principal(id="s", role=Role.ADMIN, owner_id="s", username="s"))
        with pytest.raises(DataIntegrityError):
            engine.hierarchy.ancestors("s")

    def test_skip_level_edge_detected(self, engine, store, org):
        store.add_principal(
            Principal(id="odd", role=Role.MEMBER, owner_id=org.top.id, username="odd")
        )
        with pytest.raises(DataIntegrityError):
            engine.hierarchy.ancestors("odd")

    def test_rootless_non_top_detected(self, engine, store):
        store.add_principal(Principal(id="orphan", role=Role.ADMIN, owner_id=None, username="o"))
        with pytest.raises(DataIntegrityError):
            engine.hierarchy.ancestors("orphan")


class TestDeactivation:
    def test_ancestor_deactivates(self, engine, org):
        updated = engine.hierarchy.deactivate_principal(org.admin_a, org.member_1.id)
        assert updated.is_active is False
        # soft delete: still resolvable
        assert engine.hierarchy.get(org.member_1.id).id == org.member_1.id

    def test_top_admin_deactivates_anyone_below(self, engine, org):
        assert engine.hierarchy.deactivate_principal(org.top, org.member_b.id).is_active is False

    def test_sibling_admin_cannot_deactivate(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.deactivate_principal(org.admin_b, org.member_1.id)

    def test_top_admin_cannot_be_deactivated(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.deactivate_principal(org.top, org.top.id)

    def test_inactive_actor_rejected(self, engine, org):
        inactive = replace(org.admin_a, is_active=False)
        with pytest.raises(AuthorizationError):
            engine.hierarchy.deactivate_principal(inactive, org.member_1.id)


class TestTeams:
    def test_admin_adds_own_member(self, engine, org):
        assert engine.hierarchy.add_team_member(org.admin_a, org.team.id, org.member_1.id) is True
        team = engine.store.get_team(org.team.id)
        assert team.member_ids == frozenset({org.member_1.id, org.member_2.id})

    def test_re_adding_is_a_no_op(self, engine, org):
        assert engine.hierarchy.add_team_member(org.admin_a, org.team.id, org.member_2.id) is False

    def test_foreign_member_rejected(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.add_team_member(org.admin_a, org.team.id, org.member_b.id)

    def test_other_admins_team_rejected(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.add_team_member(org.admin_b, org.team.id, org.member_b.id)

    def test_only_admins_create_teams(self, engine, org):
        with pytest.raises(AuthorizationError):
            engine.hierarchy.create_team(org.member_1, "rogue")
