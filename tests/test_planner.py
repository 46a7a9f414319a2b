#!/usr/bin/env python3
"""
Unit tests for the action planner.

Snapshots are built from the in-memory directory in fakes.py, the same way
the engine builds them, so the tests exercise planning against realistic
snapshot contents.
"""

import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import FakeDirectory

from ldap_reconcile.config import ReconcileOptions
from ldap_reconcile.models import ActionKind, ArtifactRequest, DesiredIdentity, EntityKind
from ldap_reconcile.planner import ActionPlanner, resolve_key_collisions, common_name
from ldap_reconcile.snapshot import SnapshotBuilder

CREATES = (ActionKind.CREATE_OU, ActionKind.CREATE_GROUP, ActionKind.CREATE_USER)
DELETES = (ActionKind.DELETE_USER, ActionKind.DELETE_GROUP, ActionKind.DELETE_OU)


def user(row, key, container='OU=Staff,DC=x', groups=(), artifacts=(), **attributes):
    attributes.setdefault('sAMAccountName', key)
    return DesiredIdentity(row_index=row, kind=EntityKind.USER, container=container, key=key,
                           attributes=attributes, groups=tuple(groups), artifacts=tuple(artifacts))


def group(row, key, container='OU=Groups,DC=x', groups=()):
    return DesiredIdentity(row_index=row, kind=EntityKind.GROUP, container=container, key=key,
                           attributes={'sAMAccountName': key}, groups=tuple(groups))


def ou(row, name, container='DC=x', **attributes):
    return DesiredIdentity(row_index=row, kind=EntityKind.OU, container=container, key=name, attributes=attributes)


def plan_for(directory, identities, **options):
    options.setdefault('default_container', 'DC=x')
    options = ReconcileOptions(**options)
    planner = ActionPlanner(options)
    resolved, mapping, _ = planner.resolve_keys(identities)
    snapshot = SnapshotBuilder(directory).build(resolved, options, key_mapping=mapping)
    return planner.plan(identities, snapshot)


def kinds(plan):
    return [action.kind for action in plan.actions]


class TestEndToEndScenarios(unittest.TestCase):
    """Plans for the reference scenarios."""

    def test_empty_directory_with_missing_container(self):
        directory = FakeDirectory()
        plan = plan_for(directory, [user(0, 'a', 'OU=Classes,DC=x'), user(1, 'b', 'OU=Classes,DC=x')])

        self.assertEqual(kinds(plan), [ActionKind.CREATE_OU, ActionKind.CREATE_USER, ActionKind.CREATE_USER])
        self.assertEqual(plan.actions[0].target_dn, 'OU=Classes,DC=x')
        self.assertEqual([a.target_key for a in plan.actions[1:]], ['a', 'b'])
        self.assertEqual(plan.actions[1].target_dn, 'CN=a,OU=Classes,DC=x')
        self.assertEqual([a.ordinal for a in plan.actions], [1, 2, 3])

    def test_changed_attribute_gives_single_update(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')
        directory.add_user('alice', 'OU=Staff,DC=x', title='Teacher')

        plan = plan_for(directory, [user(0, 'alice', title='Professor')])

        self.assertEqual(kinds(plan), [ActionKind.UPDATE_USER])
        self.assertEqual(plan.actions[0].target_key, 'alice')
        self.assertEqual(plan.actions[0].payload, {'title': 'Professor'})
        self.assertEqual(plan.actions[0].target_dn, 'CN=alice,OU=Staff,DC=x')

    def test_colliding_keys_get_suffixes_by_row(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')

        plan = plan_for(directory, [user(0, 'jean.dupont'), user(1, 'jean.dupont')])

        creates = plan.of_kind(ActionKind.CREATE_USER)
        self.assertEqual([(a.row_index, a.target_key) for a in creates],
                         [(0, 'jean.dupont'), (1, 'jean.dupont-2')])
        self.assertEqual(creates[1].payload['sAMAccountName'], 'jean.dupont-2')
        self.assertEqual(plan.key_mapping, {1: 'jean.dupont-2'})

    def test_empty_container_deleted_last(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')
        directory.add_container('OU=Old,DC=x')
        directory.add_user('alice', 'OU=Staff,DC=x')

        plan = plan_for(directory, [user(0, 'alice'), user(1, 'bob')], delete_not_in_import=True)

        self.assertEqual(plan.actions[-1].kind, ActionKind.DELETE_OU)
        self.assertEqual(plan.actions[-1].target_dn, 'OU=Old,DC=x')
        self.assertEqual(len(plan.of_kind(ActionKind.DELETE_OU)), 1)

    def test_built_in_accounts_are_never_deleted(self):
        directory = FakeDirectory()
        directory.add_container('CN=Users,DC=x')
        directory.add_container('OU=Staff,DC=x')
        directory.add_user('krbtgt', 'CN=Users,DC=x', isCriticalSystemObject='TRUE')
        directory.add_user('Administrator', 'CN=Users,DC=x', isCriticalSystemObject='TRUE')
        directory.add_group('Domain Admins', 'CN=Users,DC=x', isCriticalSystemObject='TRUE')
        directory.add_user('stale', 'OU=Staff,DC=x')
        directory.add_group('Unused', 'OU=Staff,DC=x')

        plan = plan_for(directory, [user(0, 'alice')], delete_not_in_import=True)

        deleted = [a.target_key for a in plan.actions if a.kind in DELETES]
        self.assertEqual(deleted, ['stale', 'Unused'])


class TestPlanProperties(unittest.TestCase):
    """Ordering and minimality guarantees of the plan."""

    def test_one_create_per_identity_on_empty_directory(self):
        identities = [
            ou(0, 'Dept'),
            group(1, 'Staff', container='OU=Dept,DC=x'),
            user(2, 'bob', container='OU=Dept,DC=x'),
            user(3, 'carol', container='OU=Dept,DC=x'),
        ]
        plan = plan_for(FakeDirectory(), identities)

        creates = [a for a in plan.actions if a.kind in CREATES]
        self.assertEqual(len(creates), len(identities))
        self.assertEqual(sorted(a.target_key for a in creates), ['Dept', 'Staff', 'bob', 'carol'])
        for kind in (ActionKind.UPDATE_USER, ActionKind.MOVE_USER) + DELETES:
            self.assertEqual(plan.of_kind(kind), [])

    def test_identical_state_plans_nothing(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')
        directory.add_user('alice', 'OU=Staff,DC=x', title='Teacher', mail='alice@x.org')

        identities = [user(0, 'alice', title='teacher ', mail='ALICE@x.org')]
        first = plan_for(directory, identities)
        second = plan_for(directory, identities)

        self.assertEqual(first.actions, [])
        self.assertEqual(second.actions, [])

    def test_containers_precede_their_contents(self):
        plan = plan_for(FakeDirectory(), [
            user(0, 'deep', 'OU=C,OU=B,OU=A,DC=x'),
            user(1, 'shallow', 'OU=A,DC=x'),
        ])

        ous = plan.of_kind(ActionKind.CREATE_OU)
        self.assertEqual([a.target_dn for a in ous], ['OU=A,DC=x', 'OU=B,OU=A,DC=x', 'OU=C,OU=B,OU=A,DC=x'])
        created_at = {a.target_dn.lower(): a.ordinal for a in ous}
        for action in plan.of_kind(ActionKind.CREATE_USER):
            self.assertLess(created_at[action.target_path.lower()], action.ordinal)

    def test_deletes_follow_everything_else(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')
        directory.add_container('OU=Groups,DC=x')
        directory.add_user('alice', 'OU=Staff,DC=x', title='Teacher')
        directory.add_user('stale', 'OU=Staff,DC=x')
        directory.add_group('Unused', 'OU=Groups,DC=x')

        plan = plan_for(directory, [
            user(0, 'alice', title='Professor'),
            user(1, 'bob', 'OU=New,DC=x'),
        ], delete_not_in_import=True)

        last_non_delete = max(a.ordinal for a in plan.actions if a.kind not in DELETES)
        first_delete = min(a.ordinal for a in plan.actions if a.kind in DELETES)
        self.assertLess(last_non_delete, first_delete)
        self.assertEqual([a.target_key for a in plan.of_kind(ActionKind.DELETE_USER)], ['stale'])
        self.assertEqual([a.target_key for a in plan.of_kind(ActionKind.DELETE_GROUP)], ['Unused'])
        self.assertEqual([a.target_dn for a in plan.of_kind(ActionKind.DELETE_OU)], ['OU=Groups,DC=x'])

    def test_collision_resolution_is_stable(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')
        identities = [user(1, 'jd'), user(0, 'jd')]

        for _ in range(3):
            plan = plan_for(directory, identities)
            keys = {a.row_index: a.target_key for a in plan.of_kind(ActionKind.CREATE_USER)}
            self.assertEqual(keys, {0: 'jd', 1: 'jd-2'})


class TestKeyCollisions(unittest.TestCase):

    def test_suffix_skips_keys_already_used(self):
        identities = [user(0, 'jd'), user(1, 'JD'), user(2, 'jd-2')]
        resolved, mapping, warnings = resolve_key_collisions(identities)

        self.assertEqual([i.key for i in resolved], ['jd', 'JD-3', 'jd-2'])
        self.assertEqual(mapping, {1: 'JD-3'})
        self.assertEqual(warnings, [])

    def test_max_length_shortens_base(self):
        resolved, mapping, _ = resolve_key_collisions([user(0, 'abcdefgh'), user(1, 'abcdefgh')], max_length=8)
        self.assertEqual(mapping, {1: 'abcdef-2'})

    def test_organizational_units_are_not_renamed(self):
        resolved, mapping, _ = resolve_key_collisions([ou(0, 'Staff', 'OU=A,DC=x'), ou(1, 'Staff', 'OU=B,DC=x')])
        self.assertEqual(mapping, {})
        self.assertEqual(len(resolved), 2)

    @patch('ldap_reconcile.planner.MAX_SUFFIX', 2)
    def test_unresolved_collision_becomes_error_action(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')

        plan = plan_for(directory, [user(0, 'k'), user(1, 'k'), user(2, 'k')])

        errors = plan.of_kind(ActionKind.ERROR)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].row_index, 2)
        self.assertFalse(errors[0].selected)
        self.assertEqual([a.target_key for a in plan.of_kind(ActionKind.CREATE_USER)], ['k', 'k-2'])
        self.assertTrue(any('No free suffix' in w for w in plan.warnings))


class TestPlannerOptions(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.directory.add_container('OU=Staff,DC=x')
        self.directory.add_container('OU=Old,DC=x')
        self.directory.add_container('OU=Groups,DC=x')

    def test_missing_container_falls_back_to_default(self):
        plan = plan_for(self.directory, [user(0, 'bob', 'OU=Missing,DC=x')],
                        create_missing_containers=False, default_container='OU=Staff,DC=x')

        self.assertEqual(kinds(plan), [ActionKind.CREATE_USER])
        self.assertEqual(plan.actions[0].target_path, 'OU=Staff,DC=x')
        self.assertTrue(any('using OU=Staff,DC=x' in w for w in plan.warnings))

    def test_missing_container_without_fallback_is_an_error(self):
        plan = plan_for(self.directory, [user(0, 'bob', 'OU=Missing,DC=x')],
                        create_missing_containers=False, default_container='OU=Nowhere,DC=x')

        self.assertEqual(kinds(plan), [ActionKind.ERROR])
        self.assertIn('does not exist', plan.actions[0].rationale)

    def test_disabled_action_kinds_are_not_planned(self):
        self.directory.add_user('alice', 'OU=Staff,DC=x', title='Teacher')
        plan = plan_for(self.directory, [user(0, 'alice', title='Professor'), user(1, 'bob')],
                        disabled_actions=frozenset({ActionKind.CREATE_USER}))

        self.assertEqual(kinds(plan), [ActionKind.UPDATE_USER])

    def test_overwrite_disabled_skips_updates(self):
        self.directory.add_user('alice', 'OU=Staff,DC=x', title='Teacher')
        plan = plan_for(self.directory, [user(0, 'alice', title='Professor')], overwrite_existing=False)
        self.assertEqual(plan.actions, [])

    def test_move_only_when_allowed(self):
        self.directory.add_user('alice', 'OU=Old,DC=x')

        self.assertEqual(plan_for(self.directory, [user(0, 'alice')]).actions, [])

        plan = plan_for(self.directory, [user(0, 'alice')], allow_move=True)
        self.assertEqual(kinds(plan), [ActionKind.MOVE_USER])
        move = plan.actions[0]
        self.assertEqual(move.target_dn, 'CN=alice,OU=Old,DC=x')
        self.assertEqual(move.target_path, 'OU=Staff,DC=x')
        self.assertEqual(move.payload, {'from': 'OU=Old,DC=x'})

    def test_invalid_attribute_name_is_rejected_before_planning(self):
        plan = plan_for(self.directory, [user(0, 'bob', **{'bad name': 'x'})])

        self.assertEqual(kinds(plan), [ActionKind.ERROR])
        self.assertFalse(plan.actions[0].selected)
        self.assertTrue(plan.warnings)

    def test_missing_key_is_rejected(self):
        identity = DesiredIdentity(0, EntityKind.USER, 'OU=Staff,DC=x', '', {})
        plan = plan_for(self.directory, [identity])
        self.assertEqual(kinds(plan), [ActionKind.ERROR])

    def test_default_password_added_to_new_users(self):
        plan = plan_for(self.directory, [user(0, 'bob'), user(1, 'carol', unicodePwd='Own1!')],
                        default_password='Welcome1!')

        bob, carol = plan.of_kind(ActionKind.CREATE_USER)
        self.assertEqual(bob.payload['password'], 'Welcome1!')
        self.assertNotIn('password', carol.payload)
        self.assertEqual(plan.to_dict()['actions'][0]['payload']['password'], '****')

    def test_new_user_cn_from_names(self):
        plan = plan_for(self.directory, [user(0, 'jdoe', givenName='Jane', sn='Doe')])
        self.assertEqual(plan.actions[0].target_dn, 'CN=Jane Doe,OU=Staff,DC=x')
        self.assertEqual(plan.actions[0].payload['cn'], 'Jane Doe')


class TestGroupPlanning(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.directory.add_container('OU=Staff,DC=x')
        self.directory.add_container('OU=Groups,DC=x')

    def test_groups_created_before_members_added(self):
        plan = plan_for(self.directory, [user(0, 'bob', groups=['Teachers']), group(1, 'Teachers')])

        self.assertEqual(kinds(plan), [ActionKind.CREATE_GROUP, ActionKind.CREATE_USER, ActionKind.ADD_USER_TO_GROUP])
        membership = plan.actions[2]
        self.assertEqual(membership.target_dn, 'CN=bob,OU=Staff,DC=x')
        self.assertEqual(membership.payload['group_dn'], 'CN=Teachers,OU=Groups,DC=x')

    def test_existing_membership_not_planned(self):
        group_dn = self.directory.add_group('Teachers', 'OU=Groups,DC=x')
        self.directory.add_user('alice', 'OU=Staff,DC=x', member_of=[group_dn])

        plan = plan_for(self.directory, [user(0, 'alice', groups=['teachers'])])
        self.assertEqual(plan.actions, [])

    def test_unknown_group_is_a_warning(self):
        plan = plan_for(self.directory, [user(0, 'bob', groups=['Ghosts'])])
        self.assertEqual(kinds(plan), [ActionKind.CREATE_USER])
        self.assertTrue(any("unknown group 'Ghosts'" in w for w in plan.warnings))

    def test_nesting_follows_depth_not_declaration_order(self):
        plan = plan_for(self.directory, [
            group(0, 'C', groups=['B']),
            group(1, 'B', groups=['A']),
            group(2, 'A'),
        ])

        self.assertEqual([a.target_key for a in plan.of_kind(ActionKind.CREATE_GROUP)], ['A', 'B', 'C'])
        nesting = plan.of_kind(ActionKind.ADD_GROUP_TO_GROUP)
        self.assertEqual([(a.target_key, a.payload['group_key']) for a in nesting], [('B', 'A'), ('C', 'B')])
        self.assertLess(nesting[0].level, nesting[1].level)
        last_create = max(a.ordinal for a in plan.of_kind(ActionKind.CREATE_GROUP))
        self.assertTrue(all(a.ordinal > last_create for a in nesting))

    def test_nesting_cycle_is_reported(self):
        plan = plan_for(self.directory, [group(0, 'A', groups=['B']), group(1, 'B', groups=['A'])])

        self.assertEqual(len(plan.of_kind(ActionKind.CREATE_GROUP)), 2)
        self.assertEqual(plan.of_kind(ActionKind.ADD_GROUP_TO_GROUP), [])
        self.assertTrue(any('nesting cycle' in w for w in plan.warnings))

    def test_auto_membership_from_container_groups(self):
        self.directory.add_container('OU=2024,DC=x')
        self.directory.add_group('Class2024', 'OU=2024,DC=x')

        plan = plan_for(self.directory, [user(0, 'bob', 'OU=2024,DC=x')], auto_group_membership=True)

        memberships = plan.of_kind(ActionKind.ADD_USER_TO_GROUP)
        self.assertEqual([a.payload['group_key'] for a in memberships], ['Class2024'])


class TestArtifactPlanning(unittest.TestCase):

    def test_artifacts_only_for_new_identities(self):
        directory = FakeDirectory()
        directory.add_container('OU=Staff,DC=x')
        directory.add_user('alice', 'OU=Staff,DC=x')
        folder = ArtifactRequest('home_folder', 'shared')

        plan = plan_for(directory, [
            user(0, 'alice', artifacts=[ArtifactRequest('home_folder', 'alice')]),
            user(1, 'bob', artifacts=[ArtifactRequest('home_folder', 'bob'), folder]),
            user(2, 'carol', artifacts=[folder]),
        ])

        artifacts = plan.of_kind(ActionKind.CREATE_DEPENDENT_ARTIFACT)
        self.assertEqual([(a.target_key, a.payload['name']) for a in artifacts],
                         [('bob', 'bob'), ('bob', 'shared')])
        self.assertEqual(plan.actions[-1].kind, ActionKind.CREATE_DEPENDENT_ARTIFACT)


class TestCommonName(unittest.TestCase):

    def test_preference_order(self):
        self.assertEqual(common_name(user(0, 'k', cn='Explicit', displayName='Shown')), 'Explicit')
        self.assertEqual(common_name(user(0, 'k', displayName='Shown', givenName='A', sn='B')), 'Shown')
        self.assertEqual(common_name(user(0, 'k', givenName='A', sn='B')), 'A B')
        self.assertEqual(common_name(user(0, 'k')), 'k')


if __name__ == '__main__':
    unittest.main()
