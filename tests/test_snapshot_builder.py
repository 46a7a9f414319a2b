#!/usr/bin/env python3
"""
Unit tests for the snapshot builder.

Uses the in-memory directory from fakes.py so searches can be counted.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fakes import FakeDirectory

from ldap_reconcile import dn as dn_utils
from ldap_reconcile.config import ReconcileOptions
from ldap_reconcile.errors import ProtocolError
from ldap_reconcile.models import DesiredIdentity, EntityKind
from ldap_reconcile.snapshot import SnapshotBuilder, DirectorySnapshot


def user(row, key, container='OU=Staff,DC=x', **attributes):
    attributes.setdefault('sAMAccountName', key)
    return DesiredIdentity(row_index=row, kind=EntityKind.USER, container=container, key=key, attributes=attributes)


class TestSnapshotBuilder(unittest.TestCase):
    """Test cases for SnapshotBuilder."""

    def setUp(self):
        self.directory = FakeDirectory()
        self.directory.add_container('OU=Staff,DC=x')
        self.directory.add_container('OU=Groups,DC=x')
        self.directory.add_user('alice', 'OU=Staff,DC=x', member_of=['CN=Teachers,OU=Groups,DC=x'], title='Teacher')
        self.directory.add_group('Teachers', 'OU=Groups,DC=x')
        self.builder = SnapshotBuilder(self.directory, {'base_dn': 'DC=x'}, {'batch_size': 100, 'max_workers': 2})

    def test_build_loads_users_containers_and_groups(self):
        snapshot = self.builder.build([user(0, 'ALICE', title='Teacher'), user(1, 'bob')])

        self.assertTrue(snapshot.directory_available)
        alice = snapshot.get_user('alice')
        self.assertIsNotNone(alice)
        self.assertEqual(alice.attributes['title'], 'Teacher')
        self.assertEqual(alice.member_of, ['CN=Teachers,OU=Groups,DC=x'])
        self.assertEqual(alice.container, 'OU=Staff,DC=x')
        self.assertIsNone(snapshot.get_user('bob'))
        self.assertTrue(snapshot.has_container('ou=staff, dc=x'))
        self.assertTrue(snapshot.has_container('DC=x'))
        self.assertIsNotNone(snapshot.get_group('teachers'))

    def test_statistics(self):
        snapshot = self.builder.build([user(0, 'alice'), user(1, 'bob')])
        snapshot.get_user('alice')
        snapshot.get_user('bob')

        stats = snapshot.statistics
        self.assertEqual(stats.users_loaded, 1)
        self.assertEqual(stats.groups_loaded, 1)
        self.assertEqual(stats.containers_loaded, 3)
        self.assertEqual(stats.hits, 1)
        self.assertEqual(stats.misses, 1)
        self.assertEqual(stats.hit_ratio, 0.5)
        self.assertEqual(stats.to_dict()['round_trips'], stats.round_trips)

    def test_users_are_loaded_in_batches(self):
        identities = [user(i, f"user{i}") for i in range(250)]
        self.builder.build(identities)

        user_searches = [s for s in self.directory.searches if 'sAMAccountName=' in s[1]]
        self.assertEqual(len(user_searches), 3)
        # containers, three user batches, groups
        self.assertEqual(len(self.directory.searches), 5)

    def test_duplicate_keys_are_requested_once(self):
        self.builder.build([user(0, 'alice'), user(1, 'Alice')])
        user_searches = [s for s in self.directory.searches if 'sAMAccountName=' in s[1]]
        self.assertEqual(len(user_searches), 1)
        self.assertEqual(user_searches[0][1].lower().count('samaccountname=alice'), 1)

    def test_referenced_attributes_exclude_secrets(self):
        attributes = self.builder.referenced_attributes([
            user(0, 'alice', title='x', password='secret', unicodePwd='secret'),
            user(1, 'bob', TITLE='y', mail='b@x')
        ])
        lowered = [a.lower() for a in attributes]
        self.assertIn('title', lowered)
        self.assertIn('mail', lowered)
        self.assertIn('samaccountname', lowered)
        self.assertIn('memberof', lowered)
        self.assertNotIn('password', lowered)
        self.assertNotIn('unicodepwd', lowered)
        self.assertEqual(lowered.count('title'), 1)

    def test_groups_by_container(self):
        snapshot = self.builder.build([
            DesiredIdentity(0, EntityKind.USER, 'OU=Groups,DC=x', 'carol', {'sAMAccountName': 'carol'})
        ])
        self.assertEqual(snapshot.groups_in('OU=Groups, DC=x'), ['Teachers'])
        self.assertEqual(snapshot.groups_in('OU=Staff,DC=x'), [])

    def test_groups_by_container_with_searches(self):
        result = self.builder.load_groups_by_container(['OU=Groups,DC=x'])
        self.assertEqual(result, {'ou=groups,dc=x': ['Teachers']})

    def test_cleanup_scope_only_when_deleting(self):
        snapshot = self.builder.build([user(0, 'bob')], ReconcileOptions(default_container='DC=x'))
        self.assertEqual(len(snapshot.users_in_scope), 0)

        options = ReconcileOptions(default_container='DC=x', cleanup_root='OU=Staff,DC=x', delete_not_in_import=True)
        snapshot = self.builder.build([user(0, 'bob')], options)
        self.assertIn('alice', snapshot.users_in_scope)

    def test_key_mapping_is_kept(self):
        snapshot = self.builder.build([user(0, 'alice')], key_mapping={1: 'alice-2'})
        self.assertEqual(snapshot.key_mapping, {1: 'alice-2'})

    def test_unavailable_directory_gives_empty_snapshot(self):
        self.directory.available = False
        snapshot = self.builder.build([user(0, 'alice')])

        self.assertFalse(snapshot.directory_available)
        self.assertEqual(len(snapshot.users), 0)
        self.assertEqual(snapshot.containers, [])
        self.assertEqual(self.directory.searches, [])
        self.assertEqual(len(snapshot.warnings), 1)

    def test_search_errors_degrade_to_empty(self):
        client = Mock()
        client.is_available.return_value = True
        client.base_path = 'DC=x'
        client.search.side_effect = ProtocolError("Search failed: operationsError", 1)

        snapshot = SnapshotBuilder(client).build([user(0, 'alice')])

        self.assertTrue(snapshot.directory_available)
        self.assertEqual(len(snapshot.users), 0)
        self.assertTrue(any('Could not load users' in w for w in snapshot.warnings))
        self.assertEqual(snapshot.containers, ['DC=x'])


class TestDirectorySnapshot(unittest.TestCase):

    def test_has_users_under(self):
        snapshot = DirectorySnapshot('DC=x')
        builder = SnapshotBuilder(Mock())
        snapshot.users_in_scope['alice'] = builder._to_entry(
            Mock(dn='CN=alice,OU=Staff,DC=x', attributes={'sAMAccountName': ['alice']})
        )
        self.assertTrue(snapshot.has_users_under('OU=Staff,DC=x'))
        self.assertTrue(snapshot.has_users_under('DC=x'))
        self.assertFalse(snapshot.has_users_under('OU=Old,DC=x'))

    def test_occupied_containers_are_indexed_once(self):
        snapshot = DirectorySnapshot('DC=x')
        builder = SnapshotBuilder(Mock())
        for i in range(50):
            snapshot.users_in_scope[f'user{i}'] = builder._to_entry(
                Mock(dn=f'CN=user{i},OU=2024,OU=Classes,DC=x', attributes={'sAMAccountName': [f'user{i}']})
            )

        with patch('ldap_reconcile.snapshot.dn_utils.ancestors', wraps=dn_utils.ancestors) as ancestors:
            for container in ('OU=2024,OU=Classes,DC=x', 'ou=classes, dc=x', 'OU=2023,OU=Classes,DC=x',
                              'OU=Staff,DC=x', 'DC=x'):
                snapshot.has_users_under(container)
            self.assertEqual(ancestors.call_count, 1)

        self.assertTrue(snapshot.has_users_under('ou=classes, dc=x'))
        self.assertFalse(snapshot.has_users_under('OU=2023,OU=Classes,DC=x'))

        snapshot.users['late'] = builder._to_entry(
            Mock(dn='CN=late,OU=2023,OU=Classes,DC=x', attributes={'sAMAccountName': ['late']})
        )
        self.assertTrue(snapshot.has_users_under('OU=2023,OU=Classes,DC=x'))


if __name__ == '__main__':
    unittest.main()
