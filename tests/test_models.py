#!/usr/bin/env python3
"""
Unit tests for the reconciliation data model.
"""

import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.errors import ErrorKind
from ldap_reconcile.models import (
    ActionKind,
    ActionOutcome,
    EntityKind,
    ExecutionResult,
    OutcomeStatus,
    Plan,
    PlannedAction,
    RunStatus,
    desired_from_rows,
)


class TestActionKind(unittest.TestCase):

    def test_from_name_accepts_enum_and_display_names(self):
        self.assertEqual(ActionKind.from_name('DeleteOU'), ActionKind.DELETE_OU)
        self.assertEqual(ActionKind.from_name('delete_ou'), ActionKind.DELETE_OU)
        self.assertEqual(ActionKind.from_name(' createuser '), ActionKind.CREATE_USER)

    def test_from_name_rejects_unknown(self):
        with self.assertRaises(ValueError):
            ActionKind.from_name('DropTable')

    def test_tiers_put_deletes_last(self):
        non_deletes = [kind for kind in ActionKind if not kind.is_delete]
        for delete in (ActionKind.DELETE_USER, ActionKind.DELETE_GROUP, ActionKind.DELETE_OU):
            self.assertTrue(all(kind.tier < delete.tier for kind in non_deletes))
        self.assertLess(ActionKind.CREATE_OU.tier, ActionKind.CREATE_GROUP.tier)
        self.assertLess(ActionKind.CREATE_GROUP.tier, ActionKind.ADD_USER_TO_GROUP.tier)


class TestDesiredFromRows(unittest.TestCase):

    def test_key_from_key_attribute(self):
        identities = desired_from_rows([
            {'kind': 'user', 'container': 'OU=Staff,DC=x',
             'attributes': {'sAMAccountName': 'alice', 'title': 'Teacher'}, 'groups': ['Staff']},
            {'kind': 'GROUP', 'container': 'OU=Groups,DC=x', 'key': 'Staff', 'attributes': {}},
        ])
        self.assertEqual(identities[0].key, 'alice')
        self.assertEqual(identities[0].groups, ('Staff',))
        self.assertEqual(identities[0].row_index, 0)
        self.assertEqual(identities[1].kind, EntityKind.GROUP)
        self.assertEqual(identities[1].row_index, 1)

    def test_artifacts(self):
        identities = desired_from_rows([{
            'container': 'OU=Staff,DC=x',
            'attributes': {'sAMAccountName': 'bob'},
            'artifacts': [{'type': 'home_folder', 'path': '\\\\files\\bob'}]
        }])
        artifact = identities[0].artifacts[0]
        self.assertEqual(artifact.artifact_type, 'home_folder')
        self.assertEqual(artifact.name, 'bob')
        self.assertEqual(artifact.options, {'path': '\\\\files\\bob'})

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            desired_from_rows([{'kind': 'printer', 'attributes': {}}])


class TestPlan(unittest.TestCase):

    def setUp(self):
        self.plan = Plan(actions=[
            PlannedAction(ActionKind.CREATE_OU, 'OU=A,DC=x', 'A', ordinal=1),
            PlannedAction(ActionKind.CREATE_USER, 'OU=A,DC=x', 'alice', ordinal=2,
                          payload={'sAMAccountName': 'alice', 'unicodePwd': 'secret', 'password': 'secret'}),
            PlannedAction(ActionKind.CREATE_USER, 'OU=A,DC=x', 'bob', ordinal=3),
        ])

    def test_deselect(self):
        self.plan.deselect(2)
        self.assertEqual([a.ordinal for a in self.plan.selected_actions()], [1, 3])

    def test_summary(self):
        self.assertEqual(self.plan.summary(), {'CreateOU': 1, 'CreateUser': 2})

    def test_to_dict_redacts_secrets(self):
        payload = self.plan.to_dict()['actions'][1]['payload']
        self.assertEqual(payload['unicodePwd'], '****')
        self.assertEqual(payload['password'], '****')
        self.assertEqual(payload['sAMAccountName'], 'alice')

    def test_error_only_plan_is_empty(self):
        plan = Plan(actions=[PlannedAction(ActionKind.ERROR, '', 'x', selected=False)])
        self.assertTrue(plan.is_empty)
        self.assertFalse(self.plan.is_empty)


class TestExecutionResult(unittest.TestCase):

    def _make_outcome(self, status, kind=ActionKind.CREATE_USER, message='', warnings=None):
        return ActionOutcome(1, kind, 'alice', status, message, warnings=list(warnings or []))

    def test_nothing_to_do(self):
        self.assertEqual(ExecutionResult().status, RunStatus.NOTHING_TO_DO)

    def test_counts_and_status(self):
        result = ExecutionResult(total=3)
        result.record(self._make_outcome(OutcomeStatus.SUCCEEDED))
        result.record(self._make_outcome(OutcomeStatus.SUCCEEDED, ActionKind.UPDATE_USER))
        self.assertEqual(result.status, RunStatus.SUCCEEDED)
        result.record(self._make_outcome(OutcomeStatus.SKIPPED))
        self.assertEqual(result.snapshot_counts(), {
            'total': 3, 'processed': 2, 'succeeded': 2, 'failed': 0, 'skipped': 1,
            'by_kind': {'CreateUser': 1, 'UpdateUser': 1}
        })

    def test_warnings_and_failures(self):
        result = ExecutionResult(total=2)
        result.record(self._make_outcome(OutcomeStatus.SUCCEEDED, warnings=['hook failed']))
        self.assertEqual(result.status, RunStatus.SUCCEEDED_WITH_WARNINGS)
        result.record(self._make_outcome(OutcomeStatus.FAILED, message='constraint'))
        self.assertEqual(result.status, RunStatus.COMPLETED_WITH_ERRORS)
        self.assertEqual(result.errors, ['constraint'])

    def test_abort_keeps_first_message(self):
        result = ExecutionResult()
        result.abort('Directory unavailable: first')
        result.abort('Directory unavailable: second')
        self.assertEqual(result.fatal_error, 'Directory unavailable: first')
        self.assertEqual(result.errors, ['Directory unavailable: first'])
        self.assertEqual(result.status, RunStatus.ABORTED)

    def test_mark_aborted_waits_for_counter_lock(self):
        result = ExecutionResult(total=1)
        result.record(self._make_outcome(OutcomeStatus.FAILED, message='constraint'))

        with result._lock:
            marker = threading.Thread(target=result.mark_aborted)
            marker.start()
            marker.join(0.05)
            self.assertFalse(result.aborted)
        marker.join()

        self.assertTrue(result.aborted)
        self.assertIsNone(result.fatal_error)
        self.assertEqual(result.errors, ['constraint'])
        self.assertEqual(result.status, RunStatus.ABORTED)

    def test_fatal(self):
        result = ExecutionResult.fatal('Directory unavailable')
        self.assertTrue(result.aborted)
        self.assertEqual(result.to_dict()['status'], 'aborted')

    def test_concurrent_record(self):
        result = ExecutionResult(total=400)

        def worker():
            for _ in range(100):
                result.record(self._make_outcome(OutcomeStatus.SUCCEEDED))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(result.succeeded, 400)
        self.assertEqual(result.counts['CreateUser'], 400)

    def test_outcome_error_kind_in_result(self):
        outcome = ActionOutcome(1, ActionKind.DELETE_OU, 'Old', OutcomeStatus.FAILED, 'not empty',
                                ErrorKind.CONSTRAINT_VIOLATION)
        self.assertFalse(outcome.succeeded)


if __name__ == '__main__':
    unittest.main()
