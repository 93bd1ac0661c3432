"""
Unit tests for restoring plans from version snapshots.
"""

import unittest
from unittest.mock import Mock

from business_logic.distribution_builder import DistributionTreeBuilder
from business_logic.snapshot_replay import SnapshotReplayer, order_parents_first
from data.store import InMemoryPlanStore, InMemoryVersionRecorder, StoreError, row_to_line
from models.data_models import PlanVersion


PLAN_ID = 'plan-1'


class TestOrderParentsFirst(unittest.TestCase):
    """Test cases for ordering snapshot distribution rows."""

    def test_children_listed_before_parents_are_reordered(self):
        rows = [
            {'id': 'grandchild', 'parent_distribution_id': 'child'},
            {'id': 'child', 'parent_distribution_id': 'root'},
            {'id': 'root', 'parent_distribution_id': None},
            {'id': 'root2', 'parent_distribution_id': None},
        ]
        ordered = [row['id'] for row in order_parents_first(rows)]
        self.assertEqual(ordered, ['root', 'root2', 'child', 'grandchild'])

    def test_unknown_parent_treated_as_root(self):
        rows = [{'id': 'a', 'parent_distribution_id': 'missing'}]
        self.assertEqual(order_parents_first(rows), rows)


class TestSnapshotReplayer(unittest.TestCase):
    """Test cases for SnapshotReplayer."""

    def setUp(self):
        self.store = InMemoryPlanStore()
        self.store.add_plan({
            'id': PLAN_ID,
            'name': 'Original',
            'total_budget': 1000.0,
            'hierarchy_order': ['subdivision', 'moment'],
        })
        self.store.insert_lines([
            {'id': 'l1', 'media_plan_id': PLAN_ID, 'budget': 600, 'subdivision_id': 's1', 'moment_id': 'm1'},
            {'id': 'l2', 'media_plan_id': PLAN_ID, 'budget': 400, 'subdivision_id': 's2', 'moment_id': 'm1'},
        ])
        self.store.insert_monthly_budgets([
            {'id': 'mb1', 'media_line_id': 'l1', 'month_date': '2026-03-01', 'amount': 600},
        ])
        lines = [row_to_line(row) for row in self.store.list_lines(PLAN_ID)]
        DistributionTreeBuilder(self.store).build(PLAN_ID, ['subdivision', 'moment'], lines, 1000.0)

        self.versions = InMemoryVersionRecorder(self.store)
        self.saved = self.versions.record(PLAN_ID, 'u1', 'Saved')
        self.saved_distribution_ids = {r['id'] for r in self.store.list_distributions(PLAN_ID)}
        self.replayer = SnapshotReplayer(self.store, self.versions)

    def _mutate_plan(self):
        self.store.update_plan(PLAN_ID, {'name': 'Changed', 'total_budget': 5000.0, 'hierarchy_order': ['moment']})
        self.store.delete_lines(PLAN_ID)
        self.store.insert_lines([{'id': 'l9', 'media_plan_id': PLAN_ID, 'budget': 5000, 'moment_id': 'm2'}])
        lines = [row_to_line(row) for row in self.store.list_lines(PLAN_ID)]
        DistributionTreeBuilder(self.store).build(PLAN_ID, ['moment'], lines, 5000.0)

    def test_restore_recreates_rows_with_original_ids(self):
        self._mutate_plan()

        result = self.replayer.restore(PLAN_ID, self.saved, user_id='u2')

        self.assertTrue(result.success)
        self.assertEqual(result.lines_restored, 2)
        self.assertEqual(result.distributions_restored, len(self.saved_distribution_ids))
        self.assertEqual({r['id'] for r in self.store.list_lines(PLAN_ID)}, {'l1', 'l2'})
        self.assertEqual({r['id'] for r in self.store.list_distributions(PLAN_ID)}, self.saved_distribution_ids)
        self.assertEqual([r['id'] for r in self.store.list_monthly_budgets(PLAN_ID)], ['mb1'])

        plan = self.store.get_plan(PLAN_ID)
        self.assertEqual(plan['name'], 'Original')
        self.assertEqual(plan['total_budget'], 1000.0)
        self.assertEqual(plan['hierarchy_order'], ['subdivision', 'moment'])

    def test_restore_stamps_restoring_user(self):
        self._mutate_plan()
        self.replayer.restore(PLAN_ID, self.saved, user_id='u2')
        self.assertTrue(all(r['user_id'] == 'u2' for r in self.store.list_distributions(PLAN_ID)))
        self.assertTrue(all(r['user_id'] == 'u2' for r in self.store.list_lines(PLAN_ID)))

    def test_restore_is_bracketed_by_versions(self):
        self._mutate_plan()
        self.replayer.restore(PLAN_ID, self.saved, user_id='u2')

        history = self.versions.list_versions(PLAN_ID)
        self.assertEqual([v.version_number for v in history], [3, 2, 1])
        self.assertEqual(history[1].change_log, 'State before restoring version 1')
        self.assertEqual(history[0].change_log, 'Restored to version 1')
        # The version taken before the restore captures the mutated state
        self.assertEqual([l['id'] for l in history[1].snapshot_data['lines']], ['l9'])

    def test_restore_is_reversible(self):
        self._mutate_plan()
        self.replayer.restore(PLAN_ID, self.saved, user_id='u2')
        before_restore = self.versions.list_versions(PLAN_ID)[1]

        result = self.replayer.restore(PLAN_ID, before_restore, user_id='u2')

        self.assertTrue(result.success)
        self.assertEqual([r['id'] for r in self.store.list_lines(PLAN_ID)], ['l9'])
        self.assertEqual(self.store.get_plan(PLAN_ID)['name'], 'Changed')

    def test_empty_snapshot_clears_plan(self):
        empty = PlanVersion(id='v', media_plan_id=PLAN_ID, version_number=7, snapshot_data={})
        result = self.replayer.restore(PLAN_ID, empty)
        self.assertTrue(result.success)
        self.assertEqual(self.store.list_lines(PLAN_ID), [])
        self.assertEqual(self.store.list_distributions(PLAN_ID), [])

    def test_store_failure_returns_error(self):
        store = Mock()
        store.delete_lines.side_effect = StoreError("permission denied")
        replayer = SnapshotReplayer(store, Mock())

        result = replayer.restore(PLAN_ID, self.saved)

        self.assertFalse(result.success)
        self.assertEqual(result.version_number, 1)
        self.assertIn('permission denied', result.error)
        store.insert_distributions.assert_not_called()


if __name__ == '__main__':
    unittest.main()
