"""
Integration tests for the plan budget controller.

Tests the workflow from hierarchy changes through distribution rebuilds,
alert evaluation and version restores against the in-memory store.
"""

import pytest
from datetime import date
from unittest.mock import patch

from business_logic.alert_engine import AlertThresholds
from business_logic.error_handler import RetryConfig
from business_logic.plan_controller import PlanBudgetController
from data.store import InMemoryPlanStore, StoreError
from models.data_models import AlertLevel, HierarchyLevel, MediaCreative, Moment


PLAN_ID = 'plan-1'
TODAY = date(2026, 5, 15)


class FlakyStore(InMemoryPlanStore):
    """Fails the first N non-root distribution inserts."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    def insert_distributions(self, rows):
        if self.failures and any(row.get('parent_distribution_id') for row in rows):
            self.failures -= 1
            raise StoreError("connection reset by peer")
        return super().insert_distributions(rows)


def make_controller(store, **kwargs):
    """Controller with fixed settings so tests do not depend on the environment."""
    kwargs.setdefault('thresholds', AlertThresholds())
    kwargs.setdefault('currency', 'USD')
    kwargs.setdefault('retry_config', RetryConfig(max_attempts=1))
    return PlanBudgetController(store, **kwargs)


def seed(store):
    store.add_plan({
        'id': PLAN_ID,
        'name': 'Spring launch',
        'total_budget': 100000.0,
        'start_date': '2026-03-01',
        'end_date': '2026-08-31',
        'hierarchy_order': ['subdivision', 'moment'],
    })
    store.insert_lines([
        {'id': 'l1', 'media_plan_id': PLAN_ID, 'budget': 40000, 'subdivision_id': 'north', 'moment_id': 'launch',
         'platform': 'Search', 'start_date': '2026-03-01', 'end_date': '2026-06-30',
         'utm_source': 'google', 'utm_medium': 'cpc', 'utm_campaign': 'spring', 'utm_validated': True},
        {'id': 'l2', 'media_plan_id': PLAN_ID, 'budget': 35000, 'subdivision_id': 'north', 'moment_id': 'sustain',
         'platform': 'Social', 'start_date': '2026-05-01', 'end_date': '2026-08-31',
         'utm_source': 'meta', 'utm_medium': 'paid', 'utm_campaign': 'spring', 'utm_validated': True},
        {'id': 'l3', 'media_plan_id': PLAN_ID, 'budget': 25000, 'subdivision_id': 'south', 'moment_id': 'launch',
         'platform': 'Video', 'start_date': '2026-03-15', 'end_date': '2026-07-31',
         'utm_source': 'youtube', 'utm_medium': 'video', 'utm_campaign': 'spring', 'utm_validated': True},
    ])
    return store


@pytest.fixture
def store():
    return seed(InMemoryPlanStore())


@pytest.fixture
def controller(store):
    return make_controller(store)


@pytest.fixture
def creatives():
    return {
        line_id: [MediaCreative(id=f'c-{line_id}', media_line_id=line_id, name='Banner', format_id='f1')]
        for line_id in ('l1', 'l2', 'l3')
    }


@pytest.fixture
def moments():
    return [Moment(id='launch', name='Launch'), Moment(id='sustain', name='Sustain')]


def _types(store):
    return sorted(row['distribution_type'] for row in store.list_distributions(PLAN_ID))


class TestRebuildDistributions:
    """Test distribution rebuilds from stored plan data."""

    def test_rebuild_creates_tree(self, controller, store):
        success, result, notification = controller.rebuild_distributions(PLAN_ID, user_id='u1')

        assert success
        assert notification is None
        # north, south + north/launch, north/sustain, south/launch
        assert result.count == 5
        assert _types(store) == ['moment'] * 3 + ['subdivision'] * 2

    def test_rebuild_is_idempotent(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)
        controller.rebuild_distributions(PLAN_ID)
        assert len(store.list_distributions(PLAN_ID)) == 5

    def test_partial_failure_without_retry_reports_error(self):
        store = seed(FlakyStore(failures=1))
        controller = make_controller(store)

        success, result, notification = controller.rebuild_distributions(PLAN_ID)

        assert not success
        assert result.failed_depth == 1
        assert "Failed to insert depth 1 distributions" in result.error
        assert notification['title'] == 'Save Error'
        assert notification['retry_possible']
        # Depth 0 stays behind until the next full rebuild
        assert _types(store) == ['subdivision', 'subdivision']

    def test_retry_repairs_partial_tree(self):
        store = seed(FlakyStore(failures=1))
        controller = make_controller(store)

        success, result, notification = controller.rebuild_distributions(
            PLAN_ID, retry_config=RetryConfig(max_attempts=2, base_delay=0)
        )

        assert success
        assert notification is None
        assert result.count == 5
        assert len(store.list_distributions(PLAN_ID)) == 5

    def test_missing_plan(self, controller):
        success, result, notification = controller.rebuild_distributions('unknown')
        assert not success
        assert result is None
        assert notification['title'] == 'Data Error'


class TestUpdateHierarchy:
    """Test hierarchy configuration changes."""

    def test_invalid_config_rejected_before_store_calls(self, controller, store):
        store.call_log.clear()

        success, result, notification = controller.update_hierarchy(PLAN_ID, ['moment', 'moment'])

        assert not success
        assert result is None
        assert notification['title'] == 'Hierarchy Configuration Error'
        assert not notification['retry_possible']
        assert store.call_log == []

    def test_reorder_rebuilds_tree(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)

        success, result, _ = controller.update_hierarchy(PLAN_ID, ['moment', 'subdivision'])

        assert success
        # launch, sustain + launch/north, launch/south, sustain/north
        assert result.count == 5
        roots = [row for row in store.list_distributions(PLAN_ID) if row['parent_distribution_id'] is None]
        assert {row['distribution_type'] for row in roots} == {'moment'}
        assert store.get_plan(PLAN_ID)['hierarchy_order'] == [
            {'level': 'moment', 'allocate_budget': True},
            {'level': 'subdivision', 'allocate_budget': True},
        ]

    def test_removing_level_leaves_no_residual_nodes(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)

        success, result, _ = controller.update_hierarchy(PLAN_ID, ['subdivision'])

        assert success
        assert _types(store) == ['subdivision', 'subdivision']

    def test_removing_all_levels_clears_tree(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)

        success, result, _ = controller.update_hierarchy(PLAN_ID, [])

        assert success
        assert result.count == 0
        assert store.list_distributions(PLAN_ID) == []

    def test_flag_toggle_skips_rebuild(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)
        before = {row['id'] for row in store.list_distributions(PLAN_ID)}

        success, result, notification = controller.update_hierarchy(PLAN_ID, [
            {'level': 'subdivision', 'allocate_budget': False},
            {'level': 'moment'},
        ])

        assert success
        assert result is None
        assert notification is None
        assert {row['id'] for row in store.list_distributions(PLAN_ID)} == before
        assert store.get_plan(PLAN_ID)['hierarchy_order'][0]['allocate_budget'] is False


class TestEvaluateAlerts:
    """Test alert evaluation over stored plan data."""

    def test_consistent_plan_has_no_alerts(self, controller, creatives, moments):
        controller.update_hierarchy(PLAN_ID, ['subdivision'])

        report = controller.evaluate_alerts(PLAN_ID, creatives_by_line=creatives, moments=moments, today=TODAY)

        assert report.total == 0
        assert not report.has_errors

    def test_shared_moment_flags_child_nodes(self, controller, store, creatives, moments):
        controller.rebuild_distributions(PLAN_ID)

        report = controller.evaluate_alerts(PLAN_ID, creatives_by_line=creatives, moments=moments, today=TODAY)

        launch_nodes = {
            row['id']: row['amount'] for row in store.list_distributions(PLAN_ID)
            if row['distribution_type'] == 'moment' and row['reference_id'] == 'launch'
        }
        overages = {a.id: a for a in report.warnings if a.id.startswith('budget-exceeded-moment-')}
        # Launch lines of both subdivisions (65000) count against each launch node
        assert set(overages) == {f"budget-exceeded-moment-{node_id}" for node_id in launch_nodes}
        for node_id, amount in launch_nodes.items():
            assert overages[f"budget-exceeded-moment-{node_id}"].metadata['excess'] == pytest.approx(65000 - amount)
        assert not report.has_errors

    def test_budget_change_after_rebuild_flags_overage(self, controller, store, creatives, moments):
        controller.rebuild_distributions(PLAN_ID)
        store.lines['l3']['budget'] = 45000

        report = controller.evaluate_alerts(PLAN_ID, creatives_by_line=creatives, moments=moments, today=TODAY)

        ids = {alert.id for alert in report.alerts}
        assert 'budget-exceeded-total' in ids
        south = next(
            row for row in store.list_distributions(PLAN_ID)
            if row['distribution_type'] == 'subdivision' and row['reference_id'] == 'south'
        )
        assert f"budget-exceeded-sub-{south['id']}" in ids

    def test_monthly_mismatch_from_store(self, controller, store, creatives, moments):
        controller.rebuild_distributions(PLAN_ID)
        store.insert_monthly_budgets([
            {'id': 'mb1', 'media_line_id': 'l1', 'month_date': '2026-03-01', 'amount': 20000},
            {'id': 'mb2', 'media_line_id': 'l1', 'month_date': '2026-04-01', 'amount': 15000},
        ])

        report = controller.evaluate_alerts(PLAN_ID, creatives_by_line=creatives, moments=moments, today=TODAY)

        assert [alert.id for alert in report.errors] == ['monthly-mismatch-l1']
        assert report.errors[0].metadata['difference'] == pytest.approx(5000)

    def test_missing_creatives_and_orphans(self, controller, creatives):
        controller.rebuild_distributions(PLAN_ID)

        report = controller.evaluate_alerts(
            PLAN_ID, creatives_by_line={}, moments=[Moment(id='launch', name='Launch')], today=TODAY
        )

        ids = {alert.id for alert in report.alerts}
        assert {'no-creatives-l1', 'no-creatives-l2', 'no-creatives-l3'} <= ids
        orphaned = [alert for alert in report.alerts if alert.id.startswith('orphaned-reference-')]
        assert len(orphaned) == 1
        assert orphaned[0].level == AlertLevel.WARNING

    def test_plan_thresholds_come_from_controller(self, store, creatives, moments):
        controller = make_controller(store, thresholds=AlertThresholds(concentration_pct=30))
        controller.rebuild_distributions(PLAN_ID)

        report = controller.evaluate_alerts(PLAN_ID, creatives_by_line=creatives, moments=moments, today=TODAY)

        concentration = {alert.id for alert in report.alerts if alert.id.startswith('budget-concentration-')}
        assert concentration == {'budget-concentration-l1', 'budget-concentration-l2'}

    def test_unknown_distribution_type_does_not_break_evaluation(self, controller, store, creatives, moments):
        controller.update_hierarchy(PLAN_ID, ['subdivision'])
        store.insert_distributions([{
            'id': 'legacy', 'media_plan_id': PLAN_ID, 'distribution_type': 'temporal',
            'reference_id': '2026-03', 'amount': 5000, 'percentage': 5, 'parent_distribution_id': None,
        }])

        report = controller.evaluate_alerts(PLAN_ID, creatives_by_line=creatives, moments=moments, today=TODAY)

        assert report.total == 0


class TestVersions:
    """Test version capture and restore through the controller."""

    def test_restore_round_trip(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)
        saved = controller.create_version(PLAN_ID, user_id='u1')
        saved_ids = {row['id'] for row in store.list_distributions(PLAN_ID)}

        controller.update_hierarchy(PLAN_ID, ['moment'])
        store.update_plan(PLAN_ID, {'total_budget': 1.0})

        success, result, notification = controller.restore_version(PLAN_ID, saved, user_id='u1')

        assert success
        assert notification is None
        assert result.lines_restored == 3
        assert {row['id'] for row in store.list_distributions(PLAN_ID)} == saved_ids
        assert store.get_plan(PLAN_ID)['total_budget'] == 100000.0
        assert store.get_plan(PLAN_ID)['hierarchy_order'] == ['subdivision', 'moment']

    def test_restore_failure_notifies(self, store):
        class FailingStore(InMemoryPlanStore):
            def delete_lines(self, plan_id):
                raise StoreError("permission denied")

        failing = seed(FailingStore())
        controller = make_controller(failing)
        saved = controller.create_version(PLAN_ID)

        success, result, notification = controller.restore_version(PLAN_ID, saved)

        assert not success
        assert 'permission denied' in result.error
        assert notification['title'] == 'Save Error'

    def test_restored_tree_matches_lines(self, controller, store):
        controller.rebuild_distributions(PLAN_ID)
        saved = controller.create_version(PLAN_ID)
        controller.restore_version(PLAN_ID, saved)

        levels = {row['distribution_type'] for row in store.list_distributions(PLAN_ID)}
        assert levels == {HierarchyLevel.SUBDIVISION.value, HierarchyLevel.MOMENT.value}


class TestConfiguredDefaults:
    """Test that the controller falls back to configured settings."""

    @patch('business_logic.plan_controller.config_manager')
    def test_defaults_come_from_configuration(self, mock_config, store):
        mock_config.get_alert_thresholds.return_value = AlertThresholds(concentration_pct=30)
        mock_config.get_currency.return_value = 'EUR'
        mock_config.get_rebuild_retry_config.return_value = RetryConfig(max_attempts=2, base_delay=0)

        controller = PlanBudgetController(store)

        assert controller.thresholds.concentration_pct == 30
        assert controller.currency == 'EUR'
        assert controller.retry_config.max_attempts == 2

    @patch('business_logic.plan_controller.config_manager')
    def test_configured_retry_policy_repairs_partial_tree(self, mock_config):
        mock_config.get_alert_thresholds.return_value = AlertThresholds()
        mock_config.get_currency.return_value = 'USD'
        mock_config.get_rebuild_retry_config.return_value = RetryConfig(max_attempts=2, base_delay=0)
        store = seed(FlakyStore(failures=1))

        success, result, notification = PlanBudgetController(store).rebuild_distributions(PLAN_ID)

        assert success
        assert notification is None
        assert len(store.list_distributions(PLAN_ID)) == 5

    def test_explicit_settings_win(self, store):
        controller = make_controller(store, currency='GBP', retry_config=RetryConfig(max_attempts=5))
        assert controller.currency == 'GBP'
        assert controller.retry_config.max_attempts == 5
