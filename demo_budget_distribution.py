#!/usr/bin/env python3
"""
Demonstration of the budget distribution and alert system.

This script seeds an in-memory plan, rebuilds its distribution tree,
evaluates alerts, changes the hierarchy and restores a previous version.
"""

from datetime import date

from business_logic.distribution_report import alert_summary, distribution_frame, level_totals
from business_logic.plan_controller import PlanBudgetController
from data.store import InMemoryPlanStore, row_to_distribution
from models.data_models import MediaCreative, Moment


def seed_plan(store: InMemoryPlanStore) -> str:
    """Create a sample plan with a handful of lines."""
    plan = store.add_plan({
        'id': 'plan-demo',
        'name': 'Spring Launch',
        'total_budget': 100000.0,
        'start_date': '2026-03-01',
        'end_date': '2026-06-30',
        'hierarchy_order': ['subdivision', 'moment'],
    })
    store.insert_lines([
        {'id': 'line-1', 'media_plan_id': plan['id'], 'platform': 'Meta Ads', 'budget': 30000,
         'subdivision_id': 'north', 'moment_id': 'launch',
         'start_date': '2026-03-01', 'end_date': '2026-03-31', 'utm_source': 'meta'},
        {'id': 'line-2', 'media_plan_id': plan['id'], 'platform': 'Google Ads', 'budget': 25000,
         'subdivision_id': 'north', 'moment_id': 'sustain',
         'start_date': '2026-04-01', 'end_date': '2026-07-15'},
        {'id': 'line-3', 'media_plan_id': plan['id'], 'platform': 'TikTok Ads', 'budget': 20000,
         'subdivision_id': 'south', 'moment_id': 'launch',
         'start_date': '2026-03-01', 'end_date': '2026-04-30'},
        {'id': 'line-4', 'media_plan_id': plan['id'], 'platform': 'Spotify Ads', 'budget': 5000},
    ])
    store.insert_monthly_budgets([
        {'id': 'mb-1', 'media_line_id': 'line-1', 'month_date': '2026-03-01', 'amount': 30000},
        {'id': 'mb-2', 'media_line_id': 'line-2', 'month_date': '2026-04-01', 'amount': 20000},
    ])
    return plan['id']


def main():
    """Demonstrate the budget distribution and alert system."""

    print("=== Media Plan Budget Distribution Demo ===\n")

    store = InMemoryPlanStore()
    plan_id = seed_plan(store)
    controller = PlanBudgetController(store)
    names = {'north': 'North', 'south': 'South', 'launch': 'Launch', 'sustain': 'Sustain'}

    print("1. Rebuilding distribution tree (subdivision > moment)...")
    success, result, _ = controller.rebuild_distributions(plan_id, user_id='demo-user')
    print(f"   ✓ Success: {success}, nodes created: {result.count}")
    frame = distribution_frame([row_to_distribution(r) for r in store.list_distributions(plan_id)], names)
    print(frame[['path', 'amount', 'percentage', 'share_of_total']].to_string(index=False))

    print("\n2. Totals per level...")
    print(level_totals(frame).to_string(index=False))

    print("\n3. Saving a version...")
    version = controller.create_version(plan_id, 'demo-user', 'Before funnel breakdown')
    print(f"   ✓ Version {version.version_number} recorded")

    print("\n4. Evaluating alerts...")
    creatives = {'line-1': [MediaCreative(id='cr-1', media_line_id='line-1', name='Hero video')]}
    moments = [Moment(id='launch', name='Launch'), Moment(id='sustain', name='Sustain')]
    report = controller.evaluate_alerts(plan_id, creatives, moments, today=date(2026, 5, 15))
    print(f"   ✓ {report.total} alerts, errors: {len(report.errors)}, warnings: {len(report.warnings)}")
    for alert in report.errors + report.warnings:
        print(f"   [{alert.level.value}] {alert.title}: {alert.description}")
    print(alert_summary(report).to_string())

    print("\n5. Switching hierarchy to moment > funnel stage...")
    success, result, _ = controller.update_hierarchy(plan_id, ['moment', 'funnel_stage'], user_id='demo-user')
    print(f"   ✓ Success: {success}, nodes created: {result.count}")

    print("\n6. Restoring the saved version...")
    success, restore, _ = controller.restore_version(plan_id, version, user_id='demo-user')
    print(f"   ✓ Success: {success}, distributions restored: {restore.distributions_restored}")

    print("\n=== Demo completed successfully! ===")


if __name__ == "__main__":
    main()
