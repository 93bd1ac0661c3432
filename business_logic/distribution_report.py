"""
Tabular views of a plan's distribution tree and alerts.

Builds pandas DataFrames for the distribution preview: one row per node
with its depth, path and share of the plan total, plus alert summaries
pivoted by level and category.
"""

import logging
from typing import Dict, List, Optional

import pandas as pd

from models.data_models import AlertCategory, AlertLevel, BudgetDistribution, PlanAlert
from .alert_engine import AlertReport, distribution_level
from .distribution_builder import PlannedDistribution
from .hierarchy_config import level_label

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


DISTRIBUTION_COLUMNS = [
    'id', 'parent_id', 'depth', 'level', 'reference_id', 'name', 'path',
    'amount', 'percentage', 'share_of_total', 'start_date', 'end_date',
]

UNASSIGNED_NAME = "Unassigned"


def distribution_frame(distributions: List[BudgetDistribution],
                       reference_names: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """
    Flatten a stored distribution tree into a DataFrame.

    share_of_total multiplies percentages down the tree, so a depth-2 node
    at 50% of a depth-1 node at 50% of a root at 40% reports 10%.

    Args:
        distributions: Stored nodes of one plan
        reference_names: Optional display names keyed by reference id

    Returns:
        DataFrame with DISTRIBUTION_COLUMNS, ordered depth first then path
    """
    reference_names = reference_names or {}
    by_id = {d.id: d for d in distributions}
    rows = []

    for dist in distributions:
        level = distribution_level(dist)
        chain = []
        node = dist
        while node is not None and node not in chain:
            chain.append(node)
            node = by_id.get(node.parent_distribution_id) if node.parent_distribution_id else None

        share = 1.0
        names = []
        for ancestor in reversed(chain):
            share *= (ancestor.percentage or 0.0) / 100
            names.append(_node_name(ancestor, reference_names))

        rows.append({
            'id': dist.id,
            'parent_id': dist.parent_distribution_id,
            'depth': len(chain) - 1,
            'level': level.value if level else str(dist.distribution_type),
            'reference_id': dist.reference_id,
            'name': names[-1],
            'path': " / ".join(names),
            'amount': float(dist.amount or 0.0),
            'percentage': float(dist.percentage or 0.0),
            'share_of_total': share * 100,
            'start_date': dist.start_date,
            'end_date': dist.end_date,
        })

    frame = pd.DataFrame(rows, columns=DISTRIBUTION_COLUMNS)
    if frame.empty:
        return frame
    return frame.sort_values(['depth', 'path'], kind='stable').reset_index(drop=True)


def planned_frame(nodes: List[PlannedDistribution],
                  reference_names: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """Same view for a tree computed but not yet stored."""
    distributions = [
        BudgetDistribution(
            id=node.temp_id,
            distribution_type=node.level,
            reference_id=node.reference_id,
            amount=node.amount,
            percentage=node.percentage,
            parent_distribution_id=node.parent_temp_id,
            start_date=node.start_date,
            end_date=node.end_date
        )
        for node in nodes
    ]
    return distribution_frame(distributions, reference_names)


def _node_name(dist: BudgetDistribution, reference_names: Dict[str, str]) -> str:
    if dist.reference_id is None:
        level = distribution_level(dist)
        return f"{UNASSIGNED_NAME} {level_label(level).lower()}" if level else UNASSIGNED_NAME
    return reference_names.get(dist.reference_id, dist.reference_id)


def level_totals(frame: pd.DataFrame) -> pd.DataFrame:
    """Total amount and node count per depth and level."""
    if frame.empty:
        return pd.DataFrame(columns=['depth', 'level', 'amount', 'nodes'])
    return (
        frame.groupby(['depth', 'level'], sort=True)
        .agg(amount=('amount', 'sum'), nodes=('id', 'count'))
        .reset_index()
    )


def alerts_frame(alerts: List[PlanAlert]) -> pd.DataFrame:
    """One row per alert."""
    columns = ['id', 'level', 'category', 'title', 'description', 'action', 'line_id']
    return pd.DataFrame(
        [
            {
                'id': alert.id,
                'level': alert.level.value,
                'category': alert.category.value,
                'title': alert.title,
                'description': alert.description,
                'action': alert.action,
                'line_id': alert.line_id,
            }
            for alert in alerts
        ],
        columns=columns
    )


def alert_summary(report: AlertReport) -> pd.DataFrame:
    """
    Alert counts with levels as rows and categories as columns.

    Every level and category appears even when its count is zero.
    """
    frame = alerts_frame(report.alerts)
    levels = [level.value for level in AlertLevel]
    categories = [category.value for category in AlertCategory]
    if frame.empty:
        return pd.DataFrame(0, index=levels, columns=categories)
    summary = pd.crosstab(frame['level'], frame['category'])
    return summary.reindex(index=levels, columns=categories, fill_value=0)
