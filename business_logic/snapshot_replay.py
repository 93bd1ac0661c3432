"""
Snapshot replay: restores a plan to a recorded version.

Current lines and distribution rows are deleted and recreated from the
snapshot with their original identifiers, so references embedded in the
snapshot stay valid. The current state is versioned right before and right
after the restore, which makes every restore reversible.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from models.data_models import PlanVersion
from data.store import PlanStore, StoreError, VersionRecorder

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


RESTORABLE_PLAN_FIELDS = [
    'name', 'client', 'campaign', 'start_date', 'end_date', 'total_budget',
    'objectives', 'kpis', 'hierarchy_order',
]

DISTRIBUTION_FIELDS = [
    'id', 'distribution_type', 'reference_id', 'parent_distribution_id', 'percentage',
    'amount', 'start_date', 'end_date', 'temporal_period', 'temporal_date',
]

MONTHLY_BUDGET_FIELDS = ['id', 'media_line_id', 'month_date', 'amount']


@dataclass
class RestoreResult:
    """Outcome of a restore."""
    success: bool
    version_number: Optional[int] = None
    lines_restored: int = 0
    distributions_restored: int = 0
    error: Optional[str] = None


def order_parents_first(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Sort distribution rows so every parent precedes its children.

    Rows whose parent is not part of the snapshot are treated as roots.
    Relative order within a depth is preserved.
    """
    ids = {row.get('id') for row in rows}
    depth_cache: Dict[Any, int] = {}
    by_id = {row.get('id'): row for row in rows}

    def depth_of(row: Dict[str, Any]) -> int:
        row_id = row.get('id')
        if row_id in depth_cache:
            return depth_cache[row_id]
        depth = 0
        parent_id = row.get('parent_distribution_id')
        visited = {row_id}
        while parent_id in ids and parent_id not in visited:
            visited.add(parent_id)
            depth += 1
            parent_id = by_id[parent_id].get('parent_distribution_id')
        depth_cache[row_id] = depth
        return depth

    return sorted(rows, key=depth_of)


class SnapshotReplayer:
    """Replays a PlanVersion snapshot into the store."""

    def __init__(self, store: PlanStore, versions: VersionRecorder):
        self.store = store
        self.versions = versions

    def restore(self, plan_id: str, version: PlanVersion, user_id: Optional[str] = None) -> RestoreResult:
        """
        Restore a plan to the state recorded in a version.

        Args:
            plan_id: Plan being restored
            version: Version whose snapshot is replayed
            user_id: User performing the restore

        Returns:
            RestoreResult describing what was recreated
        """
        snapshot = version.snapshot_data or {}
        logger.info(f"Restoring plan {plan_id} to version {version.version_number}")

        try:
            self.versions.record(plan_id, user_id, f"State before restoring version {version.version_number}")

            plan_fields = {
                key: value for key, value in (snapshot.get('plan') or {}).items()
                if key in RESTORABLE_PLAN_FIELDS
            }
            if plan_fields:
                self.store.update_plan(plan_id, plan_fields)

            self.store.delete_lines(plan_id)
            self.store.delete_distributions(plan_id)

            distributions = self._distribution_rows(plan_id, user_id, snapshot.get('budget_distributions') or [])
            if distributions:
                self.store.insert_distributions(distributions)

            lines = self._line_rows(plan_id, user_id, snapshot.get('lines') or [])
            if lines:
                self.store.insert_lines(lines)

                monthly_budgets = self._monthly_budget_rows(user_id, snapshot.get('monthly_budgets') or [])
                if monthly_budgets:
                    self.store.insert_monthly_budgets(monthly_budgets)

            self.versions.record(plan_id, user_id, f"Restored to version {version.version_number}")

        except StoreError as e:
            logger.error(f"Error restoring plan {plan_id} to version {version.version_number}: {str(e)}")
            return RestoreResult(success=False, version_number=version.version_number, error=str(e))

        logger.info(
            f"Plan {plan_id} restored to version {version.version_number}: "
            f"{len(lines)} lines, {len(distributions)} distributions"
        )
        return RestoreResult(
            success=True,
            version_number=version.version_number,
            lines_restored=len(lines),
            distributions_restored=len(distributions)
        )

    @staticmethod
    def _distribution_rows(plan_id: str, user_id: Optional[str], rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        restored = []
        for row in order_parents_first(rows):
            data = {key: row.get(key) for key in DISTRIBUTION_FIELDS if key in row}
            data['media_plan_id'] = plan_id
            data['user_id'] = user_id
            restored.append(data)
        return restored

    @staticmethod
    def _line_rows(plan_id: str, user_id: Optional[str], rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        restored = []
        for row in rows:
            data = {key: value for key, value in row.items() if key not in ('created_at', 'updated_at')}
            data['media_plan_id'] = plan_id
            data['user_id'] = user_id
            restored.append(data)
        return restored

    @staticmethod
    def _monthly_budget_rows(user_id: Optional[str], rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        restored = []
        for row in rows:
            data = {key: row.get(key) for key in MONTHLY_BUDGET_FIELDS if key in row}
            data['user_id'] = user_id
            restored.append(data)
        return restored
