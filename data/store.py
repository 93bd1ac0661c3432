"""
Persistent store collaborator for media plan budget data.

The hosted relational store is reached through the PlanStore contract:
flat rows keyed by plan id, with foreign-key columns instead of native
hierarchical inserts. InMemoryPlanStore implements the same contract for
tests, demos and local sessions.
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Any

from models.data_models import (
    BudgetDistribution, HierarchyLevel, MediaLine, MediaPlanRecord, MonthlyBudget,
    PlanVersion, coerce_amount, parse_date
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store call is rejected (network or database error)."""
    pass


class PlanStore(ABC):
    """Contract of the persistent store as seen by the budget subsystem."""

    @abstractmethod
    def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def update_plan(self, plan_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def list_lines(self, plan_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def delete_lines(self, plan_id: str) -> None:
        ...

    @abstractmethod
    def insert_lines(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def list_distributions(self, plan_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def delete_distributions(self, plan_id: str) -> None:
        ...

    @abstractmethod
    def insert_distributions(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert rows and return them with their generated ids."""
        ...

    @abstractmethod
    def list_monthly_budgets(self, plan_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert_monthly_budgets(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...


class InMemoryPlanStore(PlanStore):
    """
    Dictionary-backed PlanStore.

    Enforces the foreign keys the hosted store enforces: a distribution's
    parent must exist, and monthly budgets must reference an existing line.
    Rows are copied in and out so callers never share mutable state with
    the store.
    """

    def __init__(self):
        self.plans: Dict[str, Dict[str, Any]] = {}
        self.lines: Dict[str, Dict[str, Any]] = {}
        self.distributions: Dict[str, Dict[str, Any]] = {}
        self.monthly_budgets: Dict[str, Dict[str, Any]] = {}
        self.call_log: List[str] = []

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def add_plan(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Seed a plan row (plans are created by the plan editor, not this core)."""
        row = copy.deepcopy(row)
        row.setdefault('id', self._new_id())
        self.plans[row['id']] = row
        return copy.deepcopy(row)

    def get_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        self.call_log.append('get_plan')
        plan = self.plans.get(plan_id)
        return copy.deepcopy(plan) if plan is not None else None

    def update_plan(self, plan_id: str, fields: Dict[str, Any]) -> None:
        self.call_log.append('update_plan')
        if plan_id not in self.plans:
            raise StoreError(f"Plan {plan_id} not found")
        self.plans[plan_id].update(copy.deepcopy(fields))

    def list_lines(self, plan_id: str) -> List[Dict[str, Any]]:
        self.call_log.append('list_lines')
        return [copy.deepcopy(row) for row in self.lines.values() if row.get('media_plan_id') == plan_id]

    def delete_lines(self, plan_id: str) -> None:
        self.call_log.append('delete_lines')
        line_ids = {line_id for line_id, row in self.lines.items() if row.get('media_plan_id') == plan_id}
        for line_id in line_ids:
            del self.lines[line_id]
        # Monthly budgets cascade with their line
        for budget_id in [b_id for b_id, row in self.monthly_budgets.items() if row.get('media_line_id') in line_ids]:
            del self.monthly_budgets[budget_id]

    def insert_lines(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self.call_log.append('insert_lines')
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault('id', self._new_id())
            if row['id'] in self.lines:
                raise StoreError(f"Duplicate line id {row['id']}")
            self.lines[row['id']] = row
            inserted.append(copy.deepcopy(row))
        return inserted

    def list_distributions(self, plan_id: str) -> List[Dict[str, Any]]:
        self.call_log.append('list_distributions')
        return [copy.deepcopy(row) for row in self.distributions.values() if row.get('media_plan_id') == plan_id]

    def delete_distributions(self, plan_id: str) -> None:
        self.call_log.append('delete_distributions')
        for dist_id in [d_id for d_id, row in self.distributions.items() if row.get('media_plan_id') == plan_id]:
            del self.distributions[dist_id]

    def insert_distributions(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self.call_log.append('insert_distributions')
        staged = {}
        for row in rows:
            row = copy.deepcopy(row)
            row['id'] = row.get('id') or self._new_id()
            if row['id'] in self.distributions or row['id'] in staged:
                raise StoreError(f"Duplicate distribution id {row['id']}")
            parent_id = row.get('parent_distribution_id')
            if parent_id is not None and parent_id not in self.distributions and parent_id not in staged:
                raise StoreError(f"Foreign key violation: parent distribution {parent_id} does not exist")
            staged[row['id']] = row
        # Batch inserts are atomic
        self.distributions.update(staged)
        return [copy.deepcopy(row) for row in staged.values()]

    def list_monthly_budgets(self, plan_id: str) -> List[Dict[str, Any]]:
        self.call_log.append('list_monthly_budgets')
        line_ids = {line_id for line_id, row in self.lines.items() if row.get('media_plan_id') == plan_id}
        return [copy.deepcopy(row) for row in self.monthly_budgets.values() if row.get('media_line_id') in line_ids]

    def insert_monthly_budgets(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        self.call_log.append('insert_monthly_budgets')
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault('id', self._new_id())
            if row.get('media_line_id') not in self.lines:
                raise StoreError(f"Foreign key violation: line {row.get('media_line_id')} does not exist")
            self.monthly_budgets[row['id']] = row
            inserted.append(copy.deepcopy(row))
        return inserted


class VersionRecorder(ABC):
    """Versioning collaborator: captures and lists plan snapshots."""

    @abstractmethod
    def record(self, plan_id: str, user_id: Optional[str], change_log: str) -> PlanVersion:
        ...


def capture_snapshot(store: PlanStore, plan_id: str) -> Dict[str, Any]:
    """
    Build snapshot data from the current store contents of a plan.

    Args:
        store: Store to read from
        plan_id: Plan to capture

    Returns:
        Dictionary with plan, lines, budget_distributions and monthly_budgets
    """
    return {
        'plan': store.get_plan(plan_id) or {},
        'lines': store.list_lines(plan_id),
        'budget_distributions': store.list_distributions(plan_id),
        'monthly_budgets': store.list_monthly_budgets(plan_id),
    }


class InMemoryVersionRecorder(VersionRecorder):
    """Keeps plan versions in memory, numbered per plan."""

    def __init__(self, store: PlanStore):
        self.store = store
        self.versions: Dict[str, List[PlanVersion]] = {}

    def record(self, plan_id: str, user_id: Optional[str], change_log: str) -> PlanVersion:
        history = self.versions.setdefault(plan_id, [])
        version = PlanVersion(
            id=str(uuid.uuid4()),
            media_plan_id=plan_id,
            version_number=len(history) + 1,
            snapshot_data=capture_snapshot(self.store, plan_id),
            change_log=change_log,
            created_by=user_id
        )
        history.append(version)
        logger.info(f"Recorded version {version.version_number} of plan {plan_id}: {change_log}")
        return version

    def list_versions(self, plan_id: str) -> List[PlanVersion]:
        """Versions of a plan, newest first."""
        return sorted(self.versions.get(plan_id, []), key=lambda v: v.version_number, reverse=True)


# Row converters

def row_to_line(row: Dict[str, Any]) -> MediaLine:
    return MediaLine(
        id=row['id'],
        media_plan_id=row.get('media_plan_id'),
        budget=coerce_amount(row.get('budget')),
        subdivision_id=row.get('subdivision_id'),
        moment_id=row.get('moment_id'),
        funnel_stage_id=row.get('funnel_stage_id'),
        start_date=parse_date(row.get('start_date')),
        end_date=parse_date(row.get('end_date')),
        platform=row.get('platform'),
        line_code=row.get('line_code'),
        utm_source=row.get('utm_source'),
        utm_medium=row.get('utm_medium'),
        utm_campaign=row.get('utm_campaign'),
        utm_content=row.get('utm_content'),
        utm_term=row.get('utm_term'),
        utm_validated=bool(row.get('utm_validated', False))
    )


def row_to_distribution(row: Dict[str, Any]) -> BudgetDistribution:
    """Unknown distribution types are kept as their raw string."""
    distribution_type = row.get('distribution_type')
    try:
        distribution_type = HierarchyLevel(distribution_type)
    except ValueError:
        logger.warning(f"Distribution {row['id']} has unknown type {distribution_type!r}")
    return BudgetDistribution(
        id=row['id'],
        distribution_type=distribution_type,
        reference_id=row.get('reference_id'),
        amount=coerce_amount(row.get('amount')),
        percentage=coerce_amount(row.get('percentage')),
        parent_distribution_id=row.get('parent_distribution_id'),
        media_plan_id=row.get('media_plan_id'),
        user_id=row.get('user_id'),
        start_date=parse_date(row.get('start_date')),
        end_date=parse_date(row.get('end_date'))
    )


def row_to_monthly_budget(row: Dict[str, Any]) -> MonthlyBudget:
    return MonthlyBudget(
        id=row['id'],
        media_line_id=row['media_line_id'],
        month_date=parse_date(row.get('month_date')),
        amount=coerce_amount(row.get('amount'))
    )


def row_to_plan(row: Dict[str, Any]) -> MediaPlanRecord:
    return MediaPlanRecord(
        id=row['id'],
        name=row.get('name') or "",
        total_budget=coerce_amount(row.get('total_budget')),
        start_date=parse_date(row.get('start_date')),
        end_date=parse_date(row.get('end_date')),
        hierarchy_order=list(row.get('hierarchy_order') or []),
        client=row.get('client'),
        campaign=row.get('campaign')
    )


def serialize_value(value: Any) -> Any:
    """Convert dates to ISO strings for store rows."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return value
