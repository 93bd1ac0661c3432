"""
Budget distribution tree builder.

Derives the tree of budget-allocation nodes for a plan from its flat set of
media lines and persists it. The tree is computed breadth-first, one
hierarchy depth at a time, then written with a depth-ordered insert that
swaps provisional parent ids for the ids the store generates.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models.data_models import HierarchyLevel, MediaLine, coerce_amount
from data.store import PlanStore, StoreError, serialize_value
from .hierarchy_config import (
    HierarchyConfigError, get_hierarchy_order, line_reference_for_level, normalize_hierarchy_config
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class DistributionBuildError(StoreError):
    """A failed build, raised by callers that retry full rebuilds."""
    pass


@dataclass
class PlannedDistribution:
    """A distribution node computed but not yet stored."""
    temp_id: str
    parent_temp_id: Optional[str]
    depth: int
    level: HierarchyLevel
    reference_id: Optional[str]
    amount: float
    percentage: float
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    line_ids: List[str] = field(default_factory=list)


@dataclass
class BuildResult:
    """Outcome of a tree build."""
    success: bool
    count: int = 0
    error: Optional[str] = None
    failed_depth: Optional[int] = None
    distribution_ids: List[str] = field(default_factory=list)


@dataclass
class _LineGroup:
    amount: float = 0.0
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    lines: List[MediaLine] = field(default_factory=list)

    def add(self, line: MediaLine):
        self.amount += coerce_amount(line.budget)
        self.lines.append(line)
        if line.start_date and (self.start_date is None or line.start_date < self.start_date):
            self.start_date = line.start_date
        if line.end_date and (self.end_date is None or line.end_date > self.end_date):
            self.end_date = line.end_date


def group_lines_by_level(lines: Iterable[MediaLine], level: HierarchyLevel) -> "OrderedDict[Optional[str], _LineGroup]":
    """
    Partition lines by their reference for a level.

    Lines without a reference land in the None-keyed unassigned group.
    Groups keep the order in which their first line was seen.
    """
    groups: "OrderedDict[Optional[str], _LineGroup]" = OrderedDict()
    for line in lines:
        reference_id = line_reference_for_level(line, level)
        groups.setdefault(reference_id, _LineGroup()).add(line)
    return groups


def compute_percentage(amount: float, denominator: float) -> float:
    """amount as a percentage of denominator, 0 when the denominator is not positive."""
    return (amount / denominator) * 100 if denominator > 0 else 0.0


def _resolve_order(hierarchy_order: Optional[Iterable[Any]]) -> List[HierarchyLevel]:
    return get_hierarchy_order(normalize_hierarchy_config(hierarchy_order))


def plan_distribution_tree(hierarchy_order: Optional[Iterable[Any]],
                           lines: List[MediaLine],
                           total_budget: float) -> List[PlannedDistribution]:
    """
    Compute the distribution forest for a plan without touching the store.

    Depth-0 percentages are relative to the plan total; deeper percentages
    are relative to the immediate parent's amount.

    Args:
        hierarchy_order: Levels (or level configs) in nesting order
        lines: Media lines of the plan
        total_budget: Plan total used for depth-0 percentages

    Returns:
        Planned nodes in depth order, parents before children
    """
    order = _resolve_order(hierarchy_order)
    nodes: List[PlannedDistribution] = []

    # (parent temp id, lines in scope, denominator)
    frontier: List[Tuple[Optional[str], List[MediaLine], float]] = [
        (None, list(lines), coerce_amount(total_budget))
    ]

    for depth, level in enumerate(order):
        next_frontier = []
        for parent_temp_id, scope_lines, denominator in frontier:
            for reference_id, group in group_lines_by_level(scope_lines, level).items():
                node = PlannedDistribution(
                    temp_id=f"tmp-{uuid.uuid4()}",
                    parent_temp_id=parent_temp_id,
                    depth=depth,
                    level=level,
                    reference_id=reference_id,
                    amount=group.amount,
                    percentage=compute_percentage(group.amount, denominator),
                    start_date=group.start_date if level == HierarchyLevel.MOMENT else None,
                    end_date=group.end_date if level == HierarchyLevel.MOMENT else None,
                    line_ids=[line.id for line in group.lines]
                )
                nodes.append(node)
                next_frontier.append((node.temp_id, group.lines, group.amount))
        frontier = next_frontier

    return nodes


def _node_key(distribution_type: Any, reference_id: Optional[str], parent_id: Optional[str]) -> Tuple[str, Optional[str], Optional[str]]:
    if isinstance(distribution_type, HierarchyLevel):
        distribution_type = distribution_type.value
    return distribution_type, reference_id, parent_id


class DistributionTreeBuilder:
    """
    Rebuilds a plan's budget distribution table from its lines.

    The existing tree is deleted and replaced wholesale. Store calls run in
    strict sequence because each depth needs the ids produced by the
    previous one. Failures are returned as a BuildResult, never raised;
    depths inserted before a failure are left in place and the caller
    recovers by running a full rebuild again.
    """

    def __init__(self, store: PlanStore):
        self.store = store

    def build(self,
              plan_id: str,
              hierarchy_order: Optional[Iterable[Any]],
              lines: List[MediaLine],
              total_budget: float,
              user_id: Optional[str] = None,
              clear_existing: bool = True) -> BuildResult:
        """
        Build and persist the distribution tree for a plan.

        Args:
            plan_id: Plan whose tree is rebuilt
            hierarchy_order: Levels (or level configs) in nesting order
            lines: Media lines of the plan
            total_budget: Plan total budget
            user_id: Owner stamped on every row
            clear_existing: Delete the current tree first

        Returns:
            BuildResult with the number of nodes inserted or an error
        """
        try:
            try:
                order = _resolve_order(hierarchy_order)
                nodes = plan_distribution_tree(order, lines, total_budget)
                depth_count = len(order)
            except HierarchyConfigError as e:
                logger.error(f"Rejected hierarchy configuration for plan {plan_id}: {str(e)}")
                return BuildResult(success=False, error=f"Invalid hierarchy configuration: {str(e)}")

            logger.info(f"Rebuilding distributions for plan {plan_id}: {len(nodes)} nodes across {depth_count} levels")

            if clear_existing:
                try:
                    self.store.delete_distributions(plan_id)
                except StoreError as e:
                    logger.error(f"Error clearing existing distributions for plan {plan_id}: {str(e)}")
                    return BuildResult(success=False, error=f"Failed to clear existing distributions: {str(e)}")

            if not nodes:
                return BuildResult(success=True, count=0)

            return self._insert_by_depth(plan_id, user_id, nodes, depth_count)

        except Exception as e:
            logger.error(f"Error generating budget distributions for plan {plan_id}: {str(e)}")
            return BuildResult(success=False, error=str(e))

    def _insert_by_depth(self, plan_id: str, user_id: Optional[str],
                         nodes: List[PlannedDistribution], depth_count: int) -> BuildResult:
        real_ids: Dict[str, str] = {}
        inserted_ids: List[str] = []

        for depth in range(depth_count):
            batch = [node for node in nodes if node.depth == depth]
            if not batch:
                break

            rows = [self._to_row(node, plan_id, user_id, real_ids) for node in batch]

            try:
                inserted = self.store.insert_distributions(rows)
            except StoreError as e:
                logger.error(f"Error inserting depth {depth} distributions for plan {plan_id}: {str(e)}")
                return BuildResult(
                    success=False,
                    count=len(inserted_ids),
                    error=f"Failed to insert depth {depth} distributions: {str(e)}",
                    failed_depth=depth,
                    distribution_ids=inserted_ids
                )

            returned = {
                _node_key(row.get('distribution_type'), row.get('reference_id'), row.get('parent_distribution_id')): row['id']
                for row in inserted or []
            }
            for node, row in zip(batch, rows):
                key = _node_key(node.level, node.reference_id, row['parent_distribution_id'])
                if key not in returned:
                    logger.error(f"Store returned no id for {key} in plan {plan_id}")
                    return BuildResult(
                        success=False,
                        count=len(inserted_ids),
                        error=f"Store did not return identifiers for depth {depth} distributions",
                        failed_depth=depth,
                        distribution_ids=inserted_ids
                    )
                real_ids[node.temp_id] = returned[key]
                inserted_ids.append(returned[key])

        logger.info(f"Created {len(inserted_ids)} budget distributions for plan {plan_id}")
        return BuildResult(success=True, count=len(inserted_ids), distribution_ids=inserted_ids)

    @staticmethod
    def _to_row(node: PlannedDistribution, plan_id: str, user_id: Optional[str],
                real_ids: Dict[str, str]) -> Dict[str, Any]:
        parent_id = None
        if node.parent_temp_id is not None:
            # Parents are always inserted one depth earlier
            parent_id = real_ids[node.parent_temp_id]
        return {
            'media_plan_id': plan_id,
            'user_id': user_id,
            'distribution_type': node.level.value,
            'reference_id': node.reference_id,
            'percentage': node.percentage,
            'amount': node.amount,
            'parent_distribution_id': parent_id,
            'start_date': serialize_value(node.start_date),
            'end_date': serialize_value(node.end_date),
        }
