"""
Consistency and alert engine for media plans.

Inspects plan budget, the budget distribution tree, media lines, monthly
sub-allocations and creative/tracking metadata, and derives a flat list of
leveled, categorized alerts. Evaluation is a pure function of its inputs:
no store access, no side effects, and missing fields never raise.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from models.data_models import (
    AlertCategory, AlertLevel, BudgetDistribution, HierarchyLevel, MediaCreative, MediaLine,
    Moment, MonthlyBudget, PlanAlert, coerce_amount, parse_date
)
from .hierarchy_config import (
    HierarchyConfigError, get_hierarchy_order, level_label, line_reference_for_level,
    normalize_hierarchy_config
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class AlertThresholds:
    """Tunable limits used by the checks."""
    epsilon: float = 0.01  # Monetary comparison tolerance
    concentration_pct: float = 50.0  # Max share of total for a single line
    underutilization_pct: float = 80.0  # Min share of total that should be allocated


@dataclass
class PlanAlertInput:
    """Snapshot of everything the engine looks at."""
    total_budget: float
    lines: List[MediaLine]
    creatives_by_line: Dict[str, List[MediaCreative]] = field(default_factory=dict)
    distributions: List[BudgetDistribution] = field(default_factory=list)
    monthly_budgets_by_line: Dict[str, List[MonthlyBudget]] = field(default_factory=dict)
    plan_start_date: Optional[date] = None
    plan_end_date: Optional[date] = None
    moments: Optional[List[Moment]] = None
    hierarchy_order: Optional[List[Any]] = None
    known_references: Optional[Dict[HierarchyLevel, Iterable[str]]] = None
    currency: str = "USD"


@dataclass
class AlertReport:
    """Alerts plus the derived views the UI filters on."""
    alerts: List[PlanAlert]

    def by_level(self, level: AlertLevel) -> List[PlanAlert]:
        return [a for a in self.alerts if a.level == level]

    def by_category(self, category: AlertCategory) -> List[PlanAlert]:
        return [a for a in self.alerts if a.category == category]

    @property
    def errors(self) -> List[PlanAlert]:
        return self.by_level(AlertLevel.ERROR)

    @property
    def warnings(self) -> List[PlanAlert]:
        return self.by_level(AlertLevel.WARNING)

    @property
    def infos(self) -> List[PlanAlert]:
        return self.by_level(AlertLevel.INFO)

    @property
    def budget(self) -> List[PlanAlert]:
        return self.by_category(AlertCategory.BUDGET)

    @property
    def creative(self) -> List[PlanAlert]:
        return self.by_category(AlertCategory.CREATIVE)

    @property
    def config(self) -> List[PlanAlert]:
        return self.by_category(AlertCategory.CONFIG)

    @property
    def timing(self) -> List[PlanAlert]:
        return self.by_category(AlertCategory.TIMING)

    @property
    def utm(self) -> List[PlanAlert]:
        return self.by_category(AlertCategory.UTM)

    def alerts_for_line(self, line_id: str) -> List[PlanAlert]:
        return [a for a in self.alerts if a.line_id == line_id]

    @property
    def lines_with_alerts(self) -> Set[str]:
        return {a.line_id for a in self.alerts if a.line_id}

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    @property
    def total(self) -> int:
        return len(self.alerts)

    def summary(self) -> Dict[str, int]:
        """Alert counts per level."""
        return {level.value: len(self.by_level(level)) for level in AlertLevel}


class _AlertContext:
    """Precomputed, defensively normalized view of a PlanAlertInput."""

    def __init__(self, data: PlanAlertInput, today: date, thresholds: AlertThresholds):
        self.data = data
        self.today = today
        self.thresholds = thresholds
        self.currency = data.currency
        self.total_budget = coerce_amount(data.total_budget)
        self.lines = list(data.lines or [])
        self.allocated = sum(coerce_amount(line.budget) for line in self.lines)
        self.creatives_by_line = data.creatives_by_line or {}
        self.monthly_budgets_by_line = data.monthly_budgets_by_line or {}
        self.plan_start = parse_date(data.plan_start_date)
        self.plan_end = parse_date(data.plan_end_date)
        self.distributions = list(data.distributions or [])
        self.moment_names = {m.id: m.name for m in (data.moments or [])}
        self.levels = self._resolve_levels(data.hierarchy_order)
        self.known_references = self._resolve_known_references(data)

    def _resolve_levels(self, hierarchy_order: Optional[List[Any]]) -> List[HierarchyLevel]:
        if hierarchy_order is not None:
            try:
                return get_hierarchy_order(normalize_hierarchy_config(hierarchy_order))
            except HierarchyConfigError as e:
                logger.warning(f"Ignoring invalid hierarchy order in alert evaluation: {str(e)}")
        # Fall back to the levels the stored tree actually uses
        levels = []
        for dist in self.distributions:
            level = distribution_level(dist)
            if level is not None and level not in levels:
                levels.append(level)
        return levels

    @staticmethod
    def _resolve_known_references(data: PlanAlertInput) -> Dict[HierarchyLevel, Set[str]]:
        known = {level: set(ids) for level, ids in (data.known_references or {}).items()}
        if data.moments is not None:
            known.setdefault(HierarchyLevel.MOMENT, set()).update(m.id for m in data.moments)
        return known

    def money(self, value: float) -> str:
        return f"{self.currency} {value:,.2f}"

    def distributions_at(self, level: HierarchyLevel) -> List[BudgetDistribution]:
        return [d for d in self.distributions if distribution_level(d) == level]

    def matching_lines(self, dist: BudgetDistribution) -> List[MediaLine]:
        """
        Lines whose value for the node's level equals its reference.

        A None reference matches lines with no value for the level. Parent
        nodes do not narrow the match, so a child node sees every line of
        its reference across the whole plan.
        """
        level = distribution_level(dist)
        if level is None:
            return []
        reference_id = dist.reference_id or None
        return [line for line in self.lines if line_reference_for_level(line, level) == reference_id]

    def reference_name(self, dist: BudgetDistribution, level: HierarchyLevel) -> str:
        if level == HierarchyLevel.MOMENT:
            return self.moment_names.get(dist.reference_id, level_label(level))
        return level_label(level)


def distribution_level(dist: BudgetDistribution) -> Optional[HierarchyLevel]:
    """The node's level, or None for an unrecognized distribution type."""
    try:
        return HierarchyLevel(dist.distribution_type)
    except ValueError:
        return None


PlanCheck = Callable[[_AlertContext], List[PlanAlert]]
LineCheck = Callable[[_AlertContext, MediaLine], List[PlanAlert]]

PLAN_CHECKS: List[PlanCheck] = []
LINE_CHECKS: List[LineCheck] = []


def register_plan_check(check: PlanCheck) -> PlanCheck:
    """Append a plan-wide check to the registry."""
    PLAN_CHECKS.append(check)
    return check


def register_line_check(check: LineCheck) -> LineCheck:
    """Append a per-line check to the registry."""
    LINE_CHECKS.append(check)
    return check


_LEVEL_ID_SLUGS = {
    HierarchyLevel.SUBDIVISION: 'sub',
    HierarchyLevel.MOMENT: 'moment',
    HierarchyLevel.FUNNEL_STAGE: 'funnel',
}

_EMPTY_ID_PREFIXES = {
    HierarchyLevel.SUBDIVISION: 'subdivision-empty',
    HierarchyLevel.MOMENT: 'moment-empty',
    HierarchyLevel.FUNNEL_STAGE: 'funnel-empty',
}


# Plan-wide checks

@register_plan_check
def check_plan_overage(ctx: _AlertContext) -> List[PlanAlert]:
    if ctx.total_budget <= 0 or ctx.allocated - ctx.total_budget <= ctx.thresholds.epsilon:
        return []
    excess = ctx.allocated - ctx.total_budget
    percentage = excess / ctx.total_budget * 100
    return [PlanAlert(
        id='budget-exceeded-total',
        level=AlertLevel.ERROR,
        category=AlertCategory.BUDGET,
        title='Budget exceeded',
        description=f"Allocated budget exceeds the plan by {ctx.money(excess)} ({percentage:.1f}%)",
        action='Reduce line budgets or increase the plan budget',
        metadata={'excess': excess, 'percentage': percentage, 'allocated': ctx.allocated}
    )]


@register_plan_check
def check_node_overage(ctx: _AlertContext) -> List[PlanAlert]:
    alerts = []
    for level in ctx.levels:
        for dist in ctx.distributions_at(level):
            planned = coerce_amount(dist.amount)
            if planned <= 0:
                continue
            allocated = sum(coerce_amount(line.budget) for line in ctx.matching_lines(dist))
            excess = allocated - planned
            if excess <= ctx.thresholds.epsilon:
                continue
            label = level_label(level)
            alerts.append(PlanAlert(
                id=f"budget-exceeded-{_LEVEL_ID_SLUGS[level]}-{dist.id}",
                level=AlertLevel.WARNING,
                category=AlertCategory.BUDGET,
                title=f"{label} exceeds budget",
                description=f"{ctx.reference_name(dist, level)} has {ctx.money(excess)} allocated beyond plan",
                action='Redistribute the budget across lines',
                metadata={'excess': excess, 'allocated': allocated, 'planned': planned}
            ))
    return alerts


@register_plan_check
def check_empty_allocations(ctx: _AlertContext) -> List[PlanAlert]:
    alerts = []
    for level in ctx.levels:
        for dist in ctx.distributions_at(level):
            planned = coerce_amount(dist.amount)
            if not dist.reference_id or planned <= 0:
                continue
            if ctx.matching_lines(dist):
                continue
            label = level_label(level)
            name = ctx.reference_name(dist, level)
            alerts.append(PlanAlert(
                id=f"{_EMPTY_ID_PREFIXES[level]}-{dist.id}",
                level=AlertLevel.WARNING if level == HierarchyLevel.MOMENT else AlertLevel.INFO,
                category=AlertCategory.CONFIG,
                title=f"{label} without lines",
                description=f"{name} has planned budget ({ctx.money(planned)}) but no lines allocated",
                action=f"Add media lines for this {label.lower()}",
                metadata={'planned': planned}
            ))
    return alerts


@register_plan_check
def check_orphaned_references(ctx: _AlertContext) -> List[PlanAlert]:
    alerts = []
    for level, known in ctx.known_references.items():
        for dist in ctx.distributions_at(level):
            if dist.reference_id and dist.reference_id not in known:
                label = level_label(level)
                alerts.append(PlanAlert(
                    id=f"orphaned-reference-{dist.id}",
                    level=AlertLevel.WARNING,
                    category=AlertCategory.CONFIG,
                    title=f"{label} no longer exists",
                    description=f"A {label.lower()} with planned budget ({ctx.money(coerce_amount(dist.amount))}) was removed",
                    action=f"Reassign its lines to an existing {label.lower()}",
                    metadata={'planned': coerce_amount(dist.amount)}
                ))
    return alerts


@register_plan_check
def check_budget_concentration(ctx: _AlertContext) -> List[PlanAlert]:
    if ctx.total_budget <= 0 or len(ctx.lines) <= 1:
        return []
    alerts = []
    for line in ctx.lines:
        concentration = coerce_amount(line.budget) / ctx.total_budget * 100
        if concentration > ctx.thresholds.concentration_pct:
            alerts.append(PlanAlert(
                id=f"budget-concentration-{line.id}",
                level=AlertLevel.WARNING,
                category=AlertCategory.BUDGET,
                title='Budget concentration',
                description=f'Line "{line.label}" holds {concentration:.1f}% of the total budget',
                action='Consider spreading the budget across more lines',
                line_id=line.id,
                metadata={'percentage': concentration}
            ))
    return alerts


@register_plan_check
def check_underutilization(ctx: _AlertContext) -> List[PlanAlert]:
    if ctx.total_budget <= 0 or not ctx.lines:
        return []
    utilization = ctx.allocated / ctx.total_budget * 100
    if utilization >= ctx.thresholds.underutilization_pct:
        return []
    remaining = ctx.total_budget - ctx.allocated
    return [PlanAlert(
        id='budget-underutilized',
        level=AlertLevel.INFO,
        category=AlertCategory.BUDGET,
        title='Budget underutilized',
        description=f"Only {utilization:.1f}% of the budget is allocated. {ctx.money(remaining)} remaining",
        action='Distribute the remaining budget across existing lines or create new ones',
        metadata={'utilization': utilization, 'remaining': remaining}
    )]


# Per-line checks

@register_line_check
def check_line_creatives(ctx: _AlertContext, line: MediaLine) -> List[PlanAlert]:
    creatives = ctx.creatives_by_line.get(line.id) or []
    if not creatives:
        return [PlanAlert(
            id=f"no-creatives-{line.id}",
            level=AlertLevel.WARNING,
            category=AlertCategory.CREATIVE,
            title='Line without creatives',
            description=f'Line "{line.label}" has no creatives',
            action='Add creatives to this line',
            line_id=line.id
        )]
    return [
        PlanAlert(
            id=f"creative-no-format-{creative.id}",
            level=AlertLevel.INFO,
            category=AlertCategory.CREATIVE,
            title='Creative without format',
            description=f'Creative "{creative.name}" has no format selected',
            action='Set a format for the creative',
            line_id=line.id
        )
        for creative in creatives if not creative.format_id
    ]


@register_line_check
def check_line_utms(ctx: _AlertContext, line: MediaLine) -> List[PlanAlert]:
    if not line.utm_source and not line.utm_medium and not line.utm_campaign:
        return [PlanAlert(
            id=f"no-utms-{line.id}",
            level=AlertLevel.INFO,
            category=AlertCategory.UTM,
            title='UTMs not configured',
            description=f'Line "{line.label}" has no UTM parameters',
            action='Configure UTMs for tracking',
            line_id=line.id
        )]
    if not line.utm_validated:
        return [PlanAlert(
            id=f"utm-pending-{line.id}",
            level=AlertLevel.INFO,
            category=AlertCategory.UTM,
            title='UTM pending validation',
            description=f'Line "{line.label}" has UTMs configured but not validated',
            action='Review and validate the UTM parameters',
            line_id=line.id
        )]
    return []


@register_line_check
def check_line_period(ctx: _AlertContext, line: MediaLine) -> List[PlanAlert]:
    alerts = []
    start = parse_date(line.start_date)
    end = parse_date(line.end_date)

    if start and end:
        if ctx.plan_start and start < ctx.plan_start:
            alerts.append(PlanAlert(
                id=f"line-before-plan-{line.id}",
                level=AlertLevel.WARNING,
                category=AlertCategory.TIMING,
                title='Line starts before the plan',
                description=f'Line "{line.label}" starts before the plan start date',
                action='Adjust the line start date',
                line_id=line.id
            ))

        if ctx.plan_end and end > ctx.plan_end:
            alerts.append(PlanAlert(
                id=f"line-after-plan-{line.id}",
                level=AlertLevel.WARNING,
                category=AlertCategory.TIMING,
                title='Line ends after the plan',
                description=f'Line "{line.label}" ends after the plan end date',
                action='Adjust the line end date',
                line_id=line.id
            ))

        if end < ctx.today and coerce_amount(line.budget) > 0:
            alerts.append(PlanAlert(
                id=f"line-ended-{line.id}",
                level=AlertLevel.INFO,
                category=AlertCategory.TIMING,
                title='Line ended',
                description=f'Line "{line.label}" is past its end date',
                action='Review the results and update the status',
                line_id=line.id
            ))

    if not start or not end:
        alerts.append(PlanAlert(
            id=f"no-dates-{line.id}",
            level=AlertLevel.INFO,
            category=AlertCategory.TIMING,
            title='Dates not set',
            description=f'Line "{line.label}" has no defined period',
            action='Set the start and end dates',
            line_id=line.id
        ))

    return alerts


@register_line_check
def check_line_zero_budget(ctx: _AlertContext, line: MediaLine) -> List[PlanAlert]:
    if abs(coerce_amount(line.budget)) >= ctx.thresholds.epsilon:
        return []
    return [PlanAlert(
        id=f"zero-budget-{line.id}",
        level=AlertLevel.WARNING,
        category=AlertCategory.BUDGET,
        title='Line without budget',
        description=f'Line "{line.label}" has no budget defined',
        action='Set a budget for this line',
        line_id=line.id
    )]


@register_line_check
def check_line_monthly_budgets(ctx: _AlertContext, line: MediaLine) -> List[PlanAlert]:
    entries = ctx.monthly_budgets_by_line.get(line.id) or []
    if not entries:
        return []
    line_budget = coerce_amount(line.budget)
    monthly_total = sum(coerce_amount(entry.amount) for entry in entries)
    difference = line_budget - monthly_total
    if abs(difference) <= ctx.thresholds.epsilon:
        return []

    if difference > 0:
        action = f"Distribute the remaining {ctx.money(difference)} across the months"
    else:
        action = f"Reduce the monthly allocation by {ctx.money(abs(difference))}"

    return [PlanAlert(
        id=f"monthly-mismatch-{line.id}",
        level=AlertLevel.ERROR,
        category=AlertCategory.BUDGET,
        title='Monthly budget mismatch',
        description=(
            f'Line "{line.label}" budget ({ctx.money(line_budget)}) differs from its monthly '
            f'allocation ({ctx.money(monthly_total)}) by {ctx.money(abs(difference))}'
        ),
        action=action,
        line_id=line.id,
        metadata={'difference': difference, 'monthly_total': monthly_total}
    )]


def evaluate_plan_alerts(data: PlanAlertInput,
                         today: Optional[date] = None,
                         thresholds: Optional[AlertThresholds] = None) -> AlertReport:
    """
    Run every registered check over a plan snapshot.

    Args:
        data: Plan, line, distribution and auxiliary data
        today: Reference date for "line ended" checks (defaults to today)
        thresholds: Check limits (defaults to AlertThresholds())

    Returns:
        AlertReport with alerts in check order, duplicates by id removed
    """
    ctx = _AlertContext(data, today or date.today(), thresholds or AlertThresholds())

    alerts: List[PlanAlert] = []
    for plan_check in PLAN_CHECKS:
        alerts.extend(plan_check(ctx))
    for line in ctx.lines:
        for line_check in LINE_CHECKS:
            alerts.extend(line_check(ctx, line))

    unique: List[PlanAlert] = []
    seen_ids = set()
    for alert in alerts:
        if alert.id in seen_ids:
            continue
        seen_ids.add(alert.id)
        unique.append(alert)

    logger.debug(f"Alert evaluation produced {len(unique)} alerts for {len(ctx.lines)} lines")
    return AlertReport(alerts=unique)
