"""
Core data models for the media plan budget allocation subsystem.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Union


class HierarchyLevel(str, Enum):
    """Classification dimensions a plan may break its budget down by."""
    SUBDIVISION = "subdivision"
    MOMENT = "moment"
    FUNNEL_STAGE = "funnel_stage"


@dataclass(frozen=True)
class HierarchyLevelConfig:
    """One configured level of a plan's hierarchy order."""
    level: HierarchyLevel
    allocate_budget: bool = True  # False = amount is the sum of its children


@dataclass
class MediaLine:
    """Tactical line item belonging to a media plan."""
    id: str
    media_plan_id: Optional[str] = None
    budget: Optional[float] = 0.0
    subdivision_id: Optional[str] = None
    moment_id: Optional[str] = None
    funnel_stage_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    platform: Optional[str] = None
    line_code: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_validated: bool = False

    @property
    def label(self) -> str:
        return self.line_code or self.platform or self.id


@dataclass
class MediaCreative:
    """Creative piece attached to a media line."""
    id: str
    media_line_id: str
    name: str = ""
    format_id: Optional[str] = None


@dataclass
class MonthlyBudget:
    """Monthly sub-allocation of a line's budget."""
    id: str
    media_line_id: str
    month_date: Optional[date] = None
    amount: float = 0.0


@dataclass
class Moment:
    """Named temporal phase of a plan (launch, sustain, ...)."""
    id: str
    name: str


@dataclass
class BudgetDistribution:
    """A node of the budget allocation tree as stored."""
    id: str
    distribution_type: Union[HierarchyLevel, str]  # raw string when the stored type is unknown
    reference_id: Optional[str]
    amount: float
    percentage: float
    parent_distribution_id: Optional[str] = None
    media_plan_id: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass
class MediaPlanRecord:
    """Scalar plan fields read by the budget subsystem."""
    id: str
    name: str = ""
    total_budget: float = 0.0
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    hierarchy_order: List[Any] = field(default_factory=list)
    client: Optional[str] = None
    campaign: Optional[str] = None


class AlertLevel(str, Enum):
    """Alert severity, most severe first."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class AlertCategory(str, Enum):
    """Alert categories used for filtering."""
    BUDGET = "budget"
    CREATIVE = "creative"
    CONFIG = "config"
    TIMING = "timing"
    UTM = "utm"


@dataclass
class PlanAlert:
    """Derived consistency finding. Never persisted."""
    id: str
    level: AlertLevel
    category: AlertCategory
    title: str
    description: str
    action: Optional[str] = None
    line_id: Optional[str] = None
    metadata: Dict[str, float] = field(default_factory=dict)


@dataclass
class PlanVersion:
    """Recorded snapshot of a plan, supplied by the versioning subsystem."""
    id: str
    media_plan_id: str
    version_number: int
    snapshot_data: Dict[str, Any]
    change_log: Optional[str] = None
    created_by: Optional[str] = None


def coerce_amount(value: Any) -> float:
    """Return a monetary value as float, treating missing or invalid values as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if amount != amount:  # NaN
        return 0.0
    return amount


def parse_date(value: Any) -> Optional[date]:
    """Parse a date, datetime or ISO string. Unparseable values become None."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.date() if isinstance(value, datetime) else value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None
