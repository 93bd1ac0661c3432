"""
Hierarchy configuration for plan budget breakdowns.

A plan declares an ordered list of up to three classification levels
(subdivision, moment, funnel stage). Every mutation here is a pure
transformation returning a new list; invalid configurations are rejected
before any store interaction happens.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from models.data_models import HierarchyLevel, HierarchyLevelConfig, MediaLine

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


MAX_HIERARCHY_DEPTH = 3

DEFAULT_HIERARCHY_ORDER = [
    HierarchyLevel.SUBDIVISION,
    HierarchyLevel.MOMENT,
    HierarchyLevel.FUNNEL_STAGE,
]

LEVEL_LABELS = {
    HierarchyLevel.SUBDIVISION: {
        'label': 'Subdivision',
        'label_plural': 'Subdivisions',
        'description': 'Split by region, product or segment',
    },
    HierarchyLevel.MOMENT: {
        'label': 'Moment',
        'label_plural': 'Moments',
        'description': 'Time phases such as launch and sustain',
    },
    HierarchyLevel.FUNNEL_STAGE: {
        'label': 'Funnel stage',
        'label_plural': 'Funnel stages',
        'description': 'Stages: awareness, consideration, conversion',
    },
}

_LINE_REFERENCE_FIELDS = {
    HierarchyLevel.SUBDIVISION: 'subdivision_id',
    HierarchyLevel.MOMENT: 'moment_id',
    HierarchyLevel.FUNNEL_STAGE: 'funnel_stage_id',
}

LevelLike = Union[HierarchyLevel, str]


class HierarchyConfigError(ValueError):
    """Raised for duplicate, unknown or too many hierarchy levels."""
    pass


def to_level(value: LevelLike) -> HierarchyLevel:
    """Coerce a level name to HierarchyLevel."""
    if isinstance(value, HierarchyLevel):
        return value
    try:
        return HierarchyLevel(value)
    except ValueError:
        raise HierarchyConfigError(f"Unknown hierarchy level: {value!r}")


def _to_config(item: Any) -> HierarchyLevelConfig:
    if isinstance(item, HierarchyLevelConfig):
        return HierarchyLevelConfig(level=to_level(item.level), allocate_budget=bool(item.allocate_budget))
    if isinstance(item, dict):
        if 'level' not in item:
            raise HierarchyConfigError(f"Hierarchy entry missing 'level': {item!r}")
        return HierarchyLevelConfig(
            level=to_level(item['level']),
            allocate_budget=bool(item.get('allocate_budget', True))
        )
    # Legacy shape: bare level, always allocates
    return HierarchyLevelConfig(level=to_level(item), allocate_budget=True)


def _check(configs: List[HierarchyLevelConfig]) -> List[HierarchyLevelConfig]:
    if len(configs) > MAX_HIERARCHY_DEPTH:
        raise HierarchyConfigError(
            f"A plan supports at most {MAX_HIERARCHY_DEPTH} hierarchy levels, got {len(configs)}"
        )
    levels = [c.level for c in configs]
    if len(set(levels)) != len(levels):
        raise HierarchyConfigError(f"Duplicate hierarchy levels: {[l.value for l in levels]}")
    return configs


def normalize_hierarchy_config(raw: Optional[Iterable[Any]]) -> List[HierarchyLevelConfig]:
    """
    Normalize a stored hierarchy order to the full config shape.

    Args:
        raw: None, a list of level names, a list of dicts with 'level' and
            'allocate_budget', or a list of HierarchyLevelConfig

    Returns:
        List of HierarchyLevelConfig in nesting order

    Raises:
        HierarchyConfigError: If a level is unknown, duplicated, or more
            than three levels are given
    """
    if raw is None:
        return []
    return _check([_to_config(item) for item in raw])


def serialize_hierarchy_config(config: List[HierarchyLevelConfig]) -> List[Dict[str, Any]]:
    """Store representation of a hierarchy config."""
    return [{'level': c.level.value, 'allocate_budget': c.allocate_budget} for c in config]


def get_hierarchy_order(config: List[HierarchyLevelConfig]) -> List[HierarchyLevel]:
    return [c.level for c in config]


def should_allocate_budget(config: List[HierarchyLevelConfig], level: LevelLike) -> bool:
    """Whether a level receives a user-declared amount. Unknown levels default to True."""
    level = to_level(level)
    for c in config:
        if c.level == level:
            return c.allocate_budget
    return True


def validate_hierarchy_order(order: Iterable[Any]) -> bool:
    """True for a non-empty order of at most three distinct known levels."""
    try:
        configs = normalize_hierarchy_config(order)
    except HierarchyConfigError:
        return False
    return len(configs) > 0


def add_level(config: List[HierarchyLevelConfig], level: LevelLike,
              allocate_budget: bool = True) -> List[HierarchyLevelConfig]:
    """Append a level as the innermost one."""
    level = to_level(level)
    if any(c.level == level for c in config):
        raise HierarchyConfigError(f"Level {level.value} is already configured")
    if len(config) >= MAX_HIERARCHY_DEPTH:
        raise HierarchyConfigError(f"Cannot add {level.value}: {MAX_HIERARCHY_DEPTH} levels already configured")
    return list(config) + [HierarchyLevelConfig(level=level, allocate_budget=allocate_budget)]


def remove_level(config: List[HierarchyLevelConfig], level: LevelLike) -> List[HierarchyLevelConfig]:
    """
    Remove a level from the configuration.

    Any stored distribution tree becomes stale; the caller must rebuild it.
    """
    level = to_level(level)
    if not any(c.level == level for c in config):
        raise HierarchyConfigError(f"Level {level.value} is not configured")
    return [c for c in config if c.level != level]


def swap_levels(config: List[HierarchyLevelConfig], first: int, second: int) -> List[HierarchyLevelConfig]:
    """Swap the positions of two levels."""
    size = len(config)
    for index in (first, second):
        if not 0 <= index < size:
            raise HierarchyConfigError(f"Position {index} out of range for {size} levels")
    reordered = list(config)
    reordered[first], reordered[second] = reordered[second], reordered[first]
    return reordered


def move_level(config: List[HierarchyLevelConfig], level: LevelLike, direction: int) -> List[HierarchyLevelConfig]:
    """Move a level one position up (direction < 0) or down (direction > 0)."""
    level = to_level(level)
    positions = [i for i, c in enumerate(config) if c.level == level]
    if not positions:
        raise HierarchyConfigError(f"Level {level.value} is not configured")
    target = positions[0] + (1 if direction > 0 else -1)
    return swap_levels(config, positions[0], target)


def toggle_allocate_budget(config: List[HierarchyLevelConfig], level: LevelLike) -> List[HierarchyLevelConfig]:
    """Flip the allocate_budget flag of a level."""
    level = to_level(level)
    if not any(c.level == level for c in config):
        raise HierarchyConfigError(f"Level {level.value} is not configured")
    return [
        HierarchyLevelConfig(level=c.level, allocate_budget=not c.allocate_budget) if c.level == level else c
        for c in config
    ]


def hierarchy_changed(old: List[HierarchyLevelConfig], new: List[HierarchyLevelConfig]) -> bool:
    """True when the level sequence differs. Flag toggles alone keep the tree valid."""
    return get_hierarchy_order(old) != get_hierarchy_order(new)


def line_reference_for_level(line: MediaLine, level: LevelLike) -> Optional[str]:
    """The line's reference id for a hierarchy level, or None when unassigned."""
    field_name = _LINE_REFERENCE_FIELDS[to_level(level)]
    return getattr(line, field_name, None) or None


def level_label(level: LevelLike, plural: bool = False) -> str:
    labels = LEVEL_LABELS[to_level(level)]
    return labels['label_plural'] if plural else labels['label']


def level_description(level: LevelLike) -> str:
    return LEVEL_LABELS[to_level(level)]['description']
