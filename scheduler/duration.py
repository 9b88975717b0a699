"""
Duration negotiation: shrink / extend a single task, and share one gap
between several competing tasks.

Only types listed in SHRINKABLE_TYPES (deadline by default) may shrink
below their ideal duration; the rest are placed whole or not at all.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from engine.config_manager import SuggestionConfig, config as default_config
from engine.models import MemoType, Suggestion
from engine.utils import snap_down


@dataclass
class AllocationResult:
    # suggestion id -> minutes, in selection order
    allocations: Dict[str, int] = field(default_factory=dict)
    dropped: List[Suggestion] = field(default_factory=list)


def can_shrink(task_type, cfg: SuggestionConfig = default_config) -> bool:
    return MemoType(task_type).value in cfg.SHRINKABLE_TYPES


def effective_base_duration(suggestion: Suggestion, cfg: SuggestionConfig = default_config) -> int:
    """Smallest duration the task may be placed at."""
    if can_shrink(suggestion.type, cfg):
        return suggestion.base_duration
    return suggestion.duration


def sort_by_priority(suggestions: Sequence[Suggestion]) -> List[Suggestion]:
    """Highest need + importance first; equal priorities keep input order."""
    return sorted(suggestions, key=lambda s: -s.priority)


def calculate_effective_duration(
    ideal: int,
    base: int,
    available: int,
    task_type,
    cfg: SuggestionConfig = default_config,
) -> int:
    """
    Duration for one task given `available` minutes, or 0 if it cannot fit.

    - available < floor: 0
    - floor <= available < ideal: shrink to available on the step grid
      (0 if snapping drops below the floor)
    - otherwise extend in steps up to min(ideal * max_factor, available)
      when the surplus reaches EXTENSION_MIN_EXTRA_MINUTES
    """
    step = cfg.STEP_MINUTES
    floor = base if can_shrink(task_type, cfg) else ideal

    if available < floor:
        return 0

    if available < ideal:
        snapped = snap_down(available, step)
        return snapped if snapped >= floor else 0

    extra = available - ideal
    if not cfg.EXTENSION_ENABLED or extra < cfg.EXTENSION_MIN_EXTRA_MINUTES:
        return ideal

    max_extended = int(ideal * cfg.EXTENSION_MAX_FACTOR)
    return min(ideal + snap_down(extra, step), max_extended, available)


def allocate_durations_to_gap(
    suggestions: Sequence[Suggestion],
    gap_duration: int,
    cfg: SuggestionConfig = default_config,
) -> AllocationResult:
    """
    Share one gap between competing suggestions.

    Phase 1 admits tasks by priority while their effective base durations
    still fit. Phase 2 hands the slack out tier by tier (mandatory, high,
    normal), each tier receiving a proportional share of what its tasks
    still want to reach their ideal duration. Allocations are finally
    snapped down to the step grid unless that would cross the base.
    """
    result = AllocationResult()
    selected: List[Suggestion] = []
    total_base = 0

    for suggestion in sort_by_priority(suggestions):
        base = effective_base_duration(suggestion, cfg)
        if total_base + base <= gap_duration:
            selected.append(suggestion)
            result.allocations[suggestion.id] = base
            total_base += base
        else:
            result.dropped.append(suggestion)

    remaining = gap_duration - total_base
    thresholds = list(cfg.TIER_THRESHOLDS)

    for index, threshold in enumerate(thresholds):
        if remaining <= 0:
            break

        lower = threshold - cfg.TOLERANCE
        upper = None if index == 0 else thresholds[index - 1] - cfg.TOLERANCE
        tier = [
            s for s in selected
            if s.need >= lower and (upper is None or s.need < upper)
        ]

        wanted = [(s, max(0, s.duration - result.allocations[s.id])) for s in tier]
        total_wanted = sum(want for _, want in wanted)
        if total_wanted <= 0:
            continue

        ratio = min(remaining, total_wanted) / total_wanted
        for suggestion, want in wanted:
            extension = int(want * ratio)
            result.allocations[suggestion.id] += extension
            remaining -= extension

    for suggestion in selected:
        snapped = snap_down(result.allocations[suggestion.id], cfg.STEP_MINUTES)
        if snapped >= effective_base_duration(suggestion, cfg):
            result.allocations[suggestion.id] = snapped

    return result


def get_task_expansion_levels(
    gap_remaining: int,
    base_duration: int,
    ideal_duration: int,
    cfg: SuggestionConfig = default_config,
) -> List[int]:
    """
    Candidate durations for a task placed into `gap_remaining` minutes:
    each EXPANSION_LEVELS fraction of the room, snapped down, capped at the
    ideal duration and kept only if it still meets the base. The ideal
    duration itself is always a candidate when it fits, even off the grid.
    """
    levels = set()
    for fraction in cfg.EXPANSION_LEVELS:
        duration = snap_down(int(gap_remaining * fraction), cfg.STEP_MINUTES)
        duration = min(duration, ideal_duration)
        if duration >= base_duration:
            levels.add(duration)
    if base_duration <= ideal_duration <= gap_remaining:
        levels.add(ideal_duration)
    return sorted(levels)
