# Scheduler: duration negotiation and state-space beam search over free-time gaps.

from scheduler.duration import (
    AllocationResult,
    allocate_durations_to_gap,
    calculate_effective_duration,
    can_shrink,
)
from scheduler.state_search import StateSearchScheduler, schedule_suggestions, validate_gaps

__all__ = [
    "AllocationResult",
    "StateSearchScheduler",
    "allocate_durations_to_gap",
    "calculate_effective_duration",
    "can_shrink",
    "schedule_suggestions",
    "validate_gaps",
]
