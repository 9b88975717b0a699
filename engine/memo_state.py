"""
Memo state transitions.

Applies accept / reject / session-log events and day or period rollover to
memos. Every function returns a new Memo; the input is never mutated, so the
task store can diff old and new objects before persisting.
"""
import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from engine.config_manager import SuggestionConfig, config as default_config
from engine.exceptions import InputValidationError
from engine.logger import get_logger
from engine.models import (
    AcceptedSlot,
    BacklogState,
    CompletionState,
    DeadlineState,
    Memo,
    MemoType,
    Period,
    RoutineState,
)
from engine.period_utils import (
    days_between,
    get_creation_aligned_period_start,
    is_new_creation_aligned_period,
    is_same_day,
    start_of_day,
)

logger = get_logger("memo_state")


@dataclass
class SessionCompleteResult:
    memo: Memo
    is_now_complete: bool
    goal_reached: bool


def _routine_period(memo: Memo) -> Period:
    if memo.recurrence_goal is None:
        return Period.WEEK
    return Period(memo.recurrence_goal.period)


def initialize_state(memo: Memo, now: Optional[datetime] = None) -> Memo:
    """Attach the type-specific state record if the memo has none yet."""
    updated = copy.deepcopy(memo)
    memo_type = MemoType(updated.type)

    if memo_type == MemoType.ROUTINE:
        if updated.routine_state is None:
            updated.routine_state = RoutineState()
        if updated.status.period_start_date is None:
            updated.status.period_start_date = get_creation_aligned_period_start(
                updated.created_at, now or updated.created_at, _routine_period(updated)
            )
    elif memo_type == MemoType.BACKLOG:
        if updated.backlog_state is None:
            updated.backlog_state = BacklogState()
    elif updated.deadline_state is None and updated.deadline is not None:
        updated.deadline_state = DeadlineState(
            created_day=start_of_day(updated.created_at),
            deadline_day=start_of_day(updated.deadline),
        )

    return updated


def _roll_routine_period(memo: Memo, now: datetime) -> bool:
    """Reset the period counter in place when `now` entered a new creation-aligned period."""
    period = _routine_period(memo)
    last_start = memo.status.period_start_date or start_of_day(memo.created_at)

    if not is_new_creation_aligned_period(last_start, now, period, memo.created_at):
        if memo.status.period_start_date is None:
            memo.status.period_start_date = last_start
        return False

    memo.status.completions_this_period = 0
    memo.status.period_start_date = get_creation_aligned_period_start(memo.created_at, now, period)
    if memo.routine_state is not None:
        memo.routine_state.was_capped_this_period = False
    return True


def reset_period_if_needed(memo: Memo, now: datetime) -> Memo:
    """
    Clear day flags and roll routine periods forward.

    Day boundaries are detected from `last_activity`; a memo with no
    recorded activity keeps its flags. Deadline memos with accepted slots but
    no activity timestamp are reset as well.
    """
    updated = copy.deepcopy(memo)
    memo_type = MemoType(updated.type)
    last_activity = updated.last_activity
    new_day = last_activity is not None and not is_same_day(last_activity, now)

    if memo_type == MemoType.ROUTINE:
        state = updated.routine_state
        if new_day and state is not None:
            state.accepted_today = False
            state.completed_today = False
            state.rejected_today = False
            state.accepted_slot = None
            updated.status.time_spent_today = 0
        if _roll_routine_period(updated, now):
            logger.debug(f"Routine {updated.id}: new period from {updated.status.period_start_date}")

    elif memo_type == MemoType.BACKLOG:
        state = updated.backlog_state
        if new_day and state is not None:
            state.accepted_today = False
            state.rejected_today = False
            state.accepted_slot = None
            updated.status.time_spent_today = 0

    else:
        state = updated.deadline_state
        if state is not None:
            orphan_slots = last_activity is None and bool(state.accepted_slots)
            if new_day or orphan_slots:
                state.accepted_slots = []
                state.rejected_today = False
                updated.status.time_spent_today = 0

    return updated


def log_session(
    memo: Memo,
    minutes: int,
    now: datetime,
    cfg: SuggestionConfig = default_config,
) -> Memo:
    """Record `minutes` of work done at `now`."""
    if minutes <= 0:
        raise InputValidationError(f"会话时长必须为正数: {minutes}", field_name="minutes")

    updated = initialize_state(memo, now)
    status = updated.status
    status.time_spent_minutes += minutes
    status.time_spent_today += minutes
    updated.last_activity = now
    if status.completion_state == CompletionState.NOT_STARTED:
        status.completion_state = CompletionState.IN_PROGRESS

    memo_type = MemoType(updated.type)

    if memo_type == MemoType.ROUTINE:
        _roll_routine_period(updated, now)
        state = updated.routine_state
        goal_count = updated.recurrence_goal.count if updated.recurrence_goal else 1
        status.completions_this_period += 1
        if status.completions_this_period >= goal_count:
            state.was_capped_this_period = True
        state.accepted_today = True
        state.completed_today = True
        state.previous_last_completed_day = state.last_completed_day
        state.last_completed_day = now

    elif memo_type == MemoType.BACKLOG:
        state = updated.backlog_state
        state.accepted_today = True
        state.previous_last_completed_day = state.last_completed_day
        state.last_completed_day = now

    elif updated.deadline_state is not None:
        state = updated.deadline_state
        total_days = state.total_days
        day_index = min(max(days_between(state.created_day, now), 0), total_days - 1)
        if len(state.actual_durations) < total_days:
            state.actual_durations.extend([0] * (total_days - len(state.actual_durations)))
        state.actual_durations[day_index] += minutes
        state.previous_last_completed_day = state.last_completed_day
        state.last_completed_day = now

    if memo_type != MemoType.ROUTINE and is_memo_complete(updated, cfg):
        status.completion_state = CompletionState.COMPLETED

    return updated


def mark_accepted(memo: Memo, now: datetime, slot: Optional[AcceptedSlot] = None) -> Memo:
    updated = initialize_state(memo, now)
    updated.last_activity = now
    memo_type = MemoType(updated.type)

    if memo_type in (MemoType.ROUTINE, MemoType.BACKLOG):
        state = updated.routine_state if memo_type == MemoType.ROUTINE else updated.backlog_state
        state.accepted_today = True
        state.rejected_today = False
        state.accepted_slot = slot
        state.previous_last_completed_day = state.last_completed_day
        state.last_completed_day = now
    elif updated.deadline_state is not None:
        updated.deadline_state.rejected_today = False
        if slot is not None:
            updated.deadline_state.accepted_slots.append(slot)

    return updated


def mark_rejected(memo: Memo, now: datetime) -> Memo:
    updated = initialize_state(memo, now)
    updated.last_activity = now
    memo_type = MemoType(updated.type)

    if memo_type == MemoType.ROUTINE:
        updated.routine_state.rejected_today = True
    elif memo_type == MemoType.BACKLOG:
        updated.backlog_state.rejected_today = True
    elif updated.deadline_state is not None:
        updated.deadline_state.rejected_today = True

    return updated


def reset_accepted_today(memo: Memo) -> Memo:
    """Undo today's acceptance (the slot was missed or removed)."""
    updated = copy.deepcopy(memo)
    memo_type = MemoType(updated.type)

    if memo_type in (MemoType.ROUTINE, MemoType.BACKLOG):
        state = updated.routine_state if memo_type == MemoType.ROUTINE else updated.backlog_state
        if state is None:
            return updated
        state.accepted_today = False
        state.accepted_slot = None
        state.last_completed_day = state.previous_last_completed_day
        state.previous_last_completed_day = None
        if memo_type == MemoType.ROUTINE:
            state.completed_today = False
    elif updated.deadline_state is not None:
        updated.deadline_state.accepted_slots = []

    return updated


def is_memo_complete(memo: Memo, cfg: SuggestionConfig = default_config) -> bool:
    expected = memo.total_duration_expected or cfg.DEFAULT_TOTAL_MINUTES
    return memo.status.time_spent_minutes >= expected


def is_routine_goal_reached(memo: Memo) -> bool:
    if MemoType(memo.type) != MemoType.ROUTINE or memo.recurrence_goal is None:
        return False
    return memo.status.completions_this_period >= memo.recurrence_goal.count
