"""
Suggestion Scoring.

Turns a memo into need / importance / duration numbers and then into a
Suggestion. Need ranges are disjoint by type so that only deadline tasks
can become mandatory:

- deadline: 0.1 -> 1.0 (mandatory once due)
- routine:  0.0 -> 0.9 (shown at most 0.49 once the period goal is met)
- backlog:  0.5 -> 0.7 (grows with neglect)

Callers are expected to run `memo_state.reset_period_if_needed` first so
that "today" flags reflect `current_time`.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from engine.config_manager import SuggestionConfig, config as default_config
from engine.models import Memo, MemoType, RecurrenceGoal, Suggestion
from engine.period_utils import days_between, is_same_day, period_length_days

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class ScoreOutput:
    need: float
    importance: float
    duration: int           # ideal minutes
    min_duration: int       # floor minutes
    is_hidden: bool


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# === Duration ===

def select_session_duration(memo: Memo, cfg: SuggestionConfig = default_config) -> int:
    """
    Minutes per sitting.

    Priority: explicit session_duration > total / SESSIONS_PER_TOTAL > default.
    """
    low, high = cfg.MIN_SESSION_MINUTES, cfg.MAX_SESSION_MINUTES

    if memo.session_duration:
        return int(_clamp(memo.session_duration, low, high))
    if memo.total_duration_expected:
        per_session = math.ceil(memo.total_duration_expected / cfg.SESSIONS_PER_TOTAL)
        return int(_clamp(per_session, low, high))
    return cfg.DEFAULT_SESSION_MINUTES


def _deadline_span(memo: Memo):
    if memo.deadline_state is not None:
        return memo.deadline_state.created_day, memo.deadline_state.deadline_day
    return memo.created_at, memo.deadline


def deadline_curve_duration(base: int, day_index: int, total_days: int, max_factor: float) -> float:
    """Linear ramp from `base` on the creation day to `base * max_factor` on the deadline day."""
    if total_days <= 1:
        return base * max_factor
    progress = _clamp(day_index / (total_days - 1), 0.0, 1.0)
    return base * (1 + (max_factor - 1) * progress)


def calculate_deadline_duration(
    memo: Memo,
    base: int,
    current_time: datetime,
    cfg: SuggestionConfig = default_config,
) -> int:
    """
    Ideal session length for a deadline task.

    The curve value for today is scaled by a multiplier fitted from the
    minutes actually logged on earlier days (exponential smoothing of
    actual / expected), then clamped to [base, base * factor].
    """
    created, deadline = _deadline_span(memo)
    if deadline is None:
        return base

    factor = cfg.DEADLINE_DURATION_MAX_FACTOR
    total_days = max(1, days_between(created, deadline) + 1)
    today_index = int(_clamp(days_between(created, current_time), 0, total_days - 1))

    multiplier = 1.0
    alpha = cfg.DEADLINE_DURATION_SMOOTHING
    actual_durations = memo.deadline_state.actual_durations if memo.deadline_state else []
    for day_index, actual in enumerate(actual_durations[:today_index]):
        if not actual or actual <= 0:
            continue
        expected = deadline_curve_duration(base, day_index, total_days, factor)
        multiplier = alpha * (actual / expected) + (1 - alpha) * multiplier

    ideal = deadline_curve_duration(base, today_index, total_days, factor) * multiplier
    return int(round(_clamp(ideal, base, base * factor)))


# === Need ===

def calculate_deadline_need(
    memo: Memo,
    current_time: datetime,
    cfg: SuggestionConfig = default_config,
) -> float:
    if memo.deadline_state is not None and memo.deadline_state.rejected_today:
        return 0.0
    if memo.deadline is None:
        return cfg.DEADLINE_NEED_DEFAULT

    low, high = cfg.DEADLINE_NEED_MIN, cfg.DEADLINE_NEED_MAX
    deadline = memo.deadline
    created = memo.created_at

    if current_time >= deadline or is_same_day(current_time, deadline):
        return high

    span = (deadline - created).total_seconds()
    if span <= SECONDS_PER_DAY:
        return high

    elapsed = (current_time - created).total_seconds()
    position = _clamp(elapsed / span, 0.0, 1.0)
    return low + (high - low) * position


def calculate_routine_need(
    memo: Memo,
    current_time: datetime,
    cfg: SuggestionConfig = default_config,
) -> float:
    state = memo.routine_state
    if state is not None and (state.accepted_today or state.completed_today or state.rejected_today):
        return 0.0

    goal = memo.recurrence_goal or RecurrenceGoal(count=1)
    count = max(1, goal.count)
    ideal_interval_days = period_length_days(goal.period) / count

    last = state.last_completed_day if state is not None else None
    reference = last or memo.created_at
    days_since = max(0.0, (current_time - reference).total_seconds() / SECONDS_PER_DAY)

    need = min(cfg.ROUTINE_NEED_MAX, days_since * cfg.ROUTINE_NEED_MAX / ideal_interval_days)

    goal_met = memo.status.completions_this_period >= count
    if goal_met or (state is not None and state.was_capped_this_period):
        need = min(need, cfg.ROUTINE_GOAL_MET_CAP)
    return need


def calculate_backlog_need(
    memo: Memo,
    current_time: datetime,
    cfg: SuggestionConfig = default_config,
) -> float:
    state = memo.backlog_state
    if state is not None and (state.accepted_today or state.rejected_today):
        return 0.0

    last = state.last_completed_day if state is not None else None
    reference = last or memo.created_at
    days_since = max(0, days_between(reference, current_time))

    return min(cfg.BACKLOG_NEED_MAX, cfg.BACKLOG_NEED_MIN + cfg.BACKLOG_DAILY_GROWTH * days_since)


def calculate_need(memo: Memo, current_time: datetime, cfg: SuggestionConfig = default_config) -> float:
    memo_type = MemoType(memo.type)
    if memo_type == MemoType.DEADLINE:
        return calculate_deadline_need(memo, current_time, cfg)
    if memo_type == MemoType.ROUTINE:
        return calculate_routine_need(memo, current_time, cfg)
    return calculate_backlog_need(memo, current_time, cfg)


# === Public API ===

def score_memo(
    memo: Memo,
    current_time: datetime,
    cfg: SuggestionConfig = default_config,
) -> ScoreOutput:
    need = calculate_need(memo, current_time, cfg)
    importance = cfg.importance_value(memo.importance)
    base = select_session_duration(memo, cfg)

    if MemoType(memo.type) == MemoType.DEADLINE:
        duration = calculate_deadline_duration(memo, base, current_time, cfg)
    else:
        duration = base

    return ScoreOutput(
        need=need,
        importance=importance,
        duration=max(duration, base),
        min_duration=base,
        is_hidden=need < cfg.DISPLAY_THRESHOLD,
    )


def suggestion_id_for(memo_id: str, current_time: datetime) -> str:
    return f"suggestion-{memo_id}-{int(current_time.timestamp())}"


def memo_to_suggestion(memo: Memo, score: ScoreOutput, current_time: datetime) -> Suggestion:
    return Suggestion(
        id=suggestion_id_for(memo.id, current_time),
        memo_id=memo.id,
        need=score.need,
        importance=score.importance,
        duration=score.duration,
        min_duration=score.min_duration,
        type=MemoType(memo.type),
        location_preference=memo.location_preference,
        is_hidden=score.is_hidden,
    )


def create_suggestion_from_memo(
    memo: Memo,
    current_time: Optional[datetime] = None,
    cfg: SuggestionConfig = default_config,
) -> Suggestion:
    now = current_time or datetime.now()
    return memo_to_suggestion(memo, score_memo(memo, now, cfg), now)


def is_mandatory(suggestion: Suggestion, cfg: SuggestionConfig = default_config) -> bool:
    return cfg.is_mandatory(suggestion.need)
