import pytest

from engine.config_manager import SuggestionConfig
from engine.exceptions import InputValidationError
from engine.models import Gap, LocationLabel, LocationPreference, MemoType, Suggestion
from engine.utils import time_to_minutes
from scheduler import StateSearchScheduler, schedule_suggestions, validate_gaps
from scheduler.state_search import ScheduleState, TaskAllocation, score_schedule_state, task_utility


def _suggestion(
    sid,
    need=0.6,
    importance=0.2,
    duration=30,
    min_duration=None,
    memo_type=MemoType.BACKLOG,
    location=LocationPreference.NO_PREFERENCE,
):
    return Suggestion(
        id=sid,
        memo_id=f"memo-{sid}",
        need=need,
        importance=importance,
        duration=duration,
        min_duration=duration if min_duration is None else min_duration,
        type=memo_type,
        location_preference=location,
    )


def _gap(gap_id, start, end, label=None):
    return Gap(
        gap_id=gap_id,
        start=start,
        end=end,
        duration=time_to_minutes(end) - time_to_minutes(start),
        location_label=label,
    )


def _assert_invariants(result, suggestions, gaps):
    by_gap = {g.gap_id: g for g in gaps}
    for block in result.scheduled:
        gap = by_gap[block.gap_id]
        assert time_to_minutes(block.start_time) >= time_to_minutes(gap.start)
        assert time_to_minutes(block.end_time) <= time_to_minutes(gap.end)
        assert block.duration == time_to_minutes(block.end_time) - time_to_minutes(block.start_time)

    scheduled_ids = {b.suggestion_id for b in result.scheduled}
    dropped_ids = {s.id for s in result.dropped}
    assert scheduled_ids.isdisjoint(dropped_ids)
    assert scheduled_ids | dropped_ids == {s.id for s in suggestions}


# === Scenarios ===

def test_mandatory_deadline_shrinks_into_short_gap():
    task = _suggestion("d", need=1.0, duration=70, min_duration=45, memo_type=MemoType.DEADLINE)
    gaps = [_gap("g1", "09:00", "09:50")]
    result = schedule_suggestions([task], gaps)

    assert len(result.scheduled) == 1
    block = result.scheduled[0]
    assert (block.start_time, block.end_time, block.duration) == ("09:00", "09:50", 50)
    assert result.dropped == []
    assert result.mandatory_dropped == []


def test_mandatory_task_below_base_is_reported():
    task = _suggestion("d", need=1.0, duration=70, min_duration=45, memo_type=MemoType.DEADLINE)
    gaps = [_gap("g1", "09:00", "09:40")]
    result = schedule_suggestions([task], gaps)

    assert result.scheduled == []
    assert result.dropped == [task]
    assert result.mandatory_dropped == [task]
    assert result.total_dropped_minutes == 70


def test_two_tasks_fill_one_gap_back_to_back():
    a, b = _suggestion("a"), _suggestion("b")
    gaps = [_gap("g1", "18:00", "19:00")]
    result = schedule_suggestions([a, b], gaps)

    assert [(x.suggestion_id, x.start_time, x.end_time) for x in result.scheduled] == [
        ("a", "18:00", "18:30"),
        ("b", "18:30", "19:00"),
    ]
    assert result.total_scheduled_minutes == 60
    _assert_invariants(result, [a, b], gaps)


def test_two_deadlines_share_one_gap_at_base_duration():
    first = _suggestion("d1", need=1.0, duration=60, min_duration=30, memo_type=MemoType.DEADLINE)
    second = _suggestion("d2", need=1.0, duration=60, min_duration=30, memo_type=MemoType.DEADLINE)
    gaps = [_gap("g1", "18:00", "19:00")]
    result = schedule_suggestions([first, second], gaps)

    assert sorted((b.suggestion_id, b.duration) for b in result.scheduled) == [("d1", 30), ("d2", 30)]
    assert result.dropped == []
    assert result.mandatory_dropped == []
    assert result.total_scheduled_minutes == 60
    _assert_invariants(result, [first, second], gaps)


def test_mandatory_admission_beats_higher_priority_optional():
    mandatory = _suggestion("m", need=1.0, importance=0.0, memo_type=MemoType.DEADLINE)
    optional = _suggestion("o", need=0.7, importance=0.4)
    gaps = [_gap("g1", "12:00", "12:30")]
    result = schedule_suggestions([optional, mandatory], gaps)

    assert [b.suggestion_id for b in result.scheduled] == ["m"]
    assert result.mandatory_dropped == []
    assert result.capped_out == [optional]


def test_two_mandatory_tasks_spread_over_gaps():
    first = _suggestion("m1", need=1.0, duration=60, min_duration=40, memo_type=MemoType.DEADLINE)
    second = _suggestion("m2", need=1.0, duration=60, min_duration=40, memo_type=MemoType.DEADLINE)
    gaps = [_gap("g1", "09:00", "10:00"), _gap("g2", "14:00", "15:00")]
    result = schedule_suggestions([first, second], gaps)

    assert {b.suggestion_id for b in result.scheduled} == {"m1", "m2"}
    assert result.mandatory_dropped == []
    _assert_invariants(result, [first, second], gaps)


# === Location ===

def test_location_preference_is_respected():
    home_task = _suggestion("h", location=LocationPreference.HOME)
    gaps = [_gap("work", "10:00", "11:00", LocationLabel.WORKPLACE)]
    assert schedule_suggestions([home_task], gaps).scheduled == []

    gaps.append(_gap("home", "19:00", "20:00", LocationLabel.HOME))
    result = schedule_suggestions([home_task], gaps)
    assert [b.gap_id for b in result.scheduled] == ["home"]


# === Properties ===

def test_invariants_on_mixed_day():
    suggestions = [
        _suggestion("d1", need=1.0, importance=0.4, duration=90, min_duration=30, memo_type=MemoType.DEADLINE),
        _suggestion("d2", need=0.55, duration=60, min_duration=20, memo_type=MemoType.DEADLINE),
        _suggestion("r1", need=0.9, duration=45, memo_type=MemoType.ROUTINE),
        _suggestion("r2", need=0.3, duration=20, memo_type=MemoType.ROUTINE),
        _suggestion("b1", need=0.7, duration=30, location=LocationPreference.HOME),
        _suggestion("b2", need=0.5, duration=40),
    ]
    gaps = [
        _gap("morning", "07:00", "08:00", LocationLabel.HOME),
        _gap("lunch", "12:00", "13:00", LocationLabel.WORKPLACE),
        _gap("evening", "18:00", "20:30", LocationLabel.HOME),
    ]
    result = schedule_suggestions(suggestions, gaps)

    _assert_invariants(result, suggestions, gaps)
    assert "d1" in {b.suggestion_id for b in result.scheduled}
    assert result.total_scheduled_minutes == sum(b.duration for b in result.scheduled)

    gap_order = [g.gap_id for g in gaps]
    positions = [(gap_order.index(b.gap_id), b.start_time) for b in result.scheduled]
    assert positions == sorted(positions)


def test_schedule_is_idempotent():
    suggestions = [
        _suggestion("a", need=1.0, duration=50, min_duration=30, memo_type=MemoType.DEADLINE),
        _suggestion("b", need=0.8),
        _suggestion("c", need=0.6, duration=40),
    ]
    gaps = [_gap("g1", "09:00", "10:00"), _gap("g2", "16:00", "17:30")]
    first = schedule_suggestions(suggestions, gaps)
    second = schedule_suggestions(suggestions, gaps)
    assert first.scheduled == second.scheduled
    assert first.dropped == second.dropped


def test_empty_inputs():
    assert schedule_suggestions([], [_gap("g1", "09:00", "10:00")]).scheduled == []

    task = _suggestion("a")
    result = schedule_suggestions([task], [])
    assert result.scheduled == []
    assert result.dropped == [task]


def test_candidate_cap_keeps_highest_priority():
    low, high, mid = _suggestion("low", need=0.5), _suggestion("high", need=0.9), _suggestion("mid", need=0.7)
    result = schedule_suggestions([low, high, mid], [_gap("g1", "09:00", "09:30")])
    assert [b.suggestion_id for b in result.scheduled] == ["high"]
    assert result.capped_out == [mid, low]
    assert {s.id for s in result.dropped} == {"low", "mid"}


def test_anchor_cap_marks_result_degraded():
    cfg = SuggestionConfig(MAX_ANCHOR_COMBINATIONS=1)
    tasks = [
        _suggestion("m1", need=1.0, memo_type=MemoType.DEADLINE),
        _suggestion("m2", need=1.0, memo_type=MemoType.DEADLINE),
    ]
    gaps = [_gap("g1", "09:00", "10:00"), _gap("g2", "11:00", "12:00")]
    result = schedule_suggestions(tasks, gaps, cfg)

    assert result.degraded
    assert {b.suggestion_id for b in result.scheduled} == {"m1", "m2"}


def test_fill_budget_marks_result_degraded():
    cfg = SuggestionConfig(MAX_FILL_BRANCHES=3)
    tasks = [_suggestion(f"t{i}", duration=10) for i in range(6)]
    result = schedule_suggestions(tasks, [_gap("g1", "09:00", "12:00")], cfg)

    assert result.degraded
    _assert_invariants(result, tasks, [_gap("g1", "09:00", "12:00")])


def test_tight_fill_budget_tries_longest_level_first():
    cfg = SuggestionConfig(MAX_FILL_BRANCHES=2)
    task = _suggestion("d", need=0.8, duration=60, min_duration=20, memo_type=MemoType.DEADLINE)
    result = schedule_suggestions([task], [_gap("g1", "09:00", "10:00")], cfg)

    assert result.degraded
    assert [(b.suggestion_id, b.duration) for b in result.scheduled] == [("d", 60)]


def test_fresh_scheduler_per_call():
    scheduler = StateSearchScheduler()
    assert scheduler.states_evaluated == 0
    assert not scheduler.degraded
    result = scheduler.schedule([_suggestion("a")], [_gap("g1", "09:00", "10:00")])
    assert result.states_evaluated > 0


# === Validation ===

@pytest.mark.parametrize("gap", [
    Gap(gap_id="g", start="10:00", end="09:00", duration=0),
    Gap(gap_id="g", start="09:00", end="10:00", duration=-5),
    Gap(gap_id="g", start="09:00", end="10:00", duration=90),
    Gap(gap_id="g", start="9am", end="10:00", duration=30),
])
def test_malformed_gaps_are_rejected(gap):
    with pytest.raises(InputValidationError):
        schedule_suggestions([_suggestion("a")], [gap])


def test_duplicate_gap_ids_are_rejected():
    with pytest.raises(InputValidationError) as excinfo:
        validate_gaps([_gap("g", "09:00", "10:00"), _gap("g", "11:00", "12:00")])
    assert excinfo.value.field_name == "gap_id"


# === Utility ===

def test_task_utility_is_concave_with_finish_bonus():
    assert task_utility(0, 60, 1.0) == 0.0
    quarter = task_utility(15, 60, 1.0)
    half = task_utility(30, 60, 1.0)
    just_short = task_utility(59, 60, 1.0)
    full = task_utility(60, 60, 1.0)
    assert 0 < quarter < half < just_short < full
    assert half - quarter < quarter
    assert full - just_short > 0.1


def test_task_utility_caps_priority():
    assert task_utility(30, 30, 5.0) == pytest.approx(task_utility(30, 30, 2.0))


def test_score_penalises_switches_and_unused_time():
    suggestion_map = {"a": _suggestion("a"), "b": _suggestion("b")}
    empty = ScheduleState.empty([_gap("g1", "09:00", "10:00")])
    one = empty.with_allocation(0, TaskAllocation("a", "memo-a", 30))
    two = one.with_allocation(0, TaskAllocation("b", "memo-b", 30))

    assert score_schedule_state(empty, suggestion_map) == pytest.approx(-0.12)
    assert score_schedule_state(two, suggestion_map) > score_schedule_state(one, suggestion_map)
    assert empty.gaps[0].allocations == ()
    assert two.used_ids == frozenset({"a", "b"})
