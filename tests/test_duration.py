from engine.config_manager import SuggestionConfig
from engine.models import MemoType, Suggestion
from scheduler import allocate_durations_to_gap, calculate_effective_duration, can_shrink
from scheduler.duration import effective_base_duration, get_task_expansion_levels, sort_by_priority


def _suggestion(sid, need=0.6, importance=0.2, duration=30, min_duration=None, memo_type=MemoType.BACKLOG):
    return Suggestion(
        id=sid,
        memo_id=f"memo-{sid}",
        need=need,
        importance=importance,
        duration=duration,
        min_duration=duration if min_duration is None else min_duration,
        type=memo_type,
    )


def test_only_deadline_tasks_shrink():
    assert can_shrink(MemoType.DEADLINE)
    assert can_shrink("deadline")
    assert not can_shrink(MemoType.ROUTINE)
    assert not can_shrink(MemoType.BACKLOG)

    deadline = _suggestion("d", duration=70, min_duration=45, memo_type=MemoType.DEADLINE)
    routine = _suggestion("r", duration=40, min_duration=20, memo_type=MemoType.ROUTINE)
    assert effective_base_duration(deadline) == 45
    assert effective_base_duration(routine) == 40


def test_shrinkable_types_are_configurable():
    cfg = SuggestionConfig(SHRINKABLE_TYPES=["deadline", "backlog"])
    assert can_shrink(MemoType.BACKLOG, cfg)


def test_effective_duration_shrinks_deadline_into_gap():
    assert calculate_effective_duration(70, 45, 50, MemoType.DEADLINE) == 50
    assert calculate_effective_duration(70, 45, 40, MemoType.DEADLINE) == 0


def test_effective_duration_shrink_respects_grid_and_floor():
    # 47 snaps to 40, below the 45 floor
    assert calculate_effective_duration(70, 45, 47, MemoType.DEADLINE) == 0
    assert calculate_effective_duration(70, 30, 47, MemoType.DEADLINE) == 40


def test_effective_duration_never_shrinks_routine():
    assert calculate_effective_duration(30, 10, 25, MemoType.ROUTINE) == 0
    assert calculate_effective_duration(30, 10, 30, MemoType.ROUTINE) == 30


def test_effective_duration_extension():
    assert calculate_effective_duration(30, 30, 35, MemoType.BACKLOG) == 30
    assert calculate_effective_duration(30, 30, 55, MemoType.BACKLOG) == 50
    assert calculate_effective_duration(30, 30, 100, MemoType.BACKLOG) == 60

    no_extension = SuggestionConfig(EXTENSION_ENABLED=False)
    assert calculate_effective_duration(30, 30, 100, MemoType.BACKLOG, no_extension) == 30


def test_sort_by_priority_is_stable():
    a = _suggestion("a", need=0.6)
    b = _suggestion("b", need=0.6)
    c = _suggestion("c", need=0.9)
    assert [s.id for s in sort_by_priority([a, b, c])] == ["c", "a", "b"]


def test_allocate_two_equal_tasks_share_gap():
    result = allocate_durations_to_gap([_suggestion("a"), _suggestion("b")], 60)
    assert result.allocations == {"a": 30, "b": 30}
    assert result.dropped == []


def test_allocate_drops_what_does_not_fit():
    first, second = _suggestion("a"), _suggestion("b")
    result = allocate_durations_to_gap([first, second], 50)
    assert result.allocations == {"a": 30}
    assert result.dropped == [second]


def test_allocate_gives_slack_to_mandatory_tier_first():
    mandatory = _suggestion("m", need=1.0, duration=60, min_duration=30, memo_type=MemoType.DEADLINE)
    optional = _suggestion("o", need=0.6, duration=30)
    result = allocate_durations_to_gap([optional, mandatory], 90)
    assert result.allocations == {"m": 60, "o": 30}
    assert list(result.allocations) == ["m", "o"]


def test_allocate_never_exceeds_gap():
    tasks = [
        _suggestion("m", need=1.0, duration=90, min_duration=30, memo_type=MemoType.DEADLINE),
        _suggestion("h", need=0.8, duration=60, min_duration=20, memo_type=MemoType.DEADLINE),
        _suggestion("n", need=0.5, duration=20),
    ]
    result = allocate_durations_to_gap(tasks, 100)
    assert sum(result.allocations.values()) <= 100
    for task in tasks:
        assert result.allocations[task.id] >= effective_base_duration(task)


def test_expansion_levels():
    assert get_task_expansion_levels(100, 30, 70) == [40, 60, 70]
    assert get_task_expansion_levels(50, 45, 70) == [50]
    assert get_task_expansion_levels(20, 30, 30) == []
    # the ideal is kept even off the grid
    assert get_task_expansion_levels(60, 25, 25) == [25]
