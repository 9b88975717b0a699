"""
State-space beam search scheduler.

Places suggestions into gaps, choosing gap, order and duration together:

1. cap the candidate list at total_gap_minutes / MINUTES_PER_CANDIDATE,
   mandatory suggestions ranked ahead of the rest
2. anchor every mandatory suggestion at its effective base duration,
   enumerating (task -> gap) combinations up to MAX_ANCHOR_COMBINATIONS
3. gap by gap: expand anchored durations, fill the rest of the gap with
   more suggestions, keep the BEAM_WIDTH best states
4. turn the best state into back-to-back blocks

States are immutable; each branch builds new tuples instead of editing a
shared gap. When a cap cuts enumeration short the result is flagged
`degraded` and the search continues with what it has.
"""
import math
from dataclasses import dataclass, replace
from itertools import islice
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

from engine.config_manager import SuggestionConfig, config as default_config
from engine.exceptions import InputValidationError
from engine.location_matching import is_location_compatible
from engine.logger import get_logger
from engine.models import Gap, LocationLabel, ScheduledBlock, ScheduleResult, Suggestion
from engine.utils import minutes_to_time, time_to_minutes
from scheduler.duration import effective_base_duration, get_task_expansion_levels, sort_by_priority

logger = get_logger("scheduler")


@dataclass(frozen=True)
class TaskAllocation:
    suggestion_id: str
    memo_id: str
    duration: int


@dataclass(frozen=True)
class GapState:
    gap_id: str
    start: str
    end: str
    total_duration: int
    location_label: Optional[LocationLabel]
    allocations: Tuple[TaskAllocation, ...] = ()

    @property
    def used_time(self) -> int:
        return sum(a.duration for a in self.allocations)

    @property
    def remaining(self) -> int:
        return self.total_duration - self.used_time


@dataclass(frozen=True)
class ScheduleState:
    gaps: Tuple[GapState, ...]
    used_ids: FrozenSet[str] = frozenset()

    @classmethod
    def empty(cls, gaps: Sequence[Gap]) -> "ScheduleState":
        return cls(gaps=tuple(
            GapState(
                gap_id=g.gap_id,
                start=g.start,
                end=g.end,
                total_duration=g.duration,
                location_label=g.location_label,
            )
            for g in gaps
        ))

    def with_allocation(self, gap_index: int, allocation: TaskAllocation) -> "ScheduleState":
        gap = self.gaps[gap_index]
        new_gap = replace(gap, allocations=gap.allocations + (allocation,))
        return ScheduleState(
            gaps=self.gaps[:gap_index] + (new_gap,) + self.gaps[gap_index + 1:],
            used_ids=self.used_ids | {allocation.suggestion_id},
        )

    def with_duration(self, gap_index: int, suggestion_id: str, duration: int) -> "ScheduleState":
        gap = self.gaps[gap_index]
        allocations = tuple(
            replace(a, duration=duration) if a.suggestion_id == suggestion_id else a
            for a in gap.allocations
        )
        new_gap = replace(gap, allocations=allocations)
        return ScheduleState(
            gaps=self.gaps[:gap_index] + (new_gap,) + self.gaps[gap_index + 1:],
            used_ids=self.used_ids,
        )


# === Utility ===

def task_utility(
    allocated: float,
    ideal: float,
    priority: float,
    cfg: SuggestionConfig = default_config,
) -> float:
    """
    Concave utility of giving `allocated` minutes to a task.

    U = min(p, maxP) * (1 - exp(-alpha * t / ideal)), plus finishBonus * p
    once t >= ideal, all scaled by 1 + durationNeedBonus * ideal / 60.
    """
    if allocated <= 0 or ideal <= 0:
        return 0.0

    capped = min(priority, cfg.MAX_PRIORITY)
    utility = capped * (1 - math.exp(-cfg.UTILITY_ALPHA * allocated / ideal))
    if allocated >= ideal:
        utility += cfg.FINISH_BONUS * capped

    return utility * (1 + cfg.DURATION_NEED_BONUS * (ideal / 60))


def score_schedule_state(
    state: ScheduleState,
    suggestion_map: Dict[str, Suggestion],
    cfg: SuggestionConfig = default_config,
) -> float:
    total_utility = 0.0
    switch_penalty = 0.0
    unused_penalty = 0.0

    for gap in state.gaps:
        for allocation in gap.allocations:
            suggestion = suggestion_map.get(allocation.suggestion_id)
            if suggestion is None:
                continue
            total_utility += task_utility(
                allocation.duration, suggestion.duration, suggestion.priority, cfg
            )

        if len(gap.allocations) > 1:
            switch_penalty += cfg.SWITCH_COST * (len(gap.allocations) - 1)

        unused = gap.remaining
        if unused > 0:
            unused_penalty += cfg.UNUSED_COST * unused

    return total_utility - switch_penalty - unused_penalty


# === Input boundary ===

def validate_gaps(gaps: Sequence[Gap]) -> None:
    """Reject malformed gaps before they reach the search."""
    seen = set()
    for gap in gaps:
        start = time_to_minutes(gap.start)
        end = time_to_minutes(gap.end)
        if end < start:
            raise InputValidationError(
                f"空档 {gap.gap_id} 结束时间 {gap.end} 早于开始时间 {gap.start}",
                field_name="end",
            )
        if gap.duration < 0:
            raise InputValidationError(f"空档 {gap.gap_id} 时长为负: {gap.duration}", field_name="duration")
        if gap.duration > end - start:
            raise InputValidationError(
                f"空档 {gap.gap_id} 时长 {gap.duration} 超过 {gap.start}-{gap.end}",
                field_name="duration",
            )
        if gap.gap_id in seen:
            raise InputValidationError(f"空档 ID 重复: {gap.gap_id}", field_name="gap_id")
        seen.add(gap.gap_id)


# === Search ===

class StateSearchScheduler:
    """One scheduling pass. Holds per-call counters, never shared between calls."""

    def __init__(self, cfg: Optional[SuggestionConfig] = None):
        self.cfg = cfg or default_config
        self.states_evaluated = 0
        self.degraded = False

    def _degrade(self, message: str) -> None:
        if not self.degraded:
            logger.warning(f"搜索被截断，结果为尽力而为: {message}")
        else:
            logger.debug(message)
        self.degraded = True

    # --- anchors ---

    def _valid_gap_indices(self, suggestion: Suggestion, gaps: Sequence[Gap], used: Tuple[int, ...]) -> List[int]:
        base = effective_base_duration(suggestion, self.cfg)
        return [
            i for i, gap in enumerate(gaps)
            if gap.duration - used[i] >= base
            and is_location_compatible(suggestion.location_preference, gap.location_label)
        ]

    def _placement_combinations(
        self,
        mandatory: Sequence[Suggestion],
        gaps: Sequence[Gap],
    ) -> Iterator[Tuple[Tuple[str, int], ...]]:
        """
        Depth-first over (task -> gap index) choices, lazily.

        A task with no room left anywhere is skipped, not fatal. Yields in the
        same order a recursive walk would (first task's lowest gap first).
        """
        stack = [(0, tuple(0 for _ in gaps), ())]
        while stack:
            index, used, placements = stack.pop()
            if index >= len(mandatory):
                yield placements
                continue

            task = mandatory[index]
            valid = self._valid_gap_indices(task, gaps, used)
            if not valid:
                stack.append((index + 1, used, placements))
                continue

            base = effective_base_duration(task, self.cfg)
            for gap_index in reversed(valid):
                new_used = used[:gap_index] + (used[gap_index] + base,) + used[gap_index + 1:]
                stack.append((index + 1, new_used, placements + ((task.id, gap_index),)))

    def generate_anchor_states(
        self,
        candidates: Sequence[Suggestion],
        gaps: Sequence[Gap],
    ) -> List[ScheduleState]:
        mandatory = [s for s in candidates if self.cfg.is_mandatory(s.need)]
        if not mandatory:
            return [ScheduleState.empty(gaps)]

        limit = self.cfg.MAX_ANCHOR_COMBINATIONS
        combinations = list(islice(self._placement_combinations(mandatory, gaps), limit + 1))
        if len(combinations) > limit:
            self._degrade(f"必做任务组合超过 {limit} 种")
            combinations = combinations[:limit]

        by_id = {s.id: s for s in mandatory}
        states = []
        for placements in combinations:
            state = ScheduleState.empty(gaps)
            for suggestion_id, gap_index in placements:
                suggestion = by_id[suggestion_id]
                state = state.with_allocation(gap_index, TaskAllocation(
                    suggestion_id=suggestion.id,
                    memo_id=suggestion.memo_id,
                    duration=effective_base_duration(suggestion, self.cfg),
                ))
            states.append(state)

        return states or [ScheduleState.empty(gaps)]

    # --- per gap ---

    def generate_expand_branches(
        self,
        state: ScheduleState,
        gap_index: int,
        suggestion_map: Dict[str, Suggestion],
    ) -> List[ScheduleState]:
        """Branch each anchored task in the gap over its duration levels."""
        anchors = state.gaps[gap_index].allocations
        branches = [state]

        for anchor in anchors:
            suggestion = suggestion_map.get(anchor.suggestion_id)
            if suggestion is None:
                continue

            base = effective_base_duration(suggestion, self.cfg)
            next_branches = []
            for branch in branches:
                gap = branch.gaps[gap_index]
                others = sum(a.duration for a in gap.allocations if a.suggestion_id != anchor.suggestion_id)
                levels = get_task_expansion_levels(
                    gap.total_duration - others, base, suggestion.duration, self.cfg
                )
                if not levels:
                    next_branches.append(branch)
                    continue
                for duration in levels:
                    next_branches.append(branch.with_duration(gap_index, anchor.suggestion_id, duration))
            branches = next_branches

        return branches

    def generate_fill_branches(
        self,
        state: ScheduleState,
        gap_index: int,
        pool: Sequence[Suggestion],
        budget: int,
    ) -> List[ScheduleState]:
        """
        Every way of adding more pool suggestions to the gap, including
        adding nothing. Suggestions are added in pool order so each set is
        produced once. Stops early once `budget` states exist.
        """
        results: List[ScheduleState] = []
        stack = [(state, 0, 0)]

        while stack:
            current, start, depth = stack.pop()
            results.append(current)

            gap = current.gaps[gap_index]
            remaining = gap.remaining
            children = []
            positions = range(start, len(pool)) if depth < self.cfg.MAX_FILL_DEPTH else range(0)
            for position in positions:
                candidate = pool[position]
                if candidate.id in current.used_ids:
                    continue
                base = effective_base_duration(candidate, self.cfg)
                if remaining < base:
                    continue
                if not is_location_compatible(candidate.location_preference, gap.location_label):
                    continue

                # 长时长优先
                for duration in reversed(get_task_expansion_levels(remaining, base, candidate.duration, self.cfg)):
                    child = current.with_allocation(gap_index, TaskAllocation(
                        suggestion_id=candidate.id,
                        memo_id=candidate.memo_id,
                        duration=duration,
                    ))
                    children.append((child, position + 1, depth + 1))

            if len(results) >= budget:
                if stack or children:
                    self._degrade(f"空档 {gap.gap_id} 填充分支超过上限")
                break
            stack.extend(reversed(children))

        return results

    def prune_to_top_k(
        self,
        states: List[ScheduleState],
        suggestion_map: Dict[str, Suggestion],
        k: int,
    ) -> List[ScheduleState]:
        scored = [(score_schedule_state(s, suggestion_map, self.cfg), s) for s in states]
        # stable sort: equal scores keep generation order
        scored.sort(key=lambda item: -item[0])
        return [state for _, state in scored[:k]]

    # --- output ---

    @staticmethod
    def state_to_blocks(state: ScheduleState) -> List[ScheduledBlock]:
        blocks = []
        for gap in state.gaps:
            cursor = time_to_minutes(gap.start)
            gap_end = time_to_minutes(gap.end)
            for allocation in gap.allocations:
                duration = min(allocation.duration, gap_end - cursor)
                if duration <= 0:
                    continue
                blocks.append(ScheduledBlock(
                    suggestion_id=allocation.suggestion_id,
                    memo_id=allocation.memo_id,
                    gap_id=gap.gap_id,
                    start_time=minutes_to_time(cursor),
                    end_time=minutes_to_time(cursor + duration),
                    duration=duration,
                ))
                cursor += duration
        return blocks

    def _finish(
        self,
        suggestions: Sequence[Suggestion],
        blocks: List[ScheduledBlock],
        capped_out: List[Suggestion],
    ) -> ScheduleResult:
        scheduled_ids = {b.suggestion_id for b in blocks}
        dropped = [s for s in suggestions if s.id not in scheduled_ids]
        return ScheduleResult(
            scheduled=blocks,
            dropped=dropped,
            mandatory_dropped=[s for s in dropped if self.cfg.is_mandatory(s.need)],
            total_scheduled_minutes=sum(b.duration for b in blocks),
            total_dropped_minutes=sum(s.duration for s in dropped),
            capped_out=capped_out,
            states_evaluated=self.states_evaluated,
            degraded=self.degraded,
        )

    def schedule(self, suggestions: Sequence[Suggestion], gaps: Sequence[Gap]) -> ScheduleResult:
        suggestions = list(suggestions)
        gaps = list(gaps)
        validate_gaps(gaps)

        if not suggestions or not gaps:
            return self._finish(suggestions, [], [])

        # 必做任务优先于截断
        ranked = sorted(sort_by_priority(suggestions), key=lambda s: not self.cfg.is_mandatory(s.need))
        # 至少保留一条候选
        limit = max(1, sum(g.duration for g in gaps) // self.cfg.MINUTES_PER_CANDIDATE)
        candidates, capped_out = ranked[:limit], ranked[limit:]
        if capped_out:
            logger.info(f"候选截断: 保留 {len(candidates)} / {len(ranked)} 条建议")

        suggestion_map = {s.id: s for s in candidates}
        states = self.generate_anchor_states(candidates, gaps)

        for gap_index in range(len(gaps)):
            branches = [
                branch
                for state in states
                for branch in self.generate_expand_branches(state, gap_index, suggestion_map)
            ]
            # 填充分支上限在各扩展分支间均分
            budget = max(1, self.cfg.MAX_FILL_BRANCHES // len(branches))
            next_states: List[ScheduleState] = []
            for branch in branches:
                next_states.extend(self.generate_fill_branches(branch, gap_index, candidates, budget))

            self.states_evaluated += len(next_states)
            states = self.prune_to_top_k(next_states, suggestion_map, self.cfg.BEAM_WIDTH)

        best = self.prune_to_top_k(states, suggestion_map, 1)[0]
        gap_order = {g.gap_id: i for i, g in enumerate(gaps)}
        blocks = sorted(
            self.state_to_blocks(best),
            key=lambda b: (gap_order[b.gap_id], time_to_minutes(b.start_time)),
        )

        result = self._finish(suggestions, blocks, capped_out)
        logger.info(
            f"排程完成: {len(result.scheduled)} 个时间块, 丢弃 {len(result.dropped)} 条 "
            f"(必做 {len(result.mandatory_dropped)}), 评估 {result.states_evaluated} 个状态"
        )
        return result


def schedule_suggestions(
    suggestions: Sequence[Suggestion],
    gaps: Sequence[Gap],
    cfg: Optional[SuggestionConfig] = None,
) -> ScheduleResult:
    """Schedule suggestions into gaps. Raises InputValidationError for malformed gaps only."""
    return StateSearchScheduler(cfg).schedule(suggestions, gaps)
