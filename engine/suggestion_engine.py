"""
Suggestion Engine: the scheduling pipeline.

active memos -> period reset -> (optional) field enrichment -> scoring ->
de-prioritise already accepted memos -> gap location labels -> beam search.

Only the enrichment step awaits I/O; everything else is pure computation on
the snapshot passed in.
"""
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from engine.config_manager import SuggestionConfig, config as default_config
from engine.enrichment import MemoEnricher
from engine.gap_enrichment import enrich_gaps_with_location
from engine.logger import get_logger
from engine.memo_state import (
    SessionCompleteResult,
    is_memo_complete,
    is_routine_goal_reached,
    log_session,
    reset_period_if_needed,
)
from engine.models import (
    CompletionState,
    EnrichableEvent,
    Gap,
    Memo,
    MemoType,
    PipelineSummary,
    ScheduleResult,
    Suggestion,
)
from engine.scoring import memo_to_suggestion, score_memo
from scheduler.state_search import schedule_suggestions, validate_gaps

logger = get_logger("suggestion_engine")


@dataclass
class ScoredBatch:
    suggestions: List[Suggestion]
    active_memos: List[Memo]


class SuggestionEngine:
    """
    Compose scoring, gap labelling and the scheduler.

    `clock` is injectable so tests and replays get deterministic ids and
    need values.
    """

    def __init__(
        self,
        cfg: Optional[SuggestionConfig] = None,
        enricher: Optional[MemoEnricher] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.cfg = cfg or default_config
        self.enricher = enricher
        self.clock = clock

    # === Steps ===

    @staticmethod
    def filter_active(memos: Iterable[Memo]) -> List[Memo]:
        return [m for m in memos if m.status.completion_state != CompletionState.COMPLETED]

    def score_memos(self, memos: Sequence[Memo], now: datetime) -> List[Suggestion]:
        return [memo_to_suggestion(m, score_memo(m, now, self.cfg), now) for m in memos]

    def generate_suggestions(
        self,
        memos: Sequence[Memo],
        current_time: Optional[datetime] = None,
    ) -> ScoredBatch:
        """Filter, reset and score without enrichment or scheduling."""
        now = current_time or self.clock()
        active = [reset_period_if_needed(m, now) for m in self.filter_active(memos)]
        return ScoredBatch(suggestions=self.score_memos(active, now), active_memos=active)

    def filter_visible_suggestions(self, suggestions: Sequence[Suggestion]) -> List[Suggestion]:
        return [s for s in suggestions if not s.is_hidden]

    def reduce_scores_for_accepted(
        self,
        suggestions: Sequence[Suggestion],
        accepted_memo_ids: Optional[Iterable[str]],
    ) -> List[Suggestion]:
        """Halve need and importance for memos accepted elsewhere, keeping need below mandatory."""
        accepted = set(accepted_memo_ids or ())
        if not accepted:
            return list(suggestions)

        reduced = []
        for s in suggestions:
            if s.memo_id not in accepted:
                reduced.append(s)
                continue
            need = min(s.need * self.cfg.ACCEPTED_NEED_FACTOR, self.cfg.ACCEPTED_NEED_CAP)
            reduced.append(replace(
                s,
                need=need,
                importance=s.importance * self.cfg.ACCEPTED_IMPORTANCE_FACTOR,
                is_hidden=need < self.cfg.DISPLAY_THRESHOLD,
            ))
        return reduced

    # === Pipeline ===

    async def generate_schedule(
        self,
        memos: Sequence[Memo],
        gaps: Sequence[Gap],
        events: Optional[Sequence[EnrichableEvent]] = None,
        accepted_memo_ids: Optional[Iterable[str]] = None,
        skip_enrichment: bool = False,
        current_time: Optional[datetime] = None,
    ) -> Tuple[ScheduleResult, PipelineSummary]:
        started = time.perf_counter()
        now = current_time or self.clock()
        validate_gaps(gaps)

        summary = PipelineSummary(memos_processed=len(memos), gaps_available=len(gaps))

        active = [reset_period_if_needed(m, now) for m in self.filter_active(memos)]
        summary.active_memos = len(active)

        if self.enricher is not None and not skip_enrichment and active:
            batch = await self.enricher.enrich_memos(active)
            active = batch.memos
            summary.enrichment_source_counts = batch.source_counts

        suggestions = self.score_memos(active, now)
        suggestions = self.reduce_scores_for_accepted(suggestions, accepted_memo_ids)
        summary.suggestions_generated = len(suggestions)
        summary.hidden_suggestions = sum(1 for s in suggestions if s.is_hidden)

        labelled_gaps = enrich_gaps_with_location(gaps, events) if events else list(gaps)
        result = schedule_suggestions(suggestions, labelled_gaps, self.cfg)

        summary.suggestions_scheduled = len(result.scheduled)
        summary.mandatory_dropped = len(result.mandatory_dropped)
        summary.execution_time_ms = (time.perf_counter() - started) * 1000

        if result.mandatory_dropped:
            logger.warning(
                f"{len(result.mandatory_dropped)} 个必做任务未能排入: "
                f"{[s.memo_id for s in result.mandatory_dropped]}"
            )
        logger.info(
            f"Pipeline: {summary.active_memos}/{summary.memos_processed} active, "
            f"{summary.suggestions_scheduled}/{summary.suggestions_generated} scheduled "
            f"in {summary.execution_time_ms:.1f}ms"
        )
        return result, summary

    # === Events from the UI ===

    def mark_session_complete(
        self,
        memo: Memo,
        minutes: int,
        current_time: Optional[datetime] = None,
    ) -> SessionCompleteResult:
        now = current_time or self.clock()
        updated = log_session(memo, minutes, now, self.cfg)
        is_routine = MemoType(updated.type) == MemoType.ROUTINE
        return SessionCompleteResult(
            memo=updated,
            is_now_complete=(not is_routine) and is_memo_complete(updated, self.cfg),
            goal_reached=is_routine_goal_reached(updated),
        )
