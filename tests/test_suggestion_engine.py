import asyncio
from datetime import datetime

import pytest

from engine.enrichment import EnrichmentCache, MemoEnricher
from engine.exceptions import InputValidationError
from engine.llm_adapter import RuleBasedAdapter
from engine.models import (
    BacklogState,
    CompletionState,
    EnrichableEvent,
    EventSource,
    Gap,
    ImportanceLevel,
    LocationPreference,
    Memo,
    MemoStatus,
    MemoType,
    RecurrenceGoal,
    RoutineState,
)
from engine.scoring import suggestion_id_for
from engine.suggestion_engine import SuggestionEngine

NOW = datetime(2024, 1, 10, 8, 0)


def _engine(**kwargs):
    return SuggestionEngine(clock=lambda: NOW, **kwargs)


def _deadline(memo_id="report", **kwargs):
    return Memo(
        id=memo_id,
        type=MemoType.DEADLINE,
        title="Quarterly report",
        created_at=datetime(2024, 1, 1),
        deadline=kwargs.pop("deadline", datetime(2024, 1, 10, 18)),
        session_duration=kwargs.pop("session_duration", 45),
        importance=ImportanceLevel.HIGH,
        **kwargs,
    )


def _backlog(memo_id="photos", **kwargs):
    return Memo(
        id=memo_id,
        type=MemoType.BACKLOG,
        title="Sort photos",
        created_at=datetime(2024, 1, 1),
        session_duration=30,
        backlog_state=BacklogState(),
        **kwargs,
    )


def _routine(memo_id="gym", **kwargs):
    return Memo(
        id=memo_id,
        type=MemoType.ROUTINE,
        title="Gym",
        created_at=datetime(2024, 1, 1),
        session_duration=kwargs.pop("session_duration", 60),
        recurrence_goal=RecurrenceGoal(count=3),
        routine_state=RoutineState(),
        **kwargs,
    )


GAPS = [
    Gap(gap_id="morning", start="07:00", end="08:00", duration=60),
    Gap(gap_id="lunch", start="12:00", end="13:00", duration=60),
    Gap(gap_id="evening", start="18:00", end="20:00", duration=120),
]


def test_completed_memos_are_filtered():
    done = _backlog("done", status=MemoStatus(completion_state=CompletionState.COMPLETED))
    batch = _engine().generate_suggestions([done, _backlog()])
    assert [m.id for m in batch.active_memos] == ["photos"]
    assert [s.memo_id for s in batch.suggestions] == ["photos"]


def test_generate_suggestions_uses_injected_clock():
    batch = _engine().generate_suggestions([_deadline()])
    suggestion = batch.suggestions[0]
    assert suggestion.id == suggestion_id_for("report", NOW)
    assert suggestion.need == 1.0


def test_filter_visible_suggestions():
    engine = _engine()
    capped = _routine(status=MemoStatus(completions_this_period=3, period_start_date=datetime(2024, 1, 8)))
    batch = engine.generate_suggestions([capped, _backlog()])
    visible = engine.filter_visible_suggestions(batch.suggestions)
    assert [s.memo_id for s in visible] == ["photos"]


def test_reduce_scores_for_accepted_stays_below_mandatory():
    engine = _engine()
    batch = engine.generate_suggestions([_deadline(), _backlog()])
    reduced = engine.reduce_scores_for_accepted(batch.suggestions, ["report"])

    report = next(s for s in reduced if s.memo_id == "report")
    photos = next(s for s in reduced if s.memo_id == "photos")
    assert report.need == pytest.approx(0.5)
    assert report.importance == pytest.approx(0.2)
    assert not engine.cfg.is_mandatory(report.need)
    assert photos == next(s for s in batch.suggestions if s.memo_id == "photos")
    assert engine.reduce_scores_for_accepted(batch.suggestions, None) == batch.suggestions


def test_generate_schedule_places_mandatory_and_summarises():
    memos = [_deadline(), _backlog(), _routine()]
    result, summary = asyncio.run(_engine().generate_schedule(memos, GAPS))

    scheduled = {b.memo_id for b in result.scheduled}
    assert "report" in scheduled
    assert result.mandatory_dropped == []
    assert summary.memos_processed == 3
    assert summary.active_memos == 3
    assert summary.suggestions_generated == 3
    assert summary.gaps_available == 3
    assert summary.suggestions_scheduled == len(result.scheduled)
    assert summary.execution_time_ms >= 0


def test_generate_schedule_uses_event_locations():
    home_only = _backlog(location_preference=LocationPreference.HOME)
    events = [EnrichableEvent(start="09:00", end="17:00", source=EventSource.TIMETABLE)]
    lunch = [Gap(gap_id="lunch", start="12:00", end="13:00", duration=60)]

    result, _ = asyncio.run(_engine().generate_schedule([home_only], lunch, events=events))
    assert result.scheduled == []

    result, _ = asyncio.run(_engine().generate_schedule([home_only], lunch))
    assert [b.gap_id for b in result.scheduled] == ["lunch"]


def test_generate_schedule_reports_unplaceable_mandatory():
    big = _deadline(session_duration=90)
    short = [Gap(gap_id="g", start="07:00", end="07:30", duration=30)]
    result, summary = asyncio.run(_engine().generate_schedule([big], short))
    assert [s.memo_id for s in result.mandatory_dropped] == ["report"]
    assert summary.mandatory_dropped == 1


def test_generate_schedule_rejects_bad_gaps():
    bad = [Gap(gap_id="g", start="10:00", end="09:00", duration=0)]
    with pytest.raises(InputValidationError):
        asyncio.run(_engine().generate_schedule([_backlog()], bad))


def test_generate_schedule_enrichment_step():
    enricher = MemoEnricher(adapter=RuleBasedAdapter(), cache=EnrichmentCache(), request_delay_seconds=0)
    engine = _engine(enricher=enricher)
    bare = Memo(id="bare", type=MemoType.BACKLOG, title="Clean garage", created_at=datetime(2024, 1, 1))

    _, summary = asyncio.run(engine.generate_schedule([bare, _deadline()], GAPS))
    assert summary.enrichment_source_counts == {"fallback": 2}

    _, skipped = asyncio.run(engine.generate_schedule([bare], GAPS, skip_enrichment=True))
    assert skipped.enrichment_source_counts == {}


def test_mark_session_complete():
    engine = _engine()
    memo = _backlog(total_duration_expected=60)
    result = engine.mark_session_complete(memo, 60)
    assert result.is_now_complete
    assert not result.goal_reached
    assert result.memo.status.completion_state == CompletionState.COMPLETED

    routine = _routine()
    first = engine.mark_session_complete(routine, 60)
    assert not first.is_now_complete
    assert not first.goal_reached
    assert first.memo.status.completions_this_period == 1


def test_generate_schedule_survives_broken_adapter():
    class BrokenAdapter(RuleBasedAdapter):
        @property
        def is_rule_based(self):
            return False

        def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=1000):
            raise RuntimeError("socket closed mid-read")

    enricher = MemoEnricher(adapter=BrokenAdapter(), cache=EnrichmentCache(), request_delay_seconds=0)
    bare = Memo(id="bare", type=MemoType.BACKLOG, title="Clean garage", created_at=datetime(2024, 1, 1))

    _, summary = asyncio.run(_engine(enricher=enricher).generate_schedule([bare], GAPS))
    assert summary.enrichment_source_counts == {"fallback": 1}
    assert summary.memos_processed == 1
