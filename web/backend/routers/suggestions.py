from dataclasses import asdict
from datetime import datetime
from typing import Annotated, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import AfterValidator, BaseModel, Field

from engine.enrichment import MemoEnricher
from engine.exceptions import InputValidationError
from engine.llm_adapter import get_llm
from engine.memo_state import initialize_state
from engine.models import (
    AcceptedSlot,
    BacklogState,
    CompletionState,
    DeadlineState,
    EnrichableEvent,
    EventSource,
    Gap,
    ImportanceLevel,
    LocationLabel,
    LocationPreference,
    Memo,
    MemoStatus,
    MemoType,
    Period,
    RecurrenceGoal,
    RoutineState,
    Suggestion,
)
from engine.suggestion_engine import SuggestionEngine
from scheduler.duration import allocate_durations_to_gap

router = APIRouter()

# 未配置模型时 get_llm 返回规则模式，补全走默认值
planner = SuggestionEngine(enricher=MemoEnricher(adapter=get_llm()))


def _to_local_naive(value: datetime) -> datetime:
    # 引擎内部统一使用本地 naive 时间 (与 datetime.now 一致)
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


LocalDatetime = Annotated[datetime, AfterValidator(_to_local_naive)]


class RecurrenceGoalPayload(BaseModel):
    count: int = Field(ge=1)
    period: Period = Period.WEEK


class SlotPayload(BaseModel):
    start_time: str
    end_time: str
    duration: int
    logged: bool = False


class StatusPayload(BaseModel):
    time_spent_minutes: int = 0
    completion_state: CompletionState = CompletionState.NOT_STARTED
    completions_this_period: int = 0
    period_start_date: Optional[LocalDatetime] = None
    time_spent_today: int = 0


class RoutineStatePayload(BaseModel):
    accepted_today: bool = False
    completed_today: bool = False
    rejected_today: bool = False
    last_completed_day: Optional[LocalDatetime] = None
    previous_last_completed_day: Optional[LocalDatetime] = None
    was_capped_this_period: bool = False
    accepted_slot: Optional[SlotPayload] = None


class DeadlineStatePayload(BaseModel):
    created_day: LocalDatetime
    deadline_day: LocalDatetime
    last_completed_day: Optional[LocalDatetime] = None
    previous_last_completed_day: Optional[LocalDatetime] = None
    actual_durations: List[int] = Field(default_factory=list)
    rejected_today: bool = False
    accepted_slots: List[SlotPayload] = Field(default_factory=list)


class BacklogStatePayload(BaseModel):
    accepted_today: bool = False
    rejected_today: bool = False
    last_completed_day: Optional[LocalDatetime] = None
    previous_last_completed_day: Optional[LocalDatetime] = None
    accepted_slot: Optional[SlotPayload] = None


class MemoPayload(BaseModel):
    id: str
    type: MemoType
    title: str
    created_at: LocalDatetime
    deadline: Optional[LocalDatetime] = None
    importance: Optional[ImportanceLevel] = None
    session_duration: Optional[int] = None
    total_duration_expected: Optional[int] = None
    status: StatusPayload = Field(default_factory=StatusPayload)
    last_activity: Optional[LocalDatetime] = None
    location_preference: LocationPreference = LocationPreference.NO_PREFERENCE
    recurrence_goal: Optional[RecurrenceGoalPayload] = None
    genre: Optional[str] = None
    routine_state: Optional[RoutineStatePayload] = None
    deadline_state: Optional[DeadlineStatePayload] = None
    backlog_state: Optional[BacklogStatePayload] = None

    def to_memo(self) -> Memo:
        def slot(payload: Optional[SlotPayload]) -> Optional[AcceptedSlot]:
            return AcceptedSlot(**payload.model_dump()) if payload else None

        routine_state = None
        if self.routine_state:
            data = self.routine_state.model_dump(exclude={"accepted_slot"})
            routine_state = RoutineState(**data, accepted_slot=slot(self.routine_state.accepted_slot))

        deadline_state = None
        if self.deadline_state:
            data = self.deadline_state.model_dump(exclude={"accepted_slots"})
            deadline_state = DeadlineState(
                **data, accepted_slots=[slot(s) for s in self.deadline_state.accepted_slots]
            )

        backlog_state = None
        if self.backlog_state:
            data = self.backlog_state.model_dump(exclude={"accepted_slot"})
            backlog_state = BacklogState(**data, accepted_slot=slot(self.backlog_state.accepted_slot))

        memo = Memo(
            id=self.id,
            type=self.type,
            title=self.title,
            created_at=self.created_at,
            deadline=self.deadline,
            importance=self.importance,
            session_duration=self.session_duration,
            total_duration_expected=self.total_duration_expected,
            status=MemoStatus(**self.status.model_dump()),
            last_activity=self.last_activity,
            location_preference=self.location_preference,
            recurrence_goal=RecurrenceGoal(**self.recurrence_goal.model_dump()) if self.recurrence_goal else None,
            genre=self.genre,
            routine_state=routine_state,
            deadline_state=deadline_state,
            backlog_state=backlog_state,
        )
        return initialize_state(memo, self.created_at)


class GapPayload(BaseModel):
    gap_id: str
    start: str
    end: str
    duration: int
    location_label: Optional[LocationLabel] = None

    def to_gap(self) -> Gap:
        return Gap(**self.model_dump())


class EventPayload(BaseModel):
    start: str
    end: str
    source: EventSource
    id: str = ""
    title: str = ""


class ScheduleRequest(BaseModel):
    memos: List[MemoPayload] = Field(default_factory=list)
    gaps: List[GapPayload] = Field(default_factory=list)
    events: List[EventPayload] = Field(default_factory=list)
    accepted_memo_ids: List[str] = Field(default_factory=list)
    current_time: Optional[LocalDatetime] = None
    skip_enrichment: bool = False


class ScoreRequest(BaseModel):
    memos: List[MemoPayload] = Field(default_factory=list)
    current_time: Optional[LocalDatetime] = None
    visible_only: bool = False


class SuggestionPayload(BaseModel):
    id: str
    memo_id: str
    need: float
    importance: float
    duration: int
    min_duration: int
    type: MemoType
    location_preference: LocationPreference = LocationPreference.NO_PREFERENCE
    is_hidden: bool = False


class AllocateRequest(BaseModel):
    suggestions: List[SuggestionPayload]
    gap_duration: int = Field(ge=0)


def _bad_request(e: InputValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail=e.get_user_message())


@router.post("/schedule")
async def create_schedule(req: ScheduleRequest):
    """生成当日排程：评分 -> 空档标注 -> 状态空间搜索"""
    try:
        memos = [m.to_memo() for m in req.memos]
        gaps = [g.to_gap() for g in req.gaps]
        events = [EnrichableEvent(**e.model_dump()) for e in req.events]
        result, summary = await planner.generate_schedule(
            memos,
            gaps,
            events=events,
            accepted_memo_ids=req.accepted_memo_ids,
            skip_enrichment=req.skip_enrichment,
            current_time=req.current_time,
        )
    except InputValidationError as e:
        raise _bad_request(e)

    return {"result": asdict(result), "summary": asdict(summary)}


@router.post("/score")
def score_memos(req: ScoreRequest):
    batch = planner.generate_suggestions([m.to_memo() for m in req.memos], req.current_time)
    suggestions = batch.suggestions
    if req.visible_only:
        suggestions = planner.filter_visible_suggestions(suggestions)
    return {"suggestions": [asdict(s) for s in suggestions]}


@router.post("/allocate")
def allocate(req: AllocateRequest):
    """拖拽调整时，多个建议共享同一空档的时长分配"""
    suggestions = [Suggestion(**s.model_dump()) for s in req.suggestions]
    result = allocate_durations_to_gap(suggestions, req.gap_duration)
    return {
        "allocations": result.allocations,
        "dropped": [s.id for s in result.dropped],
    }
