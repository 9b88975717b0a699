"""
Core Data Models for the suggestion planner.
Defines memos (user tasks), suggestions, gaps and schedule results.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class MemoType(str, Enum):
    DEADLINE = "deadline"    # 有截止日期
    ROUTINE = "routine"      # 习惯 / 周期任务
    BACKLOG = "backlog"      # 待办积压


class ImportanceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CompletionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Period(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class LocationPreference(str, Enum):
    HOME = "home/near_home"
    WORKPLACE = "workplace/near_workplace"
    NO_PREFERENCE = "no_preference"


class LocationLabel(str, Enum):
    HOME = "home"
    WORKPLACE = "workplace"
    OTHER = "other"
    UNKNOWN = "unknown"


class EventSource(str, Enum):
    TIMETABLE = "timetable"
    CALENDAR = "calendar"


@dataclass
class RecurrenceGoal:
    """Routine target: `count` completions per `period`."""
    count: int
    period: Period = Period.WEEK


@dataclass
class AcceptedSlot:
    start_time: str                 # "HH:MM"
    end_time: str
    duration: int
    logged: bool = False


@dataclass
class MemoStatus:
    time_spent_minutes: int = 0
    completion_state: CompletionState = CompletionState.NOT_STARTED
    completions_this_period: int = 0
    period_start_date: Optional[datetime] = None
    time_spent_today: int = 0


@dataclass
class RoutineState:
    accepted_today: bool = False
    completed_today: bool = False
    rejected_today: bool = False
    last_completed_day: Optional[datetime] = None
    previous_last_completed_day: Optional[datetime] = None
    was_capped_this_period: bool = False
    accepted_slot: Optional[AcceptedSlot] = None


@dataclass
class DeadlineState:
    created_day: datetime
    deadline_day: datetime
    last_completed_day: Optional[datetime] = None
    previous_last_completed_day: Optional[datetime] = None
    # minutes actually logged per day, index 0 = created day
    actual_durations: List[int] = field(default_factory=list)
    rejected_today: bool = False
    accepted_slots: List[AcceptedSlot] = field(default_factory=list)

    @property
    def total_days(self) -> int:
        """Inclusive day span from creation to deadline (at least 1)."""
        span = (self.deadline_day.date() - self.created_day.date()).days + 1
        return max(1, span)


@dataclass
class BacklogState:
    accepted_today: bool = False
    rejected_today: bool = False
    last_completed_day: Optional[datetime] = None
    previous_last_completed_day: Optional[datetime] = None
    accepted_slot: Optional[AcceptedSlot] = None


@dataclass
class Memo:
    """用户任务（建议的来源）"""
    id: str
    type: MemoType
    title: str
    created_at: datetime
    deadline: Optional[datetime] = None
    importance: Optional[ImportanceLevel] = None
    session_duration: Optional[int] = None          # 每次投入时长 (分钟)
    total_duration_expected: Optional[int] = None   # 预计总时长 (分钟)
    status: MemoStatus = field(default_factory=MemoStatus)
    last_activity: Optional[datetime] = None
    location_preference: LocationPreference = LocationPreference.NO_PREFERENCE
    recurrence_goal: Optional[RecurrenceGoal] = None
    genre: Optional[str] = None
    routine_state: Optional[RoutineState] = None
    deadline_state: Optional[DeadlineState] = None
    backlog_state: Optional[BacklogState] = None


@dataclass
class Suggestion:
    """Ephemeral scheduling candidate derived from one memo."""
    id: str
    memo_id: str
    need: float
    importance: float
    duration: int                   # ideal minutes
    min_duration: int               # floor minutes
    type: MemoType
    location_preference: LocationPreference = LocationPreference.NO_PREFERENCE
    is_hidden: bool = False

    @property
    def base_duration(self) -> int:
        return self.min_duration

    @property
    def priority(self) -> float:
        return min(self.need, 1.0) + min(self.importance, 1.0)


@dataclass(frozen=True)
class Gap:
    """One contiguous free window of the scheduling day."""
    gap_id: str
    start: str                      # "HH:MM"
    end: str
    duration: int
    location_label: Optional[LocationLabel] = None


@dataclass
class EnrichableEvent:
    """Calendar / timetable event used only for location context."""
    start: str
    end: str
    source: EventSource
    id: str = ""
    title: str = ""


@dataclass
class ScheduledBlock:
    suggestion_id: str
    memo_id: str
    gap_id: str
    start_time: str
    end_time: str
    duration: int


@dataclass
class ScheduleResult:
    scheduled: List[ScheduledBlock] = field(default_factory=list)
    dropped: List[Suggestion] = field(default_factory=list)
    mandatory_dropped: List[Suggestion] = field(default_factory=list)
    total_scheduled_minutes: int = 0
    total_dropped_minutes: int = 0
    # suggestions removed by the candidate cap before the search ran
    capped_out: List[Suggestion] = field(default_factory=list)
    states_evaluated: int = 0
    degraded: bool = False


@dataclass
class PipelineSummary:
    memos_processed: int = 0
    active_memos: int = 0
    suggestions_generated: int = 0
    hidden_suggestions: int = 0
    gaps_available: int = 0
    suggestions_scheduled: int = 0
    mandatory_dropped: int = 0
    execution_time_ms: float = 0.0
    enrichment_source_counts: Dict[str, int] = field(default_factory=dict)
