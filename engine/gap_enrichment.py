"""
Gap location enrichment.

Layer model:
- home is the base layer covering the whole day (infinite duration)
- all timetable events merge into one workplace span
- all calendar events merge into one other span
- a gap takes the label of the shortest span it overlaps

Equal-duration spans resolve in construction order (workplace, other, home).
Spans are not intersected with each other; a short calendar span wins over
a long workplace span even when the gap sits mostly inside the latter.
"""
import math
from dataclasses import dataclass, replace
from typing import List, Sequence

from engine.logger import get_logger
from engine.models import EnrichableEvent, EventSource, Gap, LocationLabel
from engine.utils import MINUTES_PER_DAY, time_to_minutes

logger = get_logger("gap_enrichment")


@dataclass(frozen=True)
class LocationSpan:
    location: LocationLabel
    start: int
    end: int
    duration: float


def _merged_span(events: Sequence[EnrichableEvent], label: LocationLabel) -> LocationSpan:
    start = min(time_to_minutes(e.start) for e in events)
    end = max(time_to_minutes(e.end) for e in events)
    return LocationSpan(location=label, start=start, end=end, duration=end - start)


def build_location_spans(events: Sequence[EnrichableEvent]) -> List[LocationSpan]:
    spans = []

    timetable = [e for e in events if EventSource(e.source) == EventSource.TIMETABLE]
    calendar_events = [e for e in events if EventSource(e.source) == EventSource.CALENDAR]

    if timetable:
        spans.append(_merged_span(timetable, LocationLabel.WORKPLACE))
    if calendar_events:
        spans.append(_merged_span(calendar_events, LocationLabel.OTHER))

    spans.append(LocationSpan(LocationLabel.HOME, 0, MINUTES_PER_DAY, math.inf))
    return spans


def get_location_for_gap(gap: Gap, spans: Sequence[LocationSpan]) -> LocationLabel:
    gap_start = time_to_minutes(gap.start)
    gap_end = time_to_minutes(gap.end)

    overlapping = [s for s in spans if s.start < gap_end and s.end > gap_start]
    # sorted() is stable: ties keep construction order
    overlapping = sorted(overlapping, key=lambda s: s.duration)

    if not overlapping:
        return LocationLabel.HOME
    return overlapping[0].location


def enrich_gaps_with_location(
    gaps: Sequence[Gap],
    events: Sequence[EnrichableEvent],
) -> List[Gap]:
    """Return labeled copies of `gaps`; the inputs are left untouched."""
    spans = build_location_spans(events)
    enriched = [replace(gap, location_label=get_location_for_gap(gap, spans)) for gap in gaps]

    logger.debug(
        f"Labeled {len(enriched)} gaps from {len(events)} events "
        f"({len(spans) - 1} named spans)"
    )
    return enriched
