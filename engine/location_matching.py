"""
Location compatibility between a suggestion's preference and a gap's label.

Not geospatial: labels are coarse (home / workplace / other) and a gap
without a known label accepts everything.
"""
from dataclasses import dataclass
from typing import List, Optional

from engine.models import Gap, LocationLabel, LocationPreference, Suggestion

_PREFERENCE_TO_LABEL = {
    LocationPreference.HOME: LocationLabel.HOME,
    LocationPreference.WORKPLACE: LocationLabel.WORKPLACE,
}


@dataclass
class CompatibilityResult:
    compatible: bool
    location_ok: bool
    duration_ok: bool
    reason: str = ""


def is_location_compatible(
    preference: Optional[LocationPreference],
    label: Optional[LocationLabel],
) -> bool:
    if preference is None or label is None:
        return True
    preference = LocationPreference(preference)
    label = LocationLabel(label)
    if preference == LocationPreference.NO_PREFERENCE or label == LocationLabel.UNKNOWN:
        return True
    return _PREFERENCE_TO_LABEL[preference] == label


def has_sufficient_duration(suggestion: Suggestion, gap: Gap) -> bool:
    return gap.duration >= suggestion.duration


def can_fit_in_gap(suggestion: Suggestion, gap: Gap) -> CompatibilityResult:
    location_ok = is_location_compatible(suggestion.location_preference, gap.location_label)
    duration_ok = has_sufficient_duration(suggestion, gap)

    reason = ""
    if not location_ok:
        reason = f"location {suggestion.location_preference.value} does not match gap label"
    elif not duration_ok:
        reason = f"needs {suggestion.duration}min, gap has {gap.duration}min"

    return CompatibilityResult(
        compatible=location_ok and duration_ok,
        location_ok=location_ok,
        duration_ok=duration_ok,
        reason=reason,
    )


def can_fit(suggestion: Suggestion, gap: Gap) -> bool:
    return can_fit_in_gap(suggestion, gap).compatible


def find_compatible_gaps(suggestion: Suggestion, gaps: List[Gap]) -> List[Gap]:
    return [gap for gap in gaps if can_fit(suggestion, gap)]

