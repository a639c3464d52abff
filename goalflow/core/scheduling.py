"""
Scheduling - Business-hours slot computation and scheduling guidance

Responsibilities:
- Compute candidate slots per weekday for a vague preference (morning /
  afternoon / evening)
- Recompute slots strictly after / before an hour ("later than 6", "earlier")
- List times for a single day, optionally filtered by preference
- Turn captured scheduling fields plus the latest message into guidance
  for the reply (ask preference, offer slots, confirm, ...)

Design principles:
- Pure functions over a business-hours dict:
      {"monday": [{"from": "06:00", "to": "21:00"}], "sunday": [], ...}
- Days are always walked Monday -> Sunday
- Only a specific time ("7pm") completes scheduling; a preference only
  narrows the slots offered
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from goalflow.contracts import TimeSlot
from goalflow.core.field_validator import DATE_PATTERNS, FieldValidator, unwrap_value
from goalflow.utils.field_mappings import map_time_preference

logger = logging.getLogger(__name__)

DAY_ORDER = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
DAY_ABBREVIATIONS = {day[:3]: day for day in DAY_ORDER}

MAX_TIMES_PER_DAY = 3
MAX_TIMES_FOR_DAY = 5
DAY_TIME_STEP = 2

MORNING_START, NOON, EVENING_START, LAST_EVENING_HOUR = 6, 12, 17, 21

# Hour assumed when a rejection mentions none ("none of those work")
DEFAULT_REJECTION_HOUR = 18

REJECTION_PATTERN = re.compile(
    r"\blater\b|\btoo early\b|\btoo late\b|\bcan'?t do\b|\bdoesn'?t work\b|"
    r"\bdon'?t work\b|\bnone of those\b|\bother\b|\balternative",
    re.IGNORECASE
)
WANTS_LATER_PATTERN = re.compile(r"\blater\b|\btoo early\b|\bafter\b", re.IGNORECASE)
WANTS_EARLIER_PATTERN = re.compile(r"\bearlier\b|\btoo late\b|\bbefore\b", re.IGNORECASE)
MENTIONED_HOUR_PATTERN = re.compile(
    r"\b(\d{1,2})\s*(?:pm|am)?|\buntil\s*(\d{1,2})|\bafter\s*(\d{1,2})|\bat\s*(\d{1,2})",
    re.IGNORECASE
)
LATER_THAN_PATTERN = re.compile(r"later\s*(?:than)?\s*(\d+)|after\s*(\d+)", re.IGNORECASE)
RELATIVE_TIME_PATTERN = re.compile(r"later|after|before|around|about", re.IGNORECASE)


class SchedulingAction:
    """Guidance kinds returned by analyze_scheduling_request."""
    ASK_PREFERENCE = 'ask_preference'
    OFFER_SLOTS = 'offer_slots'
    OFFER_LATER = 'offer_later'
    OFFER_EARLIER = 'offer_earlier'
    ASK_ALTERNATIVES = 'ask_alternatives'
    ASK_DAY = 'ask_day'
    OFFER_DAY_TIMES = 'offer_day_times'
    CONFIRM = 'confirm'
    ASK_REMAINING = 'ask_remaining'


@dataclass(frozen=True)
class SchedulingGuidance:
    """
    What the reply should do next for a scheduling goal.

    Attributes:
        action: SchedulingAction value
        instruction: Plain-language instruction for the reply generator
        slots: Offered day slots (offer_* actions)
        times: Offered times for one day (offer_day_times)
        target_fields: Fields the reply is trying to capture
    """
    action: str
    instruction: str
    slots: Tuple[TimeSlot, ...] = ()
    times: Tuple[str, ...] = ()
    target_fields: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'instruction': self.instruction,
            'slots': [{'day': s.day, 'times': list(s.times)} for s in self.slots],
            'times': list(self.times),
            'target_fields': list(self.target_fields),
        }


# =========================================================================
# Hour helpers
# =========================================================================

def _hour_of(clock: str) -> int:
    return int(str(clock).split(':')[0])


def _ranges(business_hours: Dict[str, Any], day: str) -> List[Tuple[int, int]]:
    return [(_hour_of(r['from']), _hour_of(r['to'])) for r in business_hours.get(day) or []]


def format_hour(hour: int) -> str:
    """
    24-hour number to a readable time.

    Examples:
        >>> format_hour(18)
        '6pm'
        >>> format_hour(0)
        '12am'
    """
    if hour == 0:
        return '12am'
    if hour == 12:
        return '12pm'
    if hour < 12:
        return f"{hour}am"
    return f"{hour - 12}pm"


def parse_time_to_hour(time_str: str) -> int:
    """
    Readable time ('6pm', '10am', '18:00') to a 24-hour number.

    Unparseable input reads as noon.
    """
    match = re.search(r"(\d+)\s*(am|pm)?", str(time_str).lower())
    if not match:
        return 12

    hour = int(match.group(1))
    suffix = match.group(2)
    if suffix == 'pm' and hour < 12:
        hour += 12
    elif suffix == 'am' and hour == 12:
        hour = 0
    return hour


def format_slot_options(slots: Sequence[TimeSlot]) -> str:
    """'Monday at 6pm or 7pm, Tuesday at 6pm or 7pm' (two times per day)."""
    return ', '.join(f"{s.day} at {' or '.join(s.times[:2])}" for s in slots)


def day_from_text(text: str) -> Optional[str]:
    """Full weekday name mentioned in text ('next tue' -> 'tuesday')."""
    lower = str(text).lower()
    for abbreviation, day in DAY_ABBREVIATIONS.items():
        if abbreviation in lower:
            return day
    return None


# =========================================================================
# Slot computation
# =========================================================================

def slots_for_preference(business_hours: Dict[str, Any], preference: str) -> List[TimeSlot]:
    """
    Up to three times per open weekday inside the preference band.

    Bands: morning max(from,6)..min(to,12), afternoon max(from,12)..min(to,17),
    evening max(from,17)..min(to-1,21). Without a recognizable band one
    midpoint time per range is offered.

    Args:
        business_hours: Weekday -> list of {from, to}
        preference: Free-text preference ('evening', 'mostly nights', ...)

    Returns:
        TimeSlot per weekday with at least one time, Monday first
    """
    band = map_time_preference(preference)
    slots = []
    for day in DAY_ORDER:
        times = []
        for start, end in _ranges(business_hours, day):
            if band == 'morning' and start < NOON:
                hours = range(max(start, MORNING_START), min(end, NOON))
            elif band == 'evening' and end >= EVENING_START:
                hours = range(max(start, EVENING_START), min(end - 1, LAST_EVENING_HOUR) + 1)
            elif band == 'afternoon' and start <= 14 and end >= NOON:
                hours = range(max(start, NOON), min(end, EVENING_START))
            elif band is None:
                hours = [(start + end) // 2]
            else:
                hours = []
            times.extend(format_hour(h) for h in hours)

        if times:
            slots.append(TimeSlot(day=day.capitalize(), times=tuple(times[:MAX_TIMES_PER_DAY])))
    return slots


def slots_after_hour(business_hours: Dict[str, Any], min_hour: int,
                     skip_days: Iterable[str] = ()) -> List[TimeSlot]:
    """Up to three times per weekday strictly after min_hour ('later than 6pm' -> 7pm on)."""
    skip = {d.lower() for d in skip_days}
    slots = []
    for day in DAY_ORDER:
        if day in skip:
            continue
        times = []
        for start, end in _ranges(business_hours, day):
            for hour in range(max(start, min_hour + 1), end):
                if len(times) >= MAX_TIMES_PER_DAY:
                    break
                times.append(format_hour(hour))
        if times:
            slots.append(TimeSlot(day=day.capitalize(), times=tuple(times)))
    return slots


def slots_before_hour(business_hours: Dict[str, Any], max_hour: int) -> List[TimeSlot]:
    """Up to three times per weekday strictly before max_hour."""
    slots = []
    for day in DAY_ORDER:
        times = []
        for start, end in _ranges(business_hours, day):
            for hour in range(start, min(end, max_hour)):
                if len(times) >= MAX_TIMES_PER_DAY:
                    break
                times.append(format_hour(hour))
        if times:
            slots.append(TimeSlot(day=day.capitalize(), times=tuple(times)))
    return slots


def times_for_day(business_hours: Dict[str, Any], date_text: str) -> List[str]:
    """Every second hour the business is open on the named day (max five)."""
    day = day_from_text(date_text)
    if day is None:
        return []

    times = []
    for start, end in _ranges(business_hours, day):
        for hour in range(start, end, DAY_TIME_STEP):
            if len(times) >= MAX_TIMES_FOR_DAY:
                break
            times.append(format_hour(hour))
    return times


def times_for_day_filtered(business_hours: Dict[str, Any], date_text: str, preference: str) -> List[str]:
    """times_for_day narrowed to the preference band (no band keeps all)."""
    times = times_for_day(business_hours, date_text)
    band = map_time_preference(preference)
    if band is None and 'after' in str(preference).lower():
        band = 'evening'

    if band == 'evening':
        return [t for t in times if parse_time_to_hour(t) >= EVENING_START]
    if band == 'morning':
        return [t for t in times if parse_time_to_hour(t) < NOON]
    if band == 'afternoon':
        return [t for t in times if NOON <= parse_time_to_hour(t) < EVENING_START]
    return times


# =========================================================================
# Guidance
# =========================================================================

def has_time_preference(value: Any) -> bool:
    """Whether a preferredTime value is at least a usable preference."""
    value = unwrap_value(value)
    if value is None:
        return False
    text = str(value).strip().lower()
    if not text or text == 'null':
        return False
    if any(p in text for p in ('morning', 'evening', 'afternoon', 'night', 'am', 'pm', ':')):
        return True
    if RELATIVE_TIME_PATTERN.search(text) and re.search(r"\d", text):
        return True
    return bool(re.fullmatch(r"\d{1,2}", text))


def has_date_value(value: Any) -> bool:
    value = unwrap_value(value)
    if value is None or str(value).strip().lower() in ('', 'null'):
        return False
    return any(p.search(str(value)) for p in DATE_PATTERNS)


def _mentioned_hour(text: str) -> Optional[int]:
    match = MENTIONED_HOUR_PATTERN.search(text)
    if not match:
        return None
    return int(next(g for g in match.groups() if g is not None))


def _as_pm(hour: int) -> int:
    """Ambiguous 1-12 hours in an evening rejection context read as PM."""
    return hour + 12 if 1 <= hour <= 12 else hour


def analyze_scheduling_request(
    message: str,
    captured_data: Dict[str, Any],
    business_hours: Optional[Dict[str, Any]],
    validator: Optional[FieldValidator] = None
) -> SchedulingGuidance:
    """
    Decide the next scheduling move from captured fields and the latest message.

    Order of checks:
    1. Rejection of offered times (later / earlier / other)
    2. No preference and no date -> ask morning or evening
    3. Preference, no date -> offer slots ("later than X" honored)
    4. Date, no specific time -> offer that day's times
    5. Date and specific time -> confirm
    6. Otherwise ask for whatever is missing

    Args:
        message: Latest user message
        captured_data: Channel captured_data
        business_hours: Weekday -> list of {from, to} (None when unknown)
        validator: FieldValidator for the specific-time rule

    Returns:
        SchedulingGuidance
    """
    validator = validator or FieldValidator()
    text = (message or '').lower()
    date_value = unwrap_value(captured_data.get('preferredDate'))
    time_value = unwrap_value(captured_data.get('preferredTime'))

    has_date = has_date_value(date_value)
    has_specific_time = validator.is_specific_time(time_value)
    has_preference = has_time_preference(time_value)

    is_rejection = bool(REJECTION_PATTERN.search(text))
    wants_later = bool(WANTS_LATER_PATTERN.search(text))
    wants_earlier = bool(WANTS_EARLIER_PATTERN.search(text))

    if is_rejection and business_hours:
        pivot = _as_pm(_mentioned_hour(text) or DEFAULT_REJECTION_HOUR)
        logger.info(f"Scheduling rejection (later={wants_later}, earlier={wants_earlier}, hour={pivot})")

        if wants_later:
            slots = slots_after_hour(business_hours, pivot)
            if slots:
                return SchedulingGuidance(
                    action=SchedulingAction.OFFER_LATER,
                    instruction=(f"User wants later options (after {format_hour(pivot)}). "
                                 f"Offer: {format_slot_options(slots)}"),
                    slots=tuple(slots),
                    target_fields=('preferredDate',),
                )
            return SchedulingGuidance(
                action=SchedulingAction.ASK_DAY,
                instruction=f"No slots after {format_hour(pivot)}. Ask which day works better.",
                target_fields=('preferredDate',),
            )

        if wants_earlier:
            slots = slots_before_hour(business_hours, pivot)
            if slots:
                return SchedulingGuidance(
                    action=SchedulingAction.OFFER_EARLIER,
                    instruction=(f"User wants earlier options (before {format_hour(pivot)}). "
                                 f"Offer: {format_slot_options(slots)}"),
                    slots=tuple(slots),
                    target_fields=('preferredDate',),
                )
        else:
            return SchedulingGuidance(
                action=SchedulingAction.ASK_ALTERNATIVES,
                instruction="User rejected the offered times. Ask which times or days work better.",
                target_fields=('preferredTime', 'preferredDate'),
            )

    if not has_preference and not has_date:
        return SchedulingGuidance(
            action=SchedulingAction.ASK_PREFERENCE,
            instruction="Ask whether they prefer mornings or evenings.",
            target_fields=('preferredTime',),
        )

    if has_preference and not has_date and business_hours:
        preference = str(time_value).lower()
        later = LATER_THAN_PATTERN.search(preference)
        if later:
            pivot = _as_pm(int(later.group(1) or later.group(2)))
            slots = slots_after_hour(business_hours, pivot)
            if not slots:
                return SchedulingGuidance(
                    action=SchedulingAction.ASK_DAY,
                    instruction=f"No slots after {format_hour(pivot)}. Ask which day works best.",
                    target_fields=('preferredDate',),
                )
            return SchedulingGuidance(
                action=SchedulingAction.OFFER_LATER,
                instruction=f"User wants times after {format_hour(pivot)}. Offer: {format_slot_options(slots)}",
                slots=tuple(slots),
                target_fields=('preferredDate',),
            )

        slots = slots_for_preference(business_hours, preference)
        if slots:
            return SchedulingGuidance(
                action=SchedulingAction.OFFER_SLOTS,
                instruction=f"User prefers '{time_value}'. Offer: {format_slot_options(slots)}",
                slots=tuple(slots),
                target_fields=('preferredDate',),
            )
        return SchedulingGuidance(
            action=SchedulingAction.ASK_DAY,
            instruction="Ask which day works for them.",
            target_fields=('preferredDate',),
        )

    if has_date and not has_specific_time and business_hours:
        if has_preference:
            times = times_for_day_filtered(business_hours, str(date_value), str(time_value))
        else:
            times = times_for_day(business_hours, str(date_value))
        if times:
            return SchedulingGuidance(
                action=SchedulingAction.OFFER_DAY_TIMES,
                instruction=(f"User picked '{date_value}'. Ask for a specific time: "
                             f"{', '.join(times)}"),
                times=tuple(times),
                target_fields=('preferredTime',),
            )

    if has_date and has_specific_time:
        return SchedulingGuidance(
            action=SchedulingAction.CONFIRM,
            instruction=f"Confirm the appointment for {date_value} at {time_value}.",
        )

    missing = []
    if not has_date:
        missing.append('preferredDate')
    if not has_specific_time:
        missing.append('preferredTime')
    return SchedulingGuidance(
        action=SchedulingAction.ASK_REMAINING,
        instruction=f"Ask for: {' and '.join(missing)}.",
        target_fields=tuple(missing),
    )


def load_business_hours(company_info_path: str) -> Dict[str, Any]:
    """
    Load businessHours from a company info JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If businessHours is missing or malformed
    """
    path = Path(company_info_path)
    if not path.exists():
        raise FileNotFoundError(f"Company info not found: {company_info_path}")

    with open(path, 'r') as f:
        data = json.load(f)

    hours = data.get('businessHours') if isinstance(data, dict) else None
    if not isinstance(hours, dict):
        raise ValueError("Company info must contain a 'businessHours' object")

    for day, ranges in hours.items():
        if day.lower() not in DAY_ORDER:
            raise ValueError(f"Unknown weekday in businessHours: {day}")
        for entry in ranges or []:
            if 'from' not in entry or 'to' not in entry:
                raise ValueError(f"businessHours.{day} entries need 'from' and 'to'")

    logger.info(f"Loaded business hours for {len(hours)} days from {path}")
    return {day.lower(): ranges or [] for day, ranges in hours.items()}
