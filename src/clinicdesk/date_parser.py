"""Natural-language date resolution.

Turns caller phrases like "tomorrow", "next saturday", "the 15th", "23rd of
may" or "23/5" into a concrete time range in the clinic's timezone. Anything
unrecognized falls back to the next two weeks; resolution never raises.

Weekday rule: a bare weekday (or "this <weekday>") means the next occurrence,
including today only while it is still morning locally. "next <weekday>" is
always exactly seven days after "this <weekday>". Slash dates are day/month.
"""

import calendar
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Australia/Brisbane"
DEFAULT_WINDOW_DAYS = 14

WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

PART_OF_DAY_HOURS = {
    "morning": (8, 12),
    "afternoon": (12, 17),
    "evening": (17, 20),
}

BUSINESS_HOURS = (8, 18)

_MONTH_RE = "|".join(sorted(MONTHS, key=len, reverse=True))
_ORDINAL = r"(\d{1,2})(?:st|nd|rd|th)?"

MONTH_DAY_PATTERN = re.compile(rf"^({_MONTH_RE})\.?\s+(?:the\s+)?{_ORDINAL}$")
DAY_MONTH_PATTERN = re.compile(rf"^(?:the\s+)?{_ORDINAL}\s+(?:of\s+)?({_MONTH_RE})\.?$")
SLASH_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})(?:/(\d{2}|\d{4}))?$")
ORDINAL_PATTERN = re.compile(r"^(?:the\s+)?(\d{1,2})(st|nd|rd|th)?$")

TIME_PATTERN = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)")

TIME_FILLER_PATTERN = re.compile(
    r"\b(?:at|around|about|by|after|before)?\s*\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)"
)

HOUR_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
MINUTE_WORDS = {"o'clock": 0, "fifteen": 15, "thirty": 30, "forty five": 45, "forty-five": 45}
HOUR_OFFSETS = {"half past": 0.5, "quarter past": 0.25, "quarter to": -0.25}

_HOUR_RE = r"\d{1,2}|" + "|".join(HOUR_WORDS)
_MERIDIEM_RE = r"a\.?m\.?|p\.?m\.?"

# "half past ten", "quarter to 3pm"
OFFSET_TIME_PATTERN = re.compile(
    rf"\b(half past|quarter past|quarter to)\s+({_HOUR_RE})\b\s*({_MERIDIEM_RE})?"
)
# "10:30", "ten thirty", "2 o'clock", "one forty five pm"
CLOCK_TIME_PATTERN = re.compile(
    rf"\b({_HOUR_RE})(?::(\d{{2}})\b|\s+(o'clock|fifteen|thirty|forty[- ]five)\b)\s*({_MERIDIEM_RE})?"
)
# "at 3", "around ten"
BARE_HOUR_PATTERN = re.compile(
    rf"\b(?:at|around|about)\s+({_HOUR_RE})\b(?!\s+(?:minutes?|days?|weeks?|months?)\b)"
)
SPOKEN_TIME_PATTERNS = (OFFSET_TIME_PATTERN, CLOCK_TIME_PATTERN, BARE_HOUR_PATTERN)

FILLER_WORDS = {
    "in", "the", "on", "at", "around", "about", "sometime", "anytime", "any",
    "time", "please", "preferably", "ideally", "maybe", "morning", "afternoon",
    "evening", "arvo", "tonight", "noon", "midday", "early", "late", "ish",
    "if", "possible",
}


@dataclass
class DateRange:
    start: datetime
    end: datetime
    description: str
    matched: bool = True

    @property
    def single_day(self) -> bool:
        return self.start.date() == self.end.date()


def _now(tz: ZoneInfo) -> datetime:
    """Current time in ``tz``. Extracted for test mocking."""
    return datetime.now(tz)


def _start_of(d: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def _end_of(d: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, time.max, tzinfo=tz)


def _day_range(d: date, tz: ZoneInfo, description: str) -> DateRange:
    return DateRange(_start_of(d, tz), _end_of(d, tz), description)


def _label(d: date) -> str:
    return f"{d:%b} {d.day}"


def _normalize(expression: str) -> str:
    expr = re.sub(r"\s+", " ", expression.lower()).strip()
    expr = re.sub(r"[?.!,]+$", "", expr).strip()
    if expr.startswith("on "):
        expr = expr[3:]
    return expr


def next_weekday(now: datetime, target: int) -> date:
    """Next occurrence of ``target`` (Mon=0). Today counts only before noon."""
    today = now.date()
    if today.weekday() == target:
        return today if now.hour < 12 else today + timedelta(days=7)
    return today + timedelta(days=(target - today.weekday()) % 7)


def _fallback(now: datetime, description: str, matched: bool = False) -> DateRange:
    return DateRange(now, now + timedelta(days=DEFAULT_WINDOW_DAYS), description, matched)


def _roll_day_of_month(today: date, day: int) -> date | None:
    year, month = today.year, today.month
    for _ in range(13):
        if day <= calendar.monthrange(year, month)[1]:
            candidate = date(year, month, day)
            if candidate >= today:
                return candidate
        month += 1
        if month > 12:
            month, year = 1, year + 1
    return None


def _month_day(today: date, month: int, day: int, year: int | None = None) -> date | None:
    if year is not None:
        try:
            return date(year, month, day)
        except ValueError:
            return None
    for y in (today.year, today.year + 1):
        try:
            candidate = date(y, month, day)
        except ValueError:
            # 29 Feb outside a leap year
            continue
        if candidate >= today:
            return candidate
    return None


def resolve(
    expression: str | None,
    timezone: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> DateRange:
    """Resolve a natural-language day expression to a DateRange in ``timezone``."""
    tz = ZoneInfo(timezone)
    now = now.astimezone(tz) if now else _now(tz)
    today = now.date()

    if not expression or not expression.strip():
        return _fallback(now, "next 2 weeks (no specific day requested)", matched=True)

    expr = _normalize(expression)

    if expr == "today":
        return DateRange(now, _end_of(today, tz), "today")

    if expr == "tomorrow":
        return _day_range(today + timedelta(days=1), tz, "tomorrow")

    if expr == "next week":
        monday = today + timedelta(days=7 - today.weekday())
        friday = monday + timedelta(days=4)
        return DateRange(
            _start_of(monday, tz), _end_of(friday, tz),
            f"next week ({_label(monday)} - {_label(friday)})",
        )

    if expr == "this week":
        if today.weekday() < 5:
            friday = today + timedelta(days=4 - today.weekday())
            return DateRange(now, _end_of(friday, tz), f"this week (until {_label(friday)})")
        monday = today + timedelta(days=7 - today.weekday())
        friday = monday + timedelta(days=4)
        return DateRange(
            _start_of(monday, tz), _end_of(friday, tz),
            f"this week ({_label(monday)} - {_label(friday)})",
        )

    if expr in WEEKDAYS:
        target = next_weekday(now, WEEKDAYS[expr])
        return _day_range(target, tz, f"{expr} ({_label(target)})")

    for prefix in ("this ", "next "):
        if expr.startswith(prefix) and expr[len(prefix):] in WEEKDAYS:
            target = next_weekday(now, WEEKDAYS[expr[len(prefix):]])
            if prefix == "next ":
                target += timedelta(days=7)
            return _day_range(target, tz, f"{expr} ({_label(target)})")

    m = MONTH_DAY_PATTERN.match(expr)
    if m:
        target = _month_day(today, MONTHS[m.group(1)], int(m.group(2)))
        if target:
            return _day_range(target, tz, f"{expr} ({_label(target)})")

    m = DAY_MONTH_PATTERN.match(expr)
    if m:
        target = _month_day(today, MONTHS[m.group(2)], int(m.group(1)))
        if target:
            return _day_range(target, tz, f"{expr} ({_label(target)})")

    m = SLASH_PATTERN.match(expr)
    if m:
        day, month = int(m.group(1)), int(m.group(2))
        year = None
        if m.group(3):
            year = int(m.group(3))
            if year < 100:
                year += 2000
        target = _month_day(today, month, day, year) if 1 <= month <= 12 else None
        if target:
            return _day_range(target, tz, f"{expr} ({_label(target)})")

    m = ORDINAL_PATTERN.match(expr)
    if m and (m.group(2) or expr.startswith("the ")):
        day = int(m.group(1))
        target = _roll_day_of_month(today, day) if 1 <= day <= 31 else None
        if target:
            return _day_range(target, tz, f"the {expr.removeprefix('the ')} ({_label(target)})")

    logger.warning("Could not parse date expression: %s", expr)
    return _fallback(now, f'next 2 weeks (couldn\'t parse "{expr}")')


def part_of_day(text: str | None) -> str | None:
    """Map a caller's phrasing to "morning", "afternoon" or "evening"."""
    if not text:
        return None
    lower = text.lower()
    if re.search(r"\b(morning|early)\b", lower):
        return "morning"
    if re.search(r"\b(afternoon|arvo|late)\b", lower):
        return "afternoon"
    if re.search(r"\b(evening|tonight|after work)\b", lower):
        return "evening"
    return None


def _on_clock(hour: int, minute: int, meridiem: str | None) -> float | None:
    if minute > 59 or hour > 23:
        return None
    if meridiem:
        if hour > 12:
            return None
        if meridiem.startswith("p") and hour != 12:
            hour += 12
        elif meridiem.startswith("a") and hour == 12:
            hour = 0
    elif 0 < hour < BUSINESS_HOURS[0]:
        # clinic hours: "at 3" is 3pm
        hour += 12
    return hour + minute / 60


def _hour_value(token: str) -> int:
    return int(token) if token.isdigit() else HOUR_WORDS[token]


def preferred_hour(text: str | None) -> float | None:
    """Extract a clock time as a fractional hour.

    Understands "4pm", "10:30 a.m.", "noon", "half past ten", "quarter to
    three", "10:30", "ten thirty" and "at 3". Without am/pm, hours before
    opening time are read as afternoon and 13 to 23 as a 24-hour clock.
    """
    if not text:
        return None
    lower = text.lower().replace("’", "'")
    m = OFFSET_TIME_PATTERN.search(lower)
    if m:
        hour = _on_clock(_hour_value(m.group(2)), 0, m.group(3))
        if hour is None or hour + HOUR_OFFSETS[m.group(1)] < 0:
            return None
        return hour + HOUR_OFFSETS[m.group(1)]
    m = TIME_PATTERN.search(lower)
    if m:
        hour = int(m.group(1))
        minute = int(m.group(2) or 0)
        if hour > 12 or minute > 59:
            return None
        return _on_clock(hour, minute, m.group(3))
    m = CLOCK_TIME_PATTERN.search(lower)
    if m:
        minute = int(m.group(2)) if m.group(2) else MINUTE_WORDS[m.group(3).replace("-", " ")]
        return _on_clock(_hour_value(m.group(1)), minute, m.group(4))
    m = BARE_HOUR_PATTERN.search(lower)
    if m:
        return _on_clock(_hour_value(m.group(1)), 0, None)
    if re.search(r"\b(noon|midday)\b", lower):
        return 12.0
    return None


def _strip_time_words(text: str) -> str:
    remainder = TIME_FILLER_PATTERN.sub(" ", text.lower().replace("’", "'"))
    for pattern in SPOKEN_TIME_PATTERNS:
        remainder = pattern.sub(" ", remainder)
    words = [w for w in re.sub(r"[?.!,]", " ", remainder).split() if w not in FILLER_WORDS]
    return " ".join(words)


def time_preference_window(
    preference: str | None,
    timezone: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> DateRange:
    """Resolve a full time preference ("tomorrow at 4pm", "saturday morning").

    The day part goes through resolve(). For a single day the window is then
    narrowed to the requested hour (one hour before to two after), the part of
    day, or business hours, and never starts in the past. Multi-day ranges are
    returned as resolved; callers filter them by part of day.
    """
    tz = ZoneInfo(timezone)
    now = now.astimezone(tz) if now else _now(tz)
    if not preference or not preference.strip():
        return resolve(None, timezone, now)

    hour = preferred_hour(preference)
    period = part_of_day(preference)
    day_expr = _strip_time_words(preference)
    if day_expr == "this":
        day_expr = ""

    if day_expr:
        base = resolve(day_expr, timezone, now)
        if not base.single_day:
            return base
        day = base.start.date()
    else:
        day = now.date()

    if hour is not None:
        anchor = datetime.combine(day, time(int(hour), int(round((hour % 1) * 60))), tzinfo=tz)
        start, end = anchor - timedelta(hours=1), anchor + timedelta(hours=2)
    else:
        first, last = PART_OF_DAY_HOURS.get(period, BUSINESS_HOURS)
        start = datetime.combine(day, time(first), tzinfo=tz)
        end = datetime.combine(day, time(last), tzinfo=tz)

    # "morning" said in the afternoon, with no day given, means tomorrow morning
    if not day_expr and end <= now:
        start += timedelta(days=1)
        end += timedelta(days=1)

    if start < now:
        start = now
    return DateRange(start, end, f"{preference.strip().lower()} ({_label(start.date())})")


def format_range(r: DateRange) -> str:
    return f"{r.start:%b %d %I:%M%p} - {r.end:%b %d %I:%M%p} ({r.description})"


def speakable_time(value: datetime, timezone: str = DEFAULT_TIMEZONE) -> str:
    """Render an instant for speech, e.g. "Tuesday 14 May at 10:30am"."""
    local = value.astimezone(ZoneInfo(timezone))
    clock = local.strftime("%I:%M%p").lstrip("0").lower().replace(":00", "")
    return f"{local:%A} {local.day} {local:%B} at {clock}"
