"""
Schedule time engine: converts schedule descriptions into fire times.

Pure functions, no I/O. A schedule is either free text ("every tuesday at
3pm", "daily 9:30am") or a 5-field cron expression as produced by
`spec_to_cron`.

Free text is read by an ordered list of extraction rules:

    1. weekday   first weekday name/abbreviation in the text sets
                 day_of_week and implies interval=weekly. Further distinct
                 weekdays are ignored and reported as a warning.
    2. time      first H[:MM] [am|pm] token. Tokens carrying ":MM" or am/pm
                 are preferred over a bare number. "pm" adds 12 to hours
                 below 12, "12am" is hour 0. Out-of-range values are skipped.
    3. interval  "daily"/"every day", then "weekly"/"every week", then
                 "monthly"/"every month". An explicit keyword overrides the
                 interval implied by a weekday.

Anything a rule does not find stays unset; unparseable text is not an error.
A spec with no interval recurs daily.

All datetimes crossing this module's boundary are naive UTC.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import pytz

import config

logger = logging.getLogger("mailscheduler.schedule_parser")

INTERVAL_DAILY = "daily"
INTERVAL_WEEKLY = "weekly"
INTERVAL_MONTHLY = "monthly"

# Sunday = 0, cron convention
DAYS: Dict[str, int] = {
    "sunday": 0, "sun": 0,
    "monday": 1, "mon": 1,
    "tuesday": 2, "tue": 2, "tues": 2,
    "wednesday": 3, "wed": 3,
    "thursday": 4, "thu": 4, "thur": 4, "thurs": 4,
    "friday": 5, "fri": 5,
    "saturday": 6, "sat": 6,
}
DAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

_DAY_RE = re.compile(r"\b(" + "|".join(sorted(DAYS, key=len, reverse=True)) + r")\b")
_QUALIFIED_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2})\s*(am|pm)?|\s*(am|pm))\b")
_BARE_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\b")
_CRON_RE = re.compile(r"^\s*([\d*,/-]+)\s+([\d*,/-]+)\s+([\d*,/-]+)\s+([\d*,/-]+)\s+([\d*,/-]+)\s*$")

_INTERVAL_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    (INTERVAL_DAILY, ("every day", "daily")),
    (INTERVAL_WEEKLY, ("every week", "weekly")),
    (INTERVAL_MONTHLY, ("every month", "monthly")),
]


@dataclass(frozen=True)
class ScheduleSpec:
    day_of_week: Optional[int] = None   # 0-6, Sunday = 0
    hour: Optional[int] = None          # 0-23
    minute: Optional[int] = None        # 0-59
    interval: Optional[str] = None      # daily / weekly / monthly
    warnings: Tuple[str, ...] = ()

    @property
    def has_time(self) -> bool:
        return self.hour is not None


# ── Extraction rules ─────────────────────────────────────────────────


def _extract_weekday(text: str, fields: Dict) -> None:
    matches = [(m.group(1), DAYS[m.group(1)]) for m in _DAY_RE.finditer(text)]
    if not matches:
        return
    token, day = matches[0]
    fields["day_of_week"] = day
    fields["interval"] = INTERVAL_WEEKLY

    ignored = sorted({t for t, d in matches if d != day})
    if ignored:
        fields["warnings"].append(
            f"multiple weekdays in schedule; using '{token}', ignoring {', '.join(ignored)}"
        )


def _to_24h(hour: int, minute: int, period: Optional[str]) -> Optional[Tuple[int, int]]:
    if minute > 59:
        return None
    if period:
        if hour < 1 or hour > 12:
            return None
        if period == "pm" and hour < 12:
            hour += 12
        elif period == "am" and hour == 12:
            hour = 0
    if hour > 23:
        return None
    return hour, minute


def _extract_time(text: str, fields: Dict) -> None:
    for m in _QUALIFIED_TIME_RE.finditer(text):
        hour = int(m.group(1))
        minute = int(m.group(2)) if m.group(2) else 0
        period = m.group(3) or m.group(4)
        parsed = _to_24h(hour, minute, period)
        if parsed:
            fields["hour"], fields["minute"] = parsed
            return

    for m in _BARE_TIME_RE.finditer(text):
        parsed = _to_24h(int(m.group(1)), int(m.group(2) or 0), None)
        if parsed:
            fields["hour"], fields["minute"] = parsed
            return


def _extract_interval(text: str, fields: Dict) -> None:
    for interval, keywords in _INTERVAL_KEYWORDS:
        if any(k in text for k in keywords):
            fields["interval"] = interval
            return


EXTRACTION_RULES: List[Tuple[str, Callable[[str, Dict], None]]] = [
    ("weekday", _extract_weekday),
    ("time", _extract_time),
    ("interval", _extract_interval),
]


def parse_schedule_text(text: str) -> ScheduleSpec:
    """Parse a free-text schedule description into a ScheduleSpec."""
    normalized = (text or "").lower().strip()
    fields: Dict = {"warnings": []}

    for _name, rule in EXTRACTION_RULES:
        rule(normalized, fields)

    warnings = tuple(fields.pop("warnings"))
    for warning in warnings:
        logger.warning(f"schedule_ambiguous: {text!r}: {warning}")
    return ScheduleSpec(warnings=warnings, **fields)


def looks_like_cron(text: str) -> bool:
    return bool(text and _CRON_RE.match(text))


def parse_cron_expression(expr: str) -> ScheduleSpec:
    """
    Parse the cron subset this module emits:

        M H * * *    daily
        M H * * D    weekly on day D (0-7, 0 and 7 = Sunday)
        M H 1 * *    monthly on the 1st

    Raises ValueError for anything else.
    """
    m = _CRON_RE.match(expr or "")
    if not m:
        raise ValueError(f"Not a cron expression: {expr!r}")
    minute, hour, dom, month, dow = m.groups()

    if not (minute.isdigit() and hour.isdigit()) or month != "*":
        raise ValueError(f"Unsupported cron expression: {expr!r}")
    minute, hour = int(minute), int(hour)
    if minute > 59 or hour > 23:
        raise ValueError(f"Cron time out of range: {expr!r}")

    if dom == "*" and dow == "*":
        return ScheduleSpec(hour=hour, minute=minute, interval=INTERVAL_DAILY)
    if dom == "*" and dow.isdigit() and int(dow) <= 7:
        return ScheduleSpec(day_of_week=int(dow) % 7, hour=hour, minute=minute,
                            interval=INTERVAL_WEEKLY)
    if dom == "1" and dow == "*":
        return ScheduleSpec(hour=hour, minute=minute, interval=INTERVAL_MONTHLY)
    raise ValueError(f"Unsupported cron expression: {expr!r}")


def parse_schedule(text: str) -> ScheduleSpec:
    """Cron expression if it looks like one, free text otherwise."""
    if looks_like_cron(text):
        return parse_cron_expression(text)
    return parse_schedule_text(text)


# ── Next-run calculation ─────────────────────────────────────────────


def _resolve_timezone(timezone: Optional[str]):
    try:
        return pytz.timezone(timezone or config.DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"unknown_timezone: {timezone!r}, using {config.DEFAULT_TIMEZONE}")
        return pytz.timezone(config.DEFAULT_TIMEZONE)


def _local_to_utc(local: datetime, tz) -> datetime:
    # is_dst=False picks standard time for ambiguous/nonexistent wall times
    return tz.localize(local, is_dst=False).astimezone(pytz.utc).replace(tzinfo=None)


def _next_day(local: datetime) -> datetime:
    return local + timedelta(days=1)


def _next_week(local: datetime) -> datetime:
    return local + timedelta(days=7)


def _first_of_next_month(local: datetime) -> datetime:
    if local.month == 12:
        return local.replace(year=local.year + 1, month=1, day=1)
    return local.replace(month=local.month + 1, day=1)


def next_run_for_spec(spec: ScheduleSpec, timezone: str = None, now: datetime = None) -> datetime:
    """Next fire time for a parsed spec, strictly after `now` (naive UTC)."""
    tz = _resolve_timezone(timezone)
    if now is None:
        now = datetime.now(pytz.utc).replace(tzinfo=None)
    local_now = pytz.utc.localize(now).astimezone(tz).replace(tzinfo=None)

    candidate = local_now
    if spec.hour is not None:
        candidate = local_now.replace(hour=spec.hour, minute=spec.minute or 0,
                                      second=0, microsecond=0)

    if spec.interval == INTERVAL_MONTHLY:
        candidate = candidate.replace(day=1)
        if candidate <= local_now:
            candidate = _first_of_next_month(candidate)
        advance = _first_of_next_month
    elif spec.interval == INTERVAL_WEEKLY:
        if spec.day_of_week is not None:
            current_day = (local_now.weekday() + 1) % 7
            delta = spec.day_of_week - current_day
            if delta < 0 or (delta == 0 and candidate <= local_now):
                delta += 7
            candidate += timedelta(days=delta)
        elif candidate <= local_now:
            # "weekly" without a day anchors on today's weekday
            candidate += timedelta(days=7)
        advance = _next_week
    else:
        if candidate <= local_now:
            candidate += timedelta(days=1)
        advance = _next_day

    result = _local_to_utc(candidate, tz)
    # DST shifts can pull a wall time back across `now`
    while result <= now:
        candidate = advance(candidate)
        result = _local_to_utc(candidate, tz)
    return result


def get_next_run_time(schedule: str, timezone: str = None, now: datetime = None) -> datetime:
    """
    Parse a schedule (free text or cron) and return its next fire time.

    Args:
        schedule: "every tuesday at 3pm", "daily 9am", "30 9 * * 1", ...
        timezone: IANA name the wall-clock times are meant in
        now: naive UTC reference time (defaults to the current time)

    Raises:
        ValueError: the schedule is a cron expression this engine cannot evaluate
    """
    return next_run_for_spec(parse_schedule(schedule), timezone, now)


# ── Rendering ────────────────────────────────────────────────────────


def spec_to_cron(spec: ScheduleSpec) -> Optional[str]:
    """Render as `minute hour day-of-month month day-of-week`, None without a time."""
    if spec.hour is None:
        return None

    minute = spec.minute or 0
    if spec.interval == INTERVAL_WEEKLY and spec.day_of_week is not None:
        return f"{minute} {spec.hour} * * {spec.day_of_week}"
    if spec.interval == INTERVAL_MONTHLY:
        return f"{minute} {spec.hour} 1 * *"
    return f"{minute} {spec.hour} * * *"


def schedule_text_to_cron(text: str) -> Optional[str]:
    return spec_to_cron(parse_schedule_text(text))


def format_schedule_for_display(spec: ScheduleSpec) -> str:
    parts = []

    if spec.interval == INTERVAL_WEEKLY and spec.day_of_week is not None:
        parts.append(f"Every {DAY_NAMES[spec.day_of_week].capitalize()}")
    elif spec.interval == INTERVAL_WEEKLY:
        parts.append("Every week")
    elif spec.interval == INTERVAL_DAILY:
        parts.append("Every day")
    elif spec.interval == INTERVAL_MONTHLY:
        parts.append("Every month")

    if spec.hour is not None:
        hour12 = spec.hour % 12 or 12
        period = "PM" if spec.hour >= 12 else "AM"
        parts.append(f"at {hour12}:{(spec.minute or 0):02d} {period}")

    return " ".join(parts) or "Not scheduled"
