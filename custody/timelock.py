"""
Timelock Extraction

Finds withdrawal timelocks in the governor's rules text. Absolute locks name a
calendar date ("after January 15, 2026 12:00AM PST"); relative locks are an
offset from each observed deposit ("five minutes after deposit").
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

MONTHS = (
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
)
_MONTHS_RE = "(" + "|".join(MONTHS) + ")"

NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}

UNIT_MS = {
    "minute": 60_000, "minutes": 60_000,
    "hour": 3_600_000, "hours": 3_600_000,
    "day": 86_400_000, "days": 86_400_000,
}

TIMEZONE_OFFSETS = {"PST": -8, "PDT": -7, "UTC": 0, "GMT": 0, "Z": 0}

_ABSOLUTE_RE = re.compile(
    rf"(?:after|on or after)\s+{_MONTHS_RE}\s+(\d{{1,2}}),\s+(\d{{4}})([^.\n]*)",
    re.IGNORECASE,
)
_TIME_RE = re.compile(r"\b(\d{1,2}):(\d{2})\s*([AP]M)?\b", re.IGNORECASE)
_TZ_RE = re.compile(r"\b(PST|PDT|UTC|GMT|Z)\b", re.IGNORECASE)
_RELATIVE_RE = re.compile(
    r"(\d+|\w+)\s*(minutes?|hours?|days?)\s+after\s+deposit", re.IGNORECASE,
)


@dataclass(frozen=True)
class DepositAnchor:
    id: str
    timestamp_ms: int


@dataclass(frozen=True)
class TimelockTrigger:
    id: str
    kind: str                # "absolute" | "relative"
    timestamp_ms: int
    source: str
    anchor: Optional[str] = None
    priority: int = 0
    emit_once: bool = True

    def is_due(self, now_ms: int) -> bool:
        return now_ms >= self.timestamp_ms

    def as_json(self) -> dict:
        out = {
            "trigger_id": self.id,
            "timelock_kind": self.kind,
            "timestamp_ms": self.timestamp_ms,
            "source": self.source,
        }
        if self.anchor:
            out["anchor"] = self.anchor
        return out


def _parse_number(text: str) -> Optional[int]:
    text = text.strip().lower()
    if text.isdigit():
        return int(text)
    return NUMBER_WORDS.get(text)


def _absolute_timestamp(month: str, day: str, year: str, rest: str) -> Optional[int]:
    try:
        month_index = [m.lower() for m in MONTHS].index(month.lower()) + 1
        moment = datetime(int(year), month_index, int(day), tzinfo=timezone.utc)
    except ValueError:
        return None

    time_match = _TIME_RE.search(rest)
    if time_match:
        hour, minute = int(time_match.group(1)), int(time_match.group(2))
        meridiem = (time_match.group(3) or "").upper()
        if meridiem == "AM" and hour == 12:
            hour = 0
        elif meridiem == "PM" and hour < 12:
            hour += 12
        if hour > 23 or minute > 59:
            return None
        moment = moment.replace(hour=hour, minute=minute)

    # No timezone means UTC
    tz_match = _TZ_RE.search(rest)
    if tz_match:
        moment -= timedelta(hours=TIMEZONE_OFFSETS[tz_match.group(1).upper()])

    return int(moment.timestamp() * 1000)


def extract_absolute_timelocks(rules_text: str | None) -> list[TimelockTrigger]:
    if not rules_text:
        return []
    triggers: list[TimelockTrigger] = []
    for match in _ABSOLUTE_RE.finditer(rules_text):
        month, day, year, rest = match.groups()
        timestamp_ms = _absolute_timestamp(month, day, year, rest)
        if timestamp_ms is None:
            continue
        triggers.append(TimelockTrigger(
            id=f"absolute:{timestamp_ms}",
            kind="absolute",
            timestamp_ms=timestamp_ms,
            source=match.group(0).strip(),
        ))
    return triggers


def extract_relative_offsets(rules_text: str | None) -> list[tuple[int, str]]:
    """(offset_ms, source phrase) for every "<n> <unit> after deposit"."""
    if not rules_text:
        return []
    offsets: list[tuple[int, str]] = []
    for match in _RELATIVE_RE.finditer(rules_text):
        amount = _parse_number(match.group(1))
        if not amount:
            continue
        offsets.append((amount * UNIT_MS[match.group(2).lower()], match.group(0)))
    return offsets


def extract_timelock_triggers(
    rules_text: str | None,
    deposits: Iterable[DepositAnchor] = (),
) -> list[TimelockTrigger]:
    """All absolute triggers, plus one relative trigger per deposit and offset."""
    triggers = extract_absolute_timelocks(rules_text)
    offsets = extract_relative_offsets(rules_text)
    if offsets:
        for deposit in deposits:
            if deposit.timestamp_ms is None:
                continue
            for offset_ms, source in offsets:
                triggers.append(TimelockTrigger(
                    id=f"relative:{deposit.id}:{offset_ms}",
                    kind="relative",
                    timestamp_ms=deposit.timestamp_ms + offset_ms,
                    source=source,
                    anchor=deposit.id,
                ))
    return triggers


def due_timelocks(triggers: Iterable[TimelockTrigger], now_ms: int) -> list[TimelockTrigger]:
    return [t for t in triggers if t.is_due(now_ms)]
