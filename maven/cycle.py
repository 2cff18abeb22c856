"""Cycle prediction from logged period history.

Everything here is pure date arithmetic. Predictions use a plain average of
the gaps between consecutive period starts; a handful of fixed constants
describe the rest of the cycle.

Several constants are intentionally *not* wired to the user's preferences:

- ``DEFAULT_CYCLE_LENGTH`` is the fallback for ``predict_next_period`` even
  when the user has configured a different ``average_cycle_length``.
- ``LUTEAL_PHASE_DAYS`` places ovulation regardless of cycle length.
- ``PREDICTED_PERIOD_SPAN_DAYS`` sizes the predicted period in ``classify``
  regardless of ``average_period_length``.
"""

import calendar
import math
from dataclasses import dataclass, field
from datetime import date

from maven.dates import (
    add_days,
    days_between,
    is_same_day,
    is_within_inclusive,
    parse_date,
    sub_days,
)

DEFAULT_CYCLE_LENGTH = 28
DEFAULT_PERIOD_LENGTH = 5
LUTEAL_PHASE_DAYS = 14
FERTILE_DAYS_BEFORE_OVULATION = 5
PREDICTED_PERIOD_SPAN_DAYS = 5
# Gaps outside (0, MAX_PLAUSIBLE_CYCLE_DAYS) are treated as data-entry errors
MAX_PLAUSIBLE_CYCLE_DAYS = 60

SYMPTOM_SEVERITIES = ("mild", "moderate", "severe")


@dataclass(frozen=True)
class PeriodEntry:
    id: str
    start_date: date
    end_date: date
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PeriodEntry":
        return cls(
            id=str(data["id"]),
            start_date=parse_date(data["start_date"]),
            end_date=parse_date(data["end_date"]),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class SymptomEntry:
    id: str
    date: date
    type: str
    severity: str
    notes: str | None = None

    def __post_init__(self):
        if self.severity not in SYMPTOM_SEVERITIES:
            raise ValueError(f"Unknown symptom severity: {self.severity!r}")


@dataclass(frozen=True)
class MoodEntry:
    id: str
    date: date
    mood: str
    notes: str | None = None


@dataclass
class ReminderPreferences:
    period_start: bool = True
    period_end: bool = True
    fertility: bool = True
    ovulation: bool = True


@dataclass
class UserPreferences:
    average_cycle_length: int = DEFAULT_CYCLE_LENGTH
    average_period_length: int = DEFAULT_PERIOD_LENGTH
    notifications: bool = True
    reminders: ReminderPreferences = field(default_factory=ReminderPreferences)

    def __post_init__(self):
        for name in ("average_cycle_length", "average_period_length"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    def to_dict(self) -> dict:
        return {
            "average_cycle_length": self.average_cycle_length,
            "average_period_length": self.average_period_length,
            "notifications": self.notifications,
            "reminders": {
                "period_start": self.reminders.period_start,
                "period_end": self.reminders.period_end,
                "fertility": self.reminders.fertility,
                "ovulation": self.reminders.ovulation,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserPreferences":
        return cls(
            average_cycle_length=data.get("average_cycle_length", DEFAULT_CYCLE_LENGTH),
            average_period_length=data.get("average_period_length", DEFAULT_PERIOD_LENGTH),
            notifications=data.get("notifications", True),
            reminders=ReminderPreferences(**data.get("reminders", {})),
        )


@dataclass(frozen=True)
class FertilityWindow:
    fertility_start: date
    fertility_end: date
    ovulation_date: date


@dataclass(frozen=True)
class CyclePrediction:
    """Derived forecast; recompute whenever the history changes."""

    next_period_date: date
    fertility_start: date
    fertility_end: date
    ovulation_date: date


@dataclass(frozen=True)
class DateStatus:
    is_period: bool = False
    is_fertile: bool = False
    is_ovulation: bool = False
    is_predicted_period: bool = False


def most_recent_first(periods: list[PeriodEntry]) -> list[PeriodEntry]:
    # sorted() is stable, so entries sharing a start date keep insertion order
    return sorted(periods, key=lambda p: p.start_date, reverse=True)


def cycle_lengths(periods: list[PeriodEntry]) -> list[int]:
    """Unfiltered gaps between consecutive period starts, most recent first."""
    ordered = most_recent_first(periods)
    return [
        days_between(ordered[i + 1].start_date, ordered[i].start_date)
        for i in range(len(ordered) - 1)
    ]


def average_cycle_length(periods: list[PeriodEntry]) -> int | None:
    """Rounded mean of the plausible cycle gaps, or None if there are none."""
    gaps = [g for g in cycle_lengths(periods) if 0 < g < MAX_PLAUSIBLE_CYCLE_DAYS]
    if not gaps:
        return None
    # Round half up
    return math.floor(sum(gaps) / len(gaps) + 0.5)


def predict_next_period(periods: list[PeriodEntry]) -> date | None:
    """Predict the next period start from history. None when there is no history."""
    if not periods:
        return None

    most_recent = most_recent_first(periods)[0]
    if len(periods) == 1:
        return add_days(most_recent.start_date, DEFAULT_CYCLE_LENGTH)

    avg = average_cycle_length(periods)
    if avg is None:
        avg = DEFAULT_CYCLE_LENGTH
    return add_days(most_recent.start_date, avg)


def calculate_fertility_window(
    next_period_date: date, average_cycle_length: int = DEFAULT_CYCLE_LENGTH
) -> FertilityWindow:
    """Fertility window and ovulation day preceding a predicted period.

    ``average_cycle_length`` is accepted but does not move ovulation; the
    luteal phase is fixed at LUTEAL_PHASE_DAYS.
    """
    ovulation = sub_days(next_period_date, LUTEAL_PHASE_DAYS)
    return FertilityWindow(
        fertility_start=sub_days(ovulation, FERTILE_DAYS_BEFORE_OVULATION),
        fertility_end=ovulation,
        ovulation_date=ovulation,
    )


def predict_cycle(periods: list[PeriodEntry]) -> CyclePrediction | None:
    next_period = predict_next_period(periods)
    if next_period is None:
        return None
    window = calculate_fertility_window(next_period)
    return CyclePrediction(
        next_period_date=next_period,
        fertility_start=window.fertility_start,
        fertility_end=window.fertility_end,
        ovulation_date=window.ovulation_date,
    )


def is_in_period(d: date, periods: list[PeriodEntry]) -> bool:
    return any(is_within_inclusive(d, p.start_date, p.end_date) for p in periods)


def classify(d: date, periods: list[PeriodEntry], next_period: date | None) -> DateStatus:
    """Flag a date against logged history and the predicted next period.

    Flags are independent of each other; which one wins visually is up to
    the caller.
    """
    is_period = is_in_period(d, periods)
    if next_period is None:
        return DateStatus(is_period=is_period)

    window = calculate_fertility_window(next_period)
    return DateStatus(
        is_period=is_period,
        is_fertile=is_within_inclusive(d, window.fertility_start, window.fertility_end),
        is_ovulation=is_same_day(d, window.ovulation_date),
        is_predicted_period=is_within_inclusive(
            d, next_period, add_days(next_period, PREDICTED_PERIOD_SPAN_DAYS)
        ),
    )


def month_statuses(
    year: int, month: int, periods: list[PeriodEntry], next_period: date | None
) -> dict[date, DateStatus]:
    """Classify every day of a calendar month."""
    _, last_day = calendar.monthrange(year, month)
    return {
        date(year, month, day): classify(date(year, month, day), periods, next_period)
        for day in range(1, last_day + 1)
    }
