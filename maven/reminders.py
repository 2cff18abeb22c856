"""Reminder batteries derived from a cycle prediction.

Builders here only decide what to send and when; they return
ScheduledNotification records and never touch storage. ``schedule_reminders``
hands a batch to the dispatcher.
"""

import logging
import math
import uuid
from datetime import date, datetime, time, timezone, tzinfo

from maven.cycle import (
    DEFAULT_PERIOD_LENGTH,
    PeriodEntry,
    UserPreferences,
    cycle_lengths,
    most_recent_first,
    predict_cycle,
)
from maven.dates import add_days, format_date, sub_days
from maven.notifications import NotificationDispatcher, NotificationType, ScheduledNotification

logger = logging.getLogger(__name__)

MIN_HISTORY_FOR_INSIGHTS = 3
REGULAR_DEVIATION_DAYS = 2
MODERATE_DEVIATION_DAYS = 5
INSIGHT_DELAY_DAYS = 7
PMS_LEAD_DAYS = 7


def _make(
    title: str,
    body: str,
    on: date,
    type: NotificationType,
    now: datetime | None,
    tz: tzinfo,
) -> ScheduledNotification:
    return ScheduledNotification(
        id=uuid.uuid4().hex,
        title=title,
        body=body,
        scheduled_date=datetime.combine(on, time.min, tzinfo=tz),
        type=type,
        created_at=now or datetime.now(tz),
    )


def period_reminders(
    predicted: date,
    period_length: int = DEFAULT_PERIOD_LENGTH,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> list[ScheduledNotification]:
    """Five reminders around a predicted period start."""
    when = format_date(predicted)
    return [
        _make(
            "Period Coming Soon",
            f"Your next period is expected to begin in 5 days, on {when}. "
            "Consider stocking up on supplies.",
            sub_days(predicted, 5), NotificationType.PRECAUTION, now, tz,
        ),
        _make(
            "Period Reminder",
            f"Your next period is expected to start in 3 days, on {when}. "
            "Prepare your essentials.",
            sub_days(predicted, 3), NotificationType.PERIOD, now, tz,
        ),
        _make(
            "Period Starting Tomorrow",
            "Your period is expected to start tomorrow. Here are some self-care tips: "
            "rest well, stay hydrated, and have pain relief on hand if needed.",
            sub_days(predicted, 1), NotificationType.PRECAUTION, now, tz,
        ),
        _make(
            "Period Expected Today",
            "Your period is expected to start today. "
            "Remember to track your symptoms for better future predictions.",
            predicted, NotificationType.PERIOD, now, tz,
        ),
        _make(
            "Period Expected to End",
            f"Based on your cycle history, your {period_length}-day period is expected "
            "to end today. How are you feeling?",
            add_days(predicted, period_length - 1), NotificationType.PERIOD, now, tz,
        ),
    ]


def ovulation_reminders(
    ovulation: date,
    fertility_start: date,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> list[ScheduledNotification]:
    """Fertility window and ovulation reminders."""
    return [
        _make(
            "Fertility Window Beginning",
            "Your fertility window is beginning. "
            "If you're trying to conceive, this is a good time to plan.",
            fertility_start, NotificationType.FERTILITY, now, tz,
        ),
        _make(
            "Approaching Peak Fertility",
            "You're approaching your most fertile day. Track any changes in cervical "
            "mucus which may become clearer and more stretchy.",
            sub_days(ovulation, 2), NotificationType.FERTILITY, now, tz,
        ),
        _make(
            "Ovulation Reminder",
            f"You are expected to ovulate tomorrow, on {format_date(ovulation)}. "
            "This is your peak fertility day if you're trying to conceive.",
            sub_days(ovulation, 1), NotificationType.OVULATION, now, tz,
        ),
        _make(
            "Ovulation Day",
            "Today is your estimated ovulation day. You may experience a slight "
            "increase in basal body temperature or mild cramping.",
            ovulation, NotificationType.OVULATION, now, tz,
        ),
    ]


def pms_reminder(
    predicted: date, now: datetime | None = None, tz: tzinfo = timezone.utc
) -> ScheduledNotification:
    return _make(
        "PMS May Begin Soon",
        "PMS symptoms may begin soon. Consider these tips: regular exercise, stress "
        "management, and reducing caffeine and salt intake can help ease symptoms.",
        sub_days(predicted, PMS_LEAD_DAYS), NotificationType.PRECAUTION, now, tz,
    )


def average_cycle_deviation(periods: list[PeriodEntry]) -> float | None:
    """Mean change in length between consecutive cycles.

    The most recent cycle is compared with itself, so it always contributes 0.
    """
    lengths = cycle_lengths(periods)
    if not lengths:
        return None
    deviations = [
        abs(current - (lengths[i - 1] if i > 0 else current))
        for i, current in enumerate(lengths)
    ]
    return sum(deviations) / len(deviations)


def cycle_insight(
    periods: list[PeriodEntry], now: datetime | None = None, tz: tzinfo = timezone.utc
) -> ScheduledNotification | None:
    """Regularity insight, a week after the latest period ends. Needs 3+ periods."""
    if len(periods) < MIN_HISTORY_FOR_INSIGHTS:
        return None

    deviation = average_cycle_deviation(periods)
    shown = math.floor(deviation + 0.5)
    if deviation <= REGULAR_DEVIATION_DAYS:
        body = (
            f"Your cycles are very regular (varying by ~{shown} days). "
            "Your predictions should be quite accurate."
        )
    elif deviation <= MODERATE_DEVIATION_DAYS:
        body = (
            f"Your cycles have moderate variability (averaging ~{shown} days difference). "
            "Consider tracking additional factors like stress and exercise that may "
            "influence cycle length."
        )
    else:
        body = (
            f"Your cycles show significant variability (averaging ~{shown} days difference). "
            "Consider consulting with a healthcare provider if this is unusual for you."
        )

    most_recent = most_recent_first(periods)[0]
    return _make(
        "Your Cycle Insights",
        body,
        add_days(most_recent.end_date, INSIGHT_DELAY_DAYS),
        NotificationType.REMINDER, now, tz,
    )


def build_reminders(
    periods: list[PeriodEntry],
    preferences: UserPreferences | None = None,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> list[ScheduledNotification]:
    """Every reminder the current history calls for, filtered by preferences."""
    prediction = predict_cycle(periods)
    if prediction is None:
        return []
    prefs = preferences or UserPreferences()
    if not prefs.notifications:
        return []

    now = now or datetime.now(tz)
    toggles = prefs.reminders
    predicted = prediction.next_period_date

    *lead_up, period_end = period_reminders(predicted, prefs.average_period_length, now, tz)
    reminders = []
    if toggles.period_start:
        reminders.extend(lead_up)
    if toggles.period_end:
        reminders.append(period_end)

    for reminder in ovulation_reminders(prediction.ovulation_date, prediction.fertility_start, now, tz):
        if reminder.type == NotificationType.FERTILITY and toggles.fertility:
            reminders.append(reminder)
        elif reminder.type == NotificationType.OVULATION and toggles.ovulation:
            reminders.append(reminder)

    if toggles.period_start:
        reminders.append(pms_reminder(predicted, now, tz))

    insight = cycle_insight(periods, now, tz)
    if insight is not None:
        reminders.append(insight)
    return reminders


def schedule_reminders(
    dispatcher: NotificationDispatcher, reminders: list[ScheduledNotification]
) -> list[bool]:
    """Schedule each reminder independently; returns per-reminder deliverability."""
    results = [dispatcher.schedule(reminder) for reminder in reminders]
    logger.info(f"Scheduled {len(reminders)} reminder(s), {results.count(True)} deliverable")
    return results
