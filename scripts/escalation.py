"""Escalating reminders for users who haven't posted audio recently.

plan_notifications() decides, without touching the network, which users
are due a reminder; deliver() sends one and records it in the store.
"""

from typing import NamedTuple

import discord_api as dc
import helpers
from activity import is_more_severe


class Notification(NamedTuple):
    guild_id: str
    channel_id: str
    user_id: str
    threshold: int
    last_activity_at: int
    due_at: int


def select_threshold(days: float, thresholds) -> int | None:
    """Most severe threshold crossed: the smallest T with days <= T."""
    crossed = [t for t in thresholds if days <= t]
    return min(crossed) if crossed else None


def plan_notifications(records, now: int, *, target_days: float | None = None,
                       thresholds=None) -> list[Notification]:
    """Return a Notification for every record that has crossed a new, more severe threshold."""
    target_days = helpers.TARGET_DAYS if target_days is None else target_days
    thresholds = helpers.NOTIFY_THRESHOLDS if thresholds is None else thresholds

    due = []
    for rec in records:
        remaining = helpers.days_left(rec.last_activity_at, now, target_days)
        threshold = select_threshold(remaining, thresholds)
        if threshold is None or not is_more_severe(threshold, rec.last_notified_threshold):
            continue
        due.append(Notification(
            rec.guild_id, rec.channel_id, rec.user_id, threshold,
            rec.last_activity_at,
            rec.last_activity_at + int(target_days * helpers.MS_PER_DAY),
        ))
    return due


def template_for(threshold: int, templates: dict) -> str:
    if threshold in templates:
        return templates[threshold]
    return f"{{user}} you have {threshold} day(s) or less left to post a track! {{duedate}}"


def _still_due(note: Notification, store) -> bool:
    rec = store.get(note.guild_id, note.channel_id, note.user_id)
    return (
        rec is not None
        and rec.last_activity_at == note.last_activity_at
        and is_more_severe(note.threshold, rec.last_notified_threshold)
    )


def deliver(note: Notification, store, *, templates: dict | None = None,
            tz_name: str | None = None) -> bool:
    """Send one reminder by DM and in the channel, then record it.

    Returns False, leaving the store untouched, when the member can't be
    resolved or the record changed since the pass was planned.
    """
    templates = templates or helpers.DEFAULT_MESSAGES
    tz_name = tz_name or helpers.TIMEZONE

    member = dc.fetch_member(note.guild_id, note.user_id)
    if not member:
        print(f"Could not resolve member {note.user_id} in {note.guild_id}, skipping")
        return False

    # Activity may have been recorded while the member lookup was in flight
    if not _still_due(note, store):
        print(f"Reminder for {note.user_id} no longer due, skipping")
        return False

    text = helpers.render_template(
        template_for(note.threshold, templates),
        user=helpers.user_mention(note.user_id),
        duedate=helpers.fmt_due_date(note.due_at, tz_name),
    )

    if not dc.send_direct(note.user_id, text):
        print(f"Could not DM {note.user_id}")
    if not dc.send_to_channel(note.channel_id, text):
        print(f"Failed to send to channel {note.channel_id}")

    # Recorded even if both sends failed; the next threshold will still fire
    store.record_notification(note.guild_id, note.channel_id, note.user_id, note.threshold)
    print(f"Notified {note.user_id} at {note.threshold}-day threshold")
    return True


def run_check_pass(store, *, now: int | None = None, templates: dict | None = None,
                   target_days: float | None = None, thresholds=None,
                   tz_name: str | None = None) -> int:
    """Plan and deliver every due reminder. Returns how many were sent."""
    now = helpers.now_ms() if now is None else now
    due = plan_notifications(
        store.snapshot(), now, target_days=target_days, thresholds=thresholds,
    )
    print(f"Check pass: {len(store)} tracked users, {len(due)} reminders due")

    sent = 0
    for note in due:
        try:
            if deliver(note, store, templates=templates, tz_name=tz_name):
                sent += 1
        except Exception as e:
            print(f"Error notifying {note.user_id}: {e}")
    return sent
