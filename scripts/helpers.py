"""Shared utilities, constants, and config loading."""

import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# ------------------------------------------------------------------ #
#  Paths
# ------------------------------------------------------------------ #
CONFIG_PATH = Path(__file__).parent.parent / "config.json"
STATE_PATH = Path(__file__).parent.parent / "data" / "audio_state.json"

MS_PER_DAY = 86_400_000

# ------------------------------------------------------------------ #
#  Tunable settings (defaults, overridden by config.json settings block)
# ------------------------------------------------------------------ #
TARGET_DAYS = 30
NOTIFY_THRESHOLDS = [7, 3, 1, 0]
CHECK_INTERVAL_MINUTES = 60
STARTUP_DELAY_SECONDS = 10
POLL_SECONDS = 30
BACKFILL_LIMIT = 1000
PAGE_SIZE = 100
TIMEZONE = "UTC"
COMMAND_PREFIX = "!"
BACKFILL_ON_START = True

AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".flac", ".ogg", ".aac", ".opus")

DEFAULT_MESSAGES = {
    7: "{user} you have 7 days or less left to post a track! 💣 {duedate}",
    3: "{user}! ⚠️ Few days left! Post music! 🥺 {duedate}",
    1: "😱 {user}!!! 1 day left to post music! QUICK send something 🙏",
    0: "🚨🚨🚨 {user}!!!!! It's been over a month of no music! 😳😳😳",
}

# Env var overrides for the default thresholds' templates
MESSAGE_ENV_VARS = {
    7: "NOTIFY_7DAYS",
    3: "NOTIFY_3DAYS",
    1: "NOTIFY_1DAY",
    0: "NOTIFY_OVERDUE",
}


# ------------------------------------------------------------------ #
#  Config loading
# ------------------------------------------------------------------ #
def load_config() -> dict:
    with open(CONFIG_PATH) as f:
        return json.load(f)


def _env_number(name: str, default, cast=int):
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        print(f"Warning: ignoring non-numeric {name}={raw!r}")
        return default


def load_settings(config: dict):
    """Load tunable settings from config, applying defaults for any missing keys.

    TARGET_DAYS and CHECK_INTERVAL_MINUTES can also be overridden from the
    environment, which wins over config.json.
    """
    global TARGET_DAYS, NOTIFY_THRESHOLDS, CHECK_INTERVAL_MINUTES
    global STARTUP_DELAY_SECONDS, POLL_SECONDS, BACKFILL_LIMIT, PAGE_SIZE
    global TIMEZONE, COMMAND_PREFIX, BACKFILL_ON_START

    s = config.get("settings", {})
    TARGET_DAYS = s.get("target_days", TARGET_DAYS)
    NOTIFY_THRESHOLDS = s.get("notify_thresholds", NOTIFY_THRESHOLDS)
    CHECK_INTERVAL_MINUTES = s.get("check_interval_minutes", CHECK_INTERVAL_MINUTES)
    STARTUP_DELAY_SECONDS = s.get("startup_delay_seconds", STARTUP_DELAY_SECONDS)
    POLL_SECONDS = s.get("poll_seconds", POLL_SECONDS)
    BACKFILL_LIMIT = s.get("backfill_limit", BACKFILL_LIMIT)
    PAGE_SIZE = s.get("page_size", PAGE_SIZE)
    TIMEZONE = s.get("timezone", TIMEZONE)
    COMMAND_PREFIX = s.get("command_prefix", COMMAND_PREFIX)
    BACKFILL_ON_START = s.get("backfill_on_start", BACKFILL_ON_START)

    TARGET_DAYS = _env_number("TARGET_DAYS", TARGET_DAYS, float)
    CHECK_INTERVAL_MINUTES = _env_number("CHECK_INTERVAL_MINUTES", CHECK_INTERVAL_MINUTES, float)


def load_messages(config: dict) -> dict[int, str]:
    """Build the threshold -> template map: defaults, then config.json, then env vars."""
    messages = dict(DEFAULT_MESSAGES)
    for key, text in config.get("messages", {}).items():
        messages[int(key)] = text
    for threshold, env_name in MESSAGE_ENV_VARS.items():
        override = os.environ.get(env_name)
        if override:
            messages[threshold] = override
    return messages


def _is_positive_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def validate_config(config: dict) -> list[str]:
    """Return a list of 'ERROR: ...' / 'WARNING: ...' strings for a loaded config."""
    issues = []
    channels = config.get("channels", [])
    if not channels:
        issues.append("ERROR: no channels configured")
    for i, ch in enumerate(channels):
        for key in ("guild_id", "channel_id"):
            if not ch.get(key):
                issues.append(f"ERROR: channels[{i}] is missing {key}")

    s = config.get("settings", {})
    thresholds = s.get("notify_thresholds", NOTIFY_THRESHOLDS)
    if not thresholds:
        issues.append("ERROR: notify_thresholds is empty")
    elif any(t < 0 for t in thresholds):
        issues.append("ERROR: notify_thresholds must not be negative")
    elif list(thresholds) != sorted(thresholds, reverse=True):
        issues.append("WARNING: notify_thresholds should run from least to most severe")

    # Environment overrides win over config.json
    numbers = {
        "target_days": _env_number("TARGET_DAYS", s.get("target_days", TARGET_DAYS), float),
        "check_interval_minutes": _env_number(
            "CHECK_INTERVAL_MINUTES", s.get("check_interval_minutes", CHECK_INTERVAL_MINUTES), float),
        "poll_seconds": s.get("poll_seconds", POLL_SECONDS),
        "page_size": s.get("page_size", PAGE_SIZE),
        "backfill_limit": s.get("backfill_limit", BACKFILL_LIMIT),
    }
    for key, value in numbers.items():
        if not _is_positive_number(value):
            issues.append(f"ERROR: {key} must be positive")

    tz_name = s.get("timezone", TIMEZONE)
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        issues.append(f"ERROR: unknown timezone {tz_name!r}")

    if not config.get("admin_user_ids"):
        issues.append("WARNING: no admin_user_ids, !reset is disabled")
    return issues


def admin_id_set(config: dict) -> set:
    """Return admin user IDs as a set of strings."""
    return set(str(uid) for uid in config.get("admin_user_ids", []))


# ------------------------------------------------------------------ #
#  Attachment classification
# ------------------------------------------------------------------ #
def is_audio_attachment(attachment: dict) -> bool:
    """True if the attachment's filename ends in a known audio extension."""
    name = attachment.get("filename") or attachment.get("name") or ""
    return name.strip().lower().endswith(AUDIO_EXTENSIONS)


def has_audio(message: dict) -> bool:
    return any(is_audio_attachment(a) for a in message.get("attachments", []))


def is_human_author(message: dict) -> bool:
    """False for bot, webhook and system-authored messages."""
    author = message.get("author") or {}
    if author.get("bot") or author.get("system"):
        return False
    return not message.get("webhook_id")


# ------------------------------------------------------------------ #
#  Time math
# ------------------------------------------------------------------ #
def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def iso_to_ms(iso: str) -> int:
    """Convert an ISO-8601 timestamp (Discord's format) to epoch milliseconds."""
    return int(datetime.fromisoformat(iso.replace("Z", "+00:00")).timestamp() * 1000)


def ms_to_datetime(ms: int, tz_name: str = "UTC") -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=ZoneInfo(tz_name))


def days_left(last_activity_at: int, now: int, target_days: float) -> float:
    """Days remaining before the posting deadline (negative once overdue)."""
    return target_days - (now - last_activity_at) / MS_PER_DAY


# ------------------------------------------------------------------ #
#  Formatting helpers
# ------------------------------------------------------------------ #
def fmt_due_date(ms: int, tz_name: str = "UTC") -> str:
    """Format a due date as e.g. 'Mon 5 Jan'."""
    dt = ms_to_datetime(ms, tz_name)
    return f"{dt:%a} {dt.day} {dt:%b}"


_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def render_template(template: str, **values) -> str:
    """Substitute {name} placeholders from values; unknown placeholders stay verbatim.

    Every occurrence is replaced in a single pass, so a value that itself
    contains '{duedate}' is never expanded a second time.
    """
    def _sub(match):
        key = match.group(1)
        return str(values[key]) if key in values else match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template)


def user_mention(user_id: str) -> str:
    return f"<@{user_id}>"


def days_str(days: float) -> str:
    """Return '1 day', '3 days', or 'overdue by 2 days'."""
    n = int(abs(days))
    unit = "day" if n == 1 else "days"
    if days < 0:
        return f"overdue by {n} {unit}"
    return f"{n} {unit}"
