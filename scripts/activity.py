"""Per-user audio activity store.

Holds one record per (guild, channel, user) and persists the whole mapping
through a backend (see state.py) after every change. All updates are
"advance if newer / more severe", so applying the same events twice, or in
a different order, leaves the same result.
"""

from typing import NamedTuple


class ActivityRecord(NamedTuple):
    guild_id: str
    channel_id: str
    user_id: str
    last_activity_at: int
    last_notified_threshold: int | None = None


def is_more_severe(new: int | None, current: int | None) -> bool:
    """Fewer days left is more severe; None (never notified) is least severe."""
    if new is None:
        return False
    return current is None or new < current


def _normalize_entry(raw: dict) -> dict | None:
    """Coerce a stored user entry, including the legacy lastAudio layout."""
    if not isinstance(raw, dict):
        return None
    last = raw.get("last_activity_at", raw.get("lastAudio"))
    threshold = raw.get("last_notified_threshold", raw.get("lastNotifiedThreshold"))
    if not isinstance(last, (int, float)) or isinstance(last, bool):
        return None
    if threshold is not None and not isinstance(threshold, int):
        threshold = None
    return {
        "last_activity_at": int(last),
        "last_notified_threshold": threshold,
    }


def _normalize(data: dict) -> dict:
    clean = {}
    dropped = 0
    for guild_id, channels in data.items():
        if not isinstance(channels, dict):
            dropped += 1
            continue
        for channel_id, users in channels.items():
            if not isinstance(users, dict):
                dropped += 1
                continue
            for user_id, raw in users.items():
                entry = _normalize_entry(raw)
                if entry is None:
                    dropped += 1
                    continue
                clean.setdefault(str(guild_id), {}).setdefault(str(channel_id), {})[str(user_id)] = entry
    if dropped:
        print(f"Warning: Dropped {dropped} unreadable state entries")
    return clean


class ActivityStore:
    def __init__(self, backend, data: dict | None = None):
        self.backend = backend
        self._data = _normalize(data or {})

    @classmethod
    def load(cls, backend) -> "ActivityStore":
        store = cls(backend, backend.load())
        print(f"Loaded activity for {len(store)} users")
        return store

    def __len__(self) -> int:
        return sum(len(users) for channels in self._data.values() for users in channels.values())

    def _entry(self, guild_id, channel_id, user_id) -> dict | None:
        return self._data.get(str(guild_id), {}).get(str(channel_id), {}).get(str(user_id))

    def _save(self) -> None:
        # In-memory state stays authoritative; the next good save catches up.
        self.backend.save(self._data)

    def get(self, guild_id, channel_id, user_id) -> ActivityRecord | None:
        entry = self._entry(guild_id, channel_id, user_id)
        if entry is None:
            return None
        return ActivityRecord(str(guild_id), str(channel_id), str(user_id), **entry)

    def snapshot(self) -> tuple[ActivityRecord, ...]:
        """All records, sorted by (guild, channel, user)."""
        records = []
        for guild_id, channels in sorted(self._data.items()):
            for channel_id, users in sorted(channels.items()):
                for user_id, entry in sorted(users.items()):
                    records.append(ActivityRecord(guild_id, channel_id, user_id, **entry))
        return tuple(records)

    def _advance(self, guild_id, channel_id, user_id, timestamp: int) -> bool:
        entry = self._entry(guild_id, channel_id, user_id)
        if entry is None:
            users = self._data.setdefault(str(guild_id), {}).setdefault(str(channel_id), {})
            users[str(user_id)] = {
                "last_activity_at": int(timestamp),
                "last_notified_threshold": None,
            }
            self._save()
            return True

        if timestamp <= entry["last_activity_at"]:
            return False

        entry["last_activity_at"] = int(timestamp)
        entry["last_notified_threshold"] = None
        self._save()
        return True

    def record_activity(self, guild_id, channel_id, user_id, timestamp: int) -> bool:
        """Record a live qualifying post. Returns True if the store changed."""
        return self._advance(guild_id, channel_id, user_id, timestamp)

    def merge_backfill(self, guild_id, channel_id, user_id, timestamp: int) -> bool:
        """Merge a timestamp found while scanning history. Returns True if the store changed.

        Escalation state is only cleared when the timestamp is strictly newer
        than what the store already holds, so rescanning known posts never
        re-arms a notification that was already sent.
        """
        return self._advance(guild_id, channel_id, user_id, timestamp)

    def record_notification(self, guild_id, channel_id, user_id, threshold: int) -> bool:
        """Mark threshold as notified if it is more severe than the current one."""
        entry = self._entry(guild_id, channel_id, user_id)
        if entry is None or not is_more_severe(threshold, entry["last_notified_threshold"]):
            return False
        entry["last_notified_threshold"] = threshold
        self._save()
        return True

    def reset(self) -> None:
        self._data = {}
        self._save()
