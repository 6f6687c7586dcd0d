"""Tests for the activity store's merge rules."""

from activity import ActivityRecord, ActivityStore, is_more_severe

G, C, U = "guild1", "chan1", "user1"


class FakeBackend:
    def __init__(self, data=None, fail=False):
        self.data = data or {}
        self.fail = fail
        self.saves = []

    def load(self):
        return self.data

    def save(self, data):
        if self.fail:
            return False
        # Copy so later in-memory changes don't leak into recorded saves
        self.saves.append({g: {c: {u: dict(e) for u, e in users.items()}
                               for c, users in chans.items()}
                           for g, chans in data.items()})
        return True


def _store(**kw):
    return ActivityStore(FakeBackend(**kw))


# ------------------------------------------------------------------ #
#  Severity ordering
# ------------------------------------------------------------------ #
def test_is_more_severe():
    assert is_more_severe(7, None)
    assert is_more_severe(0, 1)
    assert is_more_severe(1, 3)
    assert not is_more_severe(3, 3)
    assert not is_more_severe(7, 3)
    assert not is_more_severe(None, None)
    assert not is_more_severe(None, 7)


# ------------------------------------------------------------------ #
#  record_activity
# ------------------------------------------------------------------ #
def test_record_activity_creates_record():
    store = _store()
    assert store.record_activity(G, C, U, 1000) is True
    assert store.get(G, C, U) == ActivityRecord(G, C, U, 1000, None)


def test_record_activity_monotonic_either_order():
    a, b = _store(), _store()
    a.record_activity(G, C, U, 1000)
    a.record_activity(G, C, U, 5000)
    b.record_activity(G, C, U, 5000)
    b.record_activity(G, C, U, 1000)
    assert a.get(G, C, U).last_activity_at == 5000
    assert b.get(G, C, U).last_activity_at == 5000


def test_record_activity_newer_resets_threshold():
    store = _store()
    store.record_activity(G, C, U, 1000)
    store.record_notification(G, C, U, 3)
    assert store.record_activity(G, C, U, 2000) is True
    assert store.get(G, C, U).last_notified_threshold is None


def test_record_activity_replay_is_noop():
    backend = FakeBackend()
    store = ActivityStore(backend)
    store.record_activity(G, C, U, 2000)
    store.record_notification(G, C, U, 7)
    saves_before = len(backend.saves)

    assert store.record_activity(G, C, U, 2000) is False
    assert store.record_activity(G, C, U, 1500) is False
    assert store.get(G, C, U) == ActivityRecord(G, C, U, 2000, 7)
    assert len(backend.saves) == saves_before


def test_ids_are_normalized_to_strings():
    store = _store()
    store.record_activity(1, 2, 3, 1000)
    assert store.get("1", "2", "3").last_activity_at == 1000
    assert store.get(1, 2, 3).user_id == "3"


def test_triples_are_independent():
    store = _store()
    store.record_activity(G, C, U, 1000)
    store.record_activity(G, "chan2", U, 2000)
    store.record_activity(G, C, "user2", 3000)
    store.record_notification(G, C, U, 7)
    assert len(store) == 3
    assert store.get(G, "chan2", U).last_notified_threshold is None
    assert store.get(G, C, "user2").last_activity_at == 3000


# ------------------------------------------------------------------ #
#  merge_backfill
# ------------------------------------------------------------------ #
def test_merge_backfill_creates_and_advances():
    store = _store()
    assert store.merge_backfill(G, C, U, 1000) is True
    assert store.merge_backfill(G, C, U, 3000) is True
    assert store.get(G, C, U).last_activity_at == 3000


def test_merge_backfill_older_keeps_escalation():
    # Real-time post at 5000 then escalated; a scan that only reached 4000 changes nothing
    store = _store()
    store.record_activity(G, C, U, 5000)
    store.record_notification(G, C, U, 3)

    assert store.merge_backfill(G, C, U, 4000) is False
    assert store.merge_backfill(G, C, U, 5000) is False
    assert store.get(G, C, U) == ActivityRecord(G, C, U, 5000, 3)


def test_merge_backfill_newer_post_rearms_notifications():
    # Backfill found a post newer than the one the threshold was earned against
    store = _store()
    store.record_activity(G, C, U, 1000)
    store.record_notification(G, C, U, 0)

    assert store.merge_backfill(G, C, U, 9000) is True
    rec = store.get(G, C, U)
    assert rec.last_activity_at == 9000
    assert rec.last_notified_threshold is None
    # A later escalation against the new activity is accepted again
    assert store.record_notification(G, C, U, 7) is True


# ------------------------------------------------------------------ #
#  record_notification
# ------------------------------------------------------------------ #
def test_record_notification_only_escalates():
    store = _store()
    store.record_activity(G, C, U, 1000)
    assert store.record_notification(G, C, U, 7) is True
    assert store.record_notification(G, C, U, 3) is True
    assert store.record_notification(G, C, U, 7) is False
    assert store.record_notification(G, C, U, 3) is False
    assert store.get(G, C, U).last_notified_threshold == 3
    assert store.record_notification(G, C, U, 0) is True
    assert store.get(G, C, U).last_notified_threshold == 0


def test_record_notification_unknown_triple():
    store = _store()
    assert store.record_notification(G, C, U, 7) is False
    assert len(store) == 0


def test_record_notification_keeps_activity_time():
    store = _store()
    store.record_activity(G, C, U, 1234)
    store.record_notification(G, C, U, 1)
    assert store.get(G, C, U).last_activity_at == 1234


# ------------------------------------------------------------------ #
#  Persistence side effects
# ------------------------------------------------------------------ #
def test_every_mutation_saves():
    backend = FakeBackend()
    store = ActivityStore(backend)
    store.record_activity(G, C, U, 1000)
    store.merge_backfill(G, C, "user2", 500)
    store.record_notification(G, C, U, 7)
    assert len(backend.saves) == 3
    assert backend.saves[-1][G][C][U] == {"last_activity_at": 1000, "last_notified_threshold": 7}


def test_failed_save_keeps_memory():
    store = _store(fail=True)
    store.record_activity(G, C, U, 1000)
    store.record_notification(G, C, U, 3)
    assert store.get(G, C, U) == ActivityRecord(G, C, U, 1000, 3)


def test_reset_clears_everything():
    backend = FakeBackend()
    store = ActivityStore(backend)
    store.record_activity(G, C, U, 1000)
    store.record_activity("g2", "c2", "u2", 1000)
    store.reset()
    assert len(store) == 0
    assert store.snapshot() == ()
    assert backend.saves[-1] == {}


# ------------------------------------------------------------------ #
#  Loading and snapshots
# ------------------------------------------------------------------ #
def test_load_from_backend():
    backend = FakeBackend({G: {C: {U: {"last_activity_at": 1000, "last_notified_threshold": 3}}}})
    store = ActivityStore.load(backend)
    assert store.get(G, C, U) == ActivityRecord(G, C, U, 1000, 3)


def test_load_legacy_layout():
    backend = FakeBackend({G: {C: {U: {"lastAudio": 1700000000000, "lastNotifiedThreshold": 7}}}})
    store = ActivityStore.load(backend)
    assert store.get(G, C, U) == ActivityRecord(G, C, U, 1700000000000, 7)


def test_load_drops_malformed_entries():
    data = {
        G: {
            C: {
                U: {"last_activity_at": 1000},
                "bad1": {"last_activity_at": "yesterday"},
                "bad2": "not a dict",
                "bad3": {"last_activity_at": True},
            },
            "chan_bad": [1, 2, 3],
        },
        "guild_bad": None,
    }
    store = ActivityStore.load(FakeBackend(data))
    assert len(store) == 1
    assert store.get(G, C, U).last_notified_threshold is None


def test_snapshot_is_sorted_and_detached():
    store = _store()
    store.record_activity("g", "c", "b", 2000)
    store.record_activity("g", "c", "a", 1000)
    snap = store.snapshot()
    assert [r.user_id for r in snap] == ["a", "b"]
    assert isinstance(snap, tuple)

    store.record_activity("g", "c", "a", 9000)
    assert snap[0].last_activity_at == 1000
