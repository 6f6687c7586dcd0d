"""
Audio Tracker Reminder Bot

Watches the configured Discord channels for audio attachments and reminds
members, by DM and in the channel, as their posting deadline approaches.

Runs as a long-lived process: after a short startup grace period it runs
a check pass, then another every CHECK_INTERVAL_MINUTES, polling the
channels for new posts and !commands in between. With --once it does a
single poll + check and exits, for cron-style deployments.

Modules: discord_api.py (API), state.py (persistence), activity.py (store),
backfill.py (history scan), escalation.py (reminders), helpers.py (utilities).
"""

import os
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import backfill
import discord_api as dc
import escalation
import helpers
import state as state_store
from activity import ActivityStore


_HELP_TEXT = (
    "Audio tracker commands:\n"
    "!check - Scan this channel for recent audio posts, then send due reminders\n"
    "!testping - Run a reminder pass right now\n"
    "!backfill [N] - Scan the last N messages of this channel (default {limit})\n"
    "!status - Days left for everyone tracked in this channel\n"
    "!reset - Forget all tracked activity (admins only)\n"
    "!help - Show this message"
)


# ------------------------------------------------------------------ #
#  Tracker: message intake, commands, and the trigger entry points
# ------------------------------------------------------------------ #
class Tracker:
    def __init__(self, config: dict, store: ActivityStore, templates: dict | None = None):
        self.config = config
        self.store = store
        self.templates = templates or helpers.load_messages(config)
        self.channels = {
            str(ch["channel_id"]): str(ch["guild_id"]) for ch in config.get("channels", [])
        }
        self.admin_ids = helpers.admin_id_set(config)
        # Newest message id seen per channel; rebuilt on restart since replays are harmless
        self.cursors: dict[str, str] = {}

    def run_check_pass(self, now: int | None = None) -> int:
        return escalation.run_check_pass(self.store, now=now, templates=self.templates)

    def run_backfill(self, channel_id: str, budget: int | None = None) -> backfill.BackfillResult:
        guild_id = self.channels[str(channel_id)]
        return backfill.backfill_channel(self.store, guild_id, str(channel_id), budget)

    def backfill_all(self) -> None:
        for channel_id in self.channels:
            try:
                self.run_backfill(channel_id)
            except Exception as e:
                print(f"Error backfilling {channel_id}: {e}")

    # ---- Polling ----
    def poll(self) -> int:
        """Read new messages from every watched channel. Returns how many were processed."""
        processed = 0
        for channel_id in self.channels:
            after = self.cursors.get(channel_id)
            if after is None:
                self._seed_cursor(channel_id)
                continue

            messages = dc.fetch_new_messages(channel_id, after)
            if not messages:
                continue
            for msg in messages:
                self.cursors[channel_id] = msg["id"]
                try:
                    self.process_message(msg, channel_id)
                except Exception as e:
                    print(f"Error processing message {msg.get('id')}: {e}")
                processed += 1
        return processed

    def _seed_cursor(self, channel_id: str) -> None:
        # Start from the newest message; anything older is backfill's job
        page = dc.fetch_page(channel_id, limit=1)
        if page is None:
            return
        self.cursors[channel_id] = page[0]["id"] if page else "0"

    def process_message(self, msg: dict, channel_id: str) -> None:
        """Record audio activity from a message and dispatch any command in it."""
        if not helpers.is_human_author(msg):
            return
        guild_id = self.channels[channel_id]
        user_id = str(msg["author"]["id"])

        if helpers.has_audio(msg):
            ts = helpers.iso_to_ms(msg["timestamp"])
            if self.store.record_activity(guild_id, channel_id, user_id, ts):
                print(f"Audio post from {user_id} in {channel_id}")

        text = (msg.get("content") or "").strip()
        if text.startswith(helpers.COMMAND_PREFIX):
            self.handle_command(text[len(helpers.COMMAND_PREFIX):], channel_id, user_id)

    # ---- Commands ----
    def handle_command(self, command_text: str, channel_id: str, user_id: str) -> None:
        parts = command_text.split()
        if not parts:
            return
        cmd, args = parts[0].lower(), parts[1:]
        print(f"Command received: {cmd} {' '.join(args)}".rstrip())

        if cmd == "check":
            dc.send_to_channel(channel_id, "🔄 Updating recent audio posts...")
            self.run_backfill(channel_id)
            self.run_check_pass()
            dc.send_to_channel(channel_id, "✅ Check complete.")

        elif cmd == "testping":
            dc.send_to_channel(channel_id, "🧪 Running test notification simulation...")
            self.run_check_pass()
            dc.send_to_channel(channel_id, "✅ Test complete.")

        elif cmd == "backfill":
            budget = None
            if args:
                if not args[0].isdigit() or int(args[0]) < 1:
                    dc.send_to_channel(channel_id, "Usage: !backfill [number of messages]")
                    return
                budget = int(args[0])
            dc.send_to_channel(channel_id, "🔎 Scanning channel history...")
            result = self.run_backfill(channel_id, budget)
            note = "" if result.complete else " (stopped early, history fetch failed)"
            dc.send_to_channel(
                channel_id,
                f"✅ Backfill done: {result.messages_scanned} messages scanned, "
                f"{result.users_updated} users updated{note}.",
            )

        elif cmd == "status":
            dc.send_to_channel(channel_id, self.build_status(channel_id), silent=True)

        elif cmd == "reset":
            if user_id not in self.admin_ids:
                dc.send_to_channel(channel_id, "Only admins can reset tracking.")
                return
            self.store.reset()
            print(f"Store reset by {user_id}")
            dc.send_to_channel(channel_id, "🧹 All tracked activity cleared.")

        elif cmd == "help":
            dc.send_to_channel(channel_id, _HELP_TEXT.format(limit=helpers.BACKFILL_LIMIT))

    def build_status(self, channel_id: str, now: int | None = None) -> str:
        now = helpers.now_ms() if now is None else now
        records = [r for r in self.store.snapshot() if r.channel_id == channel_id]
        if not records:
            return "No audio posts tracked in this channel yet."

        lines = ["🎧 Audio posting status:"]
        for rec in sorted(records, key=lambda r: r.last_activity_at):
            left = helpers.days_left(rec.last_activity_at, now, helpers.TARGET_DAYS)
            notified = rec.last_notified_threshold
            left_str = helpers.days_str(left) + (" left" if left >= 0 else "")
            suffix = f", last reminder: {notified}-day" if notified is not None else ""
            lines.append(f"{helpers.user_mention(rec.user_id)}: {left_str}{suffix}")
        return "\n".join(lines)


# ------------------------------------------------------------------ #
#  Scheduler
# ------------------------------------------------------------------ #
class Scheduler:
    """Single-threaded loop: grace delay, one pass, then a pass every interval.

    poll (optional) runs every poll_seconds between passes. Anything it
    triggers, such as an on-demand !check, runs inline on this thread, so
    passes never overlap.
    """

    def __init__(self, run_pass, *, interval_seconds: float, initial_delay: float = 0,
                 poll=None, poll_seconds: float = 30, sleep=time.sleep, clock=time.monotonic):
        self.run_pass = run_pass
        self.interval_seconds = interval_seconds
        self.initial_delay = initial_delay
        self.poll = poll
        self.poll_seconds = poll_seconds
        self._sleep = sleep
        self._clock = clock
        self._running = False

    def stop(self) -> None:
        self._running = False

    def _safe(self, label: str, func) -> None:
        try:
            func()
        except Exception as e:
            print(f"Error in {label}: {e}")

    def run_forever(self) -> None:
        self._running = True
        print(f"Scheduler starting in {self.initial_delay}s, "
              f"interval {self.interval_seconds}s")
        self._sleep(self.initial_delay)

        next_pass = self._clock()
        while self._running:
            now = self._clock()
            if now >= next_pass:
                self._safe("check pass", self.run_pass)
                next_pass += self.interval_seconds
                now = self._clock()
                if next_pass <= now:
                    # Fell behind (e.g. suspended host): don't burst-run missed passes
                    next_pass = now + self.interval_seconds

            if self.poll and self._running:
                self._safe("poll", self.poll)
            if not self._running:
                break

            wait = max(0.0, next_pass - self._clock())
            if self.poll:
                wait = min(wait, self.poll_seconds)
            self._sleep(wait)


# ------------------------------------------------------------------ #
#  HTTP liveness endpoint
# ------------------------------------------------------------------ #
class HealthHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        body = b"ok" if self.path == "/health" else b"Discord bot running"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args) -> None:
        pass


def start_health_server(port: int) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(("0.0.0.0", port), HealthHandler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    print(f"HTTP server listening on port {port}")
    return server


# ------------------------------------------------------------------ #
#  Entry point
# ------------------------------------------------------------------ #
def main() -> None:
    """Entry point: load config/state, backfill, then poll and check on a schedule."""
    token = os.environ.get("DISCORD_BOT_TOKEN", "")
    gist_token = os.environ.get("GIST_TOKEN", "")
    gist_id = os.environ.get("GIST_ID", "")
    state_file = os.environ.get("STATE_FILE", "")
    once = "--once" in sys.argv[1:]

    if not token:
        print("Error: DISCORD_BOT_TOKEN not set")
        sys.exit(1)

    dc.init(token)

    config = helpers.load_config()
    helpers.load_settings(config)

    issues = helpers.validate_config(config)
    for issue in issues:
        print(issue)
    if any(i.startswith("ERROR:") for i in issues):
        print("Fatal config errors found, aborting")
        sys.exit(1)

    print(f"Config loaded: target {helpers.TARGET_DAYS} days, "
          f"thresholds {helpers.NOTIFY_THRESHOLDS}, "
          f"interval {helpers.CHECK_INTERVAL_MINUTES} min")

    backend = state_store.make_backend(gist_token, gist_id, Path(state_file) if state_file else None)
    store = ActivityStore.load(backend)
    if backend.load_failed:
        print("Error: could not load saved state, aborting")
        sys.exit(1)
    tracker = Tracker(config, store)

    # Seed cursors before backfilling so nothing posted in between is missed
    tracker.poll()
    # Cron runs only see new posts through backfill
    if helpers.BACKFILL_ON_START or once:
        tracker.backfill_all()

    if once:
        tracker.run_check_pass()
        print("Done")
        return

    start_health_server(int(os.environ.get("PORT", "10000")))

    Scheduler(
        tracker.run_check_pass,
        interval_seconds=helpers.CHECK_INTERVAL_MINUTES * 60,
        initial_delay=helpers.STARTUP_DELAY_SECONDS,
        poll=tracker.poll,
        poll_seconds=helpers.POLL_SECONDS,
    ).run_forever()


if __name__ == "__main__":
    main()
