"""Channel history backfill.

Scans a channel backward page by page, finds the newest audio post per
author, and merges those times into the activity store. Merging goes
through ActivityStore.merge_backfill, so an old scan can never move a
user's activity backward or clear escalation earned by newer posts.
"""

from typing import NamedTuple

import discord_api as dc
import helpers


class BackfillResult(NamedTuple):
    users_updated: int
    messages_scanned: int
    complete: bool


def scan_history(channel_id: str, limit: int, *, fetch_page=None,
                 page_size: int | None = None) -> tuple[dict[str, int], int, bool]:
    """Page backward through history, up to limit messages.

    Returns (latest audio post time per author in ms, messages scanned,
    complete). complete is False if a page fetch failed; whatever was
    scanned before the failure is still returned.
    """
    fetch_page = fetch_page or dc.fetch_page
    page_size = page_size or helpers.PAGE_SIZE

    latest: dict[str, int] = {}
    scanned = 0
    before = None

    while scanned < limit:
        want = min(page_size, limit - scanned)
        page = fetch_page(channel_id, limit=want, before=before)
        if page is None:
            print(f"Backfill of {channel_id} stopped early after {scanned} messages")
            return latest, scanned, False
        if not page:
            break

        for msg in page[:want]:
            scanned += 1
            if not helpers.is_human_author(msg) or not helpers.has_audio(msg):
                continue
            author_id = str((msg.get("author") or {}).get("id", ""))
            if not author_id:
                continue
            try:
                ts = helpers.iso_to_ms(msg["timestamp"])
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                print(f"Skipping message {msg.get('id')} with bad timestamp: {e}")
                continue
            if ts > latest.get(author_id, 0):
                latest[author_id] = ts

        before = page[-1]["id"]
        if len(page) < want:
            break

    return latest, scanned, True


def backfill_channel(store, guild_id: str, channel_id: str, limit: int | None = None, *,
                     fetch_page=None, page_size: int | None = None) -> BackfillResult:
    """Scan a channel's history and merge each author's latest audio post into store."""
    limit = limit or helpers.BACKFILL_LIMIT
    latest, scanned, complete = scan_history(
        channel_id, limit, fetch_page=fetch_page, page_size=page_size,
    )

    updated = 0
    for user_id, ts in latest.items():
        if store.merge_backfill(guild_id, channel_id, user_id, ts):
            updated += 1

    print(f"Backfill {guild_id}/{channel_id}: {scanned} messages scanned, "
          f"{len(latest)} posters found, {updated} updated")
    return BackfillResult(updated, scanned, complete)
