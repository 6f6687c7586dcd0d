"""Discord REST API helpers."""

import requests

DISCORD_API = "https://discord.com/api/v10"
BOT_TOKEN = ""
TIMEOUT = 20
DISCORD_MAX_LENGTH = 2000


def init(token: str) -> None:
    """Set the bot token used for every request."""
    global BOT_TOKEN
    BOT_TOKEN = token


def _headers() -> dict:
    return {"Authorization": f"Bot {BOT_TOKEN}"}


def _request(method: str, path: str, label: str, **kwargs):
    """Call the API, return parsed JSON on success or None on failure."""
    try:
        resp = requests.request(
            method, f"{DISCORD_API}{path}", headers=_headers(), timeout=TIMEOUT, **kwargs
        )
    except requests.RequestException as e:
        print(f"Discord {label} failed: {e}")
        return None
    if resp.status_code in (200, 201):
        return resp.json()
    print(f"Discord {label} failed (HTTP {resp.status_code}): {resp.text}")
    return None


def _message_key(msg: dict) -> int:
    return int(msg["id"])


def fetch_page(channel_id: str, limit: int = 100, before: str | None = None) -> list | None:
    """Fetch one page of channel history, newest first.

    Returns [] once the history is exhausted and None if the request failed.
    """
    params = {"limit": max(1, min(limit, 100))}
    if before:
        params["before"] = before
    result = _request("GET", f"/channels/{channel_id}/messages", "fetch_page", params=params)
    if result is None:
        return None
    return sorted(result, key=_message_key, reverse=True)


def fetch_new_messages(channel_id: str, after: str, limit: int = 100) -> list | None:
    """Fetch messages posted after a message id, oldest first. None on failure."""
    result = _request(
        "GET", f"/channels/{channel_id}/messages", "fetch_new_messages",
        params={"after": after, "limit": max(1, min(limit, 100))},
    )
    if result is None:
        return None
    return sorted(result, key=_message_key)


def fetch_member(guild_id: str, user_id: str) -> dict | None:
    """Resolve a guild member, or None if they can't be found right now."""
    return _request("GET", f"/guilds/{guild_id}/members/{user_id}", "fetch_member")


def send_to_channel(channel_id: str, text: str, silent: bool = False) -> bool:
    """Post a message to a channel. Returns True on success.

    silent=True renders mentions without pinging anyone.
    """
    if len(text) > DISCORD_MAX_LENGTH:
        text = text[:DISCORD_MAX_LENGTH - 4] + "\n..."
    payload = {"content": text}
    if silent:
        payload["allowed_mentions"] = {"parse": []}
    return _request(
        "POST", f"/channels/{channel_id}/messages", "send_to_channel", json=payload
    ) is not None


def send_direct(user_id: str, text: str) -> bool:
    """Open (or reuse) a DM channel with the user and send text. Returns True on success."""
    dm = _request("POST", "/users/@me/channels", "open_dm", json={"recipient_id": user_id})
    if not dm:
        return False
    return send_to_channel(dm["id"], text)
