"""State persistence: local JSON file or GitHub Gist.

Both backends load the nested guild -> channel -> user mapping and save it
back whole. Neither raises: a missing or unreadable document loads as {},
and a failed save is reported and returns False.
"""

import json
import os
import time
from pathlib import Path

import requests

import helpers

STATE_FILENAME = "audio_state.json"


def _check_shape(data) -> dict:
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class FileBackend:
    """Stores state in a JSON file on local disk."""

    load_failed = False

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict:
        if not self.path.exists():
            print(f"No state file at {self.path}, starting fresh")
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
            return _check_shape(json.loads(text or "{}"))
        except (OSError, ValueError) as e:
            print(f"Warning: Failed to load {self.path}, resetting: {e}")
            return {}

    def save(self, data: dict) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            print(f"Warning: Failed to save state to {self.path}: {e}")
            return False
        return True


class GistBackend:
    """Stores state as a file inside a GitHub Gist.

    A gist that can't be fetched is retried a few times. If it still can't
    be read, load returns {} and sets load_failed, and save refuses to write
    so an empty store never overwrites the stored history.
    """

    def __init__(self, gist_token: str, gist_id: str, filename: str = STATE_FILENAME,
                 retries: int = 3, retry_delay: float = 5.0):
        self.token = gist_token
        self.api = f"https://api.github.com/gists/{gist_id}"
        self.filename = filename
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self.load_failed = False

    def _headers(self) -> dict:
        return {
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github.v3+json",
        }

    def _fetch(self) -> dict | None:
        """GET the gist document, or None if it couldn't be fetched."""
        try:
            resp = requests.get(self.api, headers=self._headers(), timeout=20)
        except requests.RequestException as e:
            print(f"Warning: Could not reach gist ({e})")
            return None

        if resp.status_code != 200:
            print(f"Warning: Could not load gist (HTTP {resp.status_code})")
            return None

        try:
            return _check_shape(resp.json())
        except ValueError as e:
            print(f"Warning: Gist response was not a JSON object: {e}")
            return None

    def load(self) -> dict:
        doc = None
        for attempt in range(1, self.retries + 1):
            doc = self._fetch()
            if doc is not None:
                break
            if attempt < self.retries:
                time.sleep(self.retry_delay)

        if doc is None:
            print(f"Warning: Gist unreachable after {self.retries} attempts, not saving until restart")
            self.load_failed = True
            return {}
        self.load_failed = False

        files = doc.get("files")
        if not isinstance(files, dict) or self.filename not in files:
            print("No state file in gist, starting fresh")
            return {}

        entry = files[self.filename]
        try:
            content = entry.get("content") if isinstance(entry, dict) else None
            return _check_shape(json.loads(content or "{}"))
        except (TypeError, ValueError) as e:
            print(f"Warning: Gist state is corrupt, resetting: {e}")
            return {}

    def save(self, data: dict) -> bool:
        if self.load_failed:
            print("Warning: Not saving state, the gist could not be loaded at startup")
            return False
        try:
            resp = requests.patch(
                self.api,
                headers=self._headers(),
                json={
                    "files": {
                        self.filename: {
                            "content": json.dumps(data, indent=2)
                        }
                    }
                },
                timeout=20,
            )
        except requests.RequestException as e:
            print(f"Warning: Failed to save state ({e})")
            return False

        if resp.status_code == 200:
            return True
        print(f"Warning: Failed to save state (HTTP {resp.status_code})")
        return False


def make_backend(gist_token: str = "", gist_id: str = "", path: Path | None = None):
    """Pick the Gist backend when credentials are set, else a local file."""
    if gist_token and gist_id:
        print("Using gist state backend")
        return GistBackend(gist_token, gist_id)
    if gist_token or gist_id:
        print("Warning: Only one of GIST_ID / GIST_TOKEN set, using local state file")
    return FileBackend(path or helpers.STATE_PATH)
