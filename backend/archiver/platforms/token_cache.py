from __future__ import annotations

import threading


class TokenCache:
    """Access tokens keyed by platform name, shared by every worker thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}

    def get(self, platform: str) -> str | None:
        with self._lock:
            return self._tokens.get(platform)

    def set(self, platform: str, access_token: str) -> None:
        with self._lock:
            self._tokens[platform] = access_token

    def clear(self, platform: str | None = None) -> None:
        with self._lock:
            if platform is None:
                self._tokens.clear()
                return
            self._tokens.pop(platform, None)
