"""Gemini API key rotation for the split oracle.

Several keys can be configured to spread oracle calls across quotas:

    GEMINI_API_KEY            primary key
    GEMINI_API_KEY_2 … _10    additional keys

Keys are handed out round-robin.  When a call hits a rate limit (HTTP 429) the
caller reports the key, and that key is skipped for RATE_LIMIT_COOLDOWN
seconds.  If every key is cooling down, the one whose cooldown ends first is
returned anyway.

The rotation cursor is only ever advanced with a compare-and-swap under the
pool lock, so concurrent worker threads never both claim the same slot or
lose an advance.
"""

import os
import sys
import threading
import time

from dotenv import load_dotenv
from google import genai

load_dotenv()

RATE_LIMIT_COOLDOWN = 60.0   # seconds a key is skipped after a 429
MAX_NUMBERED_KEYS = 10

_print_lock = threading.Lock()


def _log(msg: str) -> None:
    with _print_lock:
        print(msg, file=sys.stderr)


class NoApiKeyError(RuntimeError):
    pass


def keys_from_env(environ=None) -> list[str]:
    environ = os.environ if environ is None else environ
    keys = []
    if environ.get("GEMINI_API_KEY"):
        keys.append(environ["GEMINI_API_KEY"])
    for i in range(2, MAX_NUMBERED_KEYS + 1):
        key = environ.get(f"GEMINI_API_KEY_{i}")
        if key:
            keys.append(key)
    return keys


def _key_id(key: str) -> str:
    return key[-8:]


class ApiKeyPool:
    def __init__(self, keys: list[str] | None = None, cooldown: float = RATE_LIMIT_COOLDOWN, clock=time.monotonic):
        self.keys = list(keys) if keys is not None else keys_from_env()
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._cursor = 0
        self._errors: dict[str, tuple[int, float]] = {}   # key → (count, last_error)

    def _compare_and_swap(self, expected: int, new: int) -> bool:
        with self._lock:
            if self._cursor != expected:
                return False
            self._cursor = new
            return True

    def _cooling_until(self, key: str) -> float:
        with self._lock:
            info = self._errors.get(key)
        return info[1] + self.cooldown if info else 0.0

    def next_key(self) -> str:
        """Return the next key not in cooldown (see module docstring)."""
        if not self.keys:
            raise NoApiKeyError("No GEMINI_API_KEY configured")
        n = len(self.keys)
        if n == 1:
            return self.keys[0]

        now = self._clock()
        for _ in range(n):
            # Claim one slot; retry the claim if another thread moved first.
            while True:
                slot = self._cursor
                if self._compare_and_swap(slot, (slot + 1) % n):
                    break
            key = self.keys[slot]
            if self._cooling_until(key) <= now:
                return key
            _log(f"[gemini] key …{_key_id(key)} in cooldown, trying next")

        _log("[gemini] all keys in cooldown, using the one that frees up first")
        return min(self.keys, key=self._cooling_until)

    def report_rate_limit(self, key: str) -> None:
        with self._lock:
            count, _ = self._errors.get(key, (0, 0.0))
            self._errors[key] = (count + 1, self._clock())
        _log(f"[gemini] rate limit hit for key …{_key_id(key)} ({count + 1} time(s))")

    def stats(self) -> dict:
        now = self._clock()
        in_cooldown = sum(1 for k in self.keys if self._cooling_until(k) > now)
        return {"total_keys": len(self.keys), "in_cooldown": in_cooldown}

    def client(self) -> tuple[genai.Client, str]:
        """Build a Gemini client for the next available key; returns (client, key)."""
        key = self.next_key()
        return genai.Client(api_key=key), key
