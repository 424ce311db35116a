"""Time-ordered unique keys for create-only writes.

Keys are 20 characters: 8 encode the millisecond timestamp, 12 are random.
Lexicographic order matches creation order, including keys generated within
the same millisecond by one process.
"""

import secrets
import threading
import time

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_lock = threading.Lock()
_last_push_ms = 0
_last_rand: list[int] = [0] * 12


def generate_push_key(now_ms: int | None = None) -> str:
    """Generate a time-ordered, collision-resistant key."""
    global _last_push_ms

    if now_ms is None:
        now_ms = int(time.time() * 1000)

    with _lock:
        duplicate_time = now_ms <= _last_push_ms
        if duplicate_time:
            # Same (or earlier) millisecond: bump the random part instead
            now_ms = _last_push_ms
            i = 11
            while i >= 0 and _last_rand[i] == 63:
                _last_rand[i] = 0
                i -= 1
            if i >= 0:
                _last_rand[i] += 1
        else:
            for i in range(12):
                _last_rand[i] = secrets.randbelow(64)
        _last_push_ms = now_ms

        time_chars = []
        ts = now_ms
        for _ in range(8):
            time_chars.append(PUSH_CHARS[ts % 64])
            ts //= 64
        key = "".join(reversed(time_chars))
        key += "".join(PUSH_CHARS[r] for r in _last_rand)

    return key
