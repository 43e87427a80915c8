"""Bounded output buffer for terminal sessions."""

from __future__ import annotations

import re
import threading
from collections import deque

HIGH_WATER = 200_000
LOW_WATER = 160_000

# Sequences that would wipe the screen or scrollback when replayed:
#   ESC[2J / ESC[3J        erase display / erase scrollback
#   ESC[H, ESC[;H, ESC[1;1H cursor home
#   ESC[?1049h/l etc.      alternate screen buffer on/off
#   ESC c                  full reset (RIS)
_RESTORE_UNSAFE_RE = re.compile(
    r"\x1b\[[23]J"
    r"|\x1b\[(?:1;1|;)?H"
    r"|\x1b\[\?(?:1049|1047|47)[hl]"
    r"|\x1bc"
)


def strip_restore_sequences(text: str) -> str:
    """Remove clear/reset sequences from text about to be replayed.

    Only applied to restoration snapshots, never to the live stream.
    Anything that is not one of the exact sequences above (including
    truncated or unrelated escape sequences) is left untouched.
    """
    return _RESTORE_UNSAFE_RE.sub("", text)


class OutputBuffer:
    """Thread-safe ring of recent output chunks for one session.

    Chunks are kept whole.  A running character count is maintained on
    every append and trim so the size is never recomputed by joining.
    When the count exceeds ``high_water`` the oldest chunks are dropped
    until it is at or below ``low_water``; the newest chunk is always
    retained, even if it alone is larger than ``high_water``.
    """

    def __init__(self, high_water: int = HIGH_WATER, low_water: int = LOW_WATER) -> None:
        if low_water > high_water:
            raise ValueError("low_water must not exceed high_water")
        self.high_water = high_water
        self.low_water = low_water
        self._chunks: deque[str] = deque()
        self._size: int = 0
        self._lock = threading.Lock()

    def append(self, chunk: str) -> None:
        """Append a chunk, trimming old chunks if over the high-water mark."""
        if not chunk:
            return
        with self._lock:
            self._chunks.append(chunk)
            self._size += len(chunk)
            if self._size > self.high_water:
                self._trim()

    def _trim(self) -> None:
        while self._size > self.low_water and len(self._chunks) > 1:
            self._size -= len(self._chunks.popleft())

    def snapshot(self) -> str:
        """Concatenate retained chunks without modifying the buffer."""
        with self._lock:
            return "".join(self._chunks)

    def replace(self, text: str) -> None:
        """Discard current contents and hold ``text`` as a single chunk."""
        with self._lock:
            self._chunks.clear()
            self._size = 0
            if text:
                self._chunks.append(text)
                self._size = len(text)

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._size = 0

    @property
    def size(self) -> int:
        """Number of characters currently retained."""
        with self._lock:
            return self._size

    @property
    def chunk_count(self) -> int:
        with self._lock:
            return len(self._chunks)

    def __len__(self) -> int:
        return self.size
