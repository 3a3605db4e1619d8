"""Per-session conversation transcripts for the HTTP surface.

The loop itself is stateless between requests; the API keeps each
session's transcript here and hands it back as ``history`` on the next
``/chat`` call.

* Sessions are evicted least-recently-used once the total estimated size
  (JSON byte length of the entries) exceeds ``max_bytes``.
* A single session that outgrows the ceiling on its own loses its oldest
  entries instead of being dropped whole.
* Purely ephemeral: transcripts are lost on restart.  What the agent
  learned about the API lives in Pattern Memory, not here.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from resource_agent.models import TranscriptEntry

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 20 * 1024 * 1024


def _entry_bytes(entry: TranscriptEntry) -> int:
    return len(entry.model_dump_json().encode("utf-8"))


class SessionCache:
    """LRU map of ``session_id`` to transcript, bounded by estimated bytes."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        # session_id → (entries, per-entry sizes)
        self._sessions: OrderedDict[str, tuple[list[TranscriptEntry], list[int]]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> list[TranscriptEntry]:
        """Return a copy of the session's transcript (promoting it to MRU)."""
        with self._lock:
            if session_id not in self._sessions:
                return []
            self._sessions.move_to_end(session_id)
            entries, _ = self._sessions[session_id]
            return list(entries)

    def append(self, session_id: str, new_entries: list[TranscriptEntry]) -> int:
        """Append *new_entries* to the session.  Returns the session's entry count."""
        sizes = [_entry_bytes(e) for e in new_entries]
        with self._lock:
            entries, entry_sizes = self._sessions.pop(session_id, ([], []))
            entries = entries + list(new_entries)
            entry_sizes = entry_sizes + sizes
            self._current_bytes += sum(sizes)

            # Oversized session: shed its oldest entries first
            while entries and sum(entry_sizes) > self._max_bytes:
                entries.pop(0)
                self._current_bytes -= entry_sizes.pop(0)

            while self._current_bytes > self._max_bytes and self._sessions:
                evicted_id, (_, evicted_sizes) = self._sessions.popitem(last=False)
                self._current_bytes -= sum(evicted_sizes)
                logger.debug("Sessions: evicted %s (%d bytes)", evicted_id, sum(evicted_sizes))

            if entries:
                self._sessions[session_id] = (entries, entry_sizes)
            return len(entries)

    def reset(self, session_id: str) -> bool:
        """Forget a session.  Returns ``True`` if it existed."""
        with self._lock:
            if session_id not in self._sessions:
                return False
            _, sizes = self._sessions.pop(session_id)
            self._current_bytes -= sum(sizes)
            return True

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def session_count(self) -> int:
        return len(self._sessions)
