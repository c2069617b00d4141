"""Event layer: bounded per-session envelope log supporting resume from a sequence."""

from __future__ import annotations

from collections import deque
from typing import Any

from agent_relay.agent.events.event_types import Envelope, EnvelopeKind
from agent_relay.core.errors import ReplayGapError


class ReplayBuffer:
    """Assign contiguous sequence numbers and keep the most recent envelopes.

    Old entries are compacted from the front once ``capacity`` is reached;
    retained entries are never reordered or mutated. Callers serialize
    access (the owning session holds its lock around every call).
    """

    def __init__(self, session_id: str, capacity: int = 256) -> None:
        self._session_id = session_id
        self._capacity = max(1, capacity)
        self._events: deque[Envelope] = deque(maxlen=self._capacity)
        self._last_sequence = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    @property
    def first_sequence(self) -> int | None:
        """Oldest retained sequence, or None before the first append."""
        if not self._events:
            return None
        return self._events[0].sequence

    def __len__(self) -> int:
        return len(self._events)

    def append(self, kind: EnvelopeKind, payload: Any = None, *, prompt_id: str | None = None) -> Envelope:
        """Append one envelope with the next sequence number and return it."""
        envelope = Envelope(
            session_id=self._session_id,
            sequence=self._last_sequence + 1,
            kind=kind,
            payload={} if payload is None else payload,
            prompt_id=prompt_id,
        )
        self._events.append(envelope)
        self._last_sequence = envelope.sequence
        return envelope

    def since(self, after: int | None) -> list[Envelope]:
        """List retained envelopes with ``sequence > after``.

        ``after=None`` returns everything still retained. An explicit resume
        point must lie inside ``[first_sequence - 1, last_sequence]``,
        otherwise the caller cannot be served without gaps.
        """
        if after is None:
            return list(self._events)
        first = self.first_sequence
        oldest_resumable = (first - 1) if first is not None else self._last_sequence
        if after < oldest_resumable or after > self._last_sequence:
            raise ReplayGapError(
                session_id=self._session_id,
                requested=after,
                oldest=first,
                newest=self._last_sequence,
            )
        return [item for item in self._events if item.sequence > after]

    def clear(self) -> None:
        """Drop retained envelopes; sequence numbering continues where it was."""
        self._events.clear()
