"""Event layer: immutable envelopes appended to session logs and streamed to listeners."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EnvelopeKind = Literal[
    "system",
    "user",
    "assistant",
    "tool-call",
    "tool-result",
    "result",
    "error",
    "done",
]

ENVELOPE_KINDS: frozenset[str] = frozenset(
    {"system", "user", "assistant", "tool-call", "tool-result", "result", "error", "done"}
)

TERMINAL_KINDS: frozenset[str] = frozenset({"error", "done"})


class Envelope(BaseModel):
    """One ordered unit of streamed agent output; sequence is the only ordering authority."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence: int = Field(..., ge=1)
    kind: EnvelopeKind
    payload: Any = Field(default_factory=dict)
    produced_at: float = Field(default_factory=time.monotonic)
    prompt_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS
