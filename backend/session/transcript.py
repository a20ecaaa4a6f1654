"""
Conversation transcript accumulation.

Responsibilities:
- Accumulate input (local speaker) and output (remote voice) transcription
  deltas in arrival order
- On turn-complete, flush non-empty buffers as one unit: user item first,
  then model item
- Provide the flushed history for summarization

Non-responsibilities:
- No summarization
- No persistence
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Role = Literal["user", "model"]


@dataclass(frozen=True)
class TranscriptItem:
    """Single completed utterance."""
    role: Role
    text: str


class TranscriptAccumulator:
    """
    Mutable transcript owned by one call.

    Invariants:
    - Items are stored in chronological order of turn completion
    - Pending deltas never appear in items until a turn completes
    """

    def __init__(self) -> None:
        self._pending_input: list[str] = []
        self._pending_output: list[str] = []
        self._items: list[TranscriptItem] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_input_delta(self, text: str) -> None:
        self._pending_input.append(text)

    def add_output_delta(self, text: str) -> None:
        self._pending_output.append(text)

    def complete_turn(self) -> tuple[TranscriptItem, ...]:
        """
        Flush pending deltas into the history.

        Returns the newly added items (possibly empty).
        """
        user_text = "".join(self._pending_input)
        model_text = "".join(self._pending_output)
        self._pending_input.clear()
        self._pending_output.clear()

        added: list[TranscriptItem] = []
        if user_text:
            added.append(TranscriptItem(role="user", text=user_text))
        if model_text:
            added.append(TranscriptItem(role="model", text=model_text))
        self._items.extend(added)
        return tuple(added)

    @property
    def items(self) -> tuple[TranscriptItem, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def render(self) -> str:
        """History as `role: text` lines."""
        return "\n".join(f"{t.role}: {t.text}" for t in self._items)
