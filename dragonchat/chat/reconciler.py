"""
Reconcile the transcript sent by the client with the one already stored.

Clients resend the whole conversation on every turn. Only the part that is
not stored yet (the *delta*) is appended; the stored history is never
rewritten, even when the client's copy disagrees with it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from dragonchat.logging_config import logger


@dataclass(frozen=True)
class TranscriptMessage:
    role: str
    content: str
    attachments: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)
    metadata: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @property
    def file_ids(self) -> FrozenSet[str]:
        return frozenset(str(a.get("fileId")) for a in self.attachments if a.get("fileId"))

    def same_turn(self, other: "TranscriptMessage") -> bool:
        return (
            self.role == other.role
            and self.content == other.content
            and self.file_ids == other.file_ids
        )


@dataclass(frozen=True)
class Reconciliation:
    common_prefix: int
    delta: List[TranscriptMessage]
    diverged: bool
    answer_target: TranscriptMessage

    @property
    def has_delta(self) -> bool:
        return bool(self.delta)


def common_prefix_length(
    stored: Sequence[TranscriptMessage], incoming: Sequence[TranscriptMessage]
) -> int:
    k = 0
    for old, new in zip(stored, incoming):
        if not old.same_turn(new):
            break
        k += 1
    return k


def reconcile(
    stored: Sequence[TranscriptMessage],
    incoming: Sequence[TranscriptMessage],
    *,
    session_id: Optional[str] = None,
) -> Reconciliation:
    """
    ``incoming`` must be non-empty and end with a user message; the
    orchestrator validates that before calling.
    """
    answer_target = incoming[-1]
    k = common_prefix_length(stored, incoming)
    diverged = k < len(stored)
    if diverged:
        logger.warning(
            "Transcript diverged from stored history: session=%s stored=%d incoming=%d common=%d",
            session_id,
            len(stored),
            len(incoming),
            k,
        )

    delta = list(incoming[k:])
    if not delta and not (stored and stored[-1].same_turn(answer_target)):
        # The client resent an older prefix; the turn it wants answered is
        # not the newest stored one, so record it again.
        delta = [answer_target]

    return Reconciliation(
        common_prefix=k,
        delta=delta,
        diverged=diverged,
        answer_target=answer_target,
    )


__all__ = ["Reconciliation", "TranscriptMessage", "common_prefix_length", "reconcile"]
