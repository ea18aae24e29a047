from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from aigate.models import GatewayState, Turn

_EPOCH = "1970-01-01T00:00:00+00:00"


@dataclass(frozen=True)
class HistoryLimits:
    max_turns: int = 50
    max_session_bytes: int = 64 * 1024
    max_sessions: int = 200
    max_total_bytes: int = 2 * 1024 * 1024


def _history_bytes(turns: list[Turn]) -> int:
    return sum(turn.size for turn in turns)


def _truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[: max(0, max_bytes)].decode("utf-8", errors="ignore")


class HistoryStore:
    """Bounded per-session conversation log kept inside the gateway state."""

    def __init__(
        self,
        state: Callable[[], GatewayState],
        limits: HistoryLimits | None = None,
        on_change: Callable[[], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._state = state
        self._limits = limits or HistoryLimits()
        self._on_change = on_change
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger("history")

    @property
    def limits(self) -> HistoryLimits:
        return self._limits

    def _changed(self) -> None:
        if self._on_change:
            self._on_change()

    def read(self, session_id: str) -> list[Turn]:
        return list(self._state().histories.get(session_id, []))

    def sessions(self) -> list[str]:
        return list(self._state().histories)

    def total_bytes(self) -> int:
        return sum(_history_bytes(turns) for turns in self._state().histories.values())

    def clear(self, session_id: str) -> bool:
        state = self._state()
        removed = state.histories.pop(session_id, None) is not None
        state.history_meta.pop(session_id, None)
        if removed:
            self._changed()
        return removed

    def append(self, session_id: str, role: str, content: str) -> None:
        state = self._state()
        turns = state.histories.pop(session_id, [])
        turns.append(Turn(role=role, content=content))
        self._trim_session(turns)
        # re-insert so dict order follows write recency for equal timestamps
        state.histories[session_id] = turns
        state.history_meta.pop(session_id, None)
        state.history_meta[session_id] = self._clock().isoformat()
        self._evict_global(state)
        self._changed()

    def _trim_session(self, turns: list[Turn]) -> None:
        limits = self._limits
        while len(turns) > limits.max_turns:
            turns.pop(0)
        total = _history_bytes(turns)
        while total > limits.max_session_bytes and len(turns) > 1:
            total -= turns.pop(0).size
        if turns and total > limits.max_session_bytes:
            last = turns[-1]
            budget = limits.max_session_bytes - len(f"{last.role}:".encode("utf-8"))
            turns[-1] = Turn(role=last.role, content=_truncate_utf8(last.content, budget))

    def _evict_global(self, state: GatewayState) -> None:
        limits = self._limits
        total = sum(_history_bytes(turns) for turns in state.histories.values())
        if len(state.histories) <= limits.max_sessions and total <= limits.max_total_bytes:
            return
        order = sorted(
            state.histories,
            key=lambda sid: _parse_ts(state.history_meta.get(sid, _EPOCH)),
        )
        while order and (len(state.histories) > limits.max_sessions or total > limits.max_total_bytes):
            victim = order.pop(0)
            total -= _history_bytes(state.histories.pop(victim, []))
            state.history_meta.pop(victim, None)
            self._logger.info("Evicted history session=%s", victim)


def _parse_ts(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        parsed = datetime.fromisoformat(_EPOCH)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
