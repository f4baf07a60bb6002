"""
Progress Broadcaster
--------------------
Ordered, single-consumer progress stream for one pipeline run plus the
cooperative cancellation token checked before each phase and external call.

Guarantees enforced here rather than at call sites:
- ``progress`` never decreases within a run.
- phases never move backwards.
- exactly one terminal event (``completed`` or ``failed``) is emitted; the
  stream closes right after it.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from research_pipeline.core.exceptions import RunCancelledError
from research_pipeline.models.base import PHASE_ORDER, PipelinePhase
from research_pipeline.models.events import ProgressEvent

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Caller-settable flag observed cooperatively by the pipeline."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(f"Run cancelled: {self.reason}")

    async def wait(self) -> None:
        await self._event.wait()


class ProgressBroadcaster:
    """Sole writer of a run's progress stream."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
        self._history: List[ProgressEvent] = []
        self._last_progress = 0
        self._phase: Optional[PipelinePhase] = None
        self._terminal: Optional[ProgressEvent] = None

    # ────────────────────────────────────────────────────────────
    #  State
    # ────────────────────────────────────────────────────────────
    @property
    def events(self) -> List[ProgressEvent]:
        return list(self._history)

    @property
    def terminal_event(self) -> Optional[ProgressEvent]:
        return self._terminal

    @property
    def is_closed(self) -> bool:
        return self._terminal is not None

    @property
    def current_phase(self) -> Optional[PipelinePhase]:
        return self._phase

    @property
    def last_progress(self) -> int:
        return self._last_progress

    # ────────────────────────────────────────────────────────────
    #  Writers
    # ────────────────────────────────────────────────────────────
    def emit(
        self,
        phase: PipelinePhase,
        message: str,
        progress: int,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[ProgressEvent]:
        """Publish one event. Returns ``None`` when the stream is already closed."""
        if self._terminal is not None:
            logger.warning(
                "Progress event after terminal event dropped",
                run_id=self.run_id,
                phase=phase.value,
            )
            return None

        if (
            self._phase is not None
            and not phase.is_terminal
            and PHASE_ORDER[phase] < PHASE_ORDER[self._phase]
        ):
            raise ValueError(f"Phase cannot move backwards: {self._phase.value} -> {phase.value}")

        value = 100 if phase == PipelinePhase.COMPLETED else max(self._last_progress, min(100, int(progress)))
        event = ProgressEvent(
            run_id=self.run_id,
            phase=phase,
            message=message,
            progress=value,
            data=data,
        )
        self._phase = phase
        self._last_progress = value
        self._history.append(event)
        self._queue.put_nowait(event)

        if phase.is_terminal:
            self._terminal = event
            self._queue.put_nowait(None)
        return event

    def complete(self, message: str, data: Optional[Dict[str, Any]] = None) -> Optional[ProgressEvent]:
        return self.emit(PipelinePhase.COMPLETED, message, 100, data)

    def fail(self, message: str, data: Optional[Dict[str, Any]] = None) -> Optional[ProgressEvent]:
        return self.emit(PipelinePhase.FAILED, message, self._last_progress, data)

    def ensure_terminal(self, message: str = "Run ended unexpectedly") -> ProgressEvent:
        """Emit ``failed`` unless a terminal event already exists."""
        if self._terminal is None:
            logger.error("Run ended without terminal event", run_id=self.run_id)
            self.fail(message, {"reason": message})
        assert self._terminal is not None
        return self._terminal

    # ────────────────────────────────────────────────────────────
    #  Reader
    # ────────────────────────────────────────────────────────────
    async def stream(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in order until the terminal event has been delivered."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


__all__ = ["CancellationToken", "ProgressBroadcaster"]
