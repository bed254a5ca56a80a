"""Process-wide run state: progress snapshot, cancel flag and lifecycle phase."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable

from layout_uploader.errors import RunInProgressError
from layout_uploader.schemas import ProgressUpdate

STARTING_STATUS = "Starting..."
CANCELLING_STATUS = "Cancelling..."
CANCELLED_STATUS = "Cancelled"

UpdateListener = Callable[[ProgressUpdate], None]


class RunPhase(str, Enum):
    """Lifecycle of a run: Idle -> Running -> Completed | Cancelled | Failed."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


def _blank_update(status: str) -> ProgressUpdate:
    return ProgressUpdate(current=0, total=0, zoom_level=0, percentage=0, status=status)


class RunState:
    """Shared cells read by pollers and written by the run task.

    One lock guards every cell. Each critical section only reads or
    overwrites a value; listeners are notified after the lock is released.
    """

    def __init__(self, *, listener: UpdateListener | None = None) -> None:
        self._lock = threading.Lock()
        self._progress: ProgressUpdate | None = None
        self._cancel_requested = False
        self._phase = RunPhase.IDLE
        self._listener = listener

    def set_listener(self, listener: UpdateListener | None) -> None:
        self._listener = listener

    @property
    def phase(self) -> RunPhase:
        with self._lock:
            return self._phase

    @property
    def is_running(self) -> bool:
        return self.phase is RunPhase.RUNNING

    def try_begin(self, *, notify: bool = True) -> None:
        """Enter ``RUNNING``, clearing any leftover cancel signal.

        With ``notify=False`` the caller announces the start itself.

        Raises:
            RunInProgressError: if a run is already active.
        """

        update = _blank_update(STARTING_STATUS)
        with self._lock:
            if self._phase is RunPhase.RUNNING:
                raise RunInProgressError("A run is already in progress; cancel it or wait for it to finish")
            self._phase = RunPhase.RUNNING
            self._cancel_requested = False
            self._progress = update
        if notify:
            self._notify(update)

    def finish(self, phase: RunPhase) -> None:
        if phase in (RunPhase.IDLE, RunPhase.RUNNING):
            raise ValueError(f"{phase.value} is not a terminal phase")
        with self._lock:
            self._phase = phase

    def latest(self) -> ProgressUpdate | None:
        with self._lock:
            return self._progress

    def publish(self, update: ProgressUpdate) -> None:
        with self._lock:
            self._progress = update
        self._notify(update)

    def publish_progress(self, *, current: int, total: int, zoom_level: int, status: str) -> ProgressUpdate:
        percentage = (current * 100) // total if total else 0
        update = ProgressUpdate(
            current=current,
            total=total,
            zoom_level=zoom_level,
            percentage=percentage,
            status=status,
        )
        self.publish(update)
        return update

    def request_cancel(self) -> bool:
        """Raise the cancel flag; returns ``True`` when a run was active to observe it."""

        update = _blank_update(CANCELLING_STATUS)
        with self._lock:
            self._cancel_requested = True
            active = self._phase is RunPhase.RUNNING
            if active:
                self._progress = update
        if active:
            self._notify(update)
        return active

    def cancel_requested(self) -> bool:
        with self._lock:
            return self._cancel_requested

    def mark_cancelled(self) -> None:
        # Counts are zeroed rather than keeping the last real progress.
        self.publish(_blank_update(CANCELLED_STATUS))

    def _notify(self, update: ProgressUpdate) -> None:
        listener = self._listener
        if listener is not None:
            listener(update)
