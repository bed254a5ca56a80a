"""Run orchestration: lifecycle, cancellation and progress fan-out."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, TypedDict
from uuid import uuid4

from layout_uploader.errors import LayoutUploaderError, RunCancelledError
from layout_uploader.layout_client import LayoutClient
from layout_uploader.progress import RunPhase, RunState
from layout_uploader.pyramid import PyramidBuilder
from layout_uploader.run_log import append_run_log, build_run_record
from layout_uploader.schemas import ProgressUpdate, RunConfig

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[RunConfig], LayoutClient]
_EVENT_HISTORY_LIMIT = 500


@dataclass(slots=True)
class RunOutcome:
    """Terminal result of a run; cancellation is its own status, not a failure."""

    status: RunPhase
    message: str
    max_zoom: int | None = None
    layout_path: str | None = None
    tiles_uploaded: int = 0

    @property
    def ok(self) -> bool:
        return self.status is RunPhase.COMPLETED


class RunSnapshot(TypedDict, total=False):
    """Serialized view of the current run for API responses and SSE events."""

    run_id: str | None
    status: str
    layout_key: str | None
    layout_path: str | None
    max_zoom: int | None
    tiles_uploaded: int
    message: str | None
    progress: dict[str, Any] | None


def _default_client_factory(config: RunConfig) -> LayoutClient:
    return LayoutClient(config.server_address)


class RunManager:
    """Own the single process-wide run.

    A second start while a run is active is rejected with
    ``RunInProgressError``; queuing is not supported.
    """

    def __init__(
        self,
        *,
        state: RunState | None = None,
        client_factory: ClientFactory | None = None,
        run_log_enabled: bool = True,
        run_log_path: Path | None = None,
    ) -> None:
        self.state = state or RunState()
        self.state.set_listener(self._on_progress)
        self._client_factory = client_factory or _default_client_factory
        self._run_log_enabled = run_log_enabled
        self._run_log_path = run_log_path
        self._record: RunSnapshot = {"run_id": None, "status": RunPhase.IDLE.value, "tiles_uploaded": 0}
        self._outcome: RunOutcome | None = None
        self._task: asyncio.Task[RunOutcome] | None = None
        self._subscribers: List[asyncio.Queue[RunSnapshot]] = []
        self._event_log: List[dict[str, Any]] = []
        self._event_sequence = 0

    async def start_run(self, config: RunConfig) -> RunSnapshot:
        """Begin a run in the background and return its initial snapshot."""

        run_id = self._begin(config)
        self._task = asyncio.create_task(self._run(run_id, config))
        return self.current()

    async def execute(self, config: RunConfig) -> RunOutcome:
        """Run to completion in the caller's task."""

        run_id = self._begin(config)
        return await self._run(run_id, config)

    async def wait(self) -> RunOutcome | None:
        task = self._task
        if task is None:
            return self._outcome
        return await task

    def get_progress(self) -> ProgressUpdate | None:
        return self.state.latest()

    def cancel(self) -> bool:
        active = self.state.request_cancel()
        if active:
            LOGGER.info("Cancellation requested for run %s", self._record.get("run_id"))
        return active

    @property
    def outcome(self) -> RunOutcome | None:
        return self._outcome

    def current(self) -> RunSnapshot:
        snapshot: RunSnapshot = dict(self._record)  # type: ignore[assignment]
        snapshot["status"] = self.state.phase.value
        progress = self.state.latest()
        snapshot["progress"] = progress.model_dump() if progress else None
        return snapshot

    def subscribe(self) -> asyncio.Queue[RunSnapshot]:
        queue: asyncio.Queue[RunSnapshot] = asyncio.Queue()
        queue.put_nowait(self.current())
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[RunSnapshot]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def get_events(self, *, min_sequence: int | None = None) -> List[dict[str, Any]]:
        if min_sequence is None:
            return [event.copy() for event in self._event_log]
        return [event.copy() for event in self._event_log if int(event["sequence"]) > min_sequence]

    def _begin(self, config: RunConfig) -> str:
        self.state.try_begin(notify=False)
        run_id = uuid4().hex
        self._outcome = None
        self._task = None
        self._record = {
            "run_id": run_id,
            "status": RunPhase.RUNNING.value,
            "layout_key": config.layout_key,
            "layout_path": None,
            "max_zoom": None,
            "tiles_uploaded": 0,
            "message": None,
        }
        LOGGER.info("Run %s started for %s (layout %s)", run_id, config.image_path, config.layout_key)
        self._broadcast()
        return run_id

    async def _run(self, run_id: str, config: RunConfig) -> RunOutcome:
        builder: PyramidBuilder | None = None
        outcome = RunOutcome(status=RunPhase.FAILED, message="Run did not complete")
        try:
            async with self._client_factory(config) as client:
                builder = PyramidBuilder(config, client=client, state=self.state)
                self._record["layout_path"] = builder.layout_path
                max_zoom = await builder.build()
            outcome = RunOutcome(
                status=RunPhase.COMPLETED,
                message=f"Processing completed successfully! Max zoom level: {max_zoom}",
                max_zoom=max_zoom,
            )
        except RunCancelledError as exc:
            outcome = RunOutcome(status=RunPhase.CANCELLED, message=str(exc))
        except LayoutUploaderError as exc:
            LOGGER.error("Run %s failed: %s", run_id, exc)
            outcome = RunOutcome(status=RunPhase.FAILED, message=str(exc))
        except Exception as exc:  # surfaced as the run's failure message
            LOGGER.exception("Run %s failed unexpectedly", run_id)
            outcome = RunOutcome(status=RunPhase.FAILED, message=f"Unexpected error: {exc}")
        finally:
            if builder is not None:
                outcome.layout_path = builder.layout_path
                outcome.tiles_uploaded = builder.tiles_uploaded
            self._complete(run_id, config, outcome, total_tiles=builder.total_tiles if builder else 0)
        return outcome

    def _complete(self, run_id: str, config: RunConfig, outcome: RunOutcome, *, total_tiles: int) -> None:
        self._outcome = outcome
        self.state.finish(outcome.status)
        self._record.update(
            {
                "status": outcome.status.value,
                "layout_path": outcome.layout_path,
                "max_zoom": outcome.max_zoom,
                "tiles_uploaded": outcome.tiles_uploaded,
                "message": outcome.message,
            }
        )
        LOGGER.info("Run %s finished: %s (%s)", run_id, outcome.status.value, outcome.message)
        self._broadcast()
        if self._run_log_enabled:
            record = build_run_record(
                run_id=run_id,
                layout_key=config.layout_key,
                layout_path=outcome.layout_path,
                image_path=config.image_path,
                status=outcome.status.value,
                max_zoom=outcome.max_zoom,
                tiles_uploaded=outcome.tiles_uploaded,
                total_tiles=total_tiles,
                message=outcome.message,
            )
            try:
                append_run_log(record, log_path=self._run_log_path)
            except OSError as exc:
                LOGGER.warning("Failed to append run log for %s: %s", run_id, exc)

    def _on_progress(self, _: ProgressUpdate) -> None:
        self._broadcast()

    def _broadcast(self) -> None:
        payload = self.current()
        self._record_event(payload)
        for queue in list(self._subscribers):
            queue.put_nowait(dict(payload))  # type: ignore[arg-type]

    def _record_event(self, payload: RunSnapshot) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sequence": self._event_sequence,
            "event": "snapshot",
            "snapshot": payload,
        }
        self._event_sequence += 1
        self._event_log.append(entry)
        if len(self._event_log) > _EVENT_HISTORY_LIMIT:
            del self._event_log[: len(self._event_log) - _EVENT_HISTORY_LIMIT]
