"""Broadcast Hub: live log and status fan-out to run subscribers.

Each subscriber owns a bounded asyncio.Queue, the same pattern the SSE
streams are built on. Delivery is best-effort: a subscriber whose queue is
full is dropped instead of blocking the pipeline.

Event stream per subscriber::

    init (snapshot + full log backlog) → log* / status* → complete

Log indices are contiguous per subscriber. The hub tracks, for every
subscriber, the index of the next line it has not seen; each log broadcast
sends everything from there to the end of the run's log. Registration and the
backlog snapshot happen under the same lock as broadcasts, so a line is
either in the backlog or in a later ``log`` event, never both or neither.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING

from harborline.models import RunRecord, StreamEvent

if TYPE_CHECKING:
    from harborline.registry import RunRegistry

logger = logging.getLogger(__name__)

_CLOSE = object()


class Subscriber:
    """One live viewer of a run. Iterate it to receive StreamEvents."""

    def __init__(self, run_id: str, maxsize: int = 1000):
        self.run_id = run_id
        self.next_index = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._done = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: StreamEvent) -> bool:
        """Enqueue without blocking. False if the subscriber is closed or full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Stop accepting events; the reader ends after draining what is queued."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            pass  # reader notices _closed once the queue drains

    async def next_event(self, timeout: float | None = None) -> StreamEvent | None:
        """Next event, or None if ``timeout`` elapsed first.

        Raises StopAsyncIteration after ``complete`` or once closed and drained.
        """
        if self._done or (self._closed and self._queue.empty()):
            self._done = True
            raise StopAsyncIteration
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSE:
            self._done = True
            raise StopAsyncIteration
        if item.event == "complete":
            self._done = True
        return item

    def __aiter__(self) -> "Subscriber":
        return self

    async def __anext__(self) -> StreamEvent:
        # Without a timeout next_event only returns an event or raises.
        while True:
            event = await self.next_event()
            if event is not None:
                return event


class BroadcastHub:
    """Per-run subscriber lists with backlog replay on subscribe."""

    def __init__(self, registry: RunRegistry, queue_size: int = 1000):
        self.registry = registry
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    # ── Subscription ─────────────────────────────────────────────────────

    def subscribe(self, run_id: str) -> Subscriber:
        """Attach a viewer to a run.

        Raises RunNotFoundError for unknown runs. The first event is always
        ``init``; for a finished run it is followed by ``complete`` and the
        subscriber is never registered.
        """
        run = self.registry.require(run_id)
        sub = Subscriber(run_id, maxsize=max(self.queue_size, 2))
        with self._lock:
            snapshot, logs = run.snapshot_with_logs()
            data = snapshot.model_dump(mode="json")
            data["logs"] = logs
            sub.offer(StreamEvent(event="init", data=data))
            sub.next_index = len(logs)
            if snapshot.finished:
                sub.offer(StreamEvent(event="complete", data=_complete_data(run)))
                sub.close()
                return sub
            self._subscribers.setdefault(run_id, []).append(sub)
        logger.debug("Subscriber attached to run %s (backlog=%d)", run_id, len(logs))
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.run_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.run_id]
        sub.close()

    # ── Fan-out ──────────────────────────────────────────────────────────

    def on_log_appended(self, run: RunRecord) -> None:
        """Send every line each subscriber has not seen yet."""
        with self._lock:
            self._flush_logs_locked(run)

    def on_status_changed(self, run: RunRecord) -> None:
        """Push the compact status snapshot to every subscriber."""
        event = StreamEvent(event="status", data=run.snapshot().status_fields())
        with self._lock:
            self._flush_logs_locked(run)
            self._send_locked(run.id, lambda sub: sub.offer(event))

    def complete_all(self, run_id: str) -> None:
        """Send ``complete`` to every remaining subscriber and clear the list."""
        run = self.registry.get(run_id)
        with self._lock:
            if run is not None:
                self._flush_logs_locked(run)
            subs = self._subscribers.pop(run_id, [])
        if run is None:
            for sub in subs:
                sub.close()
            return
        event = StreamEvent(event="complete", data=_complete_data(run))
        for sub in subs:
            sub.offer(event)
            sub.close()
        if subs:
            logger.debug("Completed %d subscriber(s) for run %s", len(subs), run_id)

    # ── Internals ────────────────────────────────────────────────────────

    def _flush_logs_locked(self, run: RunRecord) -> None:
        subs = self._subscribers.get(run.id)
        if not subs:
            return
        lines = run.logs_snapshot()

        def send(sub: Subscriber) -> bool:
            while sub.next_index < len(lines):
                event = StreamEvent(
                    event="log", data={"line": lines[sub.next_index], "index": sub.next_index}
                )
                if not sub.offer(event):
                    return False
                sub.next_index += 1
            return True

        self._send_locked(run.id, send)

    def _send_locked(self, run_id: str, send) -> None:
        subs = self._subscribers.get(run_id)
        if not subs:
            return
        dead = [sub for sub in subs if not send(sub)]
        for sub in dead:
            subs.remove(sub)
            sub.close()
            logger.debug("Dropped slow or closed subscriber from run %s", run_id)
        if not subs:
            del self._subscribers[run_id]


def _complete_data(run: RunRecord) -> dict:
    snap = run.snapshot()
    return {"status": snap.status.value, "duration": snap.duration}
