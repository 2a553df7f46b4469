"""Append-only per-task event log with replay and live fan-out."""

import asyncio
import json
import logging

from agent_orchestrator.core.tasks import now_ms
from agent_orchestrator.storage.models import Task
from agent_orchestrator.storage.store import TaskStore

logger = logging.getLogger(__name__)


class Subscription:
    """One live listener on a task's feed.

    Replayed events are queued unconditionally; live events are dropped and
    the subscription closed once ``limit`` events are waiting, so a stalled
    reader never holds up appends. A closed subscription yields ``None``.
    """

    def __init__(self, task_id: str, limit: int = 10000):
        self.task_id = task_id
        self.limit = limit
        self.closed = False
        self.last_seq = 0
        self._queue: asyncio.Queue[dict | None] = asyncio.Queue()

    def _put(self, event: dict):
        self._queue.put_nowait(event)
        self.last_seq = event["seq"]

    def deliver(self, event: dict) -> bool:
        """Queue a live event. Returns False if the subscription is closed."""
        if self.closed:
            return False
        if event["seq"] <= self.last_seq:
            return True
        if self._queue.qsize() >= self.limit:
            self.close()
            return False
        self._put(event)
        return True

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def get(self) -> dict | None:
        return await self._queue.get()

    def get_nowait(self) -> dict | None:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()


class EventLog:
    """Durable, ordered event log shared by all tasks of one orchestrator.

    ``append`` and ``subscribe`` never yield to the event loop, so every
    subscriber observes a task's events in append order with no gap between
    replay and live delivery.
    """

    def __init__(self, store: TaskStore, subscriber_limit: int = 10000):
        self.store = store
        self.subscriber_limit = subscriber_limit
        self._subscribers: dict[str, set[Subscription]] = {}

    def append(self, task: Task, event_type: str, repo_id: str | None = None, **fields) -> dict:
        seq = task.next_seq
        task.next_seq = seq + 1
        event = {"seq": seq, "ts": now_ms(), "type": event_type}
        if repo_id is not None:
            event["repoId"] = repo_id
        event.update(fields)

        try:
            self.store.append_event(task.id, event)
        except OSError:
            logger.exception("Failed to write event %s for task %s", seq, task.id)

        for sub in list(self._subscribers.get(task.id, ())):
            if not sub.deliver(event):
                logger.warning(
                    "Dropping slow subscriber on task %s at seq %s", task.id, sub.last_seq
                )
                self.unsubscribe(sub)
        return event

    def subscribe(self, task: Task, since: int = 0) -> Subscription:
        """Replay events with ``seq > since`` from disk, then register for live events."""
        sub = Subscription(task.id, limit=self.subscriber_limit)
        sub.last_seq = since
        for event in self.store.read_events(task.id, since):
            if event["seq"] > sub.last_seq:
                sub._put(event)
        self._subscribers.setdefault(task.id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        subs = self._subscribers.get(sub.task_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.task_id]

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))

    def close_all(self):
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        self._subscribers.clear()


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def stream_events(log: EventLog, task: Task, since: int = 0, ping_interval: float = 15.0):
    """Server-sent event stream: replay, then live events, with keep-alive comments."""
    sub = log.subscribe(task, since)
    try:
        yield ": ok\n\n"
        while True:
            try:
                event = await asyncio.wait_for(sub.get(), timeout=ping_interval)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            if event is None:
                break
            yield format_sse(event)
    finally:
        log.unsubscribe(sub)
