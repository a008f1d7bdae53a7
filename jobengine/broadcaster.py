"""
Output fan-out for live job viewers.

Every job has a topic holding its full line history. A subscriber gets its
own unbounded queue, pre-filled with the history at the moment it attaches,
so appends never wait on a slow or vanished reader.
"""

import asyncio
import logging
import threading
from typing import Dict, Iterable, List, Optional

from .errors import JobNotFound
from .services.prometheus_metrics import prometheus_metrics

logger = logging.getLogger("jobengine.broadcaster")


def line_event(line: str) -> dict:
    return {"line": line}


def done_event(status: str) -> dict:
    return {"done": True, "status": status}


class Subscription:
    """Ordered event stream for one viewer: history, live lines, then done"""

    def __init__(self, broadcaster: "OutputBroadcaster", job_id: str):
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = False
        self._closed = False

    def _push(self, event: dict):
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        return self._consume(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[dict]:
        """Next event, or None if nothing arrived within timeout"""
        if self._finished:
            raise StopAsyncIteration
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        return self._consume(event)

    def _consume(self, event: dict) -> dict:
        if event.get("done"):
            self._finished = True
            self.close()
        return event

    @property
    def finished(self) -> bool:
        return self._finished

    def close(self):
        if not self._closed:
            self._closed = True
            self._broadcaster.unsubscribe(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()


class _Topic:
    __slots__ = ("history", "subscribers", "final_status")

    def __init__(self):
        self.history: List[str] = []
        self.subscribers: List[Subscription] = []
        self.final_status: Optional[str] = None


class OutputBroadcaster:
    """Fans out job output lines to any number of subscribers"""

    def __init__(self):
        self._topics: Dict[str, _Topic] = {}
        self._lock = threading.RLock()

    def open(self, job_id: str):
        with self._lock:
            self._topics.setdefault(job_id, _Topic())

    def publish(self, job_id: str, lines: Iterable[str]):
        with self._lock:
            topic = self._topics.get(job_id)
            if topic is None or topic.final_status is not None:
                return
            for line in lines:
                topic.history.append(line)
                event = line_event(line)
                for sub in topic.subscribers:
                    sub._push(event)

    def close(self, job_id: str, status: str):
        """Send the terminal event; later subscribers get it right after replay"""
        with self._lock:
            topic = self._topics.get(job_id)
            if topic is None or topic.final_status is not None:
                return
            topic.final_status = status
            event = done_event(status)
            for sub in topic.subscribers:
                sub._push(event)

    def subscribe(self, job_id: str) -> Subscription:
        with self._lock:
            topic = self._topics.get(job_id)
            if topic is None:
                raise JobNotFound(job_id)
            sub = Subscription(self, job_id)
            for line in topic.history:
                sub._push(line_event(line))
            if topic.final_status is not None:
                sub._push(done_event(topic.final_status))
            else:
                topic.subscribers.append(sub)
                prometheus_metrics.inc_subscribers()
        logger.debug("subscriber attached", extra={
            "component": "broadcaster",
            "job_id": job_id,
            "replayed": len(topic.history),
        })
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            topic = self._topics.get(sub.job_id)
            if topic is not None and sub in topic.subscribers:
                topic.subscribers.remove(sub)
                prometheus_metrics.dec_subscribers()

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            topic = self._topics.get(job_id)
            return len(topic.subscribers) if topic else 0

    def history(self, job_id: str) -> List[str]:
        with self._lock:
            topic = self._topics.get(job_id)
            if topic is None:
                raise JobNotFound(job_id)
            return list(topic.history)

    def discard(self, job_id: str):
        """Forget a topic; attached subscribers keep whatever is queued"""
        with self._lock:
            topic = self._topics.pop(job_id, None)
            if topic is None:
                return
            for _ in topic.subscribers:
                prometheus_metrics.dec_subscribers()
            topic.subscribers.clear()
