"""
Ingestion Progress Tracking.

Keeps the latest status of every ingestion job and fans progress events
out to live subscribers (the server-sent events endpoint).
"""

import asyncio
import threading
from collections import defaultdict
from collections.abc import AsyncIterator

from knowledge_core.ingestion.schemas import (
    IngestionStatus,
    JobState,
    ProgressEvent,
    ProgressSignal,
    StageStatus,
)
from knowledge_core.utils.logger import get_logger

logger = get_logger(__name__)


class IngestionNotFound(Exception):
    """Raised when no ingestion has been recorded for a capsule."""

    def __init__(self, capsule_id: str) -> None:
        super().__init__(f"No ingestion recorded for capsule '{capsule_id}'")
        self.capsule_id = capsule_id


class IngestionTracker:
    """
    In-memory registry of ingestion jobs and their progress.

    Status is keyed by capsule (latest job wins) and by knowledge source id
    (every job). Returned records are copies.

    Usage:
        tracker = IngestionTracker()
        tracker.start("cap-1", source_id, "notes.md")
        tracker.publish(event)
        status = tracker.get_status("cap-1")
    """

    def __init__(self, max_sources: int = 1000) -> None:
        """
        Args:
            max_sources: Finished jobs beyond this many are forgotten, oldest first
        """
        self.max_sources = max_sources
        self._lock = threading.Lock()
        self._by_capsule: dict[str, IngestionStatus] = {}
        self._by_source: dict[str, IngestionStatus] = {}
        self._last_event: dict[str, ProgressEvent] = {}
        self._history: dict[str, list[ProgressEvent]] = {}
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = defaultdict(set)

    def start(
        self,
        capsule_id: str,
        source_document_id: str,
        source_name: str | None = None,
    ) -> IngestionStatus:
        """Register a new job with every stage pending."""
        status = IngestionStatus(
            capsule_id=capsule_id,
            source_document_id=source_document_id,
            source_name=source_name,
        )
        with self._lock:
            self._by_capsule[capsule_id] = status
            self._by_source[source_document_id] = status
            self._last_event.pop(capsule_id, None)
            self._history[capsule_id] = []
            self._evict_finished()
        return status.model_copy(deep=True)

    def publish(self, event: ProgressEvent) -> None:
        """Record an event against its job and forward it to subscribers."""
        with self._lock:
            status = self._by_source.get(event.source_document_id)
            if status is None:
                raise IngestionNotFound(event.capsule_id)

            if event.stage is not None and event.state is not None:
                status.stages[event.stage.value] = StageStatus(state=event.state)

            if event.signal is ProgressSignal.COMPLETE:
                status.state = JobState.COMPLETE
                status.atom_count = event.atom_count
                status.cluster_count = len(event.cluster_ids)
                status.finished_at = event.timestamp
            elif event.signal is ProgressSignal.ERROR:
                status.state = JobState.ERROR
                status.error = event.message
                status.finished_at = event.timestamp

            if self._by_capsule.get(event.capsule_id) is status:
                self._last_event[event.capsule_id] = event
                if event.signal.is_terminal:
                    self._history.pop(event.capsule_id, None)
                else:
                    self._history.setdefault(event.capsule_id, []).append(event)
            queues = list(self._subscribers.get(event.capsule_id, ()))

        for queue in queues:
            queue.put_nowait(event)

    def get_status(self, capsule_id: str) -> IngestionStatus:
        """
        Latest job status for a capsule.

        Raises:
            IngestionNotFound: If the capsule was never ingested
        """
        with self._lock:
            status = self._by_capsule.get(capsule_id)
            if status is None:
                raise IngestionNotFound(capsule_id)
            return status.model_copy(deep=True)

    def list_sources(self) -> list[IngestionStatus]:
        """Every recorded job, oldest first."""
        with self._lock:
            return [status.model_copy(deep=True) for status in self._by_source.values()]

    def subscribe(self, capsule_id: str) -> AsyncIterator[ProgressEvent]:
        """
        Stream progress events of the capsule's current job.

        A running job replays the events published so far, then follows live
        until its terminal event. A finished job replays only its terminal
        event.

        Raises:
            IngestionNotFound: If the capsule was never ingested
        """
        with self._lock:
            status = self._by_capsule.get(capsule_id)
            if status is None:
                raise IngestionNotFound(capsule_id)
            last_event = self._last_event.get(capsule_id)
            finished = status.state is not JobState.RUNNING
            queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
            if not finished:
                for event in self._history.get(capsule_id, ()):
                    queue.put_nowait(event)
                self._subscribers[capsule_id].add(queue)

        async def stream() -> AsyncIterator[ProgressEvent]:
            if finished:
                if last_event is not None:
                    yield last_event
                return
            try:
                while True:
                    event = await queue.get()
                    yield event
                    if event.signal.is_terminal:
                        return
            finally:
                with self._lock:
                    queues = self._subscribers.get(capsule_id)
                    if queues is not None:
                        queues.discard(queue)
                        if not queues:
                            del self._subscribers[capsule_id]

        return stream()

    def _evict_finished(self) -> None:
        """Drop the oldest finished jobs beyond ``max_sources``. Caller holds the lock."""
        excess = len(self._by_source) - self.max_sources
        if excess <= 0:
            return
        for source_id in [
            source_id
            for source_id, status in self._by_source.items()
            if status.state is not JobState.RUNNING
        ][:excess]:
            del self._by_source[source_id]
