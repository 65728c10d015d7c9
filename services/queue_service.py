import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from algorithms.priority import HIGH_PRIORITY_THRESHOLD
from algorithms.priority_heap import Entry, PriorityHeap
from storage.errors import StoreUnavailableError
from . import notifications

logger = logging.getLogger(__name__)

PENDING = "PENDING"
IN_TRANSIT = "IN_TRANSIT"
DELIVERED = "DELIVERED"
WITHDRAWN = "WITHDRAWN"

DEFAULT_SWEEP_INTERVAL = 5 * 60


class QueueService:
    """Owns the dispatch heap and serializes every access to it.

    Heap work happens under one asyncio.Lock. Snapshot writes are captured
    under the lock and written by background tasks after it is released, so a
    slow mirror never holds up scheduling. Entries handed back to callers are
    copies.
    """

    def __init__(self, heap: Optional[PriorityHeap] = None, snapshot_store=None,
                 publisher=None, clock=time.time):
        self.clock = clock
        self.heap = heap if heap is not None else PriorityHeap(clock=clock)
        self.snapshot_store = snapshot_store
        self.publisher = publisher if publisher is not None else notifications.EventPublisher()

        self._lock = asyncio.Lock()
        self._snapshot_lock = asyncio.Lock()
        self._snapshot_generation = 0
        self._written_generation = 0
        self._snapshot_tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None

    # -- snapshot mirror --------------------------------------------------

    def _capture_snapshot(self):
        """Copy the heap contents for the mirror. Caller must hold the lock."""
        if self.snapshot_store is None:
            return None
        self._snapshot_generation += 1
        return self._snapshot_generation, [entry.copy() for entry in self.heap.heap]

    def _schedule_snapshot(self, captured):
        if captured is None:
            return
        task = asyncio.create_task(self._write_snapshot(*captured))
        self._snapshot_tasks.add(task)
        task.add_done_callback(self._snapshot_tasks.discard)

    async def _write_snapshot(self, generation: int, entries: List[Entry]):
        async with self._snapshot_lock:
            if generation <= self._written_generation:
                return
            try:
                await self.snapshot_store.replace_all(entries)
            except StoreUnavailableError:
                logger.exception("Snapshot sync failed for generation %d", generation)
                return
            self._written_generation = generation

    async def snapshot_all(self):
        async with self._lock:
            captured = self._capture_snapshot()
        self._schedule_snapshot(captured)

    async def flush_snapshots(self):
        """Wait for every snapshot write scheduled so far."""
        while self._snapshot_tasks:
            await asyncio.gather(*list(self._snapshot_tasks))

    # -- notifications ----------------------------------------------------

    def _publish_inserted(self, entry: Entry, size: int):
        self.publisher.publish(notifications.INSERTED, {
            "request": entry.to_dict(),
            "queue_size": size,
        })
        if entry.priority_score >= HIGH_PRIORITY_THRESHOLD:
            name = entry.payload.get("name", entry.id)
            aid_type = entry.payload.get("aid_type", "unknown aid")
            self.publisher.publish(notifications.HIGH_PRIORITY_ALERT, {
                "message": f"High priority request received: {name} - {aid_type}",
                "request": entry.to_dict(),
            })

    def _publish_queue(self, ordered: List[Dict[str, Any]]):
        self.publisher.publish(notifications.QUEUE_UPDATED, {
            "queue": ordered,
            "size": len(ordered),
        })

    def _ordered_snapshot(self, now: float) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.heap.get_all_ordered(now)]

    # -- queue operations -------------------------------------------------

    async def enqueue(self, entry: Entry) -> Entry:
        async with self._lock:
            inserted = self.heap.insert(entry.copy(), now=self.clock()).copy()
            size = self.heap.size()
            captured = self._capture_snapshot()

        self._schedule_snapshot(captured)
        self._publish_inserted(inserted, size)
        return inserted

    async def requeue(self, entry: Entry) -> Entry:
        """Put an entry back in the queue after its status returned to PENDING.

        An entry that is somehow still queued is refreshed in place instead of
        being inserted twice.
        """
        async with self._lock:
            now = self.clock()
            if entry.id in self.heap:
                queued = self.heap.update_by_id(entry.id, entry.to_dict(), now=now).copy()
            else:
                queued = self.heap.insert(entry.copy(), now=now).copy()
            size = self.heap.size()
            captured = self._capture_snapshot()

        self._schedule_snapshot(captured)
        self._publish_inserted(queued, size)
        return queued

    async def dequeue(self, commit: Optional[Callable[[Entry], Awaitable[Any]]] = None) -> Optional[Entry]:
        """Remove and return the highest priority entry.

        `commit`, when given, is awaited with the extracted entry before
        anything is mirrored or published. If it raises, the entry is put back
        without any notification and the error propagates.
        """
        async with self._lock:
            entry = self.heap.extract_max()
        if entry is None:
            return None

        if commit is not None:
            try:
                await commit(entry.copy())
            except Exception:
                await self._restore(entry)
                raise

        async with self._lock:
            size = self.heap.size()
            ordered = self._ordered_snapshot(self.clock())
            captured = self._capture_snapshot()

        self._schedule_snapshot(captured)
        self.publisher.publish(notifications.DEQUEUED, {
            "request": entry.to_dict(),
            "queue_size": size,
        })
        self._publish_queue(ordered)
        return entry

    async def _restore(self, entry: Entry):
        """Undo an uncommitted dequeue. Subscribers never saw it leave."""
        async with self._lock:
            if entry.id not in self.heap:
                self.heap.insert(entry, now=self.clock())
            captured = self._capture_snapshot()
        self._schedule_snapshot(captured)
        logger.warning("Dispatch of %s was not recorded, request restored to queue", entry.id)

    async def peek(self) -> Optional[Entry]:
        async with self._lock:
            entry = self.heap.peek()
            return entry.copy() if entry is not None else None

    async def size(self) -> int:
        async with self._lock:
            return self.heap.size()

    async def contains(self, entry_id: str) -> bool:
        async with self._lock:
            return entry_id in self.heap

    async def remove_by_id(self, entry_id: str) -> Optional[Entry]:
        async with self._lock:
            removed = self.heap.remove_by_id(entry_id)
            if removed is None:
                return None
            size = self.heap.size()
            captured = self._capture_snapshot()

        self._schedule_snapshot(captured)
        self.publisher.publish(notifications.REMOVED, {
            "request": removed.to_dict(),
            "queue_size": size,
        })
        return removed

    async def update_by_id(self, entry_id: str, changes: Dict[str, Any]) -> Optional[Entry]:
        async with self._lock:
            updated = self.heap.update_by_id(entry_id, changes, now=self.clock())
            if updated is None:
                return None
            updated = updated.copy()
            size = self.heap.size()
            captured = self._capture_snapshot()

        self._schedule_snapshot(captured)
        self.publisher.publish(notifications.UPDATED, {
            "request": updated.to_dict(),
            "queue_size": size,
        })
        return updated

    async def get_all_ordered(self) -> List[Entry]:
        """All queued entries, highest priority first, rescored to the current time.

        Rescoring rebuilds the shared heap, so this takes the same lock as the
        mutating operations.
        """
        async with self._lock:
            return [entry.copy() for entry in self.heap.get_all_ordered(self.clock())]

    async def clear(self):
        async with self._lock:
            self.heap.clear()
            captured = self._capture_snapshot()
        self._schedule_snapshot(captured)

    # -- sweep ------------------------------------------------------------

    async def sweep(self, now: Optional[float] = None):
        async with self._lock:
            ordered = self._ordered_snapshot(self.clock() if now is None else now)
            captured = self._capture_snapshot()

        self._schedule_snapshot(captured)
        self._publish_queue(ordered)
        logger.info("Priority scores recalculated for %d pending requests", len(ordered))

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    def start_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> asyncio.Task:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))
        return self._sweep_task

    async def stop_sweeper(self):
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # -- recovery ---------------------------------------------------------

    async def recover(self, source: Iterable[Entry]) -> int:
        """Replace the queue contents with `source`, scoring everything now."""
        entries = [entry.copy() for entry in source]
        async with self._lock:
            self.heap.load_from_collection(entries, now=self.clock())
            size = self.heap.size()
            captured = self._capture_snapshot()
        self._schedule_snapshot(captured)
        return size

    async def recover_from_store(self, record_store) -> int:
        """Cold start: load PENDING requests, degrading to the mirror, then to empty."""
        try:
            documents = await record_store.find_by_status(PENDING)
        except StoreUnavailableError:
            logger.warning("Record store unavailable, recovering from snapshot mirror")
            entries = await self._read_mirror()
        else:
            entries = _entries_from_documents(documents)

        count = await self.recover(entries)
        logger.info("Loaded %d pending requests into priority queue", count)
        return count

    async def _read_mirror(self) -> List[Entry]:
        if self.snapshot_store is None:
            return []
        try:
            return await self.snapshot_store.read_all_descending()
        except StoreUnavailableError:
            logger.warning("Snapshot mirror unavailable, starting with an empty queue")
            return []


def _entries_from_documents(documents: Iterable[Dict[str, Any]]) -> List[Entry]:
    entries = []
    seen = set()
    for doc in documents:
        try:
            entry = Entry.from_dict(doc)
        except ValueError as exc:
            logger.warning("Skipping unschedulable request %s: %s", doc.get("id"), exc)
            continue
        if entry.id in seen:
            continue
        seen.add(entry.id)
        entries.append(entry)
    return entries
