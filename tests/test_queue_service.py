"""
QueueService tests: orchestration around the heap.
- notifications after each mutation
- best-effort snapshot mirroring outside the lock
- cold-start recovery with degraded collaborators
- periodic sweep
"""
import asyncio

import pytest
from algorithms.priority_heap import Entry
from services import notifications
from services.notifications import EventPublisher
from services.queue_service import PENDING, QueueService
from storage.document_store import DocumentStoreSimulator
from storage.errors import StoreUnavailableError
from storage.redis_simulator import RedisSimulator
from storage.snapshot_store import SnapshotStore

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def make_entry(entry_id, vulnerability=3, urgency=3, minutes_ago=0.0, **payload):
    return Entry(
        id=entry_id,
        vulnerability_score=vulnerability,
        urgency_score=urgency,
        created_at=NOW - minutes_ago * 60,
        payload=payload,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis():
    return RedisSimulator(latency_ms=0)


@pytest.fixture
def service(clock, redis):
    return QueueService(snapshot_store=SnapshotStore(redis), publisher=EventPublisher(), clock=clock)


@pytest.mark.asyncio
async def test_worked_example_through_service(service, check_heap):
    await service.enqueue(make_entry("A", 4, 5))
    await service.enqueue(make_entry("B", 1, 2))
    await service.enqueue(make_entry("C", 4, 5, minutes_ago=10))

    ordered = await service.get_all_ordered()
    assert [(e.id, e.priority_score) for e in ordered] == [("C", 71.0), ("A", 70.0), ("B", 25.0)]

    dispatched = await service.dequeue()
    assert dispatched.id == "C"
    assert await service.size() == 2
    assert (await service.peek()).id == "A"
    check_heap(service.heap)


@pytest.mark.asyncio
async def test_empty_queue_returns_none_without_side_effects(service):
    assert await service.dequeue() is None
    assert await service.peek() is None
    assert await service.remove_by_id("missing") is None
    assert await service.update_by_id("missing", {"urgency_score": 2}) is None
    await service.flush_snapshots()

    assert list(service.publisher.history) == []
    assert service._snapshot_generation == 0


@pytest.mark.asyncio
async def test_returned_entries_are_copies(service):
    returned = await service.enqueue(make_entry("A", 4, 5, name="Asha"))
    returned.payload["name"] = "changed"
    returned.priority_score = 0

    peeked = await service.peek()
    assert peeked.payload["name"] == "Asha"
    assert peeked.priority_score == 70.0


@pytest.mark.asyncio
async def test_enqueue_publishes_inserted(service):
    await service.enqueue(make_entry("B", 1, 2))

    inserted = service.publisher.events(notifications.INSERTED)
    assert len(inserted) == 1
    assert inserted[0]["request"]["id"] == "B"
    assert inserted[0]["queue_size"] == 1
    assert service.publisher.events(notifications.HIGH_PRIORITY_ALERT) == []


@pytest.mark.asyncio
async def test_high_priority_alert_at_threshold(service):
    # 5*5 + 2*10 = 45 stays quiet, 4*5 + 3*10 = 50 crosses the threshold
    await service.enqueue(make_entry("quiet", 5, 2))
    await service.enqueue(make_entry("loud", 4, 3, name="Asha", aid_type="regular-medicine"))

    alerts = service.publisher.events(notifications.HIGH_PRIORITY_ALERT)
    assert len(alerts) == 1
    assert alerts[0]["request"]["id"] == "loud"
    assert alerts[0]["message"] == "High priority request received: Asha - regular-medicine"


@pytest.mark.asyncio
async def test_dequeue_publishes_dequeued_and_queue_updated(service):
    await service.enqueue(make_entry("A", 4, 5))
    await service.enqueue(make_entry("B", 1, 2))

    await service.dequeue()

    dequeued = service.publisher.events(notifications.DEQUEUED)
    assert len(dequeued) == 1
    assert dequeued[0]["request"]["id"] == "A"
    assert dequeued[0]["queue_size"] == 1
    updated = service.publisher.events(notifications.QUEUE_UPDATED)
    assert [item["id"] for item in updated[-1]["queue"]] == ["B"]
    assert updated[-1]["size"] == 1


@pytest.mark.asyncio
async def test_dequeue_publishes_only_after_commit(service):
    await service.enqueue(make_entry("A", 4, 5))
    seen_during_commit = []

    async def commit(entry):
        seen_during_commit.append((entry.id, len(service.publisher.events(notifications.DEQUEUED))))

    dispatched = await service.dequeue(commit=commit)
    assert dispatched.id == "A"
    assert seen_during_commit == [("A", 0)]
    assert len(service.publisher.events(notifications.DEQUEUED)) == 1


@pytest.mark.asyncio
async def test_failed_commit_restores_entry_silently(service, check_heap):
    await service.enqueue(make_entry("A", 5, 5, name="Meena", aid_type="serious-injury"))
    await service.enqueue(make_entry("B", 1, 2))
    await service.flush_snapshots()
    events_before = len(service.publisher.history)

    async def commit(entry):
        raise StoreUnavailableError("document store is unavailable")

    with pytest.raises(StoreUnavailableError):
        await service.dequeue(commit=commit)

    assert list(service.publisher.history)[events_before:] == []
    assert await service.size() == 2
    restored = await service.peek()
    assert restored.id == "A"
    assert restored.payload == {"name": "Meena", "aid_type": "serious-injury"}
    check_heap(service.heap)

    await service.flush_snapshots()
    assert [e.id for e in await service.snapshot_store.read_all_descending()] == ["A", "B"]


@pytest.mark.asyncio
async def test_snapshot_all_mirrors_current_contents(clock, redis):
    store = SnapshotStore(redis)
    service = QueueService(snapshot_store=store, clock=clock)
    # heap filled directly, bypassing the mirrored operations
    service.heap.insert(make_entry("A", 2, 2), now=NOW)
    service.heap.insert(make_entry("B", 5, 5), now=NOW)
    assert await store.read_all_descending() == []

    await service.snapshot_all()
    await service.flush_snapshots()
    assert [e.id for e in await store.read_all_descending()] == ["B", "A"]


@pytest.mark.asyncio
async def test_subscribers_receive_events(service):
    subscription = service.publisher.subscribe()
    await service.enqueue(make_entry("A"))

    kind, payload = subscription.get_nowait()
    assert kind == notifications.INSERTED
    assert payload["request"]["id"] == "A"

    service.publisher.unsubscribe(subscription)
    await service.enqueue(make_entry("B"))
    assert subscription.empty()


@pytest.mark.asyncio
async def test_slow_subscriber_drops_events():
    publisher = EventPublisher(subscriber_queue_size=1)
    subscription = publisher.subscribe()
    publisher.publish(notifications.INSERTED, {"n": 1})
    publisher.publish(notifications.INSERTED, {"n": 2})

    assert subscription.qsize() == 1
    assert len(publisher.history) == 2


@pytest.mark.asyncio
async def test_requeue_inserts_or_refreshes(service, check_heap):
    await service.enqueue(make_entry("A", 2, 2))
    dispatched = await service.dequeue()

    requeued = await service.requeue(dispatched)
    assert requeued.id == "A"
    assert await service.size() == 1

    refreshed = await service.requeue(make_entry("A", 5, 5))
    assert refreshed.priority_score == 75.0
    assert await service.size() == 1
    check_heap(service.heap)


@pytest.mark.asyncio
async def test_remove_and_update_publish(service):
    await service.enqueue(make_entry("A", 2, 2))
    await service.enqueue(make_entry("B", 3, 3))

    updated = await service.update_by_id("A", {"urgency_score": 5})
    assert updated.priority_score == 60.0
    assert (await service.peek()).id == "A"

    removed = await service.remove_by_id("B")
    assert removed.id == "B"

    assert service.publisher.events(notifications.UPDATED)[0]["request"]["id"] == "A"
    assert service.publisher.events(notifications.REMOVED)[0]["queue_size"] == 1


@pytest.mark.asyncio
async def test_snapshot_mirrors_queue_after_mutations(service):
    await service.enqueue(make_entry("A", 4, 5, name="Asha"))
    await service.enqueue(make_entry("B", 1, 2))
    await service.enqueue(make_entry("C", 4, 5, minutes_ago=10))
    await service.dequeue()
    await service.flush_snapshots()

    mirrored = await service.snapshot_store.read_all_descending()
    assert [e.id for e in mirrored] == ["A", "B"]
    assert mirrored[0].payload == {"name": "Asha"}
    assert mirrored[0].created_at == NOW


@pytest.mark.asyncio
async def test_snapshot_failure_does_not_fail_the_operation(service, redis, caplog):
    redis.available = False

    entry = await service.enqueue(make_entry("A", 4, 5))
    await service.flush_snapshots()

    assert entry.id == "A"
    assert await service.size() == 1
    assert "Snapshot sync failed" in caplog.text


@pytest.mark.asyncio
async def test_slow_snapshot_does_not_block_queue_operations(clock):
    slow_redis = RedisSimulator(latency_ms=200)
    service = QueueService(snapshot_store=SnapshotStore(slow_redis), clock=clock)

    await asyncio.wait_for(service.enqueue(make_entry("A")), timeout=0.1)
    await asyncio.wait_for(service.enqueue(make_entry("B")), timeout=0.1)
    assert await asyncio.wait_for(service.size(), timeout=0.1) == 2

    await service.flush_snapshots()
    assert sorted(e.id for e in await service.snapshot_store.read_all_descending()) == ["A", "B"]


@pytest.mark.asyncio
async def test_older_snapshot_never_overwrites_newer(service):
    await service.enqueue(make_entry("A"))
    await service.enqueue(make_entry("B"))
    await service.remove_by_id("A")
    await service.flush_snapshots()

    assert service._written_generation == service._snapshot_generation
    assert [e.id for e in await service.snapshot_store.read_all_descending()] == ["B"]


@pytest.mark.asyncio
async def test_clear_empties_queue_and_mirror(service):
    await service.enqueue(make_entry("A"))
    await service.clear()
    await service.flush_snapshots()

    assert await service.size() == 0
    assert await service.snapshot_store.read_all_descending() == []


@pytest.mark.asyncio
async def test_sweep_reorders_by_waiting_time(service, clock):
    await service.enqueue(make_entry("fresh", 2, 2))
    clock.now = NOW + 60 * 60
    await service.enqueue(make_entry("waiting", 1, 2))
    # "waiting" was created at NOW but only scored now: 25 + 6 = 31 > fresh's stale 30
    assert (await service.peek()).id == "waiting"

    await service.sweep()
    # fresh rescored to 36 after the same hour
    assert (await service.peek()).id == "fresh"

    updated = service.publisher.events(notifications.QUEUE_UPDATED)
    assert [item["id"] for item in updated[-1]["queue"]] == ["fresh", "waiting"]


@pytest.mark.asyncio
async def test_sweep_with_explicit_now(service, check_heap):
    await service.enqueue(make_entry("a", 1, 1))
    await service.enqueue(make_entry("b", 1, 1, minutes_ago=30))
    await service.sweep(now=NOW + 600)

    scores = {e.id: e.priority_score for e in service.heap.heap}
    assert scores == {"a": 16.0, "b": 19.0}
    check_heap(service.heap)


@pytest.mark.asyncio
async def test_sweeper_runs_periodically_and_stops(service):
    await service.enqueue(make_entry("a"))
    service.start_sweeper(interval=0.01)
    await asyncio.sleep(0.05)
    await service.stop_sweeper()

    sweeps = len(service.publisher.events(notifications.QUEUE_UPDATED))
    assert sweeps >= 2
    await asyncio.sleep(0.03)
    assert len(service.publisher.events(notifications.QUEUE_UPDATED)) == sweeps
    assert service._sweep_task is None


@pytest.mark.asyncio
async def test_recover_from_collection(service, check_heap):
    count = await service.recover([make_entry("x", 1, 1), make_entry("y", 5, 5), make_entry("z", 3, 3)])
    assert count == 3
    assert (await service.peek()).id == "y"
    check_heap(service.heap)


@pytest.mark.asyncio
async def test_recover_from_store_loads_pending_only(service):
    store = DocumentStoreSimulator()
    await store.create({"id": "p1", "vulnerability_score": 4, "urgency_score": 5, "created_at": NOW, "status": PENDING})
    await store.create({"id": "p2", "vulnerability_score": 1, "urgency_score": 1, "created_at": NOW, "status": PENDING})
    await store.create({"id": "t1", "vulnerability_score": 5, "urgency_score": 5, "created_at": NOW, "status": "IN_TRANSIT"})

    assert await service.recover_from_store(store) == 2
    assert (await service.peek()).id == "p1"
    assert "t1" not in service.heap


@pytest.mark.asyncio
async def test_recover_skips_unschedulable_documents(service):
    store = DocumentStoreSimulator()
    await store.create({"id": "ok", "vulnerability_score": 2, "urgency_score": 2, "created_at": NOW, "status": PENDING})
    await store.create({"id": "bad", "vulnerability_score": 9, "urgency_score": 2, "created_at": NOW, "status": PENDING})

    assert await service.recover_from_store(store) == 1


@pytest.mark.asyncio
async def test_recover_falls_back_to_snapshot_mirror(clock, redis):
    first = QueueService(snapshot_store=SnapshotStore(redis), clock=clock)
    await first.enqueue(make_entry("A", 4, 5, name="Asha"))
    await first.enqueue(make_entry("B", 1, 2))
    await first.flush_snapshots()

    store = DocumentStoreSimulator()
    store.available = False
    restarted = QueueService(snapshot_store=SnapshotStore(redis), clock=clock)

    assert await restarted.recover_from_store(store) == 2
    peeked = await restarted.peek()
    assert peeked.id == "A"
    assert peeked.payload == {"name": "Asha"}


@pytest.mark.asyncio
async def test_recover_starts_empty_when_everything_is_down(clock, redis, caplog):
    redis.available = False
    store = DocumentStoreSimulator()
    store.available = False
    service = QueueService(snapshot_store=SnapshotStore(redis), clock=clock)

    assert await service.recover_from_store(store) == 0
    assert await service.size() == 0
    assert "starting with an empty queue" in caplog.text

    await service.enqueue(make_entry("A"))
    assert await service.size() == 1


@pytest.mark.asyncio
async def test_service_without_snapshot_store(clock):
    service = QueueService(clock=clock)
    await service.enqueue(make_entry("A"))
    await service.flush_snapshots()
    assert await service.recover_from_store(DocumentStoreSimulator()) == 0
