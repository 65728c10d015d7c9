import pytest
from main import app_state, init_state
from storage.document_store import DocumentStoreSimulator
from storage.redis_simulator import RedisSimulator

TOKENS = {
    "victim-token": {"id": "victim-1", "name": "Asha", "role": "victim"},
    "other-victim-token": {"id": "victim-2", "name": "Sita", "role": "victim"},
    "volunteer-token": {"id": "volunteer-1", "name": "Ramesh", "role": "volunteer"},
    "admin-token": {"id": "admin-1", "name": "Admin", "role": "admin"},
}


@pytest.fixture
def headers():
    """Authorization headers keyed by token name."""
    return {
        token.replace("-token", ""): {"Authorization": f"Bearer {token}"}
        for token in TOKENS
    }


@pytest.fixture(autouse=True)
def reset_app_state():
    """Reset all shared state before each test to prevent cross-test contamination."""
    init_state(
        store=DocumentStoreSimulator(latency_ms=0),
        snapshot_client=RedisSimulator(latency_ms=0),
        tokens=dict(TOKENS),
    )

    yield

    queue = app_state["queue"]
    if queue is not None and queue._sweep_task is not None:
        queue._sweep_task.cancel()


@pytest.fixture
def check_heap():
    """Assert max-heap order and that the id index matches array positions exactly."""
    def check(heap):
        for i in range(1, len(heap.heap)):
            parent = (i - 1) // 2
            assert heap.heap[parent].priority_score >= heap.heap[i].priority_score, (
                f"heap order violated between {parent} and {i}"
            )
        assert len(heap.index) == len(heap.heap)
        for i, entry in enumerate(heap.heap):
            assert heap.index[entry.id] == i, f"index for {entry.id} is stale"
    return check
