from .errors import StoreUnavailableError
from .redis_simulator import RedisSimulator
from .snapshot_store import SnapshotStore
from .document_store import DocumentStoreSimulator

__all__ = ['StoreUnavailableError', 'RedisSimulator', 'SnapshotStore', 'DocumentStoreSimulator']
