import asyncio
import copy
import time
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional

from .errors import StoreUnavailableError


class DocumentStoreSimulator:
    """In-process stand-in for the durable relief request collection.

    Documents are plain dicts keyed by `id`. Reads return deep copies so
    callers never share state with the store.
    """

    def __init__(self, latency_ms: int = 0):
        self.latency_sec = latency_ms / 1000.0
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.available = True

    async def _simulate_latency(self):
        await asyncio.sleep(self.latency_sec)
        if not self.available:
            raise StoreUnavailableError("document store is unavailable")

    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            await self._simulate_latency()
            now = time.time()
            stored = copy.deepcopy(doc)
            stored.setdefault("id", uuid.uuid4().hex)
            stored.setdefault("created_at", now)
            stored["updated_at"] = now
            self._docs[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def find_by_id(self, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            await self._simulate_latency()
            doc = self._docs.get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def find(self, **filters) -> List[Dict[str, Any]]:
        """Return every document whose fields equal all the given filters, newest first."""
        async with self._lock:
            await self._simulate_latency()
            matches = [
                copy.deepcopy(doc) for doc in self._docs.values()
                if all(doc.get(k) == v for k, v in filters.items())
            ]
        matches.sort(key=lambda doc: doc.get("created_at", 0), reverse=True)
        return matches

    async def find_by_status(self, status: str) -> List[Dict[str, Any]]:
        return await self.find(status=status)

    async def update_by_id(self, doc_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            await self._simulate_latency()
            doc = self._docs.get(doc_id)
            if doc is None:
                return None
            doc.update(copy.deepcopy(changes))
            doc["updated_at"] = time.time()
            return copy.deepcopy(doc)

    async def count(self, **filters) -> int:
        async with self._lock:
            await self._simulate_latency()
            return sum(
                1 for doc in self._docs.values()
                if all(doc.get(k) == v for k, v in filters.items())
            )

    async def aggregate_count(self, field: str) -> List[Dict[str, Any]]:
        """Group documents by `field` and count each group, largest first."""
        async with self._lock:
            await self._simulate_latency()
            counts = Counter(doc.get(field) for doc in self._docs.values())
        return [{"value": value, "count": n} for value, n in counts.most_common()]
