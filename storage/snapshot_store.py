import json
import logging
from typing import Iterable, List

from redis.asyncio import Redis
from redis.exceptions import RedisError

from algorithms.priority_heap import Entry
from .errors import StoreUnavailableError
from .redis_simulator import RedisSimulator

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_KEY = "relief:priority_queue"

# Redis client errors plus what the simulator and raw sockets raise
_CLIENT_ERRORS = (RedisError, ConnectionError, OSError)


def create_snapshot_client(redis_url: str = "", latency_ms: int = 0):
    """Real redis client when a URL is configured, otherwise the simulator."""
    if redis_url:
        return Redis.from_url(redis_url, decode_responses=True)
    return RedisSimulator(latency_ms=latency_ms)


class SnapshotStore:
    """Best-effort mirror of the queue in a Redis sorted set.

    Each member is the JSON form of one entry, scored by priority_score so the
    mirror can be read back highest first.
    """

    def __init__(self, client, key: str = DEFAULT_SNAPSHOT_KEY):
        self.client = client
        self.key = key

    async def clear_all(self):
        try:
            await self.client.delete(self.key)
        except _CLIENT_ERRORS as exc:
            raise StoreUnavailableError(f"snapshot clear failed: {exc}") from exc

    async def write_all(self, entries: Iterable[Entry]):
        mapping = {
            json.dumps(entry.to_dict(), sort_keys=True, default=str): entry.priority_score
            for entry in entries
        }
        if not mapping:
            return
        try:
            await self.client.zadd(self.key, mapping)
        except _CLIENT_ERRORS as exc:
            raise StoreUnavailableError(f"snapshot write failed: {exc}") from exc

    async def replace_all(self, entries: Iterable[Entry]):
        await self.clear_all()
        await self.write_all(entries)

    async def read_all_descending(self) -> List[Entry]:
        try:
            members = await self.client.zrange(self.key, 0, -1, desc=True)
        except _CLIENT_ERRORS as exc:
            raise StoreUnavailableError(f"snapshot read failed: {exc}") from exc

        entries = []
        for member in members:
            try:
                entries.append(Entry.from_dict(json.loads(member)))
            except ValueError:
                logger.warning("Skipping unreadable snapshot member: %s", member)
        return entries
