import asyncio
from typing import Dict, Mapping


class RedisSimulator:
    """In-process stand-in for the sorted-set subset of redis.asyncio.Redis.

    Setting `available = False` makes every command raise ConnectionError,
    which is how tests exercise an unreachable mirror.
    """

    def __init__(self, latency_ms: int = 50):
        self.latency_sec = latency_ms / 1000.0
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._lock = asyncio.Lock()
        self.available = True

    async def _simulate_latency(self):
        await asyncio.sleep(self.latency_sec)
        if not self.available:
            raise ConnectionError("redis simulator is unavailable")

    async def zadd(self, key: str, mapping: Mapping[str, float]):
        async with self._lock:
            await self._simulate_latency()
            zset = self._zsets.setdefault(key, {})
            added = sum(1 for member in mapping if member not in zset)
            zset.update({member: float(score) for member, score in mapping.items()})
            return added

    async def zrange(self, key: str, start: int, end: int, desc: bool = False, withscores: bool = False):
        async with self._lock:
            await self._simulate_latency()
            items = sorted(self._zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]), reverse=desc)
            stop = end + 1 if end >= 0 else len(items) + end + 1
            selected = items[start:stop]
            if withscores:
                return selected
            return [member for member, _ in selected]

    async def zcard(self, key: str):
        async with self._lock:
            await self._simulate_latency()
            return len(self._zsets.get(key, {}))

    async def delete(self, key: str):
        async with self._lock:
            await self._simulate_latency()
            return 1 if self._zsets.pop(key, None) is not None else 0
