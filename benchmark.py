import asyncio
import random
import statistics
import time
import tracemalloc

import httpx
from httpx import AsyncClient, ASGITransport

from main import app, init_state
from storage.document_store import DocumentStoreSimulator
from storage.redis_simulator import RedisSimulator

TOKENS = {
    "bench-victim": {"id": "bench-victim", "name": "Bench Victim", "role": "victim"},
    "bench-volunteer": {"id": "bench-volunteer", "name": "Bench Volunteer", "role": "volunteer"},
}
VICTIM = {"Authorization": "Bearer bench-victim"}
VOLUNTEER = {"Authorization": "Bearer bench-volunteer"}

AID_TYPES = ["life-saving-medicine", "serious-injury", "regular-medicine", "food-water", "shelter"]
CATEGORIES = ["pregnant", "elderly", "child", "disabled", "adult"]


class PerformanceBenchmark:
    def __init__(self):
        self.latencies = []
        self.successful_requests = 0
        self.failed_requests = 0
        self.rng = random.Random(2024)

    def _relief_request(self, i: int):
        return {
            "name": f"requester_{i}",
            "location": {"district": "Benchmark"},
            "aid_type": self.rng.choice(AID_TYPES),
            "vulnerability_category": self.rng.choice(CATEGORIES),
        }

    async def _timed(self, call, expected_status: int):
        start_time = time.perf_counter()

        try:
            response = await call()
        except httpx.HTTPError:
            self.failed_requests += 1
        else:
            if response.status_code == expected_status:
                self.successful_requests += 1
            else:
                self.failed_requests += 1
        finally:
            self.latencies.append((time.perf_counter() - start_time) * 1000)

    async def submit(self, client: AsyncClient, i: int):
        await self._timed(lambda: client.post("/v1/requests", json=self._relief_request(i), headers=VICTIM), 201)

    async def dispatch(self, client: AsyncClient):
        await self._timed(lambda: client.post("/v1/dequeue", headers=VOLUNTEER), 200)

    def _report_metrics(self, test_name: str, duration: float, num_requests: int):
        throughput = num_requests / duration
        avg_latency = statistics.mean(self.latencies)
        p50 = statistics.median(self.latencies)
        p95 = statistics.quantiles(self.latencies, n=20)[18] if len(self.latencies) >= 20 else max(self.latencies)
        p99 = statistics.quantiles(self.latencies, n=100)[98] if len(self.latencies) >= 100 else max(self.latencies)

        print(f"\n{'=' * 60}")
        print(f"  {test_name}")
        print(f"{'=' * 60}")
        print(f"  Requests:    {num_requests}")
        print(f"  Duration:    {duration:.2f}s")
        print(f"  Throughput:  {throughput:,.0f} req/s")
        print(f"  Succeeded:   {self.successful_requests}")
        print(f"  Failed:      {self.failed_requests}")
        print(f"  Avg Latency: {avg_latency:.2f}ms")
        print(f"  p50 Latency: {p50:.2f}ms")
        print(f"  p95 Latency: {p95:.2f}ms")
        print(f"  p99 Latency: {p99:.2f}ms")
        print(f"{'=' * 60}")

        return {
            "throughput": throughput,
            "avg_latency": avg_latency,
            "p50": p50,
            "p95": p95,
            "p99": p99,
        }

    def _reset(self):
        self.latencies.clear()
        self.successful_requests = 0
        self.failed_requests = 0

    async def run_submit_test(self, client: AsyncClient, num_requests: int = 5000, concurrency: int = 100):
        semaphore = asyncio.Semaphore(concurrency)

        async def bounded_submit(i):
            async with semaphore:
                await self.submit(client, i)

        start_time = time.time()
        await asyncio.gather(*(bounded_submit(i) for i in range(num_requests)))
        duration = time.time() - start_time

        return self._report_metrics(f"Submit Test ({num_requests} requests)", duration, num_requests)

    async def run_dispatch_test(self, client: AsyncClient, num_requests: int = 5000, concurrency: int = 100):
        self._reset()
        semaphore = asyncio.Semaphore(concurrency)

        async def bounded_dispatch():
            async with semaphore:
                await self.dispatch(client)

        start_time = time.time()
        await asyncio.gather(*(bounded_dispatch() for _ in range(num_requests)))
        duration = time.time() - start_time

        return self._report_metrics(f"Dispatch Test ({num_requests} dequeues)", duration, num_requests)

    async def run_mixed_test(self, client: AsyncClient, rounds: int = 1000):
        """Interleave submissions, dispatches and queue views like a busy relief camp."""
        self._reset()

        start_time = time.time()
        tasks = []
        for i in range(rounds):
            tasks.append(self.submit(client, i))
            if i % 2 == 0:
                tasks.append(self.dispatch(client))
            if i % 10 == 0:
                tasks.append(self._timed(lambda: client.get("/v1/queue", headers=VOLUNTEER), 200))
        await asyncio.gather(*tasks)
        duration = time.time() - start_time

        response = await client.get("/health")
        print(f"\n  Queue Size After Mixed Load: {response.json().get('queue_size')}")

        return self._report_metrics(f"Mixed Test ({len(tasks)} calls)", duration, len(tasks))

    async def run_all_benchmarks(self):
        print("\n" + "#" * 60)
        print("  RELIEF DISPATCH QUEUE — PERFORMANCE BENCHMARK")
        print("#" * 60)

        # Memory tracking
        tracemalloc.start()

        results = {}
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            results["submit"] = await self.run_submit_test(client)
            results["dispatch"] = await self.run_dispatch_test(client)
            results["mixed"] = await self.run_mixed_test(client)

        peak_memory = tracemalloc.get_traced_memory()[1]
        tracemalloc.stop()

        print(f"\n{'=' * 60}")
        print(f"  MEMORY")
        print(f"{'=' * 60}")
        print(f"  Peak Memory Usage: {peak_memory / 1024:.1f} KB ({peak_memory / (1024*1024):.2f} MB)")
        print(f"{'=' * 60}")

        # Summary
        print(f"\n{'#' * 60}")
        print(f"  SUMMARY")
        print(f"{'#' * 60}")
        dp = results["dispatch"]
        print(f"  Dispatch Throughput: {dp['throughput']:,.0f} req/s")
        print(f"  Dispatch p95:        {dp['p95']:.2f}ms {'PASS' if dp['p95'] < 50 else 'FAIL'} (target: <50ms)")
        print(f"  Peak Memory:         {peak_memory / 1024:.1f} KB")
        print(f"{'#' * 60}\n")

        return results


async def main():
    init_state(
        store=DocumentStoreSimulator(latency_ms=0),
        snapshot_client=RedisSimulator(latency_ms=1),
        tokens=TOKENS,
    )

    benchmark = PerformanceBenchmark()
    await benchmark.run_all_benchmarks()


if __name__ == "__main__":
    asyncio.run(main())
