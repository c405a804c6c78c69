"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same data, only one
upstream call is made and all requesters share the result.
"""
import asyncio
import time
import logging
from typing import Dict, Optional, Callable, Any, Awaitable
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    task: Optional["asyncio.Future[Any]"] = None
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


def _consume_exception(task: "asyncio.Future[Any]") -> None:
    # Every waiter may have been cancelled; read the error so asyncio does not warn.
    if not task.cancelled():
        task.exception()


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key starts a shared task
    - Subsequent requests for the same key await that task
    - The registry entry is dropped inside the task, before any waiter resumes
    - Errors reach every waiter unchanged; nobody retries

    Runs on a single event loop, so the registry needs no lock.

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.run(
            "stores",
            lambda: client.fetch_stores(),
        )
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}

    async def run(
        self,
        cache_key: str,
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            compute_fn: Coroutine factory called if we need to fetch

        Returns:
            The computed value (shared among all concurrent callers)

        Raises:
            Exception: Any error from compute_fn is propagated to every caller
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            logger.debug(f"Initiating fetch for {cache_key}")
            in_flight = InFlightRequest()
            in_flight.task = asyncio.ensure_future(
                self._execute(cache_key, in_flight, compute_fn)
            )
            in_flight.task.add_done_callback(_consume_exception)
            self._in_flight[cache_key] = in_flight

        # shield: a cancelled waiter must not cancel the work others share
        return await asyncio.shield(in_flight.task)

    async def _execute(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await compute_fn()
        except Exception as e:
            logger.warning(f"Fetch failed for {cache_key}: {e}")
            raise
        finally:
            # forget() or clear() may already have replaced this entry
            if self._in_flight.get(cache_key) is in_flight:
                del self._in_flight[cache_key]

    def is_in_flight(self, cache_key: str) -> bool:
        return cache_key in self._in_flight

    def forget(self, cache_key: str) -> bool:
        """
        Drop the bookkeeping for a key without cancelling the running task.

        Callers already attached still receive its result; the next caller
        starts a fresh computation.
        """
        return self._in_flight.pop(cache_key, None) is not None

    def clear(self) -> None:
        self._in_flight.clear()

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
