"""
Bulk cache warm-up run once after login.

Resources are fetched in small ordered batches with a pause between them so
the API's database connection pool is never flooded. Individual failures are
absorbed into typed defaults; only the earliest-order-date lookup is fatal,
because every date-ranged resource depends on it.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from pizzaboard.api_client import KpiClient
from pizzaboard.cache import (
    TieredCache,
    PersistentStore,
    StorageError,
    build_key,
    get_ttl_for_resource,
)
from pizzaboard.cache import ttl_policies as resources

logger = logging.getLogger("preload")

# Pause between batches (seconds)
BATCH_DELAY_SECONDS = 0.5

# Completeness polling after the last batch
VERIFY_ATTEMPTS = 20
VERIFY_DELAY_SECONDS = 0.3

# Start of the date window when the API reports no orders
FALLBACK_FROM_DATE = "2000-01-01"


class PreloadError(Exception):
    """Raised when the earliest-order-date prerequisite cannot be fetched."""
    pass


class PreloadState(Enum):
    NOT_STARTED = "not_started"
    FETCHING_PREREQUISITE = "fetching_prerequisite"
    RUNNING_BATCHES = "running_batches"
    VERIFYING_COMPLETENESS = "verifying_completeness"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PreloadTask:
    """One resource to warm: its cache key, how to fetch it, what to use if it fails."""
    name: str
    key: str
    fetch: Callable[[], Awaitable[Any]]
    default: Any = None
    fallback: Optional[Callable[[], Awaitable[Any]]] = None


Batch = List[PreloadTask]


@dataclass
class PreloadPlan:
    """Batches run in list order; tasks inside a batch run concurrently."""
    batches: List[Batch] = field(default_factory=list)

    @property
    def keys(self) -> List[str]:
        return [task.key for batch in self.batches for task in batch]


@dataclass
class PreloadResult:
    from_date: str
    to_date: str
    data: Dict[str, Any] = field(default_factory=dict)
    failures: List[str] = field(default_factory=list)
    all_cached: bool = False

    def summary(self) -> Dict[str, Any]:
        """Sizes of list results and presence of object results, for logging."""
        counts: Dict[str, Any] = {}
        for name, value in self.data.items():
            counts[name] = len(value) if isinstance(value, list) else value is not None
        return counts


def build_default_plan(client: KpiClient, from_date: str, to_date: str) -> PreloadPlan:
    """
    The dashboard's first-load plan.

    Batch 1 holds what every page needs, batch 2 the heaviest single query,
    batches 3 and 4 the date-ranged sales views. Fetches never fall back to
    an expired copy, so a failure ends in the task's default instead.
    """
    client = client.fresh_only()
    window = {"from_": from_date, "to": to_date}
    return PreloadPlan(batches=[
        [
            PreloadTask("products", resources.PRODUCTS, client.get_all_products, default=[]),
            PreloadTask("stores", resources.STORES, client.get_all_stores, default=[]),
            PreloadTask("dashboard", resources.DASHBOARD, client.get_dashboard, default=None),
        ],
        [
            PreloadTask("performance", resources.PERFORMANCE, client.load_performance_data, default=None),
        ],
        [
            PreloadTask(
                "salesKpis",
                build_key(resources.SALES_KPIS, **window),
                lambda: client.get_sales_kpis(from_date, to_date),
                default=None,
            ),
            PreloadTask(
                "bestProducts",
                build_key(resources.BEST_PRODUCTS, limit=10, **window),
                lambda: client.get_best_selling_products(from_date, to_date),
                default=[],
            ),
            PreloadTask(
                "storesByRevenue",
                build_key(resources.STORES_BY_REVENUE, **window),
                lambda: client.get_stores_by_revenue(from_date, to_date),
                default=[],
            ),
        ],
        [
            PreloadTask(
                "salesTrend",
                build_key(resources.SALES_TREND, **window),
                lambda: client.get_sales_trend_by_day(from_date, to_date),
                default=[],
            ),
            PreloadTask(
                "revenueByCategory",
                build_key(resources.REVENUE_BY_CATEGORY, **window),
                lambda: client.get_revenue_by_category(from_date, to_date),
                default=[],
            ),
            PreloadTask(
                "recentOrders",
                build_key(resources.RECENT_ORDERS, limit=50),
                client.get_recent_orders,
                default=[],
                fallback=client.get_recent_orders_test,
            ),
        ],
    ])


class PreloadOrchestrator:
    """
    Runs the warm-up plan once and reports progress.

    The state and current batch are readable at any time, so a loading
    screen can poll them alongside is_ready().
    """

    def __init__(
        self,
        client: KpiClient,
        cache: TieredCache,
        store: Optional[PersistentStore] = None,
        batch_delay: float = BATCH_DELAY_SECONDS,
        verify_attempts: int = VERIFY_ATTEMPTS,
        verify_delay: float = VERIFY_DELAY_SECONDS,
        fetch_timeout: Optional[float] = None,
        fallback_from_date: str = FALLBACK_FROM_DATE,
        earliest_date_key: str = "pizzaWorld_earliestOrderDate",
        plan_factory: Callable[[KpiClient, str, str], PreloadPlan] = build_default_plan,
        today: Callable[[], date] = date.today,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            client: Resource client whose calls go through the cache
            cache: Cache the defaults of failed tasks are written to
            store: Durable store the earliest order date is saved in
            batch_delay: Seconds to wait between consecutive batches
            verify_attempts: Readiness checks after the last batch
            verify_delay: Seconds between readiness checks
            fetch_timeout: Per-task timeout in seconds; None waits forever
            fallback_from_date: Window start when the API has no orders
            earliest_date_key: Store key for the earliest order date
            plan_factory: Builds the plan from the client and date window
            today: Returns the end of the date window
            sleep: Awaitable delay, replaceable in tests
        """
        if verify_attempts < 1:
            raise ValueError("verify_attempts must be at least 1")
        self.client = client
        self.cache = cache
        self.store = store
        self.batch_delay = batch_delay
        self.verify_attempts = verify_attempts
        self.verify_delay = verify_delay
        self.fetch_timeout = fetch_timeout
        self.fallback_from_date = fallback_from_date
        self.earliest_date_key = earliest_date_key
        self._plan_factory = plan_factory
        self._today = today
        self._sleep = sleep

        self.state = PreloadState.NOT_STARTED
        self.current_batch: Optional[int] = None
        self.verify_attempt: int = 0
        self.last_result: Optional[PreloadResult] = None
        self.last_error: Optional[str] = None

    def is_ready(self) -> bool:
        """Readiness predicate over the essential cache keys."""
        return self.client.is_all_data_cached()

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "currentBatch": self.current_batch,
            "verifyAttempt": self.verify_attempt,
            "ready": self.is_ready(),
            "essentials": self.client.debug_cache_status(),
            "failures": list(self.last_result.failures) if self.last_result else [],
            "error": self.last_error,
        }

    async def run(self) -> PreloadResult:
        """
        Warm the cache.

        Returns:
            PreloadResult with every task's value (or its default)

        Raises:
            PreloadError: If the earliest order date cannot be fetched
        """
        self.last_error = None
        self.current_batch = None
        self.verify_attempt = 0

        try:
            return await self._run()
        except PreloadError:
            raise
        except asyncio.CancelledError:
            self._fail("Preload cancelled")
            raise
        except Exception as e:
            self._fail(f"Preload aborted: {e}")
            raise

    def _fail(self, message: str) -> None:
        self.state = PreloadState.FAILED
        self.last_error = message
        logger.error(message)

    async def _run(self) -> PreloadResult:
        from_date, to_date = await self._fetch_date_window()
        logger.info(f"Starting data preload in batches, date range: {from_date} to {to_date}")

        plan = self._plan_factory(self.client, from_date, to_date)
        result = PreloadResult(from_date=from_date, to_date=to_date)

        self.state = PreloadState.RUNNING_BATCHES
        for index, batch in enumerate(plan.batches):
            self.current_batch = index + 1
            logger.info(
                f"Batch {self.current_batch}/{len(plan.batches)}: "
                f"{', '.join(task.name for task in batch)}"
            )
            outcomes = await asyncio.gather(*(self._run_task(task) for task in batch))
            for task, (value, failed) in zip(batch, outcomes):
                result.data[task.name] = value
                if failed:
                    result.failures.append(task.name)
            logger.info(f"Batch {self.current_batch} completed")

            if index < len(plan.batches) - 1:
                await self._sleep(self.batch_delay)

        logger.info(f"All batches loaded: {result.summary()}")

        self.state = PreloadState.VERIFYING_COMPLETENESS
        result.all_cached = await self._wait_for_cache()
        if result.all_cached:
            logger.info("All essential data cached")
        else:
            logger.warning("Some essential data is not cached; pages may fetch on demand")

        self.state = PreloadState.DONE
        self.last_result = result
        return result

    async def _fetch_date_window(self):
        self.state = PreloadState.FETCHING_PREREQUISITE
        try:
            earliest = await self.client.get_earliest_order_date()
        except Exception as e:
            self._fail(f"Earliest order date unavailable: {e}")
            raise PreloadError(self.last_error) from e

        from_date = _date_part(earliest) if earliest else self.fallback_from_date
        to_date = self._today().isoformat()

        if self.store is not None:
            try:
                self.store.set(self.earliest_date_key, from_date)
            except StorageError as e:
                logger.warning(f"Failed to persist earliest order date: {e}")
        return from_date, to_date

    async def _run_task(self, task: PreloadTask):
        """Returns (value, failed). Never raises for an ordinary failure."""
        try:
            return await self._fetch(task.fetch), False
        except Exception as e:
            if task.fallback is None:
                logger.error(f"Preload: {task.name} failed: {e}")
            else:
                logger.error(f"Preload: {task.name} failed, trying fallback: {e}")
                try:
                    return await self._fetch(task.fallback), False
                except Exception as fallback_error:
                    logger.error(f"Preload: {task.name} fallback also failed: {fallback_error}")

        self.cache.set(task.key, task.default, ttl=get_ttl_for_resource(task.key))
        return task.default, True

    async def _fetch(self, fetch: Callable[[], Awaitable[Any]]) -> Any:
        if self.fetch_timeout is None:
            return await fetch()
        return await asyncio.wait_for(fetch(), timeout=self.fetch_timeout)

    async def _wait_for_cache(self) -> bool:
        """Poll readiness a bounded number of times; give up quietly."""

        async def check() -> bool:
            self.verify_attempt += 1
            return self.is_ready()

        def log_retry(retry_state) -> None:
            logger.info(
                f"Cache verification attempt {retry_state.attempt_number}/"
                f"{self.verify_attempts} incomplete: {self.client.debug_cache_status()}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.verify_attempts),
            wait=wait_fixed(self.verify_delay),
            retry=retry_if_result(lambda ready: not ready),
            retry_error_callback=lambda retry_state: False,
            before_sleep=log_retry,
            sleep=self._sleep,
        )
        return await retrying(check)


def _date_part(value: str) -> str:
    """'2019-03-01T10:00:00' or '2019-03-01 10:00:00' -> '2019-03-01'."""
    return value.replace("T", " ").split(" ")[0]
