"""
Analytics API client.
Every resource is fetched through the tiered cache, so repeated and
concurrent reads of the same query cost one HTTP request.
"""
import copy
import logging
from typing import Optional, List, Dict, Any

import httpx

from pizzaboard.cache import TieredCache, build_key, get_ttl_for_resource
from pizzaboard.cache import ttl_policies as resources

# Configure logging for fetch failures
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("api_client")


class ResourceError(Exception):
    """Raised when an analytics resource cannot be fetched or decoded."""

    def __init__(self, path: str, message: str, status_code: Optional[int] = None):
        self.path = path
        self.status_code = status_code
        super().__init__(f"{path}: {message}")


# Keys the dashboard needs before it can render without waiting
ESSENTIAL_KEYS = (resources.STORES, resources.PRODUCTS, resources.PERFORMANCE)


class KpiClient:
    """
    One async method per analytic resource.

    Usage:
        async with KpiClient(cache, "https://example.com/api/v2") as client:
            stores = await client.get_all_stores()
    """

    def __init__(
        self,
        cache: TieredCache,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        serve_stale: bool = True,
    ):
        """
        Initialize the client.

        Args:
            cache: Cache every resource is read through
            base_url: API root, e.g. "http://localhost:8080/api/v2"
            token: Bearer token attached to every request, if given
            timeout: Per-request HTTP timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
            serve_stale: Answer a failed fetch with an expired stored copy
        """
        self.cache = cache
        self.serve_stale = serve_stale
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "KpiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def fresh_only(self) -> "KpiClient":
        """
        Same client, but failed fetches raise instead of returning an
        expired copy. Shares the cache and the HTTP connection pool; close
        the original, not the view.
        """
        view = copy.copy(self)
        view.serve_stale = False
        return view

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET a JSON resource.

        Raises:
            ResourceError: On transport errors, non-2xx status or invalid JSON
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = await self._http.get(path, params=query)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ResourceError(
                path, f"HTTP {e.response.status_code}", e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise ResourceError(path, f"{type(e).__name__}: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ResourceError(path, f"invalid JSON: {e}") from e

    async def _cached(
        self,
        key: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Read a resource through the cache.

        If the fetch fails and an expired copy is still stored, the expired
        copy is returned instead of the error, unless serve_stale is off.
        """
        try:
            return await self.cache.get(
                key,
                lambda: self._get_json(path, params),
                ttl=get_ttl_for_resource(key),
            )
        except ResourceError as e:
            if not self.serve_stale:
                raise
            stale = self.cache.get_stale(key)
            if stale is None:
                raise
            logger.warning(f"Serving stale {key} after fetch failure: {e}")
            return stale.data

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def get_earliest_order_date(self) -> Optional[str]:
        """Date of the oldest order on record, as an ISO string, or None."""
        data = await self._cached(
            resources.EARLIEST_ORDER_DATE, "/orders/earliest-date"
        )
        if isinstance(data, dict):
            data = data.get("earliestDate")
        return str(data) if data else None

    async def get_dashboard(self) -> Optional[Dict[str, Any]]:
        """Headline KPIs: revenue, orders, avg order, customers, products."""
        return await self._cached(resources.DASHBOARD, "/dashboard/kpis")

    async def get_all_stores(self) -> List[Dict[str, Any]]:
        return await self._cached(resources.STORES, "/stores")

    async def get_all_products(self) -> List[Dict[str, Any]]:
        return await self._cached(resources.PRODUCTS, "/products")

    async def load_performance_data(self) -> Optional[Dict[str, Any]]:
        """Aggregate store performance; the heaviest query the API serves."""
        return await self._cached(resources.PERFORMANCE, "/stores/performance")

    async def get_sales_kpis(self, from_date: str, to_date: str) -> Optional[Dict[str, Any]]:
        return await self._cached(
            build_key(resources.SALES_KPIS, from_=from_date, to=to_date),
            "/sales/kpis",
            {"from": from_date, "to": to_date},
        )

    async def get_best_selling_products(
        self, from_date: str, to_date: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        return await self._cached(
            build_key(resources.BEST_PRODUCTS, from_=from_date, to=to_date, limit=limit),
            "/sales/best-selling-products",
            {"from": from_date, "to": to_date, "limit": limit},
        )

    async def get_stores_by_revenue(self, from_date: str, to_date: str) -> List[Dict[str, Any]]:
        return await self._cached(
            build_key(resources.STORES_BY_REVENUE, from_=from_date, to=to_date),
            "/sales/stores-by-revenue",
            {"from": from_date, "to": to_date},
        )

    async def get_sales_trend_by_day(self, from_date: str, to_date: str) -> List[Dict[str, Any]]:
        return await self._cached(
            build_key(resources.SALES_TREND, from_=from_date, to=to_date),
            "/sales/trend-by-day",
            {"from": from_date, "to": to_date},
        )

    async def get_revenue_by_category(self, from_date: str, to_date: str) -> List[Dict[str, Any]]:
        return await self._cached(
            build_key(resources.REVENUE_BY_CATEGORY, from_=from_date, to=to_date),
            "/sales/revenue-by-category",
            {"from": from_date, "to": to_date},
        )

    async def get_recent_orders(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._cached(
            build_key(resources.RECENT_ORDERS, limit=limit),
            "/orders/recent",
            {"limit": limit},
        )

    async def get_recent_orders_test(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Unoptimized recent-orders query, kept as a fallback endpoint."""
        return await self._cached(
            build_key(resources.RECENT_ORDERS_TEST, limit=limit),
            "/orders/recent-test",
            {"limit": limit},
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def debug_cache_status(self) -> Dict[str, bool]:
        """Whether each essential key currently holds usable data."""
        status = {}
        for key in ESSENTIAL_KEYS:
            data = self.cache.get_sync(key)
            if key == resources.PERFORMANCE:
                status[key] = data is not None
            else:
                status[key] = bool(data)
        logger.debug(f"Essential cache status: {status}")
        return status

    def is_all_data_cached(self) -> bool:
        """True once stores and products are non-empty and performance is present."""
        return all(self.debug_cache_status().values())

