"""
Cache keys and per-resource TTL overrides.
"""
from typing import Dict, Optional, Any


# Resource names used as the first segment of every cache key
EARLIEST_ORDER_DATE = "earliestOrderDate"
DASHBOARD = "dashboard"
STORES = "stores"
PRODUCTS = "products"
PERFORMANCE = "performance"
SALES_KPIS = "salesKpis"
BEST_PRODUCTS = "bestProducts"
STORES_BY_REVENUE = "storesByRevenue"
SALES_TREND = "salesTrend"
REVENUE_BY_CATEGORY = "revenueByCategory"
RECENT_ORDERS = "recentOrders"
RECENT_ORDERS_TEST = "recentOrdersTest"


# TTL overrides by resource (in seconds). Resources not listed use the
# cache's default TTL.
TTL_CONFIG: Dict[str, int] = {
    EARLIEST_ORDER_DATE: 3600,    # 1 hour, only moves when history is reloaded
    STORES: 1800,                 # 30 minutes, store list rarely changes
    PRODUCTS: 1800,               # 30 minutes, catalogue rarely changes
    RECENT_ORDERS: 60,            # 1 minute, new orders arrive constantly
    RECENT_ORDERS_TEST: 60,
}


def build_key(resource: str, **params: Any) -> str:
    """
    Generate the logical cache key for a resource and its parameters.

    Parameters are sorted by name and None values are dropped, so the same
    query always maps to the same key and queries that differ in any
    parameter never collide.

    Examples:
        build_key("stores") -> "stores"
        build_key("salesKpis", to="2024-12-31", from_="2020-01-01")
            -> "salesKpis:from=2020-01-01:to=2024-12-31"
    """
    # from_ is how callers spell the reserved word "from"
    named = {name.rstrip("_"): value for name, value in params.items()}
    parts = [resource]
    for name, value in sorted(named.items()):
        if value is None:
            continue
        parts.append(f"{name}={value}")
    return ":".join(parts)


def resource_of(key: str) -> str:
    """The resource segment of a logical cache key."""
    return key.split(":", 1)[0]


def get_ttl_for_resource(resource: str) -> Optional[int]:
    """
    TTL override for a resource, or None to use the cache default.

    Accepts either a bare resource name or a full cache key.
    """
    return TTL_CONFIG.get(resource_of(resource))
