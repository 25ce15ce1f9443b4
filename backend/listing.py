import math
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from pymongo.errors import ExecutionTimeout

from .errors import NotFoundError, QueryTimeoutError
from .filters import (
    SENSITIVE_USER_FIELDS,
    build_customer_filter,
    build_order_pipeline,
    filter_orders_by_search,
)
from .query_params import NormalizedQuery, PageRequest

DEFAULT_QUERY_TIMEOUT_MS = 2000

CUSTOMER_PROJECTION = {name: 0 for name in SENSITIVE_USER_FIELDS}
CUSTOMER_SUMMARY_PROJECTION = {"name": 1, "email": 1, "phone": 1}

_query_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="listing-query")


@dataclass
class PageResult:
    items: List[Dict]
    total_count: int
    current_page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size)

    def to_payload(
        self,
        items_key: str,
        total_key: str,
        serializer: Optional[Callable[[Dict], Dict]] = None,
    ) -> Dict[str, object]:
        items = [serializer(item) for item in self.items] if serializer else self.items
        return {
            items_key: items,
            "pagination": {
                total_key: self.total_count,
                "totalPages": self.total_pages,
                "currentPage": self.current_page,
                "pageSize": self.page_size,
            },
        }


def run_listing(
    fetch_page: Callable[[], List[Dict]],
    count: Callable[[], int],
    page: PageRequest,
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
) -> PageResult:
    """Run the page fetch and the total count concurrently under one deadline.

    A query still running at the deadline is abandoned; the caller gets a
    :class:`QueryTimeoutError` and nothing is retried.
    """
    page_future = _query_executor.submit(fetch_page)
    count_future = _query_executor.submit(count)

    done, not_done = wait(
        [page_future, count_future],
        timeout=timeout_ms / 1000,
        return_when=FIRST_EXCEPTION,
    )
    for future in done:
        error = future.exception()
        if error is None:
            continue
        for pending in not_done:
            pending.cancel()
        if isinstance(error, ExecutionTimeout):
            raise QueryTimeoutError() from error
        raise error
    if not_done:
        for pending in not_done:
            pending.cancel()
        raise QueryTimeoutError()

    return PageResult(
        items=page_future.result(),
        total_count=count_future.result(),
        current_page=page.page,
        page_size=page.page_size,
    )


def _reference_id(value):
    if isinstance(value, dict):
        return value.get("_id")
    return value


def fetch_by_ids(collection, ids: Iterable, timeout_ms: int, projection=None) -> Dict:
    unique_ids = list({identifier for identifier in ids if identifier is not None})
    if not unique_ids:
        return {}
    cursor = collection.find({"_id": {"$in": unique_ids}}, projection).max_time_ms(
        timeout_ms
    )
    return {document["_id"]: document for document in cursor}


def populate_orders(db, orders: List[Dict], timeout_ms: int, customers=None) -> List[Dict]:
    """Replace product and customer references on ``orders`` with documents.

    ``customers`` maps ids to already-loaded user documents; anything missing
    from it is fetched with the sensitive fields left out.
    """
    product_ids = [
        _reference_id(product)
        for order in orders
        for product in order.get("products") or []
    ]
    products = fetch_by_ids(db.products, product_ids, timeout_ms)

    known_customers = dict(customers or {})
    missing_customers = [
        _reference_id(order.get("customer"))
        for order in orders
        if _reference_id(order.get("customer")) not in known_customers
    ]
    known_customers.update(
        fetch_by_ids(db.users, missing_customers, timeout_ms, CUSTOMER_SUMMARY_PROJECTION)
    )

    for order in orders:
        order["products"] = [
            products[_reference_id(product)]
            for product in order.get("products") or []
            if _reference_id(product) in products
        ]
        customer_id = _reference_id(order.get("customer"))
        if customer_id in known_customers:
            order["customer"] = known_customers[customer_id]
    return orders


def populate_customers(db, customers: List[Dict], timeout_ms: int) -> List[Dict]:
    order_ids = []
    for customer in customers:
        order_ids.extend(customer.get("orders") or [])
        if customer.get("lastOrder") is not None:
            order_ids.append(customer["lastOrder"])
    orders = fetch_by_ids(db.orders, order_ids, timeout_ms)

    last_orders = [
        orders[customer["lastOrder"]]
        for customer in customers
        if customer.get("lastOrder") in orders
    ]
    summaries = {
        customer["_id"]: {
            key: customer.get(key) for key in ("_id", "name", "email", "phone")
        }
        for customer in customers
        if customer.get("_id") is not None
    }
    populate_orders(db, last_orders, timeout_ms, customers=summaries)

    for customer in customers:
        customer["orders"] = [
            orders[order_id]
            for order_id in customer.get("orders") or []
            if order_id in orders
        ]
        customer["lastOrder"] = orders.get(customer.get("lastOrder"))
    return customers


def list_customers(
    db,
    query: NormalizedQuery,
    *,
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
    search_timeout_ms: int = 0,
) -> PageResult:
    filters = build_customer_filter(query, search_timeout_ms)
    sort = [(query.sort.field, query.sort.direction), ("_id", query.sort.direction)]

    def fetch_page() -> List[Dict]:
        cursor = (
            db.users.find(filters, CUSTOMER_PROJECTION)
            .sort(sort)
            .skip(query.page.skip)
            .limit(query.page.page_size)
            .max_time_ms(timeout_ms)
        )
        return list(cursor)

    def count() -> int:
        return db.users.count_documents(filters, maxTimeMS=timeout_ms)

    result = run_listing(fetch_page, count, query.page, timeout_ms)
    try:
        populate_customers(db, result.items, timeout_ms)
    except ExecutionTimeout as exc:
        raise QueryTimeoutError() from exc
    return result


def list_orders(
    db,
    query: NormalizedQuery,
    *,
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
    search_timeout_ms: int = 0,
) -> PageResult:
    pipeline = build_order_pipeline(query, search_timeout_ms)

    def fetch_page() -> List[Dict]:
        stages = pipeline.page_stages(query.sort, query.page)
        return list(db.orders.aggregate(stages, maxTimeMS=timeout_ms))

    def count() -> int:
        rows = list(db.orders.aggregate(pipeline.count_stages(), maxTimeMS=timeout_ms))
        return rows[0]["total"] if rows else 0

    return run_listing(fetch_page, count, query.page, timeout_ms)


def list_user_orders(
    db,
    user_id,
    query: NormalizedQuery,
    *,
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
    search_timeout_ms: int = 0,
) -> PageResult:
    try:
        user = db.users.find_one(
            {"_id": user_id},
            {**CUSTOMER_SUMMARY_PROJECTION, "orders": 1},
            max_time_ms=timeout_ms,
        )
        if not user:
            raise NotFoundError("User not found.")

        orders = list(
            db.orders.find({"_id": {"$in": user.get("orders") or []}})
            .sort([("createdAt", -1), ("_id", -1)])
            .max_time_ms(timeout_ms)
        )
        summary = {"_id": user_id, **{key: user.get(key) for key in ("name", "email", "phone")}}
        populate_orders(db, orders, timeout_ms, customers={user_id: summary})
    except ExecutionTimeout as exc:
        raise QueryTimeoutError() from exc

    if query.search:
        orders = filter_orders_by_search(orders, query.search, search_timeout_ms)

    page = query.page
    return PageResult(
        items=orders[page.skip : page.skip + page.page_size],
        total_count=len(orders),
        current_page=page.page,
        page_size=page.page_size,
    )
