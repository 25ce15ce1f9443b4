import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

from .query_params import MAX_INT64, NormalizedQuery, PageRequest, RangeFilter, SortSpec
from .safe_regex import SafeRegex, compile_safe_regex

CUSTOMER_SEARCH_FIELDS = ("name", "email", "phone")
SENSITIVE_USER_FIELDS = ("password", "tokens", "roles")
SEARCH_NUMBER_PATTERN = re.compile(r"[-+]?[0-9]+(?:\.[0-9]+)?")


def build_range_filter(ranges: Mapping[str, RangeFilter]) -> Dict[str, Dict]:
    filters: Dict[str, Dict] = {}
    for field_name, bounds in ranges.items():
        condition: Dict = {}
        if bounds.lower is not None:
            condition["$gte"] = bounds.lower
        if bounds.upper is not None:
            condition["$lte"] = bounds.upper
        if condition:
            filters[field_name] = condition
    return filters


def parse_search_number(search: str) -> Optional[Union[int, float]]:
    """Read a plain decimal search term as a number.

    Terms like ``1_000``, ``inf`` or non-ASCII digits are text, and integers
    outside the int64 range cannot be sent to MongoDB, so all of them give
    ``None``.
    """
    if not SEARCH_NUMBER_PATTERN.fullmatch(search):
        return None
    if "." in search:
        number = float(search)
        if not number.is_integer():
            return number
        integer = int(number)
    else:
        integer = int(search)
    if not -MAX_INT64 - 1 <= integer <= MAX_INT64:
        return None
    return integer


def compile_search(search: str, timeout_ms: int = 0) -> SafeRegex:
    return compile_safe_regex(search, timeout_ms=timeout_ms)


def build_customer_filter(query: NormalizedQuery, timeout_ms: int = 0) -> Dict:
    filters: Dict = build_range_filter(query.ranges)
    if query.search:
        pattern = compile_search(query.search, timeout_ms)
        filters["$or"] = [
            {field_name: pattern.regex} for field_name in CUSTOMER_SEARCH_FIELDS
        ]
    return filters


def build_order_search_clause(search: str, timeout_ms: int = 0) -> Dict:
    pattern = compile_search(search, timeout_ms)
    conditions: List[Dict] = [{"products.title": pattern.regex}]
    search_number = parse_search_number(search)
    if search_number is not None:
        conditions.append({"orderNumber": search_number})
    return {"$or": conditions}


@dataclass
class OrderPipeline:
    """Aggregation stages shared by the order page and its total count.

    Product and customer lookups run before the search ``$match`` so a term
    can hit a product title, and both queries append to the same ``stages``
    so the count always reflects the filter that produced the page.
    """

    stages: List[Dict]

    def page_stages(self, sort: SortSpec, page: PageRequest) -> List[Dict]:
        return self.stages + [
            {"$sort": {sort.field: sort.direction, "_id": sort.direction}},
            {"$skip": page.skip},
            {"$limit": page.page_size},
        ]

    def count_stages(self) -> List[Dict]:
        return self.stages + [{"$count": "total"}]


def build_order_pipeline(query: NormalizedQuery, timeout_ms: int = 0) -> OrderPipeline:
    match: Dict = build_range_filter(query.ranges)
    if query.status:
        match["status"] = query.status

    stages: List[Dict] = [
        {"$match": match},
        {
            "$lookup": {
                "from": "products",
                "localField": "products",
                "foreignField": "_id",
                "as": "products",
            }
        },
        {
            "$lookup": {
                "from": "users",
                "localField": "customer",
                "foreignField": "_id",
                "as": "customer",
            }
        },
        {"$unwind": "$customer"},
        {"$project": {f"customer.{name}": 0 for name in SENSITIVE_USER_FIELDS}},
    ]
    if query.search:
        stages.append({"$match": build_order_search_clause(query.search, timeout_ms)})
    return OrderPipeline(stages)


def order_matches_search(
    order: Mapping, pattern: SafeRegex, search_number: Optional[Union[int, float]]
) -> bool:
    if search_number is not None and order.get("orderNumber") == search_number:
        return True
    for product in order.get("products") or []:
        if isinstance(product, Mapping) and pattern.test(str(product.get("title") or "")):
            return True
    return False


def filter_orders_by_search(orders: List[Dict], search: str, timeout_ms: int = 0) -> List[Dict]:
    """Filter already-populated orders in memory.

    Only meant for one customer's own orders, which stay small; larger
    collections should be filtered by the store through ``build_order_pipeline``.
    """
    pattern = compile_search(search, timeout_ms)
    search_number = parse_search_number(search)
    return [
        order for order in orders if order_matches_search(order, pattern, search_number)
    ]
