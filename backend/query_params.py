import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, NamedTuple, Optional, Tuple

from pymongo import ASCENDING, DESCENDING

from .errors import (
    InvalidParameterError,
    InvalidSortFieldError,
    InvalidSortOrderError,
    InvalidStatusError,
    SearchTooLongError,
)

MAX_PAGE_SIZE = 10
DEFAULT_PAGE_SIZE = 10
ORDER_DEFAULT_PAGE_SIZE = 5
MAX_SEARCH_LENGTH = 50

# Largest integer MongoDB stores (BSON int64).
MAX_INT64 = 2**63 - 1

DEFAULT_SORT_FIELD = "createdAt"
DEFAULT_SORT_ORDER = "desc"
SORT_ORDERS = ("asc", "desc")

CUSTOMER_SORT_FIELDS = frozenset(
    ["createdAt", "name", "totalAmount", "orderCount", "lastOrderDate"]
)
ORDER_SORT_FIELDS = frozenset(["createdAt", "totalAmount", "orderNumber", "status"])
ORDER_STATUSES = ("new", "completed", "cancelled")

BRACKETED_KEY_PATTERN = re.compile(r"^([^\[\]]+)\[([^\]]*)\]")


class RangeParam(NamedTuple):
    field: str
    kind: str
    lower_names: Tuple[str, ...]
    upper_names: Tuple[str, ...]


CUSTOMER_RANGE_PARAMS = (
    RangeParam("totalAmount", "number", ("totalAmountFrom",), ("totalAmountTo",)),
    RangeParam("orderCount", "number", ("orderCountFrom",), ("orderCountTo",)),
    RangeParam(
        "createdAt",
        "date",
        ("registrationDateFrom", "createdAtFrom"),
        ("registrationDateTo", "createdAtTo"),
    ),
    RangeParam("lastOrderDate", "date", ("lastOrderDateFrom",), ("lastOrderDateTo",)),
)
ORDER_RANGE_PARAMS = (
    RangeParam("totalAmount", "number", ("totalAmountFrom",), ("totalAmountTo",)),
    RangeParam("createdAt", "date", ("orderDateFrom",), ("orderDateTo",)),
)

SORT_FIELD_NAMES = ("sortField", "sort")
SORT_ORDER_NAMES = ("sortOrder", "order")


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class SortSpec:
    field: str = DEFAULT_SORT_FIELD
    order: str = DEFAULT_SORT_ORDER

    @property
    def direction(self) -> int:
        return DESCENDING if self.order == "desc" else ASCENDING


@dataclass(frozen=True)
class RangeFilter:
    lower: Any = None
    upper: Any = None

    @property
    def is_empty(self) -> bool:
        return self.lower is None and self.upper is None


@dataclass(frozen=True)
class NormalizedQuery:
    page: PageRequest
    sort: Optional[SortSpec] = None
    ranges: Dict[str, RangeFilter] = field(default_factory=dict)
    status: Optional[str] = None
    search: Optional[str] = None


def collect_query_args(args) -> Dict[str, Any]:
    """Flatten a werkzeug ``MultiDict`` into a plain query object.

    Single values stay strings. Repeated keys become lists and bracketed keys
    such as ``status[$ne]=x`` become nested dicts under ``status``, so the
    normalizer sees them as the non-string values they are.
    """
    collected: Dict[str, Any] = {}
    for key in args.keys():
        values = args.getlist(key)
        value = values[0] if len(values) == 1 else list(values)

        bracketed = BRACKETED_KEY_PATTERN.match(key)
        if bracketed:
            base, inner = bracketed.group(1), bracketed.group(2)
            nested = collected.get(base)
            if not isinstance(nested, dict):
                nested = {}
            nested[inner] = value
            collected[base] = nested
        elif not isinstance(collected.get(key), dict):
            collected[key] = value
    return collected


def get_param(args: Mapping[str, Any], names: Tuple[str, ...]) -> Tuple[str, Any]:
    for name in names:
        if name in args:
            return name, args[name]
    return names[0], None


def require_string_params(args: Mapping[str, Any], names) -> None:
    for name in names:
        value = args.get(name)
        if value is not None and not isinstance(value, str):
            raise InvalidParameterError(name)


def parse_number_param(value, fallback: float) -> Optional[float]:
    """Parse ``page``/``limit``; ``None`` means the value had the wrong type."""
    if value is None:
        return fallback
    if not isinstance(value, str):
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return parsed


def normalize_page_request(
    args: Mapping[str, Any],
    default_page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE,
) -> PageRequest:
    raw_page = parse_number_param(args.get("page"), 1)
    if raw_page is None:
        raise InvalidParameterError("page")
    raw_limit = parse_number_param(args.get("limit"), default_page_size)
    if raw_limit is None:
        raise InvalidParameterError("limit")

    # Capped so the skip offset still fits in an int64.
    max_page = MAX_INT64 // max_page_size + 1
    page = min(max_page, max(1, math.floor(raw_page)))
    page_size = min(max_page_size, max(1, math.floor(raw_limit)))
    return PageRequest(page=page, page_size=page_size)


def normalize_sort(
    sort_field: Optional[str], sort_order: Optional[str], allowed_fields
) -> SortSpec:
    normalized_field = sort_field or DEFAULT_SORT_FIELD
    normalized_order = sort_order or DEFAULT_SORT_ORDER

    if normalized_field not in allowed_fields:
        raise InvalidSortFieldError()
    if normalized_order not in SORT_ORDERS:
        raise InvalidSortOrderError()
    return SortSpec(field=normalized_field, order=normalized_order)


def normalize_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if value not in ORDER_STATUSES:
        raise InvalidStatusError()
    return value


def normalize_search(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if len(trimmed) > MAX_SEARCH_LENGTH:
        raise SearchTooLongError()
    return trimmed or None


def parse_number_bound(name: str, value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        raise InvalidParameterError(name) from None
    if not math.isfinite(parsed):
        raise InvalidParameterError(name)
    return parsed


def parse_date_bound(
    name: str, value: Optional[str], *, end_of_day: bool = False
) -> Optional[datetime]:
    if not value:
        return None
    candidate = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        raise InvalidParameterError(name) from None

    # The day is the caller's calendar day; stored timestamps are naive UTC.
    if end_of_day:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999000)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_range(args: Mapping[str, Any], range_param: RangeParam) -> RangeFilter:
    lower_name, lower_value = get_param(args, range_param.lower_names)
    upper_name, upper_value = get_param(args, range_param.upper_names)

    if range_param.kind == "date":
        lower = parse_date_bound(lower_name, lower_value)
        upper = parse_date_bound(upper_name, upper_value, end_of_day=True)
    else:
        lower = parse_number_bound(lower_name, lower_value)
        upper = parse_number_bound(upper_name, upper_value)
    return RangeFilter(lower=lower, upper=upper)


def _range_param_names(range_params) -> Tuple[str, ...]:
    names = []
    for range_param in range_params:
        names.extend(range_param.lower_names)
        names.extend(range_param.upper_names)
    return tuple(names)


def _normalize_listing_query(
    args: Mapping[str, Any],
    *,
    sort_fields,
    range_params,
    default_page_size: int,
    with_status: bool = False,
) -> NormalizedQuery:
    declared = ("page", "limit") + SORT_FIELD_NAMES + SORT_ORDER_NAMES + ("search",)
    if with_status:
        declared += ("status",)
    require_string_params(args, declared + _range_param_names(range_params))

    page = normalize_page_request(args, default_page_size)
    sort = normalize_sort(
        get_param(args, SORT_FIELD_NAMES)[1],
        get_param(args, SORT_ORDER_NAMES)[1],
        sort_fields,
    )
    status = normalize_status(args.get("status")) if with_status else None

    ranges: Dict[str, RangeFilter] = {}
    for range_param in range_params:
        bounds = parse_range(args, range_param)
        if not bounds.is_empty:
            ranges[range_param.field] = bounds

    return NormalizedQuery(
        page=page,
        sort=sort,
        ranges=ranges,
        status=status,
        search=normalize_search(args.get("search")),
    )


def normalize_customer_query(args: Mapping[str, Any]) -> NormalizedQuery:
    return _normalize_listing_query(
        args,
        sort_fields=CUSTOMER_SORT_FIELDS,
        range_params=CUSTOMER_RANGE_PARAMS,
        default_page_size=DEFAULT_PAGE_SIZE,
    )


def normalize_order_query(args: Mapping[str, Any]) -> NormalizedQuery:
    return _normalize_listing_query(
        args,
        sort_fields=ORDER_SORT_FIELDS,
        range_params=ORDER_RANGE_PARAMS,
        default_page_size=ORDER_DEFAULT_PAGE_SIZE,
        with_status=True,
    )


def normalize_user_order_query(args: Mapping[str, Any]) -> NormalizedQuery:
    require_string_params(args, ("page", "limit", "search"))
    return NormalizedQuery(
        page=normalize_page_request(args, DEFAULT_PAGE_SIZE),
        search=normalize_search(args.get("search")),
    )
