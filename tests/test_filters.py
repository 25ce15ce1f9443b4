"""Tests for turning normalized queries into MongoDB filters and pipelines."""

from datetime import datetime

import bson
import pytest
from bson import ObjectId

from backend.filters import (
    build_customer_filter,
    build_order_pipeline,
    build_range_filter,
    filter_orders_by_search,
    parse_search_number,
)
from backend.query_params import (
    PageRequest,
    RangeFilter,
    SortSpec,
    normalize_customer_query,
    normalize_order_query,
)


def test_range_filter_merges_bounds_and_skips_empty_ranges():
    filters = build_range_filter(
        {
            "totalAmount": RangeFilter(lower=100.0, upper=1000.0),
            "orderCount": RangeFilter(upper=10.0),
            "createdAt": RangeFilter(),
        }
    )

    assert filters == {
        "totalAmount": {"$gte": 100.0, "$lte": 1000.0},
        "orderCount": {"$lte": 10.0},
    }


def test_zero_is_a_real_bound():
    assert build_range_filter({"totalAmount": RangeFilter(lower=0.0)}) == {
        "totalAmount": {"$gte": 0.0}
    }


def test_parse_search_number():
    assert parse_search_number("123") == 123
    assert isinstance(parse_search_number("123"), int)
    assert parse_search_number("12.5") == 12.5
    assert parse_search_number("+1") == 1
    assert parse_search_number("lime") is None
    assert parse_search_number("Infinity") is None


@pytest.mark.parametrize("search", ["1_000", "inf", "nan", "1e3", "١٢٣", "12.", ".5", " 12"])
def test_only_plain_decimals_are_numbers(search):
    assert parse_search_number(search) is None


def test_search_number_stays_within_int64():
    assert parse_search_number("9223372036854775807") == 2**63 - 1
    assert parse_search_number("-9223372036854775808") == -(2**63)
    assert parse_search_number("9223372036854775808") is None
    assert parse_search_number("99999999999999999999") is None
    assert parse_search_number("99999999999999999999.0") is None


def test_oversized_numeric_search_only_matches_titles():
    pipeline = build_order_pipeline(normalize_order_query({"search": "99999999999999999999"}))

    conditions = pipeline.stages[-1]["$match"]["$or"]
    assert len(conditions) == 1
    assert "products.title" in conditions[0]
    bson.encode({"pipeline": pipeline.count_stages()})


class TestCustomerFilter:
    def test_no_search_means_no_disjunction(self):
        filters = build_customer_filter(normalize_customer_query({"orderCountFrom": "2"}))
        assert filters == {"orderCount": {"$gte": 2.0}}

    def test_search_spans_name_email_and_phone(self):
        filters = build_customer_filter(normalize_customer_query({"search": "a+b*"}))

        clauses = filters["$or"]
        assert [next(iter(clause)) for clause in clauses] == ["name", "email", "phone"]
        for clause in clauses:
            regex = next(iter(clause.values()))
            assert regex.search("x A+B* y")
            assert not regex.search("aab")

    def test_search_combines_with_ranges(self):
        filters = build_customer_filter(
            normalize_customer_query({"search": "ivy", "totalAmountFrom": "50"})
        )
        assert filters["totalAmount"] == {"$gte": 50.0}
        assert len(filters["$or"]) == 3


class TestOrderPipeline:
    def test_store_fields_are_matched_first(self):
        pipeline = build_order_pipeline(
            normalize_order_query(
                {"status": "completed", "totalAmountFrom": "100", "orderDateTo": "2024-08-01"}
            )
        )

        assert pipeline.stages[0] == {
            "$match": {
                "totalAmount": {"$gte": 100.0},
                "createdAt": {"$lte": datetime(2024, 8, 1, 23, 59, 59, 999000)},
                "status": "completed",
            }
        }
        assert pipeline.stages[1]["$lookup"]["from"] == "products"
        assert pipeline.stages[2]["$lookup"]["from"] == "users"
        assert pipeline.stages[3] == {"$unwind": "$customer"}

    def test_customer_secrets_are_projected_out(self):
        pipeline = build_order_pipeline(normalize_order_query({}))

        projection = pipeline.stages[4]["$project"]
        assert projection["customer.password"] == 0
        assert projection["customer.tokens"] == 0

    def test_numeric_search_also_matches_order_number(self):
        pipeline = build_order_pipeline(normalize_order_query({"search": "123"}))

        conditions = pipeline.stages[-1]["$match"]["$or"]
        assert conditions[0]["products.title"].search("Box 123")
        assert conditions[1] == {"orderNumber": 123}

    def test_text_search_matches_product_titles_only(self):
        pipeline = build_order_pipeline(normalize_order_query({"search": "lime"}))

        conditions = pipeline.stages[-1]["$match"]["$or"]
        assert len(conditions) == 1
        assert conditions[0]["products.title"].search("Key LIME tart")

    def test_search_runs_after_lookups(self):
        pipeline = build_order_pipeline(normalize_order_query({"search": "lime"}))

        lookup_positions = [
            index for index, stage in enumerate(pipeline.stages) if "$lookup" in stage
        ]
        assert max(lookup_positions) < len(pipeline.stages) - 1

    def test_page_and_count_share_the_same_filter_stages(self):
        pipeline = build_order_pipeline(
            normalize_order_query({"search": "123", "status": "new"})
        )
        shared = len(pipeline.stages)

        page_stages = pipeline.page_stages(
            SortSpec(field="totalAmount", order="desc"), PageRequest(page=2, page_size=5)
        )
        count_stages = pipeline.count_stages()

        assert page_stages[:shared] == count_stages[:shared] == pipeline.stages
        assert page_stages[shared:] == [
            {"$sort": {"totalAmount": -1, "_id": -1}},
            {"$skip": 5},
            {"$limit": 5},
        ]
        assert count_stages[shared:] == [{"$count": "total"}]

    def test_ascending_sort(self):
        pipeline = build_order_pipeline(normalize_order_query({}))

        stages = pipeline.page_stages(SortSpec(field="orderNumber", order="asc"), PageRequest())
        assert stages[-3] == {"$sort": {"orderNumber": 1, "_id": 1}}


class TestInMemoryOrderSearch:
    def setup_method(self):
        self.orders = [
            {"_id": ObjectId(), "orderNumber": 123, "products": [{"title": "Glacier Sorbet"}]},
            {"_id": ObjectId(), "orderNumber": 7, "products": [{"title": "Key Lime Tart"}]},
            {"_id": ObjectId(), "orderNumber": 8, "products": [{"title": "Bonbons 123"}]},
            {"_id": ObjectId(), "orderNumber": 9, "products": [ObjectId()]},
        ]

    def test_numeric_term_matches_order_number_without_title_match(self):
        matched = filter_orders_by_search(self.orders, "123")
        assert [order["orderNumber"] for order in matched] == [123, 8]

    def test_title_match_is_case_insensitive(self):
        matched = filter_orders_by_search(self.orders, "lime", timeout_ms=1000)
        assert [order["orderNumber"] for order in matched] == [7]

    def test_metacharacters_are_literal(self):
        assert filter_orders_by_search(self.orders, ".*") == []

    def test_underscored_digits_are_not_an_order_number(self):
        orders = [{"_id": ObjectId(), "orderNumber": 1000, "products": []}]
        assert filter_orders_by_search(orders, "1_000") == []
