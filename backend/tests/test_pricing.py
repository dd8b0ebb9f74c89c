"""Tests for price extraction, outlier filtering, aggregation and live lookup."""

from __future__ import annotations

import httpx
import pytest

from app.utils.pricing import (
    PriceQuote,
    aggregate_prices,
    collect_price_quotes,
    extract_best_price,
    filter_price_outliers,
    is_plausible,
    lookup_material_prices,
    most_common_store,
    parse_price,
    store_from_url,
    validate_prices,
)


def _results(*prices: float, url: str = "https://www.homedepot.com/p/1") -> list[dict]:
    return [{"title": f"Item ${p:.2f}", "url": url, "description": ""} for p in prices]


def _brave_transport(prices_by_term: dict[str, list[float]], calls: list[str] | None = None):
    """MockTransport answering Brave web searches with priced results per query term."""

    def handler(request: httpx.Request) -> httpx.Response:
        query = request.url.params["q"]
        if calls is not None:
            calls.append(query)
        for term, prices in prices_by_term.items():
            if term in query:
                return httpx.Response(200, json={"web": {"results": _results(*prices)}})
        return httpx.Response(200, json={"web": {"results": []}})

    return httpx.MockTransport(handler)


class TestParsePrice:
    """parse_price() and store_from_url()"""

    def test_parses_with_commas(self):
        assert parse_price("Now only $1,299.00!") == 1299.0

    def test_rejects_too_small(self):
        assert parse_price("$0.25 off") is None

    def test_rejects_too_large(self):
        assert parse_price("$12,000") is None

    def test_no_price(self):
        assert parse_price("call for pricing") is None

    def test_known_store(self):
        assert store_from_url("https://www.lowes.com/pd/123") == "Lowe's"

    def test_unknown_store(self):
        assert store_from_url("https://example.com/x") == "Unknown"


class TestExtractBestPrice:
    """extract_best_price()"""

    def test_title_wins_over_description(self):
        quote = extract_best_price(
            {"title": "GFCI $18.97", "description": "Pack of 10 $159.00", "url": "https://homedepot.com/a"}
        )
        assert quote is not None
        assert quote.price == 18.97
        assert quote.store == "Home Depot"

    def test_falls_back_to_extra_snippets(self):
        quote = extract_best_price(
            {"title": "GFCI outlet", "description": "Great outlet", "extra_snippets": ["Price: $21.48"]}
        )
        assert quote is not None
        assert quote.price == 21.48
        assert quote.store == "Unknown"

    def test_one_price_per_result(self):
        quotes = collect_price_quotes([{"title": "$5.00 and $6.00", "description": "$7.00"}])
        assert [q.price for q in quotes] == [5.0]

    def test_none_when_no_price(self):
        assert extract_best_price({"title": "No prices here"}) is None

    def test_most_common_store(self):
        quotes = [
            PriceQuote(store="Unknown", price=1.0),
            PriceQuote(store="Unknown", price=1.0),
            PriceQuote(store="Lowe's", price=1.0),
            PriceQuote(store="Home Depot", price=1.0),
            PriceQuote(store="Home Depot", price=1.0),
        ]
        assert most_common_store(quotes) == "Home Depot"
        assert most_common_store(quotes[:2]) is None


class TestOutliers:
    """filter_price_outliers() and aggregate_prices()"""

    def test_iqr_drops_extreme_value(self):
        assert filter_price_outliers([10, 11, 12, 500]) == [10, 11, 12]

    def test_small_sample_untouched(self):
        assert filter_price_outliers([10, 500, 3]) == [3, 10, 500]

    def test_aggregate_uses_lower_of_mean_and_median(self):
        agg = aggregate_prices([10.0, 11.0, 15.0])
        assert agg is not None
        assert agg.median == 11.0
        assert agg.best == 11.0
        assert agg.low == 10.0
        assert agg.high == 15.0

    def test_two_prices_uses_median(self):
        agg = aggregate_prices([10.0, 20.0])
        assert agg is not None
        assert agg.best == 15.0

    def test_noisy_set_discarded(self):
        """Coefficient of variation above 0.8 means the results are different products."""
        assert aggregate_prices([1.0, 1.0, 50.0]) is None

    def test_empty(self):
        assert aggregate_prices([]) is None


class TestPlausibilityAndValidation:
    """is_plausible() and validate_prices()"""

    def test_far_below_estimate_rejected(self):
        assert is_plausible(5.0, 50.0) is False

    def test_far_above_estimate_rejected(self):
        assert is_plausible(200.0, 50.0) is False

    def test_close_to_estimate_accepted(self):
        assert is_plausible(4.50, 5.0) is True

    def test_no_estimate_accepts_anything(self):
        assert is_plausible(999.0, 0.0) is True

    def test_high_confidence_within_15_percent(self):
        assert validate_prices(4.5, 5.0).confidence == "high"

    def test_medium_confidence_with_range(self):
        check = validate_prices(7.0, 5.0, low=6.0, high=8.0)
        assert check.confidence == "medium"
        assert check.warning == "Price varies. Range: $6.00 - $8.00"

    def test_low_confidence(self):
        check = validate_prices(10.0, 5.0)
        assert check.confidence == "low"
        assert check.warning == "Price may be incorrect."

    def test_reference_only(self):
        check = validate_prices(None, 5.0)
        assert check.price == 5.0
        assert check.confidence == "medium"

    def test_neither(self):
        assert validate_prices(None, None).confidence == "low"


class TestLookupMaterialPrices:
    """lookup_material_prices()"""

    @pytest.mark.asyncio
    async def test_no_key_is_noop(self):
        """Without a Brave key nothing is requested and nothing changes."""
        calls: list[str] = []
        materials = [{"name": "GFCI outlet", "quantity": "1", "estimated_price": 20.0}]
        async with httpx.AsyncClient(transport=_brave_transport({}, calls)) as http:
            updated = await lookup_material_prices(materials, api_key="", http_client=http)
        assert updated == 0
        assert calls == []
        assert materials[0]["estimated_price"] == 20.0

    @pytest.mark.asyncio
    async def test_applies_plausible_and_rejects_implausible(self):
        materials = [
            {"name": "wire nuts", "quantity": "1", "estimated_price": 5.0},
            {"name": "vanity", "quantity": "1", "estimated_price": 50.0},
        ]
        transport = _brave_transport({"wire nuts": [4.49, 4.50, 4.51], "vanity": [4.99, 5.00, 5.01]})
        async with httpx.AsyncClient(transport=transport) as http:
            updated = await lookup_material_prices(materials, api_key="key", http_client=http)

        assert updated == 1
        assert materials[0]["estimated_price"] == 4.5
        assert materials[0]["best_store"] == "Home Depot"
        assert materials[1]["estimated_price"] == 50.0
        assert "best_store" not in materials[1]

    @pytest.mark.asyncio
    async def test_unknown_hosts_leave_store_unset(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"web": {"results": _results(4.49, 4.50, 4.51, url="https://example.com/p")}}
            )

        materials = [{"name": "wire nuts", "quantity": "1", "estimated_price": 5.0}]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            updated = await lookup_material_prices(materials, api_key="key", http_client=http)
        assert updated == 1
        assert "best_store" not in materials[0]

    @pytest.mark.asyncio
    async def test_query_includes_quantity(self):
        calls: list[str] = []
        materials = [{"name": "drywall", "quantity": "4 sheets", "estimated_price": 15.0}]
        async with httpx.AsyncClient(transport=_brave_transport({}, calls)) as http:
            await lookup_material_prices(materials, api_key="key", http_client=http)
        assert calls == ["drywall 4 sheets price"]

    @pytest.mark.asyncio
    async def test_respects_limit(self):
        calls: list[str] = []
        materials = [{"name": f"item{i}", "estimated_price": 1.0} for i in range(12)]
        transport = _brave_transport({"item": [1.0, 1.0, 1.0]}, calls)
        async with httpx.AsyncClient(transport=transport) as http:
            updated = await lookup_material_prices(materials, api_key="key", http_client=http, limit=8)
        assert len(calls) == 8
        assert updated == 8

    @pytest.mark.asyncio
    async def test_aborts_when_most_calls_fail(self):
        """After a chunk where every call failed, later chunks are skipped."""
        calls: list[str] = []
        materials = [{"name": f"item{i}", "estimated_price": 1.0} for i in range(8)]
        async with httpx.AsyncClient(transport=_brave_transport({}, calls)) as http:
            updated = await lookup_material_prices(
                materials, api_key="key", http_client=http, limit=8, concurrency=2
            )
        assert updated == 0
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_http_errors_never_raise(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={})

        materials = [{"name": "outlet", "estimated_price": 3.0}]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            updated = await lookup_material_prices(materials, api_key="key", http_client=http)
        assert updated == 0
        assert materials[0]["estimated_price"] == 3.0
