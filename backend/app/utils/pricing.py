"""Price aggregation and validation over web search results.

Search results for a material query rarely carry one clean price: pages list
bundles, shipping fees and related products. This module pulls at most one
price from each result, drops outliers with the IQR rule, discards noisy sets
by coefficient of variation, and picks the lower of mean and median.

lookup_material_prices() applies that pipeline to a batch of materials under
per-call and total deadlines. It never raises: any failure leaves the model's
own estimate in place.
"""

from __future__ import annotations

import asyncio
import re
import statistics
import urllib.parse
from collections import Counter
from collections.abc import MutableMapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Literal

import httpx
import structlog

from app.config import settings
from app.utils.search import BRAVE_WEB_SEARCH_URL, brave_headers

log = structlog.get_logger("pricing")

_PRICE_RE = re.compile(r"\$\s*([\d,]+\.?\d{0,2})")
MIN_PRICE = 0.5
MAX_PRICE = 10_000.0

MAX_CV = 0.8
MAX_ESTIMATE_RATIO = 3.0
MIN_ESTIMATE_RATIO = 0.33

LOOKUP_LIMIT = 8
LOOKUP_CONCURRENCY = 4
PER_CALL_TIMEOUT = 3.0
TOTAL_TIMEOUT = 10.0
ABORT_FAILURE_RATIO = 0.6

_STORE_HOSTS: tuple[tuple[str, str], ...] = (
    ("homedepot", "Home Depot"),
    ("lowes", "Lowe's"),
    ("amazon", "Amazon"),
    ("walmart", "Walmart"),
    ("ace", "Ace Hardware"),
    ("menards", "Menards"),
)

Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class PriceQuote:
    store: str
    price: float


@dataclass(frozen=True)
class PriceAggregate:
    best: float
    mean: float
    median: float
    low: float
    high: float
    prices: tuple[float, ...]
    store: str | None = None


@dataclass(frozen=True)
class PriceValidation:
    price: float | None
    confidence: Confidence
    warning: str | None = None


def store_from_url(url: str) -> str:
    """Map a result URL to a known retailer name, or "Unknown"."""
    if not url:
        return "Unknown"
    host = urllib.parse.urlparse(url).netloc.lower()
    for needle, name in _STORE_HOSTS:
        if needle in host:
            return name
    return "Unknown"


def parse_price(text: str) -> float | None:
    """First plausible dollar amount in text ($0.50 < p < $10,000), or None."""
    match = _PRICE_RE.search(text or "")
    if not match:
        return None
    try:
        price = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    if MIN_PRICE < price < MAX_PRICE:
        return price
    return None


def extract_best_price(result: dict[str, Any]) -> PriceQuote | None:
    """Take the single most likely product price from one search result.

    Checks title, then description, then extra snippets. Only the first
    price of the first field that has one counts, so bundle or shipping
    amounts further down a page do not pollute the sample.
    """
    fields: list[str] = [str(result.get("title") or ""), str(result.get("description") or "")]
    fields.extend(str(s) for s in result.get("extra_snippets") or [])

    for text in fields:
        if _PRICE_RE.search(text) is None:
            continue
        price = parse_price(text)
        if price is not None:
            return PriceQuote(store=store_from_url(str(result.get("url") or "")), price=price)
    return None


def collect_price_quotes(results: Sequence[dict[str, Any]]) -> list[PriceQuote]:
    quotes = []
    for result in results:
        quote = extract_best_price(result)
        if quote is not None:
            quotes.append(quote)
    return quotes


def most_common_store(quotes: Sequence[PriceQuote]) -> str | None:
    """Retailer quoted most often, ignoring unrecognized hosts. Ties go to the first seen."""
    counts = Counter(q.store for q in quotes if q.store != "Unknown")
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def filter_price_outliers(prices: Sequence[float]) -> list[float]:
    """Drop prices outside [Q1 - 1.5*IQR, Q3 + 1.5*IQR].

    Fewer than four prices is too small a sample to judge, so it is returned
    unfiltered. Quartiles are interpolated (inclusive method).
    """
    if len(prices) < 4:
        return sorted(prices)
    q1, _, q3 = statistics.quantiles(prices, n=4, method="inclusive")
    iqr = q3 - q1
    lower = q1 - 1.5 * iqr
    upper = q3 + 1.5 * iqr
    return sorted(p for p in prices if lower <= p <= upper)


def aggregate_prices(prices: Sequence[float]) -> PriceAggregate | None:
    """Reduce raw prices to one conservative estimate, or None if unreliable."""
    filtered = filter_price_outliers(prices)
    if not filtered:
        return None

    mean = statistics.fmean(filtered)
    if len(filtered) >= 3 and mean > 0:
        cv = statistics.pstdev(filtered) / mean
        if cv > MAX_CV:
            log.debug("price_aggregate_too_noisy", cv=round(cv, 3), count=len(filtered))
            return None

    median = statistics.median(filtered)
    best = min(mean, median) if len(filtered) >= 3 else median
    return PriceAggregate(
        best=best,
        mean=mean,
        median=median,
        low=filtered[0],
        high=filtered[-1],
        prices=tuple(filtered),
    )


def is_plausible(looked_up: float, estimate: float) -> bool:
    """Reject lookups far from the model's own estimate (likely a different product)."""
    if estimate <= 0:
        return True
    return MIN_ESTIMATE_RATIO * estimate <= looked_up <= MAX_ESTIMATE_RATIO * estimate


def validate_prices(
    direct_price: float | None,
    reference_price: float | None,
    *,
    low: float | None = None,
    high: float | None = None,
) -> PriceValidation:
    """Reconcile a direct price with a reference figure into a confidence tier.

    Within 15% of the reference is high confidence, within 50% medium,
    anything further off low.
    """
    if not direct_price and not reference_price:
        return PriceValidation(price=None, confidence="low")
    if not direct_price:
        return PriceValidation(
            price=reference_price,
            confidence="medium",
            warning="Price estimated from similar products",
        )
    if not reference_price:
        return PriceValidation(price=direct_price, confidence="medium")

    diff = abs(direct_price - reference_price) / reference_price
    range_text = ""
    if low is not None and high is not None:
        range_text = f" Range: ${low:.2f} - ${high:.2f}"

    if diff < 0.15:
        return PriceValidation(price=direct_price, confidence="high")
    if diff < 0.5:
        return PriceValidation(
            price=direct_price,
            confidence="medium",
            warning=f"Price varies.{range_text}".rstrip(),
        )
    return PriceValidation(
        price=direct_price,
        confidence="low",
        warning=f"Price may be incorrect.{range_text}".rstrip(),
    )


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    found = parse_price(f"${value}") if value else None
    return found or 0.0


async def _lookup_one(
    http_client: httpx.AsyncClient,
    api_key: str,
    material: MutableMapping[str, Any],
    timeout: float,
) -> PriceAggregate | None:
    name = str(material.get("name") or "").strip()
    if not name:
        return None
    quantity = str(material.get("quantity") or "").strip()
    query = f"{name} {quantity} price" if quantity else f"{name} price"

    try:
        resp = await asyncio.wait_for(
            http_client.get(
                BRAVE_WEB_SEARCH_URL,
                params={"q": query, "count": 10, "extra_snippets": "true"},
                headers=brave_headers(api_key),
            ),
            timeout=timeout,
        )
    except (TimeoutError, httpx.HTTPError) as exc:
        log.debug("price_lookup_failed", query=query[:80], error_type=type(exc).__name__)
        return None

    if resp.status_code != 200:
        log.debug("price_lookup_http_error", query=query[:80], status=resp.status_code)
        return None

    results = (resp.json().get("web") or {}).get("results") or []
    quotes = collect_price_quotes(results)
    if not quotes:
        return None
    agg = aggregate_prices([quote.price for quote in quotes])
    if agg is None:
        return None
    return replace(agg, store=most_common_store(quotes))


async def lookup_material_prices(
    materials: Sequence[MutableMapping[str, Any]],
    *,
    api_key: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    limit: int = LOOKUP_LIMIT,
    concurrency: int = LOOKUP_CONCURRENCY,
    per_call_timeout: float = PER_CALL_TIMEOUT,
    total_timeout: float = TOTAL_TIMEOUT,
) -> int:
    """Replace materials' estimated_price with looked-up prices where trustworthy.

    Each material is a mutable mapping with name, quantity and
    estimated_price. Returns how many were updated. A missing Brave key
    returns 0 before any request is made.
    """
    key = settings.brave_search_api_key if api_key is None else api_key
    if not key:
        return 0

    loop = asyncio.get_running_loop()
    deadline = loop.time() + total_timeout
    batch = list(materials[:limit])
    updated = 0
    failures = 0

    owns_client = http_client is None
    client = http_client if http_client is not None else httpx.AsyncClient()
    try:
        for start in range(0, len(batch), concurrency):
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.info("price_lookup_deadline_reached", processed=start, updated=updated)
                break
            # Most calls failing usually means we are being rate limited
            if start > 0 and failures > start * ABORT_FAILURE_RATIO:
                log.warning("price_lookup_aborted", processed=start, failures=failures)
                break

            chunk = batch[start : start + concurrency]
            timeout = min(per_call_timeout, remaining)
            results = await asyncio.gather(
                *(_lookup_one(client, key, material, timeout) for material in chunk),
                return_exceptions=True,
            )

            for material, result in zip(chunk, results, strict=True):
                if isinstance(result, BaseException):
                    log.debug("price_lookup_error", name=material.get("name"), error=str(result))
                    failures += 1
                    continue
                if result is None:
                    failures += 1
                    continue

                estimate = _to_float(material.get("estimated_price"))
                if not is_plausible(result.best, estimate):
                    log.debug(
                        "price_lookup_rejected",
                        name=material.get("name"),
                        looked_up=round(result.best, 2),
                        estimate=estimate,
                    )
                    continue

                material["estimated_price"] = round(result.best, 2)
                if result.store:
                    material["best_store"] = result.store
                updated += 1
    finally:
        if owns_client:
            await client.aclose()

    log.info("price_lookup_completed", requested=len(batch), updated=updated, failures=failures)
    return updated
