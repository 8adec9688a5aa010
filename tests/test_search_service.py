import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from travel_booking_engine.cache import RedisCache
from travel_booking_engine.config import Settings
from travel_booking_engine.schemas.search import (
    Accommodation,
    AccommodationSearchRequest,
    PartnerConfig,
    SearchFilters,
    SortBy,
)
from travel_booking_engine.services.search_service import (
    HttpPartnerSource,
    SearchService,
    apply_filters,
    sort_results,
)
from travel_booking_engine.utils.date_range import DateRange
from travel_booking_engine.utils.exceptions import GatewayError

from .conftest import CHECK_IN, CHECK_OUT


class StaticPartner:
    def __init__(self, name, results=None, error=None, delay=0.0):
        self.name = name
        self.results = results or []
        self.error = error
        self.delay = delay

    async def search(self, request):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return [item.model_copy() for item in self.results]


def _stay(**kwargs):
    return Accommodation(**{"price": Decimal("100"), **kwargs})


HOTEL_A = _stay(id="a", name="Harbour Hotel", resource_id="R1", price=Decimal("180"), rating=4.6,
                review_count=900, distance_km=1.2, amenities=["wifi", "pool"])
HOTEL_B = _stay(id="b", name="Old Town Rooms", resource_id="R2", price=Decimal("95"), rating=4.1,
                review_count=1500, distance_km=0.4, amenities=["wifi"])
HOTEL_C = _stay(id="c", name="Airport Inn", resource_id="R3", price=Decimal("70"), rating=3.2,
                review_count=120, distance_km=None, amenities=["parking"])


@pytest.fixture
def search_request():
    return AccommodationSearchRequest(destination="Lisbon", check_in=CHECK_IN, check_out=CHECK_OUT)


@pytest.fixture
def search_settings():
    return Settings(partner_timeout_seconds=0.2)


def _service(partners, ledger=None, settings=None):
    # An uninitialised cache has no client and behaves as disabled
    return SearchService(partners, ledger=ledger, cache=RedisCache(), settings=settings)


async def test_results_are_merged_and_deduplicated(search_request, search_settings):
    service = _service(
        [StaticPartner("alpha", [HOTEL_A, HOTEL_B, HOTEL_A]), StaticPartner("beta", [HOTEL_C])],
        settings=search_settings,
    )

    response = await service.search_accommodations(search_request)

    assert sorted((item.partner, item.id) for item in response.results) == [
        ("alpha", "a"), ("alpha", "b"), ("beta", "c"),
    ]
    assert response.partners_queried == ["alpha", "beta"]
    assert response.partners_failed == []
    assert not response.cached


async def test_failing_and_slow_partners_are_skipped(search_request, search_settings):
    service = _service(
        [
            StaticPartner("alpha", [HOTEL_A]),
            StaticPartner("broken", error=GatewayError("broken", "answered 500")),
            StaticPartner("slow", [HOTEL_B], delay=1.0),
        ],
        settings=search_settings,
    )

    response = await service.search_accommodations(search_request)

    assert [item.id for item in response.results] == ["a"]
    assert sorted(response.partners_failed) == ["broken", "slow"]


async def test_unavailable_resources_are_dropped(ledger, search_request, search_settings):
    await ledger.try_hold("R2", DateRange(CHECK_IN, CHECK_OUT), uuid4(), timedelta(minutes=15))
    service = _service([StaticPartner("alpha", [HOTEL_A, HOTEL_B, HOTEL_C])], ledger=ledger, settings=search_settings)

    response = await service.search_accommodations(search_request)

    assert {item.resource_id for item in response.results} == {"R1", "R3"}


async def test_limit_applies_after_sorting(search_settings):
    request = AccommodationSearchRequest(
        destination="Lisbon", check_in=CHECK_IN, check_out=CHECK_OUT, sort_by=SortBy.PRICE, limit=2
    )
    service = _service([StaticPartner("alpha", [HOTEL_A, HOTEL_B, HOTEL_C])], settings=search_settings)

    response = await service.search_accommodations(request)

    assert [item.id for item in response.results] == ["c", "b"]
    assert response.total == 2


def test_filters():
    items = [HOTEL_A, HOTEL_B, HOTEL_C]

    assert apply_filters(items, SearchFilters(price_max=Decimal("100"))) == [HOTEL_B, HOTEL_C]
    assert apply_filters(items, SearchFilters(price_min=Decimal("90"), min_rating=4.5)) == [HOTEL_A]
    assert apply_filters(items, SearchFilters(amenities=["WiFi"])) == [HOTEL_A, HOTEL_B]


def test_price_range_must_be_ordered():
    with pytest.raises(ValueError):
        SearchFilters(price_min=Decimal("200"), price_max=Decimal("100"))


@pytest.mark.parametrize(
    "sort_by, expected",
    [
        (SortBy.PRICE, ["c", "b", "a"]),
        (SortBy.RATING, ["a", "b", "c"]),
        (SortBy.DISTANCE, ["b", "a", "c"]),
        (SortBy.POPULARITY, ["b", "a", "c"]),
    ],
)
def test_sorting(sort_by, expected):
    assert [item.id for item in sort_results([HOTEL_A, HOTEL_B, HOTEL_C], sort_by)] == expected


async def test_http_partner_parses_results(search_request):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"results": [{
            "id": 42,
            "name": "Riverside",
            "resourceId": "R9",
            "price": {"amount": "120.50", "currency": "EUR"},
            "rating": {"score": 4.4, "reviews": 310},
            "distance": 2.5,
            "amenities": ["wifi"],
            "location": {"address": "Rua Augusta 1"},
        }]})

    client = httpx.AsyncClient(base_url="https://partner.test", transport=httpx.MockTransport(handler))
    partner = HttpPartnerSource("riverside", PartnerConfig(base_url="https://partner.test"), client=client)

    [item] = await partner.search(search_request)

    assert seen["params"]["destination"] == "Lisbon"
    assert seen["params"]["checkIn"] == "2025-06-01"
    assert (item.id, item.partner, item.resource_id) == ("42", "riverside", "R9")
    assert item.price == Decimal("120.50")
    assert item.review_count == 310
    assert item.address == "Rua Augusta 1"
    await partner.close()


async def test_http_partner_errors_become_gateway_errors(search_request):
    client = httpx.AsyncClient(
        base_url="https://partner.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(502)),
    )
    partner = HttpPartnerSource("flaky", PartnerConfig(base_url="https://partner.test"), client=client)

    with pytest.raises(GatewayError):
        await partner.search(search_request)
    await partner.close()


def test_effective_resource_id_falls_back_to_partner_id():
    item = _stay(id="x1", name="No mapping", partner="beta")
    assert item.effective_resource_id == "beta:x1"
