"""
Accommodation search across partner sources.

Partners are queried concurrently with a per-partner timeout. A partner that
fails or times out is dropped from the response instead of failing the whole
search. Results the availability ledger reports as taken are filtered out.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import httpx

from ..cache import CacheKeyBuilder, RedisCache, get_cache
from ..config import Settings, get_settings
from ..schemas.search import (
    Accommodation,
    AccommodationSearchRequest,
    PartnerConfig,
    SearchFilters,
    SearchResponse,
    SortBy,
)
from ..utils.date_range import DateRange
from ..utils.exceptions import GatewayError
from .availability_ledger import AvailabilityLedger

logger = logging.getLogger(__name__)


class PartnerSource(Protocol):
    name: str

    async def search(self, request: AccommodationSearchRequest) -> List[Accommodation]:
        ...


class HttpPartnerSource:
    """Partner inventory API reached over HTTP."""

    def __init__(
        self,
        name: str,
        config: PartnerConfig,
        timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.name = name
        self.config = config
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def search(self, request: AccommodationSearchRequest) -> List[Accommodation]:
        params = {
            "destination": request.destination,
            "checkIn": request.check_in.date().isoformat(),
            "checkOut": request.check_out.date().isoformat(),
            "adults": request.guests.adults,
            "children": request.guests.children,
            "rooms": request.guests.rooms,
        }
        try:
            response = await self._client.get(self.config.search_path, params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GatewayError(self.name, f"Partner search failed: {e}") from e

        body = response.json()
        items = body.get("results", []) if isinstance(body, dict) else body
        return [self._to_accommodation(item) for item in items]

    def _to_accommodation(self, item: Dict[str, Any]) -> Accommodation:
        price = item.get("price")
        currency = "EUR"
        if isinstance(price, dict):
            currency = price.get("currency", currency)
            price = price.get("amount")

        rating = item.get("rating") or {}
        if not isinstance(rating, dict):
            rating = {"score": rating}

        return Accommodation(
            id=str(item["id"]),
            partner=self.name,
            name=item.get("name", ""),
            resource_id=item.get("resourceId"),
            price=_to_decimal(price),
            currency=currency,
            rating=float(rating.get("score") or 0),
            review_count=int(rating.get("reviews") or 0),
            distance_km=item.get("distance"),
            amenities=list(item.get("amenities") or []),
            address=(item.get("location") or {}).get("address"),
        )


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        return Decimal("0")


def apply_filters(results: Iterable[Accommodation], filters: SearchFilters) -> List[Accommodation]:
    wanted = {amenity.lower() for amenity in filters.amenities}
    kept = []
    for item in results:
        if filters.price_min is not None and item.price < filters.price_min:
            continue
        if filters.price_max is not None and item.price > filters.price_max:
            continue
        if filters.min_rating is not None and item.rating < filters.min_rating:
            continue
        if wanted and not wanted.issubset({amenity.lower() for amenity in item.amenities}):
            continue
        kept.append(item)
    return kept


def sort_results(results: List[Accommodation], sort_by: SortBy) -> List[Accommodation]:
    if sort_by == SortBy.PRICE:
        return sorted(results, key=lambda a: a.price)
    if sort_by == SortBy.RATING:
        return sorted(results, key=lambda a: a.rating, reverse=True)
    if sort_by == SortBy.DISTANCE:
        # Results without a distance go last
        return sorted(results, key=lambda a: (a.distance_km is None, a.distance_km or 0.0))
    return sorted(results, key=lambda a: a.review_count, reverse=True)


class SearchService:
    """Merges partner results and filters out unavailable resources."""

    def __init__(
        self,
        partners: List[PartnerSource],
        ledger: Optional[AvailabilityLedger] = None,
        cache: Optional[RedisCache] = None,
        settings: Optional[Settings] = None
    ):
        settings = settings or get_settings()
        self.partners = partners
        self.ledger = ledger
        self.cache = cache if cache is not None else get_cache()
        self.partner_timeout = settings.partner_timeout_seconds
        self.cache_ttl = settings.search_cache_ttl_seconds

    async def search_accommodations(self, request: AccommodationSearchRequest) -> SearchResponse:
        cache_key = CacheKeyBuilder.search_results(
            CacheKeyBuilder.query_hash(request.model_dump(mode="json"))
        )
        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Search cache hit for %s", cache_key)
            response = SearchResponse.model_validate(cached)
            response.cached = True
            return response

        logger.info(
            "Searching %d partners for %s (%s -> %s)",
            len(self.partners), request.destination,
            request.check_in.date(), request.check_out.date()
        )

        outcomes = await asyncio.gather(
            *(self._query_partner(partner, request) for partner in self.partners)
        )

        merged: Dict[Tuple[str, str], Accommodation] = {}
        failed = []
        for partner, results in zip(self.partners, outcomes):
            if results is None:
                failed.append(partner.name)
                continue
            for item in results:
                item.partner = item.partner or partner.name
                merged.setdefault((item.partner, item.id), item)

        results = apply_filters(merged.values(), request.filters)
        results = await self._drop_unavailable(results, request)
        results = sort_results(results, request.sort_by)[:request.limit]

        response = SearchResponse(
            results=results,
            total=len(results),
            partners_queried=[partner.name for partner in self.partners],
            partners_failed=failed,
        )

        # Partial answers are not cached so a recovered partner shows up at once
        if not failed:
            await self.cache.set(cache_key, response.model_dump(mode="json"), ttl=self.cache_ttl)
        return response

    async def _query_partner(
        self,
        partner: PartnerSource,
        request: AccommodationSearchRequest
    ) -> Optional[List[Accommodation]]:
        try:
            return await asyncio.wait_for(partner.search(request), timeout=self.partner_timeout)
        except asyncio.TimeoutError:
            logger.warning("Partner %s timed out after %.1fs", partner.name, self.partner_timeout)
        except (GatewayError, ValueError, KeyError) as e:
            logger.warning("Partner %s search failed: %s", partner.name, e)
        return None

    async def _drop_unavailable(
        self,
        results: List[Accommodation],
        request: AccommodationSearchRequest
    ) -> List[Accommodation]:
        if self.ledger is None or not results:
            return results

        date_range = DateRange.from_datetimes(request.check_in, request.check_out)
        taken = await self.ledger.unavailable_resources(
            [item.effective_resource_id for item in results], date_range
        )
        return [item for item in results if item.effective_resource_id not in taken]
