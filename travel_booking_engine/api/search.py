"""
Accommodation search and availability routes.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..schemas.search import AccommodationSearchRequest, AvailabilityResponse, SearchResponse
from ..services.availability_ledger import AvailabilityLedger
from ..services.search_service import SearchService
from ..utils.date_range import DateRange
from ..utils.dependencies import get_ledger, get_search_service
from ..utils.exceptions import ValidationError

router = APIRouter(tags=["search"])


@router.post("/search/accommodations", response_model=SearchResponse)
async def search_accommodations(
    request: AccommodationSearchRequest,
    search_service: SearchService = Depends(get_search_service)
):
    """
    Search partner inventories for a destination and stay.

    Results from all partners are merged, filtered, checked against the
    availability ledger and sorted. Partners that fail are listed in
    `partners_failed` instead of failing the search.
    """
    return await search_service.search_accommodations(request)


@router.get("/availability", response_model=AvailabilityResponse)
async def check_availability(
    resource_id: str = Query(..., min_length=1),
    check_in: datetime = Query(...),
    check_out: datetime = Query(...),
    ledger: AvailabilityLedger = Depends(get_ledger)
):
    """Read-only availability check; a booking request may still lose the race."""
    try:
        date_range = DateRange.from_datetimes(check_in, check_out)
    except ValueError as e:
        raise ValidationError(str(e), field_errors={"check_out": [str(e)]})

    available = await ledger.is_available(resource_id, date_range)
    return AvailabilityResponse(
        resource_id=resource_id,
        check_in=date_range.check_in,
        check_out=date_range.check_out,
        available=available,
    )
