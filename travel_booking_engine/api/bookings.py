"""
FastAPI routes for the booking lifecycle.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, status

from ..config import get_settings
from ..models.booking import BookingStatus
from ..schemas.booking import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingListResponse,
    BookingModifyRequest,
    BookingResponse,
    CancelBookingResponse,
    CancellationTermsResponse,
    CreateBookingResponse,
    ModificationTermsResponse,
    ModifyBookingResponse,
)
from ..services.booking_service import BookingChanges, BookingRequest, BookingService
from ..utils.dependencies import get_booking_service, get_current_user_id

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])
settings = get_settings()


@router.post("", response_model=CreateBookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreateRequest,
    user_id: str = Depends(get_current_user_id),
    booking_service: BookingService = Depends(get_booking_service)
):
    """
    Book a resource for a date range.

    The resource is held for the payment window; the booking stays `pending`
    until the payment gateway reports the outcome through the webhook.
    Overlapping requests for the same resource fail with `NOT_AVAILABLE`.
    """
    created = await booking_service.create_booking(
        BookingRequest(
            resource_id=request.resource_id,
            user_id=user_id,
            check_in=request.check_in,
            check_out=request.check_out,
            guest_count=request.guest_count,
            total_amount=request.total_amount,
            currency=request.currency,
        )
    )

    return CreateBookingResponse(
        booking=BookingResponse.model_validate(created.booking),
        client_secret=created.payment_intent.client_secret,
        expires_in_minutes=settings.hold_ttl_minutes,
    )


@router.patch("/{booking_id}", response_model=ModifyBookingResponse)
async def modify_booking(
    booking_id: UUID,
    request: BookingModifyRequest,
    user_id: str = Depends(get_current_user_id),
    booking_service: BookingService = Depends(get_booking_service)
):
    """
    Change the dates or guest count of a confirmed booking.

    Rejections caused by the modification policy carry the computed terms.
    """
    result = await booking_service.modify(
        booking_id,
        BookingChanges(
            check_in=request.check_in,
            check_out=request.check_out,
            guest_count=request.guest_count,
        ),
        actor=user_id,
        user_id=user_id,
    )

    return ModifyBookingResponse(
        booking=BookingResponse.model_validate(result.booking),
        terms=ModificationTermsResponse.from_terms(result.terms),
    )


@router.delete("/{booking_id}", response_model=CancelBookingResponse)
async def cancel_booking(
    booking_id: UUID,
    request: Optional[BookingCancelRequest] = Body(None),
    user_id: str = Depends(get_current_user_id),
    booking_service: BookingService = Depends(get_booking_service)
):
    """
    Cancel a booking.

    The refund follows the resource's cancellation policy. Cancelling an
    already cancelled booking is rejected and the response still carries the
    refund terms.
    """
    result = await booking_service.cancel(
        booking_id,
        reason=request.reason if request else None,
        actor=user_id,
        user_id=user_id,
    )

    return CancelBookingResponse(
        booking=BookingResponse.model_validate(result.booking),
        terms=CancellationTermsResponse.from_terms(result.terms),
        refund_id=result.refund.refund_id if result.refund else None,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    user_id: str = Depends(get_current_user_id),
    booking_service: BookingService = Depends(get_booking_service)
):
    """Current status of one of the caller's bookings."""
    booking = await booking_service.get_booking(booking_id, user_id=user_id)
    return BookingResponse.model_validate(booking)


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[List[BookingStatus]] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    booking_service: BookingService = Depends(get_booking_service)
):
    """The caller's bookings, newest first."""
    bookings = await booking_service.list_user_bookings(
        user_id,
        statuses=status_filter,
        limit=limit,
        offset=offset,
    )

    return BookingListResponse(
        bookings=[BookingResponse.model_validate(booking) for booking in bookings],
        total=len(bookings),
        limit=limit,
        offset=offset,
    )
