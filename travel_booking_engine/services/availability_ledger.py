"""
Availability ledger: short-lived holds and durable allocations per resource.

The hold table is the only shared mutable state of the engine. All writes go
through ``try_hold``, ``confirm_hold``, ``release`` and ``sweep_expired``.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Set
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import get_settings
from ..database import is_lock_contention
from ..models.base import utcnow
from ..models.reservation_hold import HoldStatus, ReservationHold, ResourceGuard
from ..utils.date_range import DateRange
from ..utils.exceptions import (
    ConcurrencyError,
    HoldExpiredError,
    HoldNotFoundError,
    NotAvailableError,
)
from ..utils.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)


def _overlaps(resource_id: str, date_range: DateRange):
    return and_(
        ReservationHold.resource_id == resource_id,
        ReservationHold.check_in < date_range.check_out,
        ReservationHold.check_out > date_range.check_in,
    )


def _active(now: datetime):
    return or_(
        ReservationHold.status == HoldStatus.ALLOCATED,
        and_(
            ReservationHold.status == HoldStatus.HELD,
            ReservationHold.expires_at > now,
        ),
    )


def _insert_guard(dialect_name: str, resource_id: str):
    """Create the guard row of a resource unless it exists already."""
    insert = postgresql_insert if dialect_name == "postgresql" else sqlite_insert
    return (
        insert(ResourceGuard)
        .values(resource_id=resource_id, version=1)
        .on_conflict_do_nothing(index_elements=[ResourceGuard.resource_id])
    )


class AvailabilityLedger:
    """Mutual exclusion over overlapping stays of the same resource."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        retry_config: Optional[RetryConfig] = None
    ):
        self.session_factory = session_factory
        self.clock = clock
        settings = get_settings()
        self.retry_config = retry_config or RetryConfig(
            max_attempts=settings.hold_retry_attempts,
            base_delay=0.02,
            max_delay=0.5,
        )

    async def try_hold(
        self,
        resource_id: str,
        date_range: DateRange,
        booking_id: UUID,
        ttl: timedelta
    ) -> ReservationHold:
        """
        Atomically check for overlapping active entries and create a hold.

        Holds of ``booking_id`` itself are ignored so a booking can move its
        own stay. Concurrent holds on one resource wait for each other inside
        their transaction; only a lock timeout or deadlock is retried.

        Raises:
            NotAvailableError: Another booking holds or owns an overlapping stay
            ConcurrencyError: The resource stayed locked past the retry budget
        """
        return await retry_async(
            self._attempt_hold,
            self.retry_config,
            resource_id,
            date_range,
            booking_id,
            ttl,
            retryable_exceptions=(ConcurrencyError,),
        )

    async def _attempt_hold(
        self,
        resource_id: str,
        date_range: DateRange,
        booking_id: UUID,
        ttl: timedelta
    ) -> ReservationHold:
        now = self.clock()

        async with self.session_factory() as session:
            try:
                # Lock the resource before reading its holds. Writers of the
                # same resource queue here, so a hold committed by one of them
                # is always visible to the overlap check of the next.
                await session.execute(_insert_guard(session.bind.dialect.name, resource_id))
                await session.execute(
                    select(ResourceGuard.version)
                    .where(ResourceGuard.resource_id == resource_id)
                    .with_for_update()
                )

                conflict = await session.scalar(
                    select(ReservationHold.id)
                    .where(
                        _overlaps(resource_id, date_range),
                        _active(now),
                        ReservationHold.booking_id != booking_id,
                    )
                    .limit(1)
                )
                if conflict is not None:
                    raise NotAvailableError(
                        resource_id,
                        date_range.check_in.isoformat(),
                        date_range.check_out.isoformat(),
                    )

                await session.execute(
                    update(ResourceGuard)
                    .where(ResourceGuard.resource_id == resource_id)
                    .values(version=ResourceGuard.version + 1)
                )

                hold = ReservationHold(
                    id=uuid4(),
                    resource_id=resource_id,
                    check_in=date_range.check_in,
                    check_out=date_range.check_out,
                    booking_id=booking_id,
                    status=HoldStatus.HELD,
                    expires_at=now + ttl,
                )
                session.add(hold)
                await session.commit()

            except DBAPIError as e:
                if is_lock_contention(e):
                    raise ConcurrencyError(f"Resource {resource_id} is locked by another writer") from e
                raise

        logger.info(
            "Hold %s created for resource %s (%s), booking %s",
            hold.id, resource_id, date_range, booking_id
        )
        return hold

    async def confirm_hold(self, hold_id: UUID) -> ReservationHold:
        """
        Convert a live hold into a durable allocation.

        Raises:
            HoldNotFoundError: Unknown or released hold
            HoldExpiredError: The hold lapsed before confirmation
        """
        now = self.clock()

        async with self.session_factory() as session:
            result = await session.execute(
                update(ReservationHold)
                .where(
                    ReservationHold.id == hold_id,
                    ReservationHold.status == HoldStatus.HELD,
                    ReservationHold.expires_at > now,
                )
                .values(status=HoldStatus.ALLOCATED, expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            hold = await session.get(ReservationHold, hold_id, populate_existing=True)

            if result.rowcount == 1:
                logger.info("Hold %s allocated", hold_id)
                return hold

            if hold is None or hold.status == HoldStatus.RELEASED:
                raise HoldNotFoundError(str(hold_id))

            if hold.status == HoldStatus.ALLOCATED:
                return hold

            if hold.status == HoldStatus.HELD:
                hold.status = HoldStatus.EXPIRED
                await session.commit()

            logger.warning("Hold %s lapsed before confirmation", hold_id)
            raise HoldExpiredError(str(hold_id), str(hold.booking_id))

    async def release(self, hold_id: Optional[UUID]) -> None:
        """Release a hold or allocation; unknown, released or expired holds are a no-op."""
        if hold_id is None:
            return

        async with self.session_factory() as session:
            result = await session.execute(
                update(ReservationHold)
                .where(
                    ReservationHold.id == hold_id,
                    ReservationHold.status.in_((HoldStatus.HELD, HoldStatus.ALLOCATED)),
                )
                .values(status=HoldStatus.RELEASED, expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.info("Hold %s released", hold_id)

    async def get_hold(self, hold_id: UUID) -> ReservationHold:
        async with self.session_factory() as session:
            hold = await session.get(ReservationHold, hold_id)
        if hold is None:
            raise HoldNotFoundError(str(hold_id))
        return hold

    async def is_available(
        self,
        resource_id: str,
        date_range: DateRange,
        exclude_booking_id: Optional[UUID] = None
    ) -> bool:
        """Read-only overlap check; ``try_hold`` remains the authority."""
        now = self.clock()
        query = select(func.count(ReservationHold.id)).where(
            _overlaps(resource_id, date_range),
            _active(now),
        )
        if exclude_booking_id is not None:
            query = query.where(ReservationHold.booking_id != exclude_booking_id)

        async with self.session_factory() as session:
            count = await session.scalar(query)
        return not count

    async def unavailable_resources(self, resource_ids: Iterable[str], date_range: DateRange) -> Set[str]:
        """Subset of ``resource_ids`` with an active entry overlapping ``date_range``."""
        ids = set(resource_ids)
        if not ids:
            return set()

        now = self.clock()
        query = (
            select(ReservationHold.resource_id)
            .where(
                ReservationHold.resource_id.in_(ids),
                ReservationHold.check_in < date_range.check_out,
                ReservationHold.check_out > date_range.check_in,
                _active(now),
            )
            .distinct()
        )
        async with self.session_factory() as session:
            rows = await session.scalars(query)
            return set(rows)

    async def sweep_expired(self, limit: int = 100) -> int:
        """Mark lapsed holds as expired. Returns the number of holds swept."""
        now = self.clock()

        async with self.session_factory() as session:
            hold_ids = list(await session.scalars(
                select(ReservationHold.id)
                .where(
                    ReservationHold.status == HoldStatus.HELD,
                    ReservationHold.expires_at <= now,
                )
                .limit(limit)
            ))
            if not hold_ids:
                return 0

            result = await session.execute(
                update(ReservationHold)
                .where(
                    ReservationHold.id.in_(hold_ids),
                    ReservationHold.status == HoldStatus.HELD,
                    ReservationHold.expires_at <= now,
                )
                .values(status=HoldStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.info("Expired %d lapsed holds", result.rowcount)
        return result.rowcount
