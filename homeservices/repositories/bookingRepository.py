import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from beanie import PydanticObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from homeservices.commonUtils.enumUtils import BookingStatus
from homeservices.commonUtils.exceptions import NotFound, ConcurrentModification, DuplicateKey
from homeservices.models.bookingModel import Booking
from homeservices.repositories.mongoUtils import to_mongo
from homeservices.schemas.bookingSchema import BookingRecord

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5


class BookingQuery(BaseModel):
    client_id: Optional[PydanticObjectId] = None
    provider_id: Optional[PydanticObjectId] = None
    status: Optional[BookingStatus] = None
    created_after: Optional[datetime] = None

    def to_filter(self) -> dict:
        query = {}
        if self.client_id:
            query["client_id"] = self.client_id
        if self.provider_id:
            query["provider_id"] = self.provider_id
        if self.status:
            query["status"] = self.status.value
        if self.created_after:
            query["created_at"] = {"$gte": self.created_after}
        return query


class BookingRepository(Protocol):
    async def insert(self, booking: BookingRecord) -> BookingRecord: ...

    async def get(self, booking_id: PydanticObjectId) -> Optional[BookingRecord]: ...

    async def save_if_version(self, booking: BookingRecord, expected_version: int) -> bool: ...

    async def find_due_for_auto_confirm(self, now: datetime, limit: int) -> List[BookingRecord]: ...

    async def find_unsettled(self, limit: int) -> List[BookingRecord]: ...

    async def find_page(self, query: BookingQuery, skip: int, limit: int,
                        newest_dispute_first: bool = False) -> Tuple[List[BookingRecord], int]: ...

    async def count(self, query: BookingQuery) -> int: ...

    async def status_breakdown(self, query: BookingQuery) -> List[dict]: ...


class MongoBookingRepository:
    """Bookings collection accessed through Motor, with version-checked replaces."""

    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else Booking.get_motor_collection()

    async def insert(self, booking: BookingRecord) -> BookingRecord:
        try:
            result = await self.collection.insert_one(to_mongo(booking))
        except DuplicateKeyError as e:
            raise DuplicateKey("Booking code already exists", detail={"booking_code": booking.booking_code}) from e
        return booking.model_copy(update={"id": result.inserted_id})

    async def get(self, booking_id: PydanticObjectId) -> Optional[BookingRecord]:
        raw = await self.collection.find_one({"_id": booking_id})
        return BookingRecord.model_validate(raw) if raw else None

    async def save_if_version(self, booking: BookingRecord, expected_version: int) -> bool:
        result = await self.collection.replace_one(
            {"_id": booking.id, "version": expected_version},
            to_mongo(booking, exclude={"id"}),
        )
        return result.matched_count == 1

    async def find_due_for_auto_confirm(self, now: datetime, limit: int) -> List[BookingRecord]:
        cursor = self.collection.find({
            "status": BookingStatus.COMPLETED.value,
            "confirmation.client_confirmed": False,
            "dispute.is_disputed": False,
            "confirmation.auto_confirm_at": {"$lte": now},
        }).sort("confirmation.auto_confirm_at", ASCENDING).limit(limit)
        return [BookingRecord.model_validate(raw) async for raw in cursor]

    async def find_unsettled(self, limit: int) -> List[BookingRecord]:
        """Bookings whose transition landed but whose money movement did not."""
        cursor = self.collection.find({"$or": [
            {"execution.completed_at": {"$ne": None}, "ledger.earnings_pending": {"$ne": True}},
            {
                "status": BookingStatus.COMPLETED.value,
                "ledger.earnings_released": {"$ne": True},
                "$or": [{"confirmation.client_confirmed": True}, {"dispute.resolution": {"$ne": None}}],
            },
            {
                "status": BookingStatus.CANCELLED.value,
                "cancellation.refund_amount": {"$gt": 0},
                "payment.refund_payment_code": None,
            },
        ]}).sort("updated_at", ASCENDING).limit(limit)
        return [BookingRecord.model_validate(raw) async for raw in cursor]

    async def find_page(self, query: BookingQuery, skip: int, limit: int,
                        newest_dispute_first: bool = False) -> Tuple[List[BookingRecord], int]:
        mongo_filter = query.to_filter()
        sort_key = "dispute.disputed_at" if newest_dispute_first else "created_at"
        cursor = self.collection.find(mongo_filter).sort(sort_key, DESCENDING).skip(skip).limit(limit)
        items = [BookingRecord.model_validate(raw) async for raw in cursor]
        total = await self.collection.count_documents(mongo_filter)
        return items, total

    async def count(self, query: BookingQuery) -> int:
        return await self.collection.count_documents(query.to_filter())

    async def status_breakdown(self, query: BookingQuery) -> List[dict]:
        pipeline = [
            {"$match": query.to_filter()},
            {"$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "total_amount": {"$sum": "$pricing.total_amount"},
            }},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=None)
        return [{"status": row["_id"], "count": row["count"], "total_amount": row["total_amount"]} for row in rows]


async def apply_with_retry(
        repo: BookingRepository,
        booking_id: PydanticObjectId,
        mutate: Callable[[BookingRecord], BookingRecord],
        attempts: int = MAX_UPDATE_ATTEMPTS,
) -> Tuple[BookingRecord, BookingRecord]:
    """
    Read-modify-write one booking under optimistic versioning.

    ``mutate`` is re-run against a fresh read after every lost race, so its
    validation always sees the latest state. Returns (before, after).
    """
    for attempt in range(1, attempts + 1):
        current = await repo.get(booking_id)
        if current is None:
            raise NotFound("Booking not found")

        updated = mutate(current).model_copy(update={"version": current.version + 1})
        if await repo.save_if_version(updated, current.version):
            return current, updated

        logger.info(f"Booking {booking_id} changed concurrently (attempt {attempt}/{attempts}), retrying")

    raise ConcurrentModification(f"Booking {booking_id} is being modified concurrently, please retry")
