from typing import Optional

import pymongo
from beanie import Document, PydanticObjectId
from pydantic import Field, ConfigDict

from homeservices.schemas.bookingSchema import BookingRecord


class Booking(Document, BookingRecord):
    """
    Booking document. The field layout comes from BookingRecord; this class only
    registers the collection and its indexes with Beanie.
    """
    id: Optional[PydanticObjectId] = Field(None, alias="_id")

    class Settings:
        name = "bookings"
        indexes = [
            pymongo.IndexModel([("booking_code", pymongo.ASCENDING)], unique=True),
            [("status", 1)],
            [("provider_id", 1), ("status", 1)],
            [("client_id", 1), ("created_at", -1)],
            [("provider_id", 1), ("created_at", -1)],
            [("scheduled_at", 1)],
            [("confirmation.auto_confirm_at", 1)],  # For the auto-confirm sweep
            [("dispute.disputed_at", -1)],
        ]

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )
