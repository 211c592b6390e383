from typing import Optional

import pymongo
from beanie import Document, PydanticObjectId
from pydantic import Field, ConfigDict

from homeservices.schemas.paymentSchema import PaymentRecord


class Payment(Document, PaymentRecord):
    """Ledger entry document (activation fees, booking payments, withdrawals, refunds)."""
    id: Optional[PydanticObjectId] = Field(None, alias="_id")

    class Settings:
        name = "payments"
        indexes = [
            pymongo.IndexModel([("payment_code", pymongo.ASCENDING)], unique=True),
            # Webhook lookups; unique so a replayed reference can never create a second entry
            pymongo.IndexModel([("external_reference", pymongo.ASCENDING)], unique=True, sparse=True),
            [("user_id", 1), ("created_at", -1)],
            [("booking_id", 1)],
            [("type", 1), ("status", 1)],
            [("method", 1)],
            [("created_at", -1)],
        ]

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )
