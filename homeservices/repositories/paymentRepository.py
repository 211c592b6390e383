from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from beanie import PydanticObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from homeservices.commonUtils.enumUtils import PaymentStatus, PaymentType
from homeservices.commonUtils.exceptions import DuplicateKey
from homeservices.commonUtils.timeUtils import utcnow
from homeservices.models.paymentModel import Payment
from homeservices.repositories.mongoUtils import to_mongo, encode_value
from homeservices.schemas.paymentSchema import PaymentRecord


class PaymentRepository(Protocol):
    async def insert(self, payment: PaymentRecord) -> PaymentRecord: ...

    async def get_by_code(self, payment_code: str) -> Optional[PaymentRecord]: ...

    async def get_by_external_reference(self, reference: str) -> Optional[PaymentRecord]: ...

    async def update_fields(self, payment_code: str, fields: Dict[str, Any]) -> Optional[PaymentRecord]: ...

    async def transition(self, payment_code: str, from_statuses: Iterable[PaymentStatus],
                         to_status: PaymentStatus, fields: Optional[Dict[str, Any]] = None
                         ) -> Optional[PaymentRecord]: ...

    async def find_page(self, user_id: PydanticObjectId, payment_type: Optional[PaymentType],
                        status: Optional[PaymentStatus], skip: int, limit: int
                        ) -> Tuple[List[PaymentRecord], int]: ...


class MongoPaymentRepository:
    """Payments collection. Status changes are conditional on the current status."""

    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else Payment.get_motor_collection()

    async def insert(self, payment: PaymentRecord) -> PaymentRecord:
        document = to_mongo(payment)
        if document.get("external_reference") is None:
            # sparse unique index: absent, not null
            document.pop("external_reference", None)
        try:
            result = await self.collection.insert_one(document)
        except DuplicateKeyError as e:
            key_pattern = (e.details or {}).get("keyPattern", {})
            raise DuplicateKey("Payment reference already exists", detail={"keys": list(key_pattern)}) from e
        return payment.model_copy(update={"id": result.inserted_id})

    async def get_by_code(self, payment_code: str) -> Optional[PaymentRecord]:
        raw = await self.collection.find_one({"payment_code": payment_code})
        return PaymentRecord.model_validate(raw) if raw else None

    async def get_by_external_reference(self, reference: str) -> Optional[PaymentRecord]:
        raw = await self.collection.find_one({"external_reference": reference})
        return PaymentRecord.model_validate(raw) if raw else None

    async def update_fields(self, payment_code: str, fields: Dict[str, Any]) -> Optional[PaymentRecord]:
        raw = await self.collection.find_one_and_update(
            {"payment_code": payment_code},
            {"$set": encode_value({**fields, "updated_at": utcnow()})},
            return_document=ReturnDocument.AFTER,
        )
        return PaymentRecord.model_validate(raw) if raw else None

    async def transition(self, payment_code: str, from_statuses: Iterable[PaymentStatus],
                         to_status: PaymentStatus, fields: Optional[Dict[str, Any]] = None
                         ) -> Optional[PaymentRecord]:
        """Returns the updated entry, or None when the entry was not in ``from_statuses``."""
        updates = {**(fields or {}), "status": to_status, "updated_at": utcnow()}
        raw = await self.collection.find_one_and_update(
            {"payment_code": payment_code, "status": {"$in": [s.value for s in from_statuses]}},
            {"$set": encode_value(updates)},
            return_document=ReturnDocument.AFTER,
        )
        return PaymentRecord.model_validate(raw) if raw else None

    async def find_page(self, user_id: PydanticObjectId, payment_type: Optional[PaymentType],
                        status: Optional[PaymentStatus], skip: int, limit: int
                        ) -> Tuple[List[PaymentRecord], int]:
        query = {"user_id": user_id}
        if payment_type:
            query["type"] = payment_type.value
        if status:
            query["status"] = status.value
        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        items = [PaymentRecord.model_validate(raw) async for raw in cursor]
        total = await self.collection.count_documents(query)
        return items, total
