from datetime import datetime
from typing import Optional, Protocol

from beanie import PydanticObjectId

from homeservices.commonUtils.enumUtils import UserRole
from homeservices.models.userModel import User
from homeservices.repositories.mongoUtils import to_mongo
from homeservices.schemas.walletSchema import UserProfile, Wallet


class UserRepository(Protocol):
    async def get_profile(self, user_id: PydanticObjectId) -> Optional[UserProfile]: ...

    async def get_wallet(self, user_id: PydanticObjectId) -> Optional[Wallet]: ...

    async def save_wallet_if_version(self, user_id: PydanticObjectId, wallet: Wallet,
                                     expected_version: int) -> bool: ...

    async def mark_activated(self, user_id: PydanticObjectId, payment_code: str, now: datetime) -> bool: ...


class MongoUserRepository:
    """
    Reads the user slice the core needs and writes the embedded provider wallet.
    The wallet is replaced as a whole, guarded by its version.
    """

    def __init__(self, collection=None):
        self._collection = collection

    @property
    def collection(self):
        return self._collection if self._collection is not None else User.get_motor_collection()

    async def get_profile(self, user_id: PydanticObjectId) -> Optional[UserProfile]:
        raw = await self.collection.find_one(
            {"_id": user_id},
            {"email": 1, "name": 1, "role": 1, "language": 1, "is_active": 1, "provider_info": 1},
        )
        if not raw:
            return None
        raw["id"] = raw.pop("_id")
        return UserProfile.model_validate(raw)

    async def get_wallet(self, user_id: PydanticObjectId) -> Optional[Wallet]:
        raw = await self.collection.find_one({"_id": user_id}, {"role": 1, "provider_info.wallet": 1})
        if not raw or raw.get("role") != UserRole.PROVIDER.value:
            return None
        wallet = (raw.get("provider_info") or {}).get("wallet")
        return Wallet.model_validate(wallet) if wallet else Wallet()

    async def save_wallet_if_version(self, user_id: PydanticObjectId, wallet: Wallet,
                                     expected_version: int) -> bool:
        version_filter = expected_version if expected_version else {"$in": [0, None]}  # None matches a missing wallet
        result = await self.collection.update_one(
            {"_id": user_id, "provider_info.wallet.version": version_filter},
            {"$set": {"provider_info.wallet": to_mongo(wallet)}},
        )
        return result.matched_count == 1

    async def mark_activated(self, user_id: PydanticObjectId, payment_code: str, now: datetime) -> bool:
        result = await self.collection.update_one(
            {"_id": user_id, "role": UserRole.PROVIDER.value},
            {"$set": {
                "provider_info.is_activated": True,
                "provider_info.activation_fee_paid": True,
                "provider_info.activation_payment_code": payment_code,
                "provider_info.activation_date": now,
            }},
        )
        return result.matched_count == 1
