from datetime import datetime
from typing import Optional

from beanie import Document
from pydantic import BaseModel, Field
from fastapi_users_db_beanie import BeanieBaseUser, BeanieUserDatabase

from homeservices.commonUtils.enumUtils import UserRole, Language
from homeservices.commonUtils.timeUtils import utcnow
from homeservices.schemas.walletSchema import ProviderInfo


class UserLocation(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    governorate: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class User(BeanieBaseUser, Document):
    name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    role: UserRole = UserRole.CLIENT
    language: Language = Language.ARABIC
    location: Optional[UserLocation] = None

    # Provider-specific fields, wallet included. The wallet is written only by
    # the ledger (see crud/walletLedger.py), never by route handlers.
    provider_info: Optional[ProviderInfo] = None

    created_at: datetime = Field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    class Settings:
        name = "users"
        email_collation = BeanieBaseUser.Settings.email_collation  # Case-insensitive email lookups
        indexes = [
            *BeanieBaseUser.Settings.indexes,
            [("role", 1)],
            [("provider_info.is_activated", 1)],
        ]

    class Config:
        json_schema_extra = {
            "example": {
                "email": "provider@example.com",
                "name": "Ahmed Hassan",
                "phone": "+201001234567",
                "role": "provider",
                "language": "ar",
            }
        }


async def get_user_db():
    yield BeanieUserDatabase(User)
