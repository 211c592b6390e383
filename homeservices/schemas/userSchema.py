from datetime import datetime
from typing import Optional

from beanie import PydanticObjectId
from fastapi_users import schemas
from pydantic import BaseModel, Field, field_validator

from homeservices.commonUtils.enumUtils import UserRole, Language
from homeservices.models.userModel import UserLocation


class ProviderSignup(BaseModel):
    """What a provider may state about themselves at registration. Activation is earned by paying."""
    business_name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class ProviderInfoRead(BaseModel):
    business_name: Optional[str] = None
    description: Optional[str] = None
    is_activated: bool = False
    activation_fee_paid: bool = False
    activation_date: Optional[datetime] = None


class UserRead(schemas.BaseUser[PydanticObjectId]):
    name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    role: UserRole
    language: Language
    location: Optional[UserLocation] = None
    provider_info: Optional[ProviderInfoRead] = None
    created_at: datetime

    class Config:
        from_attributes = True  # Pydantic v2 style for ORMs


class UserCreate(schemas.BaseUserCreate):
    name: str = Field(..., min_length=2, max_length=50)
    phone: Optional[str] = None
    role: UserRole = UserRole.CLIENT
    language: Language = Language.ARABIC
    location: Optional[UserLocation] = None
    provider_info: Optional[ProviderSignup] = None

    @field_validator("role")
    @classmethod
    def role_is_self_assignable(cls, value: UserRole) -> UserRole:
        if value not in (UserRole.CLIENT, UserRole.PROVIDER):
            raise ValueError("Users can only register as client or provider")
        return value


class UserUpdate(schemas.BaseUserUpdate):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = None
    avatar: Optional[str] = None
    language: Optional[Language] = None
    location: Optional[UserLocation] = None
