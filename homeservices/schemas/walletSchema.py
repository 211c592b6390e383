from datetime import datetime
from typing import Optional, List

from beanie import PydanticObjectId
from pydantic import BaseModel, Field

from homeservices.commonUtils.enumUtils import UserRole, Language


class Wallet(BaseModel):
    """
    Provider wallet value. Only the ledger primitives produce new values of it;
    ``version`` and ``applied_refs`` let the store apply each one exactly once.
    """
    balance: float = 0  # withdrawable
    pending_balance: float = 0  # earned, awaiting client confirmation
    total_earnings: float = 0  # lifetime, never decreases
    version: int = 0
    applied_refs: List[str] = Field(default_factory=list)


class ProviderInfo(BaseModel):
    business_name: Optional[str] = None
    description: Optional[str] = None
    is_activated: bool = False
    activation_fee_paid: bool = False
    activation_payment_code: Optional[str] = None
    activation_date: Optional[datetime] = None
    wallet: Wallet = Field(default_factory=Wallet)


class UserProfile(BaseModel):
    """The slice of a user record the booking and payment core reads."""
    id: PydanticObjectId
    email: str
    name: Optional[str] = None
    role: UserRole = UserRole.CLIENT
    language: Language = Language.ARABIC
    is_active: bool = True
    provider_info: Optional[ProviderInfo] = None

    @property
    def is_activated_provider(self) -> bool:
        return (
                self.role == UserRole.PROVIDER
                and self.provider_info is not None
                and self.provider_info.is_activated
                and self.provider_info.activation_fee_paid
        )


class WalletRead(BaseModel):
    balance: float
    pending_balance: float
    total_earnings: float

    @classmethod
    def from_wallet(cls, wallet: Wallet) -> "WalletRead":
        return cls(
            balance=wallet.balance,
            pending_balance=wallet.pending_balance,
            total_earnings=wallet.total_earnings,
        )
