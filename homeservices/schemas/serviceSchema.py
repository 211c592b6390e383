from datetime import datetime
from typing import Optional

from beanie import PydanticObjectId
from pydantic import BaseModel, Field, ConfigDict


class ServicePricing(BaseModel):
    amount: float = Field(..., gt=0)
    currency: str = "EGP"
    unit: str = "fixed"  # fixed | hourly


class ServiceListing(BaseModel):
    """Catalogue entry a booking is priced from. Catalogue CRUD lives elsewhere."""
    id: Optional[PydanticObjectId] = Field(None, alias="_id")
    provider_id: PydanticObjectId
    name: str
    category: Optional[str] = None
    pricing: ServicePricing
    estimated_duration: Optional[int] = None  # minutes
    is_active: bool = True
    is_approved: bool = False
    created_at: Optional[datetime] = None

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )
