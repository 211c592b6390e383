from typing import Optional

from beanie import Document, PydanticObjectId
from pydantic import Field, ConfigDict

from homeservices.schemas.serviceSchema import ServiceListing


class Service(Document, ServiceListing):
    """Service catalogue document in MongoDB"""
    id: Optional[PydanticObjectId] = Field(None, alias="_id")

    class Settings:
        name = "services"
        indexes = [
            [("provider_id", 1)],
            [("is_active", 1), ("is_approved", 1)],
            [("category", 1)],
        ]

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )
