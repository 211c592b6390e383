from typing import Optional, Protocol

from beanie import PydanticObjectId

from homeservices.models.serviceModel import Service
from homeservices.schemas.serviceSchema import ServiceListing


class ServiceRepository(Protocol):
    async def get(self, service_id: PydanticObjectId) -> Optional[ServiceListing]: ...


class MongoServiceRepository:
    async def get(self, service_id: PydanticObjectId) -> Optional[ServiceListing]:
        service = await Service.get(service_id)
        return ServiceListing.model_validate(service.model_dump(by_alias=True)) if service else None
