from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie
from homeservices.models.userModel import User
from homeservices.models.bookingModel import Booking
from homeservices.models.paymentModel import Payment
from homeservices.models.serviceModel import Service
from .settings import settings


# Call this from within your event loop to get beanie setup.
async def startDB() -> AsyncIOMotorClient:
    # Create Motor client
    client = AsyncIOMotorClient(settings.MONGO_URI, uuidRepresentation="standard")
    database = client[settings.MONGO_DATABASE]

    # Registers the collections and creates the declared indexes
    await init_beanie(database=database, document_models=[User, Booking, Payment, Service])
    return client
