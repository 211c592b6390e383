from typing import Optional
from beanie import PydanticObjectId
from fastapi import Depends, Request
from fastapi_users import BaseUserManager, FastAPIUsers, models
from fastapi_users.authentication import (
    AuthenticationBackend,
    BearerTransport,
    JWTStrategy,
)
from fastapi_users_db_beanie import BeanieUserDatabase, ObjectIDIDMixin

from homeservices.commonUtils.enumUtils import UserRole
from homeservices.models.userModel import User, get_user_db
from homeservices.config.settings import settings
from homeservices.commonUtils.emailUtil import send_email
from homeservices.schemas.walletSchema import ProviderInfo

import logging

logger = logging.getLogger(__name__)

frontend_url = settings.FRONTEND_URL
SECRET = settings.JWT_SECRET_KEY


class UserManager(ObjectIDIDMixin, BaseUserManager[User, PydanticObjectId]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    async def on_after_register(
            self, user: User, request: Optional[Request] = None
    ):
        # Providers start unactivated with an empty wallet, whatever the signup payload said.
        if user.role == UserRole.PROVIDER:
            signup = user.provider_info or ProviderInfo()
            user.provider_info = ProviderInfo(business_name=signup.business_name, description=signup.description)
        else:
            user.provider_info = None
        await user.save()
        logger.info(f"User {user.id} registered as {user.role.value}")

    async def on_after_forgot_password(
            self, user: User, token: str, request: Optional[Request] = None
    ):
        reset_link = f"{frontend_url}/reset-password?token={token}"
        try:
            await send_email(
                email=user.email,
                subject=f"Password Reset Request - {settings.PLATFORM_NAME}",
                message=f'<p>Reset your password: <a href="{reset_link}">{reset_link}</a></p>'
            )
        except Exception as e:
            logger.error(f"Failed to send password reset email to {user.email}: {e}")

    async def on_after_request_verify(
            self, user: User, token: str, request: Optional[Request] = None
    ):
        verify_link = f"{frontend_url}/verify-email?token={token}"
        try:
            await send_email(
                email=user.email,
                subject=f"Verify Your {settings.PLATFORM_NAME} Email",
                message=f'<p>Verify your email: <a href="{verify_link}">{verify_link}</a></p>'
            )
        except Exception as e:
            logger.error(f"Failed to send verification email to {user.email}: {e}")


async def get_user_manager(user_db: BeanieUserDatabase = Depends(get_user_db)):
    yield UserManager(user_db)


bearer_transport = BearerTransport(tokenUrl="api/v1/auth/jwt/login")


def get_jwt_strategy() -> JWTStrategy[models.UP, models.ID]:
    return JWTStrategy(secret=SECRET, lifetime_seconds=settings.JWT_LIFETIME_SECONDS)


auth_backend = AuthenticationBackend(
    name="jwt",
    transport=bearer_transport,
    get_strategy=get_jwt_strategy,
)

fastapi_users = FastAPIUsers[User, PydanticObjectId](get_user_manager, [auth_backend])

current_active_user = fastapi_users.current_user(active=True)
super_user = fastapi_users.current_user(active=True, superuser=True)


async def user_from_token(token: str) -> Optional[User]:
    """Resolve a bearer token outside the HTTP dependency system (WebSocket handshakes)."""
    manager = UserManager(BeanieUserDatabase(User))
    user = await get_jwt_strategy().read_token(token, manager)
    if user is None or not user.is_active:
        return None
    return user
