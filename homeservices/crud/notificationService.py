import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from beanie import PydanticObjectId

from homeservices.commonUtils.email_renderer import EmailRenderer, get_email_renderer
from homeservices.commonUtils.emailUtil import send_email
from homeservices.commonUtils.enumUtils import NotificationTemplate, Language
from homeservices.realtime.connectionRegistry import ConnectionRegistry, user_room
from homeservices.repositories.userRepository import UserRepository

logger = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[None]]


class NotificationDispatcher:
    """
    Fire-and-forget user notifications: an email plus a real-time push.

    ``notify`` schedules delivery on the running loop and returns at once, so a
    slow or failing mail server never holds up a booking transition.
    """

    def __init__(self, users: UserRepository, realtime: Optional[ConnectionRegistry] = None,
                 renderer: Optional[EmailRenderer] = None, sender: EmailSender = send_email):
        self.users = users
        self.realtime = realtime
        self.renderer = renderer or get_email_renderer()
        self.sender = sender
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, user_id: PydanticObjectId, template: NotificationTemplate, data: Dict[str, Any],
               language: Optional[Language] = None) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(user_id, template, data, language))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for deliveries still in flight (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, user_id: PydanticObjectId, template: NotificationTemplate, data: Dict[str, Any],
                       language: Optional[Language]) -> None:
        try:
            profile = await self.users.get_profile(user_id)
            if profile is None:
                logger.warning(f"Notification {template.value} skipped: user {user_id} not found")
                return

            rendered = self.renderer.render_notification(
                template, data, language or profile.language, user_name=profile.name
            )
            await self.sender(profile.email, rendered.subject, rendered.html)
        except Exception as e:
            logger.error(f"Email notification {template.value} to user {user_id} failed: {e}", exc_info=True)

        if self.realtime is None:
            return
        try:
            await self.realtime.broadcast(user_room(user_id), "notification", {"type": template.value, "data": data})
        except Exception as e:
            logger.error(f"Real-time notification {template.value} to user {user_id} failed: {e}", exc_info=True)
