from fastapi_mail import FastMail, MessageSchema
from homeservices.config.settings import settings
import logging

logger = logging.getLogger(__name__)


async def send_email(email: str, subject: str, message: str):
    """
    Core email sending utility - used by the notification dispatcher
    """
    logger.debug(f"Sending email to {email} | Subject: {subject}")
    try:
        msg = MessageSchema(
            subject=subject,
            recipients=[email],
            body=message,
            subtype="html",
        )
        fm = FastMail(settings.mail_config)
        await fm.send_message(msg)
        logger.info(f"Email sent successfully to {email}")
    except Exception as e:
        logger.error(f"Failed to send email to {email}: {str(e)}")
        raise
