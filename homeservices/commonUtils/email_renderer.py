"""
Email template renderer using Jinja2.

Templates live in ``homeservices/templates/emails`` and render in English or
Arabic (right to left) from the same file.
"""
from pathlib import Path
from typing import Dict, Any, Optional, NamedTuple
from jinja2 import Environment, FileSystemLoader, select_autoescape

from homeservices.commonUtils.enumUtils import NotificationTemplate, Language
from homeservices.commonUtils.timeUtils import utcnow
from homeservices.config.settings import settings

SUBJECTS: Dict[NotificationTemplate, Dict[Language, str]] = {
    NotificationTemplate.BOOKING_CONFIRMATION: {
        Language.ENGLISH: "Booking Confirmation - {platform}",
        Language.ARABIC: "تأكيد الحجز - صالح",
    },
    NotificationTemplate.BOOKING_STATUS_UPDATE: {
        Language.ENGLISH: "Booking Status Update - {platform}",
        Language.ARABIC: "تحديث حالة الحجز - صالح",
    },
    NotificationTemplate.PAYMENT_CONFIRMATION: {
        Language.ENGLISH: "Payment Confirmation - {platform}",
        Language.ARABIC: "تأكيد الدفع - صالح",
    },
    NotificationTemplate.PROVIDER_ACTIVATION: {
        Language.ENGLISH: "Provider Account Activated - {platform}",
        Language.ARABIC: "تم تفعيل حساب مقدم الخدمة - صالح",
    },
    NotificationTemplate.WITHDRAWAL_PROCESSED: {
        Language.ENGLISH: "Withdrawal Processed - {platform}",
        Language.ARABIC: "تم معالجة السحب - صالح",
    },
    NotificationTemplate.DISPUTE_UPDATE: {
        Language.ENGLISH: "Dispute Update - {platform}",
        Language.ARABIC: "تحديث النزاع - صالح",
    },
}


class RenderedEmail(NamedTuple):
    subject: str
    html: str


class EmailRenderer:
    """Renders email templates using Jinja2"""

    def __init__(self, template_dir: Optional[Path] = None):
        # Anchored on the package so rendering does not depend on the working directory
        self.template_dir = template_dir or Path(__file__).resolve().parent.parent / "templates" / "emails"

        self.env = Environment(
            loader=FileSystemLoader(self.template_dir),
            autoescape=select_autoescape(['html', 'xml'])
        )

        # Brand configuration - change once, applies everywhere
        self.brand_config = {
            'frontend_url': settings.FRONTEND_URL,
            'colors': {
                'primary': '#3B82F6',
                'highlight': '#E3F2FD',
                'light_gray': '#F8F9FA',
                'dark_text': '#1F2937',
                'light_text': '#666666',
            },
            'company_name': settings.PLATFORM_NAME,
            'year': utcnow().year,
        }

    def render(self, template_name: str, **context) -> str:
        """
        Render an email template with context

        Args:
            template_name: Name of template file (e.g., 'bookingConfirmation.html')
            **context: Variables to pass to template

        Returns:
            Rendered HTML string
        """
        template = self.env.get_template(template_name)

        # Merge brand config with user context
        full_context = {**self.brand_config, **context}

        return template.render(**full_context)

    def subject(self, template: NotificationTemplate, language: Language) -> str:
        subjects = SUBJECTS[template]
        return subjects.get(language, subjects[Language.ENGLISH]).format(platform=settings.PLATFORM_NAME)

    def render_notification(self, template: NotificationTemplate, data: Dict[str, Any],
                            language: Language, user_name: Optional[str] = None) -> RenderedEmail:
        is_rtl = language == Language.ARABIC
        html = self.render(
            f"{template.value}.html",
            data=data,
            user_name=user_name or ('عميلنا' if is_rtl else 'there'),
            rtl=is_rtl,
            direction='rtl' if is_rtl else 'ltr',
            lang=language.value,
        )
        return RenderedEmail(subject=self.subject(template, language), html=html)


# Singleton instance
_renderer = None


def get_email_renderer() -> EmailRenderer:
    """Get or create email renderer instance"""
    global _renderer
    if _renderer is None:
        _renderer = EmailRenderer()
    return _renderer
