import asyncio
import re
from pathlib import Path
from typing import Protocol

import resend
from jinja2 import Environment, FileSystemLoader
from resend.exceptions import ResendError

from cadence.config import get_config, get_settings
from cadence.core.errors import PermanentDeliveryError, TransientDeliveryError
from cadence.core.logging import get_logger
from cadence.schemas.content import GeneratedContent

logger = get_logger(__name__)

# Initialize Jinja2 environment for email templates
template_dir = Path(__file__).parent.parent / "emails" / "templates"
jinja_env = Environment(loader=FileSystemLoader(template_dir), autoescape=True)

SECTION_TITLES = {
    "personal_insight": "This week",
    "technique": "Try this",
    "team_section": "Team insight",
    "dna": "Your leadership DNA",
    "challenge": "Try this today",
    "whats_next": "What happens next?",
}

# Sections rendered elsewhere in the template, not as body blocks
_NON_BODY_SECTIONS = {"pre_header"}

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Reserved TLDs that can never receive mail
RESERVED_TLDS = frozenset({"test", "example", "invalid", "localhost"})

# Resend status codes that a retry cannot fix
PERMANENT_STATUS_CODES = frozenset({"400", "403", "422"})


class DeliveryProvider(Protocol):
    """Protocol for the external delivery provider."""

    async def send(self, address: str, subject: str, html: str) -> str:
        """Send one message and return the provider's message id.

        Raises:
            PermanentDeliveryError: If the message can never be delivered as is
            TransientDeliveryError: For anything worth retrying
        """
        ...


def check_address(address: str | None) -> str:
    """Cheap local validation before calling the provider.

    Raises:
        PermanentDeliveryError: If the address is obviously undeliverable
    """
    address = (address or "").strip()
    if not _EMAIL_PATTERN.match(address):
        raise PermanentDeliveryError(f"invalid recipient address: {address!r}")
    tld = address.rsplit(".", 1)[-1].lower()
    if tld in RESERVED_TLDS:
        raise PermanentDeliveryError(f"reserved domain in recipient address: {address!r}")
    return address


def render_body(
    content: GeneratedContent,
    delivery_index: int | None = None,
) -> str:
    """Render generated sections into the delivery HTML."""
    settings = get_settings()
    sections = [
        (SECTION_TITLES.get(key, ""), text)
        for key, text in content.body_sections.items()
        if key not in _NON_BODY_SECTIONS
    ]
    template = jinja_env.get_template("delivery.html")
    return template.render(
        subject=content.subject_line,
        pre_header=content.body_sections.get("pre_header"),
        sections=sections,
        delivery_index=delivery_index,
        cap=get_config().delivery.coaching_cap,
        dashboard_url=f"{settings.base_url}/dashboard",
    )


def _init_resend() -> None:
    """Initialize Resend API with API key."""
    settings = get_settings()
    if settings.resend_api_key:
        resend.api_key = settings.resend_api_key


class ResendProvider:
    """Delivery provider backed by Resend."""

    def __init__(self, from_address: str | None = None) -> None:
        self.from_address = from_address or get_settings().email_from

    async def send(self, address: str, subject: str, html: str) -> str:
        address = check_address(address)
        _init_resend()

        if not get_settings().resend_api_key:
            logger.bind(email=address).warning("resend_api_key_not_set")
            raise TransientDeliveryError("resend api key not configured")

        params: resend.Emails.SendParams = {
            "from": self.from_address,
            "to": [address],
            "subject": subject,
            "html": html,
        }
        try:
            # The SDK is synchronous; keep it off the event loop
            response = await asyncio.to_thread(resend.Emails.send, params)
        except ResendError as e:
            code = str(getattr(e, "code", ""))
            if code in PERMANENT_STATUS_CODES:
                raise PermanentDeliveryError(f"resend rejected message ({code}): {e}") from e
            raise TransientDeliveryError(f"resend error ({code or 'unknown'}): {e}") from e
        except OSError as e:
            raise TransientDeliveryError(f"resend connection error: {e}") from e

        message_id = response.get("id") if isinstance(response, dict) else None
        if not message_id:
            raise TransientDeliveryError("resend response missing message id")

        logger.bind(email=address, message_id=message_id).info("email_sent")
        return str(message_id)
