from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from latchkey.config import Settings
from latchkey.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    address: str
    name: str


class EmailSender(Protocol):
    async def send_template(
        self, recipient: Recipient, template_key: str, merge_info: Dict[str, Any]
    ) -> bool: ...

    async def send_verification_email(self, username: str, email: str, token: str) -> bool: ...

    async def send_reset_password_email(self, username: str, email: str, token: str) -> bool: ...


class EmailService:
    """Sends transactional email through a template-email HTTP API.

    Supports:
    - Email verification and password reset templates
    - Fallback to logging when not configured (dev mode)

    ``send_*`` methods return ``False`` on any delivery failure instead of
    raising; callers decide what a failed send means.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.api_url = settings.email_service_url_template
        self.api_key = settings.email_key
        self.sender_address = settings.email_sender_address
        self.base_url = settings.host
        self._client = client or httpx.AsyncClient(
            timeout=settings.email_timeout_seconds, follow_redirects=False
        )

    @property
    def is_configured(self) -> bool:
        return self.settings.email_configured

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _payload(
        self, recipient: Recipient, template_key: str, merge_info: Dict[str, Any]
    ) -> dict:
        return {
            "template_key": template_key,
            "from": {"address": self.sender_address, "name": "noreply"},
            "to": [
                {
                    "email_address": {
                        "address": recipient.address,
                        "name": recipient.name,
                    }
                }
            ],
            "merge_info": merge_info,
        }

    async def send_template(
        self, recipient: Recipient, template_key: str, merge_info: Dict[str, Any]
    ) -> bool:
        to = self._redact_email(recipient.address)
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=to,
                template_key=template_key,
                merge_fields=sorted(merge_info),
            )
            return True

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": self.api_key,
        }
        try:
            response = await self._client.post(
                self.api_url,
                json=self._payload(recipient, template_key, merge_info),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_http_error",
                to=to,
                template_key=template_key,
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException as e:
            logger.error("email_timeout", to=to, template_key=template_key, error=str(e))
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_send_failed",
                to=to,
                template_key=template_key,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=to, template_key=template_key)
        return True

    async def send_verification_email(self, username: str, email: str, token: str) -> bool:
        """Send the email-verification link for a new account."""
        verify_link = f"{self.base_url}/api/auth/verify-email/{token}"
        return await self.send_template(
            Recipient(address=email, name=username),
            self.settings.email_verification_template_key,
            {"verifyLink": verify_link, "email": email},
        )

    async def send_reset_password_email(self, username: str, email: str, token: str) -> bool:
        """Send the password reset link."""
        reset_link = f"{self.base_url}/api/auth/reset-password/{token}"
        return await self.send_template(
            Recipient(address=email, name=username),
            self.settings.email_reset_password_template_key,
            {
                "password_reset_link": reset_link,
                "name": username,
                "team": self.settings.company,
                "product_name": self.settings.company,
                "username": username,
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()
