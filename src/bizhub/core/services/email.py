"""Outbound transactional email."""

from abc import ABC, abstractmethod
from html import escape
from typing import Any
from urllib.parse import urlencode

import httpx
from loguru import logger

from src.bizhub.runtime.config.config_data import EmailConfig

PASSWORD_RESET = "password_reset"
SUBSCRIPTION_CONFIRMATION = "subscription_confirmation"


def _render_password_reset(config: EmailConfig, params: dict[str, Any]) -> tuple[str, str]:
    query = urlencode({"token": params["token"], "email": params["email"]})
    reset_url = f"{config.frontend_url.rstrip('/')}/reset-password?{query}"
    body = (
        "<h2>Password Reset Request</h2>"
        f"<p>Hello {escape(params.get('name', ''))}, we received a request to reset "
        "your password. Use the link below to choose a new one:</p>"
        f'<p><a href="{escape(reset_url)}">{escape(reset_url)}</a></p>'
        "<p>If you didn't request a password reset, you can ignore this email. "
        "The link expires in 1 hour.</p>"
    )
    return f"Password Reset Request - {config.sender_name}", body


def _render_subscription_confirmation(
    config: EmailConfig, params: dict[str, Any]
) -> tuple[str, str]:
    plan = escape(str(params["plan_type"]))
    body = (
        "<h2>Subscription Confirmed!</h2>"
        f"<p>Hello {escape(params.get('name', ''))},</p>"
        f"<p>Thank you for subscribing to the <strong>{plan}</strong> system. "
        f"Your subscription is active until {escape(str(params['end_date']))}.</p>"
    )
    return f"Thank You for Subscribing! - {params['plan_type']}", body


TEMPLATES = {
    PASSWORD_RESET: _render_password_reset,
    SUBSCRIPTION_CONFIRMATION: _render_subscription_confirmation,
}


class EmailDispatcher(ABC):
    @abstractmethod
    async def send_email(self, template: str, recipient: str, params: dict[str, Any]) -> bool:
        """Send one templated email. Returns whether the provider accepted it; never raises."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpEmailDispatcher(EmailDispatcher):
    """Sends mail through a SendGrid-style JSON API."""

    def __init__(self, config: EmailConfig, http_client: httpx.AsyncClient | None = None):
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def send_email(self, template: str, recipient: str, params: dict[str, Any]) -> bool:
        if not self._config.enabled:
            logger.info("Email disabled; skipping {} to {}", template, recipient)
            return False
        if not self._config.api_key:
            logger.error("Email provider not configured; cannot send {}", template)
            return False

        render = TEMPLATES.get(template)
        if render is None:
            logger.error("Unknown email template {}", template)
            return False

        try:
            subject, html = render(self._config, params)
        except KeyError as e:
            logger.error("Email template {} missing parameter {}", template, e)
            return False

        payload = {
            "from": {"email": self._config.sender, "name": self._config.sender_name},
            "personalizations": [{"to": [{"email": recipient}], "subject": subject}],
            "content": [{"type": "text/html", "value": html}],
        }
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

        try:
            resp = await self._http.post(self._config.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Email send of {} to {} failed: {}", template, recipient, e)
            return False

        if 200 <= resp.status_code < 300:
            logger.info("Email {} sent to {}", template, recipient)
            return True

        logger.error(
            "Email provider rejected {} with {}: {}",
            template,
            resp.status_code,
            resp.text[:200],
        )
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
