"""Outbound receipt email through the Resend HTTP API."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"

templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


class MailerError(Exception):
    pass


def render(template: str, **ctx: Any) -> str:
    return templates.get_template(template).render(**ctx)


class Mailer:
    """
    Fire-and-forget-with-status sender. `send` raises MailerError on any
    failure; callers decide whether that matters.
    """

    def __init__(self, api_key: str, from_email: str,
                 http: Optional[httpx.AsyncClient] = None,
                 sender_name: str = "Tickets") -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.http = http
        self.sender_name = sender_name

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.from_email and self.http)

    async def send(self, to: str, subject: str, html: str) -> None:
        if not self.enabled:
            raise MailerError("mailer not configured")
        try:
            r = await self.http.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": f"{self.sender_name} <{self.from_email}>",
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
            )
        except httpx.HTTPError as e:
            raise MailerError(f"send to {to} failed: {e}") from e
        if r.status_code >= 400:
            raise MailerError(
                f"send to {to} rejected: {r.status_code} {r.text[:200]}"
            )
        logger.debug("mail sent to %s (%s)", to, subject)
