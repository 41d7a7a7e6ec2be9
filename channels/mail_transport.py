"""
Mail Transport — SMTP delivery of drafted responses.

Builds a multipart/alternative message (plain text + HTML) with threading
headers so the reply lands in the customer's original conversation, and
sends it with aiosmtplib.

No SMTP host configured → create_mail_transport() returns None and the
orchestrator treats delivery as not configured for the tenant.
"""
from __future__ import annotations

import re
import uuid
import structlog
from email.message import EmailMessage
from email.utils import formataddr, formatdate
from typing import Optional

import aiosmtplib

from config.settings import MailConfig
from core.collaborators import MailTransport
from models.schemas import DeliveryReceipt

logger = structlog.get_logger()


def html_to_plain(html: str) -> str:
    """Best-effort HTML → plain text without external dependencies."""
    text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = text.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
    text = text.replace("&nbsp;", " ").replace("&quot;", '"').replace("&#x27;", "'")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class SmtpMailTransport(MailTransport):

    def __init__(self, config: MailConfig):
        self._config = config
        self._domain = (config.from_address.split("@", 1)[1] if "@" in config.from_address
                        else config.smtp_host or "localhost")

    def build_message(
        self,
        to_address: str,
        subject: str,
        html_body: str,
        text_body: str = "",
        in_reply_to: Optional[str] = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((self._config.from_name, self._config.from_address))
        msg["To"] = to_address
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{self._domain}>"
        if in_reply_to:
            msg["In-Reply-To"] = in_reply_to
            msg["References"] = in_reply_to
        msg.set_content(text_body or html_to_plain(html_body))
        msg.add_alternative(html_body, subtype="html")
        return msg

    async def send_mail(
        self,
        to_address: str,
        subject: str,
        html_body: str,
        text_body: str = "",
        in_reply_to: Optional[str] = None,
    ) -> DeliveryReceipt:
        msg = self.build_message(to_address, subject, html_body, text_body, in_reply_to)
        await aiosmtplib.send(
            msg,
            hostname=self._config.smtp_host,
            port=self._config.smtp_port,
            username=self._config.smtp_user or None,
            password=self._config.smtp_password or None,
            start_tls=self._config.use_tls,
        )
        logger.info("email_sent", to=to_address, subject=subject, message_id=msg["Message-ID"])
        return DeliveryReceipt(delivery_id=msg["Message-ID"])


def create_mail_transport(config: Optional[MailConfig]) -> Optional[MailTransport]:
    if config is None or not config.smtp_host:
        logger.warning("mail_transport_not_configured")
        return None
    logger.info("mail_transport_created", host=config.smtp_host, port=config.smtp_port)
    return SmtpMailTransport(config)
