"""
Outbound mail: SMTP transport (aiosmtplib) plus the allowlist gate and
audit trail that every campaign send goes through.
"""

import asyncio
import html as html_lib
import logging
import re
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

import aiosmtplib
from bson import ObjectId

import config
from database import Company, EmailLog, OwnerSummary

logger = logging.getLogger("outreach.mail_sender")

_TAG_RE = re.compile(r"<[^>]+>")


class MailTransportError(Exception):
    pass


def plain_text_to_html(text: str) -> str:
    """
    Convert a plain text draft to HTML so line breaks survive in mail clients.
    Escapes entities so draft text can't inject markup.
    """
    if not text:
        return ""
    escaped = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
    return escaped.replace("\n", "<br>\n")


def html_to_text(html: str) -> str:
    text = html.replace("<br>", "\n").replace("</p><p>", "\n\n")
    return html_lib.unescape(_TAG_RE.sub("", text)).strip()


def build_from(sender_name: Optional[str] = None) -> str:
    name = (sender_name or "").strip() or config.DEFAULT_FROM_NAME
    return formataddr((name, config.FROM_EMAIL))


class SmtpTransport:
    """send(from, to, subject, html, reply_to?) over SMTP. Raises MailTransportError."""

    def __init__(self, host: str = None, port: int = None, username: str = None, password: str = None):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username if username is not None else config.SMTP_USERNAME
        self.password = password if password is not None else config.SMTP_PASSWORD

    def build_message(self, from_addr: str, to: str, subject: str, html: str,
                      reply_to: Optional[str] = None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(html_to_text(html), "plain"))
        msg.attach(MIMEText(html, "html"))

        domain = config.FROM_EMAIL.split("@")[1] if "@" in config.FROM_EMAIL else None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = to
        if reply_to:
            msg["Reply-To"] = reply_to
        return msg

    async def send(self, from_addr: str, to: str, subject: str, html: str,
                   reply_to: Optional[str] = None) -> str:
        msg = self.build_message(from_addr, to, subject, html, reply_to)
        try:
            smtp = aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                timeout=config.SMTP_TIMEOUT,
                start_tls=config.SMTP_USE_TLS,
            )
            await smtp.connect()
            if self.username:
                await smtp.login(self.username, self.password)
            await smtp.sendmail(config.FROM_EMAIL, [to], msg.as_string())
            await smtp.quit()
        except aiosmtplib.SMTPException as e:
            logger.error("smtp_error", extra={"to": to, "error_code": getattr(e, "code", None), "error": str(e)[:200]})
            raise MailTransportError(f"SMTP error sending to {to}: {e}") from e
        except (asyncio.TimeoutError, OSError) as e:
            raise MailTransportError(f"Connection timeout to {to}: {e}") from e

        logger.info("smtp_transmitted", extra={"to": to, "message_id": msg["Message-ID"][:40]})
        return msg["Message-ID"]


class Mailer:
    """
    Campaign-facing sender.

    In allowlist mode a message only leaves the building when the recipient
    is on the owner's company allowlist. The audit entry is written either
    way, with `delivered` telling the two apart.
    """

    def __init__(self, transport: SmtpTransport = None):
        self.transport = transport or SmtpTransport()

    def is_allowed(self, owner_id: ObjectId, to: str) -> bool:
        if not config.ALLOWLIST_MODE:
            return True
        return to.strip().lower() in Company.get_allowed_recipients(owner_id)

    async def send_email(self, owner_id: ObjectId, to: str, subject: str, html: str,
                         lead_id: ObjectId, campaign_id: ObjectId, sender_name: str = None,
                         reply_to: str = None) -> bool:
        """Send (or suppress) one campaign message and audit it. Returns True if dispatched."""
        delivered = self.is_allowed(owner_id, to)
        if delivered:
            await self.transport.send(build_from(sender_name), to, subject, html, reply_to=reply_to)
            OwnerSummary.increment(owner_id, email_sent_count=1)
        else:
            logger.info(f"send_suppressed: {to} not on allowlist campaign={campaign_id}")

        EmailLog.create(
            lead_id=lead_id,
            campaign_id=campaign_id,
            direction=EmailLog.OUTBOUND,
            subject=subject,
            body=html,
            delivered=delivered,
        )
        return delivered
