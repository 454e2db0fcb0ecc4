"""
Reply Detection — inbound webhook side of the campaign.

Every outbound campaign email carries a per-lead Reply-To address,
`cl-<campaign lead id>@REPLY_TO_DOMAIN`. When the mail provider receives a
reply it posts a signed `email.received` event; we verify the signature,
decode the campaign lead from the receiving address, log the message and
complete the lead.

Follow-up jobs already sitting in the queue are not cancelled here. The
send worker re-checks `is_reply_received` when the follow-up fires.
"""

import base64
import hashlib
import hmac
import json
import logging
import re
import time
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import httpx
from bson import ObjectId

import config
from campaign_store import Campaign, CampaignLead
from database import EmailLog, OwnerSummary, to_object_id

logger = logging.getLogger("outreach.reply_detector")

CL_PREFIX = "cl-"
_ANGLE_RE = re.compile(r"<([^>]+)>")


class WebhookVerificationError(Exception):
    pass


def build_reply_to_address(campaign_lead_id: ObjectId) -> Optional[str]:
    if not config.REPLY_TO_DOMAIN:
        return None
    return f"{CL_PREFIX}{campaign_lead_id}@{config.REPLY_TO_DOMAIN}"


def parse_campaign_lead_id(to_addresses: Iterable[str]) -> Optional[ObjectId]:
    """Find the campaign lead encoded in the local part of a receiving address."""
    for raw in to_addresses or []:
        addr = (raw or "").strip()
        match = _ANGLE_RE.search(addr)
        email = match.group(1) if match else addr
        at = email.find("@")
        if at <= 0:
            continue
        local = email[:at].strip().lower()
        if not local.startswith(CL_PREFIX):
            continue
        oid = to_object_id(local[len(CL_PREFIX):])
        if oid is not None:
            return oid
    return None


def verify_webhook(payload: Union[str, bytes], headers: Mapping[str, str], secret: str,
                   tolerance_seconds: int = None, now: float = None) -> Dict[str, Any]:
    """
    Verify a Svix-signed webhook and return the decoded event.

    Signature: base64(HMAC-SHA256(secret, "<id>.<timestamp>.<payload>")),
    sent as space separated "v1,<sig>" entries in svix-signature.
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret not configured")
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")

    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    msg_id = lowered.get("svix-id")
    timestamp = lowered.get("svix-timestamp")
    signatures = lowered.get("svix-signature")
    if not msg_id or not timestamp or not signatures:
        raise WebhookVerificationError("Invalid webhook: missing Svix headers")

    tolerance = config.WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookVerificationError("Invalid webhook timestamp")
    if abs((now or time.time()) - sent_at) > tolerance:
        raise WebhookVerificationError("Webhook timestamp outside tolerance")

    key = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        key_bytes = base64.b64decode(key)
    except ValueError:
        raise WebhookVerificationError("Webhook secret is not valid base64")

    signed = f"{msg_id}.{timestamp}.{payload}".encode("utf-8")
    expected = base64.b64encode(hmac.new(key_bytes, signed, hashlib.sha256).digest()).decode()

    for entry in signatures.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            try:
                return json.loads(payload)
            except json.JSONDecodeError:
                raise WebhookVerificationError("Webhook payload is not JSON")

    raise WebhookVerificationError("Invalid webhook signature")


async def fetch_received_email(email_id: str) -> Dict[str, Any]:
    """Fetch full content (to, subject, html, text) of an inbound email from Resend."""
    url = f"{config.RESEND_API_BASE_URL}/emails/receiving/{email_id}"
    async with httpx.AsyncClient(timeout=15) as client:
        resp = await client.get(url, headers={"Authorization": f"Bearer {config.RESEND_API_KEY}"})
        resp.raise_for_status()
        return resp.json()


class ReplyHandler:
    """Turns verified inbound events into reply records"""

    def __init__(self, webhook_secret: str = None, fetcher=None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.RESEND_WEBHOOK_SECRET
        self.fetcher = fetcher or fetch_received_email

    async def handle_webhook(self, payload: Union[str, bytes], headers: Mapping[str, str]) -> Dict[str, Any]:
        event = verify_webhook(payload, headers, self.webhook_secret)
        logger.info(f"webhook_verified: type={event.get('type', 'unknown')}")
        await self.handle_event(event)
        return {"received": True}

    async def handle_event(self, event: Dict[str, Any]) -> Optional[Dict]:
        """Process one event. Returns the campaign lead a reply was recorded for."""
        if event.get("type") != "email.received":
            return None

        data = event.get("data") or {}
        received = data
        if data.get("email_id") and (not data.get("to") or config.RESEND_API_KEY):
            received = {**data, **(await self.fetcher(data["email_id"]))}

        campaign_lead_id = parse_campaign_lead_id(received.get("to") or [])
        if campaign_lead_id is None:
            logger.warning("Webhook: could not parse campaign lead from To address")
            return None

        campaign_lead = CampaignLead.get_by_id(campaign_lead_id)
        if not campaign_lead:
            logger.warning(f"Webhook: no campaign lead found for id {campaign_lead_id}")
            return None

        campaign_id, lead_id = campaign_lead["campaign_id"], campaign_lead["lead_id"]
        subject = received.get("subject") or "(no subject)"
        body = received.get("html") or received.get("text") or ""
        email_id = data.get("email_id")
        if email_id:
            recorded = EmailLog.create_inbound_once(email_id, lead_id, campaign_id, subject, body)
        else:
            EmailLog.create(lead_id=lead_id, campaign_id=campaign_id, direction=EmailLog.INBOUND,
                            subject=subject, body=body)
            recorded = True

        if recorded:
            campaign = Campaign.get_internal(campaign_id)
            if campaign:
                OwnerSummary.increment(campaign["owner_id"], email_received_count=1)
            logger.info(f"Created inbound email for lead {lead_id} campaign {campaign_id}")
        else:
            logger.info(f"Webhook: email {email_id} already recorded for lead {lead_id}")

        CampaignLead.mark_reply_received(campaign_id, lead_id)
        return campaign_lead
