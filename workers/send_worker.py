"""
Send Worker — consumes the send-email queue.

Two job names share the queue:

    send-campaign-emails   initial email for one lead, then (optionally)
                           schedules that lead's delayed follow-up
    send-follow-up-email   the delayed follow-up; re-checks for a reply
                           before sending since queued jobs are never
                           cancelled

Transport errors propagate so the queue retries the job. Lead writes are
status-guarded, which keeps a duplicate or late job from undoing a reply.
"""

import asyncio
import logging
from typing import Dict, Optional

import config
from campaign_manager import CampaignManager
from campaign_store import COMPLETION, SEND, Campaign, CampaignLead, LeadStatus
from database import Lead
from mail_sender import Mailer, plain_text_to_html
from reply_detector import build_reply_to_address
from workers.job_queue import (
    JOB_SEND_CAMPAIGN_EMAILS,
    JOB_SEND_FOLLOW_UP_EMAIL,
    SEND_EMAIL_QUEUE,
    QueueWorker,
    UnknownJobError,
)

logger = logging.getLogger("outreach.send_worker")

FIRST_LINE_MAX = 120


def initial_subject(campaign_lead: Dict, campaign: Optional[Dict]) -> str:
    subject = (campaign_lead.get("subject_draft") or "").strip()
    if subject:
        return subject
    name = (campaign or {}).get("name")
    return f"Re: {name}" if name else "Re: Follow-up"


def follow_up_subject(campaign_lead: Dict, campaign: Optional[Dict]) -> str:
    subject = (campaign_lead.get("followup_subject_draft") or "").strip()
    if subject:
        return subject
    initial = (campaign_lead.get("subject_draft") or "").strip()
    if initial:
        return f"Re: {initial} (follow-up)"
    name = (campaign or {}).get("name")
    return f"Re: {name} (follow-up)" if name else "Re: Follow-up"


def follow_up_html(campaign_lead: Dict) -> str:
    """Follow-up draft as HTML, or a short reminder quoting the initial draft."""
    draft = (campaign_lead.get("followup_email_draft") or "").strip()
    if draft:
        return plain_text_to_html(draft)

    initial = campaign_lead.get("email_draft") or ""
    first_line = initial.split("\n")[0].strip()[:FIRST_LINE_MAX] or "my previous message"
    ellipsis = "…" if len(first_line) >= FIRST_LINE_MAX else ""
    return (
        f"<p>Following up on my previous message – {first_line}{ellipsis}</p>"
        "<p>Would you have a few minutes to connect?</p>"
    )


def _lead_settings(campaign_lead: Dict, campaign: Optional[Dict]) -> Dict:
    return campaign_lead.get("settings") or (campaign or {}).get("settings") or {}


class SendWorker(QueueWorker):
    """Initial and follow-up sends, one lead per job."""

    queue_name = SEND_EMAIL_QUEUE
    concurrency = config.SEND_WORKER_CONCURRENCY

    def __init__(self, mailer: Mailer = None, manager: CampaignManager = None, queue=None,
                 concurrency: int = None, throttle_seconds: float = None):
        super().__init__(queue=queue, concurrency=concurrency)
        self.mailer = mailer or Mailer()
        self.manager = manager or CampaignManager(send_queue=self.queue)
        self.throttle_seconds = config.SEND_THROTTLE_SECONDS if throttle_seconds is None else throttle_seconds

    async def handle(self, job: Dict):
        if job["name"] == JOB_SEND_CAMPAIGN_EMAILS:
            return await self.send_initial(job["payload"])
        if job["name"] == JOB_SEND_FOLLOW_UP_EMAIL:
            return await self.send_follow_up(job["payload"])
        logger.warning(f"Unknown job name: {job['name']}")
        raise UnknownJobError(f"Unknown job name: {job['name']}")

    async def send_initial(self, payload: Dict) -> bool:
        """Returns True when the lead was moved out of SEND_STARTED."""
        campaign_id, lead_id = payload.get("campaign_id"), payload.get("lead_id")
        logger.info(f"Sending initial email campaign={campaign_id} lead={lead_id}")

        campaign_lead = CampaignLead.get(campaign_id, lead_id)
        if not campaign_lead:
            logger.warning(f"Campaign lead not found campaign={campaign_id} lead={lead_id}, skipping")
            return False
        if campaign_lead.get("status") != LeadStatus.SEND_STARTED:
            logger.info(f"Initial email already handled campaign={campaign_id} lead={lead_id} "
                        f"status={campaign_lead.get('status')}, skipping")
            return False

        campaign = Campaign.get_internal(campaign_lead["campaign_id"])
        lead = Lead.get_by_id(campaign_lead["lead_id"])
        settings = _lead_settings(campaign_lead, campaign)
        follow_up_enabled = bool(settings.get("is_follow_up_enabled"))

        follow_up_scheduled = False
        email = (lead or {}).get("email")
        if email:
            delivered = await self.mailer.send_email(
                owner_id=campaign["owner_id"] if campaign else None,
                to=email,
                subject=initial_subject(campaign_lead, campaign),
                html=plain_text_to_html(campaign_lead.get("email_draft") or ""),
                lead_id=campaign_lead["lead_id"],
                campaign_id=campaign_lead["campaign_id"],
                sender_name=settings.get("sender_name"),
                reply_to=build_reply_to_address(campaign_lead["_id"]),
            )
            if delivered and self.throttle_seconds:
                await asyncio.sleep(self.throttle_seconds)

            if follow_up_enabled and not campaign_lead.get("is_follow_up_email_sent"):
                follow_up_scheduled = bool(
                    self.manager.schedule_follow_up(campaign_lead["campaign_id"], campaign_lead["lead_id"])
                )
        else:
            logger.warning(f"Lead has no email campaign={campaign_id} lead={lead_id}, nothing sent")

        # No follow-up coming means nothing left to do for this lead
        outcome = LeadStatus.SEND_COMPLETED if follow_up_scheduled else LeadStatus.COMPLETED
        moved = CampaignLead.mark_terminal(
            campaign_lead["_id"], outcome, from_statuses=[LeadStatus.SEND_STARTED, outcome],
        )
        logger.info(f"Initial email completed campaign={campaign_id} lead={lead_id} status={outcome}")

        if follow_up_enabled:
            Campaign.try_advance_if_phase_done(campaign_lead["campaign_id"], SEND)
        Campaign.try_advance_if_phase_done(campaign_lead["campaign_id"], COMPLETION)
        return moved

    async def send_follow_up(self, payload: Dict) -> bool:
        """Returns True when a follow-up went through the mailer."""
        campaign_id, lead_id = payload.get("campaign_id"), payload.get("lead_id")
        logger.info(f"Processing follow-up email campaign={campaign_id} lead={lead_id}")

        campaign_lead = CampaignLead.get(campaign_id, lead_id)
        if not campaign_lead:
            logger.warning(f"Campaign lead not found campaign={campaign_id} lead={lead_id}, skipping follow-up")
            return False
        if campaign_lead.get("is_reply_received") or campaign_lead.get("is_follow_up_email_sent"):
            logger.info(f"Skipping follow-up: reply received or already sent campaign={campaign_id} lead={lead_id}")
            return False

        lead = Lead.get_by_id(campaign_lead["lead_id"])
        if not (lead or {}).get("email"):
            logger.warning(f"Lead has no email, skipping follow-up campaign={campaign_id} lead={lead_id}")
            CampaignLead.mark_terminal(
                campaign_lead["_id"], LeadStatus.COMPLETED, from_statuses=[LeadStatus.SEND_COMPLETED],
            )
            Campaign.try_advance_if_phase_done(campaign_lead["campaign_id"], COMPLETION)
            return False

        campaign = Campaign.get_internal(campaign_lead["campaign_id"])
        settings = _lead_settings(campaign_lead, campaign)
        await self.mailer.send_email(
            owner_id=campaign["owner_id"] if campaign else None,
            to=lead["email"],
            subject=follow_up_subject(campaign_lead, campaign),
            html=follow_up_html(campaign_lead),
            lead_id=campaign_lead["lead_id"],
            campaign_id=campaign_lead["campaign_id"],
            sender_name=settings.get("sender_name"),
            reply_to=build_reply_to_address(campaign_lead["_id"]),
        )

        CampaignLead.mark_follow_up_sent(campaign_lead["_id"])
        logger.info(f"Follow-up email sent campaign={campaign_id} lead={lead_id}")

        Campaign.try_advance_if_phase_done(campaign_lead["campaign_id"], COMPLETION)
        return True
