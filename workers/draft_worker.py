"""
Draft Worker — consumes generate-drafts jobs from the email-drafts queue.

Per job:
    RECEIVED → PROMPT_BUILT → GENERATED → PARSED → PERSISTED → AGGREGATED

A job whose campaign lead, campaign or lead no longer exists is a skip:
it completes without touching anything. Generator failures and malformed
output raise, so the queue's retry/backoff policy applies; after the last
attempt the lead stays in DRAFTS_STARTED and the campaign with it.
"""

import logging
from typing import Dict

import config
from campaign_store import DRAFTS, Campaign, CampaignLead, LeadStatus
from database import Lead, OwnerSummary
from email_generator import TextGenerator, build_draft_prompt, parse_draft_json
from workers.job_queue import EMAIL_DRAFTS_QUEUE, JOB_GENERATE_DRAFTS, QueueWorker, UnknownJobError

logger = logging.getLogger("outreach.draft_worker")


class DraftWorker(QueueWorker):
    """Generates the initial (and follow-up) draft for one lead per job."""

    queue_name = EMAIL_DRAFTS_QUEUE
    concurrency = config.DRAFT_WORKER_CONCURRENCY

    def __init__(self, generator: TextGenerator = None, queue=None, concurrency: int = None):
        super().__init__(queue=queue, concurrency=concurrency)
        self._generator = generator

    @property
    def generator(self) -> TextGenerator:
        """Lazy-init the LLM client (needs API keys)."""
        if self._generator is None:
            self._generator = TextGenerator()
        return self._generator

    async def handle(self, job: Dict):
        if job["name"] == JOB_GENERATE_DRAFTS:
            return await self.generate_draft(job["payload"])
        logger.warning(f"Unknown job name: {job['name']}")
        raise UnknownJobError(f"Unknown job name: {job['name']}")

    async def generate_draft(self, payload: Dict) -> bool:
        """Returns True when a draft was persisted, False for a skip."""
        campaign_id, lead_id = payload.get("campaign_id"), payload.get("lead_id")
        logger.info(f"Generating draft for campaign={campaign_id} lead={lead_id}")

        campaign_lead = CampaignLead.get(campaign_id, lead_id)
        if not campaign_lead:
            logger.warning(f"Campaign lead not found campaign={campaign_id} lead={lead_id}, skipping")
            return False

        campaign = Campaign.get_internal(campaign_id)
        lead = Lead.get_by_id(campaign_lead["lead_id"])
        if not campaign or not lead:
            logger.warning(f"Campaign or lead not found campaign={campaign_id} lead={lead_id}, skipping")
            return False

        # Settings frozen at phase start; older rows without a snapshot use the live settings
        settings = campaign_lead.get("settings") or campaign.get("settings") or {}
        follow_up_enabled = bool(settings.get("is_follow_up_enabled"))

        prompt = build_draft_prompt(campaign, lead, follow_up_enabled, settings=settings)
        logger.debug(f"Prompt built (length={len(prompt)}) campaign={campaign_id} lead={lead_id}")

        raw = await self.generator.generate(prompt)
        parsed = parse_draft_json(raw, expect_follow_up=follow_up_enabled)

        override = (settings.get("subject") or "").strip()
        subject = override if settings.get("subject_from_user") and override else parsed["subject"]

        fields = {"subject_draft": subject, "email_draft": parsed["body"]}
        draft_count = 1
        if follow_up_enabled and "followup_subject" in parsed:
            fields["followup_subject_draft"] = parsed["followup_subject"]
            fields["followup_email_draft"] = parsed["followup_body"]
            draft_count = 2

        # A stale duplicate must not drag a lead back out of the send phase
        persisted = CampaignLead.mark_terminal(
            campaign_lead["_id"],
            LeadStatus.DRAFTS_COMPLETED,
            fields=fields,
            from_statuses=[LeadStatus.DRAFTS_STARTED, LeadStatus.DRAFTS_COMPLETED],
        )
        if not persisted:
            return False

        OwnerSummary.increment(campaign["owner_id"], email_drafts_count=draft_count)
        logger.info(f"Draft generated for campaign={campaign_id} lead={lead_id}")

        Campaign.try_advance_if_phase_done(campaign["_id"], DRAFTS)
        return True
