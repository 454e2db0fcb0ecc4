"""
Campaign Manager — caller-facing campaign operations and job fan-out.

This is the only place that moves a campaign into a "phase started"
status. Each phase start is followed by one queued job per lead; the
workers and the completion aggregator take it from there.

Fan-out is not atomic with the status write. If the process dies between
the two, some leads sit in the started status without a job. Draft
generation can simply be re-triggered; the send phase starts only from
DRAFTS_COMPLETED, so a campaign is never launched twice.
"""

import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

from campaign_store import DRAFTS, SEND, Campaign, CampaignLead, CampaignStatus, ValidationError
from followup_delay import DEFAULT_FOLLOW_UP_DELAY, follow_up_delay_seconds
from workers.job_queue import (
    EMAIL_DRAFTS_QUEUE,
    JOB_GENERATE_DRAFTS,
    JOB_SEND_CAMPAIGN_EMAILS,
    JOB_SEND_FOLLOW_UP_EMAIL,
    SEND_EMAIL_QUEUE,
    JobQueue,
)

logger = logging.getLogger("outreach.campaign_manager")

# Draft generation may be re-run until the campaign is launched
DRAFTS_STARTABLE_FROM = [
    CampaignStatus.NOT_STARTED,
    CampaignStatus.DRAFTS_STARTED,
    CampaignStatus.DRAFTS_COMPLETED,
]
LAUNCHABLE_FROM = [CampaignStatus.DRAFTS_COMPLETED]


class CampaignManager:
    """Entry point for everything an API or CLI caller can do with a campaign"""

    def __init__(self, drafts_queue: JobQueue = None, send_queue: JobQueue = None):
        self.drafts_queue = drafts_queue or JobQueue(EMAIL_DRAFTS_QUEUE)
        self.send_queue = send_queue or JobQueue(SEND_EMAIL_QUEUE)

    # ── Plain operations ─────────────────────────────────────────────

    def create_campaign(self, owner_id: ObjectId, name: str, lead_ids: List[Any],
                        description: str = None, settings: Dict[str, Any] = None) -> Dict:
        return Campaign.create(owner_id, name, lead_ids, settings=settings, description=description)

    def list_campaigns(self, owner_id: ObjectId) -> List[Dict]:
        return Campaign.list_by_owner(owner_id)

    def get_campaign(self, campaign_id: Any, owner_id: ObjectId) -> Dict:
        return Campaign.get(campaign_id, owner_id)

    def get_poll_data(self, campaign_id: Any, owner_id: ObjectId) -> Dict:
        return Campaign.get_poll_snapshot(campaign_id, owner_id)

    def get_campaign_leads(self, campaign_id: Any, owner_id: ObjectId) -> List[Dict]:
        return CampaignLead.list_with_leads(campaign_id, owner_id)

    def update_settings(self, campaign_id: Any, owner_id: ObjectId, patch: Dict[str, Any]) -> Dict:
        return Campaign.update_settings(campaign_id, owner_id, patch)

    # ── Phase fan-out ────────────────────────────────────────────────

    def enqueue_draft_generation(self, campaign_id: Any, owner_id: ObjectId) -> str:
        """
        Start the draft phase: snapshot settings onto every lead and enqueue
        one generate-drafts job per lead. Returns the first job id as the
        batch handle ("" for an empty batch).
        """
        campaign = Campaign.get(campaign_id, owner_id)
        self._start_phase(campaign, owner_id, DRAFTS, DRAFTS_STARTABLE_FROM)
        CampaignLead.mark_phase_started(campaign["_id"], DRAFTS, settings_snapshot=campaign.get("settings") or {})
        return self._fan_out(campaign["_id"], self.drafts_queue, JOB_GENERATE_DRAFTS)

    def launch(self, campaign_id: Any, owner_id: ObjectId) -> str:
        """Start the send phase: one initial-send job per lead. Drafts must be complete."""
        campaign = Campaign.get(campaign_id, owner_id)
        self._start_phase(campaign, owner_id, SEND, LAUNCHABLE_FROM)
        CampaignLead.mark_phase_started(campaign["_id"], SEND)
        return self._fan_out(campaign["_id"], self.send_queue, JOB_SEND_CAMPAIGN_EMAILS)

    def _start_phase(self, campaign: Dict, owner_id: ObjectId, phase, allowed: List[str]):
        if not Campaign.mark_phase_started(campaign["_id"], owner_id, phase, from_statuses=allowed):
            current = (Campaign.get_internal(campaign["_id"]) or campaign).get("status")
            logger.warning(f"phase_start_refused: campaign={campaign['_id']} phase={phase.name} status={current}")
            raise ValidationError(f"Cannot start {phase.name} while campaign is {current}")

    def _fan_out(self, campaign_id: ObjectId, queue: JobQueue, job_name: str) -> str:
        lead_ids = CampaignLead.list_lead_ids(campaign_id)
        job_ids = queue.add_bulk(
            (job_name, {"campaign_id": str(campaign_id), "lead_id": str(lead_id)})
            for lead_id in lead_ids
        )
        logger.info(f"phase_fanned_out: campaign={campaign_id} job={job_name} count={len(job_ids)}")
        return job_ids[0] if job_ids else ""

    def schedule_follow_up(self, campaign_id: Any, lead_id: Any) -> Optional[str]:
        """
        Queue the delayed follow-up for one lead, using the lead's settings
        snapshot. No-op when the lead is gone or follow-ups are off.
        """
        campaign_lead = CampaignLead.get(campaign_id, lead_id)
        settings = (campaign_lead or {}).get("settings") or {}
        if not settings.get("is_follow_up_enabled"):
            return None

        delay = settings.get("follow_up_delay") or DEFAULT_FOLLOW_UP_DELAY
        job_id = self.send_queue.add(
            JOB_SEND_FOLLOW_UP_EMAIL,
            {"campaign_id": str(campaign_lead["campaign_id"]), "lead_id": str(campaign_lead["lead_id"])},
            delay_seconds=follow_up_delay_seconds(delay),
        )
        logger.info(f"follow_up_scheduled: campaign={campaign_id} lead={lead_id} delay={delay}")
        return job_id
